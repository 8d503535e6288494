"""Single-use, short-lived tickets for WebSocket authentication.

A ticket is a signed JWT fetched over HTTP before the socket is opened. The
socket handshake consumes it exactly once; the ``jti`` of every consumed ticket
is remembered until the ticket would have expired anyway.
"""

import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from jose import JWTError, jwt
from sqlalchemy.orm import Session

from switchboard.config import settings
from switchboard.logging_config import get_logger
from switchboard.models import Channel
from switchboard.services.errors import (
    ChannelInactive,
    ChannelNotFound,
    TicketAlreadyUsed,
    TicketExpired,
    TicketInvalid,
)

logger = get_logger("ticket_service")


@dataclass
class AuthTicket:
    token: str
    user_id: str
    channel_id: str
    ticket_id: str
    expires_at: datetime
    expires_in_seconds: int


class TicketService:
    def __init__(
        self,
        secret: str,
        *,
        algorithm: str = "HS256",
        ttl_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.secret = secret
        self.algorithm = algorithm
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._consumed: dict[str, float] = {}

    def issue_ticket(self, db: Session, user_id: str, channel_id: str) -> AuthTicket:
        if not user_id or not channel_id:
            raise ValueError("user_id and channel_id are required")

        channel = db.query(Channel).filter(Channel.id == channel_id).first()
        if not channel:
            raise ChannelNotFound(f"Channel not found: {channel_id}")
        if not channel.is_active:
            raise ChannelInactive(f"Channel is inactive: {channel_id}")

        now = self._clock()
        expires_at = int(now) + self.ttl_seconds
        ticket_id = uuid.uuid4().hex
        claims = {
            "sub": user_id,
            "channel_id": channel_id,
            "jti": ticket_id,
            "iat": int(now),
            "exp": expires_at,
        }
        token = jwt.encode(claims, self.secret, algorithm=self.algorithm)

        logger.info(
            "Ticket issued",
            extra={"context": {"user_id": user_id, "channel_id": channel_id, "ticket_id": ticket_id}},
        )
        return AuthTicket(
            token=token,
            user_id=user_id,
            channel_id=channel_id,
            ticket_id=ticket_id,
            expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc),
            expires_in_seconds=self.ttl_seconds,
        )

    def consume_ticket(self, token: Optional[str]) -> tuple[str, str]:
        """Validate and burn a ticket. Returns ``(user_id, channel_id)``."""
        if not token:
            raise TicketInvalid("Token is required")

        try:
            # Expiry is checked below against the injected clock.
            claims = jwt.decode(token, self.secret, algorithms=[self.algorithm], options={"verify_exp": False})
        except JWTError as exc:
            raise TicketInvalid(f"Invalid ticket: {exc}") from exc

        user_id = claims.get("sub")
        channel_id = claims.get("channel_id")
        ticket_id = claims.get("jti")
        expires_at = claims.get("exp")
        if not user_id or not channel_id or not ticket_id or not isinstance(expires_at, (int, float)):
            raise TicketInvalid("Ticket is missing required claims")

        now = self._clock()
        with self._lock:
            self._purge_expired(now)
            if ticket_id in self._consumed:
                raise TicketAlreadyUsed("Ticket has already been used")
            if now >= expires_at:
                raise TicketExpired("Ticket has expired")
            self._consumed[ticket_id] = float(expires_at)

        logger.info(
            "Ticket consumed",
            extra={"context": {"user_id": user_id, "channel_id": channel_id, "ticket_id": ticket_id}},
        )
        return user_id, channel_id

    def consumed_count(self) -> int:
        with self._lock:
            return len(self._consumed)

    def _purge_expired(self, now: float) -> None:
        # Called with the lock held. Burned ids outlive their expiry by one ttl so a
        # late replay still reports TicketAlreadyUsed; after that it fails on ``exp``.
        horizon = now - self.ttl_seconds
        stale = [ticket_id for ticket_id, expires_at in self._consumed.items() if expires_at <= horizon]
        for ticket_id in stale:
            del self._consumed[ticket_id]


_ticket_service: Optional[TicketService] = None


def get_ticket_service() -> TicketService:
    global _ticket_service
    if _ticket_service is None:
        _ticket_service = TicketService(
            settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
            ttl_seconds=settings.ticket_ttl_seconds,
        )
    return _ticket_service
