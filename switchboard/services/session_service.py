"""Per-connection session protocol: connect, authenticate, greet, exchange messages, close.

Frames are JSON objects with a ``type`` field. The handler owns one transport
for its whole life; reconnecting clients get a brand new session.
"""

import asyncio
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

from fastapi import WebSocket

from switchboard.config import settings
from switchboard.logging_config import LoggerAdapter, get_logger
from switchboard.services.connection_registry import ConnectionRegistry
from switchboard.services.errors import AgentUnavailable, AuthFailed, RateLimited, SwitchboardError
from switchboard.services.message_dispatcher import MessageDispatcher
from switchboard.services.state_machine import SessionState, authenticate, begin_authentication, close
from switchboard.services.ticket_service import TicketService

logger = get_logger("session_service")

CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011

ERROR_MESSAGES = {
    AgentUnavailable.code: "Agent is unavailable, please try again later",
    RateLimited.code: "Too many messages, please slow down",
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class TransportClosed(Exception):
    def __init__(self, code: Optional[int] = None):
        self.code = code
        super().__init__(f"Transport closed ({code})")


class SessionTransport(Protocol):
    async def receive_text(self) -> str: ...

    async def send_json(self, data: dict) -> None: ...

    async def close(self, code: int = CLOSE_NORMAL, reason: Optional[str] = None) -> None: ...


class WebSocketTransport:
    """Adapts a FastAPI WebSocket to the session transport interface."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def receive_text(self) -> str:
        try:
            message = await self.websocket.receive()
        except RuntimeError as exc:
            raise TransportClosed() from exc
        if message["type"] == "websocket.disconnect":
            raise TransportClosed(message.get("code"))
        if message.get("text") is not None:
            return message["text"]
        return (message.get("bytes") or b"").decode("utf-8", errors="replace")

    async def send_json(self, data: dict) -> None:
        try:
            await self.websocket.send_json(data)
        except RuntimeError as exc:
            raise TransportClosed() from exc

    async def close(self, code: int = CLOSE_NORMAL, reason: Optional[str] = None) -> None:
        await self.websocket.close(code=code, reason=reason)


@dataclass
class Session:
    session_id: str
    state: SessionState = SessionState.CONNECTING
    user_id: Optional[str] = None
    channel_id: Optional[str] = None
    greeting_sent: bool = False
    connected_at: float = field(default_factory=time.monotonic)
    last_seen: float = field(default_factory=time.monotonic)
    close_reason: Optional[str] = None


class SessionHandler:
    def __init__(
        self,
        transport: SessionTransport,
        *,
        registry: ConnectionRegistry,
        tickets: TicketService,
        dispatcher: MessageDispatcher,
        auth_timeout: float = 10.0,
        greeting_timeout: float = 5.0,
        dispatch_timeout: float = 30.0,
        idle_timeout: float = 300.0,
        keepalive_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.transport = transport
        self.registry = registry
        self.tickets = tickets
        self.dispatcher = dispatcher
        self.auth_timeout = auth_timeout
        self.greeting_timeout = greeting_timeout
        self.dispatch_timeout = dispatch_timeout
        self.idle_timeout = idle_timeout
        self.keepalive_interval = keepalive_interval
        self._clock = clock

        self.session = Session(session_id=uuid.uuid4().hex)
        self.log = LoggerAdapter(logger, {"session_id": self.session.session_id})
        self._send_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self._greeting_done = asyncio.Event()
        self._greeting_deadline: Optional[float] = None
        self._last_inbound = clock()

    @classmethod
    def from_settings(cls, transport: SessionTransport, **collaborators: Any) -> "SessionHandler":
        return cls(
            transport,
            auth_timeout=settings.auth_timeout_seconds,
            greeting_timeout=settings.greeting_timeout_seconds,
            dispatch_timeout=settings.dispatch_timeout_seconds,
            idle_timeout=settings.idle_timeout_seconds,
            keepalive_interval=settings.keepalive_interval_seconds,
            **collaborators,
        )

    async def run(self) -> Session:
        """Drive the session until the transport closes. Never raises for protocol errors."""
        self.registry.register(self.session.session_id, self.transport)
        self.log.info("Session connected")
        try:
            await self._send({"type": "connected", "sessionId": self.session.session_id, "timestamp": _now_iso()})
            if await self._authenticate():
                self._start_authenticated()
                await self._message_loop()
        except TransportClosed:
            self._mark_closed("ClientClosed")
        except asyncio.CancelledError:
            await self._close("ServerShutdown", CLOSE_GOING_AWAY)
            raise
        except Exception:
            self.log.exception("Session loop failed")
            await self._close("InternalError", CLOSE_INTERNAL_ERROR)
        finally:
            await self._cleanup()
        return self.session

    # --- connecting / authenticating ---

    async def _authenticate(self) -> bool:
        deadline = self._clock() + self.auth_timeout
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                await self._close("AuthTimeout", CLOSE_POLICY_VIOLATION)
                return False
            try:
                raw = await asyncio.wait_for(self.transport.receive_text(), timeout=remaining)
            except asyncio.TimeoutError:
                continue

            frame = await self._parse(raw)
            if frame is None:
                continue
            if frame.get("type") != "auth":
                await self._send_error("Not authenticated")
                continue

            self.session.state = begin_authentication(self.session.state)
            try:
                user_id, channel_id = self.tickets.consume_ticket(frame.get("token"))
            except AuthFailed as exc:
                self.log.warning("Authentication failed", context={"code": exc.code, "error": exc.message})
                await self._send_error("Authentication failed")
                await self._close("AuthFailed", CLOSE_POLICY_VIOLATION)
                return False

            self.session.state = authenticate(self.session.state)
            self.session.user_id = user_id
            self.session.channel_id = channel_id
            self.registry.bind_user(self.session.session_id, user_id, channel_id)
            self.log = self.log.bind(user_id=user_id, channel_id=channel_id)
            concurrent = len(self.registry.sessions_for_user(user_id, channel_id))
            self.log.info("Session authenticated", context={"concurrent_sessions": concurrent})
            await self._send(
                {"type": "auth_success", "userId": user_id, "channelId": channel_id, "timestamp": _now_iso()}
            )
            return True

    # --- authenticated ---

    def _start_authenticated(self) -> None:
        self._greeting_deadline = self._clock() + self.greeting_timeout
        self._spawn(self._deliver_greeting())
        self._spawn(self._keepalive())

    async def _message_loop(self) -> None:
        self._last_inbound = self._clock()
        while True:
            remaining = self.idle_timeout - (self._clock() - self._last_inbound)
            if remaining <= 0:
                await self._close("IdleTimeout", CLOSE_NORMAL)
                return
            try:
                raw = await asyncio.wait_for(self.transport.receive_text(), timeout=remaining)
            except asyncio.TimeoutError:
                continue
            self._last_inbound = self._clock()
            self.session.last_seen = self._last_inbound

            frame = await self._parse(raw)
            if frame is None:
                continue

            frame_type = frame.get("type")
            if frame_type == "message":
                content = frame.get("content")
                message_id = frame.get("messageId")
                if not isinstance(content, str) or not content.strip():
                    await self._send_error("Message content is required", message_id)
                    continue
                self._spawn(self._handle_message(content, message_id))
            elif frame_type == "ping":
                await self._send({"type": "pong", "timestamp": _now_iso()})
            elif frame_type == "pong":
                continue
            elif frame_type == "auth":
                await self._send_error("Already authenticated")
            else:
                await self._send_error(f"Unknown message type: {frame_type}")

    async def _deliver_greeting(self) -> None:
        user_id, channel_id = self.session.user_id, self.session.channel_id
        claimed = False
        delivered = False
        try:
            try:
                greeting = await asyncio.wait_for(
                    self.dispatcher.request_greeting(user_id, channel_id), timeout=self.greeting_timeout
                )
            except asyncio.TimeoutError:
                self.log.warning("Greeting timed out", context={"timeout": self.greeting_timeout})
                return
            except SwitchboardError as exc:
                self.log.warning("Greeting unavailable", context={"code": exc.code})
                return
            except Exception as exc:
                self.log.warning("Greeting unavailable", context={"error": str(exc) or exc.__class__.__name__})
                return

            if greeting is None:
                self.session.greeting_sent = self.dispatcher.greeting_sent(user_id, channel_id)
                return
            claimed = True
            await self._send({"type": "message", "content": greeting, "timestamp": _now_iso(), "greeting": True})
            delivered = True
            self.session.greeting_sent = True
            self.log.info("Greeting sent")
        except TransportClosed:
            return
        finally:
            if claimed and not delivered:
                self.dispatcher.release_greeting(user_id, channel_id)
            self._greeting_done.set()

    async def _wait_for_greeting(self) -> None:
        if self._greeting_done.is_set() or self._greeting_deadline is None:
            return
        remaining = self._greeting_deadline - self._clock()
        if remaining <= 0:
            return
        try:
            await asyncio.wait_for(self._greeting_done.wait(), timeout=remaining)
        except asyncio.TimeoutError:
            self.log.warning("Reply sent before greeting")

    async def _handle_message(self, content: str, message_id: Optional[str]) -> None:
        try:
            try:
                reply = await asyncio.wait_for(
                    self.dispatcher.dispatch(
                        self.session.session_id,
                        self.session.user_id,
                        self.session.channel_id,
                        content,
                        message_id,
                    ),
                    timeout=self.dispatch_timeout,
                )
            except asyncio.TimeoutError:
                self.log.warning("Dispatch timed out", context={"message_id": message_id})
                await self._send_error("Request timed out", message_id)
                return
            except SwitchboardError as exc:
                self.log.warning("Dispatch failed", context={"message_id": message_id, "code": exc.code})
                await self._send_error(ERROR_MESSAGES.get(exc.code, "Failed to process message"), message_id)
                return
            except Exception:
                self.log.exception("Dispatch crashed", context={"message_id": message_id})
                await self._send_error("Failed to process message", message_id)
                return

            if reply is None:
                return
            await self._wait_for_greeting()
            frame = {"type": "message", "content": reply.content, "timestamp": reply.timestamp.isoformat()}
            if message_id:
                frame["messageId"] = message_id
            await self._send(frame)
        except TransportClosed:
            self.log.debug("Reply discarded, session closed", context={"message_id": message_id})

    async def _keepalive(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.keepalive_interval)
                await self._send({"type": "ping", "timestamp": _now_iso()})
        except TransportClosed:
            return

    # --- plumbing ---

    async def _parse(self, raw: str) -> Optional[dict]:
        try:
            frame = json.loads(raw)
        except ValueError:
            frame = None
        if not isinstance(frame, dict):
            await self._send_error("Invalid message format")
            return None
        return frame

    async def _send(self, frame: dict) -> None:
        if self.session.state == SessionState.CLOSED:
            raise TransportClosed()
        async with self._send_lock:
            await self.transport.send_json(frame)
        self.session.last_seen = self._clock()

    async def _send_error(self, error: str, message_id: Optional[str] = None) -> None:
        frame = {"type": "error", "error": error}
        if message_id:
            frame["messageId"] = message_id
        await self._send(frame)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _mark_closed(self, reason: str) -> bool:
        if self.session.state == SessionState.CLOSED:
            return False
        self.session.state = close(self.session.state)
        self.session.close_reason = reason
        self.log.info("Session closed", context={"reason": reason})
        return True

    async def _close(self, reason: str, code: int) -> None:
        if not self._mark_closed(reason):
            return
        try:
            await self.transport.close(code=code, reason=reason)
        except Exception as exc:
            self.log.debug("Transport close failed", context={"error": str(exc)})

    async def _cleanup(self) -> None:
        self._mark_closed("ClientClosed")
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self.registry.unregister(self.session.session_id)
        self.dispatcher.forget_session(self.session.session_id)
