import threading
from typing import Any, Optional

from switchboard.logging_config import get_logger

logger = get_logger("connection_registry")


class ConnectionRegistry:
    """Maps session ids to live transports. Bookkeeping only, no protocol."""

    def __init__(self):
        self._lock = threading.Lock()
        self._connections: dict[str, Any] = {}
        self._bindings: dict[str, tuple[str, str]] = {}

    def register(self, session_id: str, transport: Any) -> None:
        with self._lock:
            if session_id in self._connections:
                raise ValueError(f"Session already registered: {session_id}")
            self._connections[session_id] = transport
            total = len(self._connections)
        logger.debug("Connection registered", extra={"context": {"session_id": session_id, "total": total}})

    def unregister(self, session_id: str) -> Optional[Any]:
        with self._lock:
            transport = self._connections.pop(session_id, None)
            self._bindings.pop(session_id, None)
            total = len(self._connections)
        if transport is not None:
            logger.debug("Connection unregistered", extra={"context": {"session_id": session_id, "total": total}})
        return transport

    def bind_user(self, session_id: str, user_id: str, channel_id: str) -> None:
        with self._lock:
            if session_id not in self._connections:
                raise KeyError(session_id)
            self._bindings[session_id] = (user_id, channel_id)

    def sessions_for_user(self, user_id: str, channel_id: str) -> list[str]:
        with self._lock:
            return [sid for sid, binding in self._bindings.items() if binding == (user_id, channel_id)]

    def get(self, session_id: str) -> Optional[Any]:
        with self._lock:
            return self._connections.get(session_id)

    def session_ids(self) -> list[str]:
        with self._lock:
            return list(self._connections)

    def authenticated_count(self) -> int:
        with self._lock:
            return len(self._bindings)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._connections

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    async def close_all(self, code: int = 1001, reason: str = "Server shutting down") -> int:
        with self._lock:
            items = list(self._connections.items())
            self._connections.clear()
            self._bindings.clear()
        closed = 0
        for session_id, transport in items:
            try:
                await transport.close(code=code, reason=reason)
                closed += 1
            except Exception as exc:
                logger.warning(
                    "Failed to close connection",
                    extra={"context": {"session_id": session_id, "error": str(exc)}},
                )
        logger.info("All connections closed", extra={"context": {"closed": closed}})
        return closed


_connection_registry: Optional[ConnectionRegistry] = None


def get_connection_registry() -> ConnectionRegistry:
    global _connection_registry
    if _connection_registry is None:
        _connection_registry = ConnectionRegistry()
    return _connection_registry
