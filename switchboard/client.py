"""Reference web chat client: ticket over HTTP, session over WebSocket, reconnect with backoff."""

import asyncio
import inspect
import json
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Union

import httpx
import websockets
from websockets.exceptions import WebSocketException

from switchboard.logging_config import get_logger
from switchboard.services.backoff import ABNORMAL_CLOSE_POLICY, RECONNECT_POLICY, BackoffPolicy

logger = get_logger("client")

FrameCallback = Callable[[dict], Union[Awaitable[None], None]]

CLOSE_NORMAL = 1000


class ChatClientError(Exception):
    """Fatal client error: reconnects exhausted or the channel refuses tickets."""


class _AbnormalClose(Exception):
    def __init__(self, message: str, established: bool):
        self.established = established
        super().__init__(message)


class ChatClient:
    def __init__(
        self,
        base_url: str,
        user_id: str,
        channel_id: str,
        on_frame: Optional[FrameCallback] = None,
        *,
        reconnect_policy: BackoffPolicy = RECONNECT_POLICY,
        abnormal_close_policy: BackoffPolicy = ABNORMAL_CLOSE_POLICY,
        stable_after_seconds: float = 30.0,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        connect: Callable[..., Any] = websockets.connect,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        ws_base = self.base_url.replace("https://", "wss://").replace("http://", "ws://")
        self.ws_url = f"{ws_base}/webchat/ws"
        self.user_id = user_id
        self.channel_id = channel_id
        self.on_frame = on_frame
        self.reconnect_policy = reconnect_policy
        self.abnormal_close_policy = abnormal_close_policy
        self.stable_after_seconds = stable_after_seconds
        self._http_transport = http_transport
        self._connect = connect
        self._sleep = sleep
        self._ws = None
        self._stopping = False
        self.session_id: Optional[str] = None
        self.authenticated = asyncio.Event()

    async def fetch_ticket(self) -> str:
        async with httpx.AsyncClient(base_url=self.base_url, timeout=10.0, transport=self._http_transport) as client:
            response = await client.post("/auth", json={"userId": self.user_id, "channelId": self.channel_id})
        if response.status_code in (403, 404, 422):
            raise ChatClientError(f"Ticket refused ({response.status_code}): {response.text}")
        response.raise_for_status()
        return response.json()["token"]

    async def run(self) -> None:
        """Stay connected until stopped, closed normally, or out of attempts."""
        self._stopping = False
        attempt = 0
        while not self._stopping:
            started = time.monotonic()
            established = False
            try:
                established = await self._connect_once()
                return
            except ChatClientError:
                raise
            except (OSError, asyncio.TimeoutError, WebSocketException, httpx.HTTPError, _AbnormalClose) as exc:
                if self._stopping:
                    return
                established = isinstance(exc, _AbnormalClose) and exc.established
                logger.warning(
                    "Connection lost",
                    extra={"context": {"error": str(exc), "attempt": attempt, "established": established}},
                )
            finally:
                self._ws = None
                self.authenticated.clear()

            if established and time.monotonic() - started >= self.stable_after_seconds:
                attempt = 0
            policy = self.abnormal_close_policy if established else self.reconnect_policy
            if policy.exhausted(attempt):
                raise ChatClientError(f"Giving up after {attempt} reconnect attempts")
            await policy.wait(attempt, sleep=self._sleep)
            attempt += 1

    async def stop(self) -> None:
        self._stopping = True
        if self._ws is not None:
            await self._ws.close()

    async def send_message(self, content: str, message_id: Optional[str] = None) -> str:
        if self._ws is None or not self.authenticated.is_set():
            raise ChatClientError("Not connected")
        message_id = message_id or uuid.uuid4().hex
        await self._ws.send(
            json.dumps(
                {
                    "type": "message",
                    "content": content,
                    "messageId": message_id,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
            )
        )
        return message_id

    async def _connect_once(self) -> bool:
        token = await self.fetch_ticket()
        established = False
        async with self._connect(self.ws_url, ping_interval=None) as ws:
            self._ws = ws
            await ws.send(json.dumps({"type": "auth", "token": token}))
            try:
                async for raw in ws:
                    try:
                        frame = json.loads(raw)
                    except ValueError:
                        logger.warning("Ignoring malformed frame")
                        continue
                    frame_type = frame.get("type")
                    if frame_type == "connected":
                        self.session_id = frame.get("sessionId")
                    elif frame_type == "auth_success":
                        established = True
                        self.authenticated.set()
                    elif frame_type == "ping":
                        await ws.send(json.dumps({"type": "pong"}))
                    await self._emit(frame)
            except WebSocketException as exc:
                raise _AbnormalClose(str(exc), established) from exc

            code = ws.close_code
        if code != CLOSE_NORMAL and not self._stopping:
            raise _AbnormalClose(f"Closed with code {code}", established)
        return established

    async def _emit(self, frame: dict) -> None:
        if self.on_frame is None:
            return
        result = self.on_frame(frame)
        if inspect.isawaitable(result):
            await result
