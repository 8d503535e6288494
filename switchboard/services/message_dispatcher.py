"""Routes session messages to the agent backend and fans out follow-up jobs."""

import asyncio
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

import httpx

from switchboard.config import settings
from switchboard.database import SessionLocal
from switchboard.logging_config import get_logger
from switchboard.models import Channel
from switchboard.services.conversation_service import ConversationStore, get_conversation_store
from switchboard.services.errors import AgentUnavailable, InternalError, RateLimited, SwitchboardError
from switchboard.services.job_queue import JobQueueManager, QueueName, get_job_queue_manager
from switchboard.services.llm import AgentContext, LLMProvider, LLMProviderError, LLMResponse, OpenAIProvider

logger = get_logger("message_dispatcher")


@dataclass
class ChannelInfo:
    """Detached copy of a Channel row."""

    id: str
    channel_type: str
    is_active: bool
    greeting_message: Optional[str] = None
    config: dict = field(default_factory=dict)

    @classmethod
    def from_model(cls, channel: Channel) -> "ChannelInfo":
        return cls(
            id=channel.id,
            channel_type=channel.channel_type,
            is_active=bool(channel.is_active),
            greeting_message=channel.greeting_message,
            config={**(channel.config or {}), "webhook_tools": channel.webhook_tools},
        )

    @property
    def webhook_tools(self) -> dict[str, dict]:
        tools = self.config.get("webhook_tools") or {}
        return {name: tool for name, tool in tools.items() if isinstance(tool, dict) and tool.get("url")}

    def tool_definitions(self) -> list[dict]:
        return [
            {
                "type": "function",
                "function": {
                    "name": name,
                    "description": tool.get("description", ""),
                    "parameters": tool.get("parameters") or {"type": "object", "properties": {}},
                },
            }
            for name, tool in self.webhook_tools.items()
        ]


def load_channel(channel_id: str) -> Optional[ChannelInfo]:
    db = SessionLocal()
    try:
        channel = db.query(Channel).filter(Channel.id == channel_id).first()
        return ChannelInfo.from_model(channel) if channel else None
    finally:
        db.close()


@dataclass
class AssistantReply:
    content: str
    message_id: Optional[str] = None
    model: Optional[str] = None
    usage: Optional[dict] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class _DedupEntry:
    created_at: float
    reply: Optional[AssistantReply] = None


class MessageDispatcher:
    def __init__(
        self,
        agent: LLMProvider,
        queue_manager: JobQueueManager,
        conversations: ConversationStore,
        *,
        channel_loader: Callable[[str], Optional[ChannelInfo]] = load_channel,
        dedup_window_seconds: float = 60.0,
        rate_limit_messages: int = 20,
        rate_limit_window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.agent = agent
        self.queue_manager = queue_manager
        self.conversations = conversations
        self.channel_loader = channel_loader
        self.dedup_window_seconds = dedup_window_seconds
        self.rate_limit_messages = rate_limit_messages
        self.rate_limit_window_seconds = rate_limit_window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._dedup: dict[tuple[str, str], _DedupEntry] = {}
        self._recent: dict[str, deque] = {}

    async def dispatch(
        self,
        session_id: str,
        user_id: str,
        channel_id: str,
        content: str,
        client_message_id: Optional[str] = None,
    ) -> Optional[AssistantReply]:
        """Run one message through the agent.

        Returns the reply, the cached reply for a completed duplicate, or
        ``None`` for a duplicate that is still in flight.
        """
        key = (session_id, client_message_id) if client_message_id else None
        with self._lock:
            now = self._clock()
            self._purge_locked(now)
            if key is not None and key in self._dedup:
                cached = self._dedup[key].reply
                logger.info(
                    "Duplicate message ignored",
                    extra={
                        "context": {
                            "session_id": session_id,
                            "message_id": client_message_id,
                            "cached": cached is not None,
                        }
                    },
                )
                return cached
            self._admit_locked(session_id, now)
            if key is not None:
                self._dedup[key] = _DedupEntry(created_at=now)

        try:
            reply = await self._invoke(session_id, user_id, channel_id, content, client_message_id)
        except (SwitchboardError, asyncio.CancelledError):
            # Failed or cancelled dispatches are not cached so a retry is processed.
            self._drop_dedup(key)
            raise
        except Exception as exc:
            self._drop_dedup(key)
            logger.exception(
                "Dispatch failed",
                extra={"context": {"session_id": session_id, "channel_id": channel_id}},
            )
            raise InternalError(str(exc) or exc.__class__.__name__) from exc

        if key is not None:
            with self._lock:
                entry = self._dedup.get(key)
                if entry is not None:
                    entry.reply = reply
        return reply

    async def get_channel(self, channel_id: str) -> Optional[ChannelInfo]:
        """Load a channel off the event loop; the loader does blocking database I/O."""
        return await asyncio.to_thread(self.channel_loader, channel_id)

    async def request_greeting(self, user_id: str, channel_id: str) -> Optional[str]:
        channel = await self.get_channel(channel_id)
        if channel is None or not channel.is_active or not channel.greeting_message:
            return None
        if not self.conversations.claim_greeting(user_id, channel_id, channel.greeting_message):
            return None
        return channel.greeting_message

    def release_greeting(self, user_id: str, channel_id: str) -> None:
        self.conversations.release_greeting(user_id, channel_id)

    def greeting_sent(self, user_id: str, channel_id: str) -> bool:
        conversation = self.conversations.get(user_id, channel_id)
        return bool(conversation and conversation.greeting_sent)

    async def _invoke(
        self,
        session_id: str,
        user_id: str,
        channel_id: str,
        content: str,
        client_message_id: Optional[str],
    ) -> AssistantReply:
        channel = await self.get_channel(channel_id)
        if channel is None:
            raise AgentUnavailable(f"Channel not found: {channel_id}")
        if not channel.is_active:
            raise AgentUnavailable(f"Channel is inactive: {channel_id}")

        conversation = self.conversations.touch(user_id, channel_id)
        context = AgentContext(
            channel_id=channel_id,
            user_id=user_id,
            conversation_id=conversation.conversation_id,
            message=content,
            history=self.conversations.history(user_id, channel_id),
            system_prompt=channel.config.get("system_prompt"),
            tools=channel.tool_definitions(),
        )

        response = await self._call_agent(context)
        if not (response.content or "").strip():
            raise InternalError("Agent returned an empty reply")

        self.conversations.append(user_id, channel_id, "user", content)
        self.conversations.append(user_id, channel_id, "assistant", response.content)

        reply = AssistantReply(
            content=response.content,
            message_id=client_message_id,
            model=response.model,
            usage=response.usage,
        )
        self._enqueue_side_effects(channel, session_id, user_id, conversation.conversation_id, response)
        logger.info(
            "Message dispatched",
            extra={
                "context": {
                    "session_id": session_id,
                    "channel_id": channel_id,
                    "message_id": client_message_id,
                    "model": response.model,
                }
            },
        )
        return reply

    async def _call_agent(self, context: AgentContext) -> LLMResponse:
        try:
            return await self.agent.generate_reply(context)
        except SwitchboardError:
            raise
        except (httpx.TransportError, asyncio.TimeoutError) as exc:
            logger.warning(f"Agent unreachable: {exc}", extra={"context": {"channel_id": context.channel_id}})
            raise AgentUnavailable(str(exc) or "Agent unreachable") from exc
        except LLMProviderError as exc:
            status = exc.status_code or 0
            if status == 429:
                raise RateLimited("Agent rate limit exceeded") from exc
            if status >= 500:
                raise AgentUnavailable(f"Agent returned {status}") from exc
            raise InternalError(str(exc)) from exc
        except Exception as exc:
            logger.exception("Agent invocation failed", extra={"context": {"channel_id": context.channel_id}})
            raise InternalError(str(exc)) from exc

    def _enqueue_side_effects(
        self,
        channel: ChannelInfo,
        session_id: str,
        user_id: str,
        conversation_id: str,
        response: LLMResponse,
    ) -> None:
        self._safe_enqueue(
            QueueName.ANALYTICS,
            {
                "event": "message_processed",
                "channel_id": channel.id,
                "user_id": user_id,
                "session_id": session_id,
                "conversation_id": conversation_id,
                "model": response.model,
                "usage": response.usage,
            },
            name="message_processed",
        )

        webhook_tools = channel.webhook_tools
        for call in response.tool_calls:
            tool = webhook_tools.get(call.name)
            if tool is None:
                continue
            self._safe_enqueue(
                QueueName.WEBHOOK_PROCESSING,
                {
                    "direction": "outbound",
                    "url": tool["url"],
                    "method": tool.get("method", "POST"),
                    "headers": tool.get("headers") or {},
                    "body": {
                        "tool": call.name,
                        "arguments": call.arguments,
                        "callId": call.call_id,
                        "userId": user_id,
                        "channelId": channel.id,
                        "conversationId": conversation_id,
                    },
                },
                name=f"tool:{call.name}",
            )

        if channel.channel_type == "whatsapp":
            self._safe_enqueue(
                QueueName.WHATSAPP_SENDING,
                {"channel_id": channel.id, "to": user_id, "text": response.content},
                name="reply",
            )

    def _safe_enqueue(self, queue_name: QueueName, payload: dict, name: str) -> Optional[str]:
        try:
            return self.queue_manager.enqueue(queue_name, payload, name=name)
        except SwitchboardError as exc:
            logger.warning(
                f"Side-effect job not enqueued: {exc.code}",
                extra={"context": {"queue": queue_name.value, "error": exc.message}},
            )
            return None

    def _admit_locked(self, session_id: str, now: float) -> None:
        window = self._recent.setdefault(session_id, deque())
        while window and now - window[0] >= self.rate_limit_window_seconds:
            window.popleft()
        if len(window) >= self.rate_limit_messages:
            raise RateLimited(f"More than {self.rate_limit_messages} messages per {self.rate_limit_window_seconds:g}s")
        window.append(now)

    def _purge_locked(self, now: float) -> None:
        stale = [key for key, entry in self._dedup.items() if now - entry.created_at >= self.dedup_window_seconds]
        for key in stale:
            del self._dedup[key]
        idle = [
            session_id
            for session_id, window in self._recent.items()
            if not window or now - window[-1] >= self.rate_limit_window_seconds
        ]
        for session_id in idle:
            del self._recent[session_id]

    def _drop_dedup(self, key: Optional[tuple[str, str]]) -> None:
        if key is not None:
            with self._lock:
                self._dedup.pop(key, None)

    def forget_session(self, session_id: str) -> None:
        """Drop rate-limit state of a closed session. Dedup entries age out on their own."""
        with self._lock:
            self._recent.pop(session_id, None)


_message_dispatcher: Optional[MessageDispatcher] = None


def get_message_dispatcher() -> MessageDispatcher:
    global _message_dispatcher
    if _message_dispatcher is None:
        if not settings.openai_api_key:
            logger.warning("OPENAI_API_KEY not configured, agent calls will fail")
        _message_dispatcher = MessageDispatcher(
            OpenAIProvider(
                settings.openai_api_key or "",
                default_model=settings.openai_model,
                base_url=settings.openai_base_url,
            ),
            get_job_queue_manager(),
            get_conversation_store(),
            dedup_window_seconds=settings.dedup_window_seconds,
            rate_limit_messages=settings.rate_limit_messages,
            rate_limit_window_seconds=settings.rate_limit_window_seconds,
        )
    return _message_dispatcher
