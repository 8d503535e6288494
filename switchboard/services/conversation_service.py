"""Conversation bookkeeping for the once-per-conversation greeting and agent history."""

import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Optional

from switchboard.config import settings
from switchboard.logging_config import get_logger

logger = get_logger("conversation_service")


@dataclass
class Conversation:
    conversation_id: str
    user_id: str
    channel_id: str
    started_at: float
    last_activity: float
    greeting_sent: bool = False
    greeting_sent_at: Optional[float] = None
    history: list[dict] = field(default_factory=list)


class ConversationStore:
    """In-memory conversations keyed by ``(user_id, channel_id)``.

    A conversation idle for longer than ``ttl_seconds`` is replaced by a fresh
    one on next contact, which makes the user eligible for a new greeting.
    """

    def __init__(
        self,
        ttl_seconds: float = 1800.0,
        history_limit: int = 20,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.history_limit = history_limit
        self._clock = clock
        self._lock = threading.Lock()
        self._conversations: dict[tuple[str, str], Conversation] = {}

    def touch(self, user_id: str, channel_id: str) -> Conversation:
        with self._lock:
            conversation = self._current_locked(user_id, channel_id)
            conversation.last_activity = self._clock()
            return self._snapshot(conversation)

    def claim_greeting(self, user_id: str, channel_id: str, content: str) -> bool:
        """Atomically mark the greeting as sent. False if the slot is taken."""
        with self._lock:
            conversation = self._current_locked(user_id, channel_id)
            if conversation.greeting_sent or conversation.history:
                return False
            now = self._clock()
            conversation.greeting_sent = True
            conversation.greeting_sent_at = now
            conversation.last_activity = now
            conversation.history.append({"role": "assistant", "content": content, "greeting": True})
        logger.info(
            "Greeting claimed",
            extra={"context": {"user_id": user_id, "channel_id": channel_id}},
        )
        return True

    def release_greeting(self, user_id: str, channel_id: str) -> None:
        with self._lock:
            conversation = self._conversations.get((user_id, channel_id))
            if conversation is None or not conversation.greeting_sent:
                return
            conversation.greeting_sent = False
            conversation.greeting_sent_at = None
            conversation.history = [turn for turn in conversation.history if not turn.get("greeting")]
        logger.info(
            "Greeting released",
            extra={"context": {"user_id": user_id, "channel_id": channel_id}},
        )

    def append(self, user_id: str, channel_id: str, role: str, content: str) -> None:
        with self._lock:
            conversation = self._current_locked(user_id, channel_id)
            conversation.history.append({"role": role, "content": content})
            if len(conversation.history) > self.history_limit:
                del conversation.history[: len(conversation.history) - self.history_limit]
            conversation.last_activity = self._clock()

    def history(self, user_id: str, channel_id: str) -> list[dict]:
        with self._lock:
            conversation = self._conversations.get((user_id, channel_id))
            if conversation is None or self._expired(conversation):
                return []
            return [{"role": turn["role"], "content": turn["content"]} for turn in conversation.history]

    def get(self, user_id: str, channel_id: str) -> Optional[Conversation]:
        with self._lock:
            conversation = self._conversations.get((user_id, channel_id))
            if conversation is None or self._expired(conversation):
                return None
            return self._snapshot(conversation)

    def purge_expired(self) -> int:
        with self._lock:
            stale = [key for key, conversation in self._conversations.items() if self._expired(conversation)]
            for key in stale:
                del self._conversations[key]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._conversations)

    def _expired(self, conversation: Conversation) -> bool:
        return self._clock() - conversation.last_activity > self.ttl_seconds

    def _current_locked(self, user_id: str, channel_id: str) -> Conversation:
        key = (user_id, channel_id)
        conversation = self._conversations.get(key)
        if conversation is None or self._expired(conversation):
            now = self._clock()
            conversation = Conversation(
                conversation_id=uuid.uuid4().hex,
                user_id=user_id,
                channel_id=channel_id,
                started_at=now,
                last_activity=now,
            )
            self._conversations[key] = conversation
            logger.debug(
                "Conversation started",
                extra={"context": {"user_id": user_id, "channel_id": channel_id}},
            )
        return conversation

    @staticmethod
    def _snapshot(conversation: Conversation) -> Conversation:
        return Conversation(
            conversation_id=conversation.conversation_id,
            user_id=conversation.user_id,
            channel_id=conversation.channel_id,
            started_at=conversation.started_at,
            last_activity=conversation.last_activity,
            greeting_sent=conversation.greeting_sent,
            greeting_sent_at=conversation.greeting_sent_at,
            history=list(conversation.history),
        )


_conversation_store: Optional[ConversationStore] = None


def get_conversation_store() -> ConversationStore:
    global _conversation_store
    if _conversation_store is None:
        _conversation_store = ConversationStore(
            ttl_seconds=settings.conversation_ttl_seconds,
            history_limit=settings.conversation_history_limit,
        )
    return _conversation_store
