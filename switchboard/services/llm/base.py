from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class ToolCall:
    name: str
    arguments: dict
    call_id: Optional[str] = None


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None
    tool_calls: List[ToolCall] = field(default_factory=list)


@dataclass
class AgentContext:
    """Everything the agent sees for one inbound message."""

    channel_id: str
    user_id: str
    conversation_id: str
    message: str
    history: List[dict] = field(default_factory=list)
    system_prompt: Optional[str] = None
    tools: List[dict] = field(default_factory=list)

    def to_messages(self) -> List[dict]:
        messages = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.extend({"role": turn["role"], "content": turn["content"]} for turn in self.history)
        messages.append({"role": "user", "content": self.message})
        return messages


class LLMProviderError(Exception):
    """Provider answered with a non-success status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        tools: Optional[List[dict]] = None,
    ) -> LLMResponse:
        """Generate response from LLM."""
        pass

    async def generate_reply(self, context: AgentContext) -> LLMResponse:
        return await self.generate(context.to_messages(), tools=context.tools or None)
