from switchboard.services.llm.base import AgentContext, LLMProvider, LLMProviderError, LLMResponse, ToolCall
from switchboard.services.llm.openai_provider import OpenAIProvider

__all__ = ["AgentContext", "LLMProvider", "LLMProviderError", "LLMResponse", "OpenAIProvider", "ToolCall"]
