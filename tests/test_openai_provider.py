import json

import httpx
import pytest

from switchboard.services.llm import AgentContext, LLMProviderError, OpenAIProvider


def _provider(respond):
    return OpenAIProvider("sk-test", default_model="gpt-test", transport=httpx.MockTransport(respond))


class TestOpenAIProvider:
    @pytest.mark.asyncio
    async def test_generate_reply_builds_messages(self):
        seen = []

        def respond(request):
            seen.append(json.loads(request.content))
            return httpx.Response(
                200,
                json={
                    "model": "gpt-test-2026",
                    "choices": [{"message": {"role": "assistant", "content": "We deliver daily."}}],
                    "usage": {"total_tokens": 42},
                },
            )

        context = AgentContext(
            channel_id="c1",
            user_id="u1",
            conversation_id="conv-1",
            message="Do you deliver?",
            history=[{"role": "assistant", "content": "Hello!", "greeting": True}],
            system_prompt="You are a shop assistant.",
        )
        response = await _provider(respond).generate_reply(context)

        assert response.content == "We deliver daily."
        assert response.model == "gpt-test-2026"
        assert response.usage == {"total_tokens": 42}
        assert response.tool_calls == []
        assert seen[0]["model"] == "gpt-test"
        assert seen[0]["messages"] == [
            {"role": "system", "content": "You are a shop assistant."},
            {"role": "assistant", "content": "Hello!"},
            {"role": "user", "content": "Do you deliver?"},
        ]
        assert "tools" not in seen[0]

    @pytest.mark.asyncio
    async def test_tool_calls_parsed(self):
        def respond(request):
            return httpx.Response(
                200,
                json={
                    "choices": [
                        {
                            "message": {
                                "content": "Booking now.",
                                "tool_calls": [
                                    {
                                        "id": "call_1",
                                        "type": "function",
                                        "function": {"name": "book_table", "arguments": '{"guests": 2}'},
                                    }
                                ],
                            }
                        }
                    ]
                },
            )

        response = await _provider(respond).generate([{"role": "user", "content": "Table for two"}])

        [call] = response.tool_calls
        assert call.name == "book_table"
        assert call.arguments == {"guests": 2}
        assert call.call_id == "call_1"

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        with pytest.raises(LLMProviderError) as exc_info:
            await _provider(lambda r: httpx.Response(429, text="rate limited")).generate(
                [{"role": "user", "content": "hi"}]
            )
        assert exc_info.value.status_code == 429

    @pytest.mark.asyncio
    async def test_sends_bearer_token(self):
        seen = []

        def respond(request):
            seen.append(request)
            return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

        await _provider(respond).generate([{"role": "user", "content": "hi"}])
        assert seen[0].headers["authorization"] == "Bearer sk-test"
