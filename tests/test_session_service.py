import asyncio
import json

import pytest

from switchboard.services.connection_registry import ConnectionRegistry
from switchboard.services.conversation_service import ConversationStore
from switchboard.services.llm import LLMProvider, LLMProviderError, LLMResponse
from switchboard.services.message_dispatcher import MessageDispatcher
from switchboard.services.session_service import (
    CLOSE_GOING_AWAY,
    CLOSE_NORMAL,
    CLOSE_POLICY_VIOLATION,
    SessionHandler,
    TransportClosed,
)
from switchboard.services.state_machine import SessionState
from switchboard.services.ticket_service import TicketService


class FakeTransport:
    def __init__(self):
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.outbound: asyncio.Queue = asyncio.Queue()
        self.closed = None

    async def receive_text(self) -> str:
        item = await self.inbound.get()
        if item is None:
            raise TransportClosed(CLOSE_NORMAL)
        return item

    async def send_json(self, data: dict) -> None:
        await self.outbound.put(data)

    async def close(self, code: int = CLOSE_NORMAL, reason=None) -> None:
        self.closed = (code, reason)

    def push(self, frame) -> None:
        self.inbound.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def disconnect(self) -> None:
        self.inbound.put_nowait(None)

    async def next_frame(self, timeout: float = 1.0) -> dict:
        return await asyncio.wait_for(self.outbound.get(), timeout=timeout)


class EchoAgent(LLMProvider):
    def __init__(self):
        self.gate = None
        self.error = None
        self.cancelled = False

    async def generate(self, messages, model=None, temperature=0.7, max_tokens=1000, tools=None):
        if self.gate is not None:
            try:
                await self.gate.wait()
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        if self.error is not None:
            raise self.error
        return LLMResponse(content=f"echo: {messages[-1]['content']}", model="echo")


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def tickets():
    return TicketService("test-secret", ttl_seconds=60)


@pytest.fixture
def agent():
    return EchoAgent()


@pytest.fixture
def dispatcher(agent, manager, webchat_channel):
    return MessageDispatcher(agent, manager, ConversationStore(), channel_loader={"c1": webchat_channel}.get)


@pytest.fixture
def issue(tickets, db_session, make_channel):
    db_session.query.return_value.filter.return_value.first.return_value = make_channel()

    def _issue(user_id="u1"):
        return tickets.issue_ticket(db_session, user_id, "c1").token

    return _issue


@pytest.fixture
def start(registry, tickets, dispatcher):
    def _start(**kwargs):
        transport = FakeTransport()
        handler = SessionHandler(transport, registry=registry, tickets=tickets, dispatcher=dispatcher, **kwargs)
        task = asyncio.create_task(handler.run())
        return transport, handler, task

    return _start


async def _authenticate(transport, token):
    assert (await transport.next_frame())["type"] == "connected"
    transport.push({"type": "auth", "token": token})
    frame = await transport.next_frame()
    assert frame["type"] == "auth_success"
    return frame


class TestConnect:
    @pytest.mark.asyncio
    async def test_connected_frame_first(self, start):
        transport, handler, task = start()
        frame = await transport.next_frame()
        assert frame["type"] == "connected"
        assert frame["sessionId"] == handler.session.session_id
        transport.disconnect()
        session = await task
        assert session.state == SessionState.CLOSED
        assert session.close_reason == "ClientClosed"

    @pytest.mark.asyncio
    async def test_registered_while_open(self, start, registry):
        transport, handler, task = start()
        await transport.next_frame()
        assert handler.session.session_id in registry
        transport.disconnect()
        await task
        assert handler.session.session_id not in registry


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_auth_success(self, start, issue, registry):
        transport, handler, task = start()
        frame = await _authenticate(transport, issue())
        assert frame["userId"] == "u1"
        assert frame["channelId"] == "c1"
        assert handler.session.state == SessionState.AUTHENTICATED
        assert registry.sessions_for_user("u1", "c1") == [handler.session.session_id]
        transport.disconnect()
        await task

    @pytest.mark.asyncio
    async def test_auth_timeout(self, start):
        transport, _, task = start(auth_timeout=0.05)
        session = await asyncio.wait_for(task, timeout=1)
        assert session.close_reason == "AuthTimeout"
        assert transport.closed == (CLOSE_POLICY_VIOLATION, "AuthTimeout")

    @pytest.mark.asyncio
    async def test_invalid_ticket(self, start):
        transport, _, task = start()
        await transport.next_frame()
        transport.push({"type": "auth", "token": "not-a-jwt"})
        assert await transport.next_frame() == {"type": "error", "error": "Authentication failed"}
        session = await asyncio.wait_for(task, timeout=1)
        assert session.close_reason == "AuthFailed"
        assert transport.closed == (CLOSE_POLICY_VIOLATION, "AuthFailed")

    @pytest.mark.asyncio
    async def test_ticket_replay_rejected(self, start, issue):
        token = issue()
        first, _, first_task = start()
        await _authenticate(first, token)

        second, _, second_task = start()
        await second.next_frame()
        second.push({"type": "auth", "token": token})
        assert (await second.next_frame())["error"] == "Authentication failed"
        assert (await asyncio.wait_for(second_task, timeout=1)).close_reason == "AuthFailed"

        first.disconnect()
        await first_task

    @pytest.mark.asyncio
    async def test_message_before_auth(self, start, issue):
        transport, _, task = start()
        await transport.next_frame()
        transport.push({"type": "message", "content": "hi"})
        assert await transport.next_frame() == {"type": "error", "error": "Not authenticated"}

        transport.push({"type": "auth", "token": issue()})
        assert (await transport.next_frame())["type"] == "auth_success"
        transport.disconnect()
        await task

    @pytest.mark.asyncio
    async def test_malformed_frame(self, start):
        transport, _, task = start()
        await transport.next_frame()
        transport.push("{not json")
        assert await transport.next_frame() == {"type": "error", "error": "Invalid message format"}
        transport.push("[1, 2]")
        assert await transport.next_frame() == {"type": "error", "error": "Invalid message format"}
        transport.disconnect()
        await task


class TestAuthenticatedSession:
    @pytest.mark.asyncio
    async def test_greeting_then_reply(self, start, issue):
        transport, _, task = start()
        await _authenticate(transport, issue())
        transport.push({"type": "message", "content": "hi", "messageId": "m1"})

        greeting = await transport.next_frame()
        assert greeting["type"] == "message"
        assert greeting["greeting"] is True
        assert greeting["content"] == "Hello! How can I help?"

        reply = await transport.next_frame()
        assert reply["type"] == "message"
        assert reply["content"] == "echo: hi"
        assert reply["messageId"] == "m1"
        transport.disconnect()
        await task

    @pytest.mark.asyncio
    async def test_greeting_once_across_reconnects(self, start, issue):
        transport, _, task = start()
        await _authenticate(transport, issue())
        assert (await transport.next_frame()).get("greeting") is True
        transport.disconnect()
        await task

        for _ in range(10):
            transport, handler, task = start()
            await _authenticate(transport, issue())
            transport.push({"type": "ping"})
            assert (await transport.next_frame())["type"] == "pong"
            transport.disconnect()
            await task
            assert handler.session.greeting_sent is True

    @pytest.mark.asyncio
    async def test_ping_pong(self, start, issue):
        transport, _, task = start()
        await _authenticate(transport, issue())
        await transport.next_frame()  # greeting
        transport.push({"type": "ping"})
        assert (await transport.next_frame())["type"] == "pong"
        transport.disconnect()
        await task

    @pytest.mark.asyncio
    async def test_protocol_errors(self, start, issue):
        transport, _, task = start()
        await _authenticate(transport, issue())
        await transport.next_frame()  # greeting

        transport.push({"type": "auth", "token": "again"})
        assert (await transport.next_frame())["error"] == "Already authenticated"
        transport.push({"type": "typing"})
        assert (await transport.next_frame())["error"] == "Unknown message type: typing"
        transport.push({"type": "message", "content": "   ", "messageId": "m2"})
        assert await transport.next_frame() == {
            "type": "error",
            "error": "Message content is required",
            "messageId": "m2",
        }
        transport.disconnect()
        await task

    @pytest.mark.asyncio
    async def test_agent_failure_reported(self, start, issue, agent):
        agent.error = LLMProviderError("upstream down", status_code=502)
        transport, _, task = start()
        await _authenticate(transport, issue())
        await transport.next_frame()  # greeting
        transport.push({"type": "message", "content": "hi", "messageId": "m1"})
        assert await transport.next_frame() == {
            "type": "error",
            "error": "Agent is unavailable, please try again later",
            "messageId": "m1",
        }
        transport.disconnect()
        await task

    @pytest.mark.asyncio
    async def test_channel_lookup_failure_reported(self, registry, tickets, issue, agent, manager):
        def broken_loader(channel_id):
            raise RuntimeError("database is locked")

        dispatcher = MessageDispatcher(agent, manager, ConversationStore(), channel_loader=broken_loader)
        transport = FakeTransport()
        handler = SessionHandler(transport, registry=registry, tickets=tickets, dispatcher=dispatcher)
        task = asyncio.create_task(handler.run())
        await _authenticate(transport, issue())

        transport.push({"type": "message", "content": "hi", "messageId": "m1"})
        assert await transport.next_frame() == {
            "type": "error",
            "error": "Failed to process message",
            "messageId": "m1",
        }
        transport.push({"type": "ping"})
        assert (await transport.next_frame())["type"] == "pong"
        assert handler.session.state == SessionState.AUTHENTICATED
        assert handler.session.greeting_sent is False
        transport.disconnect()
        await task

    @pytest.mark.asyncio
    async def test_reply_delivered_when_greeting_never_arrives(self, start, issue, dispatcher, monkeypatch):
        async def stalled_greeting(user_id, channel_id):
            await asyncio.Event().wait()

        monkeypatch.setattr(dispatcher, "request_greeting", stalled_greeting)
        transport, handler, task = start(greeting_timeout=0.2)
        await _authenticate(transport, issue())
        transport.push({"type": "message", "content": "hi", "messageId": "m1"})

        reply = await transport.next_frame()
        assert reply["content"] == "echo: hi"
        assert "greeting" not in reply
        assert handler.session.greeting_sent is False
        transport.disconnect()
        await task

    @pytest.mark.asyncio
    async def test_slow_greeting_still_precedes_reply(self, start, issue, dispatcher, monkeypatch):
        gate = asyncio.Event()
        request_greeting = dispatcher.request_greeting

        async def slow_greeting(user_id, channel_id):
            greeting = await request_greeting(user_id, channel_id)
            await gate.wait()
            return greeting

        monkeypatch.setattr(dispatcher, "request_greeting", slow_greeting)
        transport, _, task = start(greeting_timeout=2.0)
        await _authenticate(transport, issue())
        await asyncio.sleep(0.05)
        transport.push({"type": "message", "content": "hi", "messageId": "m1"})
        await asyncio.sleep(0.05)
        assert transport.outbound.empty()

        gate.set()
        assert (await transport.next_frame())["greeting"] is True
        reply = await transport.next_frame()
        assert reply["content"] == "echo: hi"
        assert reply["messageId"] == "m1"
        transport.disconnect()
        await task

    @pytest.mark.asyncio
    async def test_dispatch_timeout(self, start, issue, agent):
        agent.gate = asyncio.Event()
        transport, _, task = start(dispatch_timeout=0.05)
        await _authenticate(transport, issue())
        await transport.next_frame()  # greeting
        transport.push({"type": "message", "content": "hi", "messageId": "m1"})
        assert await transport.next_frame() == {"type": "error", "error": "Request timed out", "messageId": "m1"}
        transport.disconnect()
        await task

    @pytest.mark.asyncio
    async def test_close_cancels_in_flight_dispatch(self, start, issue, agent):
        agent.gate = asyncio.Event()
        transport, handler, task = start()
        await _authenticate(transport, issue())
        await transport.next_frame()  # greeting
        transport.push({"type": "message", "content": "hi", "messageId": "m1"})
        await asyncio.sleep(0.05)

        transport.disconnect()
        await asyncio.wait_for(task, timeout=1)
        assert agent.cancelled
        assert transport.outbound.empty()

    @pytest.mark.asyncio
    async def test_idle_timeout(self, start, issue):
        transport, _, task = start(idle_timeout=0.1)
        await _authenticate(transport, issue())
        session = await asyncio.wait_for(task, timeout=1)
        assert session.close_reason == "IdleTimeout"
        assert transport.closed == (CLOSE_NORMAL, "IdleTimeout")

    @pytest.mark.asyncio
    async def test_keepalive_ping(self, start, issue):
        transport, _, task = start(keepalive_interval=0.05)
        await _authenticate(transport, issue())
        frames = [await transport.next_frame() for _ in range(2)]
        assert "ping" in [frame["type"] for frame in frames]
        transport.disconnect()
        await task

    @pytest.mark.asyncio
    async def test_server_shutdown(self, start, issue):
        transport, _, task = start()
        await _authenticate(transport, issue())
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert transport.closed == (CLOSE_GOING_AWAY, "ServerShutdown")
