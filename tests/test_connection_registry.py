from unittest.mock import AsyncMock, Mock

import pytest

from switchboard.services.connection_registry import ConnectionRegistry


class TestRegistration:
    def test_register_and_get(self):
        registry = ConnectionRegistry()
        transport = Mock()
        registry.register("s1", transport)
        assert registry.get("s1") is transport
        assert "s1" in registry
        assert len(registry) == 1

    def test_duplicate_session_rejected(self):
        registry = ConnectionRegistry()
        registry.register("s1", Mock())
        with pytest.raises(ValueError):
            registry.register("s1", Mock())

    def test_unregister_is_idempotent(self):
        registry = ConnectionRegistry()
        transport = Mock()
        registry.register("s1", transport)
        assert registry.unregister("s1") is transport
        assert registry.unregister("s1") is None
        assert len(registry) == 0


class TestUserBindings:
    def test_sessions_for_user(self):
        registry = ConnectionRegistry()
        registry.register("s1", Mock())
        registry.register("s2", Mock())
        registry.register("s3", Mock())
        registry.bind_user("s1", "u1", "c1")
        registry.bind_user("s2", "u1", "c1")
        registry.bind_user("s3", "u2", "c1")

        assert sorted(registry.sessions_for_user("u1", "c1")) == ["s1", "s2"]
        assert registry.authenticated_count() == 3

    def test_bind_unknown_session(self):
        registry = ConnectionRegistry()
        with pytest.raises(KeyError):
            registry.bind_user("missing", "u1", "c1")

    def test_unregister_drops_binding(self):
        registry = ConnectionRegistry()
        registry.register("s1", Mock())
        registry.bind_user("s1", "u1", "c1")
        registry.unregister("s1")
        assert registry.sessions_for_user("u1", "c1") == []


class TestCloseAll:
    @pytest.mark.asyncio
    async def test_close_all(self):
        registry = ConnectionRegistry()
        first, second = AsyncMock(), AsyncMock()
        second.close.side_effect = RuntimeError("already closed")
        registry.register("s1", first)
        registry.register("s2", second)

        closed = await registry.close_all(code=1001, reason="ServerShutdown")

        assert closed == 1
        first.close.assert_awaited_once_with(code=1001, reason="ServerShutdown")
        assert len(registry) == 0
