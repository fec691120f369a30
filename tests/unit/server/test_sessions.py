"""
Unit tests for the Session Registry.

Tests cover:
- Authentication (API key storage, missing world / key)
- One session per world, replacement by a newer connection
- GM presence tracking
- Unregistering, including stale connections closing late
"""

import json

import pytest
import pytest_asyncio

from loremaster.errors import AuthError, ForbiddenError, UnauthenticatedError
from loremaster.server.sessions import Identity, SessionRegistry
from loremaster.storage.conversation_store import ConversationStore
from loremaster.storage.credentials_store import CredentialsStore


class FakeConnection:
    def __init__(self):
        self.sent: list[str] = []

    async def send(self, message: str) -> None:
        self.sent.append(message)


@pytest_asyncio.fixture
async def credentials():
    async with ConversationStore(":memory:") as store:
        yield CredentialsStore(store)


@pytest.fixture
def registry(credentials):
    return SessionRegistry(credentials)


GM = Identity(world_name="Hope's Last Day", user_id="gm-1", user_name="Dana", is_gm=True)
PLAYER = Identity(user_id="p-1", user_name="Alice")


class TestAuthenticate:

    @pytest.mark.asyncio
    async def test_first_auth_stores_key(self, registry, credentials):
        connection = FakeConnection()
        session = await registry.authenticate(connection, "world-1", GM, "sk-one")

        assert session.world_id == "world-1"
        assert session.is_gm is True
        assert session.world_name == "Hope's Last Day"
        assert await credentials.get_api_key("world-1") == "sk-one"
        assert registry.lookup("world-1") is session
        assert registry.session_for(connection) is session
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_later_auth_uses_stored_key(self, registry):
        await registry.authenticate(FakeConnection(), "world-1", GM, "sk-one")
        session = await registry.authenticate(FakeConnection(), "world-1", PLAYER)
        assert session.user_name == "Alice"

    @pytest.mark.asyncio
    async def test_world_id_required(self, registry):
        with pytest.raises(AuthError, match="World ID is required"):
            await registry.authenticate(FakeConnection(), None, GM, "sk")

    @pytest.mark.asyncio
    async def test_key_required_for_first_time(self, registry):
        with pytest.raises(AuthError, match="API key required"):
            await registry.authenticate(FakeConnection(), "world-1", GM)
        assert registry.lookup("world-1") is None


class TestReplacement:

    @pytest.mark.asyncio
    async def test_newer_connection_takes_over_world(self, registry):
        old, new = FakeConnection(), FakeConnection()
        await registry.authenticate(old, "world-1", GM, "sk")
        session = await registry.authenticate(new, "world-1", PLAYER)

        assert registry.lookup("world-1") is session
        assert registry.session_for(old) is None
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_stale_connection_closing_does_not_evict_replacement(self, registry):
        old, new = FakeConnection(), FakeConnection()
        await registry.authenticate(old, "world-1", GM, "sk")
        session = await registry.authenticate(new, "world-1", GM)

        assert registry.unregister(old) is None
        assert registry.lookup("world-1") is session

    @pytest.mark.asyncio
    async def test_replaced_gm_no_longer_counts(self, registry):
        old, new = FakeConnection(), FakeConnection()
        await registry.authenticate(old, "world-1", GM, "sk")
        await registry.authenticate(new, "world-1", PLAYER)
        assert registry.has_active_gm("world-1") is False

    @pytest.mark.asyncio
    async def test_connection_moving_to_another_world(self, registry):
        connection = FakeConnection()
        await registry.authenticate(connection, "world-1", GM, "sk")
        await registry.authenticate(connection, "world-2", GM, "sk")

        assert registry.lookup("world-1") is None
        assert registry.lookup("world-2").connection is connection
        assert registry.has_active_gm("world-1") is False

    @pytest.mark.asyncio
    async def test_reauth_on_same_connection_updates_role(self, registry):
        connection = FakeConnection()
        await registry.authenticate(connection, "world-1", GM, "sk")
        await registry.authenticate(connection, "world-1", PLAYER)
        assert registry.session_for(connection).is_gm is False
        assert registry.active_gm_count("world-1") == 0


class TestUnregister:

    @pytest.mark.asyncio
    async def test_unregister_owner(self, registry):
        connection = FakeConnection()
        session = await registry.authenticate(connection, "world-1", GM, "sk")

        assert registry.unregister(connection) is session
        assert registry.lookup("world-1") is None
        assert registry.has_active_gm("world-1") is False
        assert len(registry) == 0

    def test_unregister_unknown_connection(self, registry):
        assert registry.unregister(FakeConnection()) is None


class TestGuards:

    @pytest.mark.asyncio
    async def test_require_auth(self, registry):
        with pytest.raises(UnauthenticatedError):
            registry.require_auth(None)
        session = await registry.authenticate(FakeConnection(), "world-1", PLAYER, "sk")
        assert registry.require_auth(session) is session

    @pytest.mark.asyncio
    async def test_require_gm(self, registry):
        player = await registry.authenticate(FakeConnection(), "world-1", PLAYER, "sk")
        with pytest.raises(ForbiddenError):
            registry.require_gm(player)
        with pytest.raises(UnauthenticatedError):
            registry.require_gm(None)

        gm = await registry.authenticate(FakeConnection(), "world-2", GM, "sk")
        assert registry.require_gm(gm) is gm


class TestPush:

    @pytest.mark.asyncio
    async def test_push_sends_json(self, registry):
        connection = FakeConnection()
        session = await registry.authenticate(connection, "world-1", GM, "sk")
        await session.push({"type": "tool-execute", "callId": "tool_1"})
        assert json.loads(connection.sent[0]) == {"type": "tool-execute", "callId": "tool_1"}

    @pytest.mark.asyncio
    async def test_connection_not_serialized(self, registry):
        session = await registry.authenticate(FakeConnection(), "world-1", GM, "sk")
        assert "connection" not in session.model_dump()
