"""
Session Registry: one authenticated connection per world.

A world is the unit of isolation (credentials, conversations, tool
routing). When a second connection authenticates for a world already in
the registry, it takes the world over and the old one is forgotten.
GM presence is tracked separately so prompts can tell whether a human GM
is at the table.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, ConfigDict, Field

from loremaster.config.logging import get_logger
from loremaster.errors import AuthError, ForbiddenError, UnauthenticatedError

if TYPE_CHECKING:
    from loremaster.storage.credentials_store import CredentialsStore

logger = get_logger(__name__)


class Connection(Protocol):
    """The part of a WebSocket connection the core relies on."""

    async def send(self, message: str) -> None: ...


class Identity(BaseModel):
    """Who is on the other end of a connection, as reported during auth."""

    world_name: str | None = None
    user_id: str | None = None
    user_name: str | None = None
    is_gm: bool = False


class Session(BaseModel):
    world_id: str
    world_name: str | None = None
    user_id: str | None = None
    user_name: str | None = None
    is_gm: bool = False
    connection: Any = Field(exclude=True)
    connected_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    model_config = ConfigDict(arbitrary_types_allowed=True)

    async def push(self, frame: dict[str, Any]) -> None:
        """Send an unsolicited frame (e.g. ``tool-execute``) to this session's client."""
        await self.connection.send(json.dumps(frame))


class SessionRegistry:
    """
    Live sessions keyed by world id, plus the session bound to each connection.

    Args:
        credentials: Store holding the API key of each world
    """

    def __init__(self, credentials: CredentialsStore):
        self.credentials = credentials
        self._by_world: dict[str, Session] = {}
        self._by_connection: dict[int, Session] = {}
        self._gm_connections: dict[str, set[int]] = {}

    def __len__(self) -> int:
        return len(self._by_world)

    async def authenticate(
        self,
        connection: Connection,
        world_id: str | None,
        identity: Identity,
        api_key: str | None = None,
    ) -> Session:
        """
        Register ``connection`` as the live session for ``world_id``.

        An API key supplied here is stored for the world; otherwise a key
        must already be on file.

        Raises:
            AuthError: If the world id is missing or the world has no API key
        """
        if not world_id:
            raise AuthError("World ID is required")

        if api_key:
            await self.credentials.store_api_key(world_id, api_key)
        elif not await self.credentials.has_api_key(world_id):
            raise AuthError("API key required for first-time setup")

        # A connection re-authenticating for another world leaves the old one
        previous = self._by_connection.get(id(connection))
        if previous is not None and previous.world_id != world_id:
            self.unregister(connection)

        replaced = self._by_world.get(world_id)
        if replaced is not None and replaced.connection is not connection:
            self._by_connection.pop(id(replaced.connection), None)
            self._gm_connections.get(world_id, set()).discard(id(replaced.connection))
            logger.info(f"World {world_id}: new connection replaces the previous session")

        session = Session(
            world_id=world_id,
            world_name=identity.world_name,
            user_id=identity.user_id,
            user_name=identity.user_name,
            is_gm=identity.is_gm,
            connection=connection,
        )
        self._by_world[world_id] = session
        self._by_connection[id(connection)] = session

        gm_connections = self._gm_connections.setdefault(world_id, set())
        if identity.is_gm:
            gm_connections.add(id(connection))
        else:
            gm_connections.discard(id(connection))

        logger.info(
            f"Authenticated world {world_id} ({identity.world_name or 'unnamed'}) "
            f"as {identity.user_name or 'unknown user'}{' [GM]' if identity.is_gm else ''}"
        )
        return session

    def lookup(self, world_id: str) -> Session | None:
        return self._by_world.get(world_id)

    def session_for(self, connection: Connection) -> Session | None:
        return self._by_connection.get(id(connection))

    def unregister(self, connection: Connection) -> Session | None:
        """
        Forget a connection that closed or moved to another world.

        The world entry is only removed if this connection still owns it, so
        a stale socket closing late cannot evict its replacement.
        """
        session = self._by_connection.pop(id(connection), None)
        if session is None:
            return None

        gm_connections = self._gm_connections.get(session.world_id)
        if gm_connections is not None:
            gm_connections.discard(id(connection))
            if not gm_connections:
                del self._gm_connections[session.world_id]

        current = self._by_world.get(session.world_id)
        if current is not None and current.connection is connection:
            del self._by_world[session.world_id]
            logger.info(f"Session closed for world {session.world_id}")
        return session

    def has_active_gm(self, world_id: str) -> bool:
        return self.active_gm_count(world_id) > 0

    def active_gm_count(self, world_id: str) -> int:
        return len(self._gm_connections.get(world_id, ()))

    @staticmethod
    def require_auth(session: Session | None) -> Session:
        if session is None:
            raise UnauthenticatedError()
        return session

    @classmethod
    def require_gm(cls, session: Session | None) -> Session:
        session = cls.require_auth(session)
        if not session.is_gm:
            raise ForbiddenError()
        return session
