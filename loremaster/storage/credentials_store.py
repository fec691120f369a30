"""
Per-world API key storage.

Keys live in the same SQLite database as conversations. They are stored as
given; encrypting them at rest is left to the deployment.
"""

from sqlalchemy.orm import Session

from loremaster.config.logging import get_logger
from loremaster.storage.conversation_store import ConversationStore
from loremaster.storage.tables import WorldCredential, utc_now_iso

logger = get_logger(__name__)


class CredentialsStore:
    """API key per world, sharing the conversation store's engine."""

    def __init__(self, conversation_store: ConversationStore):
        self._store = conversation_store

    async def store_api_key(self, world_id: str, api_key: str) -> None:
        def _store(session: Session) -> None:
            now = utc_now_iso()
            row = session.get(WorldCredential, world_id)
            if row is None:
                session.add(
                    WorldCredential(world_id=world_id, api_key=api_key, created_at=now, updated_at=now)
                )
            else:
                row.api_key = api_key
                row.updated_at = now

        await self._store.run(_store)
        logger.info(f"API key stored for world: {world_id}")

    async def get_api_key(self, world_id: str) -> str | None:
        def _get(session: Session) -> str | None:
            row = session.get(WorldCredential, world_id)
            return row.api_key if row is not None else None

        return await self._store.run(_get)

    async def has_api_key(self, world_id: str) -> bool:
        return await self.get_api_key(world_id) is not None

    async def delete_api_key(self, world_id: str) -> bool:
        def _delete(session: Session) -> bool:
            row = session.get(WorldCredential, world_id)
            if row is None:
                return False
            session.delete(row)
            return True

        deleted = await self._store.run(_delete)
        if deleted:
            logger.info(f"API key deleted for world: {world_id}")
        return deleted
