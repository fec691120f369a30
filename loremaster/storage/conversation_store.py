"""
Conversation store backed by SQLite through SQLAlchemy.

Holds everything the orchestration core persists per world:

- conversations and their messages (user / assistant / summary turns)
- message batches and their lifecycle (collecting → sent → completed, vetoed)
- canon entries, the GM-curated official history of a world

Example:
    >>> async with ConversationStore("data/loremaster.db") as store:
    ...     conversation = await store.get_or_create_conversation("world-1")
    ...     await store.add_message(conversation.id, MessageRole.USER, "I open the door")

ORM sessions block, so each unit of work runs on a worker thread through
``asyncio.to_thread``. A lock keeps a single unit of work in flight, which
also lets the in-memory database share one connection across threads.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Iterable, TypeVar

from sqlalchemy import Engine, create_engine, delete, event, func, literal_column, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from loremaster.config.logging import get_logger
from loremaster.context.tokens import estimate_tokens
from loremaster.errors import BatchNotFoundError, BatchTransitionError, StorageError
from loremaster.storage.models import (
    BATCH_TRANSITIONS,
    Batch,
    BatchMessage,
    BatchStatus,
    CanonEntry,
    Conversation,
    ConversationStats,
    GMRuling,
    Message,
    MessageRole,
)
from loremaster.storage.tables import (
    Base,
    BatchRow,
    CanonRow,
    ConversationRow,
    MessageRow,
    columns,
    utc_now_iso,
)

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_CONVERSATION_TITLE = "New Session"

# Insertion order breaks ties between rows stamped in the same microsecond
_CONVERSATION_ROWID = literal_column("conversations.rowid")
_BATCH_ROWID = literal_column("message_batches.rowid")


def _enable_wal(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def _transact(sessions: sessionmaker[Session], work: Callable[[Session], T]) -> T:
    with sessions.begin() as session:
        return work(session)


class ConversationStore:
    """
    SQLite persistence for conversations, messages, batches and canon.

    Token counts are estimated on write (see ``estimate_tokens``) and kept
    denormalized on each row, so context building never re-measures text.

    Args:
        db_path: Path to the SQLite file, or ``":memory:"`` for tests
    """

    def __init__(self, db_path: Path | str):
        self.db_path = str(db_path)
        self._engine: Engine | None = None
        self._sessions: sessionmaker[Session] | None = None
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Open the database and create the tables if needed."""
        if self._engine is not None:
            return

        if self.db_path == ":memory:":
            engine = create_engine(
                "sqlite://",
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        else:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            engine = create_engine(
                f"sqlite:///{self.db_path}",
                connect_args={"check_same_thread": False},
            )
            event.listen(engine, "connect", _enable_wal)

        try:
            await asyncio.to_thread(Base.metadata.create_all, engine)
        except SQLAlchemyError as e:
            engine.dispose()
            logger.error(f"Failed to open database at {self.db_path}: {e}")
            raise StorageError(f"Could not open database: {e}") from e

        self._engine = engine
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)
        logger.info(f"Conversation store initialized at {self.db_path}")

    async def shutdown(self) -> None:
        """Dispose of the engine and its connections."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._sessions = None
            logger.debug("Conversation store closed")

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()
        return False

    async def run(self, work: Callable[[Session], T]) -> T:
        """
        Run ``work`` in one transaction on a worker thread.

        The transaction commits when ``work`` returns and rolls back when it
        raises. Domain errors raised by ``work`` propagate unchanged; database
        errors become ``StorageError``.
        """
        if self._sessions is None:
            raise StorageError(
                "Conversation store not initialized. "
                "Use 'async with ConversationStore(...) as store:' or call await store.initialize()"
            )

        async with self._lock:
            try:
                return await asyncio.to_thread(_transact, self._sessions, work)
            except SQLAlchemyError as e:
                logger.error(f"Database error: {e}")
                raise StorageError(f"Database error: {e}") from e

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def get_or_create_conversation(
        self, world_id: str, title: str | None = None
    ) -> Conversation:
        """Return the world's most recently updated conversation, creating one if none exist."""

        def _current(session: Session) -> Conversation:
            row = session.scalars(
                select(ConversationRow)
                .where(ConversationRow.world_id == world_id)
                .order_by(ConversationRow.updated_at.desc(), _CONVERSATION_ROWID.desc())
                .limit(1)
            ).first()
            if row is None:
                row = self._new_conversation(session, world_id, title or DEFAULT_CONVERSATION_TITLE)
            return Conversation(**columns(row))

        return await self.run(_current)

    async def create_conversation(
        self, world_id: str, title: str = DEFAULT_CONVERSATION_TITLE
    ) -> Conversation:
        return await self.run(
            lambda session: Conversation(**columns(self._new_conversation(session, world_id, title)))
        )

    @staticmethod
    def _new_conversation(session: Session, world_id: str, title: str) -> ConversationRow:
        now = utc_now_iso()
        row = ConversationRow(
            id=str(uuid.uuid4()),
            world_id=world_id,
            title=title,
            total_tokens=0,
            created_at=now,
            updated_at=now,
        )
        session.add(row)
        session.flush()
        logger.info(f"Created conversation {row.id} for world {world_id}")
        return row

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        def _get(session: Session) -> Conversation | None:
            row = session.get(ConversationRow, conversation_id)
            return Conversation(**columns(row)) if row is not None else None

        return await self.run(_get)

    async def list_conversations(self, world_id: str) -> list[Conversation]:
        def _list(session: Session) -> list[Conversation]:
            rows = session.scalars(
                select(ConversationRow)
                .where(ConversationRow.world_id == world_id)
                .order_by(ConversationRow.updated_at.desc(), _CONVERSATION_ROWID.desc())
            ).all()
            return [Conversation(**columns(row)) for row in rows]

        return await self.run(_list)

    async def update_conversation_title(self, conversation_id: str, title: str) -> bool:
        def _rename(session: Session) -> bool:
            row = session.get(ConversationRow, conversation_id)
            if row is None:
                return False
            row.title = title
            row.updated_at = utc_now_iso()
            return True

        return await self.run(_rename)

    async def touch_conversation(self, conversation_id: str) -> bool:
        """Bump ``updated_at`` so the conversation becomes the world's current one."""

        def _touch(session: Session) -> bool:
            row = session.get(ConversationRow, conversation_id)
            if row is None:
                return False
            row.updated_at = utc_now_iso()
            return True

        return await self.run(_touch)

    async def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation with its messages and batches. Canon entries are kept."""

        def _delete(session: Session) -> bool:
            row = session.get(ConversationRow, conversation_id)
            if row is None:
                return False
            session.delete(row)
            return True

        deleted = await self.run(_delete)
        if deleted:
            logger.info(f"Deleted conversation {conversation_id}")
        return deleted

    async def clear_conversation(self, conversation_id: str) -> bool:
        """Remove every message from a conversation and reset its token total."""

        def _clear(session: Session) -> bool:
            row = session.get(ConversationRow, conversation_id)
            if row is None:
                return False
            row.messages.clear()
            row.total_tokens = 0
            row.updated_at = utc_now_iso()
            return True

        cleared = await self.run(_clear)
        if cleared:
            logger.info(f"Cleared messages from conversation {conversation_id}")
        return cleared

    async def get_conversation_stats(self, conversation_id: str) -> ConversationStats:
        def _stats(session: Session) -> ConversationStats:
            message_count, total_tokens, first_message, last_message = session.execute(
                select(
                    func.count(MessageRow.id),
                    func.sum(MessageRow.token_count),
                    func.min(MessageRow.created_at),
                    func.max(MessageRow.created_at),
                ).where(MessageRow.conversation_id == conversation_id)
            ).one()
            return ConversationStats(
                message_count=message_count or 0,
                total_tokens=total_tokens or 0,
                first_message=first_message,
                last_message=last_message,
            )

        return await self.run(_stats)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def add_message(
        self,
        conversation_id: str,
        role: MessageRole | str,
        content: str,
        context_snapshot: dict[str, Any] | None = None,
    ) -> Message:
        """Append a message and add its token estimate to the conversation total."""
        role = MessageRole(role)
        token_count = estimate_tokens(content)

        def _add(session: Session) -> Message:
            now = utc_now_iso()
            row = MessageRow(
                conversation_id=conversation_id,
                role=role.value,
                content=content,
                context_snapshot=context_snapshot,
                token_count=token_count,
                created_at=now,
            )
            session.add(row)

            conversation = session.get(ConversationRow, conversation_id)
            if conversation is not None:
                conversation.updated_at = now
                conversation.total_tokens += token_count

            session.flush()
            return Message(**columns(row))

        return await self.run(_add)

    async def get_messages(self, conversation_id: str, limit: int | None = None) -> list[Message]:
        """Messages in insertion order. ``limit`` keeps the oldest ``limit`` rows."""

        def _list(session: Session) -> list[Message]:
            query = (
                select(MessageRow)
                .where(MessageRow.conversation_id == conversation_id)
                .order_by(MessageRow.id.asc())
            )
            if limit is not None:
                query = query.limit(limit)
            return [Message(**columns(row)) for row in session.scalars(query)]

        return await self.run(_list)

    async def store_summary(
        self, conversation_id: str, summary: str, summarized_up_to_message_id: int | None
    ) -> Message:
        """Append a ``summary`` message covering everything up to the given message id."""
        message = await self.add_message(
            conversation_id,
            MessageRole.SUMMARY,
            summary,
            {"summarizedUpToMessageId": summarized_up_to_message_id},
        )
        logger.info(f"Stored summary for conversation {conversation_id}")
        return message

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def create_batch(
        self,
        conversation_id: str,
        world_id: str,
        messages: Iterable[BatchMessage],
        gm_rulings: Iterable[GMRuling] = (),
        time_window_seconds: int | None = None,
        batch_id: str | None = None,
        parent_batch_id: str | None = None,
    ) -> Batch:
        """Persist a batch in ``collecting`` state.

        The client's batch id is reused as the primary key when given so a
        later veto for that id finds this row.
        """
        messages = list(messages)
        gm_rulings = list(gm_rulings)
        batch_id = batch_id or str(uuid.uuid4())

        def _create(session: Session) -> Batch:
            if session.get(BatchRow, batch_id) is not None:
                raise StorageError(f"Batch {batch_id} already exists")

            row = BatchRow(
                id=batch_id,
                conversation_id=conversation_id,
                world_id=world_id,
                messages=[m.model_dump(mode="json", by_alias=True) for m in messages],
                gm_rulings=[r.model_dump(mode="json", by_alias=True) for r in gm_rulings],
                parent_batch_id=parent_batch_id,
                time_window_seconds=time_window_seconds,
                status=BatchStatus.COLLECTING.value,
                veto_count=0,
                veto_corrections=[],
                created_at=utc_now_iso(),
            )
            session.add(row)
            session.flush()
            return self._to_batch(row)

        batch = await self.run(_create)
        logger.info(f"Created batch {batch.id} for conversation {conversation_id}")
        return batch

    async def get_batch(self, batch_id: str) -> Batch | None:
        def _get(session: Session) -> Batch | None:
            row = session.get(BatchRow, batch_id)
            return self._to_batch(row) if row is not None else None

        return await self.run(_get)

    async def get_last_batch_for_conversation(self, conversation_id: str) -> Batch | None:
        def _last(session: Session) -> Batch | None:
            row = session.scalars(
                select(BatchRow)
                .where(BatchRow.conversation_id == conversation_id)
                .order_by(BatchRow.created_at.desc(), _BATCH_ROWID.desc())
                .limit(1)
            ).first()
            return self._to_batch(row) if row is not None else None

        return await self.run(_last)

    async def count_derived_batches(self, parent_batch_id: str) -> int:
        """Number of regenerated batches that point back at ``parent_batch_id``."""
        return await self.run(
            lambda session: session.scalar(
                select(func.count())
                .select_from(BatchRow)
                .where(BatchRow.parent_batch_id == parent_batch_id)
            )
        )

    async def update_batch_status(
        self,
        batch_id: str,
        status: BatchStatus | str,
        *,
        formatted_prompt: str | None = None,
        response_message_id: int | None = None,
        correction: str | None = None,
    ) -> Batch:
        """
        Move a batch to ``status`` and record the data that goes with it.

        - ``sent``: stamps ``sent_at`` and stores the formatted prompt
        - ``completed``: stamps ``completed_at`` and links the response message
        - ``vetoed``: increments ``veto_count`` and appends the correction

        Completing an already completed batch changes nothing.

        Raises:
            BatchNotFoundError: If no batch has this id
            BatchTransitionError: If the lifecycle does not allow the change
        """
        status = BatchStatus(status)

        def _update(session: Session) -> Batch:
            row = session.get(BatchRow, batch_id)
            if row is None:
                raise BatchNotFoundError(batch_id)

            current = BatchStatus(row.status)
            if current == status == BatchStatus.COMPLETED:
                return self._to_batch(row)
            if status not in BATCH_TRANSITIONS[current]:
                raise BatchTransitionError(batch_id, current.value, status.value)

            now = utc_now_iso()
            row.status = status.value

            if status == BatchStatus.SENT:
                row.sent_at = now
                if formatted_prompt:
                    row.formatted_prompt = formatted_prompt

            elif status == BatchStatus.COMPLETED:
                row.completed_at = now
                if response_message_id is not None:
                    row.response_message_id = response_message_id

            elif status == BatchStatus.VETOED:
                row.veto_count += 1
                if correction:
                    # JSON columns only notice reassignment
                    row.veto_corrections = [*row.veto_corrections, correction]

            session.flush()
            logger.debug(f"Batch {batch_id}: {current.value} -> {status.value}")
            return self._to_batch(row)

        return await self.run(_update)

    async def cleanup_old_batches(self, days_old: int = 30) -> int:
        """Delete completed or vetoed batches created more than ``days_old`` days ago."""
        cutoff = (datetime.now(UTC) - timedelta(days=days_old)).isoformat(timespec="microseconds")

        def _cleanup(session: Session) -> int:
            result = session.execute(
                delete(BatchRow)
                .where(
                    BatchRow.status.in_([BatchStatus.COMPLETED.value, BatchStatus.VETOED.value]),
                    BatchRow.created_at < cutoff,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

        deleted = await self.run(_cleanup)
        if deleted > 0:
            logger.info(f"Cleaned up {deleted} old batches")
        return deleted

    @staticmethod
    def _to_batch(row: BatchRow) -> Batch:
        return Batch.model_validate(columns(row))

    # ------------------------------------------------------------------
    # Canon
    # ------------------------------------------------------------------

    async def publish_to_canon(
        self,
        world_id: str,
        conversation_id: str,
        content: str,
        *,
        published_by: str | None = None,
        published_by_name: str | None = None,
        original_message_id: int | None = None,
        scene_context: Any | None = None,
    ) -> CanonEntry:
        """Append an entry to the world's official history."""

        def _publish(session: Session) -> CanonEntry:
            row = CanonRow(
                world_id=world_id,
                conversation_id=conversation_id,
                content=content,
                published_by=published_by or "unknown",
                published_by_name=published_by_name or "GM",
                original_message_id=original_message_id,
                scene_context=scene_context,
                token_count=estimate_tokens(content),
                created_at=utc_now_iso(),
            )
            session.add(row)
            session.flush()
            return CanonEntry(**columns(row))

        entry = await self.run(_publish)
        logger.info(f"Published canon entry {entry.id} for world {world_id}")
        return entry

    async def get_canon_entries(
        self, world_id: str, limit: int | None = None, offset: int = 0
    ) -> list[CanonEntry]:
        """Canon entries in publication order."""

        def _list(session: Session) -> list[CanonEntry]:
            query = select(CanonRow).where(CanonRow.world_id == world_id).order_by(CanonRow.id.asc())
            if limit is not None:
                query = query.limit(limit).offset(offset)
            return [CanonEntry(**columns(row)) for row in session.scalars(query)]

        return await self.run(_list)

    async def get_canon_entry(self, canon_id: int) -> CanonEntry | None:
        def _get(session: Session) -> CanonEntry | None:
            row = session.get(CanonRow, canon_id)
            return CanonEntry(**columns(row)) if row is not None else None

        return await self.run(_get)

    async def get_canon_count(self, world_id: str) -> int:
        return await self.run(
            lambda session: session.scalar(
                select(func.count()).select_from(CanonRow).where(CanonRow.world_id == world_id)
            )
        )

    async def update_canon_entry(self, canon_id: int, content: str, corrected_by: str | None) -> bool:
        """Replace the text of a canon entry (GM correction)."""

        def _update(session: Session) -> bool:
            row = session.get(CanonRow, canon_id)
            if row is None:
                return False
            row.content = content
            row.token_count = estimate_tokens(content)
            return True

        updated = await self.run(_update)
        if updated:
            logger.info(f"Canon entry {canon_id} updated by {corrected_by}")
        return updated

    async def delete_canon_entry(self, canon_id: int) -> bool:
        """Remove a canon entry (GM retcon)."""

        def _delete(session: Session) -> bool:
            row = session.get(CanonRow, canon_id)
            if row is None:
                return False
            session.delete(row)
            return True

        deleted = await self.run(_delete)
        if deleted:
            logger.info(f"Canon entry {canon_id} deleted (retconned)")
        return deleted
