"""
SQLAlchemy ORM tables for the Loremaster database.

The pydantic records in ``storage.models`` are what the rest of the package
sees; these classes only describe how those records are laid out in SQLite.
Timestamps are ISO8601 strings so ordering by them matches insertion order.
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds")


class Base(DeclarativeBase):
    pass


class ConversationRow(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    world_id: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[str] = mapped_column(String(50), nullable=False, default=utc_now_iso)
    updated_at: Mapped[str] = mapped_column(String(50), nullable=False, default=utc_now_iso)

    messages: Mapped[list["MessageRow"]] = relationship(
        back_populates="conversation", cascade="all, delete-orphan", order_by="MessageRow.id"
    )
    batches: Mapped[list["BatchRow"]] = relationship(
        back_populates="conversation", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("idx_conversations_world", "world_id"),)


class MessageRow(Base):
    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    context_snapshot: Mapped[dict[str, Any] | None] = mapped_column(
        JSON(none_as_null=True), nullable=True
    )
    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[str] = mapped_column(String(50), nullable=False, default=utc_now_iso)

    conversation: Mapped[ConversationRow] = relationship(back_populates="messages")

    # Message ids are never reused, summaries point at them
    __table_args__ = (
        Index("idx_messages_conversation", "conversation_id"),
        {"sqlite_autoincrement": True},
    )


class BatchRow(Base):
    __tablename__ = "message_batches"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    world_id: Mapped[str] = mapped_column(String(255), nullable=False)
    messages: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    gm_rulings: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    formatted_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_message_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    parent_batch_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="collecting")
    veto_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    veto_corrections: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    time_window_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[str] = mapped_column(String(50), nullable=False, default=utc_now_iso)
    sent_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    completed_at: Mapped[str | None] = mapped_column(String(50), nullable=True)

    conversation: Mapped[ConversationRow] = relationship(back_populates="batches")

    __table_args__ = (
        Index("idx_batches_conversation", "conversation_id"),
        Index("idx_batches_world", "world_id"),
        Index("idx_batches_status", "status"),
        Index("idx_batches_parent", "parent_batch_id"),
    )


class CanonRow(Base):
    """Canon outlives the conversation it was published from, so no foreign key."""

    __tablename__ = "canon_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    world_id: Mapped[str] = mapped_column(String(255), nullable=False)
    conversation_id: Mapped[str] = mapped_column(String(36), nullable=False)
    original_message_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    published_by: Mapped[str] = mapped_column(String(255), nullable=False)
    published_by_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    scene_context: Mapped[Any] = mapped_column(JSON(none_as_null=True), nullable=True)
    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[str] = mapped_column(String(50), nullable=False, default=utc_now_iso)

    __table_args__ = (
        Index("idx_canon_world", "world_id"),
        {"sqlite_autoincrement": True},
    )


class WorldCredential(Base):
    __tablename__ = "world_credentials"

    world_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    api_key: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[str] = mapped_column(String(50), nullable=False, default=utc_now_iso)
    updated_at: Mapped[str] = mapped_column(String(50), nullable=False, default=utc_now_iso)


def columns(row: Base) -> dict[str, Any]:
    """Column values of a row, keyed by attribute name, for building pydantic records."""
    return {column.key: getattr(row, column.key) for column in row.__table__.columns}
