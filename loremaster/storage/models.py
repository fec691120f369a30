"""
Persistent record types.

These are the rows the conversation store reads and writes. They are plain
Pydantic models so handlers can hand them straight to the frame codec via
``model_dump(mode="json", by_alias=True)``, which emits the camelCase keys
the game client expects.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _Record(BaseModel):
    """Shared config: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SUMMARY = "summary"


class BatchStatus(str, Enum):
    COLLECTING = "collecting"
    SENT = "sent"
    COMPLETED = "completed"
    VETOED = "vetoed"


# Allowed status changes. A veto may follow either the send itself or the
# response it produced; resubmission after a veto goes back to SENT.
# COMPLETED -> VETOED is deliberately allowed on top of the four basic
# transitions: a finished response can still be rejected by the GM.
BATCH_TRANSITIONS: dict[BatchStatus, frozenset[BatchStatus]] = {
    BatchStatus.COLLECTING: frozenset({BatchStatus.SENT}),
    BatchStatus.SENT: frozenset({BatchStatus.COMPLETED, BatchStatus.VETOED}),
    BatchStatus.COMPLETED: frozenset({BatchStatus.VETOED}),
    BatchStatus.VETOED: frozenset({BatchStatus.SENT}),
}


class Conversation(_Record):
    id: str
    world_id: str
    title: str | None = None
    total_tokens: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ConversationStats(_Record):
    message_count: int = 0
    total_tokens: int = 0
    first_message: datetime | None = None
    last_message: datetime | None = None


class Message(_Record):
    id: int
    conversation_id: str
    role: MessageRole
    content: str
    token_count: int = 0
    context_snapshot: dict[str, Any] | None = None
    created_at: datetime | None = None

    model_config = ConfigDict(use_enum_values=True)


class BatchMessage(_Record):
    """One participant's action inside a batch, as reported by the client."""

    user_id: str | None = None
    user_name: str = "Unknown"
    character_name: str | None = None
    content: str
    is_gm: bool = Field(default=False, alias="isGM")

    model_config = ConfigDict(extra="allow")


class GMRuling(_Record):
    content: str
    user_name: str | None = None

    model_config = ConfigDict(extra="allow")


class Batch(_Record):
    id: str
    conversation_id: str
    world_id: str
    messages: list[BatchMessage] = Field(default_factory=list)
    gm_rulings: list[GMRuling] = Field(default_factory=list)
    formatted_prompt: str | None = None
    status: BatchStatus = BatchStatus.COLLECTING
    veto_count: int = 0
    veto_corrections: list[str] = Field(default_factory=list)
    response_message_id: int | None = None
    parent_batch_id: str | None = None
    time_window_seconds: int | None = None
    created_at: datetime | None = None
    sent_at: datetime | None = None
    completed_at: datetime | None = None


class CanonEntry(_Record):
    id: int
    world_id: str
    conversation_id: str
    content: str
    published_by: str
    published_by_name: str | None = None
    original_message_id: int | None = None
    scene_context: Any | None = None
    token_count: int = 0
    created_at: datetime | None = None
