"""
Batch Coordinator: simultaneous player actions as one LLM turn.

The game client collects what several participants do within a short
window and sends it as one batch. This module formats the batch into a
single user message, records the batch lifecycle, and handles the GM's
two ways of rejecting a response:

- veto: the batch is marked ``vetoed`` and re-sent with the GM's correction
- regenerate: the same prompt is sent again under a new, derived batch id;
  the original batch is left untouched

Lifecycle::

    collecting → sent → completed
                  ↓  ↑      ↓
                 vetoed ←───┘
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ValidationError

from loremaster.config.logging import get_logger
from loremaster.errors import BatchNotFoundError, InvalidRequestError
from loremaster.storage.conversation_store import ConversationStore
from loremaster.storage.models import Batch, BatchMessage, BatchStatus, GMRuling, MessageRole

logger = get_logger(__name__)

BATCH_HEADER = "=== SIMULTANEOUS PLAYER ACTIONS ==="
BATCH_FOOTER = "=== END PLAYER ACTIONS ==="
GM_RULING_TAG = "[GM RULING - MUST FOLLOW]"
DEFAULT_TIME_WINDOW = 10


class ProcessedBatch(BaseModel):
    conversation_id: str
    batch_id: str
    user_message: str
    participant_count: int
    has_gm_rulings: bool = False


class ProcessedVeto(BaseModel):
    conversation_id: str
    veto_message: str
    original_batch_id: str
    correction: str


class ProcessedRegenerate(BaseModel):
    conversation_id: str
    batch_id: str
    original_batch_id: str
    user_message: str


def speaker_label(message: BatchMessage) -> str:
    if message.is_gm:
        return f"GM - {message.user_name}"
    if message.character_name:
        return f"{message.character_name} (Player: {message.user_name})"
    return message.user_name


def format_batch(messages: list[BatchMessage], gm_rulings: list[GMRuling]) -> str:
    """
    Lay out a batch in the simultaneous-actions envelope.

    Participant messages keep their input order; GM rulings follow them.
    An empty batch formats to an empty string.
    """
    if not messages and not gm_rulings:
        return ""

    lines = [
        BATCH_HEADER,
        "The following actions are happening at the same in-game time.",
        "",
    ]
    for message in messages:
        lines.append(f"[{speaker_label(message)}]")
        lines.append(message.content)
        lines.append("")

    for ruling in gm_rulings:
        lines.append(GM_RULING_TAG)
        lines.append(ruling.content)
        lines.append("")

    lines.append(BATCH_FOOTER)
    return "\n".join(lines)


def build_veto_message(correction: str, original_prompt: str) -> str:
    return "\n".join([
        "=== GM VETO - REGENERATE RESPONSE ===",
        "",
        "The GM has vetoed the previous response. Please regenerate with the following correction:",
        "",
        "--- GM CORRECTION ---",
        correction,
        "--- END CORRECTION ---",
        "",
        "Original player actions (respond to these again with the correction applied):",
        "",
        original_prompt,
    ])


def _parse_list(model: type[BaseModel], items: Any, what: str) -> list[Any]:
    if items is None:
        return []
    if not isinstance(items, list):
        raise InvalidRequestError(f"'{what}' must be a list")
    try:
        return [model.model_validate(item) for item in items]
    except ValidationError as e:
        raise InvalidRequestError(f"Invalid {what}: {e.errors()[0]['msg']}") from e


class BatchCoordinator:
    """
    Persists batches and builds the messages sent to the LLM for them.

    Args:
        store: Conversation store holding conversations, messages and batches
    """

    def __init__(self, store: ConversationStore):
        self.store = store

    @staticmethod
    def build_user_message(
        formatted_prompt: str | None, messages: list[BatchMessage], gm_rulings: list[GMRuling]
    ) -> str:
        """The client's own formatting wins; otherwise format the batch here."""
        if formatted_prompt:
            return formatted_prompt
        return format_batch(messages, gm_rulings)

    async def process_batch(
        self, world_id: str, batch_data: dict[str, Any], context: dict[str, Any] | None = None
    ) -> ProcessedBatch:
        """
        Record a flushed batch and its combined user message.

        The batch is created as ``collecting``, the combined message is stored
        in the world's current conversation, and the batch moves to ``sent``.

        Raises:
            InvalidRequestError: If the batch has nothing to send
        """
        context = context or {}
        messages = _parse_list(BatchMessage, batch_data.get("messages"), "messages")
        gm_rulings = _parse_list(GMRuling, batch_data.get("gmRulings"), "gmRulings")

        user_message = self.build_user_message(batch_data.get("formattedPrompt"), messages, gm_rulings)
        if not user_message:
            raise InvalidRequestError("Batch contains no messages")

        conversation = await self.store.get_or_create_conversation(
            world_id, title=context.get("sceneName") or "Session"
        )
        batch = await self.store.create_batch(
            conversation.id,
            world_id,
            messages,
            gm_rulings,
            time_window_seconds=context.get("batchTimerDuration") or DEFAULT_TIME_WINDOW,
            batch_id=batch_data.get("batchId"),
        )

        await self.store.add_message(conversation.id, MessageRole.USER, user_message, context)
        await self.store.update_batch_status(batch.id, BatchStatus.SENT, formatted_prompt=user_message)

        participants = {m.user_id or m.user_name for m in messages}
        logger.info(
            f"Batch {batch.id}: {len(messages)} message(s) from {len(participants)} participant(s), "
            f"{len(gm_rulings)} GM ruling(s)"
        )
        return ProcessedBatch(
            conversation_id=conversation.id,
            batch_id=batch.id,
            user_message=user_message,
            participant_count=len(participants),
            has_gm_rulings=bool(gm_rulings),
        )

    async def _get_world_batch(self, world_id: str, batch_id: str | None) -> Batch:
        if not batch_id:
            raise InvalidRequestError("batchId is required")
        batch = await self.store.get_batch(batch_id)
        if batch is None or batch.world_id != world_id:
            raise BatchNotFoundError(batch_id)
        return batch

    @staticmethod
    def _original_prompt(batch: Batch, original_batch: dict[str, Any] | None) -> str:
        """The prompt the batch was sent with, falling back to what the client remembers."""
        if batch.formatted_prompt:
            return batch.formatted_prompt
        original_batch = original_batch or {}
        if original_batch.get("formattedPrompt"):
            return original_batch["formattedPrompt"]
        return format_batch(batch.messages, batch.gm_rulings)

    async def process_veto(
        self, world_id: str, veto_data: dict[str, Any], context: dict[str, Any] | None = None
    ) -> ProcessedVeto:
        """
        Mark a batch vetoed and store the correction-framed message.

        Raises:
            BatchNotFoundError: If the batch does not exist in this world
            InvalidRequestError: If no correction was given
            BatchTransitionError: If the batch is not in a vetoable state
        """
        correction = (veto_data.get("correction") or "").strip()
        batch = await self._get_world_batch(world_id, veto_data.get("batchId"))
        if not correction:
            raise InvalidRequestError("A correction is required to veto a response")

        await self.store.update_batch_status(batch.id, BatchStatus.VETOED, correction=correction)

        veto_message = build_veto_message(
            correction, self._original_prompt(batch, veto_data.get("originalBatch"))
        )
        await self.store.add_message(batch.conversation_id, MessageRole.USER, veto_message, context)

        logger.info(f"Batch {batch.id} vetoed (veto #{batch.veto_count + 1})")
        return ProcessedVeto(
            conversation_id=batch.conversation_id,
            veto_message=veto_message,
            original_batch_id=batch.id,
            correction=correction,
        )

    async def resubmit(self, batch_id: str) -> Batch:
        """Send a vetoed batch again."""
        return await self.store.update_batch_status(batch_id, BatchStatus.SENT)

    async def complete_batch(self, batch_id: str, response_message_id: int | None) -> Batch:
        """Mark a batch completed and link its response. Repeating the call changes nothing."""
        return await self.store.update_batch_status(
            batch_id, BatchStatus.COMPLETED, response_message_id=response_message_id
        )

    async def process_regenerate(
        self, world_id: str, regenerate_data: dict[str, Any], context: dict[str, Any] | None = None
    ) -> ProcessedRegenerate:
        """
        Send a batch's original prompt again under a derived batch.

        The derived batch is ``<original id>-regen-<n>`` and points back to
        the original through ``parent_batch_id``. The original batch keeps
        its status and veto count.

        Raises:
            BatchNotFoundError: If the batch does not exist in this world
        """
        original = await self._get_world_batch(world_id, regenerate_data.get("batchId"))
        prompt = self._original_prompt(original, regenerate_data.get("originalBatch"))
        if not prompt:
            raise InvalidRequestError(f"Batch {original.id} has nothing to regenerate")

        attempt = await self.store.count_derived_batches(original.id) + 1
        derived = await self.store.create_batch(
            original.conversation_id,
            world_id,
            original.messages,
            original.gm_rulings,
            time_window_seconds=original.time_window_seconds,
            batch_id=f"{original.id}-regen-{attempt}",
            parent_batch_id=original.id,
        )

        await self.store.add_message(original.conversation_id, MessageRole.USER, prompt, context)
        await self.store.update_batch_status(derived.id, BatchStatus.SENT, formatted_prompt=prompt)

        logger.info(f"Regenerating batch {original.id} as {derived.id}")
        return ProcessedRegenerate(
            conversation_id=original.conversation_id,
            batch_id=derived.id,
            original_batch_id=original.id,
            user_message=prompt,
        )

    async def cleanup_old_batches(self, days_old: int = 30) -> int:
        return await self.store.cleanup_old_batches(days_old)
