"""
Token-bounded history for LLM requests.

Conversation history and canon are measured with the same character-based
estimate (see ``estimate_tokens``) and filled backward from the most recent
entry. Messages are dropped whole; a message is never cut to fit.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Sequence

from pydantic import BaseModel, Field

from loremaster.config.logging import get_logger
from loremaster.storage.models import Message, MessageRole

if TYPE_CHECKING:
    from loremaster.storage.conversation_store import ConversationStore

logger = get_logger(__name__)

SUMMARY_PREFIX = "[Previous conversation summary]\n"


class SummaryWindow(BaseModel):
    """History chosen by :meth:`ContextManager.get_messages_with_summary`."""

    messages: list[dict[str, Any]]
    needs_summarization: bool = False
    total_tokens: int = 0
    old_messages: list[Message] = Field(default_factory=list)


class CanonWindow(BaseModel):
    messages: list[str]
    total_tokens: int = 0


def _as_turn(message: Message) -> dict[str, Any]:
    return {"role": message.role, "content": message.content}


def _fill_backward(token_counts: Sequence[int], max_tokens: int) -> int:
    """Index of the first item of the longest suffix whose total fits ``max_tokens``."""
    start = len(token_counts)
    used = 0
    for i in range(len(token_counts) - 1, -1, -1):
        if used + token_counts[i] > max_tokens:
            break
        used += token_counts[i]
        start = i
    return start


class ContextManager:
    """
    Builds the history and canon windows sent along with each LLM request.

    Args:
        store: Conversation store to read messages and canon from
        max_history_tokens: Default budget for conversation history
        max_canon_tokens: Default budget for canon
        recent_message_count: Messages always kept verbatim in summary mode
    """

    def __init__(
        self,
        store: ConversationStore,
        max_history_tokens: int = 50000,
        max_canon_tokens: int = 15000,
        recent_message_count: int = 20,
    ):
        self.store = store
        self.max_history_tokens = max_history_tokens
        self.max_canon_tokens = max_canon_tokens
        self.recent_message_count = recent_message_count

    async def get_messages_for_context(
        self, conversation_id: str, max_tokens: int | None = None
    ) -> list[dict[str, Any]]:
        """
        Conversation turns that fit the budget, oldest first.

        Returns the whole history when it fits; otherwise the longest run of
        most recent messages that does. Stored summaries are not included.
        """
        budget = self.max_history_tokens if max_tokens is None else max_tokens
        messages = [
            m for m in await self.store.get_messages(conversation_id)
            if m.role != MessageRole.SUMMARY.value
        ]

        total = sum(m.token_count for m in messages)
        if total <= budget:
            return [_as_turn(m) for m in messages]

        start = _fill_backward([m.token_count for m in messages], budget)
        logger.debug(
            f"History for {conversation_id} over budget ({total} > {budget}), "
            f"keeping {len(messages) - start} of {len(messages)} messages"
        )
        return [_as_turn(m) for m in messages[start:]]

    async def get_messages_with_summary(
        self,
        conversation_id: str,
        max_tokens: int | None = None,
        recent_count: int | None = None,
    ) -> SummaryWindow:
        """
        History that falls back to a stored summary when the full log is too long.

        In order of preference:

        1. every message, if they fit
        2. the latest summary plus the last ``recent_count`` messages after it
        3. the last ``recent_count`` messages, flagged ``needs_summarization``
           with everything older returned in ``old_messages``
        """
        budget = self.max_history_tokens if max_tokens is None else max_tokens
        recent_count = self.recent_message_count if recent_count is None else recent_count

        all_messages = await self.store.get_messages(conversation_id)
        conversation = [m for m in all_messages if m.role != MessageRole.SUMMARY.value]
        total = sum(m.token_count for m in conversation)

        if total <= budget:
            return SummaryWindow(
                messages=[_as_turn(m) for m in conversation],
                total_tokens=total,
            )

        summaries = [m for m in all_messages if m.role == MessageRole.SUMMARY.value]
        if summaries:
            summary = summaries[-1]
            covered_up_to = (summary.context_snapshot or {}).get("summarizedUpToMessageId")
            if covered_up_to is None:
                covered_up_to = summary.id
            after = [m for m in conversation if m.id > covered_up_to]
            recent = after[-recent_count:] if recent_count > 0 else []
            used = summary.token_count + sum(m.token_count for m in recent)

            if used <= budget:
                return SummaryWindow(
                    messages=[
                        {"role": MessageRole.USER.value, "content": f"{SUMMARY_PREFIX}{summary.content}"},
                        *(_as_turn(m) for m in recent),
                    ],
                    total_tokens=used,
                )

        split = max(len(conversation) - recent_count, 0)
        recent = conversation[split:]
        logger.info(
            f"Conversation {conversation_id} needs summarization: "
            f"{split} older messages, {len(recent)} kept"
        )
        return SummaryWindow(
            messages=[_as_turn(m) for m in recent],
            needs_summarization=True,
            total_tokens=sum(m.token_count for m in recent),
            old_messages=conversation[:split],
        )

    async def get_canon_for_context(
        self, world_id: str, max_tokens: int | None = None
    ) -> CanonWindow:
        """Canon entry texts that fit the budget, oldest first."""
        budget = self.max_canon_tokens if max_tokens is None else max_tokens
        entries = await self.store.get_canon_entries(world_id)

        total = sum(e.token_count for e in entries)
        if total <= budget:
            return CanonWindow(messages=[e.content for e in entries], total_tokens=total)

        start = _fill_backward([e.token_count for e in entries], budget)
        kept = entries[start:]
        return CanonWindow(
            messages=[e.content for e in kept],
            total_tokens=sum(e.token_count for e in kept),
        )

    async def store_summary(
        self, conversation_id: str, summary: str, summarized_up_to_message_id: int | None
    ) -> Message:
        return await self.store.store_summary(conversation_id, summary, summarized_up_to_message_id)
