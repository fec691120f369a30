"""
Conversation summarizer.

When the history window reports ``needs_summarization``, the messages that
no longer fit are condensed by the LLM into a single ``summary`` message.
Later windows use that summary in place of the old messages.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from loremaster.config.logging import get_logger
from loremaster.context.manager import ContextManager, SummaryWindow
from loremaster.storage.models import Message

if TYPE_CHECKING:
    from loremaster.llm.gateway import LiteLLMGateway

logger = get_logger(__name__)

SUMMARY_SYSTEM_PROMPT = (
    "You summarize tabletop RPG session logs for a Game Master assistant. "
    "Keep names, locations, open plot threads, promises made by NPCs, items gained "
    "or lost and any GM rulings. Drop banter and repeated descriptions. "
    "Write in past tense, as compact prose."
)

SUMMARY_MAX_TOKENS = 1024


def render_transcript(messages: list[Message]) -> str:
    lines = []
    for message in messages:
        speaker = "Players" if message.role == "user" else "Game Master"
        lines.append(f"{speaker}: {message.content}")
    return "\n\n".join(lines)


class Summarizer:
    """
    Condenses old conversation history with the LLM.

    Args:
        gateway: Gateway used for the summary completion
        context_manager: Where the summary is stored
    """

    def __init__(self, gateway: LiteLLMGateway, context_manager: ContextManager):
        self.gateway = gateway
        self.context_manager = context_manager

    async def summarize(
        self, credential: str, conversation_id: str, old_messages: list[Message]
    ) -> Message | None:
        """Summarize ``old_messages`` and store the result. Returns None if there is nothing to do."""
        if not old_messages:
            return None

        prompt = (
            "Summarize the following part of the session so play can continue "
            "without it:\n\n" + render_transcript(old_messages)
        )
        summary = await self.gateway.complete_text(
            credential, SUMMARY_SYSTEM_PROMPT, prompt, max_tokens=SUMMARY_MAX_TOKENS
        )
        if not summary.strip():
            logger.warning(f"Empty summary returned for conversation {conversation_id}")
            return None

        stored = await self.context_manager.store_summary(
            conversation_id, summary.strip(), old_messages[-1].id
        )
        logger.info(
            f"Summarized {len(old_messages)} messages of conversation {conversation_id}"
        )
        return stored

    async def window_with_summary(
        self, credential: str, conversation_id: str
    ) -> SummaryWindow:
        """
        History window that summarizes old messages first when needed.

        If the first window asks for summarization, the summary is produced
        and the window is rebuilt around it.
        """
        window = await self.context_manager.get_messages_with_summary(conversation_id)
        if not window.needs_summarization:
            return window

        stored = await self.summarize(credential, conversation_id, window.old_messages)
        if stored is None:
            return window
        return await self.context_manager.get_messages_with_summary(conversation_id)
