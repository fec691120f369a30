"""
Persistence Layer.

SQLite-backed storage for conversations, messages, batches, canon entries
and per-world API keys.
"""

from loremaster.storage.conversation_store import ConversationStore
from loremaster.storage.credentials_store import CredentialsStore
from loremaster.storage.models import (
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

__all__ = [
    "Batch",
    "BatchMessage",
    "BatchStatus",
    "CanonEntry",
    "Conversation",
    "ConversationStats",
    "ConversationStore",
    "CredentialsStore",
    "GMRuling",
    "Message",
    "MessageRole",
]
