"""
Server Layer.

WebSocket transport, session bookkeeping, and request dispatch for the
game clients.
"""

from loremaster.server.app import LoremasterServer
from loremaster.server.dispatcher import Dispatcher, OperationType
from loremaster.server.sessions import Identity, Session, SessionRegistry

__all__ = [
    "Dispatcher",
    "Identity",
    "LoremasterServer",
    "OperationType",
    "Session",
    "SessionRegistry",
]
