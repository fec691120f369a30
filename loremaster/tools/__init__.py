"""
Tool Integration Layer.

Tools the LLM can invoke mid-response. They all run inside the connected
game client; the bridge forwards each call and waits for its result.
"""

from loremaster.tools.base import ToolAdapter
from loremaster.tools.bridge import ClientToolAdapter, PendingToolCall, ToolCallBridge
from loremaster.tools.definitions import GAME_TOOLS, ToolRegistry

__all__ = [
    "ClientToolAdapter",
    "GAME_TOOLS",
    "PendingToolCall",
    "ToolAdapter",
    "ToolCallBridge",
    "ToolRegistry",
]
