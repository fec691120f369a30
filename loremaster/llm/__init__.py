"""
LLM Orchestration Layer.

Calls the provider through LiteLLM, builds system prompts, and resolves
tool-use rounds until the model produces its final answer:

    handler builds system prompt + bounded history
                        ↓
    LLMOrchestrator.generate_response()  ←→  ClientToolAdapter (tool rounds)
                        ↓
                   LLMResponse  →  stored as the assistant message
"""

from loremaster.llm.gateway import LiteLLMGateway
from loremaster.llm.models import LLMResponse, LLMTurn, TextBlock, TokenUsage, ToolCall, ToolUseBlock
from loremaster.llm.orchestrator import LLMOrchestrator
from loremaster.llm.prompts import PromptBuilder, load_system_template

__all__ = [
    "LLMOrchestrator",
    "LLMResponse",
    "LLMTurn",
    "LiteLLMGateway",
    "PromptBuilder",
    "TextBlock",
    "TokenUsage",
    "ToolCall",
    "ToolUseBlock",
    "load_system_template",
]
