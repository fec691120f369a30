"""
Context Layer.

Token estimation and the bounded history and canon windows that go into
each LLM request.
"""

from loremaster.context.manager import CanonWindow, ContextManager, SummaryWindow
from loremaster.context.tokens import estimate_tokens

__all__ = ["CanonWindow", "ContextManager", "SummaryWindow", "estimate_tokens"]
