"""Token estimation shared by persistence and context building."""

import math

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str | None) -> int:
    """
    Rough token count: characters / 4, rounded up.

    This is not the provider's tokenizer. It only needs to be deterministic
    and applied the same way everywhere budgets are compared.
    """
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)
