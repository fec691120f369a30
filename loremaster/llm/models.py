"""
Data models for the LLM layer.

The gateway turns every provider response into an ``LLMTurn``: a stop
reason plus a list of content blocks (text and tool-use). The resolution
loop works only with these, so it does not care which provider LiteLLM
routed the call to.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel


class TokenUsage(BaseModel):
    """Token counts, summed across every LLM call made for one request."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @computed_field(alias="totalTokens")
    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
        )


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


ContentBlock = Annotated[TextBlock | ToolUseBlock, Field(discriminator="type")]


class LLMTurn(BaseModel):
    """
    One provider response.

    ``stop_reason`` is ``"tool_use"`` when the model wants tools run before
    it answers, ``"end_turn"`` for a finished answer and ``"max_tokens"``
    when the answer was cut off.
    """

    stop_reason: str
    content: list[ContentBlock] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    model: str = ""

    @property
    def text(self) -> str:
        return "\n".join(block.text for block in self.content if isinstance(block, TextBlock))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [block for block in self.content if isinstance(block, ToolUseBlock)]

    def to_message(self) -> dict[str, Any]:
        """The assistant turn as it is replayed in a follow-up request."""
        return {"role": "assistant", "content": [block.model_dump() for block in self.content]}


class ToolCall(BaseModel):
    """Record of a tool invocation made during response generation."""

    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    is_error: bool = False


class LLMResponse(BaseModel):
    """Final answer of the resolution loop."""

    text: str
    tool_calls: list[ToolCall] = Field(default_factory=list)
    model: str = ""
    usage: TokenUsage = Field(default_factory=TokenUsage)
