"""
LLM Gateway: provider calls through LiteLLM.

The rest of the package speaks in provider-neutral content blocks:
``text``, ``tool_use`` and ``tool_result`` (with ``is_error``). LiteLLM
speaks the OpenAI chat format. This module converts requests one way and
responses the other, so swapping the model string in settings is all it
takes to change provider.

The API key is not part of the settings: each world brings its own, and it
is passed per call.
"""

from __future__ import annotations

import json
from typing import Any

from litellm import acompletion

from loremaster.config.logging import get_logger
from loremaster.config.settings import LLMSettings
from loremaster.errors import ProviderError
from loremaster.llm.models import LLMTurn, TextBlock, TokenUsage, ToolUseBlock

logger = get_logger(__name__)

# OpenAI finish reasons mapped to the neutral stop reasons
_STOP_REASONS = {
    "stop": "end_turn",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "length": "max_tokens",
}


def to_litellm_tools(tools: list[dict[str, Any]] | None) -> list[dict[str, Any]] | None:
    """
    Wrap ``input_schema`` tool definitions in LiteLLM's function format.

    LiteLLM uses the OpenAI tool format:
        {"type": "function", "function": {"name": ..., "description": ..., "parameters": ...}}
    """
    if not tools:
        return None
    return [
        {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool.get("description", ""),
                "parameters": tool["input_schema"],
            },
        }
        for tool in tools
    ]


def to_litellm_messages(system_prompt: str, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """
    Convert neutral turns into OpenAI-format chat messages.

    - string content passes through unchanged
    - assistant ``tool_use`` blocks become ``tool_calls``
    - user ``tool_result`` blocks become one ``role: "tool"`` message each
    """
    converted: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]

    for message in messages:
        role = message["role"]
        content = message["content"]

        if isinstance(content, str):
            converted.append({"role": role, "content": content})
            continue

        texts = [block["text"] for block in content if block.get("type") == "text"]

        if role == "assistant":
            tool_calls = [
                {
                    "id": block["id"],
                    "type": "function",
                    "function": {
                        "name": block["name"],
                        "arguments": json.dumps(block.get("input") or {}),
                    },
                }
                for block in content
                if block.get("type") == "tool_use"
            ]
            entry: dict[str, Any] = {"role": "assistant", "content": "\n".join(texts) or None}
            if tool_calls:
                entry["tool_calls"] = tool_calls
            converted.append(entry)
            continue

        for block in content:
            if block.get("type") == "tool_result":
                converted.append({
                    "role": "tool",
                    "tool_call_id": block["tool_use_id"],
                    "content": block["content"],
                })
        if texts:
            converted.append({"role": role, "content": "\n".join(texts)})

    return converted


def normalize_response(response: Any) -> LLMTurn:
    """Turn a LiteLLM ``ModelResponse`` into an ``LLMTurn``."""
    choice = response.choices[0]
    message = choice.message

    blocks: list[TextBlock | ToolUseBlock] = []
    if message.content:
        blocks.append(TextBlock(text=message.content))

    for tool_call in message.tool_calls or []:
        raw_arguments = tool_call.function.arguments
        try:
            arguments = json.loads(raw_arguments) if raw_arguments else {}
        except json.JSONDecodeError as e:
            raise ProviderError(
                f"Model returned malformed arguments for tool '{tool_call.function.name}'", cause=e
            ) from e
        blocks.append(ToolUseBlock(id=tool_call.id, name=tool_call.function.name, input=arguments))

    finish_reason = choice.finish_reason
    if message.tool_calls:
        stop_reason = "tool_use"
    else:
        stop_reason = _STOP_REASONS.get(finish_reason, finish_reason or "end_turn")

    usage = getattr(response, "usage", None)
    return LLMTurn(
        stop_reason=stop_reason,
        content=blocks,
        usage=TokenUsage(
            prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
        ),
        model=response.model or "",
    )


class LiteLLMGateway:
    """
    Sends requests to the configured model and normalizes the replies.

    Args:
        settings: LLM configuration (model, temperature, max_tokens)
    """

    def __init__(self, settings: LLMSettings):
        self._settings = settings

    @property
    def model(self) -> str:
        return self._settings.model

    async def send(
        self,
        credential: str,
        system_prompt: str,
        history: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> LLMTurn:
        """First request of a turn: system prompt, history ending with the user turn, tools."""
        return await self._complete(credential, system_prompt, history, tools)

    async def follow_up(
        self,
        credential: str,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> LLMTurn:
        """Continue a turn after tool results were appended to ``messages``."""
        return await self._complete(credential, system_prompt, messages, tools)

    async def complete_text(
        self,
        credential: str,
        system_prompt: str,
        prompt: str,
        max_tokens: int | None = None,
    ) -> str:
        """Single tool-free completion, used for housekeeping such as summaries."""
        turn = await self._complete(
            credential,
            system_prompt,
            [{"role": "user", "content": prompt}],
            None,
            max_tokens=max_tokens,
        )
        return turn.text

    async def _complete(
        self,
        credential: str,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        max_tokens: int | None = None,
    ) -> LLMTurn:
        if not credential:
            raise ProviderError("API key not provided")

        call_kwargs: dict[str, Any] = {
            "model": self._settings.model,
            "messages": to_litellm_messages(system_prompt, messages),
            "temperature": self._settings.temperature,
            "max_tokens": max_tokens or self._settings.max_tokens,
            "api_key": credential,
        }
        litellm_tools = to_litellm_tools(tools)
        if litellm_tools:
            call_kwargs["tools"] = litellm_tools

        logger.debug(f"Sending request to {self._settings.model} ({len(messages)} messages)")
        try:
            response = await acompletion(**call_kwargs)
        except Exception as e:
            raise ProviderError(f"LLM API call failed: {e}", cause=e) from e

        turn = normalize_response(response)
        logger.debug(f"Response received, stop_reason: {turn.stop_reason}")
        return turn
