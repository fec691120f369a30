"""
LLM Orchestrator: the tool-use resolution loop.

A turn starts with one gateway call. While the model stops to ask for
tools, the requested tools are run through a ToolAdapter (for this server,
inside the game client), their results are appended as one user turn and
the model is asked again. The loop ends on the first response that does
not ask for tools.

Data flow:
    handler → gateway.send() → LLMTurn
                                  ↓  stop_reason == "tool_use"
                        ToolAdapter.call() per tool_use block
                                  ↓
                        gateway.follow_up() → LLMTurn → ...
                                  ↓
                             LLMResponse → handler

Tool failures are sent back to the model as error results so it can carry
on without that information. Provider failures propagate to the caller.
"""

from __future__ import annotations

import json
from typing import Any

from loremaster.config.logging import get_logger
from loremaster.llm.gateway import LiteLLMGateway
from loremaster.llm.models import LLMResponse, LLMTurn, ToolCall
from loremaster.tools.base import ToolAdapter

logger = get_logger(__name__)


class LLMOrchestrator:
    """
    Drives a turn to its final text answer.

    Args:
        gateway: Gateway used for the initial and follow-up calls
        max_tool_rounds: Tool rounds allowed before tools are withheld from
            the follow-up request, which forces a text answer
    """

    def __init__(self, gateway: LiteLLMGateway, max_tool_rounds: int = 10):
        self._gateway = gateway
        self._max_tool_rounds = max_tool_rounds

    async def generate_response(
        self,
        credential: str,
        system_prompt: str,
        history: list[dict[str, Any]],
        tool_adapter: ToolAdapter | None = None,
    ) -> LLMResponse:
        """
        Send ``history`` to the model and resolve any tool use.

        Args:
            credential: The world's provider API key
            system_prompt: Fully built system prompt
            history: Conversation turns, ending with the current user turn
            tool_adapter: Where requested tools are executed; without one the
                model is offered no tools

        Returns:
            LLMResponse with the final text, tool call records, model and usage

        Raises:
            ProviderError: If any LLM call fails
        """
        tools = await tool_adapter.list_tools() if tool_adapter is not None else None
        turn = await self._gateway.send(credential, system_prompt, history, tools)
        return await self.resolve(credential, system_prompt, turn, history, tool_adapter, tools)

    async def resolve(
        self,
        credential: str,
        system_prompt: str,
        turn: LLMTurn,
        messages: list[dict[str, Any]],
        tool_adapter: ToolAdapter | None,
        tools: list[dict[str, Any]] | None,
    ) -> LLMResponse:
        """Run tool rounds starting from ``turn`` until the model produces its answer."""
        messages = list(messages)
        recorded_tool_calls: list[ToolCall] = []
        usage = turn.usage
        model_name = turn.model
        rounds_used = 0

        while turn.stop_reason == "tool_use":
            tool_uses = turn.tool_uses
            if not tool_uses:
                logger.warning("Model stopped for tool use without requesting any tool")
                break
            if tool_adapter is None or rounds_used >= self._max_tool_rounds:
                logger.warning(
                    f"Model requested {len(tool_uses)} tool(s) but no more tool rounds are allowed"
                )
                break

            messages.append(turn.to_message())

            results: list[dict[str, Any]] = []
            for block in tool_uses:
                try:
                    result = await tool_adapter.call(block.name, block.input)
                except Exception as e:
                    # Reported to the model, not raised: the other tools in this
                    # round still run and the model decides how to proceed
                    logger.warning(f"Tool '{block.name}' failed: {e}")
                    results.append({
                        "type": "tool_result",
                        "tool_use_id": block.id,
                        "content": json.dumps({"error": str(e)}),
                        "is_error": True,
                    })
                    recorded_tool_calls.append(
                        ToolCall(name=block.name, arguments=block.input, result=str(e), is_error=True)
                    )
                    continue

                results.append({
                    "type": "tool_result",
                    "tool_use_id": block.id,
                    "content": json.dumps(result, default=str),
                })
                recorded_tool_calls.append(
                    ToolCall(name=block.name, arguments=block.input, result=result)
                )

            messages.append({"role": "user", "content": results})
            rounds_used += 1

            follow_up_tools = tools if rounds_used < self._max_tool_rounds else None
            turn = await self._gateway.follow_up(credential, system_prompt, messages, follow_up_tools)
            usage = usage + turn.usage
            model_name = turn.model or model_name

        return LLMResponse(
            text=turn.text,
            tool_calls=recorded_tool_calls,
            model=model_name,
            usage=usage,
        )
