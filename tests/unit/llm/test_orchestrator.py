"""
Unit tests for the tool-use resolution loop.

Tests cover:
- Basic response generation (no tools)
- Tool use loop and follow-up messages
- Partial tool failure reported back to the model
- Tool round limiting
- Provider errors
"""

import json
from unittest.mock import AsyncMock

import pytest

from loremaster.errors import ProviderError, ToolTimeoutError
from loremaster.llm.models import LLMResponse, LLMTurn, TextBlock, TokenUsage, ToolUseBlock
from loremaster.llm.orchestrator import LLMOrchestrator


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _text_turn(text: str, prompt_tokens: int = 100, completion_tokens: int = 50) -> LLMTurn:
    return LLMTurn(
        stop_reason="end_turn",
        content=[TextBlock(text=text)],
        usage=TokenUsage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
        model="claude-sonnet-4-20250514",
    )


def _tool_turn(*calls: tuple[str, str, dict]) -> LLMTurn:
    return LLMTurn(
        stop_reason="tool_use",
        content=[ToolUseBlock(id=call_id, name=name, input=args) for call_id, name, args in calls],
        usage=TokenUsage(prompt_tokens=80, completion_tokens=20),
        model="claude-sonnet-4-20250514",
    )


HISTORY = [{"role": "user", "content": "I attack the android"}]


@pytest.fixture
def gateway():
    return AsyncMock()


@pytest.fixture
def tool_adapter():
    adapter = AsyncMock()
    adapter.list_tools.return_value = [
        {"name": "roll_dice", "description": "Roll dice", "input_schema": {"type": "object"}},
        {"name": "get_actor", "description": "Look up actor", "input_schema": {"type": "object"}},
    ]
    adapter.call.return_value = {"total": 12}
    return adapter


@pytest.fixture
def orchestrator(gateway):
    return LLMOrchestrator(gateway, max_tool_rounds=3)


# ---------------------------------------------------------------------------
# Test Classes
# ---------------------------------------------------------------------------

class TestBasicResponseGeneration:

    @pytest.mark.asyncio
    async def test_returns_text(self, orchestrator, gateway):
        gateway.send.return_value = _text_turn("The android staggers.")

        result = await orchestrator.generate_response("sk", "SYSTEM", HISTORY)

        assert isinstance(result, LLMResponse)
        assert result.text == "The android staggers."
        assert result.tool_calls == []
        assert result.usage.total_tokens == 150
        gateway.follow_up.assert_not_called()

    @pytest.mark.asyncio
    async def test_without_adapter_no_tools_are_offered(self, orchestrator, gateway):
        gateway.send.return_value = _text_turn("ok")
        await orchestrator.generate_response("sk", "SYSTEM", HISTORY)
        assert gateway.send.call_args.args == ("sk", "SYSTEM", HISTORY, None)

    @pytest.mark.asyncio
    async def test_adapter_tools_are_offered(self, orchestrator, gateway, tool_adapter):
        gateway.send.return_value = _text_turn("ok")
        await orchestrator.generate_response("sk", "SYSTEM", HISTORY, tool_adapter)
        tools = gateway.send.call_args.args[3]
        assert [t["name"] for t in tools] == ["roll_dice", "get_actor"]


class TestToolUseLoop:

    @pytest.mark.asyncio
    async def test_executes_tool_and_returns_final_text(self, orchestrator, gateway, tool_adapter):
        gateway.send.return_value = _tool_turn(("call_1", "roll_dice", {"formula": "2d6"}))
        gateway.follow_up.return_value = _text_turn("You hit for 12.", 200, 30)

        result = await orchestrator.generate_response("sk", "SYSTEM", HISTORY, tool_adapter)

        assert result.text == "You hit for 12."
        tool_adapter.call.assert_awaited_once_with("roll_dice", {"formula": "2d6"})
        assert result.tool_calls[0].name == "roll_dice"
        assert result.tool_calls[0].result == {"total": 12}
        assert result.usage.prompt_tokens == 280
        assert result.usage.completion_tokens == 50

    @pytest.mark.asyncio
    async def test_follow_up_carries_tool_use_and_results(self, orchestrator, gateway, tool_adapter):
        gateway.send.return_value = _tool_turn(("call_1", "roll_dice", {"formula": "2d6"}))
        gateway.follow_up.return_value = _text_turn("done")

        await orchestrator.generate_response("sk", "SYSTEM", HISTORY, tool_adapter)

        _, system_prompt, messages, tools = gateway.follow_up.call_args.args
        assert system_prompt == "SYSTEM"
        assert messages[0] == HISTORY[0]
        assert messages[1]["role"] == "assistant"
        assert messages[1]["content"][0]["type"] == "tool_use"
        assert messages[2] == {
            "role": "user",
            "content": [{"type": "tool_result", "tool_use_id": "call_1", "content": json.dumps({"total": 12})}],
        }
        assert tools is not None

    @pytest.mark.asyncio
    async def test_caller_history_is_not_mutated(self, orchestrator, gateway, tool_adapter):
        history = list(HISTORY)
        gateway.send.return_value = _tool_turn(("call_1", "roll_dice", {}))
        gateway.follow_up.return_value = _text_turn("done")

        await orchestrator.generate_response("sk", "SYSTEM", history, tool_adapter)
        assert history == HISTORY

    @pytest.mark.asyncio
    async def test_one_of_two_tools_fails(self, orchestrator, gateway, tool_adapter):
        gateway.send.return_value = _tool_turn(
            ("call_1", "roll_dice", {"formula": "1d20"}),
            ("call_2", "get_actor", {"name": "Ash"}),
        )
        gateway.follow_up.return_value = _text_turn("Ash is nowhere to be found, but you rolled 12.")
        tool_adapter.call.side_effect = [
            {"total": 12},
            ToolTimeoutError("get_actor", 30),
        ]

        result = await orchestrator.generate_response("sk", "SYSTEM", HISTORY, tool_adapter)

        results = gateway.follow_up.call_args.args[2][-1]["content"]
        assert len(results) == 2
        assert results[0]["tool_use_id"] == "call_1"
        assert "is_error" not in results[0]
        assert results[1]["tool_use_id"] == "call_2"
        assert results[1]["is_error"] is True
        assert "timeout" in json.loads(results[1]["content"])["error"]

        assert [c.is_error for c in result.tool_calls] == [False, True]
        assert result.text.startswith("Ash is nowhere")

    @pytest.mark.asyncio
    async def test_multiple_rounds(self, orchestrator, gateway, tool_adapter):
        gateway.send.return_value = _tool_turn(("call_1", "roll_dice", {"formula": "1d20"}))
        gateway.follow_up.side_effect = [
            _tool_turn(("call_2", "roll_dice", {"formula": "2d6"})),
            _text_turn("Hit, 9 damage."),
        ]
        tool_adapter.call.side_effect = [{"total": 18}, {"total": 9}]

        result = await orchestrator.generate_response("sk", "SYSTEM", HISTORY, tool_adapter)

        assert len(result.tool_calls) == 2
        assert gateway.follow_up.await_count == 2
        # History + (assistant, results) per round
        assert len(gateway.follow_up.call_args.args[2]) == 5

    @pytest.mark.asyncio
    async def test_tool_use_without_adapter_stops(self, orchestrator, gateway):
        turn = _tool_turn(("call_1", "roll_dice", {}))
        turn.content.insert(0, TextBlock(text="I'd roll for that."))
        gateway.send.return_value = turn

        result = await orchestrator.generate_response("sk", "SYSTEM", HISTORY)

        assert result.text == "I'd roll for that."
        gateway.follow_up.assert_not_called()

    @pytest.mark.asyncio
    async def test_tool_use_stop_without_tool_blocks_ends_loop(self, orchestrator, gateway, tool_adapter):
        gateway.send.return_value = LLMTurn(stop_reason="tool_use", content=[TextBlock(text="hmm")])

        result = await orchestrator.generate_response("sk", "SYSTEM", HISTORY, tool_adapter)

        assert result.text == "hmm"
        assert result.tool_calls == []
        gateway.follow_up.assert_not_awaited()
        tool_adapter.call.assert_not_awaited()


class TestToolRoundLimit:

    @pytest.mark.asyncio
    async def test_last_follow_up_has_no_tools(self, gateway, tool_adapter):
        orchestrator = LLMOrchestrator(gateway, max_tool_rounds=1)
        gateway.send.return_value = _tool_turn(("call_1", "roll_dice", {}))
        gateway.follow_up.return_value = _text_turn("Final answer.")

        result = await orchestrator.generate_response("sk", "SYSTEM", HISTORY, tool_adapter)

        assert gateway.follow_up.call_args.args[3] is None
        assert result.text == "Final answer."

    @pytest.mark.asyncio
    async def test_stops_when_model_keeps_asking(self, gateway, tool_adapter):
        orchestrator = LLMOrchestrator(gateway, max_tool_rounds=2)
        gateway.send.return_value = _tool_turn(("call_1", "roll_dice", {}))
        gateway.follow_up.side_effect = [
            _tool_turn(("call_2", "roll_dice", {})),
            _tool_turn(("call_3", "roll_dice", {})),
        ]

        result = await orchestrator.generate_response("sk", "SYSTEM", HISTORY, tool_adapter)

        assert tool_adapter.call.await_count == 2
        assert gateway.follow_up.await_count == 2
        assert result.text == ""


class TestErrorHandling:

    @pytest.mark.asyncio
    async def test_provider_error_on_send_propagates(self, orchestrator, gateway):
        gateway.send.side_effect = ProviderError("LLM API call failed: overloaded")
        with pytest.raises(ProviderError, match="overloaded"):
            await orchestrator.generate_response("sk", "SYSTEM", HISTORY)

    @pytest.mark.asyncio
    async def test_provider_error_on_follow_up_propagates(self, orchestrator, gateway, tool_adapter):
        gateway.send.return_value = _tool_turn(("call_1", "roll_dice", {}))
        gateway.follow_up.side_effect = ProviderError("LLM API call failed: 500")
        with pytest.raises(ProviderError):
            await orchestrator.generate_response("sk", "SYSTEM", HISTORY, tool_adapter)
