"""
Unit tests for the Batch Coordinator.

Tests cover:
- Batch formatting (speaker labels, GM rulings, empty batches)
- process_batch: conversation, stored user message, lifecycle, participants
- process_veto: status, veto count, corrections, world isolation
- process_regenerate: derived batch, original untouched
- complete_batch idempotence
"""

import pytest
import pytest_asyncio

from loremaster.batch.coordinator import (
    BATCH_FOOTER,
    BATCH_HEADER,
    GM_RULING_TAG,
    BatchCoordinator,
    build_veto_message,
    format_batch,
    speaker_label,
)
from loremaster.errors import BatchNotFoundError, BatchTransitionError, InvalidRequestError
from loremaster.storage.conversation_store import ConversationStore
from loremaster.storage.models import BatchMessage, BatchStatus, GMRuling


@pytest_asyncio.fixture
async def store():
    async with ConversationStore(":memory:") as s:
        yield s


@pytest.fixture
def coordinator(store):
    return BatchCoordinator(store)


def _batch_payload(batch_id="batch-1", **extra):
    return {
        "batchId": batch_id,
        "messages": [
            {"userId": "u1", "userName": "Alice", "characterName": "Vera", "content": "I draw my pistol"},
            {"userId": "u2", "userName": "Bob", "content": "I hide behind the crates"},
        ],
        **extra,
    }


class TestSpeakerLabel:

    def test_gm(self):
        assert speaker_label(BatchMessage(user_name="Dana", content="x", is_gm=True)) == "GM - Dana"

    def test_character_and_player(self):
        message = BatchMessage(user_name="Alice", character_name="Vera", content="x")
        assert speaker_label(message) == "Vera (Player: Alice)"

    def test_player_only(self):
        assert speaker_label(BatchMessage(user_name="Bob", content="x")) == "Bob"

    def test_gm_flag_uses_wire_alias(self):
        message = BatchMessage.model_validate({"userName": "Dana", "content": "x", "isGM": True})
        assert message.is_gm is True


class TestFormatBatch:

    def test_two_participants(self):
        text = format_batch(
            [
                BatchMessage(user_name="Alice", character_name="Vera", content="I draw my pistol"),
                BatchMessage(user_name="Bob", content="I hide behind the crates"),
            ],
            [],
        )
        lines = text.split("\n")
        assert lines[0] == BATCH_HEADER
        assert lines[-1] == BATCH_FOOTER
        assert "[Vera (Player: Alice)]\nI draw my pistol" in text
        assert "[Bob]\nI hide behind the crates" in text
        assert text.index("Vera") < text.index("Bob")

    def test_gm_rulings_follow_messages(self):
        text = format_batch(
            [BatchMessage(user_name="Alice", content="I jump the gap")],
            [GMRuling(content="The gap is too wide without a running start")],
        )
        assert f"{GM_RULING_TAG}\nThe gap is too wide without a running start" in text
        assert text.index("I jump the gap") < text.index(GM_RULING_TAG)

    def test_empty_batch_formats_to_empty_string(self):
        assert format_batch([], []) == ""


class TestBuildVetoMessage:

    def test_contains_correction_and_original(self):
        message = build_veto_message("make the NPC hostile", "ORIGINAL PROMPT")
        assert message.startswith("=== GM VETO - REGENERATE RESPONSE ===")
        assert "--- GM CORRECTION ---\nmake the NPC hostile\n--- END CORRECTION ---" in message
        assert message.endswith("ORIGINAL PROMPT")


class TestProcessBatch:

    @pytest.mark.asyncio
    async def test_records_batch_and_user_message(self, coordinator, store):
        processed = await coordinator.process_batch(
            "world-1", _batch_payload(), {"sceneName": "Cargo Hold"}
        )

        assert processed.batch_id == "batch-1"
        assert processed.participant_count == 2
        assert processed.has_gm_rulings is False

        conversation = await store.get_conversation(processed.conversation_id)
        assert conversation.title == "Cargo Hold"

        [message] = await store.get_messages(processed.conversation_id)
        assert message.role == "user"
        assert message.content == processed.user_message
        assert message.content.startswith(BATCH_HEADER)

        batch = await store.get_batch("batch-1")
        assert batch.status == BatchStatus.SENT
        assert batch.formatted_prompt == processed.user_message
        assert batch.time_window_seconds == 10

    @pytest.mark.asyncio
    async def test_client_formatted_prompt_wins(self, coordinator):
        processed = await coordinator.process_batch(
            "world-1", _batch_payload(formattedPrompt="CLIENT FORMAT")
        )
        assert processed.user_message == "CLIENT FORMAT"

    @pytest.mark.asyncio
    async def test_time_window_from_context(self, coordinator, store):
        await coordinator.process_batch("world-1", _batch_payload(), {"batchTimerDuration": 25})
        assert (await store.get_batch("batch-1")).time_window_seconds == 25

    @pytest.mark.asyncio
    async def test_same_user_counts_once(self, coordinator):
        payload = {
            "batchId": "b",
            "messages": [
                {"userId": "u1", "userName": "Alice", "content": "first"},
                {"userId": "u1", "userName": "Alice", "content": "second"},
            ],
        }
        processed = await coordinator.process_batch("world-1", payload)
        assert processed.participant_count == 1

    @pytest.mark.asyncio
    async def test_gm_rulings_only(self, coordinator):
        processed = await coordinator.process_batch(
            "world-1", {"batchId": "b", "gmRulings": [{"content": "Night falls."}]}
        )
        assert processed.has_gm_rulings is True
        assert processed.participant_count == 0

    @pytest.mark.asyncio
    async def test_empty_batch_rejected(self, coordinator, store):
        with pytest.raises(InvalidRequestError, match="no messages"):
            await coordinator.process_batch("world-1", {"batchId": "b", "messages": []})
        assert await store.get_batch("b") is None

    @pytest.mark.asyncio
    async def test_malformed_messages_rejected(self, coordinator):
        with pytest.raises(InvalidRequestError):
            await coordinator.process_batch("world-1", {"messages": "not a list"})
        with pytest.raises(InvalidRequestError):
            await coordinator.process_batch("world-1", {"messages": [{"userName": "no content"}]})

    @pytest.mark.asyncio
    async def test_uses_current_conversation(self, coordinator, store):
        existing = await store.create_conversation("world-1", "Ongoing")
        processed = await coordinator.process_batch("world-1", _batch_payload())
        assert processed.conversation_id == existing.id


class TestProcessVeto:

    @pytest.mark.asyncio
    async def test_veto_marks_batch_and_builds_message(self, coordinator, store):
        sent = await coordinator.process_batch("world-1", _batch_payload())

        vetoed = await coordinator.process_veto(
            "world-1", {"batchId": "batch-1", "correction": "make the NPC hostile"}
        )

        batch = await store.get_batch("batch-1")
        assert batch.status == BatchStatus.VETOED
        assert batch.veto_count == 1
        assert batch.veto_corrections == ["make the NPC hostile"]

        assert vetoed.original_batch_id == "batch-1"
        assert vetoed.correction == "make the NPC hostile"
        assert "make the NPC hostile" in vetoed.veto_message
        assert sent.user_message in vetoed.veto_message

        messages = await store.get_messages(sent.conversation_id)
        assert messages[-1].content == vetoed.veto_message

    @pytest.mark.asyncio
    async def test_veto_after_completion_then_resubmit(self, coordinator, store):
        await coordinator.process_batch("world-1", _batch_payload())
        await coordinator.complete_batch("batch-1", None)

        await coordinator.process_veto("world-1", {"batchId": "batch-1", "correction": "again"})
        batch = await coordinator.resubmit("batch-1")
        assert batch.status == BatchStatus.SENT

        batch = await coordinator.complete_batch("batch-1", None)
        assert batch.status == BatchStatus.COMPLETED
        assert batch.veto_count == 1

    @pytest.mark.asyncio
    async def test_unknown_batch(self, coordinator):
        with pytest.raises(BatchNotFoundError):
            await coordinator.process_veto("world-1", {"batchId": "ghost", "correction": "x"})

    @pytest.mark.asyncio
    async def test_batch_of_another_world(self, coordinator):
        await coordinator.process_batch("world-1", _batch_payload())
        with pytest.raises(BatchNotFoundError):
            await coordinator.process_veto("world-2", {"batchId": "batch-1", "correction": "x"})

    @pytest.mark.asyncio
    async def test_correction_required(self, coordinator):
        await coordinator.process_batch("world-1", _batch_payload())
        with pytest.raises(InvalidRequestError):
            await coordinator.process_veto("world-1", {"batchId": "batch-1", "correction": "  "})

    @pytest.mark.asyncio
    async def test_batch_id_required(self, coordinator):
        with pytest.raises(InvalidRequestError):
            await coordinator.process_veto("world-1", {"correction": "x"})

    @pytest.mark.asyncio
    async def test_vetoing_a_vetoed_batch_is_rejected(self, coordinator):
        await coordinator.process_batch("world-1", _batch_payload())
        await coordinator.process_veto("world-1", {"batchId": "batch-1", "correction": "one"})
        with pytest.raises(BatchTransitionError):
            await coordinator.process_veto("world-1", {"batchId": "batch-1", "correction": "two"})


class TestProcessRegenerate:

    @pytest.mark.asyncio
    async def test_creates_derived_batch(self, coordinator, store):
        sent = await coordinator.process_batch("world-1", _batch_payload())
        await coordinator.complete_batch("batch-1", None)

        regen = await coordinator.process_regenerate("world-1", {"batchId": "batch-1"})

        assert regen.batch_id == "batch-1-regen-1"
        assert regen.original_batch_id == "batch-1"
        assert regen.user_message == sent.user_message

        derived = await store.get_batch("batch-1-regen-1")
        assert derived.parent_batch_id == "batch-1"
        assert derived.status == BatchStatus.SENT
        assert [m.user_name for m in derived.messages] == ["Alice", "Bob"]

        original = await store.get_batch("batch-1")
        assert original.status == BatchStatus.COMPLETED
        assert original.veto_count == 0

    @pytest.mark.asyncio
    async def test_numbering_increments(self, coordinator):
        await coordinator.process_batch("world-1", _batch_payload())
        first = await coordinator.process_regenerate("world-1", {"batchId": "batch-1"})
        second = await coordinator.process_regenerate("world-1", {"batchId": "batch-1"})
        assert (first.batch_id, second.batch_id) == ("batch-1-regen-1", "batch-1-regen-2")

    @pytest.mark.asyncio
    async def test_unknown_batch(self, coordinator):
        with pytest.raises(BatchNotFoundError):
            await coordinator.process_regenerate("world-1", {"batchId": "ghost"})


class TestCompleteBatch:

    @pytest.mark.asyncio
    async def test_complete_is_idempotent(self, coordinator, store):
        processed = await coordinator.process_batch("world-1", _batch_payload())
        first = await coordinator.complete_batch(processed.batch_id, 5)
        second = await coordinator.complete_batch(processed.batch_id, 6)
        assert first.status == second.status == BatchStatus.COMPLETED
        assert second.response_message_id == 5

    @pytest.mark.asyncio
    async def test_cleanup_delegates_to_store(self, coordinator):
        assert await coordinator.cleanup_old_batches(30) == 0
