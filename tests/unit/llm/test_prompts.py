"""
Unit tests for system prompt construction.

Tests cover:
- Game state rendering
- Canon, correction and rules sections
- Template loading and placeholder substitution
- Section selection in PromptBuilder.build
"""

import pytest

from loremaster.llm.prompts import (
    MULTIPLAYER_PROMPT,
    PRIVATE_GM_PROMPT,
    PromptBuilder,
    canon_prompt,
    format_game_context,
    load_system_template,
    rules_discrepancy_prompt,
    veto_correction_prompt,
)


@pytest.fixture
def template():
    return (
        "You are Loremaster for {system_title}.\n"
        "World: {world_name}\n"
        "Scene: {scene_name}\n"
        "Combat: {combat_status}\n"
        "\n"
        "{context_block}\n"
    )


@pytest.fixture
def builder(template):
    return PromptBuilder(template)


class TestFormatGameContext:

    def test_empty_context(self):
        assert format_game_context(None) == ""
        assert format_game_context({}) == ""

    def test_context_without_known_fields(self):
        assert format_game_context({"worldName": "Alien RPG"}) == ""

    def test_scene_and_combat(self):
        text = format_game_context({
            "sceneName": "Engine Room",
            "sceneDescription": "Steam everywhere",
            "combat": {
                "round": 2,
                "turn": 1,
                "combatants": [{"name": "Vera"}, {"name": "Android", "isDefeated": True}],
            },
        })
        assert text.splitlines() == [
            "[Current Game State]",
            "Scene: Engine Room",
            "Description: Steam everywhere",
            "Combat: Round 2, Turn 1",
            "Combatants: Vera, Android (defeated)",
        ]

    def test_recent_chat_keeps_last_five_and_truncates(self):
        chat = [{"speaker": f"P{i}", "content": f"line {i}"} for i in range(7)]
        chat.append({"speaker": "Long", "content": "x" * 150})
        text = format_game_context({"recentChat": chat})

        assert "[Recent Chat]" in text
        assert "P0:" not in text
        assert "P3: line 3" in text
        assert f"Long: {'x' * 100}..." in text


class TestSections:

    def test_canon_prompt(self):
        text = canon_prompt(["The reactor was sabotaged.", "Reyes is dead."])
        assert text.startswith("## Campaign Canon (Official History)")
        assert "The reactor was sabotaged.\n\n---\n\nReyes is dead." in text

    def test_canon_prompt_empty(self):
        assert canon_prompt([]) == ""

    def test_veto_correction_prompt(self):
        text = veto_correction_prompt("make the NPC hostile")
        assert "=== GM CORRECTION ===\nmake the NPC hostile\n=== END CORRECTION ===" in text

    def test_rules_discrepancy_defers_to_present_gm(self):
        assert "defer to the GM" in rules_discrepancy_prompt(gm_present=True)

    def test_rules_discrepancy_rules_without_gm(self):
        assert "No human GM" in rules_discrepancy_prompt(gm_present=False)
        assert "No human GM" in rules_discrepancy_prompt(gm_present=True, is_solo=True)


class TestLoadSystemTemplate:

    @pytest.mark.asyncio
    async def test_default_template_has_placeholders(self):
        template = await load_system_template()
        for placeholder in ("{system_title}", "{world_name}", "{scene_name}", "{combat_status}", "{context_block}"):
            assert placeholder in template

    @pytest.mark.asyncio
    async def test_custom_path(self, tmp_path):
        path = tmp_path / "custom.txt"
        path.write_text("Custom {world_name}", encoding="utf-8")
        assert await load_system_template(path) == "Custom {world_name}"


class TestPromptBuilder:

    def test_base_prompt_defaults(self, builder):
        prompt = builder.base_prompt(None)
        assert "tabletop RPG" in prompt
        assert "World: Unknown" in prompt
        assert "Scene: No active scene" in prompt
        assert "Combat: Not in combat" in prompt
        assert "{" not in prompt

    def test_base_prompt_from_context(self, builder):
        prompt = builder.base_prompt(
            {"systemTitle": "Alien RPG", "sceneName": "Hangar", "combat": {"round": 3, "turn": 0}},
            world_name="Hope's Last Day",
        )
        assert "Loremaster for Alien RPG" in prompt
        assert "World: Hope's Last Day" in prompt
        assert "Combat: Round 3" in prompt
        assert "[Current Game State]" in prompt

    def test_context_braces_are_not_reformatted(self, builder):
        prompt = builder.base_prompt({"sceneName": "The {weird} room"})
        assert "Scene: The {weird} room" in prompt

    def test_plain_chat_sections(self, builder):
        prompt = builder.build({}, canon=[])
        assert "## Rules Discrepancies" in prompt
        assert MULTIPLAYER_PROMPT.strip() not in prompt
        assert PRIVATE_GM_PROMPT.strip() not in prompt
        assert "Campaign Canon" not in prompt

    def test_batch_with_canon_and_correction(self, builder):
        prompt = builder.build(
            {},
            canon=["The colony went dark."],
            batch=True,
            correction="make the NPC hostile",
            gm_present=True,
        )
        assert MULTIPLAYER_PROMPT.strip() in prompt
        assert "The colony went dark." in prompt
        assert "make the NPC hostile" in prompt
        assert prompt.index("Campaign Canon") < prompt.index("GM CORRECTION")

    def test_private_mode(self, builder):
        assert PRIVATE_GM_PROMPT.strip() in builder.build({}, private=True)

    def test_solo_game_from_context(self, builder):
        prompt = builder.build({"gmPresence": {"isSoloGame": True}}, gm_present=True)
        assert "No human GM" in prompt
