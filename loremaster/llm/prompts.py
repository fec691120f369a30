"""
System prompt construction.

The base template lives in ``prompts/system.txt``. Everything that changes
per request (game state reported by the client, published canon, batch
rules, GM corrections) is appended to the system prompt rather than to the
user turn, so the model treats it as authoritative.
"""

from pathlib import Path
from typing import Any

import aiofiles

DEFAULT_TEMPLATE_PATH = Path(__file__).resolve().parent.parent / "prompts" / "system.txt"

MULTIPLAYER_PROMPT = """\
## User Roles and Permissions

### Game Master (GM)
- The GM has FULL control over the game world, story, and rules interpretation
- GM rulings are ABSOLUTE - always follow them without question
- GM can correct your responses, add context, and guide the narrative direction

### Players
- Players interact with the game world through their characters
- Players affect the world ONLY through proper game mechanics (dice rolls, rule invocations)
- Players CANNOT directly modify world state, NPC behaviors, or story outcomes
- When a player declares that something happens rather than attempting it, ask for the appropriate check

## Multi-Player Action Handling

When you receive messages formatted as "=== SIMULTANEOUS PLAYER ACTIONS ===" blocks:

### Timing
- All player actions within a batch are happening at the SAME in-game moment
- Do not narrate actions sequentially unless the order matters mechanically
- Describe how actions interact, overlap, or affect each other

### Player Identification
- Address players by their character names when narrating
- Remember each character's perspective when describing outcomes

### GM Rulings
- Lines marked "[GM RULING - MUST FOLLOW]" are ABSOLUTE instructions from the human GM
- These rulings OVERRIDE any rules interpretation, game state assumption, or your own judgment
- Do not question or suggest alternatives to GM rulings in your response

### Response Format
- Provide a unified narrative response that addresses all player actions
- When actions conflict, resolve them fairly based on the game rules
- Include mechanical outcomes (dice references, rule citations) when relevant
"""

PRIVATE_GM_PROMPT = """\
## Private GM Mode
This message is from the GM in private mode. Your response will only be seen by the GM initially.
The GM may iterate on this response with you before publishing it to players.
Feel free to include GM-facing notes like "[GM Note: ...]" if helpful.
"""


def veto_correction_prompt(correction: str) -> str:
    return (
        "## GM CORRECTION - REGENERATE RESPONSE\n"
        "\n"
        "The previous response has been VETOED by the GM. Generate a new response "
        "that addresses the following correction:\n"
        "\n"
        "=== GM CORRECTION ===\n"
        f"{correction}\n"
        "=== END CORRECTION ===\n"
        "\n"
        "Apply this correction exactly. The GM's instruction is absolute.\n"
        "Regenerate your response to the player actions with this correction in mind.\n"
    )


def canon_prompt(entries: list[str]) -> str:
    """Published canon as a system prompt section, or an empty string if there is none."""
    if not entries:
        return ""
    joined = "\n\n---\n\n".join(entries)
    return (
        "## Campaign Canon (Official History)\n"
        "The following events have been published as official canon for this campaign. "
        "These are established facts:\n"
        "\n"
        f"{joined}\n"
        "\n"
        "---\n"
        "Build upon this established history in your responses.\n"
    )


def rules_discrepancy_prompt(gm_present: bool, is_solo: bool = False) -> str:
    """Guidance for when a player's request conflicts with the game rules."""
    if gm_present and not is_solo:
        handling = (
            "A human GM is present. Point out the discrepancy briefly and defer to the GM's "
            "ruling instead of deciding it yourself."
        )
    else:
        handling = (
            "No human GM is available to rule. Apply the rules as written, state the ruling "
            "you made in one sentence, and continue the scene."
        )
    return (
        "## Rules Discrepancies\n"
        "If a player's action conflicts with the game rules or established canon, "
        "do not silently ignore it.\n"
        f"{handling}\n"
    )


def format_game_context(context: dict[str, Any] | None) -> str:
    """Render the client-reported game state as a ``[Current Game State]`` block."""
    if not context:
        return ""

    lines = ["[Current Game State]"]
    if context.get("sceneName"):
        lines.append(f"Scene: {context['sceneName']}")
    if context.get("sceneDescription"):
        lines.append(f"Description: {context['sceneDescription']}")

    combat = context.get("combat")
    if combat:
        lines.append(f"Combat: Round {combat.get('round')}, Turn {combat.get('turn')}")
        combatants = combat.get("combatants")
        if combatants:
            names = ", ".join(
                f"{c.get('name')}{' (defeated)' if c.get('isDefeated') else ''}" for c in combatants
            )
            lines.append(f"Combatants: {names}")

    recent_chat = context.get("recentChat") or []
    if recent_chat:
        lines.append("")
        lines.append("[Recent Chat]")
        for msg in recent_chat[-5:]:
            content = str(msg.get("content", ""))
            preview = content[:100] + ("..." if len(content) > 100 else "")
            lines.append(f"{msg.get('speaker')}: {preview}")

    if len(lines) == 1:
        return ""
    return "\n".join(lines)


async def load_system_template(path: Path | str | None = None) -> str:
    async with aiofiles.open(path or DEFAULT_TEMPLATE_PATH, "r", encoding="utf-8") as f:
        return await f.read()


class PromptBuilder:
    """
    Builds the full system prompt for a request from the base template.

    Args:
        template: Template text with ``{system_title}``, ``{world_name}``,
            ``{scene_name}``, ``{combat_status}`` and ``{context_block}``
            placeholders
    """

    def __init__(self, template: str):
        self.template = template

    def base_prompt(self, context: dict[str, Any] | None, world_name: str | None = None) -> str:
        context = context or {}
        combat = context.get("combat")
        replacements = {
            "{system_title}": context.get("systemTitle") or "tabletop RPG",
            "{world_name}": world_name or context.get("worldName") or "Unknown",
            "{scene_name}": context.get("sceneName") or "No active scene",
            "{combat_status}": f"Round {combat.get('round')}" if combat else "Not in combat",
            "{context_block}": format_game_context(context),
        }
        prompt = self.template
        for placeholder, value in replacements.items():
            prompt = prompt.replace(placeholder, str(value))
        return prompt.rstrip()

    def build(
        self,
        context: dict[str, Any] | None,
        *,
        world_name: str | None = None,
        canon: list[str] | None = None,
        batch: bool = False,
        correction: str | None = None,
        private: bool = False,
        gm_present: bool = False,
    ) -> str:
        """Base prompt followed by each section that applies to this request."""
        is_solo = bool(((context or {}).get("gmPresence") or {}).get("isSoloGame"))
        sections = [self.base_prompt(context, world_name)]
        if private:
            sections.append(PRIVATE_GM_PROMPT)
        if canon:
            sections.append(canon_prompt(canon))
        if batch:
            sections.append(MULTIPLAYER_PROMPT)
        if correction:
            sections.append(veto_correction_prompt(correction))
        sections.append(rules_discrepancy_prompt(gm_present, is_solo))
        return "\n\n".join(section.strip() for section in sections if section)
