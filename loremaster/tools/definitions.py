"""
Tool registry: the capabilities the LLM may ask the game client to run.

Every tool here is executed by the connected client (dice rolls, actor
lookups, chat posts). The server only validates the name, forwards the
input and relays the result. Schemas use the ``input_schema`` shape that
``ToolAdapter.list_tools`` returns.
"""

from typing import Any

from loremaster.errors import UnknownToolError


def _tool(
    name: str,
    description: str,
    properties: dict[str, Any] | None = None,
    required: list[str] | None = None,
) -> dict[str, Any]:
    return {
        "name": name,
        "description": description,
        "input_schema": {
            "type": "object",
            "properties": properties or {},
            "required": required or [],
        },
    }


def _string(description: str, **extra: Any) -> dict[str, Any]:
    return {"type": "string", "description": description, **extra}


def _integer(description: str) -> dict[str, Any]:
    return {"type": "integer", "description": description}


def _boolean(description: str) -> dict[str, Any]:
    return {"type": "boolean", "description": description}


GAME_TOOLS: list[dict[str, Any]] = [
    _tool(
        "roll_dice",
        "Roll dice using Foundry VTT dice notation. Returns the roll result including "
        "individual dice values and total successes.",
        {
            "formula": _string('Dice formula (e.g., "2d6+3", "8d6" for Year Zero Engine)'),
            "label": _string('Optional label for the roll (e.g., "Attack Roll")'),
        },
        ["formula"],
    ),
    _tool(
        "get_actor",
        "Get detailed information about an actor (character, NPC, or ship) including "
        "their stats, skills, and inventory.",
        {"name": _string("Name of the actor to look up")},
        ["name"],
    ),
    _tool(
        "get_scene",
        "Get information about the current active scene including visible tokens and "
        "scene description.",
    ),
    _tool(
        "get_combat",
        "Get the current combat state including round, turn, and all combatants with "
        "their initiative.",
    ),
    _tool(
        "lookup_item",
        "Search compendiums for an item by name. Returns item details including stats "
        "and description.",
        {
            "name": _string("Name of the item to search for"),
            "type": _string(
                "Optional item type filter (weapon, armor, gear, talent)",
                enum=["weapon", "armor", "gear", "talent"],
            ),
        },
        ["name"],
    ),
    _tool(
        "lookup_table",
        "Find a roll table by name and optionally roll on it.",
        {
            "name": _string("Name of the roll table"),
            "roll": _boolean("Whether to roll on the table (default: false)"),
        },
        ["name"],
    ),
    _tool(
        "speak_as",
        "Post a chat message as an NPC or character. The message will appear in "
        "Foundry chat with the specified speaker.",
        {
            "actor": _string("Name of the actor to speak as"),
            "message": _string("The message content"),
        },
        ["actor", "message"],
    ),
    _tool(
        "play_audio",
        "Play ambient music or sound effects from a playlist.",
        {
            "playlist": _string("Name of the playlist"),
            "track": _string("Optional specific track name"),
        },
    ),
    # Year Zero Engine (Coriolis, Forbidden Lands, Alien RPG, Mutant Year Zero, Vaesen)
    _tool(
        "yze_skill_check",
        "Roll a Year Zero Engine skill check. Rolls attribute + skill dice (d6s), "
        "counting 6s as successes.",
        {
            "actorName": _string("Name of the actor making the roll"),
            "attribute": _string("Attribute name (e.g., strength, agility, wits, empathy)"),
            "skill": _string("Skill name (e.g., rangedCombat, meleeCombat, observation)"),
            "modifier": _integer("Bonus or penalty dice (positive or negative)"),
            "label": _string("Description of what the roll is for"),
        },
        ["actorName", "attribute", "skill"],
    ),
    _tool(
        "yze_attack",
        "Make an attack roll with a weapon in Year Zero Engine. Returns successes, "
        "damage potential, and weapon effects.",
        {
            "actorName": _string("Name of the actor making the attack"),
            "weaponName": _string("Name of the weapon to attack with"),
            "targetName": _string("Name of the target (optional, for narrative)"),
            "modifier": _integer("Situational modifier dice (positive or negative)"),
        },
        ["actorName", "weaponName"],
    ),
    _tool(
        "yze_push_roll",
        "Push a Year Zero Engine roll: reroll all dice that did not show 6 or 1. Any 1s "
        "rolled cause damage or stress. Only use when the player explicitly wants to push.",
        {
            "actorName": _string("Name of the actor pushing the roll"),
            "previousResults": {
                "type": "array",
                "items": {"type": "integer"},
                "description": "Array of dice results from the previous roll",
            },
            "label": _string("Description of the original roll being pushed"),
        },
        ["actorName", "previousResults"],
    ),
    _tool(
        "yze_roll_critical",
        "Roll on a critical injury or critical damage table.",
        {
            "actorName": _string("Name of the actor receiving the critical"),
            "criticalType": _string(
                "Type of critical table to roll on",
                enum=["injury", "stress", "damage", "mental"],
            ),
            "modifier": _integer("Modifier to the critical roll"),
        },
        ["actorName", "criticalType"],
    ),
    _tool(
        "yze_opposed_roll",
        "Make an opposed roll between two actors in Year Zero Engine, comparing successes.",
        {
            "actorName": _string("Name of the initiating actor"),
            "actorAttribute": _string("Attribute for the initiating actor"),
            "actorSkill": _string("Skill for the initiating actor"),
            "opponentName": _string("Name of the opposing actor"),
            "opponentAttribute": _string("Attribute for the opponent"),
            "opponentSkill": _string("Skill for the opponent"),
            "label": _string("Description of the contest"),
        },
        [
            "actorName",
            "actorAttribute",
            "actorSkill",
            "opponentName",
            "opponentAttribute",
            "opponentSkill",
        ],
    ),
    _tool(
        "apply_damage",
        "Apply damage to an actor, reducing their HP/health. Works across game systems.",
        {
            "actorName": _string("Name of the actor to damage"),
            "amount": _integer("Amount of damage to apply"),
            "damageType": _string("Type of damage (e.g., physical, stress, radiation)"),
            "ignoreArmor": _boolean("Whether damage bypasses armor"),
        },
        ["actorName", "amount"],
    ),
    _tool(
        "modify_resource",
        "Modify a character resource like HP, stress, supplies, ammo, or darkness points.",
        {
            "actorName": _string('Name of the actor (or "gm" for GM resources)'),
            "resource": _string("Resource to modify (e.g., hp, stress, supply, ammo)"),
            "amount": _integer("Amount to add (positive) or remove (negative)"),
            "reason": _string("Reason for the modification"),
        },
        ["actorName", "resource", "amount"],
    ),
]


class ToolRegistry:
    """Fixed set of tool definitions, looked up by name."""

    def __init__(self, tools: list[dict[str, Any]] | None = None):
        self._tools = {tool["name"]: tool for tool in (GAME_TOOLS if tools is None else tools)}

    def __contains__(self, tool_name: str) -> bool:
        return tool_name in self._tools

    def validate(self, tool_name: str) -> bool:
        """Return True if the tool exists; raise ``UnknownToolError`` otherwise."""
        if tool_name not in self._tools:
            raise UnknownToolError(tool_name)
        return True

    def get(self, tool_name: str) -> dict[str, Any] | None:
        return self._tools.get(tool_name)

    def definitions(self) -> list[dict[str, Any]]:
        return list(self._tools.values())
