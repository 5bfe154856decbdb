"""Claude API client for comic script generation."""

import logging

import anthropic

from stryp.config import ANTHROPIC_API_KEY, SCRIPT_MODEL
from stryp.errors import GenerationError
from stryp.services.prompt_builder import build_script_prompt

logger = logging.getLogger(__name__)

client = anthropic.Anthropic(api_key=ANTHROPIC_API_KEY)
MODEL = SCRIPT_MODEL

SCRIPT_TOOL = {
    "name": "record_panels",
    "description": "Record the comic strip panels in reading order.",
    "input_schema": {
        "type": "object",
        "properties": {
            "panels": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "description": {"type": "string"},
                        "dialogue": {"type": "string"},
                        "character_name": {"type": "string"},
                    },
                    "required": ["description", "dialogue"],
                },
            },
        },
        "required": ["panels"],
    },
}


def resolve_character_ids(items: list[dict], characters: list[dict]) -> list[dict]:
    """Map each item's character_name to a character_id (case-insensitive exact match).

    Unmatched names simply get no character_id.
    """
    by_name = {}
    for c in characters:
        by_name.setdefault((c.get("name") or "").lower(), c["id"])

    panels = []
    for item in items:
        name = (item.get("character_name") or "").lower()
        panels.append({
            "description": item["description"],
            "dialogue": item["dialogue"],
            "character_id": by_name.get(name) if name else None,
        })
    return panels


def _tool_input(response) -> dict:
    for block in response.content:
        if getattr(block, "type", None) == "tool_use" and block.name == SCRIPT_TOOL["name"]:
            return block.input
    raise GenerationError("Script generation returned no structured output")


def _validate(items) -> list[dict]:
    if not isinstance(items, list):
        raise GenerationError("Script output is not a list of panels")
    for item in items:
        if not isinstance(item, dict):
            raise GenerationError("Script panel is not an object")
        if not isinstance(item.get("description"), str) or not isinstance(item.get("dialogue"), str):
            raise GenerationError("Script panel is missing description or dialogue")
    return items


def generate_script(
    scene_description: str,
    mood: str,
    characters: list[dict],
    prior_context: str = "",
) -> list[dict]:
    """Generate panels for a scene.

    Returns: list of {"description": str, "dialogue": str, "character_id": str | None}
    """
    prompt = build_script_prompt(scene_description, mood, characters, prior_context)

    try:
        response = client.messages.create(
            model=MODEL,
            max_tokens=4000,
            tools=[SCRIPT_TOOL],
            tool_choice={"type": "tool", "name": SCRIPT_TOOL["name"]},
            messages=[{"role": "user", "content": prompt}],
        )
    except anthropic.APIError as e:
        logger.error("[llm] Script generation failed: %s", e)
        raise GenerationError(f"Script generation failed: {e}") from e

    items = _validate(_tool_input(response).get("panels"))
    return resolve_character_ids(items, characters)
