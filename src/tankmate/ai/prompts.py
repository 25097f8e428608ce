"""Prompt templates for the aquarium assistant.

The system entry built here is the only place the assistant learns about the
``###`` / ``ADD_ITEM`` reply protocol, so the wording must stay in sync with
:mod:`tankmate.chat.response_parser`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from ..chat.response_parser import COMMAND_SEPARATOR

if TYPE_CHECKING:
    from ..aquarium.models import Aquarium

__all__ = [
    "DEFAULT_PROMPT_SUGGESTIONS",
    "FISH_PROMPT_SUGGESTIONS",
    "PLANT_PROMPT_SUGGESTIONS",
    "MAX_SUGGESTED_ITEMS",
    "build_aquarium_context",
]

MAX_SUGGESTED_ITEMS = 3

FISH_PROMPT_SUGGESTIONS: tuple[str, ...] = (
    "What fish can I add to this tank?",
    "Do the fish in my tank need any special care?",
)
PLANT_PROMPT_SUGGESTIONS: tuple[str, ...] = (
    "What plants can I add to this tank?",
    "Do the plants in my tank need any special care?",
)
DEFAULT_PROMPT_SUGGESTIONS: tuple[str, ...] = FISH_PROMPT_SUGGESTIONS + PLANT_PROMPT_SUGGESTIONS


def build_aquarium_context(aquarium: Aquarium) -> str:
    """Describe ``aquarium`` and the item-suggestion protocol for the model."""

    lines = ["You are an assistant helping with an aquarium management application. The aquarium details are as follows:"]
    if aquarium.name:
        lines.append(f"Name: {aquarium.name}")
    if aquarium.size:
        lines.append(f"Size: {aquarium.size}")
    if aquarium.type:
        lines.append(f"Type: {aquarium.type}")
    if aquarium.species:
        lines.append("Fish: " + ", ".join(fish.name for fish in aquarium.species))
    if aquarium.plants:
        lines.append("Plants: " + ", ".join(plant.name for plant in aquarium.plants))
    if aquarium.equipment:
        lines.append("Equipment: " + ", ".join(item.name for item in aquarium.equipment))
    if aquarium.parameters is not None:
        readings = aquarium.parameters.readings()
        if readings:
            lines.append("Water parameters: " + ", ".join(f"{key}={value:g}" for key, value in readings.items()))
    lines.append("")
    lines.append(_command_instructions())
    return "\n".join(lines)


def _command_instructions() -> str:
    return f"""When suggesting items to add, first write your normal reply. Then write the separator {COMMAND_SEPARATOR} on its own line, followed by one tag per item in this exact format:

[ADD_ITEM type="item_type"]Item Name[/ADD_ITEM]

Replace "item_type" with "fish", "plant", or "equipment". Suggest at most {MAX_SUGGESTED_ITEMS} items per reply.
Never suggest an item that is already in the aquarium. Do not mention the tags in your reply text.
After the user confirms, do not ask again, and wait for the application to handle the addition."""
