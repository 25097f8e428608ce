"""Chat message and item suggestion data models."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

ITEM_TYPE_FISH = "fish"
ITEM_TYPE_PLANT = "plant"
ITEM_TYPE_EQUIPMENT = "equipment"
ITEM_TYPES: frozenset[str] = frozenset({ITEM_TYPE_FISH, ITEM_TYPE_PLANT, ITEM_TYPE_EQUIPMENT})


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""

    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """Render ``moment`` in the ``HH:MM`` form shown next to chat bubbles."""

    local = moment.astimezone() if moment.tzinfo is not None else moment
    return local.strftime("%H:%M")


class Sender(Enum):
    """Author of a chat message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(slots=True)
class ChatMessage:
    """Represents a row inside the chat transcript."""

    sender: Sender
    text: str = ""
    created_at: datetime = field(default_factory=_utcnow)
    timestamp: str = ""

    def __post_init__(self) -> None:
        if not self.timestamp:
            self.timestamp = format_timestamp(self.created_at)

    @property
    def is_replayed(self) -> bool:
        """Whether the message is sent back to the completion service."""

        return self.sender is not Sender.SYSTEM

    def to_completion_entry(self) -> Optional[Dict[str, str]]:
        """Return the ``{role, content}`` pair replayed to the model, if any."""

        if not self.is_replayed:
            return None
        return {"role": self.sender.value, "content": self.text}

    def copy(self) -> "ChatMessage":
        return replace(self)

    def to_dict(self) -> Dict[str, str]:
        """Serialize the message for display layers."""

        return {
            "sender": self.sender.value,
            "text": self.text,
            "timestamp": self.timestamp,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class SuggestedItem:
    """Inventory addition proposed by the assistant."""

    item_type: str
    item_name: str

    @property
    def match_key(self) -> str:
        """Case-folded name used for matching typed confirmations."""

        return normalize_name(self.item_name)

    @property
    def is_known_type(self) -> bool:
        return self.item_type in ITEM_TYPES

    def describe(self) -> str:
        return f"{self.item_name} ({self.item_type})"


def normalize_name(value: str) -> str:
    """Return the comparison form of an item name."""

    return (value or "").strip().casefold()
