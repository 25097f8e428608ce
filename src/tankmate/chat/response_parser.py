"""Split raw assistant replies into visible prose and item commands.

Assistant replies follow a small embedded protocol: the prose shown to the
user comes first, then the literal separator ``###``, then zero or more tags
of the form ``[ADD_ITEM type="fish"]Neon Tetra[/ADD_ITEM]``. Parsing is kept
free of domain validation; unknown item types are passed through and filtered
later by :class:`~tankmate.chat.suggestion_ledger.SuggestionLedger`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from .message_model import SuggestedItem

__all__ = ["COMMAND_SEPARATOR", "ParsedResponse", "parse_response"]

COMMAND_SEPARATOR = "###"
_ADD_ITEM_PATTERN = re.compile(r'\[ADD_ITEM type="(.*?)"\](.*?)\[/ADD_ITEM\]', re.DOTALL)


@dataclass(frozen=True, slots=True)
class ParsedResponse:
    """Visible text plus the commands found after the separator."""

    visible_text: str
    commands: tuple[SuggestedItem, ...] = field(default_factory=tuple)

    @property
    def has_commands(self) -> bool:
        return bool(self.commands)


def parse_response(raw_text: str) -> ParsedResponse:
    """Parse ``raw_text`` into a :class:`ParsedResponse`.

    Without a separator the whole (trimmed) reply is visible. With one, only
    the text before the first separator is visible and the remainder, joined
    back together if the separator repeats, is scanned for ``ADD_ITEM`` tags
    in order of appearance.
    """

    text = raw_text or ""
    if COMMAND_SEPARATOR not in text:
        return ParsedResponse(visible_text=text.strip())

    head, *tail = text.split(COMMAND_SEPARATOR)
    command_block = COMMAND_SEPARATOR.join(tail)
    return ParsedResponse(visible_text=head.strip(), commands=tuple(_extract_commands(command_block)))


def _extract_commands(block: str) -> list[SuggestedItem]:
    commands: list[SuggestedItem] = []
    for match in _ADD_ITEM_PATTERN.finditer(block):
        item_type = match.group(1).strip().lower()
        item_name = match.group(2).strip()
        if not item_type or not item_name:
            continue
        commands.append(SuggestedItem(item_type=item_type, item_name=item_name))
    return commands
