"""Bookkeeping for item suggestions the user has not acted on yet."""

from __future__ import annotations

import logging
from typing import AbstractSet, Iterable, Iterator, Optional

from .message_model import SuggestedItem, normalize_name

__all__ = ["AFFIRMATIVE_REPLIES", "SuggestionLedger"]

LOGGER = logging.getLogger(__name__)

AFFIRMATIVE_REPLIES: frozenset[str] = frozenset(
    {"yes", "yeah", "yep", "sure", "please do", "absolutely", "of course"}
)


class SuggestionLedger:
    """Ordered set of open suggestions, unique by case-folded name.

    Each call to :meth:`ingest` supersedes the previous batch: suggestions the
    user ignored from an earlier reply do not linger.
    """

    def __init__(self, *, max_open: int | None = None) -> None:
        self._items: list[SuggestedItem] = []
        self._max_open = max_open if max_open is None else max(0, int(max_open))

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[SuggestedItem]:
        return iter(tuple(self._items))

    def __contains__(self, item: object) -> bool:
        return item in self._items

    @property
    def open_suggestions(self) -> tuple[SuggestedItem, ...]:
        return tuple(self._items)

    def ingest(
        self,
        commands: Iterable[SuggestedItem],
        existing_inventory_names: AbstractSet[str],
    ) -> list[SuggestedItem]:
        """Replace the open suggestions with the valid subset of ``commands``.

        ``existing_inventory_names`` is compared case-insensitively; callers may
        pass names in any case.
        """

        inventory = {normalize_name(name) for name in existing_inventory_names}
        accepted: list[SuggestedItem] = []
        seen: set[str] = set()
        for command in commands:
            if self._max_open is not None and len(accepted) >= self._max_open:
                break
            key = command.match_key
            if not command.is_known_type:
                LOGGER.debug("Discarding suggestion with unknown type %r", command.item_type)
                continue
            if not key:
                continue
            if key in inventory:
                LOGGER.debug("Discarding suggestion %r already in inventory", command.item_name)
                continue
            if key in seen:
                continue
            seen.add(key)
            accepted.append(command)
        self._items = accepted
        return list(accepted)

    def try_resolve_by_text(self, text: str) -> Optional[SuggestedItem]:
        """Pop the suggestion whose name equals ``text`` ignoring case."""

        key = normalize_name(text)
        if not key:
            return None
        for index, item in enumerate(self._items):
            if item.match_key == key:
                return self._items.pop(index)
        return None

    def try_resolve_affirmative(self, text: str) -> Optional[SuggestedItem]:
        """Pop the only open suggestion when ``text`` is a plain "yes"."""

        if len(self._items) != 1:
            return None
        if normalize_name(text) not in AFFIRMATIVE_REPLIES:
            return None
        return self._items.pop()

    def confirm(self, item: SuggestedItem) -> bool:
        """Close ``item``; returns ``False`` when it is not an open suggestion."""

        try:
            self._items.remove(item)
        except ValueError:
            LOGGER.debug("Confirmed suggestion %r was not open", item.item_name)
            return False
        return True

    def clear(self) -> None:
        self._items.clear()
