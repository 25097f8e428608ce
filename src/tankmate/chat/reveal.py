"""Time-paced progressive reveal of assistant text."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Optional, Protocol

__all__ = ["RevealPhase", "RevealScheduler", "TimerLoop", "DEFAULT_REVEAL_INTERVAL"]

LOGGER = logging.getLogger(__name__)

DEFAULT_REVEAL_INTERVAL = 0.025


class RevealPhase(Enum):
    """Lifecycle of a single reveal."""

    IDLE = "idle"
    REVEALING = "revealing"
    COMPLETED = "completed"


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class TimerLoop(Protocol):
    """Subset of :class:`asyncio.AbstractEventLoop` used for ticking."""

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        ...


class RevealScheduler:
    """Reveals one target string a chunk at a time on a fixed period.

    The scheduler owns at most one pending timer. Every scheduled tick is
    stamped with the generation that created it; ``begin``,
    ``complete_immediately`` and ``cancel`` bump the generation so a tick that
    was already queued when the user moved on becomes a no-op.
    """

    def __init__(
        self,
        interval: float = DEFAULT_REVEAL_INTERVAL,
        *,
        chunk_size: int = 1,
        loop: TimerLoop | None = None,
        on_update: Optional[Callable[[str], None]] = None,
        on_complete: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._interval = max(0.0, float(interval))
        self._chunk_size = max(1, int(chunk_size))
        self._loop = loop
        self._on_update = on_update
        self._on_complete = on_complete
        self._phase = RevealPhase.IDLE
        self._target = ""
        self._revealed = ""
        self._handle: TimerHandle | None = None
        self._generation = 0

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def phase(self) -> RevealPhase:
        return self._phase

    @property
    def target(self) -> str:
        return self._target

    @property
    def revealed(self) -> str:
        return self._revealed

    @property
    def is_active(self) -> bool:
        return self._phase is RevealPhase.REVEALING

    @property
    def has_pending_tick(self) -> bool:
        return self._handle is not None

    @property
    def interval(self) -> float:
        return self._interval

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------
    def begin(self, text: str) -> None:
        """Start revealing ``text``, discarding any reveal still in flight."""

        self._cancel_timer()
        self._generation += 1
        self._target = text or ""
        self._revealed = ""
        self._phase = RevealPhase.REVEALING
        LOGGER.debug("Reveal started (generation=%s, chars=%s)", self._generation, len(self._target))
        if not self._target:
            self._finish()
            return
        self._schedule_tick()

    def complete_immediately(self) -> None:
        """Jump straight to the full text. Safe to call when nothing is active."""

        self._cancel_timer()
        if self._phase is not RevealPhase.REVEALING:
            return
        self._generation += 1
        self._revealed = self._target
        self._publish(self._revealed)
        self._finish()

    def cancel(self) -> None:
        """Drop the current reveal without publishing and return to idle."""

        self._cancel_timer()
        self._generation += 1
        self._phase = RevealPhase.IDLE
        self._target = ""
        self._revealed = ""

    def mark_completed(self, text: str = "") -> None:
        """Record a reveal that needs no animation (errors, empty replies)."""

        self._cancel_timer()
        self._generation += 1
        self._target = text
        self._revealed = text
        self._phase = RevealPhase.COMPLETED

    def tick(self) -> None:
        """Advance the reveal by one chunk.

        Normally invoked by the timer; exposed for hosts that drive their own
        frame clock.
        """

        if self._phase is not RevealPhase.REVEALING:
            return
        end = min(len(self._target), len(self._revealed) + self._chunk_size)
        self._revealed = self._target[:end]
        self._publish(self._revealed)
        if self._revealed == self._target:
            self._cancel_timer()
            self._finish()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _on_timer(self, generation: int) -> None:
        self._handle = None
        if generation != self._generation:
            LOGGER.debug("Dropping stale reveal tick (generation=%s)", generation)
            return
        try:
            self.tick()
        finally:
            # Keep ticking even when an update callback raises.
            if self._phase is RevealPhase.REVEALING and generation == self._generation and self._handle is None:
                self._schedule_tick()

    def _schedule_tick(self) -> None:
        loop = self._resolve_loop()
        self._handle = loop.call_later(self._interval, self._on_timer, self._generation)

    def _resolve_loop(self) -> TimerLoop:
        if self._loop is not None:
            return self._loop
        return asyncio.get_running_loop()

    def _cancel_timer(self) -> None:
        handle = self._handle
        self._handle = None
        if handle is not None:
            handle.cancel()

    def _finish(self) -> None:
        self._phase = RevealPhase.COMPLETED
        LOGGER.debug("Reveal completed (chars=%s)", len(self._target))
        if self._on_complete is not None:
            self._on_complete(self._target)

    def _publish(self, prefix: str) -> None:
        if self._on_update is not None:
            self._on_update(prefix)
