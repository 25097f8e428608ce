"""Shared test helpers and stub classes.

Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

from typing import Any, Callable, List, Mapping, Sequence

from tankmate.ai.client import CompletionResult


class FakeTimerHandle:
    def __init__(self, delay: float, callback: Callable[..., Any], args: tuple[Any, ...]):
        self.delay = delay
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeLoop:
    """Manually driven stand-in for ``loop.call_later``.

    Timers only fire when a test calls :meth:`fire_next` or :meth:`run_all`,
    which makes reveal pacing deterministic.
    """

    def __init__(self) -> None:
        self.handles: List[FakeTimerHandle] = []

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> FakeTimerHandle:
        handle = FakeTimerHandle(delay, callback, args)
        self.handles.append(handle)
        return handle

    @property
    def pending(self) -> List[FakeTimerHandle]:
        return [handle for handle in self.handles if not handle.cancelled]

    def fire_next(self) -> bool:
        while self.handles:
            handle = self.handles.pop(0)
            if handle.cancelled:
                continue
            handle.callback(*handle.args)
            return True
        return False

    def run_all(self, limit: int = 10_000) -> int:
        fired = 0
        while fired < limit and self.fire_next():
            fired += 1
        return fired


class ScriptedCompletionService:
    """Completion service returning queued replies and recording requests."""

    def __init__(self, *replies: str | BaseException) -> None:
        self.replies: List[str | BaseException] = list(replies)
        self.requests: List[List[dict[str, str]]] = []

    async def complete(self, messages: Sequence[Mapping[str, str]]) -> CompletionResult:
        self.requests.append([dict(message) for message in messages])
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return CompletionResult(content=reply)
