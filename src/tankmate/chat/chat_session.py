"""Chat session engine driving the aquarium assistant conversation.

The session owns every piece of mutable chat state: the transcript, the
composer draft, the in-flight completion flag, the reveal animation and the
open item suggestions. Display layers never mutate that state directly; they
call the public methods below and re-render from :class:`ChatSessionSnapshot`
objects delivered to change listeners.

A single turn moves through ``IDLE -> AWAITING_COMPLETION -> REVEALING ->
IDLE`` on the assistant path, or straight back to ``IDLE`` when the user's
message confirms an open suggestion by name.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Protocol, Sequence

from ..ai.client import CompletionService
from ..ai import prompts
from .message_model import ChatMessage, Sender, SuggestedItem
from .response_parser import parse_response
from .reveal import DEFAULT_REVEAL_INTERVAL, RevealPhase, RevealScheduler, TimerLoop
from .suggestion_ledger import SuggestionLedger

if TYPE_CHECKING:
    from ..aquarium.models import Aquarium

__all__ = [
    "COMPLETION_ERROR_TEXT",
    "MAX_INPUT_CHARACTERS",
    "ChatSession",
    "ChatSessionSnapshot",
    "SubmitOutcome",
    "TurnState",
]

LOGGER = logging.getLogger(__name__)

MAX_INPUT_CHARACTERS = 500
COMPLETION_ERROR_TEXT = "Sorry, there was an error with the response."

InventoryCallback = Callable[[str, str], Any]


class TurnState(Enum):
    IDLE = "idle"
    AWAITING_COMPLETION = "awaiting_completion"
    REVEALING = "revealing"


class SubmitOutcome(Enum):
    """What a call to :meth:`ChatSession.submit` ended up doing."""

    IGNORED = "ignored"
    BUSY = "busy"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    FAILED = "failed"
    DISCARDED = "discarded"
    REVEAL_COMPLETED = "reveal_completed"


@dataclass(frozen=True, slots=True)
class ChatSessionSnapshot:
    """Immutable view of the session handed to display layers."""

    history: tuple[ChatMessage, ...]
    pending_input: str
    is_awaiting_completion: bool
    reveal_phase: RevealPhase
    revealed_text: str
    open_suggestions: tuple[SuggestedItem, ...]
    prompt_suggestions: tuple[str, ...]

    @property
    def state(self) -> TurnState:
        if self.is_awaiting_completion:
            return TurnState.AWAITING_COMPLETION
        if self.reveal_phase is RevealPhase.REVEALING:
            return TurnState.REVEALING
        return TurnState.IDLE


class ChangeListener(Protocol):
    """Callback fired after every state mutation."""

    def __call__(self, snapshot: ChatSessionSnapshot) -> None:
        ...


class ChatSession:
    """Backend-agnostic chat engine with inline inventory suggestions."""

    def __init__(
        self,
        completion_service: CompletionService,
        *,
        aquarium: Aquarium | None = None,
        on_add_item: InventoryCallback | None = None,
        prompt_suggestions: Sequence[str] = (),
        reveal_interval: float = DEFAULT_REVEAL_INTERVAL,
        reveal_chunk_size: int = 1,
        loop: TimerLoop | None = None,
        accept_affirmative_replies: bool = False,
        max_open_suggestions: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._completion_service = completion_service
        self._aquarium = aquarium
        self._on_add_item = on_add_item
        self._initial_prompt_suggestions = tuple(text for text in prompt_suggestions if text.strip())
        self._prompt_suggestions = self._initial_prompt_suggestions
        self._accept_affirmative_replies = accept_affirmative_replies
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._ledger = SuggestionLedger(max_open=max_open_suggestions)
        self._reveal = RevealScheduler(
            reveal_interval,
            chunk_size=reveal_chunk_size,
            loop=loop,
            on_update=self._handle_reveal_update,
            on_complete=self._handle_reveal_complete,
        )
        self._history: List[ChatMessage] = []
        self._pending_input = ""
        self._awaiting_completion = False
        self._revealing_message: Optional[ChatMessage] = None
        self._epoch = 0
        self._change_listeners: list[ChangeListener] = []
        self._inventory_tasks: set[asyncio.Future[Any]] = set()

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------
    def history(self) -> List[ChatMessage]:
        """Return copies of the recorded transcript."""

        return [message.copy() for message in self._history]

    @property
    def pending_input(self) -> str:
        return self._pending_input

    @property
    def is_awaiting_completion(self) -> bool:
        return self._awaiting_completion

    @property
    def reveal_phase(self) -> RevealPhase:
        return self._reveal.phase

    @property
    def open_suggestions(self) -> tuple[SuggestedItem, ...]:
        return self._ledger.open_suggestions

    @property
    def prompt_suggestions(self) -> tuple[str, ...]:
        return self._prompt_suggestions

    @property
    def aquarium(self) -> Aquarium | None:
        return self._aquarium

    @property
    def completion_service(self) -> CompletionService:
        return self._completion_service

    @property
    def state(self) -> TurnState:
        return self.snapshot().state

    def snapshot(self) -> ChatSessionSnapshot:
        return ChatSessionSnapshot(
            history=tuple(message.copy() for message in self._history),
            pending_input=self._pending_input,
            is_awaiting_completion=self._awaiting_completion,
            reveal_phase=self._reveal.phase,
            revealed_text=self._reveal.revealed,
            open_suggestions=self._ledger.open_suggestions,
            prompt_suggestions=self._prompt_suggestions,
        )

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------
    def add_change_listener(self, listener: ChangeListener) -> None:
        """Register a callback invoked with a fresh snapshot on every change."""

        self._change_listeners.append(listener)

    def remove_change_listener(self, listener: ChangeListener) -> None:
        try:
            self._change_listeners.remove(listener)
        except ValueError:
            pass

    # ------------------------------------------------------------------
    # Composer + collaborators
    # ------------------------------------------------------------------
    def set_pending_input(self, text: str) -> str:
        """Store the composer draft, truncated to the input limit."""

        self._pending_input = (text or "")[:MAX_INPUT_CHARACTERS]
        self._emit_change()
        return self._pending_input

    def set_aquarium(self, aquarium: Aquarium | None) -> None:
        """Swap the aquarium snapshot described to the assistant on the next send."""

        self._aquarium = aquarium

    # ------------------------------------------------------------------
    # Turn handling
    # ------------------------------------------------------------------
    async def submit(self, text: Optional[str] = None) -> SubmitOutcome:
        """Send ``text`` (or the composer draft) as the next user turn."""

        message_text = (self._pending_input if text is None else text or "")[:MAX_INPUT_CHARACTERS]
        if not message_text or not message_text.strip():
            return SubmitOutcome.IGNORED
        if self._awaiting_completion:
            LOGGER.debug("Ignoring submission while a completion is in flight")
            return SubmitOutcome.BUSY

        self.skip_or_auto_complete_reveal()
        self._append_message(Sender.USER, message_text)
        self._pending_input = ""
        self._prompt_suggestions = ()

        confirmed = self._ledger.try_resolve_by_text(message_text)
        if confirmed is None and self._accept_affirmative_replies:
            confirmed = self._ledger.try_resolve_affirmative(message_text)
        if confirmed is not None:
            LOGGER.info("User confirmed suggestion %s by text", confirmed.describe())
            self._forward_to_inventory(confirmed)
            self._append_addition_notice(confirmed)
            self._emit_change()
            return SubmitOutcome.CONFIRMED

        return await self._request_completion()

    async def send_or_complete(self) -> SubmitOutcome:
        """Send-button behavior: finish an active reveal, otherwise submit the draft."""

        if self.skip_or_auto_complete_reveal():
            return SubmitOutcome.REVEAL_COMPLETED
        return await self.submit()

    async def choose_prompt_suggestion(self, text: str) -> SubmitOutcome:
        """Send one of the starter prompts shown before the first turn."""

        self._prompt_suggestions = ()
        return await self.submit(text)

    def confirm_suggestion(self, item: SuggestedItem) -> bool:
        """Accept ``item`` from its suggestion button.

        Stale buttons (already confirmed, cleared, or superseded by a newer
        reply) are ignored and return ``False``.
        """

        self.skip_or_auto_complete_reveal()
        if not self._ledger.confirm(item):
            LOGGER.debug("Ignoring confirmation of %s; it is not an open suggestion", item.describe())
            return False
        LOGGER.info("User confirmed suggestion %s", item.describe())
        self._forward_to_inventory(item)
        self._append_addition_notice(item)
        self._emit_change()
        return True

    def skip_or_auto_complete_reveal(self) -> bool:
        """Finish the running reveal at once; returns whether one was running."""

        if not self._reveal.is_active:
            return False
        self._reveal.complete_immediately()
        return True

    def clear(self) -> None:
        """Reset the conversation, including any reveal or request in flight."""

        self._epoch += 1
        self._reveal.cancel()
        self._revealing_message = None
        self._history.clear()
        self._pending_input = ""
        self._awaiting_completion = False
        self._ledger.clear()
        self._prompt_suggestions = self._initial_prompt_suggestions
        LOGGER.debug("Chat session cleared (epoch=%s)", self._epoch)
        self._emit_change()

    # ------------------------------------------------------------------
    # Completion path
    # ------------------------------------------------------------------
    def completion_messages(self) -> List[Dict[str, str]]:
        """Build the transcript replayed to the completion service."""

        messages: List[Dict[str, str]] = []
        if self._aquarium is not None:
            messages.append({"role": "system", "content": prompts.build_aquarium_context(self._aquarium)})
        for message in self._history:
            entry = message.to_completion_entry()
            if entry is not None:
                messages.append(entry)
        return messages

    async def _request_completion(self) -> SubmitOutcome:
        epoch = self._epoch
        self._awaiting_completion = True
        self._emit_change()
        try:
            result = await self._completion_service.complete(self.completion_messages())
        except Exception:
            if epoch != self._epoch:
                LOGGER.debug("Dropping completion failure for a cleared session")
                return SubmitOutcome.DISCARDED
            LOGGER.exception("Completion request failed")
            self._append_message(Sender.ASSISTANT, COMPLETION_ERROR_TEXT)
            self._reveal.mark_completed(COMPLETION_ERROR_TEXT)
            return SubmitOutcome.FAILED
        else:
            if epoch != self._epoch:
                LOGGER.debug("Dropping completion for a cleared session")
                return SubmitOutcome.DISCARDED
            self._apply_response(result.content)
            return SubmitOutcome.COMPLETED
        finally:
            if epoch == self._epoch:
                self._awaiting_completion = False
                self._emit_change()

    def _apply_response(self, raw_text: str) -> None:
        parsed = parse_response(raw_text)
        inventory = self._aquarium.inventory_names() if self._aquarium is not None else set()
        accepted = self._ledger.ingest(parsed.commands, inventory)
        LOGGER.debug(
            "Assistant reply parsed: %s visible chars, %s command(s), %s suggestion(s) kept",
            len(parsed.visible_text),
            len(parsed.commands),
            len(accepted),
        )
        if not parsed.visible_text:
            self._reveal.mark_completed("")
            return
        self._revealing_message = self._append_message(Sender.ASSISTANT, "")
        self._reveal.begin(parsed.visible_text)

    # ------------------------------------------------------------------
    # Reveal callbacks
    # ------------------------------------------------------------------
    def _handle_reveal_update(self, prefix: str) -> None:
        message = self._revealing_message
        if message is None:
            return
        message.text = prefix
        self._emit_change()

    def _handle_reveal_complete(self, text: str) -> None:
        message = self._revealing_message
        self._revealing_message = None
        if message is not None:
            message.text = text
        self._emit_change()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _append_message(self, sender: Sender, text: str) -> ChatMessage:
        message = ChatMessage(sender=sender, text=text, created_at=self._clock())
        self._history.append(message)
        return message

    def _append_addition_notice(self, item: SuggestedItem) -> None:
        self._append_message(Sender.SYSTEM, f"{item.describe()} has been added to your tank.")

    def _forward_to_inventory(self, item: SuggestedItem) -> None:
        callback = self._on_add_item
        if callback is None:
            LOGGER.error("No inventory handler configured; %s was not stored", item.describe())
            return
        try:
            result = callback(item.item_type, item.item_name)
        except Exception:
            LOGGER.exception("Inventory handler failed to add %s", item.describe())
            return
        if inspect.isawaitable(result):
            self._track_inventory_task(result, item)

    def _track_inventory_task(self, awaitable: Any, item: SuggestedItem) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOGGER.error("No running event loop to await inventory handler for %s", item.describe())
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        future = asyncio.ensure_future(awaitable, loop=loop)
        self._inventory_tasks.add(future)

        def _done(task: asyncio.Future[Any]) -> None:
            self._inventory_tasks.discard(task)
            if task.cancelled():
                return
            exc = task.exception()
            if exc is not None:
                LOGGER.error("Inventory handler failed to add %s", item.describe(), exc_info=exc)

        future.add_done_callback(_done)

    def _emit_change(self) -> None:
        if not self._change_listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._change_listeners):
            listener(snapshot)
