"""Tests for the chat session engine."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Mapping, Sequence

import pytest

from tankmate.ai.client import CompletionResult
from tankmate.ai.prompts import DEFAULT_PROMPT_SUGGESTIONS
from tankmate.aquarium.models import Aquarium
from tankmate.chat.chat_session import (
    COMPLETION_ERROR_TEXT,
    MAX_INPUT_CHARACTERS,
    ChatSession,
    ChatSessionSnapshot,
    SubmitOutcome,
    TurnState,
)
from tankmate.chat.message_model import Sender, SuggestedItem
from tankmate.chat.reveal import RevealPhase
from tests.helpers import FakeLoop, ScriptedCompletionService

BETTA_REPLY = 'A Betta would be a great fit.\n###\n[ADD_ITEM type="fish"]Betta[/ADD_ITEM]'


class _GatedCompletionService:
    """Completion service that blocks until the test releases it."""

    def __init__(self, reply: str = "Done.") -> None:
        self.reply = reply
        self.release = asyncio.Event()
        self.calls = 0

    async def complete(self, messages: Sequence[Mapping[str, str]]) -> CompletionResult:
        self.calls += 1
        await self.release.wait()
        return CompletionResult(content=self.reply)


def _session(
    service: Any,
    loop: FakeLoop,
    clock: Callable[..., Any],
    **kwargs: Any,
) -> ChatSession:
    return ChatSession(service, loop=loop, clock=clock, **kwargs)


@pytest.mark.asyncio
async def test_suggestion_confirmed_by_typing_its_name(
    fake_loop: FakeLoop, fixed_clock: Callable[..., Any], community_tank: Aquarium
) -> None:
    added: List[tuple[str, str]] = []
    service = ScriptedCompletionService(BETTA_REPLY)
    session = _session(
        service,
        fake_loop,
        fixed_clock,
        aquarium=community_tank,
        on_add_item=lambda item_type, name: added.append((item_type, name)),
    )

    outcome = await session.submit("What fish can I add to this tank?")

    assert outcome is SubmitOutcome.COMPLETED
    assert session.state is TurnState.REVEALING
    assert session.open_suggestions == (SuggestedItem("fish", "Betta"),)
    request = service.requests[0]
    assert request[0]["role"] == "system"
    assert "Name: Community 20" in request[0]["content"]
    assert request[-1] == {"role": "user", "content": "What fish can I add to this tank?"}

    fake_loop.run_all()

    history = session.history()
    assert [message.sender for message in history] == [Sender.USER, Sender.ASSISTANT]
    assert history[1].text == "A Betta would be a great fit."
    assert session.state is TurnState.IDLE

    outcome = await session.submit("betta")

    assert outcome is SubmitOutcome.CONFIRMED
    assert added == [("fish", "Betta")]
    assert session.open_suggestions == ()
    assert len(service.requests) == 1
    notice = session.history()[-1]
    assert notice.sender is Sender.SYSTEM
    assert notice.text == "Betta (fish) has been added to your tank."
    assert notice.timestamp == fixed_clock().astimezone().strftime("%H:%M")


@pytest.mark.asyncio
async def test_system_notices_are_not_replayed(
    fake_loop: FakeLoop, fixed_clock: Callable[..., Any], community_tank: Aquarium
) -> None:
    service = ScriptedCompletionService(BETTA_REPLY, "Enjoy your new fish.")
    session = _session(service, fake_loop, fixed_clock, aquarium=community_tank, on_add_item=lambda *_: None)
    await session.submit("Any fish ideas?")
    fake_loop.run_all()
    await session.submit("Betta")

    await session.submit("Thanks!")

    roles = [entry["role"] for entry in service.requests[-1]]
    assert roles == ["system", "user", "assistant", "user", "user"]
    assert service.requests[-1][2]["content"] == "A Betta would be a great fit."


@pytest.mark.asyncio
async def test_reply_is_revealed_progressively(fake_loop: FakeLoop, fixed_clock: Callable[..., Any]) -> None:
    snapshots: List[ChatSessionSnapshot] = []
    session = _session(ScriptedCompletionService("Hi!"), fake_loop, fixed_clock)
    session.add_change_listener(snapshots.append)

    await session.submit("hello")
    fake_loop.run_all()

    revealed = [snap.history[-1].text for snap in snapshots if snap.reveal_phase is RevealPhase.REVEALING]
    assert revealed[-3:] == ["H", "Hi", "Hi!"]
    assert snapshots[-1].reveal_phase is RevealPhase.COMPLETED
    assert snapshots[-1].history[-1].text == "Hi!"


@pytest.mark.asyncio
async def test_completion_failure_appends_fallback_message(
    fake_loop: FakeLoop, fixed_clock: Callable[..., Any], caplog: pytest.LogCaptureFixture
) -> None:
    session = _session(ScriptedCompletionService(RuntimeError("boom")), fake_loop, fixed_clock)

    with caplog.at_level(logging.ERROR):
        outcome = await session.submit("hello")

    assert outcome is SubmitOutcome.FAILED
    history = session.history()
    assert history[-1].sender is Sender.ASSISTANT
    assert history[-1].text == COMPLETION_ERROR_TEXT
    assert session.reveal_phase is RevealPhase.COMPLETED
    assert not session.is_awaiting_completion
    assert session.open_suggestions == ()
    assert "Completion request failed" in caplog.text


@pytest.mark.asyncio
async def test_submit_while_awaiting_completion_is_busy(
    fake_loop: FakeLoop, fixed_clock: Callable[..., Any]
) -> None:
    service = _GatedCompletionService()
    session = _session(service, fake_loop, fixed_clock)

    first = asyncio.create_task(session.submit("first"))
    await asyncio.sleep(0)
    assert session.state is TurnState.AWAITING_COMPLETION

    assert await session.submit("second") is SubmitOutcome.BUSY

    service.release.set()
    assert await first is SubmitOutcome.COMPLETED
    assert service.calls == 1
    assert [message.text for message in session.history() if message.sender is Sender.USER] == ["first"]


@pytest.mark.asyncio
async def test_clear_discards_in_flight_completion(fake_loop: FakeLoop, fixed_clock: Callable[..., Any]) -> None:
    service = _GatedCompletionService(BETTA_REPLY)
    session = _session(service, fake_loop, fixed_clock)

    pending = asyncio.create_task(session.submit("hello"))
    await asyncio.sleep(0)
    session.clear()
    service.release.set()

    assert await pending is SubmitOutcome.DISCARDED
    assert session.history() == []
    assert session.open_suggestions == ()
    assert not session.is_awaiting_completion
    assert session.state is TurnState.IDLE


@pytest.mark.asyncio
async def test_clear_cancels_running_reveal(fake_loop: FakeLoop, fixed_clock: Callable[..., Any]) -> None:
    session = _session(
        ScriptedCompletionService(BETTA_REPLY),
        fake_loop,
        fixed_clock,
        prompt_suggestions=DEFAULT_PROMPT_SUGGESTIONS,
    )
    await session.submit("hello")
    session.set_pending_input("draft")

    session.clear()
    fake_loop.run_all()

    assert session.history() == []
    assert session.pending_input == ""
    assert session.reveal_phase is RevealPhase.IDLE
    assert session.open_suggestions == ()
    assert session.prompt_suggestions == DEFAULT_PROMPT_SUGGESTIONS


@pytest.mark.asyncio
async def test_submit_during_reveal_completes_it_first(
    fake_loop: FakeLoop, fixed_clock: Callable[..., Any]
) -> None:
    service = ScriptedCompletionService("First answer.", "Second answer.")
    session = _session(service, fake_loop, fixed_clock)
    await session.submit("one")
    fake_loop.fire_next()

    await session.submit("two")

    assert service.requests[1][1] == {"role": "assistant", "content": "First answer."}
    assert session.history()[1].text == "First answer."
    fake_loop.run_all()
    assert session.history()[-1].text == "Second answer."


@pytest.mark.asyncio
async def test_send_or_complete_skips_reveal_before_sending(
    fake_loop: FakeLoop, fixed_clock: Callable[..., Any]
) -> None:
    service = ScriptedCompletionService("Long answer here.")
    session = _session(service, fake_loop, fixed_clock)
    await session.submit("question")
    session.set_pending_input("follow up")

    outcome = await session.send_or_complete()

    assert outcome is SubmitOutcome.REVEAL_COMPLETED
    assert session.history()[-1].text == "Long answer here."
    assert session.pending_input == "follow up"
    assert len(service.requests) == 1


@pytest.mark.asyncio
async def test_send_or_complete_submits_draft_when_idle(
    fake_loop: FakeLoop, fixed_clock: Callable[..., Any]
) -> None:
    service = ScriptedCompletionService("Sure.")
    session = _session(service, fake_loop, fixed_clock)
    session.set_pending_input("  hello  ")

    outcome = await session.send_or_complete()

    assert outcome is SubmitOutcome.COMPLETED
    assert session.pending_input == ""
    assert session.history()[0].text == "  hello  "


@pytest.mark.asyncio
async def test_blank_submission_is_ignored(fake_loop: FakeLoop, fixed_clock: Callable[..., Any]) -> None:
    service = ScriptedCompletionService()
    session = _session(service, fake_loop, fixed_clock)

    assert await session.submit("   ") is SubmitOutcome.IGNORED
    assert await session.send_or_complete() is SubmitOutcome.IGNORED
    assert session.history() == []
    assert service.requests == []


def test_pending_input_is_truncated(fake_loop: FakeLoop, fixed_clock: Callable[..., Any]) -> None:
    session = _session(ScriptedCompletionService(), fake_loop, fixed_clock)

    stored = session.set_pending_input("x" * (MAX_INPUT_CHARACTERS + 20))

    assert len(stored) == MAX_INPUT_CHARACTERS
    assert session.pending_input == stored


@pytest.mark.asyncio
async def test_prompt_suggestions_hide_after_first_message(
    fake_loop: FakeLoop, fixed_clock: Callable[..., Any]
) -> None:
    service = ScriptedCompletionService("Try a Betta.")
    session = _session(service, fake_loop, fixed_clock, prompt_suggestions=DEFAULT_PROMPT_SUGGESTIONS)
    assert session.prompt_suggestions == DEFAULT_PROMPT_SUGGESTIONS

    outcome = await session.choose_prompt_suggestion(DEFAULT_PROMPT_SUGGESTIONS[0])

    assert outcome is SubmitOutcome.COMPLETED
    assert session.prompt_suggestions == ()
    assert service.requests[0][-1]["content"] == DEFAULT_PROMPT_SUGGESTIONS[0]


@pytest.mark.asyncio
async def test_confirm_suggestion_button(
    fake_loop: FakeLoop, fixed_clock: Callable[..., Any], community_tank: Aquarium
) -> None:
    session = _session(
        ScriptedCompletionService(BETTA_REPLY),
        fake_loop,
        fixed_clock,
        aquarium=community_tank,
        on_add_item=community_tank.add_item,
    )
    await session.submit("Ideas?")
    item = session.open_suggestions[0]

    session.confirm_suggestion(item)

    assert session.reveal_phase is RevealPhase.COMPLETED
    assert session.history()[1].text == "A Betta would be a great fit."
    assert session.history()[-1].text == "Betta (fish) has been added to your tank."
    assert "betta" in community_tank.inventory_names()
    assert session.open_suggestions == ()


@pytest.mark.asyncio
async def test_suggestions_already_in_tank_are_dropped(
    fake_loop: FakeLoop, fixed_clock: Callable[..., Any], community_tank: Aquarium
) -> None:
    reply = 'Options below.###[ADD_ITEM type="fish"]neon tetra[/ADD_ITEM][ADD_ITEM type="plant"]Anubias[/ADD_ITEM]'
    session = _session(ScriptedCompletionService(reply), fake_loop, fixed_clock, aquarium=community_tank)

    await session.submit("Ideas?")

    assert session.open_suggestions == (SuggestedItem("plant", "Anubias"),)


@pytest.mark.asyncio
async def test_reply_with_only_commands_adds_no_assistant_message(
    fake_loop: FakeLoop, fixed_clock: Callable[..., Any]
) -> None:
    session = _session(
        ScriptedCompletionService('###[ADD_ITEM type="plant"]Hornwort[/ADD_ITEM]'), fake_loop, fixed_clock
    )

    await session.submit("plants?")

    assert [message.sender for message in session.history()] == [Sender.USER]
    assert session.reveal_phase is RevealPhase.COMPLETED
    assert session.open_suggestions == (SuggestedItem("plant", "Hornwort"),)


@pytest.mark.asyncio
async def test_affirmative_reply_confirms_when_enabled(
    fake_loop: FakeLoop, fixed_clock: Callable[..., Any]
) -> None:
    added: List[tuple[str, str]] = []
    service = ScriptedCompletionService(BETTA_REPLY)
    session = _session(
        service,
        fake_loop,
        fixed_clock,
        on_add_item=lambda item_type, name: added.append((item_type, name)),
        accept_affirmative_replies=True,
    )
    await session.submit("Ideas?")

    assert await session.submit("Yes") is SubmitOutcome.CONFIRMED
    assert added == [("fish", "Betta")]


@pytest.mark.asyncio
async def test_affirmative_reply_goes_to_assistant_by_default(
    fake_loop: FakeLoop, fixed_clock: Callable[..., Any]
) -> None:
    service = ScriptedCompletionService(BETTA_REPLY, "Great, add it from the button.")
    session = _session(service, fake_loop, fixed_clock, on_add_item=lambda *_: None)
    await session.submit("Ideas?")

    assert await session.submit("yes") is SubmitOutcome.COMPLETED
    assert len(service.requests) == 2


@pytest.mark.asyncio
async def test_missing_inventory_callback_is_logged(
    fake_loop: FakeLoop, fixed_clock: Callable[..., Any], caplog: pytest.LogCaptureFixture
) -> None:
    session = _session(ScriptedCompletionService(BETTA_REPLY), fake_loop, fixed_clock)
    await session.submit("Ideas?")

    with caplog.at_level(logging.ERROR):
        outcome = await session.submit("Betta")

    assert outcome is SubmitOutcome.CONFIRMED
    assert "No inventory handler configured" in caplog.text
    assert session.history()[-1].sender is Sender.SYSTEM
    assert session.open_suggestions == ()


@pytest.mark.asyncio
async def test_failing_inventory_callback_is_logged(
    fake_loop: FakeLoop, fixed_clock: Callable[..., Any], caplog: pytest.LogCaptureFixture
) -> None:
    def _explode(item_type: str, name: str) -> None:
        raise RuntimeError("database offline")

    session = _session(ScriptedCompletionService(BETTA_REPLY), fake_loop, fixed_clock, on_add_item=_explode)
    await session.submit("Ideas?")

    with caplog.at_level(logging.ERROR):
        session.confirm_suggestion(session.open_suggestions[0])

    assert "Inventory handler failed to add Betta (fish)" in caplog.text
    assert session.history()[-1].text == "Betta (fish) has been added to your tank."


@pytest.mark.asyncio
async def test_async_inventory_callback_is_awaited(
    fake_loop: FakeLoop, fixed_clock: Callable[..., Any]
) -> None:
    added: List[tuple[str, str]] = []

    async def _store(item_type: str, name: str) -> None:
        added.append((item_type, name))

    session = _session(ScriptedCompletionService(BETTA_REPLY), fake_loop, fixed_clock, on_add_item=_store)
    await session.submit("Ideas?")

    await session.submit("betta")
    await asyncio.sleep(0)

    assert added == [("fish", "Betta")]


@pytest.mark.asyncio
async def test_history_returns_copies(fake_loop: FakeLoop, fixed_clock: Callable[..., Any]) -> None:
    session = _session(ScriptedCompletionService("Hi."), fake_loop, fixed_clock)
    await session.submit("hello")

    session.history()[0].text = "tampered"

    assert session.history()[0].text == "hello"


def test_listener_errors_propagate(fake_loop: FakeLoop, fixed_clock: Callable[..., Any]) -> None:
    session = _session(ScriptedCompletionService(), fake_loop, fixed_clock)

    def _broken(snapshot: ChatSessionSnapshot) -> None:
        raise RuntimeError("render failed")

    session.add_change_listener(_broken)
    with pytest.raises(RuntimeError):
        session.set_pending_input("hi")

    session.remove_change_listener(_broken)
    session.set_pending_input("hi")
    assert session.pending_input == "hi"


@pytest.mark.asyncio
async def test_explicit_submit_text_is_truncated(fake_loop: FakeLoop, fixed_clock: Callable[..., Any]) -> None:
    service = ScriptedCompletionService("Noted.")
    session = _session(service, fake_loop, fixed_clock)

    await session.submit("y" * (MAX_INPUT_CHARACTERS + 50))

    assert len(session.history()[0].text) == MAX_INPUT_CHARACTERS
    assert service.requests[0][-1]["content"] == "y" * MAX_INPUT_CHARACTERS


@pytest.mark.asyncio
async def test_confirming_same_suggestion_twice_adds_it_once(
    fake_loop: FakeLoop, fixed_clock: Callable[..., Any], community_tank: Aquarium
) -> None:
    session = _session(
        ScriptedCompletionService(BETTA_REPLY),
        fake_loop,
        fixed_clock,
        aquarium=community_tank,
        on_add_item=community_tank.add_item,
    )
    await session.submit("Ideas?")
    item = session.open_suggestions[0]

    assert session.confirm_suggestion(item) is True
    assert session.confirm_suggestion(item) is False

    assert [fish.name for fish in community_tank.species].count("Betta") == 1
    notices = [message for message in session.history() if message.sender is Sender.SYSTEM]
    assert len(notices) == 1


@pytest.mark.asyncio
async def test_stale_suggestion_after_clear_is_ignored(
    fake_loop: FakeLoop, fixed_clock: Callable[..., Any]
) -> None:
    added: List[tuple[str, str]] = []
    session = _session(
        ScriptedCompletionService(BETTA_REPLY),
        fake_loop,
        fixed_clock,
        on_add_item=lambda item_type, name: added.append((item_type, name)),
    )
    await session.submit("Ideas?")
    item = session.open_suggestions[0]
    session.clear()

    assert session.confirm_suggestion(item) is False
    assert session.confirm_suggestion(SuggestedItem("gadget", "Nuke")) is False

    assert added == []
    assert session.history() == []


@pytest.mark.asyncio
async def test_suggestion_superseded_by_newer_reply_is_ignored(
    fake_loop: FakeLoop, fixed_clock: Callable[..., Any]
) -> None:
    added: List[tuple[str, str]] = []
    second_reply = 'Or a plant.###[ADD_ITEM type="plant"]Anubias[/ADD_ITEM]'
    session = _session(
        ScriptedCompletionService(BETTA_REPLY, second_reply),
        fake_loop,
        fixed_clock,
        on_add_item=lambda item_type, name: added.append((item_type, name)),
    )
    await session.submit("Ideas?")
    betta = session.open_suggestions[0]
    await session.submit("Anything else?")

    assert session.confirm_suggestion(betta) is False
    assert added == []
    assert session.open_suggestions == (SuggestedItem("plant", "Anubias"),)


@pytest.mark.asyncio
async def test_set_aquarium_changes_context_for_next_send(
    fake_loop: FakeLoop, fixed_clock: Callable[..., Any], community_tank: Aquarium
) -> None:
    service = ScriptedCompletionService("First.", "Second.")
    session = _session(service, fake_loop, fixed_clock)
    await session.submit("hello")
    assert service.requests[0][0]["role"] == "user"

    session.set_aquarium(community_tank)
    await session.submit("and now?")

    assert session.aquarium is community_tank
    assert service.requests[1][0]["role"] == "system"
    assert "Name: Community 20" in service.requests[1][0]["content"]
