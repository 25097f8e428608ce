"""Console host for the TankMate aquarium assistant."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.client import build_completion_service
from .ai.prompts import DEFAULT_PROMPT_SUGGESTIONS
from .aquarium.models import Aquarium
from .chat.chat_session import ChatSession, ChatSessionSnapshot, SubmitOutcome, TurnState
from .chat.message_model import Sender
from .services.settings import Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils

_LOGGER = logging.getLogger(__name__)
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_HELP_TEXT = (
    "Commands: /add N confirms suggestion N, /skip finishes the current reply, "
    "/clear resets the chat, /quit exits. An empty line finishes a reply that is still typing."
)


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Log to the rotating file only; the console belongs to the chat."""

    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, console=False, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        return active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings()


def load_aquarium(path: Path) -> Aquarium:
    """Read an aquarium snapshot exported as JSON."""

    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError(f"{path} does not contain a JSON object")
    return Aquarium.from_dict(payload)


class ConsoleRenderer:
    """Prints new transcript content as session snapshots arrive."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream or sys.stdout
        self._printed: list[int] = []
        self._suggestions_shown: tuple[Any, ...] = ()

    def __call__(self, snapshot: ChatSessionSnapshot) -> None:
        history = snapshot.history
        if len(history) < len(self._printed):
            self._printed = []
            self._suggestions_shown = ()
        for index, message in enumerate(history):
            if index == len(self._printed):
                self._printed.append(0)
                if message.sender is not Sender.USER:
                    self._stream.write(f"\n[{message.timestamp}] {self._label(message.sender)}: ")
            if message.sender is Sender.USER:
                self._printed[index] = len(message.text)
                continue
            already = self._printed[index]
            if len(message.text) > already:
                self._stream.write(message.text[already:])
                self._printed[index] = len(message.text)
        if snapshot.open_suggestions != self._suggestions_shown and snapshot.state is not TurnState.REVEALING:
            self._suggestions_shown = snapshot.open_suggestions
            for number, item in enumerate(snapshot.open_suggestions, start=1):
                self._stream.write(f"\n  [{number}] add {item.describe()}")
        self._stream.flush()

    @staticmethod
    def _label(sender: Sender) -> str:
        return "assistant" if sender is Sender.ASSISTANT else "system"


async def run_console(session: ChatSession, *, stream: TextIO | None = None) -> None:
    """Read lines from stdin and feed them to ``session`` until ``/quit``."""

    out = stream or sys.stdout
    session.add_change_listener(ConsoleRenderer(out))
    out.write(_HELP_TEXT + "\n")
    for number, prompt in enumerate(session.prompt_suggestions, start=1):
        out.write(f"  ({number}) {prompt}\n")

    while True:
        try:
            line = await asyncio.to_thread(input, "\n> ")
        except EOFError:
            break
        command = line.strip()
        if command in {"/quit", "/exit"}:
            break
        if command == "/clear":
            session.clear()
            out.write("Chat cleared.\n")
            continue
        if command == "/skip":
            session.skip_or_auto_complete_reveal()
            continue
        if command.startswith("/add"):
            _confirm_by_number(session, command, out)
            continue
        if command.isdigit() and session.prompt_suggestions:
            index = int(command) - 1
            if 0 <= index < len(session.prompt_suggestions):
                await session.choose_prompt_suggestion(session.prompt_suggestions[index])
                continue
        session.set_pending_input(line)
        outcome = await session.send_or_complete()
        if outcome is SubmitOutcome.BUSY:
            out.write("Still waiting for the previous reply.\n")


def _confirm_by_number(session: ChatSession, command: str, out: TextIO) -> None:
    _, _, raw_index = command.partition(" ")
    suggestions = session.open_suggestions
    try:
        item = suggestions[int(raw_index) - 1]
    except (ValueError, IndexError):
        out.write("No such suggestion.\n")
        return
    session.confirm_suggestion(item)


def build_session(settings: Settings, aquarium: Aquarium | None) -> ChatSession:
    """Wire a chat session to the configured completion service."""

    service = build_completion_service(settings)

    def _add_item(item_type: str, item_name: str) -> None:
        if aquarium is None:
            _LOGGER.warning("No aquarium loaded; %s (%s) was not stored", item_name, item_type)
            return
        if not aquarium.add_item(item_type, item_name):
            _LOGGER.warning("Unsupported item type %s for %s", item_type, item_name)

    return ChatSession(
        service,
        aquarium=aquarium,
        on_add_item=_add_item,
        prompt_suggestions=settings.prompt_suggestions or DEFAULT_PROMPT_SUGGESTIONS,
        reveal_interval=settings.reveal_interval,
        reveal_chunk_size=settings.reveal_chunk_size,
        accept_affirmative_replies=settings.accept_affirmative_replies,
        max_open_suggestions=settings.max_open_suggestions,
    )


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point invoked by the ``tankmate`` console script."""

    args = _parse_cli_args(argv)
    debug = _env_flag("TANKMATE_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("TANKMATE_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)
    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    aquarium = None
    if args.aquarium:
        try:
            aquarium = load_aquarium(Path(args.aquarium).expanduser())
        except (OSError, ValueError) as exc:
            print(f"Unable to read aquarium snapshot: {exc}", file=sys.stderr)
            raise SystemExit(2) from exc

    session = build_session(settings, aquarium)
    try:
        asyncio.run(_run(session))
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")


async def _run(session: ChatSession) -> None:
    try:
        await run_console(session)
    finally:
        session.clear()
        await _close_service(session.completion_service)


async def _close_service(service: Any) -> None:
    close = getattr(service, "aclose", None)
    if close is None:
        return
    try:
        await close()
    except Exception as exc:  # pragma: no cover - depends on transport state
        _LOGGER.debug("Completion service close failed: %s", exc)


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="tankmate",
        description="Chat with the TankMate aquarium assistant or inspect its configuration.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.tankmate/settings.json path.",
    )
    parser.add_argument(
        "--aquarium",
        metavar="PATH",
        help="JSON snapshot of the aquarium to discuss.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings before launch (repeatable).",
    )
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        overrides[key] = _coerce_value(type_hints.get(key, fields[key].type), raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    target = _resolve_annotation(annotation)
    normalized = raw_value.strip()

    if target is str or target is Any:
        return normalized
    if normalized.lower() in {"none", "null"}:
        return None
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    if target in {list, dict}:
        try:
            value = json.loads(normalized)
        except json.JSONDecodeError as exc:
            raise ValueError(f"{target.__name__} overrides must be valid JSON") from exc
        if not isinstance(value, target):
            raise ValueError(f"Expected a JSON {target.__name__}")
        return value
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin in {list, dict}:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args:
        return origin
    return _resolve_annotation(args[0])


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["api_key"] = redact_secret(settings.api_key)
    metadata = {
        "path": str(store.path),
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": sorted(name for name in os.environ if name.startswith("TANKMATE_")),
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2)
    destination.write("\n")
