"""Chat session engine: message model, reply parsing, reveal and suggestions."""

from .message_model import ITEM_TYPES, ChatMessage, Sender, SuggestedItem
from .response_parser import COMMAND_SEPARATOR, ParsedResponse, parse_response
from .reveal import RevealPhase, RevealScheduler
from .suggestion_ledger import SuggestionLedger
from .chat_session import (
    COMPLETION_ERROR_TEXT,
    MAX_INPUT_CHARACTERS,
    ChatSession,
    ChatSessionSnapshot,
    SubmitOutcome,
    TurnState,
)

__all__ = [
    "COMMAND_SEPARATOR",
    "COMPLETION_ERROR_TEXT",
    "ITEM_TYPES",
    "MAX_INPUT_CHARACTERS",
    "ChatMessage",
    "ChatSession",
    "ChatSessionSnapshot",
    "ParsedResponse",
    "RevealPhase",
    "RevealScheduler",
    "Sender",
    "SubmitOutcome",
    "SuggestedItem",
    "SuggestionLedger",
    "TurnState",
    "parse_response",
]
