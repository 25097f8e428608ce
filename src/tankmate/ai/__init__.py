"""Completion services and prompt templates."""

from .client import (
    BackendCompletionService,
    ClientSettings,
    CompletionError,
    CompletionResult,
    CompletionService,
    OpenAICompletionService,
    build_completion_service,
)

__all__ = [
    "BackendCompletionService",
    "ClientSettings",
    "CompletionError",
    "CompletionResult",
    "CompletionService",
    "OpenAICompletionService",
    "build_completion_service",
]
