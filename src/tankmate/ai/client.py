"""Async completion services backing the chat session.

Two adapters are provided: one talks to an OpenAI-compatible endpoint
directly, the other to the application's own ``/openai/query`` proxy which
accepts ``{"messages": [...]}`` and answers ``{"content": "..."}``.
"""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, MutableMapping, Protocol, Sequence, cast

import httpx
from openai import AsyncOpenAI, APIConnectionError, APIError, APIStatusError, RateLimitError
from openai.types.chat import ChatCompletionMessageParam
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

if TYPE_CHECKING:
    from ..services.settings import Settings

__all__ = [
    "BackendCompletionService",
    "ClientSettings",
    "CompletionError",
    "CompletionResult",
    "CompletionService",
    "OpenAICompletionService",
    "build_completion_service",
]

LOGGER = logging.getLogger(__name__)
_BACKEND_QUERY_PATH = "/openai/query"
_ALLOWED_ROLES = frozenset({"system", "user", "assistant"})


class CompletionError(RuntimeError):
    """Raised when a completion endpoint returns an unusable payload."""


@dataclass(slots=True)
class CompletionResult:
    """Raw assistant text returned by a completion service."""

    content: str


class CompletionService(Protocol):
    """Opaque async call turning a transcript into assistant text."""

    async def complete(self, messages: Sequence[Mapping[str, str]]) -> CompletionResult:
        ...


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure a completion service."""

    base_url: str
    api_key: str = ""
    model: str = "gpt-4o-mini"
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    max_tokens: int | None = 150
    temperature: float | None = 0.7
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


class _RetryingService:
    """Shared retry, validation and payload-logging helpers."""

    _retry_exceptions: tuple[type[BaseException], ...] = (httpx.TimeoutException,)

    def __init__(self, settings: ClientSettings) -> None:
        self._settings = settings

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(self._retry_exceptions),
        )

    def _coerce_messages(self, messages: Iterable[Mapping[str, Any]]) -> List[Dict[str, str]]:
        normalized: List[Dict[str, str]] = []
        for message in messages:
            if not isinstance(message, Mapping):
                raise TypeError("Messages must be mapping-like objects")
            role = str(message.get("role", "")).strip().lower()
            if role not in _ALLOWED_ROLES:
                raise ValueError(f"Unsupported message role '{role}'")
            normalized.append({"role": role, "content": str(message.get("content", ""))})
        if not normalized:
            raise ValueError("At least one message is required to request a completion")
        return normalized

    def _log_payload(self, payload: Mapping[str, Any]) -> None:
        if not self._settings.debug_logging:
            return
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("Completion payload (unserializable): %s", payload)
        else:
            LOGGER.debug("Completion payload:\n%s", serialized)


class OpenAICompletionService(_RetryingService):
    """Completion service backed by the OpenAI chat completions API."""

    _retry_exceptions = (
        APIError,
        APIStatusError,
        APIConnectionError,
        RateLimitError,
        httpx.TimeoutException,
    )

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        super().__init__(settings)
        self._client = client or self._build_client(settings)

    async def complete(self, messages: Sequence[Mapping[str, str]]) -> CompletionResult:
        payload = self._build_payload(self._coerce_messages(messages))
        LOGGER.debug(
            "Requesting chat completion via %s with %s message(s)",
            self._settings.model,
            len(payload["messages"]),
        )
        self._log_payload(payload)

        async for attempt in self._retrying():
            with attempt:
                response = await self._client.chat.completions.create(**payload)
        return CompletionResult(content=self._extract_content(response))

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
        )

    def _build_payload(self, messages: Sequence[Mapping[str, str]]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": [cast(ChatCompletionMessageParam, dict(message)) for message in messages],
        }
        if self._settings.temperature is not None:
            payload["temperature"] = self._settings.temperature
        if self._settings.max_tokens is not None:
            payload["max_tokens"] = self._settings.max_tokens
        return payload

    @staticmethod
    def _extract_content(response: Any) -> str:
        choices = getattr(response, "choices", None) or []
        if not choices:
            raise CompletionError("Completion response contained no choices")
        message = getattr(choices[0], "message", None)
        content = getattr(message, "content", None)
        if content is None:
            raise CompletionError("Completion response contained no message content")
        return str(content)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        try:
            result = close()
        except Exception as exc:  # pragma: no cover - defensive guard
            LOGGER.debug("Completion client close failed to start: %s", exc)
            return
        if inspect.isawaitable(result):
            await result


class BackendCompletionService(_RetryingService):
    """Completion service that posts the transcript to the app backend."""

    _retry_exceptions = (httpx.TransportError,)

    def __init__(self, settings: ClientSettings, *, client: httpx.AsyncClient | None = None) -> None:
        super().__init__(settings)
        self._client = client or self._build_client(settings)
        self._owns_client = client is None

    async def complete(self, messages: Sequence[Mapping[str, str]]) -> CompletionResult:
        payload = {"messages": self._coerce_messages(messages)}
        LOGGER.debug("Posting %s message(s) to %s", len(payload["messages"]), _BACKEND_QUERY_PATH)
        self._log_payload(payload)

        async for attempt in self._retrying():
            with attempt:
                response = await self._client.post(_BACKEND_QUERY_PATH, json=payload)
        if response.status_code >= 400:
            LOGGER.warning("Completion backend answered HTTP %s: %s", response.status_code, response.text)
        response.raise_for_status()
        return CompletionResult(content=self._extract_content(response))

    def _build_client(self, settings: ClientSettings) -> httpx.AsyncClient:
        headers: MutableMapping[str, str] = {"Content-Type": "application/json"}
        if settings.default_headers:
            headers.update(settings.default_headers)
        if settings.api_key:
            headers["Authorization"] = f"Bearer {settings.api_key}"
        return httpx.AsyncClient(
            base_url=settings.base_url,
            headers=dict(headers),
            timeout=settings.request_timeout,
        )

    @staticmethod
    def _extract_content(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError as exc:
            raise CompletionError("Completion backend returned invalid JSON") from exc
        if not isinstance(body, Mapping) or not isinstance(body.get("content"), str):
            raise CompletionError("Completion backend response is missing 'content'")
        return body["content"]

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def build_completion_service(settings: "Settings") -> OpenAICompletionService | BackendCompletionService:
    """Construct the completion adapter selected by ``settings.completion_backend``."""

    backend = (settings.completion_backend or "").strip().lower()
    client_settings = ClientSettings(
        base_url=settings.backend_url if backend == "backend" else settings.base_url,
        api_key=settings.api_key,
        model=settings.model,
        organization=settings.organization,
        request_timeout=settings.request_timeout,
        max_retries=settings.max_retries,
        retry_min_seconds=settings.retry_min_seconds,
        retry_max_seconds=settings.retry_max_seconds,
        max_tokens=settings.max_tokens,
        temperature=settings.temperature,
        default_headers=settings.default_headers,
        debug_logging=settings.debug_logging,
    )
    if backend == "backend":
        return BackendCompletionService(client_settings)
    if backend != "openai":
        raise ValueError(f"Unknown completion backend '{settings.completion_backend}'")
    return OpenAICompletionService(client_settings)
