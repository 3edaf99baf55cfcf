"""Async AI client wrapper built around OpenAI-compatible endpoints."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Iterable, Iterator, List, Mapping, Protocol, Sequence

from openai import APIError, APIStatusError, AsyncOpenAI
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from .ai_types import ChatMessage, copy_message
from .errors import AIServiceError, AuthenticationExpiredError, QuotaExceededError, translate_status_error
from .models import ModelInfo, build_request_params, select_latest_per_family
from .utils.tokens import strip_data_urls

__all__ = [
    "DEFAULT_BASE_URL",
    "COPILOT_HEADERS",
    "IMAGE_STRIPPED_PLACEHOLDER",
    "ClientSettings",
    "AIStreamEvent",
    "EventStreamDecoder",
    "RateLimitTracker",
    "AIClient",
    "has_trailing_image",
    "strip_trailing_images",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.githubcopilot.com"
COPILOT_HEADERS: Mapping[str, str] = {
    "Copilot-Integration-Id": "vscode-chat",
    "Editor-Version": "vscode/1.85.0",
    "Editor-Plugin-Version": "copilot-chat/0.11.1",
    "User-Agent": "GitHubCopilotChat/0.11.1",
    "X-GitHub-Api-Version": "2022-11-28",
}
IMAGE_STRIPPED_PLACEHOLDER = "[Image removed: the endpoint rejected the attached image.]"
_DONE_SENTINEL = "[DONE]"
# Sent when a token manager supplies the real bearer token per request.
_PLACEHOLDER_API_KEY = "session-token"


class TokenProvider(Protocol):
    async def get_session_token(self) -> str:
        ...

    def reset(self) -> None:
        ...


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str = DEFAULT_BASE_URL
    api_key: str = ""
    model: str = "gpt-4o"
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 1.0
    retry_max_seconds: float = 4.0
    temperature: float | None = 0.7
    max_output_tokens: int | None = 4096
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


@dataclass(slots=True)
class AIStreamEvent:
    """Normalized representation of streaming deltas.

    ``type`` is one of ``content.delta``, ``tool_call.delta`` or ``finish``.
    """

    type: str
    content: str | None = None
    tool_index: int | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None
    arguments_delta: str | None = None
    finish_reason: str | None = None


class EventStreamDecoder:
    """Incremental decoder for ``data:`` event-stream lines.

    Payload lines accumulate until a blank line ends the event. ``[DONE]``
    terminates the stream; comments, unknown fields and payloads that are not
    valid JSON objects are skipped.
    """

    def __init__(self) -> None:
        self._data: List[str] = []
        self.done = False

    def feed_line(self, line: str) -> List[Dict[str, Any]]:
        if self.done:
            return []
        line = line.rstrip("\r\n")
        if not line.strip():
            return self._dispatch()
        if line.startswith(":"):
            return []
        field_name, _, value = line.partition(":")
        if field_name != "data":
            return []
        if value.startswith(" "):
            value = value[1:]
        if value.strip() == _DONE_SENTINEL:
            events = self._dispatch()
            self.done = True
            return events
        events: List[Dict[str, Any]] = []
        if self._data and self._parse("\n".join(self._data)) is not None:
            # Some proxies omit the blank separator between events.
            events = self._dispatch()
        self._data.append(value)
        return events

    def flush(self) -> List[Dict[str, Any]]:
        return self._dispatch()

    def _dispatch(self) -> List[Dict[str, Any]]:
        if not self._data:
            return []
        raw = "\n".join(self._data)
        self._data = []
        payload = self._parse(raw)
        if payload is None:
            LOGGER.debug("Skipping malformed stream payload: %.200s", raw)
            return []
        return [payload]

    @staticmethod
    def _parse(raw: str) -> Dict[str, Any] | None:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return payload if isinstance(payload, dict) else None


class RateLimitTracker:
    """Last observed rate-limit snapshot, shared between clients of a process."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self.remaining: int | None = None
        self.limit: int | None = None
        self.quota_exceeded = False
        self.updated_at: float | None = None

    def update_from_headers(self, headers: Mapping[str, str] | None) -> None:
        if not headers:
            return
        remaining = _header_int(headers, "x-ratelimit-remaining")
        limit = _header_int(headers, "x-ratelimit-limit")
        if remaining is None and limit is None:
            return
        if remaining is not None:
            self.remaining = remaining
        if limit is not None:
            self.limit = limit
        self.updated_at = self._clock()

    def mark_quota_exceeded(self) -> None:
        self.quota_exceeded = True
        self.updated_at = self._clock()

    def snapshot(self) -> Dict[str, Any]:
        return {
            "remaining": self.remaining,
            "limit": self.limit,
            "quota_exceeded": self.quota_exceeded,
            "updated_at": self.updated_at,
        }

    def reset(self) -> None:
        self.remaining = None
        self.limit = None
        self.quota_exceeded = False
        self.updated_at = None


class AIClient:
    """Async client providing streaming helpers with retry semantics."""

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: AsyncOpenAI | None = None,
        token_manager: TokenProvider | None = None,
        rate_limits: RateLimitTracker | None = None,
    ) -> None:
        self._settings = settings
        self._token_manager = token_manager
        self._client = client or self._build_client(settings)
        self._rate_limits = rate_limits or RateLimitTracker()
        self._models_cache: List[ModelInfo] | None = None
        self._models_lock = asyncio.Lock()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def rate_limits(self) -> RateLimitTracker:
        return self._rate_limits

    async def stream_chat(
        self,
        messages: Iterable[Mapping[str, Any]],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        tool_choice: Any | None = None,
    ) -> AsyncIterator[AIStreamEvent]:
        """Stream chat completions for the provided messages.

        Server errors are retried with exponential backoff as long as no event
        has been yielded yet. A 400 answering a request whose last message
        carries an image is retried once with the image replaced by text.
        """

        payload = self._build_chat_payload(messages, tools=tools, tool_choice=tool_choice)
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            self._settings.model,
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        images_stripped = False
        while True:
            try:
                async for event in self._stream_with_retry(payload):
                    yield event
                return
            except APIStatusError as exc:
                self._rate_limits.update_from_headers(_response_headers(exc))
                if exc.status_code == 400 and not images_stripped and has_trailing_image(payload["messages"]):
                    LOGGER.warning("Endpoint rejected a request carrying an image; retrying once without it")
                    payload = {**payload, "messages": strip_trailing_images(payload["messages"])}
                    images_stripped = True
                    continue
                raise self._translate_error(exc) from exc
            except APIError as exc:
                raise self._translate_error(exc) from exc

    async def complete(self, messages: Iterable[Mapping[str, Any]]) -> str:
        """Return the text of one non-streaming completion."""

        payload = self._build_chat_payload(messages, tools=None, tool_choice=None, stream=False)
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)
        try:
            async for attempt in self._retrying(_is_server_error):
                with attempt:
                    raw = await self._client.chat.completions.with_raw_response.create(
                        **payload, extra_headers=await self._auth_headers()
                    )
        except APIError as exc:
            raise self._translate_error(exc) from exc
        self._rate_limits.update_from_headers(getattr(raw, "headers", None))
        completion = raw.parse()
        if inspect.isawaitable(completion):
            completion = await completion
        choices = getattr(completion, "choices", None) or []
        if not choices:
            return ""
        return getattr(choices[0].message, "content", None) or ""

    async def list_models(self, *, force_refresh: bool = False) -> List[ModelInfo]:
        """Return the usable models, newest identifier per family."""

        if self._models_cache is not None and not force_refresh:
            return list(self._models_cache)

        async with self._models_lock:
            if self._models_cache is not None and not force_refresh:
                return list(self._models_cache)

            try:
                response = await self._client.models.list(extra_headers=await self._auth_headers())
            except APIError as exc:
                raise self._translate_error(exc) from exc
            model_ids = [item.id for item in response.data if getattr(item, "id", None)]
            models = select_latest_per_family(model_ids)
            self._models_cache = models
            return list(models)

    async def _stream_with_retry(self, payload: Mapping[str, Any]) -> AsyncIterator[AIStreamEvent]:
        yielded = False

        def should_retry(exc: BaseException) -> bool:
            return not yielded and _is_server_error(exc)

        async for attempt in self._retrying(should_retry):
            with attempt:
                extra_headers = await self._auth_headers()
                async with self._client.chat.completions.with_streaming_response.create(
                    **payload, extra_headers=extra_headers
                ) as response:
                    self._rate_limits.update_from_headers(getattr(response, "headers", None))
                    decoder = EventStreamDecoder()
                    async for line in response.iter_lines():
                        for chunk in decoder.feed_line(line):
                            for event in _events_from_chunk(chunk):
                                yielded = True
                                yield event
                        if decoder.done:
                            break
                    for chunk in decoder.flush():
                        for event in _events_from_chunk(chunk):
                            yielded = True
                            yield event

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(COPILOT_HEADERS)
        if settings.default_headers:
            headers.update(settings.default_headers)
        return AsyncOpenAI(
            api_key=settings.api_key or _PLACEHOLDER_API_KEY,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
            max_retries=0,
        )

    async def _auth_headers(self) -> Dict[str, str]:
        if self._token_manager is None:
            return {}
        token = await self._token_manager.get_session_token()
        return {"Authorization": f"Bearer {token}"}

    def _retrying(self, predicate: Callable[[BaseException], bool]) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(0, self._settings.max_retries) + 1),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                min=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception(predicate),
        )

    def _build_chat_payload(
        self,
        messages: Iterable[Mapping[str, Any]],
        *,
        tools: Sequence[Mapping[str, Any]] | None,
        tool_choice: Any | None,
        stream: bool = True,
    ) -> Dict[str, Any]:
        normalized = [copy_message(message) for message in messages]
        if not normalized:
            raise ValueError("At least one message is required to start a chat")
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": normalized,
        }
        if tools:
            payload["tools"] = [dict(tool) for tool in tools]
        if tool_choice:
            payload["tool_choice"] = tool_choice
        payload.update(
            build_request_params(
                self._settings.model,
                temperature=self._settings.temperature,
                max_output_tokens=self._settings.max_output_tokens,
            )
        )
        if stream:
            payload["stream"] = True
        return payload

    def _translate_error(self, exc: APIError) -> AIServiceError:
        status_code = getattr(exc, "status_code", None)
        body = getattr(exc, "body", None)
        if isinstance(body, (dict, list)):
            detail: Any = json.dumps(body, ensure_ascii=False)
        else:
            detail = body if body is not None else getattr(exc, "message", str(exc))
        error = translate_status_error(status_code, detail, message=str(exc) or None)
        if isinstance(error, QuotaExceededError):
            self._rate_limits.mark_quota_exceeded()
        elif isinstance(error, AuthenticationExpiredError) and self._token_manager is not None:
            self._token_manager.reset()
        LOGGER.warning("Chat completion failed: %s (status %s)", type(error).__name__, status_code)
        return error

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", strip_data_urls(serialized))

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        try:
            result = close()
        except Exception as exc:  # pragma: no cover
            LOGGER.debug("AI client close failed to start: %s", exc)
            return
        if inspect.isawaitable(result):
            await result


def has_trailing_image(messages: Sequence[Mapping[str, Any]]) -> bool:
    """Return ``True`` when the last message is multipart with an image part."""

    if not messages:
        return False
    content = messages[-1].get("content")
    if not isinstance(content, list):
        return False
    return any(isinstance(part, Mapping) and part.get("type") == "image_url" for part in content)


def strip_trailing_images(messages: Sequence[Mapping[str, Any]]) -> List[ChatMessage]:
    """Replace every image part of the last message with a text placeholder."""

    stripped = [copy_message(message) for message in messages]
    if not stripped:
        return stripped
    content = stripped[-1].get("content")
    if isinstance(content, list):
        stripped[-1]["content"] = [
            {"type": "text", "text": IMAGE_STRIPPED_PLACEHOLDER}
            if isinstance(part, Mapping) and part.get("type") == "image_url"
            else part
            for part in content
        ]
    return stripped


def _events_from_chunk(chunk: Mapping[str, Any]) -> Iterator[AIStreamEvent]:
    for choice in chunk.get("choices") or ():
        if not isinstance(choice, Mapping):
            continue
        delta = choice.get("delta") or {}
        content = delta.get("content")
        if content:
            yield AIStreamEvent(type="content.delta", content=str(content))
        for raw_call in delta.get("tool_calls") or ():
            if not isinstance(raw_call, Mapping):
                continue
            function = raw_call.get("function") or {}
            yield AIStreamEvent(
                type="tool_call.delta",
                tool_index=int(raw_call.get("index") or 0),
                tool_call_id=raw_call.get("id") or None,
                tool_name=function.get("name") or None,
                arguments_delta=function.get("arguments") or None,
            )
        finish_reason = choice.get("finish_reason")
        if finish_reason:
            yield AIStreamEvent(type="finish", finish_reason=str(finish_reason))


def _is_server_error(exc: BaseException) -> bool:
    return isinstance(exc, APIStatusError) and exc.status_code >= 500


def _response_headers(exc: APIStatusError) -> Mapping[str, str] | None:
    response = getattr(exc, "response", None)
    return getattr(response, "headers", None)


def _header_int(headers: Mapping[str, str], name: str) -> int | None:
    value = headers.get(name)
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None
