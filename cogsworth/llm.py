"""LLM client: streaming chat completions over HTTP.

Callers hand a GenerationRequest to a StreamingLLM and iterate tagged events:

    async for event in llm.stream(request):
        TokenEvent : one ordered text delta
        ErrorEvent : terminal failure, at most one per call
        DoneEvent  : always the last event, exactly once per call

Completion is unconditional and error is conditional, so a consumer can put
its cleanup on DoneEvent without caring how the call ended.

Two implementations are provided:

    HttpStreamingLLM: real HTTP client for OpenAI-compatible
                       /chat/completions endpoints with `stream: true`.
    EchoLLM         : streams the last user turn back word by word.
                       Useful for smoke-testing the session wiring
                       without a running model.

Wire format consumed (one record per line):

    data: {"choices": [{"delta": {"content": "Hel"}}]}
    data: {"choices": [{"delta": {"content": "lo"}}]}
    data: {"error": {"message": "..."}}        ← aborts the stream
    data: [DONE]                               ← ends the stream
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, Union

import httpx

from cogsworth.config import Settings
from cogsworth.models import GenerationRequest

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"

# Lines that are part of the SSE framing but carry nothing for us
_SILENT_PREFIXES = ("event:", "id:", "retry:", ":")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class UpstreamError(RuntimeError):
    """Base for every failure that ends a stream."""

    retryable = False


class ConfigurationError(UpstreamError):
    """Endpoint or credentials are missing. Never retried."""


class RequestSetupError(UpstreamError):
    """The request could not be built or sent (bad URL, bad scheme)."""


class TransportError(UpstreamError):
    """No response was received: connect failure, timeout, dropped socket."""

    retryable = True


class UpstreamHTTPError(UpstreamError):
    """The API answered with an error status. Retryable iff 5xx."""

    def __init__(self, status: int, detail: str = "") -> None:
        self.status = status
        self.detail = detail
        message = f"AI Service Error ({status})"
        if detail:
            message += f": {detail}"
        super().__init__(message)

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return 500 <= self.status < 600


class StreamError(UpstreamError):
    """The stream itself carried an error object."""


class StreamFramingWarning(Warning):
    """A line could not be understood. Logged and skipped, never fatal."""


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TokenEvent:
    text: str


@dataclass(frozen=True)
class ErrorEvent:
    error: UpstreamError

    @property
    def reason(self) -> str:
        return str(self.error)


@dataclass(frozen=True)
class DoneEvent:
    pass


StreamEvent = Union[TokenEvent, ErrorEvent, DoneEvent]


class StreamingLLM(Protocol):
    def stream(self, request: GenerationRequest) -> AsyncIterator[StreamEvent]: ...


async def event_stream(tokens: AsyncIterator[str]) -> AsyncIterator[StreamEvent]:
    """Wrap a token iterator into the TokenEvent* [ErrorEvent] DoneEvent shape."""
    error: UpstreamError | None = None
    try:
        async for text in tokens:
            yield TokenEvent(text)
    except UpstreamError as e:
        error = e
    except Exception as e:
        logger.exception("Unexpected failure while streaming from the LLM")
        error = UpstreamError(f"Unexpected error: {e}")
    if error is not None:
        logger.error("LLM stream failed: %s", error)
        yield ErrorEvent(error)
    yield DoneEvent()


# ---------------------------------------------------------------------------
# Line framing
# ---------------------------------------------------------------------------

class LineBuffer:
    """Reassembles line boundaries from arbitrarily split text chunks.

    Only complete lines are returned; the trailing fragment stays buffered
    until the next feed() or flush().
    """

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, text: str) -> list[str]:
        self._pending += text
        *lines, self._pending = self._pending.split("\n")
        return [line.strip() for line in lines]

    def flush(self) -> str:
        """Return and clear whatever partial line is left."""
        rest, self._pending = self._pending.strip(), ""
        return rest

    @property
    def pending(self) -> str:
        return self._pending


class LineKind(Enum):
    TOKEN = "token"
    DONE = "done"
    IGNORED = "ignored"


def classify_line(line: str) -> tuple[LineKind, str]:
    """Classify one complete, stripped line.

    Returns (TOKEN, delta), (DONE, "") or (IGNORED, "").
    Raises StreamError for an embedded error object and StreamFramingWarning
    for anything that isn't recognisable.
    """
    if not line or line.startswith(_SILENT_PREFIXES):
        return LineKind.IGNORED, ""
    if not line.startswith(DATA_PREFIX):
        raise StreamFramingWarning(f"Unexpected line: {line[:80]!r}")

    data = line[len(DATA_PREFIX):].strip()
    if data == DONE_SENTINEL:
        return LineKind.DONE, ""
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError as e:
        raise StreamFramingWarning(f"Non-JSON data line: {data[:80]!r}") from e
    if not isinstance(parsed, dict):
        raise StreamFramingWarning(f"Data line is not an object: {data[:80]!r}")

    if parsed.get("error"):
        err = parsed["error"]
        message = err.get("message") if isinstance(err, dict) else str(err)
        raise StreamError(message or "Unknown error in stream data")

    choices = parsed.get("choices")
    if not isinstance(choices, list):
        raise StreamFramingWarning(f"Data line without choices: {data[:80]!r}")
    if not choices:
        return LineKind.IGNORED, ""
    choice = choices[0]
    if not isinstance(choice, dict):
        raise StreamFramingWarning(f"Choice is not an object: {data[:80]!r}")
    delta = choice.get("delta") or {}
    if not isinstance(delta, dict):
        raise StreamFramingWarning(f"Delta is not an object: {data[:80]!r}")
    content = delta.get("content")
    if content is not None and not isinstance(content, str):
        raise StreamFramingWarning(f"Delta content is not text: {data[:80]!r}")
    if content:
        return LineKind.TOKEN, content
    # Role-only and finish_reason records carry no text
    return LineKind.IGNORED, ""


def _classify_or_skip(line: str) -> tuple[LineKind, str]:
    try:
        return classify_line(line)
    except StreamFramingWarning as w:
        logger.warning("Skipping stream line: %s", w)
        return LineKind.IGNORED, ""


def _error_detail(resp: httpx.Response) -> str:
    """Pull a human-readable reason out of an error response body."""
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
        if data.get("detail"):
            return str(data["detail"])
    return resp.text[:200]


# ---------------------------------------------------------------------------
# HttpStreamingLLM: connects to a real backend
# ---------------------------------------------------------------------------

class HttpStreamingLLM:
    """Async streaming client for OpenAI-compatible chat-completion APIs.

    POST {api_url}/chat/completions with {"messages": [...], "stream": true}.

    Retryable failures (HTTP 5xx, no response) are retried up to
    `max_attempts` total attempts, `retry_delay` seconds apart, as long as no
    token has been handed out yet. Everything else fails on the first attempt.

    Args:
        api_url:      Base URL, e.g. "https://api.example.com/v1".
        api_key:      Bearer token.
        model:        Model identifier, omitted from the body when empty.
        temperature:  Sampling temperature.
        timeout:      HTTP timeout in seconds. Generation can take minutes.
        max_attempts: Total attempts for retryable failures.
        retry_delay:  Fixed delay between attempts, in seconds.
        transport:    Optional httpx transport (tests pass a MockTransport).
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        model: str = "",
        temperature: float = 0.75,
        timeout: float = 300.0,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._api_key = api_key
        self._model = model
        self._temperature = temperature
        self._timeout = timeout
        self._max_attempts = max(1, max_attempts)
        self._retry_delay = retry_delay
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> HttpStreamingLLM:
        return cls(
            api_url=settings.api_url,
            api_key=settings.api_key,
            model=settings.model,
            timeout=settings.timeout,
            max_attempts=settings.max_attempts,
            retry_delay=settings.retry_delay,
            **kwargs,
        )

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
            "Accept": "text/event-stream",
        }

    def _build_request(self, request: GenerationRequest) -> tuple[str, dict]:
        """Return (url, body) for one generation."""
        body: dict = {
            "messages": request.messages(),
            "stream": True,
            "temperature": self._temperature,
        }
        if self._model:
            body["model"] = self._model
        return f"{self._api_url}/chat/completions", body

    def stream(self, request: GenerationRequest) -> AsyncIterator[StreamEvent]:
        return event_stream(self._tokens(request))

    async def _tokens(self, request: GenerationRequest) -> AsyncIterator[str]:
        if not self._api_url or not self._api_key:
            raise ConfigurationError("AI Service URL or API Key is not configured.")

        url, body = self._build_request(request)
        for attempt in range(1, self._max_attempts + 1):
            emitted = False
            logger.debug(
                "llm attempt %d/%d url=%s turns=%d",
                attempt, self._max_attempts, url, len(request.turns),
            )
            try:
                async with httpx.AsyncClient(
                    timeout=self._timeout, transport=self._transport
                ) as client:
                    async with client.stream(
                        "POST", url, json=body, headers=self._headers()
                    ) as resp:
                        if resp.status_code >= 400:
                            await resp.aread()
                            raise UpstreamHTTPError(resp.status_code, _error_detail(resp))
                        async for token in self._read_tokens(resp):
                            emitted = True
                            yield token
                logger.debug("llm attempt %d succeeded", attempt)
                return
            except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
                raise RequestSetupError(f"AI request setup error: {e}") from e
            except httpx.TransportError as e:
                if emitted or attempt >= self._max_attempts:
                    raise TransportError(f"No response from AI service: {e}") from e
                logger.warning("LLM transport failure on attempt %d: %s", attempt, e)
            except UpstreamHTTPError as e:
                if not e.retryable or attempt >= self._max_attempts:
                    raise
                logger.warning("LLM returned HTTP %d on attempt %d", e.status, attempt)

            logger.info("Retrying LLM call in %.1fs", self._retry_delay)
            await asyncio.sleep(self._retry_delay)

    async def _read_tokens(self, resp: httpx.Response) -> AsyncIterator[str]:
        buffer = LineBuffer()
        async for text in resp.aiter_text():
            for line in buffer.feed(text):
                kind, token = _classify_or_skip(line)
                if kind is LineKind.DONE:
                    logger.debug("llm stream received [DONE]")
                    return
                if kind is LineKind.TOKEN:
                    yield token
        tail = buffer.flush()
        if tail:
            kind, token = _classify_or_skip(tail)
            if kind is LineKind.TOKEN:
                yield token
        logger.debug("llm stream ended without [DONE]")


# ---------------------------------------------------------------------------
# EchoLLM: streams the user's words back; useful for wiring smoke tests
# ---------------------------------------------------------------------------

class EchoLLM:
    """Echoes the most recent user turn, one word per token. No network calls.

    Ends every response with an `[emotion:<emotion>]` tag so the full
    accumulate-and-parse path is exercised.
    """

    def __init__(self, emotion: str = "neutral", delay: float = 0.0) -> None:
        self._emotion = emotion
        self._delay = delay

    def stream(self, request: GenerationRequest) -> AsyncIterator[StreamEvent]:
        return event_stream(self._tokens(request))

    async def _tokens(self, request: GenerationRequest) -> AsyncIterator[str]:
        last = next((t.content for t in reversed(request.turns) if t.role == "user"), "")
        logger.debug("EchoLLM turns=%d input_len=%d", len(request.turns), len(last))
        for i, word in enumerate(last.split(" ")):
            yield word if i == 0 else f" {word}"
            if self._delay:
                await asyncio.sleep(self._delay)
        yield f"[emotion:{self._emotion}]"
