"""Stream session: one streamed chat completion from request to terminal callback.

This module owns the network side of the pipeline:
- Request headers (attribution, credential or proxy mode)
- HTTP POST with tenacity-driven retries (linear backoff)
- Inactivity watchdog reset by every received line
- Frame decoding and delta interpretation
- Cancellation through :class:`StreamController`
- Terminal error classification and delivery

Exactly one of ``on_complete``/``on_error`` fires per session, and neither fires
after cancellation. Retries are invisible to the callback consumer.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Optional

import aiohttp
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from ..core.config import ChatSettings
from ..core.errors import (
    AuthenticationError,
    ChatClientError,
    ConfigurationError,
    NetworkError,
    ServerError,
    StallError,
    _build_openrouter_api_error,
    _build_streaming_error,
)
from ..core.utils import _retry_after_seconds, _truncate
from .deltas import TERMINATOR, StreamEvent, interpret_payload
from .sse_parser import SSEFrameDecoder

LOGGER = logging.getLogger(__name__)

_RETRYABLE_ERRORS = (NetworkError, StallError, ServerError)
_LOG_CONTENT_PREVIEW_CHARS = 50

# -----------------------------------------------------------------------------
# Public types
# -----------------------------------------------------------------------------


class SessionState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class StreamCallbacks:
    """Consumer hooks for one stream session.

    ``on_chunk`` and ``on_reasoning_chunk`` receive text fragments in arrival
    order. ``on_usage`` receives the last usage snapshot, before ``on_complete``.
    ``on_controller`` receives the cancellation handle before the request is sent.
    """

    on_chunk: Callable[[str], None]
    on_complete: Callable[[], None]
    on_error: Callable[[ChatClientError], None]
    on_reasoning_chunk: Optional[Callable[[str], None]] = None
    on_usage: Optional[Callable[[dict[str, Any]], None]] = None
    on_controller: Optional[Callable[["StreamController"], None]] = None


class StreamController:
    """Cancellation handle for an in-flight stream session.

    ``cancel()`` takes effect synchronously: after it returns, the session
    delivers no further callbacks, even for bytes it already buffered.
    """

    def __init__(self) -> None:
        self.cancelled = False
        self._task: Optional[asyncio.Task[Any]] = None
        self._response: Optional[aiohttp.ClientResponse] = None

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        response = self._response
        if response is not None:
            response.close()
        task = self._task
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()


class _StreamCancelled(Exception):
    """Internal signal: the controller was cancelled mid-attempt."""


# -----------------------------------------------------------------------------
# Request helpers
# -----------------------------------------------------------------------------


def _prepare_api_key(settings: ChatSettings) -> str:
    """Return the bare credential, stripping a leading ``Bearer `` prefix."""
    clean_key = settings.decrypted_api_key().strip()
    if clean_key.lower().startswith("bearer "):
        clean_key = clean_key[7:].strip()
    if not clean_key:
        raise AuthenticationError("API Key is required when not using proxy mode")
    return clean_key


def build_request_headers(settings: ChatSettings, *, streaming: bool = True) -> dict[str, str]:
    """Return the request headers; proxy mode omits ``Authorization`` entirely."""
    headers = {
        "Content-Type": "application/json",
        "Accept": "text/event-stream" if streaming else "application/json",
        "HTTP-Referer": settings.HTTP_REFERER,
        "X-Title": settings.X_TITLE,
    }
    if not settings.USE_PROXY:
        headers["Authorization"] = f"Bearer {_prepare_api_key(settings)}"
    return headers


def _endpoint_url(settings: ChatSettings) -> str:
    url = (settings.chat_completions_url or "").strip()
    if not url.startswith(("http://", "https://")):
        setting = "PROXY_URL" if settings.USE_PROXY else "BASE_URL"
        raise ConfigurationError(f"{setting} must be an absolute http(s) URL, got {url!r}")
    return url


def _loggable_payload(url: str, body: dict[str, Any]) -> str:
    """Return the request for logging with message contents truncated."""
    messages = []
    for message in body.get("messages") or []:
        content = message.get("content")
        preview = content[:_LOG_CONTENT_PREVIEW_CHARS] if isinstance(content, str) else "[complex]"
        messages.append({"role": message.get("role"), "content": preview})
    return json.dumps({"url": url, "method": "POST", "body": {**body, "messages": messages}}, indent=2)


def _redacted_headers(headers: dict[str, str]) -> dict[str, str]:
    return {key: ("<redacted>" if key == "Authorization" else value) for key, value in headers.items()}


def _requested_capabilities(body: dict[str, Any]) -> list[str]:
    plugins = body.get("plugins")
    if not isinstance(plugins, list):
        return []
    return [str(plugin.get("id")) for plugin in plugins if isinstance(plugin, dict) and plugin.get("id")]


@contextlib.asynccontextmanager
async def _http_session_scope(
    http_session: Optional[aiohttp.ClientSession],
) -> AsyncIterator[aiohttp.ClientSession]:
    """Yield ``http_session`` or a private session closed on exit."""
    if http_session is not None:
        yield http_session
        return
    async with aiohttp.ClientSession() as session:
        yield session


async def _raise_for_error_response(
    resp: aiohttp.ClientResponse,
    *,
    requested_model: Optional[str],
    capabilities: list[str],
) -> None:
    if 200 <= resp.status < 300:
        return
    try:
        error_body = await resp.text()
    except (aiohttp.ClientError, UnicodeDecodeError):
        error_body = ""
    LOGGER.debug("OpenRouter error response (%s): %s", resp.status, _truncate(error_body, 2000))
    raise _build_openrouter_api_error(
        resp.status,
        resp.reason or "HTTP error",
        error_body,
        requested_model=requested_model,
        capabilities_requested=capabilities,
        retry_after=_retry_after_seconds(resp.headers.get("Retry-After")),
    )


def _log_retry(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    exc = outcome.exception() if outcome is not None else None
    LOGGER.warning(
        "Retrying OpenRouter request after %s (attempt %d failed): %s",
        type(exc).__name__ if exc else "failure",
        retry_state.attempt_number,
        exc,
    )


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, _RETRYABLE_ERRORS)


def _build_retryer(settings: ChatSettings, predicate: Callable[[BaseException], bool] = _is_retryable) -> AsyncRetrying:
    """Retry policy shared by both request paths: linear backoff within ``MAX_RETRIES``."""
    unit = settings.RETRY_DELAY_SECONDS
    return AsyncRetrying(
        stop=stop_after_attempt(settings.MAX_RETRIES + 1),
        wait=wait_incrementing(start=unit, increment=unit),
        retry=retry_if_exception(predicate),
        before_sleep=_log_retry,
        reraise=True,
    )


# -----------------------------------------------------------------------------
# Stream session
# -----------------------------------------------------------------------------


class StreamSession:
    """Drive one streamed request: connect, decode, deliver, retry, terminate."""

    def __init__(
        self,
        body: dict[str, Any],
        settings: ChatSettings,
        callbacks: StreamCallbacks,
        *,
        http_session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.body = body
        self.settings = settings
        self.callbacks = callbacks
        self.http_session = http_session
        self.controller = StreamController()
        self.state = SessionState.IDLE
        self._requested_model = body.get("model")
        self._capabilities = _requested_capabilities(body)
        self._delivered = False
        self._usage: Optional[dict[str, Any]] = None

    # ------------------------------------------------------------------
    # Retry policy
    # ------------------------------------------------------------------

    def _should_retry(self, exc: BaseException) -> bool:
        if self.controller.cancelled:
            return False
        if self._delivered:
            # A re-issued request would replay text the consumer already has.
            return False
        return _is_retryable(exc)

    def _retryer(self) -> AsyncRetrying:
        return _build_retryer(self.settings, self._should_retry)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self) -> SessionState:
        """Run the session to a terminal state and return it."""
        self.controller._task = asyncio.current_task()
        try:
            url = _endpoint_url(self.settings)
            headers = build_request_headers(self.settings, streaming=True)
        except (AuthenticationError, ConfigurationError) as exc:
            return self._fail(exc)

        if self.callbacks.on_controller is not None:
            self.callbacks.on_controller(self.controller)
        if self.controller.cancelled:
            return self._mark_cancelled()

        LOGGER.debug("OpenRouter request headers: %s", _redacted_headers(headers))
        LOGGER.debug("OpenRouter request payload: %s", _loggable_payload(url, self.body))

        try:
            async with _http_session_scope(self.http_session) as session:
                async for attempt in self._retryer():
                    with attempt:
                        await self._run_attempt(session, url, headers, attempt.retry_state.attempt_number)
        except asyncio.CancelledError:
            if not self.controller.cancelled:
                raise
            task = asyncio.current_task()
            if task is not None:
                task.uncancel()
            return self._mark_cancelled()
        except _StreamCancelled:
            return self._mark_cancelled()
        except ChatClientError as exc:
            if self.controller.cancelled:
                return self._mark_cancelled()
            return self._fail(exc)
        finally:
            self.controller._response = None
            self.controller._task = None

        if self.controller.cancelled:
            return self._mark_cancelled()
        if self._usage is not None and self.callbacks.on_usage is not None:
            self.callbacks.on_usage(self._usage)
        self.state = SessionState.COMPLETED
        self.callbacks.on_complete()
        return self.state

    # ------------------------------------------------------------------
    # One attempt
    # ------------------------------------------------------------------

    async def _run_attempt(
        self,
        session: aiohttp.ClientSession,
        url: str,
        headers: dict[str, str],
        attempt_number: int,
    ) -> None:
        if self.controller.cancelled:
            raise _StreamCancelled()
        self.state = SessionState.CONNECTING
        self._usage = None
        window = self.settings.STREAM_INACTIVITY_TIMEOUT_SECONDS
        loop = asyncio.get_running_loop()
        watchdog = asyncio.timeout(window)
        client_timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=self.settings.HTTP_CONNECT_TIMEOUT_SECONDS,
        )
        LOGGER.debug("OpenRouter stream attempt %d to %s", attempt_number, url)
        try:
            async with watchdog:
                async with session.post(url, json=self.body, headers=headers, timeout=client_timeout) as resp:
                    self.controller._response = resp
                    await _raise_for_error_response(
                        resp,
                        requested_model=self._requested_model,
                        capabilities=self._capabilities,
                    )
                    self.state = SessionState.STREAMING
                    watchdog.reschedule(loop.time() + window)
                    await self._consume(resp, watchdog, loop, window)
        except TimeoutError as exc:
            if self.controller.cancelled:
                raise _StreamCancelled() from exc
            if watchdog.expired():
                LOGGER.warning("OpenRouter stream stalled (no data for %ss)", window)
                raise StallError(window, requested_model=self._requested_model) from exc
            raise NetworkError(f"Connection timed out: {exc}", requested_model=self._requested_model) from exc
        except aiohttp.ClientError as exc:
            if self.controller.cancelled:
                raise _StreamCancelled() from exc
            raise NetworkError(
                f"Network error: {exc or type(exc).__name__}",
                requested_model=self._requested_model,
            ) from exc
        finally:
            self.controller._response = None

    async def _consume(
        self,
        resp: aiohttp.ClientResponse,
        watchdog: asyncio.Timeout,
        loop: asyncio.AbstractEventLoop,
        window: float,
    ) -> None:
        decoder = SSEFrameDecoder()
        async for chunk in resp.content.iter_any():
            if self.controller.cancelled:
                raise _StreamCancelled()
            lines_before = decoder.line_count
            frames = decoder.feed(chunk)
            if decoder.line_count != lines_before:
                watchdog.reschedule(loop.time() + window)
            for frame in frames:
                if frame.kind == "comment":
                    continue
                event = interpret_payload(frame.data or "") if frame.kind == "data" else TERMINATOR
                if event.kind == "terminator":
                    return
                self._dispatch(event)
                if self.controller.cancelled:
                    raise _StreamCancelled()
        decoder.finish()
        LOGGER.warning("OpenRouter stream ended without [DONE]; treating end of body as completion")

    def _dispatch(self, event: StreamEvent) -> None:
        if event.kind == "error":
            raise _build_streaming_error(
                event.error or {},
                requested_model=self._requested_model,
                capabilities_requested=self._capabilities,
            )
        if event.kind != "delta":
            return
        if event.usage is not None:
            self._usage = event.usage
        if event.reasoning_chunk and self.callbacks.on_reasoning_chunk is not None:
            self._delivered = True
            self.callbacks.on_reasoning_chunk(event.reasoning_chunk)
            if self.controller.cancelled:
                return
        if event.content_chunk:
            self._delivered = True
            self.callbacks.on_chunk(event.content_chunk)

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def _mark_cancelled(self) -> SessionState:
        LOGGER.debug("OpenRouter stream cancelled")
        self.state = SessionState.CANCELLED
        return self.state

    def _fail(self, exc: ChatClientError) -> SessionState:
        LOGGER.error("OpenRouter stream failed (%s): %s", exc.kind, exc)
        self.state = SessionState.FAILED
        self.callbacks.on_error(exc)
        return self.state


async def stream_chat(
    body: dict[str, Any],
    settings: ChatSettings,
    callbacks: StreamCallbacks,
    *,
    http_session: Optional[aiohttp.ClientSession] = None,
) -> SessionState:
    """Stream ``body`` to the chat completions endpoint, delivering to ``callbacks``."""
    session = StreamSession(body, settings, callbacks, http_session=http_session)
    return await session.run()


# -----------------------------------------------------------------------------
# Non-streaming variant
# -----------------------------------------------------------------------------


async def complete_chat(
    body: dict[str, Any],
    settings: ChatSettings,
    *,
    http_session: Optional[aiohttp.ClientSession] = None,
) -> str:
    """Send ``body`` without streaming and return the assistant message content.

    Uses the same retry policy as the streaming session. Raises the classified
    :class:`ChatClientError` once retries are exhausted.
    """
    payload = {key: value for key, value in body.items() if key != "stream"}
    url = _endpoint_url(settings)
    headers = build_request_headers(settings, streaming=False)
    requested_model = payload.get("model")
    capabilities = _requested_capabilities(payload)
    client_timeout = aiohttp.ClientTimeout(total=None, sock_connect=settings.HTTP_CONNECT_TIMEOUT_SECONDS)
    LOGGER.debug("OpenRouter request payload: %s", _loggable_payload(url, payload))

    async with _http_session_scope(http_session) as session:
        async for attempt in _build_retryer(settings):
            with attempt:
                try:
                    async with session.post(url, json=payload, headers=headers, timeout=client_timeout) as resp:
                        await _raise_for_error_response(
                            resp,
                            requested_model=requested_model,
                            capabilities=capabilities,
                        )
                        data = await resp.json(content_type=None)
                except aiohttp.ClientError as exc:
                    raise NetworkError(f"Network error: {exc or type(exc).__name__}", requested_model=requested_model) from exc
                except ValueError as exc:
                    raise ServerError("Invalid JSON response from /chat/completions", requested_model=requested_model) from exc
                try:
                    return data["choices"][0]["message"]["content"]
                except (KeyError, IndexError, TypeError) as exc:
                    raise ServerError("Malformed response from /chat/completions", requested_model=requested_model) from exc
    raise ServerError("No response from /chat/completions", requested_model=requested_model)
