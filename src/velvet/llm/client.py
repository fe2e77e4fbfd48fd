"""
Streaming chat completion client.

One call to ``stream_completion`` is one invocation: the request is built,
POSTed, and the SSE body is consumed until the byte stream ends. Cumulative
text is pushed to ``on_update``; exactly one of ``on_finish``/``on_error``
fires at the end.
"""

from __future__ import annotations

import inspect
import json
from collections.abc import AsyncGenerator, Callable, Mapping, Sequence
from contextlib import aclosing
from typing import Any

import httpx

from ..logging_utils import ContextualLogger
from .exceptions import (
    LLMError,
    LLMErrorHandler,
    RemoteRejectionError,
    StreamingError,
)
from .models import CompletionRequest, ProviderConfig, ProviderType
from .request_builder import MessageLike, build_completion_request
from .streaming.models import CompletionResult, StreamState
from .streaming.parser import DeltaAccumulator, StreamingParser

HTTP_NO_CONTENT = 204

Callback = Callable[[str], Any]


def parse_error_body(body: bytes) -> dict[str, Any]:
    """Parsed JSON object from a rejected response body, or empty."""
    try:
        data = json.loads(body) if body else None
    except (ValueError, UnicodeDecodeError):
        return {}
    return data if isinstance(data, dict) else {}


def extract_error_message(body: bytes, status_code: int) -> str:
    """Human readable message from a rejected response body."""
    error = parse_error_body(body).get("error")
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message:
            return message
    elif isinstance(error, str) and error:
        return error
    return f"API Error: {status_code}"


class CompletionInvocation:
    """
    State machine for a single streaming request.

    IDLE -> REQUEST_SENT -> STREAMING -> COMPLETED | FAILED
    """

    def __init__(
        self,
        request: CompletionRequest,
        http_client: httpx.AsyncClient,
        parser: StreamingParser,
        log: ContextualLogger,
    ):
        self.request = request
        self.http_client = http_client
        self.parser = parser
        self.log = log
        self.accumulator = DeltaAccumulator(log)
        self.state = StreamState.IDLE

    @property
    def text(self) -> str:
        return self.accumulator.text

    def _transition(self, new_state: StreamState) -> None:
        self.log.debug(
            "Stream state transition",
            from_state=self.state.value,
            to_state=new_state.value,
        )
        self.state = new_state

    async def updates(self) -> AsyncGenerator[str]:
        """Yield cumulative text snapshots; raise LLMError on failure."""
        provider = self.log.base_context.get("provider", "unknown")
        model = self.request.model

        self._transition(StreamState.REQUEST_SENT)
        try:
            async with self.http_client.stream(
                "POST",
                self.request.endpoint,
                headers=dict(self.request.headers),
                json=self.request.payload(),
            ) as response:
                if not response.is_success:
                    body = await response.aread()
                    raise RemoteRejectionError(
                        extract_error_message(body, response.status_code),
                        provider=provider,
                        model=model,
                        status_code=response.status_code,
                        response_data=parse_error_body(body),
                    )
                if response.status_code == HTTP_NO_CONTENT:
                    raise StreamingError(
                        "No response body", provider=provider, model=model
                    )

                self._transition(StreamState.STREAMING)
                async for frame in self.parser.iter_frames(response.aiter_bytes()):
                    snapshot = self.accumulator.process_frame(frame)
                    if snapshot is not None:
                        yield snapshot

        except LLMError as e:
            self._transition(StreamState.FAILED)
            self.log.error(
                "Completion request failed",
                error_type=type(e).__name__,
                error_message=e.message,
                status_code=e.status_code,
            )
            raise
        except Exception as e:
            self._transition(StreamState.FAILED)
            raise LLMErrorHandler.create_llm_error(
                e, "stream_completion", provider=provider, model=model
            ) from e

        self._transition(StreamState.COMPLETED)
        self.log.info(
            "Completion stream finished",
            characters=len(self.accumulator.text),
            deltas=self.accumulator.state.delta_count,
            malformed_frames=self.accumulator.state.malformed_count,
        )


async def _dispatch(callback: Callback | None, value: str) -> None:
    if callback is None:
        return
    result = callback(value)
    if inspect.isawaitable(result):
        await result


class StreamingCompletionClient:
    """
    HTTP client for streaming chat completions.

    Each invocation owns its own parser and accumulator; the client only
    shares the underlying connection pool.
    """

    def __init__(
        self,
        providers: Mapping[ProviderType, ProviderConfig] | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
        flush_trailing_line: bool = True,
    ):
        self.providers = providers
        self.timeout = timeout
        self.flush_trailing_line = flush_trailing_line
        self._http_client = http_client
        self._owns_client = http_client is None
        self._log = ContextualLogger({"component": "streaming_client"})

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    def _prepare(
        self,
        api_key: str,
        provider: str | ProviderType,
        model: str,
        messages: Sequence[MessageLike],
        system_prompt: str | None,
    ) -> CompletionInvocation:
        request = build_completion_request(
            api_key,
            provider,
            model,
            messages,
            system_prompt=system_prompt,
            providers=self.providers,
        )
        provider_name = (
            provider.value if isinstance(provider, ProviderType) else str(provider)
        )
        return CompletionInvocation(
            request,
            self.http_client,
            StreamingParser(flush_trailing_line=self.flush_trailing_line),
            self._log.bind(provider=provider_name, model=model),
        )

    async def iter_completion(
        self,
        api_key: str,
        provider: str | ProviderType,
        model: str,
        messages: Sequence[MessageLike],
        system_prompt: str | None = None,
    ) -> AsyncGenerator[str]:
        """
        Yield the cumulative reply text after every delta.

        Raises:
            LLMError: on configuration, transport, protocol or remote errors.
        """
        invocation = self._prepare(api_key, provider, model, messages, system_prompt)
        async with aclosing(invocation.updates()) as updates:
            async for text in updates:
                yield text

    async def stream_completion(
        self,
        api_key: str,
        provider: str | ProviderType,
        model: str,
        messages: Sequence[MessageLike],
        system_prompt: str | None = None,
        on_update: Callback | None = None,
        on_finish: Callback | None = None,
        on_error: Callback | None = None,
    ) -> CompletionResult:
        """
        Run one invocation and report it through the callbacks.

        Never raises; the returned CompletionResult mirrors whichever
        terminal callback fired.
        """
        provider_name = str(getattr(provider, "value", provider))
        log = self._log.bind(provider=provider_name, model=model)

        try:
            invocation = self._prepare(
                api_key, provider, model, messages, system_prompt
            )
        except Exception as e:
            error = LLMErrorHandler.create_llm_error(
                e, "build_request", provider=provider_name, model=model
            )
            return await self._fail(error, on_error, log)

        log.info(
            "Streaming completion started",
            messages=len(invocation.request.messages),
        )
        try:
            async with aclosing(invocation.updates()) as updates:
                async for text in updates:
                    await _dispatch(on_update, text)
        except LLMError as e:
            return await self._fail(e, on_error, log)
        except Exception as e:
            invocation.state = StreamState.FAILED
            error = LLMErrorHandler.create_llm_error(
                e, "on_update", provider=provider_name, model=model
            )
            return await self._fail(error, on_error, log)

        await self._notify(on_finish, invocation.text, log, "on_finish")
        return CompletionResult(state=StreamState.COMPLETED, text=invocation.text)

    async def _fail(
        self, error: LLMError, on_error: Callback | None, log: ContextualLogger
    ) -> CompletionResult:
        await self._notify(on_error, error.message, log, "on_error")
        return CompletionResult(state=StreamState.FAILED, error=error.message)

    @staticmethod
    async def _notify(
        callback: Callback | None, value: str, log: ContextualLogger, name: str
    ) -> None:
        # Terminal callbacks must not trigger a second terminal callback.
        try:
            await _dispatch(callback, value)
        except Exception:
            log.exception("Terminal callback raised", callback=name)

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> StreamingCompletionClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


async def stream_completion(
    api_key: str,
    provider: str | ProviderType,
    model: str,
    messages: Sequence[MessageLike],
    system_prompt: str | None = None,
    on_update: Callback | None = None,
    on_finish: Callback | None = None,
    on_error: Callback | None = None,
    **client_options: Any,
) -> CompletionResult:
    """Single-shot convenience wrapper around StreamingCompletionClient."""
    async with StreamingCompletionClient(**client_options) as client:
        return await client.stream_completion(
            api_key,
            provider,
            model,
            messages,
            system_prompt=system_prompt,
            on_update=on_update,
            on_finish=on_finish,
            on_error=on_error,
        )
