"""Ollama client implementation on httpx.AsyncClient."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, AsyncIterator, Awaitable, Iterable

import httpx

from .base import DEFAULT_TIMEOUT, BaseClient, bounded_timeout, request_headers
from .builder import FormatLike, MessageLike, OptionsLike
from .decoder import aiter_chunks, decode_body
from .dispatch import AsyncHandler, Call, CallState, CancelSignal, Handler, wants_stop
from .endpoint import Endpoint
from .errors import Cancelled, Interrupted, OllamaClientError, classify, server_error
from .types import FinalResult, Request, ResponseChunk

logger = logging.getLogger(__name__)


class AsyncChunkStream:
    """Async iterator over the chunks of one exchange; see ChunkStream."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        url: str,
        request: Request,
        cancel: CancelSignal | None = None,
        timeout: float | None = None,
    ):
        self._http = http
        self._url = url
        self._call = Call(request, cancel, timeout)
        self._gen: AsyncIterator[ResponseChunk] | None = None

    @property
    def request(self) -> Request:
        return self._call.request

    @property
    def state(self) -> CallState:
        return self._call.state

    @property
    def result(self) -> FinalResult | None:
        return self._call.result

    def partial(self) -> FinalResult:
        return self._call.partial()

    def __aiter__(self) -> "AsyncChunkStream":
        return self

    async def __anext__(self) -> ResponseChunk:
        if self._gen is None:
            self._gen = self._run()
        return await self._gen.__anext__()

    async def __aenter__(self) -> "AsyncChunkStream":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._gen is not None:
            await self._gen.aclose()
        self._call.settle()

    async def stop(self, reason: str = "stopped by consumer") -> Cancelled:
        if self._gen is not None:
            await self._gen.aclose()
        return self._call.interrupt(CallState.CANCELLED, reason)

    async def abort(self, error: BaseException) -> None:
        self._call.fail(error)
        await self.aclose()

    async def _within_deadline(self, pending: Awaitable[Any]) -> Any:
        """Await ``pending``, aborting it with TimedOut when the deadline passes."""
        remaining = self._call.remaining()
        if remaining is None:
            return await pending
        try:
            return await asyncio.wait_for(pending, remaining)
        except asyncio.TimeoutError:
            raise self._call.interrupt(CallState.TIMED_OUT, "deadline expired") from None

    async def _run(self) -> AsyncIterator[ResponseChunk]:
        call = self._call
        request = call.request
        call.check_interrupt()
        call.transition(CallState.SENDING)
        timeout = bounded_timeout(self._http.timeout, call.remaining())
        try:
            async with self._http.stream(
                "POST",
                self._url,
                json=request.to_payload(),
                headers=request_headers(request),
                timeout=timeout,
            ) as response:
                logger.debug("%s opened: HTTP %s", request.path, response.status_code)
                if response.is_error:
                    await response.aread()
                    raise server_error(response.status_code, response.text)

                if not request.stream:
                    call.transition(CallState.AWAITING_FULL_BODY)
                    call.check_interrupt()
                    body = await self._within_deadline(response.aread())
                    chunk = decode_body(body, request.mode)
                    call.accept(chunk)
                    yield chunk
                    call.complete()
                else:
                    call.transition(CallState.STREAMING)
                    chunks = aiter_chunks(response.aiter_bytes(), request.mode)
                    try:
                        while True:
                            call.check_interrupt()
                            chunk = await self._within_deadline(anext(chunks, None))
                            if chunk is None:
                                break
                            call.accept(chunk)
                            yield chunk
                            if chunk.done:
                                call.complete()
                                break
                    finally:
                        await chunks.aclose()
        except Interrupted:
            raise
        except OllamaClientError as exc:
            call.fail(exc)
            raise
        except (httpx.HTTPError, httpx.StreamError, httpx.InvalidURL) as exc:
            if isinstance(exc, httpx.TimeoutException) and call.expired():
                raise call.interrupt(CallState.TIMED_OUT, "deadline expired") from exc
            error = classify(exc, streaming=call.state is CallState.STREAMING)
            call.fail(error)
            raise error from exc


class AsyncOllamaClient(BaseClient):
    """LLM client that talks to an Ollama instance from asyncio code.

    Concurrent calls may share one instance; they share only the pooled
    httpx.AsyncClient.
    """

    def __init__(
        self,
        endpoint: Endpoint | str | None = None,
        model: str | None = None,
        timeout: httpx.Timeout | float | None = DEFAULT_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ):
        super().__init__(endpoint, model, timeout)
        self._client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def stream(
        self,
        request: Request,
        cancel: CancelSignal | None = None,
        timeout: float | None = None,
    ) -> AsyncChunkStream:
        client = await self._get_client()
        return AsyncChunkStream(client, self.url_for(request.path), request, cancel, timeout)

    async def dispatch(
        self,
        request: Request,
        handler: Handler | AsyncHandler | None = None,
        cancel: CancelSignal | None = None,
        timeout: float | None = None,
    ) -> FinalResult:
        """Send ``request`` and feed each chunk to ``handler`` in order.

        The handler may be a plain callable or a coroutine function; either
        way it finishes before the next read.
        Returning Control.STOP aborts the exchange and raises Cancelled.
        """
        async with await self.stream(request, cancel, timeout) as chunks:
            async for chunk in chunks:
                if handler is None:
                    continue
                try:
                    control = handler(chunk)
                    if inspect.isawaitable(control):
                        control = await control
                except Exception as exc:
                    await chunks.abort(exc)
                    raise
                if wants_stop(control) and not chunk.done:
                    raise await chunks.stop("handler requested stop")
        return chunks.result

    async def generate(
        self,
        prompt: str,
        model: str | None = None,
        options: OptionsLike = None,
        format: FormatLike = None,
        stream: bool = True,
        system: str | None = None,
        keep_alive: str | None = None,
        handler: Handler | AsyncHandler | None = None,
        cancel: CancelSignal | None = None,
        timeout: float | None = None,
    ) -> FinalResult:
        request = self.completion_request(prompt, model, options, format, stream, system, keep_alive)
        return await self.dispatch(request, handler, cancel, timeout)

    async def chat(
        self,
        messages: Iterable[MessageLike],
        model: str | None = None,
        options: OptionsLike = None,
        format: FormatLike = None,
        stream: bool = True,
        keep_alive: str | None = None,
        handler: Handler | AsyncHandler | None = None,
        cancel: CancelSignal | None = None,
        timeout: float | None = None,
    ) -> FinalResult:
        request = self.chat_request(messages, model, options, format, stream, keep_alive)
        return await self.dispatch(request, handler, cancel, timeout)

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "AsyncOllamaClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
