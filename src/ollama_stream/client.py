"""Blocking Ollama client built on httpx.Client."""

from __future__ import annotations

import logging
import threading
from typing import Iterable, Iterator

import httpx

from .base import DEFAULT_TIMEOUT, BaseClient, bounded_timeout, request_headers
from .builder import FormatLike, MessageLike, OptionsLike
from .decoder import decode_body, iter_chunks
from .dispatch import Call, CallState, CancelSignal, Handler, wants_stop
from .endpoint import Endpoint
from .errors import Cancelled, Interrupted, OllamaClientError, classify, server_error
from .types import FinalResult, Request, ResponseChunk

logger = logging.getLogger(__name__)


class ChunkStream:
    """Pull-based view of one exchange.

    Nothing is sent until the first ``next()``. Each ``next()`` reads only
    as far as the next chunk. Closing the stream before the final chunk
    releases the connection and leaves it in the CANCELLED state.
    """

    def __init__(
        self,
        http: httpx.Client,
        url: str,
        request: Request,
        cancel: CancelSignal | None = None,
        timeout: float | None = None,
    ):
        self._http = http
        self._url = url
        self._call = Call(request, cancel, timeout)
        self._gen: Iterator[ResponseChunk] | None = None

    @property
    def request(self) -> Request:
        return self._call.request

    @property
    def state(self) -> CallState:
        return self._call.state

    @property
    def result(self) -> FinalResult | None:
        """The final result once the stream completed, else None."""
        return self._call.result

    def partial(self) -> FinalResult:
        return self._call.partial()

    def __iter__(self) -> "ChunkStream":
        return self

    def __next__(self) -> ResponseChunk:
        if self._gen is None:
            self._gen = self._run()
        return next(self._gen)

    def __enter__(self) -> "ChunkStream":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        if self._gen is not None:
            self._gen.close()
        self._call.settle()

    def stop(self, reason: str = "stopped by consumer") -> Cancelled:
        """Abort the exchange and return the Cancelled error describing it."""
        if self._gen is not None:
            self._gen.close()
        return self._call.interrupt(CallState.CANCELLED, reason)

    def abort(self, error: BaseException) -> None:
        """Close the connection after a consumer-side failure."""
        self._call.fail(error)
        self.close()

    def _run(self) -> Iterator[ResponseChunk]:
        call = self._call
        request = call.request
        call.check_interrupt()
        call.transition(CallState.SENDING)
        # httpx bounds each read, not the whole exchange; the clock is re-checked after every read.
        timeout = bounded_timeout(self._http.timeout, call.remaining())
        try:
            with self._http.stream(
                "POST",
                self._url,
                json=request.to_payload(),
                headers=request_headers(request),
                timeout=timeout,
            ) as response:
                logger.debug("%s opened: HTTP %s", request.path, response.status_code)
                if response.is_error:
                    response.read()
                    raise server_error(response.status_code, response.text)

                if not request.stream:
                    call.transition(CallState.AWAITING_FULL_BODY)
                    call.check_interrupt()
                    body = response.read()
                    call.check_interrupt()
                    chunk = decode_body(body, request.mode)
                    call.accept(chunk)
                    yield chunk
                    call.complete()
                else:
                    call.transition(CallState.STREAMING)
                    chunks = iter_chunks(response.iter_bytes(), request.mode)
                    while True:
                        call.check_interrupt()
                        chunk = next(chunks, None)
                        if chunk is None:
                            break
                        call.check_interrupt()
                        call.accept(chunk)
                        yield chunk
                        if chunk.done:
                            call.complete()
                            break
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


class OllamaClient(BaseClient):
    """Blocking client; one instance may serve calls from several threads."""

    def __init__(
        self,
        endpoint: Endpoint | str | None = None,
        model: str | None = None,
        timeout: httpx.Timeout | float | None = DEFAULT_TIMEOUT,
        http_client: httpx.Client | None = None,
    ):
        super().__init__(endpoint, model, timeout)
        self._client = http_client
        self._owns_client = http_client is None
        self._lock = threading.Lock()

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            with self._lock:
                if self._client is None:
                    self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def stream(
        self,
        request: Request,
        cancel: CancelSignal | None = None,
        timeout: float | None = None,
    ) -> ChunkStream:
        """Return a lazy iterator over the chunks of ``request``.

        Args:
            request: A request from the builder.
            cancel: Optional signal checked before every chunk read.
            timeout: Optional deadline in seconds for the whole exchange.
        """
        return ChunkStream(self._get_client(), self.url_for(request.path), request, cancel, timeout)

    def dispatch(
        self,
        request: Request,
        handler: Handler | None = None,
        cancel: CancelSignal | None = None,
        timeout: float | None = None,
    ) -> FinalResult:
        """Send ``request`` and feed each chunk to ``handler`` in order.

        The next chunk is not read until the handler returns. Returning
        Control.STOP aborts the exchange and raises Cancelled.

        Returns:
            The assembled FinalResult.
        """
        with self.stream(request, cancel, timeout) as chunks:
            for chunk in chunks:
                if handler is None:
                    continue
                try:
                    control = handler(chunk)
                except Exception as exc:
                    chunks.abort(exc)
                    raise
                if wants_stop(control) and not chunk.done:
                    raise chunks.stop("handler requested stop")
        return chunks.result

    def generate(
        self,
        prompt: str,
        model: str | None = None,
        options: OptionsLike = None,
        format: FormatLike = None,
        stream: bool = True,
        system: str | None = None,
        keep_alive: str | None = None,
        handler: Handler | None = None,
        cancel: CancelSignal | None = None,
        timeout: float | None = None,
    ) -> FinalResult:
        """Build a completion request and dispatch it."""
        request = self.completion_request(prompt, model, options, format, stream, system, keep_alive)
        return self.dispatch(request, handler, cancel, timeout)

    def chat(
        self,
        messages: Iterable[MessageLike],
        model: str | None = None,
        options: OptionsLike = None,
        format: FormatLike = None,
        stream: bool = True,
        keep_alive: str | None = None,
        handler: Handler | None = None,
        cancel: CancelSignal | None = None,
        timeout: float | None = None,
    ) -> FinalResult:
        request = self.chat_request(messages, model, options, format, stream, keep_alive)
        return self.dispatch(request, handler, cancel, timeout)

    def close(self):
        with self._lock:
            if self._client is not None and self._owns_client:
                self._client.close()
            self._client = None

    def __enter__(self) -> "OllamaClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
