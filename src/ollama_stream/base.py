"""Construction and request helpers shared by the sync and async clients."""

from __future__ import annotations

from typing import Iterable

import httpx

from .builder import FormatLike, MessageLike, OptionsLike, chat_request, completion_request
from .config import ClientSettings
from .endpoint import Endpoint, resolve_endpoint
from .types import ChatRequest, CompletionRequest, Request

# Generation can run for minutes; only the connect phase is bounded by default.
DEFAULT_TIMEOUT = httpx.Timeout(None, connect=5.0)


def request_headers(request: Request) -> dict[str, str]:
    if request.stream:
        return {"Accept": "application/x-ndjson"}
    return {"Accept": "application/json"}


def bounded_timeout(timeout: httpx.Timeout, remaining: float | None) -> httpx.Timeout:
    """Cap every phase of ``timeout`` at the seconds left before a deadline."""
    if remaining is None:
        return timeout

    def cap(value: float | None) -> float:
        return remaining if value is None else min(value, remaining)

    return httpx.Timeout(
        connect=cap(timeout.connect),
        read=cap(timeout.read),
        write=cap(timeout.write),
        pool=cap(timeout.pool),
    )


class BaseClient:
    """Holds the resolved endpoint, default model and transport timeout."""

    def __init__(
        self,
        endpoint: Endpoint | str | None = None,
        model: str | None = None,
        timeout: httpx.Timeout | float | None = DEFAULT_TIMEOUT,
    ):
        if isinstance(endpoint, Endpoint):
            self.endpoint = endpoint
        else:
            self.endpoint = resolve_endpoint(endpoint)
        self.model = model
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: ClientSettings, **kwargs):
        return cls(settings.endpoint(), settings.model, timeout=settings.timeout(), **kwargs)

    def url_for(self, path: str) -> str:
        return self.endpoint.url_for(path)

    def completion_request(
        self,
        prompt: str,
        model: str | None = None,
        options: OptionsLike = None,
        format: FormatLike = None,
        stream: bool = True,
        system: str | None = None,
        keep_alive: str | None = None,
    ) -> CompletionRequest:
        return completion_request(
            model or self.model, prompt, options, format, stream, system, keep_alive
        )

    def chat_request(
        self,
        messages: Iterable[MessageLike],
        model: str | None = None,
        options: OptionsLike = None,
        format: FormatLike = None,
        stream: bool = True,
        keep_alive: str | None = None,
    ) -> ChatRequest:
        return chat_request(model or self.model, messages, options, format, stream, keep_alive)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(endpoint={self.endpoint.url!r}, model={self.model!r})"
