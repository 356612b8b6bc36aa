"""Error taxonomy and classification of transport failures."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import httpx

if TYPE_CHECKING:
    from .types import FinalResult


class OllamaClientError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(OllamaClientError):
    """The endpoint override or another configuration value is unusable."""


class ValidationError(OllamaClientError):
    """A request is malformed and was not sent."""


class NetworkError(OllamaClientError):
    """The server could not be reached or the connection failed."""

    def __init__(self, message: str, reason: str = "transport"):
        super().__init__(message)
        self.reason = reason


class ServerError(OllamaClientError):
    """The server answered with a non-2xx status or an error object."""

    def __init__(self, status: int | None, body: str):
        if status is None:
            message = f"server reported an error: {body}"
        else:
            message = f"server returned HTTP {status}: {body}"
        super().__init__(message)
        self.status = status
        self.body = body


class DecodeError(OllamaClientError):
    """A response line is not a valid JSON object."""


class TruncatedStreamError(OllamaClientError):
    """The response ended before a chunk with ``done`` set arrived."""


class Interrupted(OllamaClientError):
    """The caller stopped the exchange before the model finished."""

    def __init__(self, message: str, partial: "FinalResult"):
        super().__init__(message)
        self.partial = partial


class Cancelled(Interrupted):
    """Stopped by the handler, a cancel signal, or an early close."""


class TimedOut(Interrupted):
    """The caller's deadline expired between chunks."""


def _extract_error(body: str) -> str:
    # Ollama reports failures as {"error": "..."}; fall back to the raw text.
    try:
        data = json.loads(body)
    except ValueError:
        return body
    if isinstance(data, dict) and isinstance(data.get("error"), str):
        return data["error"]
    return body


def server_error(status: int | None, body: str) -> ServerError:
    """Build a ServerError from a raw response body."""
    return ServerError(status, _extract_error(body))


def classify(exc: BaseException, streaming: bool = False) -> OllamaClientError:
    """Map a raw transport or decoding failure onto the error taxonomy.

    Args:
        exc: The exception raised by httpx or the json module.
        streaming: Whether the response body was already being consumed.
            An incomplete body at that point means the stream was cut off.

    Returns:
        The matching OllamaClientError. Errors that are already classified
        are returned unchanged.
    """
    if isinstance(exc, OllamaClientError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return NetworkError(f"request timed out: {exc}", reason="timeout")
    if isinstance(exc, httpx.ConnectError):
        return NetworkError(f"could not connect: {exc}", reason="connect")
    if isinstance(exc, httpx.RemoteProtocolError):
        if streaming:
            return TruncatedStreamError(f"connection closed mid-stream: {exc}")
        return NetworkError(f"protocol error: {exc}", reason="protocol")
    if isinstance(exc, httpx.DecodingError):
        return DecodeError(f"could not decode response body: {exc}")
    if isinstance(exc, (httpx.TransportError, httpx.StreamError)):
        return NetworkError(f"transport failure: {exc}", reason="transport")
    if isinstance(exc, httpx.InvalidURL):
        return ConfigError(f"invalid URL: {exc}")
    if isinstance(exc, (json.JSONDecodeError, UnicodeDecodeError)):
        return DecodeError(f"invalid JSON in response: {exc}")
    return OllamaClientError(f"{type(exc).__name__}: {exc}")
