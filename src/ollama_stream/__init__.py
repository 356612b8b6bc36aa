"""Streaming completion client for a local Ollama server."""

from .async_client import AsyncChunkStream, AsyncOllamaClient
from .builder import build_request, chat_request, completion_request
from .client import ChunkStream, OllamaClient
from .config import ClientSettings, configure_logging
from .decoder import StreamDecoder, aiter_chunks, decode_body, iter_chunks
from .dispatch import CallState
from .endpoint import DEFAULT_ENDPOINT, Endpoint, resolve_endpoint
from .errors import (
    Cancelled,
    ConfigError,
    DecodeError,
    Interrupted,
    NetworkError,
    OllamaClientError,
    ServerError,
    TimedOut,
    TruncatedStreamError,
    ValidationError,
)
from .types import (
    ChatRequest,
    CompletionRequest,
    Control,
    FinalResult,
    JSONSchema,
    Message,
    Mode,
    Options,
    RawJSON,
    ResponseChunk,
    Role,
)

__all__ = [
    "AsyncChunkStream",
    "AsyncOllamaClient",
    "CallState",
    "Cancelled",
    "ChatRequest",
    "ChunkStream",
    "ClientSettings",
    "CompletionRequest",
    "ConfigError",
    "Control",
    "DEFAULT_ENDPOINT",
    "DecodeError",
    "Endpoint",
    "FinalResult",
    "Interrupted",
    "JSONSchema",
    "Message",
    "Mode",
    "NetworkError",
    "OllamaClient",
    "OllamaClientError",
    "Options",
    "RawJSON",
    "ResponseChunk",
    "Role",
    "ServerError",
    "StreamDecoder",
    "TimedOut",
    "TruncatedStreamError",
    "ValidationError",
    "aiter_chunks",
    "build_request",
    "chat_request",
    "completion_request",
    "configure_logging",
    "decode_body",
    "iter_chunks",
    "resolve_endpoint",
]
