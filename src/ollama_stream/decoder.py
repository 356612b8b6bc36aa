"""Decode newline-delimited JSON response bodies into chunks."""

from __future__ import annotations

import json
from typing import Any, AsyncIterable, AsyncIterator, Iterable, Iterator

from .errors import DecodeError, ServerError, TruncatedStreamError, ValidationError
from .types import Message, Mode, ResponseChunk

DEFAULT_MAX_LINE_BYTES = 16 * 1024 * 1024

_CONTENT_KEYS = ("response", "message", "done")


class StreamDecoder:
    """Incremental line splitter and chunk mapper for one response.

    Bytes are buffered until a ``\\n`` arrives, so lines and multi-byte
    characters split across reads are put back together before parsing.
    """

    def __init__(self, mode: Mode, max_line_bytes: int = DEFAULT_MAX_LINE_BYTES):
        self.mode = mode
        self.max_line_bytes = max_line_bytes
        self.done = False
        self.chunks = 0
        self._buffer = bytearray()

    def push(self, data: bytes) -> list[bytes]:
        """Buffer ``data`` and return the complete lines it finished."""
        if self.done:
            return []
        self._buffer.extend(data)
        lines = []
        while True:
            idx = self._buffer.find(b"\n")
            if idx < 0:
                break
            lines.append(bytes(self._buffer[:idx]))
            del self._buffer[: idx + 1]
        if len(self._buffer) > self.max_line_bytes:
            raise DecodeError(f"response line exceeds {self.max_line_bytes} bytes")
        return lines

    def flush(self) -> bytes | None:
        """Return the unterminated tail left when the input ends."""
        tail = bytes(self._buffer)
        self._buffer.clear()
        return tail if tail.strip() else None

    def decode_line(self, line: bytes) -> ResponseChunk | None:
        """Parse one line; blank lines yield None."""
        if self.done:
            raise DecodeError("data received after the final chunk")
        text = line.strip()
        if not text:
            return None
        try:
            obj = json.loads(text.decode("utf-8"))
        except UnicodeDecodeError as exc:
            raise DecodeError(f"response line is not valid UTF-8: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise DecodeError(f"response line is not valid JSON: {exc.msg} at column {exc.colno}") from exc
        chunk = self.to_chunk(obj)
        self.chunks += 1
        if chunk.done:
            self.done = True
        return chunk

    def to_chunk(self, obj: Any) -> ResponseChunk:
        """Map one decoded JSON object onto a ResponseChunk for this mode."""
        if not isinstance(obj, dict):
            raise DecodeError(f"expected a JSON object, got {type(obj).__name__}")
        if "error" in obj:
            raise ServerError(None, str(obj["error"]))

        done = obj.get("done", False)
        if not isinstance(done, bool):
            raise DecodeError(f"'done' must be a boolean, got {done!r}")
        metadata = {k: v for k, v in obj.items() if k not in _CONTENT_KEYS}

        if self.mode is Mode.COMPLETION:
            content = obj.get("response", "")
            if not isinstance(content, str):
                raise DecodeError("'response' must be a string")
            return ResponseChunk(content=content, done=done, metadata=metadata)

        raw = obj.get("message") or {}
        if not isinstance(raw, dict):
            raise DecodeError("'message' must be an object")
        content = raw.get("content", "")
        if not isinstance(content, str):
            raise DecodeError("message 'content' must be a string")
        try:
            message = Message(role=raw.get("role", "assistant"), content=content)
        except ValidationError as exc:
            raise DecodeError(f"unexpected message in response: {exc}") from exc
        metadata.update({k: v for k, v in raw.items() if k not in ("role", "content")})
        return ResponseChunk(content=content, done=done, message=message, metadata=metadata)

    def finish(self) -> ResponseChunk | None:
        """Handle end of input; returns a final unterminated chunk if there is one.

        Raises:
            TruncatedStreamError: If no chunk with ``done`` set was seen.
        """
        chunk = None
        tail = self.flush()
        if tail is not None and not self.done:
            chunk = self.decode_line(tail)
        if not self.done:
            raise TruncatedStreamError(
                f"stream ended after {self.chunks} chunk(s) without a final 'done' chunk"
            )
        return chunk


def iter_chunks(
    data: Iterable[bytes],
    mode: Mode,
    max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
) -> Iterator[ResponseChunk]:
    """Lazily decode a byte iterable; stops reading at the ``done`` chunk."""
    decoder = StreamDecoder(mode, max_line_bytes)
    for block in data:
        for line in decoder.push(block):
            chunk = decoder.decode_line(line)
            if chunk is None:
                continue
            yield chunk
            if chunk.done:
                return
    chunk = decoder.finish()
    if chunk is not None:
        yield chunk


async def aiter_chunks(
    data: AsyncIterable[bytes],
    mode: Mode,
    max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
) -> AsyncIterator[ResponseChunk]:
    """Async counterpart of iter_chunks."""
    decoder = StreamDecoder(mode, max_line_bytes)
    async for block in data:
        for line in decoder.push(block):
            chunk = decoder.decode_line(line)
            if chunk is None:
                continue
            yield chunk
            if chunk.done:
                return
    chunk = decoder.finish()
    if chunk is not None:
        yield chunk


def decode_body(body: bytes, mode: Mode) -> ResponseChunk:
    """Decode a complete non-streaming body into its single chunk."""
    decoder = StreamDecoder(mode)
    text = body.strip()
    if not text:
        raise TruncatedStreamError("response body is empty")
    # A full body is one JSON document, which may span several lines.
    try:
        obj = json.loads(text.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecodeError(f"response body is not valid JSON: {exc}") from exc
    chunk = decoder.to_chunk(obj)
    if not chunk.done:
        raise TruncatedStreamError("response body is missing 'done': true")
    return chunk
