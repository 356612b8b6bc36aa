"""Types for requests, response chunks and results."""

from __future__ import annotations

import copy
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from .errors import ValidationError

MAX_EXTRA_OPTIONS = 32


class Role(str, Enum):
    """Author of a chat message."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class Mode(Enum):
    """Request flavour; selects the API path and the chunk shape."""
    COMPLETION = "completion"
    CHAT = "chat"


class Control(Enum):
    """Value a chunk handler returns to keep reading or to stop."""
    CONTINUE = "continue"
    STOP = "stop"


def _coerce_role(value: Any) -> Role:
    if isinstance(value, Role):
        return value
    try:
        return Role(value)
    except ValueError:
        allowed = ", ".join(r.value for r in Role)
        raise ValidationError(f"unknown message role {value!r} (expected one of: {allowed})") from None


@dataclass(frozen=True)
class Message:
    """A message in a chat conversation."""
    role: Role
    content: str

    def __post_init__(self):
        object.__setattr__(self, "role", _coerce_role(self.role))
        if not isinstance(self.content, str):
            raise ValidationError(
                f"message content must be a string, got {type(self.content).__name__}"
            )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Message":
        if not isinstance(data, Mapping):
            raise ValidationError(f"message must be a mapping, got {type(data).__name__}")
        if "role" not in data:
            raise ValidationError("message is missing 'role'")
        return cls(role=data["role"], content=data.get("content", ""))

    def to_dict(self) -> dict:
        return {"role": self.role.value, "content": self.content}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_scalar(value: Any) -> bool:
    if isinstance(value, float):
        return math.isfinite(value)
    return value is None or isinstance(value, (str, int, bool))


@dataclass(frozen=True)
class Options:
    """Generation tuning knobs sent as the ``options`` object.

    Unset fields are left out of the payload so the server keeps its own
    defaults. ``extra`` carries any other server-specific knob.
    """
    temperature: float | None = None
    repeat_last_n: int | None = None
    top_k: int | None = None
    top_p: float | None = None
    num_ctx: int | None = None
    num_predict: int | None = None
    seed: int | None = None
    stop: tuple[str, ...] | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    _FLOATS = ("temperature", "top_p")
    _INTS = ("repeat_last_n", "top_k", "num_ctx", "num_predict", "seed")

    def __post_init__(self):
        for name in self._FLOATS:
            value = getattr(self, name)
            if value is None:
                continue
            if not _is_number(value) or not math.isfinite(value):
                raise ValidationError(f"option {name!r} must be a finite number, got {value!r}")
            object.__setattr__(self, name, float(value))
        for name in self._INTS:
            value = getattr(self, name)
            if value is not None and (not isinstance(value, int) or isinstance(value, bool)):
                raise ValidationError(f"option {name!r} must be an integer, got {value!r}")
        if self.stop is not None:
            if isinstance(self.stop, str):
                stop = (self.stop,)
            else:
                stop = tuple(self.stop)
            if not all(isinstance(s, str) for s in stop):
                raise ValidationError("option 'stop' must contain only strings")
            object.__setattr__(self, "stop", stop)
        object.__setattr__(self, "extra", self._check_extra(self.extra))

    @classmethod
    def _check_extra(cls, extra: Mapping[str, Any]) -> dict:
        if not isinstance(extra, Mapping):
            raise ValidationError("option extras must be a mapping")
        if len(extra) > MAX_EXTRA_OPTIONS:
            raise ValidationError(f"at most {MAX_EXTRA_OPTIONS} extra options are allowed")
        named = cls._FLOATS + cls._INTS + ("stop",)
        checked = {}
        for key, value in extra.items():
            if not isinstance(key, str) or not key:
                raise ValidationError(f"option names must be non-empty strings, got {key!r}")
            if key in named:
                raise ValidationError(f"option {key!r} must be set through its named field")
            if isinstance(value, (list, tuple)):
                if not all(_is_scalar(v) for v in value):
                    raise ValidationError(f"option {key!r} must be a list of scalars")
                value = list(value)
            elif not _is_scalar(value):
                raise ValidationError(f"option {key!r} has unsupported value {value!r}")
            checked[key] = value
        return checked

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Options":
        """Split a flat ``{name: value}`` mapping into named fields and extras."""
        named = set(cls._FLOATS + cls._INTS + ("stop",))
        kwargs = {k: v for k, v in data.items() if k in named}
        extra = {k: v for k, v in data.items() if k not in named}
        return cls(**kwargs, extra=extra)

    def to_payload(self) -> dict:
        payload = {}
        for name in self._FLOATS + self._INTS:
            value = getattr(self, name)
            if value is not None:
                payload[name] = value
        if self.stop is not None:
            payload["stop"] = list(self.stop)
        for key, value in self.extra.items():
            payload[key] = list(value) if isinstance(value, list) else value
        return payload


@dataclass(frozen=True)
class RawJSON:
    """Ask the server for any well-formed JSON output."""

    def to_payload(self) -> str:
        return "json"


@dataclass(frozen=True)
class JSONSchema:
    """Ask the server to constrain output to a JSON schema.

    The schema is passed through untouched; only its top-level
    ``type``/``properties``/``required`` layout is checked when a request
    is built.
    """
    schema: Mapping[str, Any]

    def __post_init__(self):
        if not isinstance(self.schema, Mapping):
            raise ValidationError("JSON schema must be a mapping")
        object.__setattr__(self, "schema", copy.deepcopy(dict(self.schema)))

    @property
    def properties(self) -> Any:
        return self.schema.get("properties")

    @property
    def required(self) -> Any:
        return self.schema.get("required", [])

    def to_payload(self) -> dict:
        return copy.deepcopy(self.schema)


FormatSpec = RawJSON | JSONSchema | None


@dataclass(frozen=True)
class CompletionRequest:
    """Single-prompt request for ``/api/generate``."""
    model: str
    prompt: str
    options: Options = field(default_factory=Options)
    format: FormatSpec = None
    stream: bool = True
    system: str | None = None
    keep_alive: str | None = None

    mode = Mode.COMPLETION
    path = "/api/generate"

    def to_payload(self) -> dict:
        payload: dict[str, Any] = {"model": self.model, "prompt": self.prompt}
        if self.system is not None:
            payload["system"] = self.system
        return _finish_payload(self, payload)


@dataclass(frozen=True)
class ChatRequest:
    """Multi-turn request for ``/api/chat``."""
    model: str
    messages: tuple[Message, ...]
    options: Options = field(default_factory=Options)
    format: FormatSpec = None
    stream: bool = True
    keep_alive: str | None = None

    mode = Mode.CHAT
    path = "/api/chat"

    def to_payload(self) -> dict:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [m.to_dict() for m in self.messages],
        }
        return _finish_payload(self, payload)


Request = CompletionRequest | ChatRequest


def _finish_payload(request: Request, payload: dict) -> dict:
    options = request.options.to_payload()
    if options:
        payload["options"] = options
    payload["stream"] = request.stream
    if request.format is not None:
        payload["format"] = request.format.to_payload()
    if request.keep_alive is not None:
        payload["keep_alive"] = request.keep_alive
    return payload


@dataclass(frozen=True)
class ResponseChunk:
    """One decoded line of a response.

    ``content`` is the text fragment in both modes; in chat mode
    ``message`` holds the role-tagged fragment it came from.
    """
    content: str
    done: bool
    message: Message | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FinalResult:
    """Assembled outcome of one exchange."""
    content: str
    message: Message | None = None
    chunks: int = 0
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def done_reason(self) -> str | None:
        return self.metadata.get("done_reason")
