"""Assemble and validate completion and chat requests.

Every check runs here, before anything touches the network, so a request
object that exists is one the client is willing to send.
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping

from .errors import ValidationError
from .types import (
    ChatRequest,
    CompletionRequest,
    FormatSpec,
    JSONSchema,
    Message,
    Mode,
    Options,
    RawJSON,
    Request,
)

OptionsLike = Options | Mapping[str, Any] | None
FormatLike = FormatSpec | str | Mapping[str, Any]
MessageLike = Message | Mapping[str, Any]


def coerce_options(options: OptionsLike) -> Options:
    if options is None:
        return Options()
    if isinstance(options, Options):
        return options
    if isinstance(options, Mapping):
        return Options.from_mapping(options)
    raise ValidationError(f"options must be Options or a mapping, got {type(options).__name__}")


def coerce_format(fmt: FormatLike) -> FormatSpec:
    """Accept a FormatSpec, the string ``"json"``, or a bare schema mapping."""
    if fmt is None or isinstance(fmt, (RawJSON, JSONSchema)):
        result = fmt
    elif isinstance(fmt, str):
        if fmt != "json":
            raise ValidationError(f"unknown output format {fmt!r} (expected 'json' or a schema)")
        result = RawJSON()
    elif isinstance(fmt, Mapping):
        result = JSONSchema(fmt)
    else:
        raise ValidationError(f"unsupported output format {type(fmt).__name__}")
    if isinstance(result, JSONSchema):
        check_schema(result)
    return result


def check_schema(fmt: JSONSchema) -> None:
    """Check the structural consistency of a schema directive."""
    schema = fmt.schema
    if schema.get("type") != "object":
        raise ValidationError(f"JSON schema type must be 'object', got {schema.get('type')!r}")

    properties = schema.get("properties", {})
    if not isinstance(properties, Mapping):
        raise ValidationError("JSON schema 'properties' must be a mapping")
    for name, prop in properties.items():
        if not isinstance(prop, Mapping):
            raise ValidationError(f"JSON schema property {name!r} must be an object")

    required = schema.get("required", [])
    if isinstance(required, str) or not isinstance(required, (list, tuple)):
        raise ValidationError("JSON schema 'required' must be a list of field names")
    missing = [name for name in required if name not in properties]
    if missing:
        raise ValidationError(
            f"JSON schema requires fields missing from 'properties': {', '.join(map(str, missing))}"
        )


def coerce_messages(messages: Iterable[MessageLike]) -> tuple[Message, ...]:
    if messages is None or isinstance(messages, (str, bytes, Mapping)):
        raise ValidationError("messages must be a sequence of messages")
    result = []
    for m in messages:
        result.append(m if isinstance(m, Message) else Message.from_dict(m))
    if not result:
        raise ValidationError("chat request needs at least one message")
    return tuple(result)


def _check_model(model: str) -> None:
    if not isinstance(model, str) or not model.strip():
        raise ValidationError("model name must be a non-empty string")


def _check_stream(stream: bool) -> None:
    if not isinstance(stream, bool):
        raise ValidationError(f"stream must be a bool, got {type(stream).__name__}")


def completion_request(
    model: str,
    prompt: str,
    options: OptionsLike = None,
    format: FormatLike = None,
    stream: bool = True,
    system: str | None = None,
    keep_alive: str | None = None,
) -> CompletionRequest:
    """Build a request for ``/api/generate``."""
    _check_model(model)
    _check_stream(stream)
    if not isinstance(prompt, str):
        raise ValidationError(f"prompt must be a string, got {type(prompt).__name__}")
    if system is not None and not isinstance(system, str):
        raise ValidationError("system prompt must be a string")
    return CompletionRequest(
        model=model,
        prompt=prompt,
        options=coerce_options(options),
        format=coerce_format(format),
        stream=stream,
        system=system,
        keep_alive=keep_alive,
    )


def chat_request(
    model: str,
    messages: Iterable[MessageLike],
    options: OptionsLike = None,
    format: FormatLike = None,
    stream: bool = True,
    keep_alive: str | None = None,
) -> ChatRequest:
    """Build a request for ``/api/chat``; message order is kept."""
    _check_model(model)
    _check_stream(stream)
    return ChatRequest(
        model=model,
        messages=coerce_messages(messages),
        options=coerce_options(options),
        format=coerce_format(format),
        stream=stream,
        keep_alive=keep_alive,
    )


def build_request(
    mode: Mode,
    model: str,
    *,
    prompt: str | None = None,
    messages: Iterable[MessageLike] | None = None,
    options: OptionsLike = None,
    format: FormatLike = None,
    stream: bool = True,
    **extra: Any,
) -> Request:
    """Build a request for either mode.

    Args:
        mode: Mode.COMPLETION needs ``prompt``; Mode.CHAT needs ``messages``.
        model: Name of the model to run.
        options: Options, or a flat mapping of option names to values.
        format: None, ``"json"``, RawJSON, JSONSchema, or a schema mapping.
        stream: Whether the server should stream chunks.
        **extra: ``system`` (completion only) and ``keep_alive``.

    Raises:
        ValidationError: If any part of the request is malformed.
    """
    if mode is Mode.COMPLETION:
        if messages is not None:
            raise ValidationError("completion request takes a prompt, not messages")
        return completion_request(model, prompt, options, format, stream, **extra)
    if mode is Mode.CHAT:
        if prompt is not None:
            raise ValidationError("chat request takes messages, not a prompt")
        if "system" in extra:
            raise ValidationError("chat request carries its system prompt as a message")
        return chat_request(model, messages, options, format, stream, **extra)
    raise ValidationError(f"unknown request mode {mode!r}")
