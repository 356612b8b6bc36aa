"""Lifecycle bookkeeping shared by the sync and async dispatchers."""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

from .errors import Cancelled, Interrupted, OllamaClientError, TimedOut
from .types import Control, FinalResult, Message, Mode, Request, ResponseChunk, Role

logger = logging.getLogger(__name__)

# Transport timers may fire a little before the monotonic clock reaches the deadline.
_DEADLINE_SLACK = 0.05

Handler = Callable[[ResponseChunk], Control | None]
AsyncHandler = Callable[[ResponseChunk], Awaitable[Control | None]]


class CancelSignal(Protocol):
    """Anything with ``is_set()``, e.g. threading.Event or asyncio.Event."""

    def is_set(self) -> bool: ...


class CallState(Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    AWAITING_FULL_BODY = "awaiting_full_body"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def finished(self) -> bool:
        return self in _FINISHED


_FINISHED = frozenset(
    {CallState.COMPLETED, CallState.FAILED, CallState.CANCELLED, CallState.TIMED_OUT}
)


class Call:
    """State of one request/response exchange.

    Tracks the state machine, accumulates delivered chunks into the final
    result and evaluates the caller's cancel signal and deadline.
    """

    def __init__(
        self,
        request: Request,
        cancel: CancelSignal | None = None,
        timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.request = request
        self.state = CallState.IDLE
        self.result: FinalResult | None = None
        self.error: BaseException | None = None
        self._cancel = cancel
        self._clock = clock
        self._deadline = None if timeout is None else clock() + timeout
        self._parts: list[str] = []
        self._role: Role | None = None
        self._chunks = 0
        self._metadata: dict[str, Any] = {}
        self._done = False

    def transition(self, state: CallState) -> None:
        if self.state.finished:
            return
        logger.debug("%s %s -> %s", self.request.path, self.state.value, state.value)
        self.state = state

    def accept(self, chunk: ResponseChunk) -> None:
        """Record a chunk that is about to be handed to the caller."""
        self._chunks += 1
        self._parts.append(chunk.content)
        if chunk.message is not None and self._role is None:
            self._role = chunk.message.role
        if chunk.done:
            self._done = True
            self._metadata = dict(chunk.metadata)

    def partial(self) -> FinalResult:
        content = "".join(self._parts)
        message = None
        if self.request.mode is Mode.CHAT:
            message = Message(role=self._role or Role.ASSISTANT, content=content)
        return FinalResult(
            content=content,
            message=message,
            chunks=self._chunks,
            metadata=dict(self._metadata),
        )

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None without one."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    def expired(self) -> bool:
        return self._deadline is not None and self._clock() >= self._deadline - _DEADLINE_SLACK

    def check_interrupt(self) -> None:
        """Raise Cancelled or TimedOut if the caller's signal has tripped."""
        if self._cancel is not None and self._cancel.is_set():
            raise self.interrupt(CallState.CANCELLED, "cancel signal set")
        if self._deadline is not None and self._clock() >= self._deadline:
            raise self.interrupt(CallState.TIMED_OUT, "deadline expired")

    def interrupt(self, state: CallState, reason: str) -> Interrupted:
        self.transition(state)
        partial = self.partial()
        logger.debug("%s interrupted (%s) after %d chunk(s)", self.request.path, reason, partial.chunks)
        cls = TimedOut if state is CallState.TIMED_OUT else Cancelled
        self.error = cls(f"{reason} after {partial.chunks} chunk(s)", partial=partial)
        return self.error

    def complete(self) -> FinalResult | None:
        if self.state.finished:
            return self.result
        self.transition(CallState.COMPLETED)
        self.result = self.partial()
        logger.debug("%s completed with %d chunk(s)", self.request.path, self.result.chunks)
        return self.result

    def settle(self) -> None:
        """Finish a call whose consumer let go of it.

        A call whose final chunk was delivered completes; anything earlier
        is cancelled.
        """
        if self._done:
            self.complete()
        else:
            self.transition(CallState.CANCELLED)

    def fail(self, error: BaseException) -> None:
        if self.state.finished:
            return
        self.transition(CallState.FAILED)
        self.error = error
        if isinstance(error, OllamaClientError):
            logger.warning("%s failed: %s", self.request.path, error)


def wants_stop(control: Control | None) -> bool:
    return control is Control.STOP
