"""Closed set of payloads a message may carry.

Every payload is a tagged msgspec Struct, so decoding a frame can only ever
build one of the types below or plain builtin values inside them. Arbitrary
objects never cross the channel.
"""

from __future__ import annotations

import traceback
from typing import Any

import msgspec
from msgspec import Struct

from ..exception import CriticalTaskError

__all__ = (
    "Assignment",
    "ErrorInfo",
    "Output",
    "Payload",
    "TaskResult",
    "Value",
    "to_portable",
)

_encoder = msgspec.msgpack.Encoder()


class Value(Struct, frozen=True, tag_field="kind", tag="value"):
    """Any builtin value, e.g. the return value of a fork target."""

    value: Any = None


class Output(Struct, frozen=True, tag_field="kind", tag="output"):
    """Captured standard output."""

    text: str = ""


class ErrorInfo(Struct, frozen=True, tag_field="kind", tag="error"):
    """Description of an exception raised in another process."""

    type: str
    message: str = ""
    module: str = ""
    traceback: str = ""

    @classmethod
    def from_exception(cls, exc: BaseException) -> ErrorInfo:
        """Describe ``exc`` including its formatted traceback."""

        exc_type = type(exc)
        return cls(
            type=exc_type.__qualname__,
            message=str(exc),
            module=exc_type.__module__,
            traceback="".join(traceback.format_exception(exc)),
        )

    def __str__(self) -> str:
        return f"{self.type}: {self.message}" if self.message else self.type


class Assignment(Struct, frozen=True, tag_field="kind", tag="assignment"):
    """A task handed to a worker."""

    task_id: str


class TaskResult(Struct, frozen=True, tag_field="kind", tag="task_result"):
    """Container for task execution result.

    Attributes:
        result: Return value of the task, ``None`` when it raised.
        output: Text the task wrote to stdout.
        error: The captured error, if any.
        critical: Criticality of the task that produced this result.
    """

    result: Any = None
    output: str = ""
    error: ErrorInfo | None = None
    critical: bool = False

    def has_error(self) -> bool:
        """Check if the task raised."""
        return self.error is not None

    def is_success(self) -> bool:
        """Check if the task completed without error."""
        return self.error is None

    def is_critical_error(self) -> bool:
        """Check if the task was critical and raised."""
        return self.critical and self.error is not None

    def raise_if_critical(self) -> None:
        """Raise `CriticalTaskError` if the task was critical and raised."""

        if self.error is not None and self.critical:
            raise CriticalTaskError(self.error, f"Critical task failed: {self.error}")


Payload = Value | Output | ErrorInfo | Assignment | TaskResult


def to_portable(value: Any) -> Any:
    """Return ``value`` unchanged if a channel can carry it.

    Accepted values do not always come back as the same type. The receiver
    gets tuples, sets and frozensets as lists, UUIDs and decimals as strings,
    enum members as their value, and dataclasses or Structs as dicts.

    Raises:
        TypeError: The value (or something inside it) has no msgpack form.
    """

    try:
        _encoder.encode(value)
    except (TypeError, ValueError, OverflowError, msgspec.MsgspecError) as exc:
        raise TypeError(f"Value of type {type(value).__name__} cannot be sent over a channel: {exc}") from exc

    return value
