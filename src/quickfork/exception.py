"""Exception hierarchy for the fork pool."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .transport.payload import ErrorInfo

__all__ = (
    "BackoffExhaustedError",
    "ChannelError",
    "CriticalTaskError",
    "ForkError",
    "ForkLifecycleError",
    "ForkStateError",
    "ForkTimeoutError",
    "MessageDecodeError",
    "ParallelRunError",
    "QuickforkError",
    "RegistryLockedError",
    "TaskFailedError",
    "TaskNotFoundError",
    "TaskValidationError",
    "WorkerPoolError",
)


class QuickforkError(Exception):
    """Base exception for all fork pool errors."""


class TaskValidationError(QuickforkError):
    """Raised when a task or a task list is invalid."""


class TaskNotFoundError(QuickforkError):
    """Raised when a worker receives an unknown task id."""


class RegistryLockedError(QuickforkError):
    """Raised when a locked task registry is mutated."""


class ForkError(QuickforkError):
    """Base exception for process lifecycle errors."""


class ForkLifecycleError(ForkError):
    """Raised when the socket pair or the fork itself cannot be created."""


class ForkTimeoutError(ForkError):
    """Raised when a child does not exit in time and had to be killed."""


class ForkStateError(ForkError, RuntimeError):
    """Raised when a fork handle is used against its contract."""


class ChannelError(QuickforkError):
    """Base exception for channel errors."""


class MessageDecodeError(ChannelError):
    """Raised when a frame cannot be decoded into a message."""


class TaskFailedError(QuickforkError):
    """Raised for an error that happened in another process.

    The original exception does not cross the process boundary, only its
    `ErrorInfo` description does.
    """

    def __init__(self, error: ErrorInfo, message: str | None = None) -> None:
        self.error = error
        super().__init__(message or f"{error.type}: {error.message}")


class CriticalTaskError(TaskFailedError):
    """Raised when a task marked critical failed."""


class WorkerPoolError(QuickforkError):
    """Raised when the pool has no workers left."""


class BackoffExhaustedError(QuickforkError):
    """Raised when the maximum number of backoff attempts is reached."""


class ParallelRunError(QuickforkError):
    """Raised by `Quickfork.submit` for any failure during a run."""
