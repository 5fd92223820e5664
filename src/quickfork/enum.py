"""Enumeration types for the fork pool."""

from enum import StrEnum, auto

__all__ = (
    "ForkRole",
    "Topic",
    "WorkerState",
)


class Topic(StrEnum):
    """Message topics exchanged over a channel."""

    FORK_START = auto()
    """Child began executing its target"""

    FORK_ERROR = auto()
    """Child target raised"""

    FORK_OUTPUT = auto()
    """Text the child target wrote to stdout"""

    FORK_RESULT = auto()
    """Return value of the child target"""

    FORK_COMPLETE = auto()
    """End marker, always the last lifecycle message"""

    READY_FOR_TASK = auto()
    """Worker is idle and pulls the next task"""

    NEW_TASK = auto()
    """Parent hands a task id to a worker"""

    SHUTDOWN = auto()
    """Parent asks a worker to leave its loop"""

    THREAD_RESULT = auto()
    """Worker reports the outcome of one task"""


class ForkRole(StrEnum):
    """Side of the fork point a handle lives on."""

    PARENT = auto()
    CHILD = auto()


class WorkerState(StrEnum):
    """Worker loop state."""

    IDLE = auto()
    """Worker announced readiness"""

    AWAITING = auto()
    """Worker waiting for messages"""

    PROCESSING = auto()
    """Worker executing a task"""

    SHUTTING_DOWN = auto()
    """Worker leaving its loop"""
