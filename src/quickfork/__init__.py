"""Process-based parallel task execution on top of ``os.fork``.

Tasks are plain callables. They are registered before the workers are forked,
so closures and lambdas run in the workers without any pickling; only task ids
and results cross process boundaries.
"""

from ._version import __version__
from .backoff import ExponentialBackoff
from .config import QuickforkConfig
from .enum import Topic
from .exception import (
    CriticalTaskError,
    ParallelRunError,
    QuickforkError,
    TaskFailedError,
)
from .fork import Fork
from .log import configure_logging
from .pool import Quickfork
from .registry import TaskRegistry
from .task import Task
from .transport import Channel, ErrorInfo, Message, TaskResult

__all__ = (
    "Channel",
    "CriticalTaskError",
    "ErrorInfo",
    "ExponentialBackoff",
    "Fork",
    "Message",
    "ParallelRunError",
    "Quickfork",
    "QuickforkConfig",
    "QuickforkError",
    "Task",
    "TaskFailedError",
    "TaskRegistry",
    "TaskResult",
    "Topic",
    "__version__",
)
