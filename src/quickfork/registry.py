"""Task table shared with forked workers."""

from __future__ import annotations

import os
from collections.abc import Iterable, Iterator

from .exception import RegistryLockedError, TaskValidationError
from .log import get_logger
from .task import Task

__all__ = ("TaskRegistry",)

logger = get_logger(__name__)


class TaskRegistry:
    """Write-once-then-frozen mapping of task id to `Task`.

    The parent fills the registry and locks it before forking any worker.
    Each worker then reads its own copy-on-write copy, which stays locked for
    the lifetime of the child, so no lock is needed inside workers.

    Only the process that created the registry may unlock it again.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}
        self._locked = False
        self._owner_pid = os.getpid()

    @property
    def locked(self) -> bool:
        """Whether mutations are rejected."""
        return self._locked

    def add(self, task: Task) -> None:
        """Register one task.

        Raises:
            RegistryLockedError: The registry is locked
            TaskValidationError: ``task`` is not a `Task`
        """
        if self._locked:
            raise RegistryLockedError("Cannot add task to locked registry")

        if not isinstance(task, Task):
            raise TaskValidationError(f"Registry only accepts Task instances, got {type(task).__name__}")

        self._tasks[task.id] = task

    def add_many(self, tasks: Iterable[Task]) -> None:
        """Register several tasks."""
        if self._locked:
            raise RegistryLockedError("Cannot add tasks to locked registry")

        for task in tasks:
            self.add(task)

    def get(self, task_id: str) -> Task | None:
        """Look a task up by id."""
        return self._tasks.get(task_id)

    def reset(self) -> None:
        """Drop every task.

        Raises:
            RegistryLockedError: The registry is locked
        """
        if self._locked:
            raise RegistryLockedError("Cannot reset a locked registry")

        if self._tasks:
            logger.debug("Task registry reset", tasks=len(self._tasks))

        self._tasks.clear()

    def lock(self) -> None:
        """Reject any further mutation."""
        if not self._locked:
            logger.debug("Task registry locked", tasks=len(self._tasks), pid=os.getpid())

        self._locked = True

    def unlock(self) -> None:
        """Allow mutations again, in the owning process only.

        Raises:
            RegistryLockedError: Called from a forked child
        """
        if os.getpid() != self._owner_pid:
            raise RegistryLockedError("A forked child cannot unlock the task registry")

        self._locked = False

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __iter__(self) -> Iterator[Task]:
        return iter(self._tasks.values())

    def __len__(self) -> int:
        return len(self._tasks)
