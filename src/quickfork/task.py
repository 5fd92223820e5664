"""Unit of work submitted to the pool."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from .exception import TaskValidationError

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

__all__ = ("Task",)


def _task_id() -> str:
    return f"task_{uuid4().hex}"


@dataclass(frozen=True, slots=True, eq=False)
class Task:
    """One unit of work.

    Tasks are immutable. The callable runs in a worker process as
    ``func(*args, **kwargs)``; since workers are forked, closures and lambdas
    work without any pickling.

    Example:
        >>> task = Task(pow, args=(2, 10))
        >>> task()
        1024
    """

    func: Callable[..., Any]
    args: tuple[Any, ...] = ()
    kwargs: Mapping[str, Any] = field(default_factory=dict)
    critical: bool = False
    id: str = field(default_factory=_task_id)

    def __post_init__(self) -> None:
        if not callable(self.func):
            raise TaskValidationError(f"Task callable is not callable: {self.func!r}")

        object.__setattr__(self, "args", tuple(self.args))
        object.__setattr__(self, "kwargs", MappingProxyType(dict(self.kwargs)))

    @property
    def name(self) -> str:
        """Qualified name of the callable."""
        module = getattr(self.func, "__module__", None)
        qualname = getattr(self.func, "__qualname__", type(self.func).__qualname__)
        return f"{module}.{qualname}" if module else qualname

    def __call__(self) -> Any:
        return self.func(*self.args, **self.kwargs)
