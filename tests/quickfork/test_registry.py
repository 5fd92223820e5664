"""Tests for the task registry."""

from __future__ import annotations

import pytest

from quickfork.config import ForkConfig
from quickfork.enum import Topic
from quickfork.exception import RegistryLockedError, TaskValidationError
from quickfork.fork import Fork
from quickfork.registry import TaskRegistry
from quickfork.task import Task


@pytest.fixture
def registry() -> TaskRegistry:
    return TaskRegistry()


class TestTaskRegistry:
    """Test registry mutation and lookup."""

    def test_add_and_get(self, registry: TaskRegistry) -> None:
        task = Task(len)
        registry.add(task)

        assert registry.get(task.id) is task
        assert task.id in registry
        assert len(registry) == 1
        assert list(registry) == [task]

    def test_get_unknown(self, registry: TaskRegistry) -> None:
        assert registry.get("task_unknown") is None

    def test_add_many_and_reset(self, registry: TaskRegistry) -> None:
        registry.add_many([Task(len), Task(len)])
        assert len(registry) == 2

        registry.reset()
        assert len(registry) == 0

    def test_rejects_non_tasks(self, registry: TaskRegistry) -> None:
        with pytest.raises(TaskValidationError):
            registry.add(len)  # type: ignore[arg-type]


class TestTaskRegistryLock:
    """Test the write-once lock."""

    def test_locked_registry_rejects_mutation(self, registry: TaskRegistry) -> None:
        """Test add, add_many and reset fail once locked."""
        registry.add(Task(len))
        registry.lock()

        with pytest.raises(RegistryLockedError):
            registry.add(Task(len))
        with pytest.raises(RegistryLockedError):
            registry.add_many([Task(len)])
        with pytest.raises(RegistryLockedError):
            registry.reset()

        assert len(registry) == 1

    def test_lock_is_idempotent(self, registry: TaskRegistry) -> None:
        registry.lock()
        registry.lock()

        assert registry.locked

    def test_unlock(self, registry: TaskRegistry) -> None:
        registry.lock()
        registry.unlock()
        registry.add(Task(len))

        assert registry.locked is False
        assert len(registry) == 1

    def test_child_cannot_unlock(self, registry: TaskRegistry, fork_config: ForkConfig) -> None:
        """Test a forked child is refused when unlocking its copy."""
        fork = Fork(lambda fork, registry: registry.unlock(), args=(registry,), config=fork_config)
        fork.spawn(registry).wait_for_completion(timeout=5)

        (error,) = fork.channel.receive(topic=Topic.FORK_ERROR)
        assert error.payload.type == "RegistryLockedError"
