"""Tests for the fork-based worker pool."""

from __future__ import annotations

import os
import signal

import pytest

from quickfork.config import ForkConfig
from quickfork.enum import Topic
from quickfork.exception import (
    CriticalTaskError,
    ParallelRunError,
    TaskValidationError,
    WorkerPoolError,
)
from quickfork.fork import Fork
from quickfork.pool import Quickfork
from quickfork.task import Task


def _square(n: int) -> int:
    return n * n


def _fail(message: str) -> None:
    raise ValueError(message)


def _kill_own_worker() -> None:
    os.kill(os.getpid(), signal.SIGKILL)


class TestQuickforkRun:
    """Test successful runs."""

    def test_runs_every_task(self, pool: Quickfork) -> None:
        """Test every task gets a result in submission order."""
        tasks = [Task(_square, args=(n,)) for n in range(5)]

        results = pool.submit(tasks, max_concurrent=2)

        assert list(results) == [task.id for task in tasks]
        assert [r.result for r in results.values()] == [0, 1, 4, 9, 16]
        assert all(r.is_success() for r in results.values())

    def test_closures_run_without_pickling(self, pool: Quickfork) -> None:
        """Test closures over local state run in the workers."""
        offset = 100
        tasks = [Task(lambda n=n: n + offset) for n in range(3)]

        results = pool.submit(tasks)

        assert [r.result for r in results.values()] == [100, 101, 102]

    def test_kwargs_are_passed(self, pool: Quickfork) -> None:
        """Test keyword arguments reach the callable."""
        task = Task(int, args=("ff",), kwargs={"base": 16})

        results = pool.submit([task])

        assert results[task.id].result == 255

    def test_output_is_captured(self, pool: Quickfork) -> None:
        """Test stdout of each task is captured separately."""
        tasks = [Task(print, args=(f"line {n}",)) for n in range(3)]

        results = pool.submit(tasks)

        assert [r.output for r in results.values()] == ["line 0\n", "line 1\n", "line 2\n"]
        assert all(r.result is None for r in results.values())

    def test_empty_task_list(self, pool: Quickfork) -> None:
        """Test an empty run returns nothing and forks nothing."""
        assert pool.submit([]) == {}
        assert pool.stats.workers == 0

    def test_worker_count_is_clamped(self, pool: Quickfork) -> None:
        """Test the worker count never exceeds the task count or drops below one."""
        pool.submit([Task(_square, args=(2,))], max_concurrent=8)
        assert pool.stats.workers == 1

        pool.submit([Task(_square, args=(2,)), Task(_square, args=(3,))], max_concurrent=0)
        assert pool.stats.workers == 1

    def test_default_worker_count_from_config(self, pool: Quickfork) -> None:
        """Test max_concurrent falls back to the pool configuration."""
        pool.submit([Task(_square, args=(n,)) for n in range(6)])

        assert pool.stats.workers == 2

    def test_worker_stats_are_collected(self, pool: Quickfork) -> None:
        """Test every worker reports its statistics on exit."""
        pool.submit([Task(_square, args=(n,)) for n in range(6)], max_concurrent=3)

        stats = pool.stats
        assert stats.dispatched == 6
        assert stats.lost_workers == 0
        assert len(stats.worker_stats) == 3
        assert sum(s.processed for s in stats.worker_stats) == 6
        assert all(s.pid != os.getpid() for s in stats.worker_stats)

    def test_pool_is_reusable(self, pool: Quickfork) -> None:
        """Test the registry is reset so a pool can run again."""
        first = pool.submit([Task(_square, args=(2,))])
        second = pool.submit([Task(_square, args=(3,))])

        assert [r.result for r in first.values()] == [4]
        assert [r.result for r in second.values()] == [9]
        assert len(pool.registry) == 0
        assert pool.registry.locked is False


class TestQuickforkTaskErrors:
    """Test task-level failures."""

    def test_non_critical_error_is_returned(self, pool: Quickfork) -> None:
        """Test a failing task does not fail the run."""
        failing = Task(_fail, args=("boom",))
        tasks = [Task(_square, args=(3,)), failing, Task(_square, args=(4,))]

        results = pool.submit(tasks)

        outcome = results[failing.id]
        assert outcome.has_error()
        assert outcome.result is None
        assert outcome.error is not None
        assert outcome.error.type == "ValueError"
        assert outcome.error.message == "boom"
        assert "Traceback" in outcome.error.traceback
        assert [r.result for r in results.values() if r.is_success()] == [9, 16]

    def test_unportable_result_becomes_error(self, pool: Quickfork) -> None:
        """Test a result msgpack cannot carry is reported as an error."""
        task = Task(object)

        results = pool.submit([task])

        assert results[task.id].error is not None
        assert results[task.id].error.type == "TypeError"

    def test_critical_error_aborts_run(self, pool: Quickfork) -> None:
        """Test a failing critical task raises with the remote error attached."""
        tasks = [Task(_square, args=(2,)), Task(_fail, args=("fatal",), critical=True)]

        with pytest.raises(ParallelRunError) as exc_info:
            pool.submit(tasks)

        cause = exc_info.value.__cause__
        assert isinstance(cause, CriticalTaskError)
        assert cause.error.type == "ValueError"
        assert cause.error.message == "fatal"

    def test_registry_reset_after_failure(self, pool: Quickfork) -> None:
        """Test the registry is unlocked and empty after an aborted run."""
        with pytest.raises(ParallelRunError):
            pool.submit([Task(_fail, args=("fatal",), critical=True)])

        assert len(pool.registry) == 0
        assert pool.registry.locked is False

    def test_invalid_task_list(self, pool: Quickfork) -> None:
        """Test non-task items are rejected before forking."""
        with pytest.raises(ParallelRunError) as exc_info:
            pool.submit([Task(_square, args=(1,)), "not a task"])  # type: ignore[list-item]

        assert isinstance(exc_info.value.__cause__, TaskValidationError)
        assert pool.stats.workers == 0

    def test_duplicate_task_rejected(self, pool: Quickfork) -> None:
        """Test the same task cannot be submitted twice in one run."""
        task = Task(_square, args=(1,))

        with pytest.raises(ParallelRunError) as exc_info:
            pool.submit([task, task])

        assert isinstance(exc_info.value.__cause__, TaskValidationError)


class TestQuickforkWorkerLoss:
    """Test process-level failures."""

    def test_survivors_finish_the_run(self, pool: Quickfork) -> None:
        """Test a worker dying mid-run only loses its own task."""
        killer = Task(_kill_own_worker)
        tasks = [Task(_square, args=(n,)) for n in range(3)] + [killer] + [Task(_square, args=(n,)) for n in range(3, 6)]

        results = pool.submit(tasks, max_concurrent=2)

        assert list(results) == [task.id for task in tasks]
        assert results[killer.id].error is not None
        assert results[killer.id].error.type == "WorkerLostError"
        assert [r.result for r in results.values() if r.is_success()] == [0, 1, 4, 9, 16, 25]
        assert pool.stats.lost_workers == 1

    def test_lost_critical_task_aborts_run(self, pool: Quickfork) -> None:
        """Test a critical task lost with its worker fails the run."""
        tasks = [Task(_kill_own_worker, critical=True), Task(_square, args=(2,))]

        with pytest.raises(ParallelRunError) as exc_info:
            pool.submit(tasks, max_concurrent=2)

        cause = exc_info.value.__cause__
        assert isinstance(cause, CriticalTaskError)
        assert cause.error.type == "WorkerLostError"

    def test_all_workers_lost(self, pool: Quickfork) -> None:
        """Test the run aborts when no worker is left for queued tasks."""
        tasks = [Task(_kill_own_worker) for _ in range(4)]

        with pytest.raises(ParallelRunError) as exc_info:
            pool.submit(tasks, max_concurrent=2)

        assert isinstance(exc_info.value.__cause__, WorkerPoolError)
        assert len(pool.registry) == 0


class TestQuickforkRunFork:
    """Test spawning single forks through the pool."""

    def test_run_fork_shares_registry(self, pool: Quickfork, fork_config: ForkConfig) -> None:
        """Test the fork sees its copy of the pool registry locked."""
        fork = pool.run_fork(Fork(lambda fork, registry: registry.locked, args=(pool.registry,), config=fork_config))

        assert fork.wait_for_completion(timeout=5) == 0
        assert fork.channel.receive(topic=Topic.FORK_RESULT)[0].payload.value is True
        assert pool.registry.locked is False
