"""Fork-based worker pool running tasks in parallel."""

from __future__ import annotations

import selectors
import time
from collections import deque
from typing import TYPE_CHECKING

from .config import QuickforkConfig
from .enum import Topic
from .exception import (
    MessageDecodeError,
    ParallelRunError,
    TaskValidationError,
    WorkerPoolError,
)
from .fork import Fork
from .integration import PoolStat, WorkerStat
from .log import get_logger
from .registry import TaskRegistry
from .task import Task
from .transport import Assignment, ErrorInfo, Message, TaskResult, Value
from .worker import run_worker

if TYPE_CHECKING:
    from collections.abc import Iterable

__all__ = ("Quickfork",)

logger = get_logger(__name__)


class Quickfork:
    """Run tasks across a fixed number of forked worker processes.

    Tasks are registered and the registry is locked before any worker is
    forked, so every worker inherits the full, frozen task table and only
    task ids travel over the channels. Workers pull work: each one asks for a
    task with ``ready_for_task`` and gets one ``new_task`` in return.

    A task that raises does not fail the run, its `TaskResult` carries the
    error. A critical task that raises, a worker that cannot be shut down, or
    losing every worker with tasks still queued aborts the run with
    `ParallelRunError`.

    Example:
        >>> pool = Quickfork()
        >>> results = pool.submit([Task(pow, args=(2, n)) for n in range(4)], max_concurrent=2)
        >>> [r.result for r in results.values()]
        [1, 2, 4, 8]
    """

    def __init__(
        self,
        config: QuickforkConfig | None = None,
        registry: TaskRegistry | None = None,
    ) -> None:
        """Initialize pool.

        Args:
            config: Application configuration, `QuickforkConfig.get_config` by default
            registry: Task registry shared with the workers
        """
        self._config = config or QuickforkConfig.get_config()
        self._registry = registry or TaskRegistry()
        self._stats = PoolStat()

    @property
    def registry(self) -> TaskRegistry:
        return self._registry

    @property
    def stats(self) -> PoolStat:
        """Statistics of the last run."""
        return self._stats

    def submit(self, tasks: Iterable[Task], max_concurrent: int | None = None) -> dict[str, TaskResult]:
        """Alias of `run_tasks_in_workers`."""
        return self.run_tasks_in_workers(tasks, max_concurrent)

    def run_tasks_in_workers(
        self,
        tasks: Iterable[Task],
        max_concurrent: int | None = None,
    ) -> dict[str, TaskResult]:
        """Run tasks in forked workers and collect one result per task.

        Args:
            tasks: Tasks to run
            max_concurrent: Number of workers, clamped to ``[1, len(tasks)]``.
                Defaults to ``PoolConfig.max_concurrent``.

        Returns:
            Task id to result, in submission order

        Raises:
            ParallelRunError: The run was aborted, the cause is chained
        """
        tasks = list(tasks)

        try:
            self._validate(tasks)
        except TaskValidationError as e:
            raise ParallelRunError(f"Invalid task list: {e}") from e

        if not tasks:
            return {}

        workers = self._worker_count(max_concurrent, len(tasks))
        self._stats = PoolStat(workers=workers, tasks=len(tasks))
        forks: list[Fork] = []
        start_time = time.monotonic()

        logger.info(
            "Parallel run started",
            tasks=len(tasks),
            workers=workers,
            **self._config.pool.to_dict(exclude={"max_concurrent"}),
        )

        try:
            self._registry.add_many(tasks)
            self._registry.lock()

            self._spawn_workers(workers, forks)
            results = self._collect(tasks, forks)
        except Exception as e:
            logger.error("Parallel run aborted", error=str(e), error_type=type(e).__name__)
            self._abort(forks)
            raise ParallelRunError(f"Parallel run failed: {e}") from e
        except BaseException:
            self._abort(forks)
            raise
        finally:
            self._registry.unlock()
            self._registry.reset()

        logger.info(
            "Parallel run finished",
            tasks=len(tasks),
            failed=sum(1 for r in results.values() if r.has_error()),
            lost_workers=self._stats.lost_workers,
            elapsed=round(time.monotonic() - start_time, 3),
        )

        return results

    def run_fork(self, fork: Fork) -> Fork:
        """Spawn a single fork sharing this pool's registry."""
        return fork.spawn(self._registry)

    def _validate(self, tasks: list[Task]) -> None:
        seen: set[str] = set()

        for task in tasks:
            if not isinstance(task, Task):
                raise TaskValidationError(f"Expected Task, got {type(task).__name__}")

            if task.id in seen:
                raise TaskValidationError(f"Duplicate task id {task.id}")

            seen.add(task.id)

    def _worker_count(self, max_concurrent: int | None, task_count: int) -> int:
        if max_concurrent is None:
            max_concurrent = self._config.pool.max_concurrent

        return max(1, min(max_concurrent, task_count))

    def _spawn_workers(self, count: int, forks: list[Fork]) -> None:
        """Fork ``count`` workers, appending each to ``forks`` as soon as it runs."""
        for _ in range(count):
            fork = Fork(
                run_worker,
                args=(self._registry, self._config.pool.poll_interval),
                config=self._config.fork,
                channel_config=self._config.channel,
            )
            forks.append(fork.spawn(self._registry))

            logger.debug("Worker spawned", fork_id=fork.id, pid=fork.child_pid)

    def _collect(self, tasks: list[Task], forks: list[Fork]) -> dict[str, TaskResult]:
        results: dict[str, TaskResult] = {}
        handed_off: dict[str, str] = {}

        active = self._dispatch(tasks, forks, results, handed_off)

        for fork in active:
            if not fork.channel.send(Message(topic=Topic.SHUTDOWN, fork_id=fork.id)):
                logger.warning("Worker gone before shutdown", fork_id=fork.id)

        for fork in forks:
            try:
                fork.wait_for_completion(self._config.pool.worker_timeout)
            except MessageDecodeError as e:
                logger.warning("Worker left a truncated frame", fork_id=fork.id, error=str(e))

            self._drain(fork, results)

        outcomes: dict[str, TaskResult] = {}
        for task in tasks:
            outcome = results.get(task.id)

            if outcome is None:
                logger.warning("Task result lost with its worker", task_id=task.id, fork_id=handed_off.get(task.id))
                outcome = TaskResult(
                    error=ErrorInfo(
                        type="WorkerLostError",
                        message=f"Worker {handed_off.get(task.id)} exited before reporting task {task.id}",
                        module=__name__,
                    ),
                    critical=task.critical,
                )

            outcomes[task.id] = outcome

        for outcome in outcomes.values():
            outcome.raise_if_critical()

        return outcomes

    def _dispatch(
        self,
        tasks: list[Task],
        forks: list[Fork],
        results: dict[str, TaskResult],
        handed_off: dict[str, str],
    ) -> list[Fork]:
        """Hand every task to a ready worker.

        Returns:
            Workers still active once the queue is empty
        """
        queue = deque(task.id for task in tasks)
        active = {fork.id: fork for fork in forks}

        with selectors.DefaultSelector() as selector:
            for fork in forks:
                selector.register(fork.channel, selectors.EVENT_READ, fork)

            while queue:
                if not active:
                    raise WorkerPoolError(f"All workers were lost with {len(queue)} tasks still queued")

                selector.select(self._config.pool.poll_interval)

                for fork in list(active.values()):
                    if self._serve(fork, queue, results, handed_off):
                        continue

                    selector.unregister(fork.channel)
                    del active[fork.id]
                    self._stats.lost_workers += 1

                    logger.warning("Worker retired", fork_id=fork.id, queued=len(queue))

        return list(active.values())

    def _serve(
        self,
        fork: Fork,
        queue: deque[str],
        results: dict[str, TaskResult],
        handed_off: dict[str, str],
    ) -> bool:
        """Handle one worker's pending messages.

        Returns:
            False if the worker must be retired
        """
        channel = fork.channel

        try:
            messages = channel.receive()
        except MessageDecodeError:
            if fork.is_running():
                raise

            logger.warning("Worker died mid-frame", fork_id=fork.id, exit_code=fork.exit_code)
            return False

        for message in messages:
            match message.topic:
                case Topic.READY_FOR_TASK:
                    if not queue:
                        continue

                    task_id = queue.popleft()
                    assignment = Message(topic=Topic.NEW_TASK, payload=Assignment(task_id=task_id), fork_id=fork.id)

                    if not channel.send(assignment):
                        queue.appendleft(task_id)
                        return False

                    handed_off[task_id] = fork.id
                    self._stats.dispatched += 1
                case Topic.THREAD_RESULT:
                    self._record(message, results)
                case Topic.FORK_ERROR:
                    logger.error("Worker failed", fork_id=fork.id, error=str(message.payload))
                    return False
                case _:
                    logger.debug("Pool ignored message", topic=message.topic, fork_id=fork.id)

        return not channel.eof and fork.is_running()

    def _drain(self, fork: Fork, results: dict[str, TaskResult]) -> None:
        """Collect whatever a finished worker left in its channel."""
        channel = fork.channel

        for message in channel.receive(wait=True, topic=Topic.THREAD_RESULT):
            self._record(message, results)

        for message in channel.receive(topic=Topic.FORK_ERROR):
            logger.error("Worker failed", fork_id=fork.id, error=str(message.payload))

        for message in channel.receive(topic=Topic.FORK_RESULT):
            if not isinstance(message.payload, Value):
                continue

            if stat := WorkerStat.from_value(message.payload.value):
                self._stats.worker_stats.append(stat)
                logger.debug(
                    "Worker finished",
                    fork_id=fork.id,
                    pid=stat.pid,
                    processed=stat.processed,
                    failed=stat.failed,
                    uptime=round(stat.uptime, 3),
                )

    @staticmethod
    def _record(message: Message, results: dict[str, TaskResult]) -> None:
        if not isinstance(message.payload, TaskResult) or message.reply_to is None:
            logger.warning("Malformed task result", message_id=message.id, fork_id=message.fork_id)
            return

        results.setdefault(message.reply_to, message.payload)

    def _abort(self, forks: list[Fork]) -> None:
        """Kill every worker of a failed run."""
        for fork in forks:
            if fork.is_running():
                logger.warning("Killing worker", fork_id=fork.id, pid=fork.child_pid)

            try:
                fork.kill()
            except MessageDecodeError as e:
                logger.warning("Worker left a truncated frame", fork_id=fork.id, error=str(e))
