"""Worker loop executed inside each forked pool process."""

from __future__ import annotations

import contextlib
import io
import os
import time
from typing import TYPE_CHECKING

from .enum import Topic, WorkerState
from .exception import ChannelError, TaskNotFoundError
from .integration import WorkerStat
from .log import get_logger
from .transport import Assignment, ErrorInfo, Message, TaskResult, to_portable

if TYPE_CHECKING:
    from .fork import Fork
    from .registry import TaskRegistry

__all__ = ("Worker", "run_worker")

logger = get_logger(__name__)


class Worker:
    """Pull-based worker processing tasks sent over its fork's channel.

    The worker announces itself with ``ready_for_task``, runs every
    ``new_task`` it receives against its frozen copy of the registry and
    answers each with a ``thread_result`` followed by a fresh
    ``ready_for_task``. ``shutdown`` ends the loop, but only after every task
    received in the same batch has been processed.
    """

    def __init__(
        self,
        fork: Fork,
        registry: TaskRegistry,
        poll_interval: float = 0.1,
    ) -> None:
        """Initialize worker.

        Args:
            fork: Child-side fork handle owning the channel
            registry: Locked task registry copy
            poll_interval: Seconds to wait for messages per cycle
        """
        self._fork = fork
        self._channel = fork.channel
        self._registry = registry
        self._poll_interval = poll_interval

        self._state = WorkerState.IDLE
        self._start_time: float | None = None
        self._processed_count = 0
        self._failed_count = 0

    @property
    def state(self) -> WorkerState:
        """Get current worker state."""
        return self._state

    @property
    def stats(self) -> WorkerStat:
        """Get worker statistics."""
        return WorkerStat(
            state=self._state,
            processed=self._processed_count,
            failed=self._failed_count,
            uptime=time.monotonic() - self._start_time if self._start_time else 0.0,
            pid=os.getpid(),
        )

    def run(self) -> WorkerStat:
        """Run the loop until ``shutdown`` arrives or the parent goes away."""
        self._start_time = time.monotonic()
        self._announce_ready()

        while True:
            self._state = WorkerState.AWAITING
            messages = self._channel.receive()

            if not messages:
                if self._channel.eof:
                    logger.warning("Parent closed the channel, worker leaving", fork_id=self._fork.id)
                    break

                self._channel.wait_readable(self._poll_interval)
                continue

            shutdown = False
            for message in messages:
                match message.topic:
                    case Topic.NEW_TASK:
                        self._handle_task(message)
                    case Topic.SHUTDOWN:
                        shutdown = True
                    case _:
                        logger.debug("Worker ignored message", topic=message.topic, fork_id=self._fork.id)

            if shutdown:
                break

        self._state = WorkerState.SHUTTING_DOWN

        logger.debug(
            "Worker stopped",
            fork_id=self._fork.id,
            processed=self._processed_count,
            failed=self._failed_count,
        )

        return self.stats

    def execute_task(self, task_id: str) -> TaskResult:
        """Execute one task, capturing its stdout and any error.

        Errors are recorded in the result, never raised.
        """
        task = self._registry.get(task_id)

        if task is None:
            self._failed_count += 1
            return TaskResult(error=ErrorInfo.from_exception(TaskNotFoundError(f"Task {task_id} not found")))

        buffer = io.StringIO()
        result = None
        error = None

        with contextlib.redirect_stdout(buffer):
            try:
                result = to_portable(task())
            except Exception as e:  # noqa: BLE001
                result = None
                error = ErrorInfo.from_exception(e)

        if error is None:
            self._processed_count += 1
        else:
            self._failed_count += 1
            logger.debug("Task raised", task_id=task_id, error=str(error))

        return TaskResult(
            result=result,
            output=buffer.getvalue(),
            error=error,
            critical=task.critical,
        )

    def _handle_task(self, message: Message) -> None:
        if not isinstance(message.payload, Assignment):
            raise ChannelError(f"new_task message {message.id} carries no task assignment")

        task_id = message.payload.task_id

        self._state = WorkerState.PROCESSING
        result = self.execute_task(task_id)

        self._channel.send(
            Message(
                topic=Topic.THREAD_RESULT,
                payload=result,
                fork_id=self._fork.id,
                reply_to=task_id,
            )
        )
        self._announce_ready()

    def _announce_ready(self) -> None:
        self._state = WorkerState.IDLE
        self._channel.send(Message(topic=Topic.READY_FOR_TASK, fork_id=self._fork.id))


def run_worker(fork: Fork, registry: TaskRegistry, poll_interval: float = 0.1) -> WorkerStat:
    """Fork target running a `Worker` loop."""
    return Worker(fork, registry, poll_interval).run()
