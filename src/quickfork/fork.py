"""Forked process handle and its lifecycle."""

from __future__ import annotations

import contextlib
import io
import os
import random
import signal
import sys
import time
from typing import TYPE_CHECKING, Any, ClassVar, Final, NoReturn, Self
from uuid import uuid4

import structlog

from .config import ChannelConfig, ForkConfig
from .enum import ForkRole, Topic
from .exception import (
    ForkLifecycleError,
    ForkStateError,
    ForkTimeoutError,
    MessageDecodeError,
    TaskValidationError,
)
from .log import get_logger
from .transport import Channel, ErrorInfo, Message, Output, Value, to_portable

if TYPE_CHECKING:
    from .base import AnyCallable
    from .registry import TaskRegistry

__all__ = ("ChildProcessState", "Fork")

logger = get_logger(__name__)

MIN_KILL_GRACE_MS: Final[int] = 200


def _flush_stdio() -> None:
    for stream in (sys.stdout, sys.stderr):
        with contextlib.suppress(ValueError, OSError, AttributeError):
            stream.flush()


class ChildProcessState:
    """Per-process state initialized once right after a fork.

    A forked child starts with a copy of the parent's random generator, so
    siblings would draw identical sequences. `initialize` reseeds it from the
    OS entropy pool, once per process id.
    """

    _initialized_pid: ClassVar[int | None] = None

    @classmethod
    def initialize(cls) -> bool:
        """Initialize the current process if not done yet.

        Returns:
            True if this call did the initialization
        """
        pid = os.getpid()
        if cls._initialized_pid == pid:
            return False

        random.seed()
        structlog.contextvars.clear_contextvars()
        cls._initialized_pid = pid

        return True


class Fork:
    """Handle for one forked child process and its channel.

    The handle is created before the fork. After `spawn` the parent keeps it
    to wait on, poll or kill the child; the child gets its own copy on which
    it runs `execute`. Role, child pid and started flag can each be set once.

    The target is called as ``target(fork, *args)`` inside the child so it can
    talk to the parent through ``fork.channel``.

    Example:
        >>> fork = Fork(lambda fork, x: x * 2, args=(21,)).spawn()
        >>> fork.wait_for_completion(timeout=5)
        0
        >>> fork.channel.receive(topic=Topic.FORK_RESULT)[0].payload.value
        42
    """

    def __init__(
        self,
        target: AnyCallable,
        args: tuple[Any, ...] = (),
        config: ForkConfig | None = None,
        channel_config: ChannelConfig | None = None,
    ) -> None:
        """Initialize fork handle.

        Args:
            target: Body executed in the child as ``target(fork, *args)``
            args: Extra positional arguments for the target
            config: Fork configuration
            channel_config: Channel configuration

        Raises:
            TaskValidationError: ``target`` is not callable
        """
        if not callable(target):
            raise TaskValidationError(f"Fork target is not callable: {target!r}")

        self._id = f"fork_{uuid4().hex}"
        self._target = target
        self._args = tuple(args)
        self._config = config or ForkConfig()
        self._channel_config = channel_config

        self._started = False
        self._role: ForkRole | None = None
        self._child_pid: int | None = None
        self._channel: Channel | None = None
        self._reaped = False
        self._exit_code: int | None = None

    def __repr__(self) -> str:
        return f"<Fork id={self._id} role={self._role} pid={self._child_pid} started={self._started}>"

    @property
    def id(self) -> str:
        return self._id

    @property
    def target(self) -> AnyCallable:
        return self._target

    @property
    def args(self) -> tuple[Any, ...]:
        return self._args

    @property
    def started(self) -> bool:
        return self._started

    def mark_started(self) -> None:
        """Flag the fork as started.

        Raises:
            ForkStateError: Already started
        """
        if self._started:
            raise ForkStateError(f"Fork {self._id} has already been started")

        self._started = True

    @property
    def role(self) -> ForkRole:
        """Side of the fork point this handle lives on.

        Raises:
            ForkStateError: Not spawned yet
        """
        if self._role is None:
            raise ForkStateError(f"Role has not been set for fork {self._id}")

        return self._role

    def set_role(self, role: ForkRole) -> None:
        """Record the role, once."""
        if self._role is not None:
            raise ForkStateError(f"Role has already been set for fork {self._id}")

        self._role = role

    @property
    def is_parent(self) -> bool:
        return self.role is ForkRole.PARENT

    @property
    def child_pid(self) -> int:
        """OS process id of the child, parent side only.

        Raises:
            ForkStateError: Not set
        """
        if self._child_pid is None:
            raise ForkStateError(f"Child pid has not been set for fork {self._id}")

        return self._child_pid

    def set_child_pid(self, pid: int) -> None:
        """Record the child pid, once."""
        if self._child_pid is not None:
            raise ForkStateError(f"Child pid has already been set for fork {self._id}")

        self._child_pid = pid

    @property
    def channel(self) -> Channel:
        """This side's half of the channel.

        Raises:
            ForkStateError: Not spawned yet
        """
        if self._channel is None:
            raise ForkStateError(f"Fork {self._id} has no channel, it was never spawned")

        return self._channel

    @property
    def exit_code(self) -> int | None:
        """Exit code once reaped, negative signal number when killed by a signal."""
        return self._exit_code

    def spawn(self, registry: TaskRegistry | None = None) -> Self:
        """Fork the current process and run the target in the child.

        Only the parent returns from this call. The child locks ``registry``,
        reinitializes per-process state, runs `execute` and exits with status
        0 whatever the target did.

        Args:
            registry: Task registry the child must treat as frozen

        Raises:
            ForkStateError: The fork was already started
            ForkLifecycleError: The socket pair or the fork failed
        """
        self.mark_started()
        _flush_stdio()

        try:
            parent_end, child_end = Channel.pair(self._channel_config)
        except OSError as e:
            raise ForkLifecycleError(f"Failed to create socket pair: {e}") from e

        try:
            pid = os.fork()
        except OSError as e:
            parent_end.close(ignore_pending=True)
            child_end.close(ignore_pending=True)
            raise ForkLifecycleError(f"Failed to fork process: {e}") from e

        if pid == 0:
            self._run_child(parent_end, child_end, registry)

        child_end.close(ignore_pending=True)
        self._channel = parent_end
        self.set_role(ForkRole.PARENT)
        self.set_child_pid(pid)

        logger.debug("Fork spawned", fork_id=self._id, pid=pid)

        return self

    def _run_child(self, parent_end: Channel, child_end: Channel, registry: TaskRegistry | None) -> NoReturn:
        """Child branch of `spawn`, never returns."""
        status = 0

        try:
            if registry is not None:
                registry.lock()

            ChildProcessState.initialize()

            parent_end.close(ignore_pending=True)
            self._channel = child_end
            self.set_role(ForkRole.CHILD)

            self.execute()

            child_end.close(ignore_pending=True)
        except BaseException:  # noqa: BLE001
            # Nothing may propagate past the fork point, the parent's stack lives on here.
            status = 1
            with contextlib.suppress(Exception):
                logger.exception("Fork child crashed outside its target", fork_id=self._id)
        finally:
            _flush_stdio()
            os._exit(status)

    def execute(self) -> Any:
        """Run the target, child side.

        Sends, in this order: ``fork_start``, ``fork_error`` (only if the
        target raised), ``fork_output``, ``fork_result``, ``fork_complete``.

        Returns:
            The target's return value, None if it raised
        """
        if self.role is not ForkRole.CHILD:
            raise ForkStateError(f"Fork {self._id} can only execute in the child process")

        channel = self.channel
        channel.send(Message(topic=Topic.FORK_START, fork_id=self._id))

        buffer = io.StringIO()
        result = None

        with contextlib.redirect_stdout(buffer):
            try:
                result = to_portable(self._target(self, *self._args))
            except Exception as e:  # noqa: BLE001
                result = None
                channel.send(
                    Message(
                        topic=Topic.FORK_ERROR,
                        payload=ErrorInfo.from_exception(e),
                        fork_id=self._id,
                    )
                )

        channel.send(Message(topic=Topic.FORK_OUTPUT, payload=Output(text=buffer.getvalue()), fork_id=self._id))
        channel.send(Message(topic=Topic.FORK_RESULT, payload=Value(value=result), fork_id=self._id))
        channel.send(Message(topic=Topic.FORK_COMPLETE, fork_id=self._id))

        return result

    def wait_for_completion(self, timeout: float | None = 60.0) -> int | None:
        """Wait until the child exits, parent side.

        The channel is read while waiting so a chatty child never blocks on a
        full socket buffer. It is closed when this returns or raises.

        Args:
            timeout: Seconds to wait, None waits forever

        Returns:
            The child's exit code

        Raises:
            ForkStateError: Called on a child-side handle
            ForkTimeoutError: The child was still running after ``timeout``
                seconds and has been killed
            MessageDecodeError: The child sent an undecodable frame. It is
                still waited for (and killed on timeout) before this raises.
        """
        self._require_parent()
        deadline = None if timeout is None else time.monotonic() + timeout
        decode_error: MessageDecodeError | None = None

        try:
            while not self._reap():
                if deadline is not None and time.monotonic() > deadline:
                    logger.warning("Fork did not exit in time, killing it", fork_id=self._id, timeout=timeout)
                    self.kill()
                    raise ForkTimeoutError(f"Fork {self._id} timed out and was terminated after {timeout} seconds")

                if decode_error is not None:
                    time.sleep(self._config.poll_interval)
                    continue

                try:
                    self._idle()
                except MessageDecodeError as e:
                    logger.warning("Fork sent an undecodable frame", fork_id=self._id, error=str(e))
                    decode_error = e
        finally:
            self.channel.close(ignore_pending=decode_error is not None)

        if decode_error is not None:
            raise decode_error

        return self._exit_code

    def kill(self, grace_ms: int | None = None) -> int | None:
        """Terminate the child, parent side.

        Sends SIGTERM, waits up to the grace period and sends SIGKILL if the
        child is still alive, then reaps it. The channel is always closed.

        Args:
            grace_ms: Grace period in milliseconds, at least 200

        Returns:
            The child's exit code
        """
        pid = self._require_parent()
        grace_ms = max(MIN_KILL_GRACE_MS, self._config.kill_grace_ms if grace_ms is None else grace_ms)

        try:
            if not self._reap():
                with contextlib.suppress(ProcessLookupError):
                    os.kill(pid, signal.SIGTERM)

                deadline = time.monotonic() + grace_ms / 1000
                while not self._reap() and time.monotonic() < deadline:
                    time.sleep(0.01)

                if not self._reap():
                    logger.warning("Fork ignored SIGTERM, sending SIGKILL", fork_id=self._id, pid=pid)
                    with contextlib.suppress(ProcessLookupError):
                        os.kill(pid, signal.SIGKILL)

                    self._reap(block=True)
        finally:
            self.channel.close()

        logger.debug("Fork killed", fork_id=self._id, pid=pid, exit_code=self._exit_code)

        return self._exit_code

    def is_running(self) -> bool:
        """Non-blocking liveness check, parent side."""
        self._require_parent()
        return not self._reap()

    def _require_parent(self) -> int:
        if self.role is not ForkRole.PARENT:
            raise ForkStateError(f"Fork {self._id} can only be managed from the parent process")

        return self.child_pid

    def _reap(self, block: bool = False) -> bool:
        """Collect the child's exit status.

        Returns:
            True once the child has exited and been reaped
        """
        if self._reaped:
            return True

        try:
            pid, status = os.waitpid(self.child_pid, 0 if block else os.WNOHANG)
        except ChildProcessError:
            logger.warning("Fork child was reaped elsewhere", fork_id=self._id, pid=self._child_pid)
            self._reaped = True
            return True

        if pid == 0:
            return False

        self._reaped = True
        self._exit_code = os.waitstatus_to_exitcode(status)

        return True

    def _idle(self) -> None:
        """Wait one poll interval, reading the channel meanwhile."""
        channel = self.channel

        if channel.closed or channel.eof:
            time.sleep(self._config.poll_interval)
            return

        if channel.wait_readable(self._config.poll_interval):
            channel.pump()
