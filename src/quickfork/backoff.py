"""Exponential backoff for polling loops."""

from __future__ import annotations

import time
from typing import Self

from .config import BackoffConfig
from .exception import BackoffExhaustedError

__all__ = ("ExponentialBackoff",)


def _now_ms() -> int:
    return int(time.monotonic() * 1000)


class ExponentialBackoff:
    """Sleep a growing amount of time between attempts.

    The target pause for attempt ``n`` is ``min_sleep_ms + factor ** n``
    milliseconds. Time already spent since the previous attempt is deducted,
    and the result is clamped to ``[min_sleep_ms, max_sleep_ms]``.
    """

    def __init__(
        self,
        factor: float = 1.05,
        min_sleep_ms: int = 10,
        max_sleep_ms: int = 5000,
        max_attempts: int | None = None,
    ) -> None:
        """Initialize backoff.

        Args:
            factor: Base of the exponential term
            min_sleep_ms: Lower bound of a pause
            max_sleep_ms: Upper bound of a pause
            max_attempts: Attempts allowed before `sleep` raises, None for no limit
        """
        self._factor = factor
        self._min_sleep_ms = min_sleep_ms
        self._max_sleep_ms = max_sleep_ms
        self._max_attempts = max_attempts

        self._attempts = 0
        self._last_attempt_ms: int | None = None

    @classmethod
    def from_config(cls, config: BackoffConfig | None = None) -> Self:
        config = config or BackoffConfig()
        return cls(config.factor, config.min_sleep_ms, config.max_sleep_ms, config.max_attempts)

    def reset(self) -> None:
        """Start counting attempts from zero again."""
        self._attempts = 0
        self._last_attempt_ms = _now_ms()

    def sleep(self) -> None:
        """Register an attempt and pause before the next one.

        Raises:
            BackoffExhaustedError: More than ``max_attempts`` attempts
        """
        self._attempts += 1

        if self._max_attempts is not None and self._attempts > self._max_attempts:
            raise BackoffExhaustedError(f"Maximum number of attempts reached ({self._max_attempts})")

        time.sleep(self.sleep_time_ms() / 1000)
        self._last_attempt_ms = _now_ms()

    def current_attempt(self) -> int:
        return self._attempts

    def sleep_time_ms(self) -> int:
        """Pause the next `sleep` would take, in milliseconds."""
        if self._last_attempt_ms is None:
            self._last_attempt_ms = _now_ms()

        target_ms = self._min_sleep_ms + self._factor**self._attempts
        remaining_ms = int(target_ms - (_now_ms() - self._last_attempt_ms))

        return max(self._min_sleep_ms, min(remaining_ms, self._max_sleep_ms))
