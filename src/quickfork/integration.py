from dataclasses import dataclass, field
from typing import Any

from .enum import WorkerState

__all__ = (
    "PoolStat",
    "WorkerStat",
)


@dataclass
class WorkerStat:
    """Worker statistics, sent back to the parent as the fork result."""

    state: WorkerState = WorkerState.IDLE
    processed: int = 0
    failed: int = 0
    uptime: float = 0.0
    pid: int = 0

    @classmethod
    def from_value(cls, value: Any) -> "WorkerStat | None":
        """Rebuild from the builtin form a channel delivers."""
        if not isinstance(value, dict):
            return None

        return cls(
            state=WorkerState(value.get("state", WorkerState.IDLE)),
            processed=value.get("processed", 0),
            failed=value.get("failed", 0),
            uptime=value.get("uptime", 0.0),
            pid=value.get("pid", 0),
        )


@dataclass
class PoolStat:
    """Worker pool statistics for one run."""

    workers: int = 0
    tasks: int = 0
    dispatched: int = 0
    lost_workers: int = 0
    worker_stats: list[WorkerStat] = field(default_factory=list)
