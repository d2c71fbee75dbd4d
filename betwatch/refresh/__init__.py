"""Poll-driven refresh: snapshot refresher and scheduler."""

from betwatch.refresh.scheduler import (
    PollScheduler,
    SchedulerState,
    SchedulerStats,
    validate_interval,
)
from betwatch.refresh.snapshot import RefreshStats, SnapshotRefresher

__all__ = [
    "PollScheduler",
    "SchedulerState",
    "SchedulerStats",
    "RefreshStats",
    "SnapshotRefresher",
    "validate_interval",
]
