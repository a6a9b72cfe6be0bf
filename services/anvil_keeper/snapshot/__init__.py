"""
Snapshot module for anvil-keeper.

This module keeps the stored node state in step with block arrivals:
- scheduler: pure debounce state machine
- worker: dump-then-persist captures, one at a time
- recovery: load stored state or prime the store at startup
- coordinator: event loop tying the three together

Invariants:
    - At most one capture is in flight
    - The newest block seen during a capture is captured next
    - Shutdown always ends with a capture of the latest block seen
"""

from .coordinator import SnapshotCoordinator
from .errors import (
    CaptureError,
    DrainTimeoutError,
    RecoveryError,
    SchedulerError,
    SnapshotError,
    WorkerBusyError,
)
from .recovery import RecoveryResult, recover
from .scheduler import Phase, SchedulerState, transition
from .worker import SnapshotInfo, SnapshotRequest, SnapshotWorker

__all__ = [
    "SnapshotCoordinator",
    "SnapshotWorker",
    "SnapshotRequest",
    "SnapshotInfo",
    "SchedulerState",
    "Phase",
    "transition",
    "RecoveryResult",
    "recover",
    "SnapshotError",
    "CaptureError",
    "WorkerBusyError",
    "SchedulerError",
    "RecoveryError",
    "DrainTimeoutError",
]
