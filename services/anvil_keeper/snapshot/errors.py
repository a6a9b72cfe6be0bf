"""Errors raised by the snapshot coordinator and its parts."""

from __future__ import annotations


class SnapshotError(Exception):
    """Base exception for snapshot coordination."""

    pass


class CaptureError(SnapshotError):
    """A capture failed after exhausting its retries. Fatal."""

    def __init__(self, number: int, attempts: int, cause: Exception) -> None:
        super().__init__(f"Capture for block {number} failed after {attempts} attempt(s): {cause}")
        self.number = number
        self.attempts = attempts
        self.cause = cause


class WorkerBusyError(SnapshotError):
    """A request was submitted while another was still outstanding."""

    pass


class SchedulerError(SnapshotError):
    """The scheduler received an event its current state cannot accept."""

    pass


class RecoveryError(SnapshotError):
    """Persisted state exists but the node would not load it. Fatal."""

    pass


class DrainTimeoutError(SnapshotError):
    """The final capture did not finish within the drain deadline."""

    pass
