"""
Debounce scheduler for snapshot captures.

The scheduler decides when a capture should run. It is a pure state machine:
transition() takes the current state and one event and returns the next
state plus the actions the caller must perform. It never touches the node,
the store or the event loop, so every row of the transition table can be
exercised directly.

States (SchedulerState.phase):
    IDLE                    no capture running
    CAPTURING               one capture running, nothing newer seen
    CAPTURING_WITH_PENDING  one capture running, a newer block is waiting
    DRAINING                shutdown requested, waiting for the final capture
    TERMINAL                final capture done

Invariants:
    - At most one capture is outstanding (in_flight) at any time
    - A block seen while capturing is never dropped; it becomes pending
    - pending holds one value; a newer block replaces an older one
    - The last capture before TERMINAL is for latest_seen as of shutdown

How to change safely:
    - Keep transition() free of I/O and logging side effects on state
    - Every new event or action needs a row in the transition tests
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum

from .errors import SchedulerError


class Phase(Enum):
    """Observable scheduler phase, derived from SchedulerState."""

    IDLE = "idle"
    CAPTURING = "capturing"
    CAPTURING_WITH_PENDING = "capturing_with_pending"
    DRAINING = "draining"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class SchedulerState:
    """Scheduler state.

    Attributes:
        in_flight: A capture has been submitted and not yet completed
        pending: Newest block seen while a capture was in flight
        latest_seen: Newest block observed before shutdown
        draining: Shutdown has been requested
        final_submitted: The shutdown capture for latest_seen has been submitted
        terminal: The shutdown capture has completed
    """

    in_flight: bool = False
    pending: int | None = None
    latest_seen: int = 0
    draining: bool = False
    final_submitted: bool = False
    terminal: bool = False

    @property
    def phase(self) -> Phase:
        if self.terminal:
            return Phase.TERMINAL
        if self.draining:
            return Phase.DRAINING
        if not self.in_flight:
            return Phase.IDLE
        if self.pending is None:
            return Phase.CAPTURING
        return Phase.CAPTURING_WITH_PENDING


# Events


@dataclass(frozen=True)
class ProgressReceived:
    """A new block arrived."""

    number: int


@dataclass(frozen=True)
class CaptureCompleted:
    """The worker finished the outstanding capture."""

    number: int


@dataclass(frozen=True)
class SubscriptionFailed:
    """The progress subscription reported an error."""

    error: Exception


@dataclass(frozen=True)
class ShutdownRequested:
    """The process was asked to stop."""


Event = ProgressReceived | CaptureCompleted | SubscriptionFailed | ShutdownRequested


# Actions


@dataclass(frozen=True)
class SubmitCapture:
    """Hand a capture request for `number` to the worker."""

    number: int
    final: bool = False


@dataclass(frozen=True)
class ReportSubscriptionError:
    """Report a non-fatal subscription error."""

    error: Exception


Action = SubmitCapture | ReportSubscriptionError


def initial_state(latest_seen: int = 0) -> SchedulerState:
    """State at startup, after recovery has run."""
    return SchedulerState(latest_seen=latest_seen)


def transition(state: SchedulerState, event: Event) -> tuple[SchedulerState, list[Action]]:
    """Apply one event to the scheduler state.

    Args:
        state: Current state
        event: Event to apply

    Returns:
        (next state, actions to perform in order)

    Raises:
        SchedulerError: If the event is impossible in the current state
    """
    if state.terminal:
        raise SchedulerError(f"Scheduler is terminal, cannot handle {event!r}")

    if isinstance(event, SubscriptionFailed):
        return state, [ReportSubscriptionError(event.error)]

    if isinstance(event, ProgressReceived):
        return _on_progress(state, event.number)

    if isinstance(event, CaptureCompleted):
        return _on_completed(state, event.number)

    if isinstance(event, ShutdownRequested):
        return _on_shutdown(state)

    raise SchedulerError(f"Unknown scheduler event: {event!r}")


def _on_progress(state: SchedulerState, number: int) -> tuple[SchedulerState, list[Action]]:
    # latest_seen is frozen once shutdown is handled
    if state.draining:
        return state, []

    if not state.in_flight:
        return replace(state, in_flight=True, latest_seen=number), [SubmitCapture(number)]

    return replace(state, latest_seen=number, pending=number), []


def _on_completed(state: SchedulerState, number: int) -> tuple[SchedulerState, list[Action]]:
    if not state.in_flight:
        raise SchedulerError(f"Capture for block {number} completed but none was in flight")

    if state.draining:
        if state.final_submitted:
            return replace(state, in_flight=False, terminal=True), []
        return (
            replace(state, final_submitted=True),
            [SubmitCapture(state.latest_seen, final=True)],
        )

    if state.pending is None:
        return replace(state, in_flight=False), []

    return replace(state, pending=None), [SubmitCapture(state.pending)]


def _on_shutdown(state: SchedulerState) -> tuple[SchedulerState, list[Action]]:
    if state.draining:
        return state, []

    if not state.in_flight:
        return (
            replace(state, draining=True, in_flight=True, final_submitted=True),
            [SubmitCapture(state.latest_seen, final=True)],
        )

    # The in-flight capture finishes first; the final one supersedes pending.
    return replace(state, draining=True, pending=None), []
