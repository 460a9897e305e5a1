"""
CNC Analytics Module - Derived statistics over a status history.

Every function here is pure and takes a sequence of MachineStatus snapshots,
oldest first. Empty and single-element histories yield empty or zero results.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from cnc_core import MachineState, MachineStatus

MOTION_THRESHOLD = 0.001  # mm


@dataclass(frozen=True)
class RateStats:
    """Average, peak and minimum of the samples that carried a value."""

    average: float = 0.0
    peak: float = 0.0
    minimum: float = 0.0
    samples: int = 0


@dataclass(frozen=True)
class StateTransition:
    """State change observed at history index `index`."""

    index: int
    from_state: MachineState
    to_state: MachineState

    @property
    def enters_alarm(self) -> bool:
        return self.to_state is MachineState.ALARM

    @property
    def leaves_alarm(self) -> bool:
        return self.from_state is MachineState.ALARM


@dataclass(frozen=True)
class StatusAnalytics:
    """Aggregate view produced by analyze_status_history."""

    samples: int
    feed_rate: RateStats
    spindle_speed: RateStats
    transitions: Tuple[StateTransition, ...]
    alarm_indices: Tuple[int, ...]
    total_distance: float
    moving: bool
    state_durations: Dict[MachineState, float]
    buffer: RateStats


def _rate_stats(values: List[float]) -> RateStats:
    if not values:
        return RateStats()
    return RateStats(
        average=sum(values) / len(values),
        peak=max(values),
        minimum=min(values),
        samples=len(values),
    )


def feed_rate_stats(history: Sequence[MachineStatus]) -> RateStats:
    return _rate_stats([s.feed_rate for s in history if s.feed_rate is not None])


def spindle_speed_stats(history: Sequence[MachineStatus]) -> RateStats:
    return _rate_stats([s.spindle_speed for s in history if s.spindle_speed is not None])


def buffer_stats(history: Sequence[MachineStatus]) -> RateStats:
    """Planner buffer statistics over the samples that reported it."""
    return _rate_stats([float(s.planner_buffer) for s in history if s.planner_buffer is not None])


def find_state_changes(history: Sequence[MachineStatus]) -> List[StateTransition]:
    """
    List every state change between consecutive snapshots.

    An alarm lasting a single sample yields both its entry and its exit.

    Args:
        history: Snapshots, oldest first

    Returns:
        Transitions in history order
    """
    transitions = []
    for index in range(1, len(history)):
        previous, current = history[index - 1].state, history[index].state
        if previous is not current:
            transitions.append(StateTransition(index, previous, current))
    return transitions


def position_changes(history: Sequence[MachineStatus]) -> List[float]:
    """
    Euclidean distance between consecutive machine positions.

    Pairs where either snapshot lacks a machine position are skipped.
    """
    changes = []
    for previous, current in zip(history, history[1:]):
        if previous.machine_position is None or current.machine_position is None:
            continue
        changes.append(current.machine_position.distance_to(previous.machine_position))
    return changes


def total_distance(history: Sequence[MachineStatus]) -> float:
    return sum(position_changes(history))


def is_moving(history: Sequence[MachineStatus], threshold: float = MOTION_THRESHOLD) -> bool:
    """Whether the most recent position change exceeds the threshold."""
    changes = position_changes(history)
    return bool(changes) and changes[-1] > threshold


def detect_alarms(history: Sequence[MachineStatus]) -> List[int]:
    """Indices of snapshots whose state is Alarm."""
    return [index for index, status in enumerate(history) if status.state is MachineState.ALARM]


def state_durations(history: Sequence[MachineStatus], interval: float) -> Dict[MachineState, float]:
    """
    Approximate time spent in each state.

    Args:
        history: Snapshots, oldest first
        interval: Seconds between snapshots

    Returns:
        Seconds per state for the states present in the history
    """
    durations: Dict[MachineState, float] = {}
    for status in history:
        durations[status.state] = durations.get(status.state, 0.0) + interval
    return durations


def analyze_status_history(
    history: Sequence[MachineStatus], interval: float = 0.25, threshold: Optional[float] = None
) -> StatusAnalytics:
    """
    Compute every statistic for one history snapshot.

    Args:
        history: Snapshots, oldest first
        interval: Seconds between snapshots, used for state durations
        threshold: Motion threshold in millimeters

    Returns:
        Aggregate analytics
    """
    history = list(history)
    return StatusAnalytics(
        samples=len(history),
        feed_rate=feed_rate_stats(history),
        spindle_speed=spindle_speed_stats(history),
        transitions=tuple(find_state_changes(history)),
        alarm_indices=tuple(detect_alarms(history)),
        total_distance=total_distance(history),
        moving=is_moving(history, MOTION_THRESHOLD if threshold is None else threshold),
        state_durations=state_durations(history, interval),
        buffer=buffer_stats(history),
    )
