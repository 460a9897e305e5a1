"""
CNC Recovery Module - Failure classification and automatic recovery.

This module provides the recovery engine that wraps a controller: it
classifies failures, decides on a recovery action (reconnect, retry the
command, reset the controller), executes it within the configured policy and
surfaces RecoveryExhausted when the policy limits are exceeded.
"""

import time
import threading
import logging
from collections import deque
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Tuple, TypeVar

from cnc_config import ErrorRecoveryConfig
from cnc_core import (
    CNCError,
    CommandError,
    CriticalError,
    DisconnectedError,
    ParsedResponse,
    RecoveryExhausted,
    ResponseKind,
    TransportError,
)
from cnc_logger import DeviceLogger, Severity

T = TypeVar("T")

PROBE_TIMEOUT = 1.0  # seconds
RESPONSE_TIMEOUT = 5.0  # seconds
HEALTH_WINDOW = 300.0  # seconds


class RecoveryPhase(Enum):
    NORMAL = "Normal"
    RECOVERING = "Recovering"
    EXHAUSTED = "Exhausted"


class ErrorKind(Enum):
    """Failure classes, in classification order."""

    CONNECTION = "connection"
    CRITICAL = "critical"
    COMMAND = "command"
    UNKNOWN = "unknown"
    RECOVERY_EXHAUSTED = "recovery_exhausted"


class RecoveryAction(Enum):
    RECONNECT = "Reconnect"
    RETRY_COMMAND = "RetryCommand"
    RESET_CONTROLLER = "ResetController"


@dataclass(frozen=True)
class RecoveryRecord:
    """One attempted recovery action."""

    timestamp: float
    action: RecoveryAction
    kind: ErrorKind
    error: str
    attempt: int
    succeeded: Optional[bool] = None


@dataclass(frozen=True)
class RecoveryState:
    """
    Immutable view of the recovery engine.

    Attributes:
        phase: Normal, Recovering or Exhausted
        attempts: Actions taken in the current fault episode
        last_error: Description of the most recent failure
        actions: Every recovery action taken so far, oldest first
    """

    phase: RecoveryPhase = RecoveryPhase.NORMAL
    attempts: int = 0
    last_error: Optional[str] = None
    actions: Tuple[RecoveryRecord, ...] = ()

    @property
    def recovering(self) -> bool:
        return self.phase is RecoveryPhase.RECOVERING


def classify_error(error: BaseException) -> ErrorKind:
    """
    Classify a failure. First match wins.

    Args:
        error: Exception raised by an adapter operation

    Returns:
        The error kind
    """
    if isinstance(error, TransportError):
        return ErrorKind.CONNECTION
    if isinstance(error, CriticalError):
        return ErrorKind.CRITICAL
    if isinstance(error, CommandError):
        return ErrorKind.COMMAND
    if isinstance(error, RecoveryExhausted):
        return ErrorKind.RECOVERY_EXHAUSTED
    return ErrorKind.UNKNOWN


class HealthMetrics:
    """
    Rolling connection health figures.

    Errors are kept with their timestamps so frequencies can be computed
    over a recent window.
    """

    def __init__(self, window: float = HEALTH_WINDOW):
        self.window = window
        self.successes = 0
        self.recoveries = 0
        self.totals: Dict[ErrorKind, int] = {kind: 0 for kind in ErrorKind}
        self._recent: Deque[Tuple[float, ErrorKind]] = deque(maxlen=1000)
        self._lock = threading.Lock()

    def record_error(self, kind: ErrorKind, timestamp: Optional[float] = None) -> None:
        with self._lock:
            self.totals[kind] += 1
            self._recent.append((timestamp if timestamp is not None else time.time(), kind))

    def record_success(self) -> None:
        with self._lock:
            self.successes += 1

    def record_recovery(self) -> None:
        with self._lock:
            self.recoveries += 1

    def recent_errors(self, kind: Optional[ErrorKind] = None, now: Optional[float] = None) -> int:
        """Count errors inside the window, optionally of one kind."""
        cutoff = (now if now is not None else time.time()) - self.window
        with self._lock:
            return sum(1 for stamp, k in self._recent if stamp >= cutoff and (kind is None or k is kind))

    @property
    def command_success_rate(self) -> float:
        failures = self.totals[ErrorKind.COMMAND] + self.totals[ErrorKind.CRITICAL] + self.totals[ErrorKind.UNKNOWN]
        total = self.successes + failures
        return self.successes / total if total else 1.0

    @property
    def connection_stability(self) -> float:
        """Share of operations that did not hit a connection error."""
        drops = self.totals[ErrorKind.CONNECTION]
        total = self.successes + drops
        return 1.0 - drops / total if total else 1.0

    def predict_issues(self, now: Optional[float] = None) -> List[str]:
        """
        Derive warnings from recent error patterns.

        Returns:
            Human readable warnings, empty when healthy
        """
        issues = []
        if self.recent_errors(ErrorKind.CONNECTION, now) > 5:
            issues.append("High frequency of connection errors detected. Check the cable and port power management.")
        if self.recent_errors(ErrorKind.COMMAND, now) > 3:
            issues.append("Frequent command errors detected. G-code may need validation for this controller.")
        if self.recent_errors(ErrorKind.CRITICAL, now) > 1:
            issues.append("Repeated alarms detected. Check limit switches, soft limits and homing.")
        if self.connection_stability < 0.8:
            issues.append("Connection stability is low. Consider checking hardware connections.")
        if self.command_success_rate < 0.9:
            issues.append("Command success rate is low. Review recent errors in the console.")
        return issues


class RecoveryEngine:
    """
    Recovery state machine around one controller.

    Failures move the engine from Normal to Recovering; the first fully
    successful operation moves it back and resets the attempt counter. When
    the counter would exceed the configured maximum the engine enters
    Exhausted and raises RecoveryExhausted until reset() is called.
    Disconnecting the controller cancels any running episode.
    """

    def __init__(
        self,
        controller,
        config: Optional[ErrorRecoveryConfig] = None,
        device_logger: Optional[DeviceLogger] = None,
        on_pause: Optional[Callable[[Optional[int]], None]] = None,
        response_timeout: float = RESPONSE_TIMEOUT,
        probe_timeout: float = PROBE_TIMEOUT,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the recovery engine.

        Args:
            controller: Controller whose failures are recovered
            config: Recovery policy, defaults when None
            device_logger: Console feed for recovery notices
            on_pause: Called with the job line number on exhaustion or
                critical errors
            response_timeout: Seconds to wait for a command acknowledgement
            probe_timeout: Seconds to wait for the post-action status probe
            logger: Logger instance to use
        """
        self.logger = logger or logging.getLogger(__name__)
        self.controller = controller
        self.config = config or ErrorRecoveryConfig()
        self.device_logger = device_logger
        self.on_pause = on_pause
        self.response_timeout = response_timeout
        self.probe_timeout = probe_timeout
        self.health = HealthMetrics()

        self._state = RecoveryState()
        self._state_lock = threading.Lock()
        self._episode_start = 0
        self._critical_resets = 0
        self._cancelled = threading.Event()
        self._paused = False

        controller.add_disconnect_listener(self.cancel)

    @property
    def state(self) -> RecoveryState:
        with self._state_lock:
            return self._state

    def classify(self, error: BaseException) -> ErrorKind:
        return classify_error(error)

    def classify_response(self, response: ParsedResponse) -> Optional[ErrorKind]:
        """Classify a parsed response, or return None if it is not a failure."""
        if response.kind not in (ResponseKind.ERROR, ResponseKind.ALARM, ResponseKind.UNPARSEABLE):
            return None
        return classify_error(self.controller.dialect.error_for(response))

    def decide(self, kind: ErrorKind) -> Optional[RecoveryAction]:
        """
        Pick the recovery action for an error kind.

        Returns:
            The action, or None if the failure must surface without retry
        """
        if kind is ErrorKind.CONNECTION:
            return RecoveryAction.RECONNECT
        if kind is ErrorKind.CRITICAL:
            return RecoveryAction.RESET_CONTROLLER if self.config.reset_on_critical_error else None
        if kind is ErrorKind.COMMAND:
            return RecoveryAction.RETRY_COMMAND
        if kind is ErrorKind.UNKNOWN:
            return RecoveryAction.RESET_CONTROLLER
        return None

    def run(self, operation: Callable[[], T], description: str = "", line_number: Optional[int] = None) -> T:
        """
        Run an operation, recovering from failures per policy.

        Only connection and command failures re-run the operation. After a
        controller reset the original failure is raised once the machine
        is back, so the job layer decides where to resume.

        Args:
            operation: Callable performing one adapter operation
            description: Text used in log messages
            line_number: Job line the operation belongs to, if any

        Returns:
            The operation's result

        Raises:
            RecoveryExhausted: If the policy limits are exceeded, or the
                engine is still exhausted from an earlier episode
            DisconnectedError: If the controller was disconnected
            CNCError: The original failure when recovery is disabled, the
                failure is not recoverable, or the controller was reset
        """
        if self.state.phase is RecoveryPhase.EXHAUSTED:
            raise RecoveryExhausted(
                "Recovery exhausted; reset required before new operations",
                actions=self._episode_actions(),
            )
        self._cancelled.clear()
        self._paused = False

        while True:
            try:
                result = operation()
            except DisconnectedError:
                self.logger.info(f"Operation {description!r} abandoned: disconnected")
                raise
            except CNCError as error:
                self.logger.warning(f"Operation {description!r} failed: {error}")
                action, succeeded = self._handle_failure(error, line_number)
                self._check_cancelled()
                if action is RecoveryAction.RESET_CONTROLLER:
                    while not succeeded:
                        action, succeeded = self._handle_failure(error, line_number)
                        self._check_cancelled()
                    self._complete(operation_succeeded=False)
                    self.logger.info(f"Operation {description!r} not resent after controller reset")
                    raise error
                continue
            self._complete()
            return result

    def send_line(
        self, line: str, line_number: Optional[int] = None, timeout: Optional[float] = None
    ) -> ParsedResponse:
        """
        Send a line and wait for its acknowledgement, with recovery.

        Args:
            line: Command line
            line_number: Job line number reported through on_pause
            timeout: Acknowledgement timeout, the engine default when None

        Returns:
            The acknowledgement
        """
        wait = timeout if timeout is not None else self.response_timeout
        return self.run(lambda: self.controller.send_line(line).wait(wait), description=line, line_number=line_number)

    def recover(self, error: CNCError, line_number: Optional[int] = None) -> RecoveryAction:
        """
        Recover from a failure observed outside run(), e.g. an unsolicited alarm.

        A status probe decides success after each action.

        Args:
            error: The observed failure
            line_number: Job line number reported through on_pause

        Returns:
            The action that restored the machine

        Raises:
            RecoveryExhausted: If the policy limits are exceeded
        """
        self._cancelled.clear()
        self._paused = False
        while True:
            action, succeeded = self._handle_failure(error, line_number)
            self._check_cancelled()
            if succeeded and (action is not RecoveryAction.RETRY_COMMAND or self._probe()):
                self._complete()
                return action

    def reset(self) -> None:
        """Leave Exhausted after operator intervention."""
        with self._state_lock:
            self._state = RecoveryState(actions=self._state.actions)
        self._critical_resets = 0
        self._trace("Recovery state reset by operator", Severity.INFO)

    def cancel(self) -> None:
        """Abort the running episode and return to Normal. Called on disconnect."""
        self._cancelled.set()
        with self._state_lock:
            was_active = self._state.phase is not RecoveryPhase.NORMAL
            self._state = RecoveryState(actions=self._state.actions)
        self._critical_resets = 0
        if was_active:
            self._trace("Recovery cancelled: connection closed", Severity.WARNING)

    # Internals

    def _handle_failure(self, error: CNCError, line_number: Optional[int]) -> Tuple[RecoveryAction, bool]:
        kind = self.classify(error)
        self.health.record_error(kind)
        with self._state_lock:
            self._state = replace(self._state, last_error=str(error))

        if not self.config.auto_recovery_enabled:
            self._surface(kind, error, line_number, "automatic recovery disabled")
            raise error

        action = self.decide(kind)
        if action is None:
            self._surface(kind, error, line_number, "not recoverable")
            raise error

        if kind is ErrorKind.CRITICAL and self._critical_resets >= 1:
            self._exhaust(error, line_number, "critical error persisted after reset")
        if self.state.attempts >= self.config.max_retries:
            self._exhaust(error, line_number, f"{self.config.max_retries} attempt(s) used")
        if kind is ErrorKind.CRITICAL:
            self._critical_resets += 1
        if action is RecoveryAction.RESET_CONTROLLER:
            self._notify_pause(line_number)

        index, attempt = self._begin_action(action, kind, error)
        self._trace(
            f"Recovery attempt {attempt}/{self.config.max_retries}: {action.value} after {kind.value} error: {error}",
            Severity.WARNING,
        )
        succeeded = self._perform(action)
        self._finish_action(index, succeeded)
        return action, succeeded

    def _begin_action(self, action: RecoveryAction, kind: ErrorKind, error: CNCError) -> Tuple[int, int]:
        with self._state_lock:
            if self._state.phase is RecoveryPhase.NORMAL:
                self._episode_start = len(self._state.actions)
            attempt = self._state.attempts + 1
            record = RecoveryRecord(time.time(), action, kind, str(error), attempt)
            self._state = replace(
                self._state,
                phase=RecoveryPhase.RECOVERING,
                attempts=attempt,
                actions=self._state.actions + (record,),
            )
            return len(self._state.actions) - 1, attempt

    def _finish_action(self, index: int, succeeded: bool) -> None:
        with self._state_lock:
            actions = list(self._state.actions)
            if index < len(actions):
                actions[index] = replace(actions[index], succeeded=succeeded)
                self._state = replace(self._state, actions=tuple(actions))

    def _perform(self, action: RecoveryAction) -> bool:
        delay = self.config.reconnect_delay if action is RecoveryAction.RECONNECT else self.config.retry_delay
        self._cancelled.wait(delay)
        self._check_cancelled()

        try:
            if action is RecoveryAction.RECONNECT:
                self.controller.reconnect()
                if self._cancelled.is_set():
                    # closed by the user while reopening
                    self.controller.disconnect()
                    self._check_cancelled()
                return self._probe()
            if action is RecoveryAction.RESET_CONTROLLER:
                self.controller.soft_reset()
                if self._probe():
                    return True
                for command in self.controller.unlock():
                    command.wait(self.response_timeout)
                return self._probe()
        except DisconnectedError:
            raise
        except CNCError as e:
            self.logger.warning(f"Recovery action {action.value} failed: {e}")
            self._trace(f"Recovery action {action.value} failed: {e}", Severity.WARNING)
            return False
        return True

    def _check_cancelled(self) -> None:
        if not self._cancelled.is_set():
            return
        with self._state_lock:
            self._state = RecoveryState(actions=self._state.actions)
        raise DisconnectedError("Recovery cancelled by disconnect")

    def _probe(self) -> bool:
        """Query status once; success means a report with a non-alarm state."""
        try:
            raw = self.controller.poll_status(self.probe_timeout)
        except DisconnectedError:
            raise
        except CNCError as e:
            self.logger.debug(f"Status probe failed: {e}")
            return False
        if raw is None:
            return False
        response = self.controller.parse_response(raw)
        return response.kind is ResponseKind.STATUS_REPORT and not response.status.is_alarm

    def _complete(self, operation_succeeded: bool = True) -> None:
        if operation_succeeded:
            self.health.record_success()
        with self._state_lock:
            previous = self._state
            if previous.phase is RecoveryPhase.NORMAL and previous.attempts == 0:
                return
            self._state = RecoveryState(last_error=previous.last_error, actions=previous.actions)
        self._critical_resets = 0
        self.health.record_recovery()
        self._trace(f"Recovered after {previous.attempts} attempt(s)", Severity.INFO)

    def _episode_actions(self) -> Tuple[RecoveryRecord, ...]:
        with self._state_lock:
            return self._state.actions[self._episode_start:]

    def _exhaust(self, error: CNCError, line_number: Optional[int], reason: str) -> None:
        with self._state_lock:
            if self._state.phase is RecoveryPhase.NORMAL:
                self._episode_start = len(self._state.actions)
            self._state = replace(self._state, phase=RecoveryPhase.EXHAUSTED)
        actions = self._episode_actions()
        self.health.record_error(ErrorKind.RECOVERY_EXHAUSTED)
        self._trace(f"Recovery exhausted ({reason}): {error}", Severity.ERROR)
        self._notify_pause(line_number)
        raise RecoveryExhausted(f"Recovery exhausted ({reason}): {error}", actions=actions, last_error=error) from error

    def _surface(self, kind: ErrorKind, error: CNCError, line_number: Optional[int], reason: str) -> None:
        self._trace(f"Surfacing {kind.value} error ({reason}): {error}", Severity.ERROR)
        if kind is ErrorKind.CRITICAL:
            self._notify_pause(line_number)

    def _notify_pause(self, line_number: Optional[int]) -> None:
        if self.on_pause is None or self._paused:
            return
        self._paused = True
        try:
            self.on_pause(line_number)
        except Exception as e:
            self.logger.error(f"Pause callback failed: {e}")

    def _trace(self, text: str, severity: Severity) -> None:
        self.logger.log(severity.log_level, text)
        if self.device_logger is not None:
            self.device_logger.log_trace(text, severity)
