"""
CNC Monitor Module - Periodic status polling with bounded history.

This module provides the status monitor that polls the controller on a
background thread, keeps the most recent status snapshots in a fixed-size
history and records, without stopping, ticks whose reply could not be parsed.
"""

import time
import threading
import logging
from typing import List, Optional

from cnc_analytics import StatusAnalytics, analyze_status_history
from cnc_config import MonitorConfig
from cnc_core import CNCError, MachineStatus, ResponseKind
from cnc_logger import DeviceLogger, Severity
from cnc_utils import RingBuffer

HISTORY_SIZE = 300
THREAD_JOIN_TIMEOUT = 2.0  # seconds


class StatusHistory(RingBuffer[MachineStatus]):
    """Fixed-capacity history of status snapshots, oldest first."""

    def __init__(self, capacity: int = HISTORY_SIZE):
        super().__init__(capacity)


class StatusMonitor:
    """
    Drives status polling for one controller.

    Each tick sends one status query through the controller and waits for
    one status-shaped reply before the next tick is scheduled. Polling
    traffic is flagged so the device logger keeps it out of the console.
    """

    def __init__(
        self,
        controller,
        config: Optional[MonitorConfig] = None,
        device_logger: Optional[DeviceLogger] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.logger = logger or logging.getLogger(__name__)
        self.controller = controller
        self.config = config or MonitorConfig()
        self.device_logger = device_logger

        self._history = StatusHistory(self.config.history_size)
        self._parse_errors = 0
        self._timeouts = 0
        self._last_error: Optional[str] = None
        self._last_update: Optional[float] = None
        self._lock = threading.Lock()

        self.thread = None
        self.stop_event = threading.Event()

    # Lifecycle

    def start(self) -> None:
        """Start polling on a background thread. No-op if already running."""
        if self.is_running():
            return
        self.stop_event = threading.Event()
        self.thread = threading.Thread(target=self._poll_loop, args=(self.stop_event,), daemon=True)
        self.thread.start()
        self.logger.info(f"Status monitor started ({self.config.poll_interval}s interval)")

    def stop(self) -> None:
        self.stop_event.set()
        if self.thread and self.thread.is_alive() and self.thread is not threading.current_thread():
            self.thread.join(timeout=THREAD_JOIN_TIMEOUT)
        if self.thread is not None:
            self.logger.info("Status monitor stopped")
        self.thread = None

    def is_running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def tick(self) -> Optional[MachineStatus]:
        """
        Run one poll synchronously.

        Returns:
            The new snapshot, or None if this tick produced no status
        """
        if not self.controller.is_connected():
            return None
        try:
            raw = self.controller.poll_status(self.config.reply_timeout)
        except CNCError as e:
            self._record_failure(f"Status query failed: {e}")
            return None

        if raw is None:
            with self._lock:
                self._timeouts += 1
            self._record_failure(f"No status reply within {self.config.reply_timeout}s")
            return None

        response = self.controller.parse_response(raw)
        if response.kind is not ResponseKind.STATUS_REPORT:
            with self._lock:
                self._parse_errors += 1
            self._record_failure(f"Unparseable status report {raw!r}: {response.text}")
            return None

        status = response.status.with_firmware(self.controller.firmware_version)
        self._history.append(status)
        with self._lock:
            self._last_update = time.time()
        return status

    # Snapshots

    def current_status(self) -> MachineStatus:
        """Latest polled snapshot, or an Unknown status before the first poll."""
        latest = self._history.latest()
        return latest if latest is not None else MachineStatus()

    def latest(self) -> Optional[MachineStatus]:
        return self._history.latest()

    def history(self, count: Optional[int] = None) -> List[MachineStatus]:
        """
        Copy out the history.

        Args:
            count: Number of most recent snapshots, all when None

        Returns:
            Snapshots, oldest first
        """
        if count is None:
            return self._history.snapshot()
        return self._history.tail(count)

    def clear_history(self) -> None:
        self._history.clear()

    @property
    def parse_errors(self) -> int:
        with self._lock:
            return self._parse_errors

    @property
    def timeouts(self) -> int:
        with self._lock:
            return self._timeouts

    @property
    def last_error(self) -> Optional[str]:
        with self._lock:
            return self._last_error

    @property
    def last_update(self) -> Optional[float]:
        with self._lock:
            return self._last_update

    def analytics(self) -> StatusAnalytics:
        return analyze_status_history(self.history(), interval=self.config.poll_interval)

    # Internals

    def _next_interval(self) -> float:
        if not self.config.adaptive_timing:
            return self.config.poll_interval
        latest = self._history.latest()
        if latest is not None and latest.state.is_executing:
            return self.config.running_interval
        return self.config.idle_interval

    def _record_failure(self, text: str) -> None:
        with self._lock:
            self._last_error = text
        self.logger.debug(text)

    def _poll_loop(self, stop_event: threading.Event) -> None:
        self.logger.debug("Status poll loop started")
        while not stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                self.logger.error(f"Status poll failed: {e}")
                if self.device_logger is not None:
                    self.device_logger.log_trace(f"Status poll failed: {e}", Severity.ERROR)
            stop_event.wait(self._next_interval())
        self.logger.debug("Status poll loop ended")
