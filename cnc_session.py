"""
CNC Session Module - One connected machine with its supporting services.

A session owns the controller for the configured dialect together with the
device logger, the recovery engine wrapping the controller and the status
monitor polling it.
"""

import logging
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Union

from cnc_analytics import StatusAnalytics
from cnc_config import ControllerSettings, load_settings
from cnc_controller import Controller
from cnc_core import ConnectionError, ConnectionState, MachineStatus, ParsedResponse
from cnc_logger import ConsoleMessage, DeviceLogger, Severity
from cnc_monitor import StatusMonitor
from cnc_recovery import RecoveryEngine, RecoveryState


class CNCSession:
    """
    Wiring of controller, recovery engine, status monitor and device logger.

    Usable as a context manager; leaving the block disconnects.
    """

    def __init__(
        self,
        settings: Optional[ControllerSettings] = None,
        on_pause: Optional[Callable[[Optional[int]], None]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.logger = logger or logging.getLogger(__name__)
        self.settings = settings or ControllerSettings()

        self.device_logger = DeviceLogger(self.settings.console.capacity)
        self.controller = Controller(
            dialect=self.settings.connection.dialect,
            device_logger=self.device_logger,
            greeting_timeout=self.settings.connection.greeting_timeout,
        )
        self.recovery = RecoveryEngine(
            self.controller,
            self.settings.recovery,
            device_logger=self.device_logger,
            on_pause=on_pause,
            response_timeout=self.settings.connection.response_timeout,
            probe_timeout=self.settings.monitor.reply_timeout,
        )
        self.monitor = StatusMonitor(self.controller, self.settings.monitor, device_logger=self.device_logger)

    @classmethod
    def from_config(cls, path: Union[str, Path], **kwargs) -> "CNCSession":
        """
        Build a session from a YAML settings file.

        Raises:
            SettingsError: If the file is missing or invalid
        """
        return cls(load_settings(path), **kwargs)

    def connect(self, port: Optional[str] = None, baudrate: Optional[int] = None, monitor: bool = True) -> ConnectionState:
        """
        Connect and start status polling.

        Args:
            port: Port to open, the configured port when None
            baudrate: Line speed, the configured speed when None
            monitor: Whether to start the status monitor

        Returns:
            The resulting connection state

        Raises:
            ConnectionError: If no port is known or connecting fails
        """
        port = port or self.settings.connection.port
        if not port:
            raise ConnectionError("No port given and none configured")
        state = self.controller.connect(port, baudrate or self.settings.connection.baudrate)
        if monitor:
            self.monitor.start()
        return state

    def disconnect(self) -> None:
        self.monitor.stop()
        self.controller.disconnect()

    def send_line(
        self, line: str, line_number: Optional[int] = None, timeout: Optional[float] = None
    ) -> ParsedResponse:
        """Send a line and wait for its acknowledgement, with recovery."""
        return self.recovery.send_line(line, line_number=line_number, timeout=timeout)

    @property
    def connection_state(self) -> ConnectionState:
        return self.controller.connection_state

    @property
    def recovery_state(self) -> RecoveryState:
        return self.recovery.state

    def current_status(self) -> MachineStatus:
        return self.controller.current_status()

    def console_messages(self, severities: Optional[Iterable[Severity]] = None) -> List[ConsoleMessage]:
        return self.device_logger.console_messages(severities)

    def history(self, count: Optional[int] = None) -> List[MachineStatus]:
        return self.monitor.history(count)

    def analytics(self) -> StatusAnalytics:
        return self.monitor.analytics()

    def __enter__(self) -> "CNCSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.disconnect()
