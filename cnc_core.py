"""
CNC Core Module - Shared machine status model and error types.

This module provides the value types every other component exchanges:
connection and machine states, positions, status snapshots, parsed device
responses and the exception hierarchy used across the controller.
"""

import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Sequence, Tuple


class CNCError(Exception):
    """Base exception for CNC communication errors."""

    pass


class TransportError(CNCError):
    """Raised when the port is unavailable or an I/O operation fails."""

    pass


class ConnectionError(TransportError):
    """Raised when a connection cannot be opened or the handshake fails."""

    pass


class DisconnectedError(TransportError):
    """Raised when an operation targets a connection that was closed on request."""

    pass


class ResponseTimeout(TransportError):
    """Raised when the controller does not acknowledge a command in time."""

    pass


class ProtocolError(CNCError):
    """Raised when a telemetry line is malformed or cannot be parsed."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


class CommandError(CNCError):
    """Raised when the controller rejects a specific command."""

    def __init__(self, message: str, code: Optional[str] = None, command: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.command = command


class CriticalError(CNCError):
    """Raised on an alarm or fault that requires a controller reset."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class RecoveryExhausted(CNCError):
    """Raised when recovery policy limits are exceeded."""

    def __init__(self, message: str, actions: Sequence = (), last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.actions = tuple(actions)
        self.last_error = last_error


class InvalidParameter(CNCError, ValueError):
    """Raised when a command argument is outside the supported range."""

    pass


class ConnectionState(Enum):
    """Lifecycle of the link to the controller."""

    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    ERROR = "Error"


class MachineState(Enum):
    """Controller state as reported by telemetry."""

    IDLE = "Idle"
    RUN = "Run"
    JOG = "Jog"
    HOME = "Home"
    HOLD = "Hold"
    DOOR = "Door"
    ALARM = "Alarm"
    CHECK = "Check"
    SLEEP = "Sleep"
    UNKNOWN = "Unknown"

    @classmethod
    def from_token(cls, token: Optional[str]) -> "MachineState":
        """
        Map a raw state token to a MachineState.

        Sub-states such as "Hold:0" or "Door:1" map to their base state.
        Unrecognized tokens map to UNKNOWN.

        Args:
            token: State token from a status report

        Returns:
            Matching state, or UNKNOWN
        """
        if not token:
            return cls.UNKNOWN
        base = token.split(":", 1)[0].strip().lower()
        for state in cls:
            if state.value.lower() == base:
                return state
        return cls.UNKNOWN

    @property
    def is_executing(self) -> bool:
        return self in (MachineState.RUN, MachineState.JOG, MachineState.HOME)


@dataclass(frozen=True)
class Position:
    """Cartesian position in millimeters."""

    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    def distance_to(self, other: "Position") -> float:
        return math.sqrt((self.x - other.x) ** 2 + (self.y - other.y) ** 2 + (self.z - other.z) ** 2)

    def __add__(self, other: "Position") -> "Position":
        return Position(self.x + other.x, self.y + other.y, self.z + other.z)

    def __sub__(self, other: "Position") -> "Position":
        return Position(self.x - other.x, self.y - other.y, self.z - other.z)

    def as_tuple(self) -> Tuple[float, float, float]:
        return (self.x, self.y, self.z)


@dataclass(frozen=True)
class MachineStatus:
    """
    Immutable snapshot of one status report.

    Optional fields stay None when the report did not carry them, so absent
    telemetry is never mistaken for a zero reading.

    Attributes:
        state: Controller state
        machine_position: Absolute position relative to the limit switches
        work_position: Position relative to the active work offset
        feed_rate: Current feed rate in mm/min
        spindle_speed: Spindle speed in RPM
        planner_buffer: Planner buffer value as reported by the controller
        rx_buffer: Serial receive buffer value as reported by the controller
        line_number: Line number currently executing
        overrides: Feed, rapid and spindle override percentages
        pins: Input pin letters reported as triggered
        firmware_version: Firmware version captured at connect
    """

    state: MachineState = MachineState.UNKNOWN
    machine_position: Optional[Position] = None
    work_position: Optional[Position] = None
    feed_rate: Optional[float] = None
    spindle_speed: Optional[float] = None
    planner_buffer: Optional[int] = None
    rx_buffer: Optional[int] = None
    line_number: Optional[int] = None
    overrides: Optional[Tuple[int, int, int]] = None
    pins: Optional[str] = None
    firmware_version: Optional[str] = None

    @property
    def is_alarm(self) -> bool:
        return self.state is MachineState.ALARM

    def with_firmware(self, version: Optional[str]) -> "MachineStatus":
        """Return a copy stamped with the given firmware version."""
        if version is None or version == self.firmware_version:
            return self
        return replace(self, firmware_version=version)


class ResponseKind(Enum):
    """Classification of one inbound line."""

    OK = "ok"
    ERROR = "error"
    ALARM = "alarm"
    FEEDBACK = "feedback"
    VERSION = "version"
    SETTING = "setting"
    STATUS_REPORT = "status"
    UNPARSEABLE = "unparseable"


@dataclass(frozen=True)
class ParsedResponse:
    """
    One classified line received from the controller.

    Only the attribute matching the kind is populated: code for ERROR and
    ALARM, text for FEEDBACK, VERSION and SETTING, status for STATUS_REPORT.
    UNPARSEABLE keeps the reason in text.
    """

    kind: ResponseKind
    raw: str
    code: Optional[str] = None
    text: Optional[str] = None
    status: Optional[MachineStatus] = None

    @classmethod
    def ok(cls, raw: str) -> "ParsedResponse":
        return cls(ResponseKind.OK, raw)

    @classmethod
    def error(cls, raw: str, code: str) -> "ParsedResponse":
        return cls(ResponseKind.ERROR, raw, code=code)

    @classmethod
    def alarm(cls, raw: str, code: str) -> "ParsedResponse":
        return cls(ResponseKind.ALARM, raw, code=code)

    @classmethod
    def feedback(cls, raw: str, text: str) -> "ParsedResponse":
        return cls(ResponseKind.FEEDBACK, raw, text=text)

    @classmethod
    def version(cls, raw: str, text: str) -> "ParsedResponse":
        return cls(ResponseKind.VERSION, raw, text=text)

    @classmethod
    def setting(cls, raw: str, text: str) -> "ParsedResponse":
        return cls(ResponseKind.SETTING, raw, text=text)

    @classmethod
    def status_report(cls, raw: str, status: MachineStatus) -> "ParsedResponse":
        return cls(ResponseKind.STATUS_REPORT, raw, status=status)

    @classmethod
    def unparseable(cls, raw: str, reason: str = "") -> "ParsedResponse":
        return cls(ResponseKind.UNPARSEABLE, raw, text=reason or None)

    @property
    def is_failure(self) -> bool:
        return self.kind in (ResponseKind.ERROR, ResponseKind.ALARM)

    @property
    def code_number(self) -> Optional[int]:
        """Numeric form of code, or None for symbolic codes."""
        try:
            return int(self.code)
        except (TypeError, ValueError):
            return None


class OverrideKind(Enum):
    """Overrides adjustable as percentage nudges."""

    FEED = "feed"
    SPINDLE = "spindle"


OVERRIDE_MIN = 10
OVERRIDE_MAX = 200
SUPPORTED_AXES = ("X", "Y", "Z")
