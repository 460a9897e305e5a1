"""
CNC Logger Module - Diagnostic console feed of device traffic.

This module provides the device logger that records commands sent to and
responses received from the controller, together with application notices,
in a bounded, severity-tagged transcript for operators.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum, IntEnum
from typing import Dict, Iterable, List, Optional, Set

from cnc_core import ResponseKind
from cnc_utils import RingBuffer

CONSOLE_CAPACITY = 5000
STATUS_QUERY_TOKEN = "?"
ACK_TEXT = "ok"

WARNING_MARKERS = (
    "[msg:warn",
    "caution",
    "reset to continue",
    "to unlock",
    "check door",
    "check limits",
    "halted",
)


class Severity(IntEnum):
    """Console message severity, ordered from least to most severe."""

    DEBUG = 1
    INFO = 2
    WARNING = 3
    ERROR = 4

    @property
    def label(self) -> str:
        return "WARN" if self is Severity.WARNING else self.name

    @property
    def log_level(self) -> int:
        return {
            Severity.DEBUG: logging.DEBUG,
            Severity.INFO: logging.INFO,
            Severity.WARNING: logging.WARNING,
            Severity.ERROR: logging.ERROR,
        }[self]

    @classmethod
    def from_str(cls, value: str) -> "Severity":
        """
        Parse a severity name or label.

        Args:
            value: e.g. "error", "WARN", "Warning"

        Returns:
            Matching severity

        Raises:
            ValueError: If the name is not recognized
        """
        key = value.strip().upper()
        if key == "WARN":
            key = "WARNING"
        try:
            return cls[key]
        except KeyError:
            raise ValueError(f"Unknown severity '{value}'") from None


class MessageType(Enum):
    COMMAND = "CMD"
    RESPONSE = "RES"
    TRACE = "TRC"


ALL_SEVERITIES = frozenset(Severity)


@dataclass(frozen=True)
class ConsoleMessage:
    """One entry of the console feed."""

    timestamp: float
    severity: Severity
    message_type: MessageType
    text: str
    visible: bool = True

    def format_display(self) -> str:
        """Render as `[HH:MM:SS.mmm] CMD INFO: text`."""
        clock = datetime.fromtimestamp(self.timestamp).strftime("%H:%M:%S.%f")[:-3]
        return f"[{clock}] {self.message_type.value} {self.severity.label}: {self.text}"


def response_severity(text: str, kind: Optional[ResponseKind] = None) -> Severity:
    """
    Pick the console severity for a device response.

    Args:
        text: Response line
        kind: Classification from the active dialect, if known

    Returns:
        ERROR for device errors and alarms, WARNING for warning feedback
        and unparseable lines, INFO otherwise
    """
    lowered = text.strip().lower()
    if kind in (ResponseKind.ERROR, ResponseKind.ALARM) or lowered.startswith(("error", "alarm")):
        return Severity.ERROR
    if kind is ResponseKind.UNPARSEABLE:
        return Severity.WARNING
    if any(marker in lowered for marker in WARNING_MARKERS):
        return Severity.WARNING
    return Severity.INFO


class DeviceLogger:
    """
    Bounded console feed of device traffic.

    Status queries and bare acknowledgements are dropped; everything else is
    kept until newer messages push it out of the ring buffer. Each recorded
    message is mirrored to the Python logger.
    """

    def __init__(self, capacity: int = CONSOLE_CAPACITY, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._messages: RingBuffer[ConsoleMessage] = RingBuffer(capacity)
        self._active: Set[Severity] = set(ALL_SEVERITIES)

    @property
    def capacity(self) -> int:
        return self._messages.capacity

    @property
    def active_severities(self) -> Set[Severity]:
        return set(self._active)

    def set_active_severities(self, severities: Iterable[Severity]) -> None:
        """Set the severities shown when no explicit filter is given."""
        self._active = set(severities)

    def log_command(self, text: str, status_query: bool = False) -> Optional[ConsoleMessage]:
        """
        Record an outbound command.

        Args:
            text: Command text as sent
            status_query: True for status-query traffic

        Returns:
            The recorded message, or None if the command was filtered out
        """
        command = text.strip()
        if status_query or command == STATUS_QUERY_TOKEN or not command:
            return None
        return self._record(Severity.INFO, MessageType.COMMAND, command)

    def log_response(
        self, text: str, kind: Optional[ResponseKind] = None, status_reply: bool = False
    ) -> Optional[ConsoleMessage]:
        """
        Record an inbound response.

        Args:
            text: Response line
            kind: Classification from the active dialect, if known
            status_reply: True for the reply to a status query

        Returns:
            The recorded message, or None if the response was filtered out
        """
        response = text.strip()
        if status_reply or not response:
            return None
        if response.lower() == ACK_TEXT or kind is ResponseKind.OK:
            return None
        if kind is ResponseKind.STATUS_REPORT:
            return self._record(Severity.DEBUG, MessageType.RESPONSE, response)
        return self._record(response_severity(response, kind), MessageType.RESPONSE, response)

    def log_trace(self, text: str, severity: Severity = Severity.INFO) -> ConsoleMessage:
        """Record an application notice such as a connection change."""
        return self._record(severity, MessageType.TRACE, text)

    def console_messages(self, severities: Optional[Iterable[Severity]] = None) -> List[ConsoleMessage]:
        """
        Copy out the console feed.

        Args:
            severities: Severities to include; the active filter when None

        Returns:
            Matching messages from oldest to newest
        """
        wanted = set(severities) if severities is not None else set(self._active)
        return [message for message in self._messages.snapshot() if message.severity in wanted]

    def count_by_severity(self) -> Dict[Severity, int]:
        counts = {severity: 0 for severity in Severity}
        for message in self._messages.snapshot():
            counts[message.severity] += 1
        return counts

    def clear(self) -> None:
        self._messages.clear()

    def __len__(self) -> int:
        return len(self._messages)

    def _record(self, severity: Severity, message_type: MessageType, text: str) -> ConsoleMessage:
        message = ConsoleMessage(
            timestamp=time.time(),
            severity=severity,
            message_type=message_type,
            text=text,
            visible=severity in self._active,
        )
        self._messages.append(message)
        self.logger.log(severity.log_level, f"{message_type.value} {text}")
        return message
