"""
Dialect capability set shared by every supported controller firmware.

A dialect turns abstract commands into wire bytes and classifies inbound
lines into the common status model. The controller picks exactly one
dialect at construction time and calls it for every formatting and parsing
decision.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import FrozenSet, List, Optional

from cnc_core import (
    CNCError,
    CommandError,
    CriticalError,
    MachineStatus,
    OverrideKind,
    ParsedResponse,
    ProtocolError,
    ResponseKind,
)


@dataclass(frozen=True)
class Outbound:
    """
    One unit of outbound traffic.

    Attributes:
        data: Bytes written to the transport
        text: Human readable form recorded in the console feed
        acknowledged: True if the controller answers it with ok/error
        status_query: True for the status-query token
    """

    data: bytes
    text: str
    acknowledged: bool = True
    status_query: bool = False

    @classmethod
    def line(cls, text: str) -> "Outbound":
        """Newline-terminated command acknowledged in FIFO order."""
        return cls((text + "\n").encode("ascii"), text)

    @classmethod
    def realtime(cls, data: bytes, text: str, status_query: bool = False) -> "Outbound":
        """Out-of-band command the controller does not acknowledge."""
        return cls(data, text, acknowledged=False, status_query=status_query)


class Dialect(ABC):
    """Formatting and parsing rules for one controller firmware family."""

    name = ""
    display_name = ""
    critical_error_codes: FrozenSet[str] = frozenset()

    def format_line(self, gcode: str) -> Outbound:
        return Outbound.line(gcode)

    @abstractmethod
    def format_jog(self, axis: str, distance: float, feed: float) -> List[Outbound]:
        """
        Format an incremental jog.

        Args:
            axis: Upper-case axis letter, already validated
            distance: Signed distance in millimeters
            feed: Feed rate in mm/min

        Returns:
            Outbound items in send order
        """

    @abstractmethod
    def format_home(self) -> List[Outbound]:
        """Format the homing cycle for all axes."""

    @abstractmethod
    def format_override(self, kind: OverrideKind, delta: int, target: int) -> List[Outbound]:
        """
        Format an override change.

        Args:
            kind: Feed or spindle override
            delta: Signed percentage change, already clamped
            target: Resulting override percentage

        Returns:
            Outbound items in send order
        """

    @abstractmethod
    def format_status_query(self) -> Outbound:
        """Format the status-query token."""

    @abstractmethod
    def format_version_query(self) -> Optional[Outbound]:
        """Format a firmware version request, or None if unsupported."""

    def format_soft_reset(self) -> List[Outbound]:
        return [Outbound.realtime(b"\x18", "^X")]

    def format_unlock(self) -> List[Outbound]:
        return [self.format_line("$X")]

    def format_feed_hold(self) -> List[Outbound]:
        return [Outbound.realtime(b"!", "!")]

    def format_cycle_resume(self) -> List[Outbound]:
        return [Outbound.realtime(b"~", "~")]

    @abstractmethod
    def parse_response(self, raw: str) -> ParsedResponse:
        """
        Classify one inbound line.

        Never raises; malformed input yields an UNPARSEABLE response.
        """

    @abstractmethod
    def parse_status(self, raw: str) -> MachineStatus:
        """
        Parse a status report.

        Never raises; malformed input yields a default status with state
        UNKNOWN and every optional field unset.
        """

    @abstractmethod
    def format_status(self, status: MachineStatus) -> str:
        """Serialize the present fields of a status in this dialect's grammar."""

    @abstractmethod
    def looks_like_status(self, raw: str) -> bool:
        """Whether a line is shaped like a status report, parseable or not."""

    def is_critical(self, code: Optional[str]) -> bool:
        return code is not None and code in self.critical_error_codes

    def error_for(self, response: ParsedResponse, command: Optional[str] = None) -> Optional[CNCError]:
        """
        Map a failure response to the matching exception.

        Args:
            response: Parsed response line
            command: Line the response answers, if known

        Returns:
            CriticalError for alarms and critical codes, CommandError for
            other errors, ProtocolError for unparseable lines, None otherwise
        """
        if response.kind is ResponseKind.ALARM:
            return CriticalError(f"Alarm {response.code}", code=response.code)
        if response.kind is ResponseKind.ERROR:
            if self.is_critical(response.code):
                return CriticalError(f"Critical error {response.code}", code=response.code)
            target = f"Command '{command}'" if command else "Command"
            return CommandError(f"{target} rejected with error {response.code}", code=response.code, command=command)
        if response.kind is ResponseKind.UNPARSEABLE:
            return ProtocolError(f"Unparseable response: {response.text}", raw=response.raw)
        return None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"
