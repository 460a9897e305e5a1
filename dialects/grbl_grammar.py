"""
GRBL-family response grammar.

Shared by GRBL, FluidNC and Smoothieware, which all report status as
bracketed field lists (`<Idle|MPos:0.000,0.000,0.000|FS:0,0>`) and
acknowledge lines with "ok" / "error:N" / "ALARM:N". The legacy GRBL 0.9
comma-separated report (`<Idle,MPos:...,WPos:...>`) is accepted too.
"""

import math
import re
from typing import Callable, Dict, List, Optional

from cnc_core import (
    MachineState,
    MachineStatus,
    OverrideKind,
    ParsedResponse,
    Position,
    ProtocolError,
)
from cnc_utils import format_number

from .base import Outbound

# Regular expressions for parsing responses
ERRORPAT = re.compile(r"^error:\s*(.+)$", re.IGNORECASE)
ALARMPAT = re.compile(r"^ALARM:\s*(.+)$", re.IGNORECASE)
SETTINGPAT = re.compile(r"^\$(\w+)=(.*)$")
FEEDBACKPAT = re.compile(r"^\[(.*)\]$")
LEGACY_FIELDPAT = re.compile(r"([A-Za-z]+):([^:]*?)(?=,[A-Za-z]+:|$)")

# Realtime override bytes: reset, +10%, -10%, +1%, -1%
FEED_OVERRIDE_CODES = (0x90, 0x91, 0x92, 0x93, 0x94)
SPINDLE_OVERRIDE_CODES = (0x99, 0x9A, 0x9B, 0x9C, 0x9D)


def _numbers(key: str, value: str, minimum: int, raw: str) -> List[float]:
    try:
        numbers = [float(part) for part in value.split(",")]
    except ValueError:
        raise ProtocolError(f"Non-numeric {key} value '{value}'", raw)
    if not all(math.isfinite(number) for number in numbers):
        raise ProtocolError(f"Non-finite {key} value '{value}'", raw)
    if len(numbers) < minimum:
        raise ProtocolError(f"{key} needs {minimum} values, got {len(numbers)}", raw)
    return numbers


def _integers(key: str, value: str, minimum: int, raw: str) -> List[int]:
    return [int(number) for number in _numbers(key, value, minimum, raw)]


def _position(key: str, value: str, raw: str) -> Position:
    x, y, z = _numbers(key, value, 3, raw)[:3]
    return Position(x, y, z)


def _coords(position: Position) -> str:
    return ",".join(format_number(v) for v in position.as_tuple())


def realtime_override(kind: OverrideKind, delta: int) -> List[Outbound]:
    """
    Encode a percentage nudge as GRBL realtime override bytes.

    Args:
        kind: Feed or spindle override
        delta: Signed percentage change

    Returns:
        A single realtime item, or an empty list when delta is zero
    """
    codes = FEED_OVERRIDE_CODES if kind is OverrideKind.FEED else SPINDLE_OVERRIDE_CODES
    coarse, fine = divmod(abs(delta), 10)
    if delta > 0:
        data = bytes([codes[1]]) * coarse + bytes([codes[3]]) * fine
    else:
        data = bytes([codes[2]]) * coarse + bytes([codes[4]]) * fine
    if not data:
        return []
    return [Outbound.realtime(data, f"{kind.value.capitalize()} override {delta:+d}%")]


class GrblGrammar:
    """Parser and serializer for GRBL-style status reports and responses."""

    def parse_status_strict(self, raw: str) -> MachineStatus:
        """
        Parse a status report.

        Args:
            raw: Status line including the angle brackets

        Returns:
            Parsed status

        Raises:
            ProtocolError: If the line is not a well formed status report
        """
        line = raw.strip()
        if not (line.startswith("<") and line.endswith(">")) or len(line) < 3:
            raise ProtocolError("Status report must be enclosed in <>", raw)
        inner = line[1:-1]

        if "|" in inner:
            parts = inner.split("|")
            token = parts[0]
            fields = []
            for part in parts[1:]:
                if not part:
                    continue
                key, sep, value = part.partition(":")
                if not sep:
                    raise ProtocolError(f"Field '{part}' has no value", raw)
                fields.append((key, value))
        else:
            token, _, rest = inner.partition(",")
            fields = LEGACY_FIELDPAT.findall(rest)
            if rest and not fields:
                raise ProtocolError("Unrecognized legacy status fields", raw)

        if not token or not token.replace(":", "").isalnum():
            raise ProtocolError(f"Invalid state token '{token}'", raw)

        values: Dict[str, object] = {"state": MachineState.from_token(token)}
        offset = None
        for key, value in fields:
            name = key.upper()
            if name == "MPOS":
                values["machine_position"] = _position(key, value, raw)
            elif name == "WPOS":
                values["work_position"] = _position(key, value, raw)
            elif name == "WCO":
                offset = _position(key, value, raw)
            elif name == "FS":
                feed, spindle = _numbers(key, value, 2, raw)[:2]
                values["feed_rate"] = feed
                values["spindle_speed"] = spindle
            elif name == "F":
                values["feed_rate"] = _numbers(key, value, 1, raw)[0]
            elif name == "S":
                values["spindle_speed"] = _numbers(key, value, 1, raw)[0]
            elif name == "BF":
                planner, rx = _integers(key, value, 2, raw)[:2]
                values["planner_buffer"] = planner
                values["rx_buffer"] = rx
            elif name == "BUF":
                values["planner_buffer"] = _integers(key, value, 1, raw)[0]
            elif name == "RX":
                values["rx_buffer"] = _integers(key, value, 1, raw)[0]
            elif name in ("LN", "LINE"):
                values["line_number"] = _integers(key, value, 1, raw)[0]
            elif name == "OV":
                values["overrides"] = tuple(_integers(key, value, 3, raw)[:3])
            elif name == "PN":
                values["pins"] = value

        # MPos = WPos + WCO
        if offset is not None:
            if "machine_position" not in values and "work_position" in values:
                values["machine_position"] = values["work_position"] + offset
            elif "work_position" not in values and "machine_position" in values:
                values["work_position"] = values["machine_position"] - offset

        return MachineStatus(**values)

    def parse_status(self, raw: str) -> MachineStatus:
        try:
            return self.parse_status_strict(raw)
        except ProtocolError:
            return MachineStatus()

    def format_status(self, status: MachineStatus) -> str:
        """Serialize present fields as a GRBL 1.1 status report."""
        parts = [status.state.value]
        if status.machine_position is not None:
            parts.append("MPos:" + _coords(status.machine_position))
        if status.work_position is not None:
            parts.append("WPos:" + _coords(status.work_position))
        if status.feed_rate is not None and status.spindle_speed is not None:
            parts.append(f"FS:{format_number(status.feed_rate)},{format_number(status.spindle_speed)}")
        elif status.feed_rate is not None:
            parts.append(f"F:{format_number(status.feed_rate)}")
        elif status.spindle_speed is not None:
            parts.append(f"S:{format_number(status.spindle_speed)}")
        if status.planner_buffer is not None and status.rx_buffer is not None:
            parts.append(f"Bf:{status.planner_buffer},{status.rx_buffer}")
        elif status.planner_buffer is not None:
            parts.append(f"Buf:{status.planner_buffer}")
        elif status.rx_buffer is not None:
            parts.append(f"RX:{status.rx_buffer}")
        if status.line_number is not None:
            parts.append(f"Ln:{status.line_number}")
        if status.overrides is not None:
            parts.append("Ov:" + ",".join(str(v) for v in status.overrides))
        if status.pins is not None:
            parts.append(f"Pn:{status.pins}")
        return "<" + "|".join(parts) + ">"

    def classify(self, raw: str, parse_version: Callable[[str], Optional[str]]) -> ParsedResponse:
        """
        Classify one line using the common GRBL response classes.

        Args:
            raw: Line as received
            parse_version: Dialect hook extracting a firmware version

        Returns:
            Parsed response; UNPARSEABLE for anything unrecognized
        """
        line = raw.strip()
        if not line:
            return ParsedResponse.unparseable(raw, "empty line")
        if line.lower() == "ok":
            return ParsedResponse.ok(raw)

        match = ERRORPAT.match(line)
        if match:
            return ParsedResponse.error(raw, match.group(1).strip())
        match = ALARMPAT.match(line)
        if match:
            return ParsedResponse.alarm(raw, match.group(1).strip())

        if line.startswith("<"):
            try:
                return ParsedResponse.status_report(raw, self.parse_status_strict(line))
            except ProtocolError as e:
                return ParsedResponse.unparseable(raw, str(e))

        version = parse_version(line)
        if version:
            return ParsedResponse.version(raw, version)

        match = FEEDBACKPAT.match(line)
        if match:
            return ParsedResponse.feedback(raw, match.group(1))
        if SETTINGPAT.match(line):
            return ParsedResponse.setting(raw, line)
        return ParsedResponse.unparseable(raw, "unrecognized response")
