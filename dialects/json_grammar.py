"""
JSON response grammar used by TinyG and g2core.

Both firmwares answer in JSON mode: `{"r":{...},"f":[rev,status,...]}` for
command responses, `{"sr":{...}}` for status reports and `{"er":{...}}` for
exception reports. Status reports may be incremental, so only the keys that
are present are mapped.
"""

import json
from typing import Any, Dict, Optional

from cnc_core import MachineState, MachineStatus, ParsedResponse, Position, ProtocolError
from cnc_utils import safe_float, safe_int

STAT_STATES = {
    0: MachineState.UNKNOWN,  # initializing
    1: MachineState.IDLE,  # ready
    2: MachineState.ALARM,
    3: MachineState.IDLE,  # program stop
    4: MachineState.IDLE,  # program end
    5: MachineState.RUN,
    6: MachineState.HOLD,
    7: MachineState.RUN,  # probe
    8: MachineState.RUN,  # cycle
    9: MachineState.HOME,
    10: MachineState.JOG,
    11: MachineState.DOOR,  # interlock
    12: MachineState.ALARM,  # shutdown
    13: MachineState.ALARM,  # panic
}

STATE_STATS = {
    MachineState.UNKNOWN: 0,
    MachineState.IDLE: 1,
    MachineState.ALARM: 2,
    MachineState.RUN: 5,
    MachineState.HOLD: 6,
    MachineState.HOME: 9,
    MachineState.JOG: 10,
    MachineState.DOOR: 11,
}

ALARM_WORDS = ("alarm", "shutdown", "panic")
WORK_KEYS = ("posx", "posy", "posz")
MACHINE_KEYS = ("mpox", "mpoy", "mpoz")


def _position(report: Dict[str, Any], keys, raw: str) -> Optional[Position]:
    if not all(key in report for key in keys):
        return None
    values = [safe_float(report[key], None) for key in keys]
    if any(value is None for value in values):
        raise ProtocolError(f"Non-numeric position in {keys}", raw)
    return Position(*values)


def _number(report: Dict[str, Any], key: str, raw: str) -> Optional[float]:
    if key not in report:
        return None
    value = safe_float(report[key], None)
    if value is None:
        raise ProtocolError(f"Non-numeric '{key}' value", raw)
    return value


class JsonGrammar:
    """Parser and serializer for TinyG/g2core JSON traffic."""

    def __init__(self, firmware_name: str):
        self.firmware_name = firmware_name

    def decode(self, raw: str) -> Optional[Dict[str, Any]]:
        """Decode a JSON object, or return None if the line is not one."""
        line = raw.strip()
        if not line.startswith("{"):
            return None
        try:
            document = json.loads(line)
        except ValueError:
            return None
        return document if isinstance(document, dict) else None

    def status_from_report(self, report: Any, raw: str) -> MachineStatus:
        """
        Map a status report body to a MachineStatus.

        Args:
            report: Decoded `sr` object
            raw: Original line, kept for error reporting

        Returns:
            Status with only the reported fields set

        Raises:
            ProtocolError: If the body is not an object or holds bad values
        """
        if not isinstance(report, dict):
            raise ProtocolError("Status report body is not an object", raw)

        state = MachineState.UNKNOWN
        if "stat" in report:
            stat = safe_int(report["stat"], None)
            if stat is None:
                raise ProtocolError(f"Invalid stat value {report['stat']!r}", raw)
            state = STAT_STATES.get(stat, MachineState.UNKNOWN)

        feed = _number(report, "vel", raw)
        if feed is None:
            feed = _number(report, "feed", raw)
        line_number = _number(report, "line", raw)

        return MachineStatus(
            state=state,
            machine_position=_position(report, MACHINE_KEYS, raw),
            work_position=_position(report, WORK_KEYS, raw),
            feed_rate=feed,
            spindle_speed=_number(report, "sps", raw),
            line_number=int(line_number) if line_number is not None else None,
        )

    def parse_status_strict(self, raw: str) -> MachineStatus:
        document = self.decode(raw)
        if document is None:
            raise ProtocolError("Status report is not a JSON object", raw)
        if "sr" in document:
            return self.status_from_report(document["sr"], raw)
        body = document.get("r")
        if isinstance(body, dict) and "sr" in body:
            return self.status_from_report(body["sr"], raw)
        raise ProtocolError("No status report in response", raw)

    def parse_status(self, raw: str) -> MachineStatus:
        try:
            return self.parse_status_strict(raw)
        except ProtocolError:
            return MachineStatus()

    def format_status(self, status: MachineStatus) -> str:
        report: Dict[str, Any] = {}
        if status.state in STATE_STATS:
            report["stat"] = STATE_STATS[status.state]
        if status.machine_position is not None:
            report.update(zip(MACHINE_KEYS, status.machine_position.as_tuple()))
        if status.work_position is not None:
            report.update(zip(WORK_KEYS, status.work_position.as_tuple()))
        if status.feed_rate is not None:
            report["vel"] = status.feed_rate
        if status.spindle_speed is not None:
            report["sps"] = status.spindle_speed
        if status.line_number is not None:
            report["line"] = status.line_number
        return compact_json({"sr": report})

    def version_from(self, body: Dict[str, Any]) -> Optional[str]:
        build = body.get("fb", body.get("fv"))
        if build is None:
            return None
        return f"{self.firmware_name} {build}"

    def classify(self, raw: str) -> ParsedResponse:
        """
        Classify one line of JSON-mode traffic.

        Args:
            raw: Line as received

        Returns:
            Parsed response; UNPARSEABLE for anything unrecognized
        """
        line = raw.strip()
        if not line:
            return ParsedResponse.unparseable(raw, "empty line")
        if not line.startswith("{"):
            # text-mode prompt, e.g. "tinyg [mm] ok>"
            if line.lower() == "ok" or line.endswith("ok>"):
                return ParsedResponse.ok(raw)
            return ParsedResponse.unparseable(raw, "not a JSON response")

        document = self.decode(line)
        if document is None:
            return ParsedResponse.unparseable(raw, "invalid JSON")

        try:
            if "er" in document:
                report = document["er"] if isinstance(document["er"], dict) else {}
                message = str(report.get("msg", ""))
                code = str(report.get("st", message or "unknown"))
                if any(word in message.lower() for word in ALARM_WORDS):
                    return ParsedResponse.alarm(raw, code)
                return ParsedResponse.error(raw, code)

            if "sr" in document:
                return ParsedResponse.status_report(raw, self.status_from_report(document["sr"], raw))

            if "r" in document:
                body = document["r"] if isinstance(document["r"], dict) else {}
                footer = document.get("f")
                status_code = 0
                if isinstance(footer, list) and len(footer) >= 2:
                    status_code = safe_int(footer[1], None)
                    if status_code is None:
                        raise ProtocolError(f"Invalid footer status {footer[1]!r}", raw)
                if status_code:
                    return ParsedResponse.error(raw, str(status_code))
                if "sr" in body:
                    return ParsedResponse.status_report(raw, self.status_from_report(body["sr"], raw))
                version = self.version_from(body)
                if version:
                    return ParsedResponse.version(raw, version)
                return ParsedResponse.ok(raw)

            if "msg" in document:
                return ParsedResponse.feedback(raw, str(document["msg"]))
        except ProtocolError as e:
            return ParsedResponse.unparseable(raw, str(e))

        return ParsedResponse.unparseable(raw, "unrecognized JSON response")


def compact_json(document: Dict[str, Any]) -> str:
    """Serialize a JSON object without whitespace."""
    return json.dumps(document, separators=(",", ":"))
