"""
GRBL dialect.

Covers GRBL 1.1 (pipe-delimited status reports, `$J=` jogging, realtime
override bytes) and reads GRBL 0.9 comma-delimited reports.
"""

import re
from typing import List, Optional

from cnc_core import MachineStatus, OverrideKind, ParsedResponse

from .base import Dialect, Outbound
from .grbl_grammar import GrblGrammar, realtime_override

BANNERPAT = re.compile(r"^Grbl\s+(\S+)")
VERPAT = re.compile(r"^\[VER:(\d+\.\d+[a-z]?)")


class GrblDialect(Dialect):
    """GRBL 0.9 / 1.1 firmware."""

    name = "grbl"
    display_name = "GRBL"
    # error:7 is an EEPROM read failure; settings were restored to defaults
    critical_error_codes = frozenset({"7"})

    def __init__(self):
        self.grammar = GrblGrammar()

    def format_jog(self, axis: str, distance: float, feed: float) -> List[Outbound]:
        return [self.format_line(f"$J=G91 G21 {axis}{distance:.3f} F{feed:g}")]

    def format_home(self) -> List[Outbound]:
        return [self.format_line("$H")]

    def format_override(self, kind: OverrideKind, delta: int, target: int) -> List[Outbound]:
        return realtime_override(kind, delta)

    def format_status_query(self) -> Outbound:
        return Outbound.realtime(b"?", "?", status_query=True)

    def format_version_query(self) -> Optional[Outbound]:
        return self.format_line("$I")

    def parse_version(self, line: str) -> Optional[str]:
        """Extract "Grbl <version>" from the banner or a $I reply."""
        match = BANNERPAT.match(line) or VERPAT.match(line)
        if match:
            return f"Grbl {match.group(1)}"
        return None

    def parse_response(self, raw: str) -> ParsedResponse:
        return self.grammar.classify(raw, self.parse_version)

    def parse_status(self, raw: str) -> MachineStatus:
        return self.grammar.parse_status(raw)

    def format_status(self, status: MachineStatus) -> str:
        return self.grammar.format_status(status)

    def looks_like_status(self, raw: str) -> bool:
        return raw.strip().startswith("<")
