"""
Smoothieware dialect.

Smoothieware in GRBL mode reports `<Idle|MPos:...|WPos:...|F:feed,pct>` and
acknowledges with lines starting with "ok". A halted board prints "!!"
until it is reset with M999 or unlocked with $X.
"""

import re
from typing import List, Optional

from cnc_core import MachineStatus, OverrideKind, ParsedResponse

from .base import Dialect, Outbound
from .grbl_grammar import GrblGrammar

BUILDPAT = re.compile(r"^Build version:\s*([^,]+)")


class SmoothiewareDialect(Dialect):
    """Smoothieware firmware (Smoothieboard and derivatives)."""

    name = "smoothieware"
    display_name = "Smoothieware"

    def __init__(self):
        self.grammar = GrblGrammar()

    def format_jog(self, axis: str, distance: float, feed: float) -> List[Outbound]:
        return [self.format_line(f"G91 G0 {axis}{distance:.3f} F{feed:g} G90")]

    def format_home(self) -> List[Outbound]:
        return [self.format_line("G28")]

    def format_override(self, kind: OverrideKind, delta: int, target: int) -> List[Outbound]:
        command = "M220" if kind is OverrideKind.FEED else "M221"
        return [self.format_line(f"{command} S{target}")]

    def format_status_query(self) -> Outbound:
        return Outbound.realtime(b"?", "?", status_query=True)

    def format_version_query(self) -> Optional[Outbound]:
        # the shell answers "version" without a trailing ok
        return Outbound("version\n".encode("ascii"), "version", acknowledged=False)

    def parse_version(self, line: str) -> Optional[str]:
        match = BUILDPAT.match(line)
        if match:
            return f"Smoothieware {match.group(1).strip()}"
        if line.startswith("Smoothie"):
            return "Smoothieware"
        return None

    def parse_response(self, raw: str) -> ParsedResponse:
        line = raw.strip()
        if line.startswith("ok"):
            return ParsedResponse.ok(raw)
        if line.startswith("!!"):
            return ParsedResponse.alarm(raw, "halt")
        return self.grammar.classify(raw, self.parse_version)

    def parse_status(self, raw: str) -> MachineStatus:
        return self.grammar.parse_status(raw)

    def format_status(self, status: MachineStatus) -> str:
        return self.grammar.format_status(status)

    def looks_like_status(self, raw: str) -> bool:
        return raw.strip().startswith("<")
