"""
FluidNC dialect.

FluidNC speaks the GRBL 1.1 protocol, including realtime override bytes,
and announces itself inside a GRBL-compatible banner:
`Grbl 3.7 [FluidNC v3.7.10 (wifi) '$' for help]`.
"""

import re
from typing import List, Optional

from cnc_core import MachineStatus, OverrideKind, ParsedResponse

from .base import Dialect, Outbound
from .grbl_grammar import GrblGrammar, realtime_override

FLUIDNCPAT = re.compile(r"FluidNC\s+(v?[\w.\-]+)")
BANNERPAT = re.compile(r"^Grbl\s+(\S+)")


class FluidNCDialect(Dialect):
    """FluidNC firmware for ESP32 controllers."""

    name = "fluidnc"
    display_name = "FluidNC"
    critical_error_codes = frozenset({"7"})

    def __init__(self):
        self.grammar = GrblGrammar()

    def format_jog(self, axis: str, distance: float, feed: float) -> List[Outbound]:
        return [self.format_line(f"$J=G21G91{axis}{distance:.3f}F{feed:g}")]

    def format_home(self) -> List[Outbound]:
        return [self.format_line("$H")]

    def format_override(self, kind: OverrideKind, delta: int, target: int) -> List[Outbound]:
        return realtime_override(kind, delta)

    def format_status_query(self) -> Outbound:
        return Outbound.realtime(b"?", "?", status_query=True)

    def format_version_query(self) -> Optional[Outbound]:
        return self.format_line("$I")

    def parse_version(self, line: str) -> Optional[str]:
        match = FLUIDNCPAT.search(line)
        if match and (line.startswith("Grbl") or line.startswith("[VER:")):
            return f"FluidNC {match.group(1)}"
        match = BANNERPAT.match(line)
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
