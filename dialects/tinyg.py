"""
TinyG dialect.

TinyG runs in JSON mode: plain G-code lines are accepted as-is and answered
with `{"r":{},"f":[1,0,n]}` footers; status is requested with `{"sr":""}`.
"""

from typing import List, Optional

from cnc_core import MachineStatus, OverrideKind, ParsedResponse

from .base import Dialect, Outbound
from .json_grammar import JsonGrammar


class TinyGDialect(Dialect):
    """TinyG firmware (v8 boards)."""

    name = "tinyg"
    display_name = "TinyG"

    def __init__(self):
        self.grammar = JsonGrammar("TinyG")

    def format_jog(self, axis: str, distance: float, feed: float) -> List[Outbound]:
        return [
            self.format_line(f"G91 G1 {axis}{distance:.3f} F{feed:g}"),
            self.format_line("G90"),
        ]

    def format_home(self) -> List[Outbound]:
        return [self.format_line("G28.2 X0 Y0 Z0")]

    def format_override(self, kind: OverrideKind, delta: int, target: int) -> List[Outbound]:
        word = "F" if kind is OverrideKind.FEED else "P"
        return [self.format_line(f"M50 {word}{target / 100:g}")]

    def format_status_query(self) -> Outbound:
        return Outbound(b'{"sr":""}\n', '{"sr":""}', acknowledged=False, status_query=True)

    def format_version_query(self) -> Optional[Outbound]:
        # the reply carries the version instead of a bare acknowledgement
        return Outbound(b'{"fb":null}\n', '{"fb":null}', acknowledged=False)

    def format_unlock(self) -> List[Outbound]:
        return [self.format_line('{"clear":null}')]

    def parse_response(self, raw: str) -> ParsedResponse:
        return self.grammar.classify(raw)

    def parse_status(self, raw: str) -> MachineStatus:
        return self.grammar.parse_status(raw)

    def format_status(self, status: MachineStatus) -> str:
        return self.grammar.format_status(status)

    def looks_like_status(self, raw: str) -> bool:
        return '"sr"' in raw
