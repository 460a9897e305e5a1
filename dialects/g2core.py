"""
g2core dialect.

g2core expects G-code wrapped in JSON (`{"gc":"G0 X10"}`), reports status
through `{"sr":{...}}` objects and takes overrides as factors through the
`mfo` (feed) and `sso` (spindle) keys.
"""

from typing import List, Optional

from cnc_core import MachineStatus, OverrideKind, ParsedResponse

from .base import Dialect, Outbound
from .json_grammar import JsonGrammar, compact_json


class G2CoreDialect(Dialect):
    """g2core firmware (Arduino Due and g2 boards)."""

    name = "g2core"
    display_name = "g2core"

    def __init__(self):
        self.grammar = JsonGrammar("g2core")

    def format_line(self, gcode: str) -> Outbound:
        if gcode.startswith("{"):
            return Outbound.line(gcode)
        return Outbound.line(compact_json({"gc": gcode}))

    def format_jog(self, axis: str, distance: float, feed: float) -> List[Outbound]:
        return [
            self.format_line(f"G91 G1 {axis}{distance:.3f} F{feed:g}"),
            self.format_line("G90"),
        ]

    def format_home(self) -> List[Outbound]:
        return [self.format_line("G28.2 X0 Y0 Z0")]

    def format_override(self, kind: OverrideKind, delta: int, target: int) -> List[Outbound]:
        key = "mfo" if kind is OverrideKind.FEED else "sso"
        return [Outbound.line(compact_json({key: target / 100}))]

    def format_status_query(self) -> Outbound:
        return Outbound(b'{"sr":null}\n', '{"sr":null}', acknowledged=False, status_query=True)

    def format_version_query(self) -> Optional[Outbound]:
        return Outbound(b'{"fb":null}\n', '{"fb":null}', acknowledged=False)

    def format_unlock(self) -> List[Outbound]:
        return [Outbound.line('{"clear":null}')]

    def parse_response(self, raw: str) -> ParsedResponse:
        return self.grammar.classify(raw)

    def parse_status(self, raw: str) -> MachineStatus:
        return self.grammar.parse_status(raw)

    def format_status(self, status: MachineStatus) -> str:
        return self.grammar.format_status(status)

    def looks_like_status(self, raw: str) -> bool:
        return '"sr"' in raw
