"""
Controller dialects.

This package provides one dialect per supported firmware family and the
registry the controller uses to select one by name.
"""

from typing import Dict, List, Type

from cnc_core import InvalidParameter

from .base import Dialect, Outbound
from .fluidnc import FluidNCDialect
from .g2core import G2CoreDialect
from .grbl import GrblDialect
from .smoothieware import SmoothiewareDialect
from .tinyg import TinyGDialect

DIALECTS: Dict[str, Type[Dialect]] = {
    dialect.name: dialect
    for dialect in (GrblDialect, FluidNCDialect, SmoothiewareDialect, TinyGDialect, G2CoreDialect)
}


def available_dialects() -> List[str]:
    """Return the registered dialect names."""
    return sorted(DIALECTS)


def get_dialect(name: str) -> Dialect:
    """
    Create a dialect by name.

    Args:
        name: Registered dialect name, case-insensitive

    Returns:
        New dialect instance

    Raises:
        InvalidParameter: If no dialect is registered under the name
    """
    key = (name or "").strip().lower()
    if key not in DIALECTS:
        raise InvalidParameter(f"Unknown dialect '{name}', expected one of: {', '.join(available_dialects())}")
    return DIALECTS[key]()


__all__ = [
    "Dialect",
    "Outbound",
    "DIALECTS",
    "available_dialects",
    "get_dialect",
    "GrblDialect",
    "FluidNCDialect",
    "SmoothiewareDialect",
    "TinyGDialect",
    "G2CoreDialect",
]
