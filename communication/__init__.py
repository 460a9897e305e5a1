"""
Communication module for CNC controller.

This module provides the byte streams used to reach a controller: a serial
port through pyserial, or a TCP socket.
"""

import re

from .usb_stream import USBStream, USBStreamError
from .tcp_stream import TCPStream, TCPStreamError, parse_address

NETWORK_ADDRESS = re.compile(r"^(tcp://)?[A-Za-z0-9.\-]+:\d+$")


def is_network_address(address: str) -> bool:
    """Whether an address names a TCP endpoint rather than a serial port."""
    return bool(NETWORK_ADDRESS.match(address.strip()))


__all__ = [
    'USBStream',
    'USBStreamError',
    'TCPStream',
    'TCPStreamError',
    'parse_address',
    'is_network_address',
]
