"""
TCP communication stream for CNC machines.

This module provides TCP communication for controllers exposing their
serial protocol over the network (FluidNC and grblHAL telnet ports,
serial-to-ethernet bridges).
"""

import socket
import select
import logging
from typing import Optional, Tuple

from cnc_core import TransportError

TCP_PORT = 23
BUFFER_SIZE = 1024
SOCKET_TIMEOUT = 3.0  # seconds


class TCPStreamError(TransportError):
    """Exception raised for TCP stream errors."""

    pass


def parse_address(address: str) -> Tuple[str, int]:
    """
    Split a network address into host and port.

    Args:
        address: "host", "host:port" or "tcp://host:port"

    Returns:
        (host, port) tuple, port defaulting to TCP_PORT

    Raises:
        TCPStreamError: If the port is not a number
    """
    if address.startswith("tcp://"):
        address = address[len("tcp://"):]
    host, sep, port = address.rpartition(":")
    if not sep:
        return address, TCP_PORT
    try:
        return host, int(port)
    except ValueError:
        raise TCPStreamError(f"Invalid port in address '{address}'") from None


class TCPStream:
    """
    TCP communication stream for CNC machines.

    This class handles TCP socket communication with CNC machines
    over WiFi/Ethernet connections.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        """
        Initialize TCP stream.

        Args:
            logger: Logger instance to use
        """
        self.logger = logger or logging.getLogger(__name__)
        self.socket = None

    def send(self, data: bytes) -> int:
        """
        Send data over the socket.

        Args:
            data: Data to send

        Returns:
            Number of bytes sent

        Raises:
            TCPStreamError: If not connected or send fails
        """
        if not self.socket:
            raise TCPStreamError("Not connected")

        try:
            self.socket.sendall(data)
            return len(data)
        except OSError as e:
            raise TCPStreamError(f"Failed to send data: {e}") from e

    def recv(self) -> bytes:
        """
        Receive available data from the socket.

        Returns:
            Received data bytes

        Raises:
            TCPStreamError: If not connected, receive fails or the peer closed
        """
        if not self.socket:
            raise TCPStreamError("Not connected")

        try:
            data = self.socket.recv(BUFFER_SIZE)
        except OSError as e:
            raise TCPStreamError(f"Failed to receive data: {e}") from e
        if not data:
            raise TCPStreamError("Connection closed by peer")
        return data

    def open(self, address: str, baudrate: Optional[int] = None) -> bool:
        """
        Open TCP connection.

        Args:
            address: "host:port" of the controller
            baudrate: Ignored, accepted for interface parity with USBStream

        Returns:
            True if connection successful

        Raises:
            TCPStreamError: If connection fails
        """
        host, port = parse_address(address)
        try:
            self.socket = socket.create_connection((host, port), timeout=SOCKET_TIMEOUT)
            self.socket.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError as e:
            self.socket = None
            self.logger.error(f"Failed to connect to {host}:{port}: {e}")
            raise TCPStreamError(f"Failed to connect: {e}") from e

        self.logger.info(f"Connected to {host}:{port}")
        return True

    def close(self) -> bool:
        """
        Close TCP connection.

        Returns:
            True if disconnection successful
        """
        if self.socket is None:
            return True

        try:
            self.socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            self.socket.close()
            self.logger.info("TCP connection closed")
            return True
        except OSError as e:
            self.logger.error(f"Error closing TCP connection: {e}")
            return False
        finally:
            self.socket = None

    def waiting_for_recv(self) -> bool:
        """
        Check if data is available to receive.

        Returns:
            True if data available
        """
        if not self.socket:
            return False
        try:
            readable, _, _ = select.select([self.socket], [], [], 0)
        except (OSError, ValueError) as e:
            raise TCPStreamError(f"Socket lost: {e}") from e
        return bool(readable)

    def is_connected(self) -> bool:
        return self.socket is not None
