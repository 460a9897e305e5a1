"""
USB/Serial communication stream for CNC machines.

This module provides USB/Serial communication functionality for connecting
to CNC motion controllers via serial ports.
"""

import time
import logging
from typing import Optional

import serial

from cnc_core import TransportError

SERIAL_TIMEOUT = 0.3  # seconds
DTR_SETTLE = 0.5  # seconds
DEFAULT_BAUDRATE = 115200


class USBStreamError(TransportError):
    """Exception raised for USB stream errors."""
    pass


class USBStream:
    """
    USB/Serial communication stream for CNC machines.

    This class handles USB/Serial communication with CNC machines using
    the pyserial library. Any pyserial URL (e.g. 'socket://host:port' or
    'loop://') is accepted as address.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        """
        Initialize USB stream.

        Args:
            logger: Logger instance to use
        """
        self.logger = logger or logging.getLogger(__name__)
        self.serial = None

    def send(self, data: bytes) -> int:
        """
        Send data to the serial port.

        Args:
            data: Data to send

        Returns:
            Number of bytes sent

        Raises:
            USBStreamError: If not connected or send fails
        """
        if not self.serial:
            raise USBStreamError("Not connected")

        try:
            return self.serial.write(data)
        except serial.SerialException as e:
            raise USBStreamError(f"Failed to send data: {e}") from e

    def recv(self) -> bytes:
        """
        Receive the bytes currently waiting on the serial port.

        Returns:
            Received data bytes

        Raises:
            USBStreamError: If not connected or receive fails
        """
        if not self.serial:
            raise USBStreamError("Not connected")

        try:
            return self.serial.read(self.serial.in_waiting or 1)
        except (serial.SerialException, OSError) as e:
            raise USBStreamError(f"Failed to receive data: {e}") from e

    def open(self, address: str, baudrate: int = DEFAULT_BAUDRATE) -> bool:
        """
        Open serial connection.

        Args:
            address: Serial port address (e.g., '/dev/ttyUSB0', 'COM3')
            baudrate: Line speed

        Returns:
            True if connection successful

        Raises:
            USBStreamError: If connection fails
        """
        try:
            self.serial = serial.serial_for_url(
                address.replace('\\', '\\\\'),  # Escape for Windows
                baudrate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=SERIAL_TIMEOUT,
                write_timeout=SERIAL_TIMEOUT,
                xonxoff=False,
                rtscts=False
            )
        except (serial.SerialException, ValueError) as e:
            self.logger.error(f"Failed to connect to {address}: {e}")
            raise USBStreamError(f"Failed to connect: {e}") from e

        # Toggle DTR to reset Arduino based boards so they print their banner
        try:
            self.serial.dtr = False
            time.sleep(DTR_SETTLE)
            self.serial.reset_input_buffer()
            self.serial.dtr = True
        except (IOError, serial.SerialException):
            pass

        self.logger.info(f"Connected to USB device at {address} ({baudrate} baud)")
        return True

    def close(self) -> bool:
        """
        Close serial connection.

        Returns:
            True if disconnection successful
        """
        if self.serial is None:
            return True

        try:
            self.serial.close()
            self.logger.info("USB connection closed")
            return True
        except (serial.SerialException, OSError) as e:
            self.logger.error(f"Error closing USB connection: {e}")
            return False
        finally:
            self.serial = None

    def waiting_for_recv(self) -> bool:
        """
        Check if data is available to receive.

        Returns:
            True if data available

        Raises:
            USBStreamError: If the port went away
        """
        if not self.serial:
            return False
        try:
            return self.serial.in_waiting > 0
        except (serial.SerialException, OSError) as e:
            raise USBStreamError(f"Serial port lost: {e}") from e

    def is_connected(self) -> bool:
        """
        Check if connected.

        Returns:
            True if connected
        """
        return self.serial is not None and self.serial.is_open
