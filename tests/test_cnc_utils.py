"""
Unit tests for CNC utility functions.

These tests verify numeric conversion, version comparison, port discovery
and the ring buffer.
"""

import threading
import unittest
from unittest.mock import Mock, patch

from cnc_utils import (
    RingBuffer,
    clamp,
    digitize_version,
    find_serial_ports,
    format_number,
    safe_float,
    safe_int,
)


class TestCNCUtils(unittest.TestCase):
    """Test cases for CNC utility functions."""

    def test_digitize_version(self):
        """Test version digitization."""
        self.assertEqual(digitize_version("1.2.3"), 1002003)
        self.assertEqual(digitize_version("0.9"), 9000)
        self.assertEqual(digitize_version("1.1h"), 1001000)
        self.assertEqual(digitize_version(""), 0)
        self.assertLess(digitize_version("0.9j"), digitize_version("1.1f"))

    def test_safe_float(self):
        """Test safe float conversion."""
        self.assertEqual(safe_float("3.14"), 3.14)
        self.assertEqual(safe_float("invalid"), 0.0)
        self.assertEqual(safe_float(None, 1.0), 1.0)
        self.assertIsNone(safe_float("nan", None))
        self.assertIsNone(safe_float(float("inf"), None))

    def test_safe_int(self):
        """Test safe integer conversion."""
        self.assertEqual(safe_int("42"), 42)
        self.assertEqual(safe_int("invalid"), 0)
        self.assertIsNone(safe_int(None, None))
        self.assertIsNone(safe_int(float("inf"), None))
        self.assertEqual(safe_int(float("nan")), 0)

    def test_clamp(self):
        """Test value clamping."""
        self.assertEqual(clamp(5, 0, 10), 5)
        self.assertEqual(clamp(-5, 0, 10), 0)
        self.assertEqual(clamp(15, 0, 10), 10)

    def test_format_number(self):
        """Test formatted numbers parse back to the same value."""
        for value in (0.0, -2.0, 10.125, 1e-7):
            self.assertEqual(float(format_number(value)), value)

    def test_find_serial_ports(self):
        """Test serial port discovery lists device names."""
        ports = [Mock(device="/dev/ttyUSB1"), Mock(device="/dev/ttyACM0")]
        with patch("serial.tools.list_ports.comports", return_value=ports):
            self.assertEqual(find_serial_ports(), ["/dev/ttyACM0", "/dev/ttyUSB1"])


class TestRingBuffer(unittest.TestCase):
    """Test cases for the fixed-capacity ring buffer."""

    def test_invalid_capacity(self):
        """Test capacity must be positive."""
        with self.assertRaises(ValueError):
            RingBuffer(0)

    def test_overflow_keeps_latest(self):
        """Test overflow evicts the oldest items and keeps arrival order."""
        buffer = RingBuffer(3)
        buffer.extend(range(7))
        self.assertEqual(len(buffer), 3)
        self.assertEqual(buffer.snapshot(), [4, 5, 6])
        self.assertEqual(buffer.latest(), 6)
        self.assertEqual(buffer.total_appended, 7)
        self.assertTrue(buffer.is_full())

    def test_tail(self):
        """Test tail copies the newest items oldest first."""
        buffer = RingBuffer(5)
        buffer.extend("abcdef")
        self.assertEqual(buffer.tail(2), ["e", "f"])
        self.assertEqual(buffer.tail(0), [])
        self.assertEqual(buffer.tail(99), list("bcdef"))

    def test_snapshot_is_copy(self):
        """Test snapshots are independent of later appends."""
        buffer = RingBuffer(2)
        buffer.append(1)
        snapshot = buffer.snapshot()
        buffer.append(2)
        self.assertEqual(snapshot, [1])

    def test_clear(self):
        """Test clearing empties the buffer."""
        buffer = RingBuffer(2)
        buffer.extend([1, 2, 3])
        buffer.clear()
        self.assertEqual(len(buffer), 0)
        self.assertIsNone(buffer.latest())
        buffer.append(4)
        self.assertEqual(list(buffer), [4])

    def test_concurrent_appends(self):
        """Test appends from several threads are all counted."""
        buffer = RingBuffer(50)

        def writer():
            for i in range(200):
                buffer.append(i)

        threads = [threading.Thread(target=writer) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(buffer.total_appended, 800)
        self.assertEqual(len(buffer), 50)


if __name__ == "__main__":
    unittest.main()
