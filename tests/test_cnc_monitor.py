"""
Unit tests for the status monitor.

These tests verify history bounds, tick handling of good, garbled and
missing replies, and the background polling thread.
"""

import time
import unittest

from cnc_config import MonitorConfig
from cnc_controller import Controller
from cnc_core import MachineState, MachineStatus, Position
from cnc_logger import DeviceLogger
from cnc_monitor import HISTORY_SIZE, StatusHistory, StatusMonitor
from mock_stream import GrblResponder, MockStream


class TestStatusHistory(unittest.TestCase):
    """Test cases for the bounded status history."""

    def test_default_capacity(self):
        """Test the history holds 300 snapshots by default."""
        self.assertEqual(StatusHistory().capacity, HISTORY_SIZE)
        self.assertEqual(HISTORY_SIZE, 300)

    def test_keeps_most_recent(self):
        """Test overflow keeps the most recent 300 snapshots in order."""
        history = StatusHistory()
        for i in range(350):
            history.append(MachineStatus(line_number=i))
        snapshots = history.snapshot()
        self.assertEqual(len(history), 300)
        self.assertEqual([s.line_number for s in snapshots], list(range(50, 350)))


class TestStatusMonitor(unittest.TestCase):
    """Test cases for status polling."""

    def setUp(self):
        """Set up test fixtures."""
        self.device_logger = DeviceLogger()
        self.controller = Controller("grbl", device_logger=self.device_logger, greeting_timeout=0.5)
        self.responder = GrblResponder(status=b"<Run|MPos:1.000,2.000,3.000|FS:800,10000>\r\n")
        self.controller.usb_stream = MockStream(responder=self.responder)
        self.controller.connect("/dev/ttyUSB0")
        self.config = MonitorConfig(poll_interval=0.02, reply_timeout=0.2, history_size=10)
        self.monitor = StatusMonitor(self.controller, self.config, device_logger=self.device_logger)

    def tearDown(self):
        self.monitor.stop()
        self.controller.disconnect()

    def test_initial_state(self):
        """Test an unpolled monitor reports an Unknown status."""
        self.assertEqual(self.monitor.current_status(), MachineStatus())
        self.assertIsNone(self.monitor.latest())
        self.assertIsNone(self.monitor.last_update)
        self.assertEqual(self.monitor.history(), [])

    def test_tick(self):
        """Test one tick appends a parsed snapshot."""
        status = self.monitor.tick()
        self.assertEqual(status.state, MachineState.RUN)
        self.assertEqual(status.machine_position, Position(1.0, 2.0, 3.0))
        self.assertEqual(status.firmware_version, "Grbl 1.1h")
        self.assertEqual(self.monitor.history(), [status])
        self.assertIsNotNone(self.monitor.last_update)

    def test_garbled_reply_does_not_stop_polling(self):
        """Test a parse failure is counted and the next tick still works."""
        self.responder.status = b"<Run|MPos:1.000,2.0\r\n"
        self.assertIsNone(self.monitor.tick())
        self.assertEqual(self.monitor.parse_errors, 1)
        self.assertIn("Unparseable", self.monitor.last_error)
        self.assertEqual(self.monitor.history(), [])

        self.responder.status = b"<Idle|MPos:0.000,0.000,0.000>\r\n"
        self.assertEqual(self.monitor.tick().state, MachineState.IDLE)
        self.assertEqual(len(self.monitor.history()), 1)

    def test_missing_reply(self):
        """Test a poll without a reply is recorded as a timeout."""
        self.responder.status = None
        self.assertIsNone(self.monitor.tick())
        self.assertEqual(self.monitor.timeouts, 1)
        self.assertIn("No status reply", self.monitor.last_error)

    def test_disconnected_tick(self):
        """Test ticks are skipped while disconnected."""
        self.controller.disconnect()
        self.assertIsNone(self.monitor.tick())
        self.assertIsNone(self.monitor.last_error)

    def test_history_tail(self):
        """Test history respects its capacity and count."""
        for _ in range(12):
            self.monitor.tick()
        self.assertEqual(len(self.monitor.history()), 10)
        self.assertEqual(len(self.monitor.history(3)), 3)

    def test_queries_not_in_console(self):
        """Test polling traffic stays out of the console feed."""
        for _ in range(3):
            self.monitor.tick()
        texts = [m.text for m in self.device_logger.console_messages()]
        self.assertNotIn("?", texts)
        self.assertFalse(any(text.startswith("<") for text in texts))

    def test_background_polling(self):
        """Test the background thread fills the history and stops cleanly."""
        self.monitor.start()
        self.assertTrue(self.monitor.is_running())
        deadline = time.time() + 2.0
        while len(self.monitor.history()) < 3 and time.time() < deadline:
            time.sleep(0.02)
        self.monitor.stop()
        self.assertFalse(self.monitor.is_running())
        self.assertGreaterEqual(len(self.monitor.history()), 3)

    def test_adaptive_timing(self):
        """Test adaptive timing polls faster while the machine runs."""
        monitor = StatusMonitor(
            self.controller, MonitorConfig(adaptive_timing=True, running_interval=0.1, idle_interval=0.5)
        )
        self.assertEqual(monitor._next_interval(), 0.5)
        monitor.tick()
        self.assertEqual(monitor._next_interval(), 0.1)

    def test_analytics(self):
        """Test analytics run over the current history."""
        self.monitor.tick()
        self.monitor.tick()
        analytics = self.monitor.analytics()
        self.assertEqual(analytics.samples, 2)
        self.assertEqual(analytics.feed_rate.average, 800.0)


if __name__ == "__main__":
    unittest.main()
