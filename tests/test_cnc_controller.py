"""
Unit tests for CNC controller functionality.

These tests verify connection handling, command formatting, acknowledgement
matching and state management against an in-memory fake device.
"""

import threading
import time
import unittest
from unittest.mock import Mock

from cnc_controller import CONN_TCP, CONN_USB, Controller, PendingCommand
from cnc_core import (
    CommandError,
    ConnectionError,
    ConnectionState,
    CriticalError,
    DisconnectedError,
    InvalidParameter,
    MachineState,
    OverrideKind,
    ResponseKind,
    ResponseTimeout,
    TransportError,
)
from cnc_logger import DeviceLogger, MessageType
from mock_stream import GrblResponder, MockStream


def wait_until(predicate, timeout=1.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class ControllerTestCase(unittest.TestCase):
    """Base fixture: a GRBL controller wired to mock streams."""

    def setUp(self):
        """Set up test fixtures."""
        self.device_logger = DeviceLogger()
        self.controller = Controller("grbl", device_logger=self.device_logger, greeting_timeout=0.3)
        self.responder = GrblResponder()
        self.mock_usb_stream = MockStream(responder=self.responder)
        self.mock_tcp_stream = MockStream(responder=self.responder)
        self.controller.usb_stream = self.mock_usb_stream
        self.controller.tcp_stream = self.mock_tcp_stream

    def tearDown(self):
        self.controller.disconnect()

    def connect(self):
        self.controller.connect("/dev/ttyUSB0")
        return self.mock_usb_stream


class TestConnection(ControllerTestCase):
    """Test cases for the connection lifecycle."""

    def test_initialization(self):
        """Test controller initialization."""
        self.assertEqual(self.controller.connection_state, ConnectionState.DISCONNECTED)
        self.assertFalse(self.controller.is_connected())
        self.assertEqual(self.controller.dialect.name, "grbl")
        self.assertIsNotNone(self.controller.logger)

    def test_usb_connection(self):
        """Test USB connection captures the firmware version from the greeting."""
        state = self.controller.connect("/dev/ttyUSB0", 115200)
        self.assertEqual(state, ConnectionState.CONNECTED)
        self.assertTrue(self.controller.is_connected())
        self.assertEqual(self.controller.connection_type, CONN_USB)
        self.assertIs(self.controller.stream, self.mock_usb_stream)
        self.assertEqual(self.controller.firmware_version, "Grbl 1.1h")

    def test_tcp_connection(self):
        """Test a host:port address selects the TCP stream."""
        self.controller.connect("192.168.1.100:23")
        self.assertEqual(self.controller.connection_type, CONN_TCP)
        self.assertIs(self.controller.stream, self.mock_tcp_stream)

    def test_connect_same_port_is_noop(self):
        """Test connecting twice to the same port keeps the connection."""
        self.connect()
        self.controller.connect("/dev/ttyUSB0")
        self.assertEqual(self.mock_usb_stream.open_count, 1)

    def test_connection_failure(self):
        """Test a port that cannot be opened raises ConnectionError."""
        self.mock_usb_stream.fail_open = True
        with self.assertRaises(ConnectionError):
            self.controller.connect("/dev/ttyUSB9")
        self.assertEqual(self.controller.connection_state, ConnectionState.ERROR)
        self.assertIn("/dev/ttyUSB9", self.controller.connection_error)

    def test_missing_greeting(self):
        """Test a silent device fails the handshake after one version query."""
        self.mock_usb_stream.greeting = None
        with self.assertRaises(ConnectionError):
            self.controller.connect("/dev/ttyUSB0")
        self.assertIn("$I", self.responder.lines)
        self.assertEqual(self.controller.connection_state, ConnectionState.ERROR)

    def test_version_query_fallback(self):
        """Test the version query reply completes the handshake."""
        self.mock_usb_stream.greeting = None
        self.responder.queue("$I", b"[VER:1.1h.20190825:]\r\n[OPT:V,15,128]\r\nok\r\n")
        self.controller.connect("/dev/ttyUSB0")
        self.assertTrue(self.controller.is_connected())
        self.assertEqual(self.controller.firmware_version, "Grbl 1.1h")

    def test_disconnection(self):
        """Test disconnect is idempotent and notifies listeners once."""
        listener = Mock()
        self.controller.add_disconnect_listener(listener)
        self.connect()

        self.controller.disconnect()
        self.controller.disconnect()

        self.assertFalse(self.controller.is_connected())
        self.assertFalse(self.mock_usb_stream.connected)
        listener.assert_called_once_with()

    def test_disconnect_fails_pending(self):
        """Test commands awaiting acknowledgement fail on disconnect."""
        self.connect()
        self.responder.queue("G4 P10", b"")
        pending = self.controller.send_line("G4 P10")
        self.controller.disconnect()
        with self.assertRaises(DisconnectedError):
            pending.wait(0.5)

    def test_reconnect(self):
        """Test reconnect reopens the port without notifying listeners."""
        listener = Mock()
        self.controller.add_disconnect_listener(listener)
        self.connect()
        self.controller.reconnect()
        self.assertTrue(self.controller.is_connected())
        self.assertEqual(self.mock_usb_stream.open_count, 2)
        listener.assert_not_called()

    def test_reconnect_without_port(self):
        """Test reconnect before any connect raises ConnectionError."""
        with self.assertRaises(ConnectionError):
            self.controller.reconnect()

    def test_transport_failure(self):
        """Test a read failure moves the connection to Error and fails pending commands."""
        stream = self.connect()
        self.responder.queue("G4 P10", b"")
        pending = self.controller.send_line("G4 P10")
        stream.fail_recv = True

        self.assertTrue(wait_until(lambda: self.controller.connection_state is ConnectionState.ERROR))
        with self.assertRaises(TransportError):
            pending.wait(0.5)
        with self.assertRaises(TransportError):
            self.controller.send_line("G0 X0")

    def test_connection_traces(self):
        """Test connection changes are recorded as trace messages."""
        self.connect()
        self.controller.disconnect()
        traces = [m.text for m in self.device_logger.console_messages() if m.message_type is MessageType.TRACE]
        self.assertTrue(any(text.startswith("Connected to /dev/ttyUSB0") for text in traces))
        self.assertIn("Disconnected", traces)


class TestCommands(ControllerTestCase):
    """Test cases for command sending and acknowledgement matching."""

    def test_send_when_disconnected(self):
        """Test sending without a connection raises DisconnectedError."""
        with self.assertRaises(DisconnectedError):
            self.controller.send_line("G0 X0")

    def test_send_invalid_line(self):
        """Test empty and multi-line input is rejected."""
        self.connect()
        with self.assertRaises(InvalidParameter):
            self.controller.send_line("   ")
        with self.assertRaises(InvalidParameter):
            self.controller.send_line("G0 X0\nG0 Y0")

    def test_send_line(self):
        """Test a line is written with a terminator and acknowledged."""
        stream = self.connect()
        pending = self.controller.send_line("G0 X1")
        self.assertIsInstance(pending, PendingCommand)
        response = pending.wait(1.0)
        self.assertEqual(response.kind, ResponseKind.OK)
        self.assertIn(b"G0 X1\n", stream.sent_data)
        self.assertEqual(self.controller.pending_count(), 0)

    def test_fifo_matching(self):
        """Test responses are matched to commands in send order."""
        self.connect()
        self.responder.queue("G1 X1", b"error:20\r\n")
        first = self.controller.send_line("G1 X1")
        second = self.controller.send_line("G1 X2")

        with self.assertRaises(CommandError) as context:
            first.wait(1.0)
        self.assertEqual(context.exception.code, "20")
        self.assertEqual(context.exception.command, "G1 X1")
        self.assertEqual(second.wait(1.0).kind, ResponseKind.OK)

    def test_critical_error_code(self):
        """Test error:7 fails the command as a critical error."""
        self.connect()
        self.responder.queue("$$", b"error:7\r\n")
        with self.assertRaises(CriticalError):
            self.controller.send_line("$$").wait(1.0)

    def test_alarm_fails_all_pending(self):
        """Test an alarm fails every pending command and notifies listeners."""
        stream = self.connect()
        listener = Mock()
        self.controller.add_alarm_listener(listener)
        self.responder.queue("G1 X10", b"")
        self.responder.queue("G1 X20", b"")
        first = self.controller.send_line("G1 X10")
        second = self.controller.send_line("G1 X20")

        stream.feed(b"ALARM:1\r\n")

        for pending in (first, second):
            with self.assertRaises(CriticalError):
                pending.wait(1.0)
        self.assertTrue(wait_until(lambda: listener.called))
        self.assertEqual(self.controller.current_status().state, MachineState.ALARM)
        self.assertEqual(listener.call_args[0][0].code, "1")

    def test_wait_timeout(self):
        """Test an unanswered line raises ResponseTimeout."""
        self.connect()
        self.responder.queue("G4 P10", b"")
        with self.assertRaises(ResponseTimeout):
            self.controller.send_line("G4 P10").wait(0.1)

    def test_send_jog(self):
        """Test jog formatting and validation."""
        stream = self.connect()
        pending = self.controller.send_jog("x", 10, 1000)
        self.assertEqual(len(pending), 1)
        self.assertIn(b"$J=G91 G21 X10.000 F1000\n", stream.sent_data)

        with self.assertRaises(InvalidParameter):
            self.controller.send_jog("A", 1, 100)
        with self.assertRaises(InvalidParameter):
            self.controller.send_jog("X", float("nan"), 100)
        with self.assertRaises(InvalidParameter):
            self.controller.send_jog("X", 1, 0)

    def test_send_home(self):
        """Test homing command."""
        stream = self.connect()
        self.controller.send_home()
        self.assertIn("$H", stream.sent_lines())

    def test_send_override(self):
        """Test override nudges use realtime bytes and clamp to 10..200%."""
        stream = self.connect()
        self.assertEqual(self.controller.send_override("feed", 10), [])
        self.assertEqual(stream.sent_data[-1], b"\x91")
        self.assertEqual(self.controller.overrides()[OverrideKind.FEED], 110)

        self.controller.send_override(OverrideKind.FEED, 500)
        self.assertEqual(stream.sent_data[-1], b"\x91" * 9)
        self.assertEqual(self.controller.overrides()[OverrideKind.FEED], 200)

        sent = len(stream.sent_data)
        self.controller.send_override(OverrideKind.FEED, 10)
        self.assertEqual(len(stream.sent_data), sent)

        self.controller.send_override("spindle", -3)
        self.assertEqual(stream.sent_data[-1], b"\x9d" * 3)

        with self.assertRaises(InvalidParameter):
            self.controller.send_override("rapid", 10)

    def test_concurrent_overrides(self):
        """Test concurrent nudges each apply exactly once."""
        stream = self.connect()
        threads = [threading.Thread(target=self.controller.send_override, args=("feed", 1)) for _ in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=2.0)

        self.assertEqual(self.controller.overrides()[OverrideKind.FEED], 120)
        self.assertEqual(b"".join(stream.sent_data).count(b"\x93"), 20)

    def test_soft_reset(self):
        """Test soft reset sends ctrl-x and discards pending commands."""
        stream = self.connect()
        self.responder.queue("G4 P10", b"")
        pending = self.controller.send_line("G4 P10")
        self.controller.soft_reset()
        self.assertEqual(stream.sent_data[-1], b"\x18")
        with self.assertRaises(CommandError):
            pending.wait(0.5)

    def test_unlock_and_hold(self):
        """Test unlock, feed hold and cycle resume formatting."""
        stream = self.connect()
        self.controller.unlock()
        self.controller.feed_hold()
        self.controller.cycle_resume()
        self.assertIn("$X", stream.sent_lines())
        self.assertEqual(stream.sent_data[-2:], [b"!", b"~"])


class TestStatus(ControllerTestCase):
    """Test cases for status polling and parsing."""

    def test_poll_status(self):
        """Test one status poll returns the raw reply and updates the snapshot."""
        self.responder.status = b"<Run|MPos:1.000,2.000,3.000|FS:500,12000|Ov:120,100,90>\r\n"
        self.connect()
        raw = self.controller.poll_status(1.0)
        self.assertEqual(raw, "<Run|MPos:1.000,2.000,3.000|FS:500,12000|Ov:120,100,90>")

        status = self.controller.current_status()
        self.assertEqual(status.state, MachineState.RUN)
        self.assertEqual(status.feed_rate, 500.0)
        self.assertEqual(status.firmware_version, "Grbl 1.1h")
        self.assertEqual(self.controller.overrides()[OverrideKind.FEED], 120)
        self.assertEqual(self.controller.overrides()[OverrideKind.SPINDLE], 90)

    def test_poll_status_timeout(self):
        """Test a missing status reply returns None."""
        self.responder.status = None
        self.connect()
        self.assertIsNone(self.controller.poll_status(0.1))

    def test_status_traffic_not_logged(self):
        """Test status queries, their replies and acknowledgements stay out of the console."""
        self.connect()
        self.controller.poll_status(1.0)
        self.controller.send_line("G0 X1").wait(1.0)

        texts = [m.text for m in self.device_logger.console_messages()]
        self.assertNotIn("?", texts)
        self.assertNotIn("ok", texts)
        self.assertFalse(any(text.startswith("<") for text in texts))
        self.assertIn("G0 X1", texts)

    def test_parse_status_stamps_firmware(self):
        """Test parse_status carries the captured firmware version."""
        self.connect()
        status = self.controller.parse_status("<Idle|MPos:0,0,0>")
        self.assertEqual(status.firmware_version, "Grbl 1.1h")

    def test_parse_response_unparseable(self):
        """Test garbled input classifies as unparseable instead of raising."""
        response = self.controller.parse_response("<Idle|MPos:abc>")
        self.assertEqual(response.kind, ResponseKind.UNPARSEABLE)

    def test_reader_survives_garbled_status(self):
        """Test non-finite telemetry does not stop the reader thread."""
        stream = self.connect()
        stream.feed(b"<Idle|Bf:nan,0>\r\n<Idle|Ln:inf>\r\n")
        time.sleep(0.05)

        self.assertTrue(self.controller.thread.is_alive())
        self.assertEqual(self.controller.connection_state, ConnectionState.CONNECTED)
        self.assertEqual(self.controller.send_line("G0 X1").wait(1.0).kind, ResponseKind.OK)
        self.assertIsNotNone(self.controller.poll_status(1.0))

    def test_reader_survives_handler_failure(self):
        """Test an exception while handling one line is logged and reading continues."""
        stream = self.connect()
        parse = self.controller.dialect.parse_response

        def flaky_parse(raw):
            if raw == "boom":
                raise RuntimeError("handler failed")
            return parse(raw)

        self.controller.dialect.parse_response = flaky_parse
        with self.assertLogs("cnc_controller", level="ERROR") as logs:
            stream.feed(b"boom\r\n")
            self.assertTrue(wait_until(lambda: logs.output))

        self.assertIn("boom", logs.output[0])
        self.assertTrue(self.controller.thread.is_alive())
        self.assertEqual(self.controller.send_line("G0 X2").wait(1.0).kind, ResponseKind.OK)


if __name__ == "__main__":
    unittest.main()
