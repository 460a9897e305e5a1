"""
CNC Controller Module - Protocol adapter for CNC motion controllers.

This module provides the controller class that owns the transport to a
motion controller, formats commands through the selected dialect, matches
acknowledgements to commands in FIFO order and keeps the connection and
machine state that the rest of the application reads.
"""

import time
import threading
import logging
from collections import deque
from dataclasses import replace
from typing import Callable, Deque, Dict, List, Optional, Union

from cnc_core import (
    CNCError,
    CommandError,
    ConnectionError,
    ConnectionState,
    DisconnectedError,
    InvalidParameter,
    MachineState,
    MachineStatus,
    OVERRIDE_MAX,
    OVERRIDE_MIN,
    OverrideKind,
    ParsedResponse,
    ResponseKind,
    ResponseTimeout,
    SUPPORTED_AXES,
    TransportError,
)
from cnc_logger import DeviceLogger, Severity
from cnc_utils import clamp, safe_float, safe_int
from communication import TCPStream, USBStream, is_network_address
from dialects import Dialect, Outbound, get_dialect

# Constants
STREAM_POLL = 0.01  # seconds between reads when idle
GREETING_TIMEOUT = 2.5  # seconds
STATUS_TIMEOUT = 1.0  # seconds
THREAD_JOIN_TIMEOUT = 2.0  # seconds
DEFAULT_BAUDRATE = 115200

# Connection types
CONN_USB = 0
CONN_TCP = 1


class PendingCommand:
    """
    Handle for a line awaiting its acknowledgement.

    Resolved by the reader thread when the matching "ok" arrives, or failed
    with the error the controller reported for it.
    """

    def __init__(self, line: str):
        self.line = line
        self.sent_at = time.time()
        self.response: Optional[ParsedResponse] = None
        self.error: Optional[CNCError] = None
        self._event = threading.Event()

    def resolve(self, response: ParsedResponse) -> None:
        self.response = response
        self._event.set()

    def fail(self, error: CNCError) -> None:
        self.error = error
        self._event.set()

    def done(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> ParsedResponse:
        """
        Block until the command is acknowledged.

        Args:
            timeout: Seconds to wait, None to wait forever

        Returns:
            The acknowledgement

        Raises:
            ResponseTimeout: If no response arrived in time
            CommandError: If the controller rejected the line
            CriticalError: If an alarm or critical fault discarded it
            TransportError: If the connection failed before a response
        """
        if not self._event.wait(timeout):
            raise ResponseTimeout(f"No response to '{self.line}' within {timeout}s")
        if self.error is not None:
            raise self.error
        return self.response

    def __repr__(self) -> str:
        state = "done" if self.done() else "pending"
        return f"<PendingCommand {self.line!r} {state}>"


class Controller:
    """
    Protocol adapter for one motion controller.

    All writes go through a single lock so that each command reaches the
    wire whole and in the order it was queued. A background thread reads the
    transport, classifies each line with the dialect and routes it:
    acknowledgements and errors to the oldest pending command, status
    reports to the outstanding status poll, alarms to every pending command.
    """

    def __init__(
        self,
        dialect: Union[str, Dialect] = "grbl",
        device_logger: Optional[DeviceLogger] = None,
        greeting_timeout: float = GREETING_TIMEOUT,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the controller.

        Args:
            dialect: Dialect instance or registered dialect name
            device_logger: Console feed receiving all traffic, optional
            greeting_timeout: Seconds to wait for the firmware banner
            logger: Logger instance to use, creates new one if None
        """
        self.logger = logger or logging.getLogger(__name__)
        self.dialect = get_dialect(dialect) if isinstance(dialect, str) else dialect
        self.device_logger = device_logger
        self.greeting_timeout = greeting_timeout

        # Initialize communication streams
        self.usb_stream = USBStream()
        self.tcp_stream = TCPStream()
        self.stream = None
        self.connection_type = CONN_USB
        self.port: Optional[str] = None
        self.baudrate = DEFAULT_BAUDRATE

        self.connection_state = ConnectionState.DISCONNECTED
        self.connection_error: Optional[str] = None
        self.firmware_version: Optional[str] = None

        self._pending: Deque[PendingCommand] = deque()
        self._pending_lock = threading.Lock()
        self._io_lock = threading.RLock()
        self._query_lock = threading.Lock()
        self._awaiting_status = False
        self._status_reply: Optional[str] = None
        self._status_event = threading.Event()
        self._version_event = threading.Event()
        self._status = MachineStatus()
        self._status_lock = threading.Lock()
        self._override_lock = threading.Lock()
        self._overrides: Dict[OverrideKind, int] = {OverrideKind.FEED: 100, OverrideKind.SPINDLE: 100}

        self._disconnect_listeners: List[Callable[[], None]] = []
        self._alarm_listeners: List[Callable[[ParsedResponse], None]] = []

        # Threading
        self.thread = None
        self.stop_event = threading.Event()

    # Connection management

    def connect(self, port: str, baudrate: int = DEFAULT_BAUDRATE) -> ConnectionState:
        """
        Connect to the controller and wait for its greeting.

        If the firmware banner does not arrive within the greeting timeout the
        dialect's version query is sent once before giving up.

        Args:
            port: Serial device path, pyserial URL, or "host:port" for TCP
            baudrate: Serial line speed, ignored for TCP

        Returns:
            The resulting connection state

        Raises:
            ConnectionError: If the port cannot be opened or no greeting arrives
        """
        if self.connection_state is ConnectionState.CONNECTED:
            if port == self.port:
                return self.connection_state
            self.disconnect()
        elif self.stream is not None:
            self._close_stream(TransportError("Connection replaced"))

        self.port = port
        self.baudrate = baudrate
        self.firmware_version = None
        self._set_state(ConnectionState.CONNECTING)
        self._open(port, baudrate)
        return self.connection_state

    def reconnect(self) -> ConnectionState:
        """
        Close and reopen the last used port.

        Disconnect listeners are not notified.

        Returns:
            The resulting connection state

        Raises:
            ConnectionError: If there is no previous port or reopening fails
        """
        if self.port is None:
            raise ConnectionError("No previous connection to restore")
        self.logger.info(f"Reconnecting to {self.port}")
        self._close_stream(TransportError("Connection reset for reconnect"))
        self._set_state(ConnectionState.CONNECTING)
        self._open(self.port, self.baudrate)
        return self.connection_state

    def disconnect(self) -> None:
        """Release the transport. Safe to call when already disconnected."""
        if self.connection_state is ConnectionState.DISCONNECTED and self.stream is None:
            return

        self._close_stream(DisconnectedError("Disconnected"))
        self._set_state(ConnectionState.DISCONNECTED)
        self._trace("Disconnected", Severity.INFO)

        for listener in list(self._disconnect_listeners):
            try:
                listener()
            except Exception as e:
                self.logger.error(f"Disconnect listener failed: {e}")

    def is_connected(self) -> bool:
        return self.connection_state is ConnectionState.CONNECTED

    def add_disconnect_listener(self, callback: Callable[[], None]) -> None:
        """Register a callback run after every explicit disconnect."""
        self._disconnect_listeners.append(callback)

    def add_alarm_listener(self, callback: Callable[[ParsedResponse], None]) -> None:
        """Register a callback run on the reader thread for every alarm."""
        self._alarm_listeners.append(callback)

    # Commands

    def send_line(self, gcode: str) -> PendingCommand:
        """
        Queue one command line without waiting for its acknowledgement.

        Args:
            gcode: Command text without line terminator

        Returns:
            Handle resolved when the controller acknowledges the line

        Raises:
            InvalidParameter: If the line is empty or contains a newline
            DisconnectedError: If not connected
            TransportError: If the connection failed or the write fails
        """
        line = gcode.strip()
        if not line:
            raise InvalidParameter("Cannot send an empty line")
        if "\n" in line or "\r" in line:
            raise InvalidParameter("send_line takes a single line")
        return self._dispatch([self.dialect.format_line(line)])[0]

    def send_jog(self, axis: str, distance: float, feed: float) -> List[PendingCommand]:
        """
        Jog one axis by a relative distance.

        Args:
            axis: X, Y or Z
            distance: Signed distance in millimeters
            feed: Feed rate in mm/min

        Returns:
            Handles for the acknowledged lines of the jog

        Raises:
            InvalidParameter: If the axis is unsupported or the numbers are invalid
        """
        axis_name = str(axis).strip().upper()
        if axis_name not in SUPPORTED_AXES:
            raise InvalidParameter(f"Unsupported jog axis '{axis}', expected one of {', '.join(SUPPORTED_AXES)}")
        distance_value = safe_float(distance, None)
        if distance_value is None:
            raise InvalidParameter(f"Invalid jog distance {distance!r}")
        feed_value = safe_float(feed, None)
        if feed_value is None or feed_value <= 0:
            raise InvalidParameter(f"Invalid jog feed rate {feed!r}")
        return self._dispatch(self.dialect.format_jog(axis_name, distance_value, feed_value))

    def send_home(self) -> List[PendingCommand]:
        """Start the homing cycle."""
        return self._dispatch(self.dialect.format_home())

    def send_override(self, kind: Union[OverrideKind, str], delta: int) -> List[PendingCommand]:
        """
        Nudge the feed or spindle override by a percentage.

        The resulting override is clamped to 10..200%.

        Args:
            kind: OverrideKind or its name ("feed", "spindle")
            delta: Signed percentage change

        Returns:
            Handles for acknowledged lines; empty for realtime overrides or
            when the clamped change is zero

        Raises:
            InvalidParameter: If kind or delta is invalid
        """
        try:
            kind = OverrideKind(kind.lower() if isinstance(kind, str) else kind)
        except ValueError:
            raise InvalidParameter(f"Unknown override kind {kind!r}") from None
        delta_value = safe_int(delta, None)
        if delta_value is None or isinstance(delta, bool):
            raise InvalidParameter(f"Invalid override delta {delta!r}")

        with self._override_lock:
            current = self._overrides[kind]
            target = int(clamp(current + delta_value, OVERRIDE_MIN, OVERRIDE_MAX))
            if target == current:
                return []
            pending = self._dispatch(self.dialect.format_override(kind, target - current, target))
            self._overrides[kind] = target
        return pending

    def overrides(self) -> Dict[OverrideKind, int]:
        """Current override percentages."""
        with self._override_lock:
            return dict(self._overrides)

    def query_status(self) -> None:
        """Send the status-query token. The reply is not FIFO-matched."""
        self._dispatch([self.dialect.format_status_query()])

    def poll_status(self, timeout: float = STATUS_TIMEOUT) -> Optional[str]:
        """
        Send one status query and wait for one status-shaped reply.

        Only one poll is outstanding at a time; concurrent callers queue.

        Args:
            timeout: Seconds to wait for the reply

        Returns:
            The raw reply line, or None on timeout

        Raises:
            DisconnectedError: If not connected
            TransportError: If the query cannot be written
        """
        with self._query_lock:
            self._status_event.clear()
            self._status_reply = None
            self._awaiting_status = True
            try:
                self.query_status()
                if not self._status_event.wait(timeout):
                    return None
                return self._status_reply
            finally:
                self._awaiting_status = False

    def soft_reset(self) -> None:
        """
        Reset the controller.

        Commands still waiting for acknowledgement are failed, since the
        controller discards its buffers on reset.
        """
        self._dispatch(self.dialect.format_soft_reset())
        self._fail_pending(CommandError("Discarded by controller reset"))
        with self._override_lock:
            self._overrides = {OverrideKind.FEED: 100, OverrideKind.SPINDLE: 100}
        self._trace("Controller reset sent", Severity.WARNING)

    def unlock(self) -> List[PendingCommand]:
        """Clear the alarm lock."""
        return self._dispatch(self.dialect.format_unlock())

    def feed_hold(self) -> None:
        self._dispatch(self.dialect.format_feed_hold())

    def cycle_resume(self) -> None:
        self._dispatch(self.dialect.format_cycle_resume())

    # Parsing and state

    def parse_response(self, raw: str) -> ParsedResponse:
        return self.dialect.parse_response(raw)

    def parse_status(self, raw: str) -> MachineStatus:
        return self.dialect.parse_status(raw).with_firmware(self.firmware_version)

    def current_status(self) -> MachineStatus:
        """Latest machine status snapshot, stamped with the firmware version."""
        with self._status_lock:
            return self._status

    def pending_count(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    # Internals

    def _set_state(self, state: ConnectionState, reason: Optional[str] = None) -> None:
        self.connection_state = state
        self.connection_error = reason
        if reason:
            self.logger.info(f"Connection state: {state.value} ({reason})")
        else:
            self.logger.info(f"Connection state: {state.value}")

    def _open(self, port: str, baudrate: int) -> None:
        if is_network_address(port):
            self.connection_type = CONN_TCP
            stream = self.tcp_stream
        else:
            self.connection_type = CONN_USB
            stream = self.usb_stream
        conn_type_str = "TCP" if self.connection_type == CONN_TCP else "USB"
        self.logger.info(f"Attempting {conn_type_str} connection to {port} ({self.dialect.display_name})")

        self._version_event.clear()
        try:
            stream.open(port, baudrate)
        except TransportError as e:
            reason = f"Failed to open {port}: {e}"
            self._set_state(ConnectionState.ERROR, reason)
            self._trace(reason, Severity.ERROR)
            raise ConnectionError(reason) from e

        self.stream = stream
        self._start_stream_thread()

        if not self._await_greeting():
            reason = f"No greeting from {self.dialect.display_name} controller on {port}"
            self._close_stream(TransportError(reason))
            self._set_state(ConnectionState.ERROR, reason)
            self._trace(reason, Severity.ERROR)
            raise ConnectionError(reason)

        self._set_state(ConnectionState.CONNECTED)
        self._trace(f"Connected to {port} ({self.firmware_version})", Severity.INFO)

    def _await_greeting(self) -> bool:
        if self._version_event.wait(self.greeting_timeout):
            return True
        query = self.dialect.format_version_query()
        if query is None:
            return False
        self.logger.debug("No greeting received, sending version query")
        try:
            self._dispatch([query])
        except TransportError as e:
            self.logger.warning(f"Version query failed: {e}")
            return False
        return self._version_event.wait(self.greeting_timeout)

    def _ensure_writable(self) -> None:
        if self.stream is not None and self.connection_state in (
            ConnectionState.CONNECTED,
            ConnectionState.CONNECTING,
        ):
            return
        if self.connection_state is ConnectionState.ERROR:
            raise TransportError(f"Connection error: {self.connection_error}")
        raise DisconnectedError("Not connected to CNC machine")

    def _dispatch(self, outbounds: List[Outbound]) -> List[PendingCommand]:
        pending = []
        with self._io_lock:
            self._ensure_writable()
            for outbound in outbounds:
                command = None
                if outbound.acknowledged:
                    command = PendingCommand(outbound.text)
                    with self._pending_lock:
                        self._pending.append(command)
                try:
                    self.stream.send(outbound.data)
                except TransportError as e:
                    if command is not None:
                        with self._pending_lock:
                            if command in self._pending:
                                self._pending.remove(command)
                    self._handle_transport_failure(f"Write failed: {e}")
                    raise TransportError(f"Failed to send '{outbound.text}': {e}") from e

                self.logger.debug(f"Raw data sent: {outbound.data!r} ({len(outbound.data)} bytes)")
                if self.device_logger is not None:
                    self.device_logger.log_command(outbound.text, status_query=outbound.status_query)
                if command is not None:
                    pending.append(command)
        return pending

    def _pop_pending(self) -> Optional[PendingCommand]:
        with self._pending_lock:
            return self._pending.popleft() if self._pending else None

    def _fail_pending(self, error: CNCError) -> None:
        with self._pending_lock:
            failed = list(self._pending)
            self._pending.clear()
        for command in failed:
            command.fail(error)
        if failed:
            self.logger.debug(f"Failed {len(failed)} pending command(s): {error}")

    def _handle_transport_failure(self, reason: str) -> None:
        if self.connection_state is not ConnectionState.CONNECTED:
            return
        self.logger.error(f"Transport failure: {reason}")
        self._set_state(ConnectionState.ERROR, reason)
        self.stop_event.set()
        self._fail_pending(TransportError(reason))
        self._trace(f"Connection lost: {reason}", Severity.ERROR)

    def _close_stream(self, error: CNCError) -> None:
        self._stop_stream_thread()
        with self._io_lock:
            if self.stream:
                self.stream.close()
                self.stream = None
        self._fail_pending(error)

    def _trace(self, text: str, severity: Severity) -> None:
        if self.device_logger is not None:
            self.device_logger.log_trace(text, severity)

    def _start_stream_thread(self) -> None:
        """Start the background reader thread."""
        self.stop_event = threading.Event()
        self.thread = threading.Thread(
            target=self._stream_io_loop, args=(self.stream, self.stop_event), daemon=True
        )
        self.thread.start()
        self.logger.debug("Started stream I/O thread")

    def _stop_stream_thread(self) -> None:
        """Stop the background reader thread."""
        self.stop_event.set()
        if self.thread and self.thread.is_alive() and self.thread is not threading.current_thread():
            self.thread.join(timeout=THREAD_JOIN_TIMEOUT)
        self.thread = None

    def _stream_io_loop(self, stream, stop_event: threading.Event) -> None:
        """
        Background thread loop reading the transport.

        Exits when stopped or when the transport fails; a failure moves the
        connection to the Error state and fails all pending commands.
        """
        line_buffer = b""
        self.logger.debug("Stream I/O loop started")

        while not stop_event.is_set():
            try:
                if stream.waiting_for_recv():
                    received_data = stream.recv()
                    if received_data:
                        line_buffer = self._process_received_data(received_data, line_buffer)
                else:
                    stop_event.wait(STREAM_POLL)
            except TransportError as e:
                if not stop_event.is_set():
                    self._handle_transport_failure(f"Read failed: {e}")
                break

        self.logger.debug("Stream I/O loop ended")

    def _process_received_data(self, data: bytes, line_buffer: bytes) -> bytes:
        """
        Split received bytes into lines and handle each complete one.

        Args:
            data: Raw bytes received from machine
            line_buffer: Incomplete line left over from the previous read

        Returns:
            Updated line buffer
        """
        line_buffer += data
        while b"\n" in line_buffer:
            raw_line, line_buffer = line_buffer.split(b"\n", 1)
            line = raw_line.decode("utf-8", errors="replace").strip()
            if line:
                try:
                    self._handle_line(line)
                except Exception as e:
                    self.logger.error(f"Failed to handle response {line!r}: {e}")
        return line_buffer

    def _handle_line(self, line: str) -> None:
        """
        Route one response line.

        Args:
            line: Response line from machine, stripped
        """
        self.logger.debug(f"Raw response received: {line!r}")
        response = self.dialect.parse_response(line)
        kind = response.kind

        status_shaped = kind is ResponseKind.STATUS_REPORT or (
            kind is ResponseKind.UNPARSEABLE and self.dialect.looks_like_status(line)
        )
        if status_shaped:
            reply_to_poll = self._awaiting_status
            if kind is ResponseKind.STATUS_REPORT:
                self._update_status(response.status)
            if reply_to_poll:
                self._status_reply = line
                self._status_event.set()
            if self.device_logger is not None:
                self.device_logger.log_response(line, kind, status_reply=reply_to_poll)
            return

        if self.device_logger is not None:
            self.device_logger.log_response(line, kind)

        if kind is ResponseKind.OK:
            command = self._pop_pending()
            if command is None:
                self.logger.debug(f"Unmatched acknowledgement: {line!r}")
            else:
                command.resolve(response)
        elif kind is ResponseKind.ERROR:
            self._on_error(response)
        elif kind is ResponseKind.ALARM:
            self._on_alarm(response)
        elif kind is ResponseKind.VERSION:
            if self.firmware_version is None:
                self.firmware_version = response.text
                self.logger.info(f"Firmware version: {response.text}")
            self._version_event.set()
        elif kind is ResponseKind.UNPARSEABLE:
            self.logger.warning(f"Unparseable response {line!r}: {response.text}")

    def _on_error(self, response: ParsedResponse) -> None:
        command = self._pop_pending()
        if command is None:
            self.logger.warning(f"Unmatched error response: {response.raw!r}")
            return
        command.fail(self.dialect.error_for(response, command.line))

    def _on_alarm(self, response: ParsedResponse) -> None:
        self.logger.error(f"Machine alarm received: {response.raw}")
        self._fail_pending(self.dialect.error_for(response))
        with self._status_lock:
            self._status = replace(self._status, state=MachineState.ALARM)
        for listener in list(self._alarm_listeners):
            try:
                listener(response)
            except Exception as e:
                self.logger.error(f"Alarm listener failed: {e}")

    def _update_status(self, status: MachineStatus) -> None:
        status = status.with_firmware(self.firmware_version)
        with self._status_lock:
            self._status = status
        if status.overrides is not None:
            with self._override_lock:
                self._overrides[OverrideKind.FEED] = status.overrides[0]
                self._overrides[OverrideKind.SPINDLE] = status.overrides[2]
