#!/usr/bin/env python3
"""
Command line status monitor.

Connects to a controller, prints its status once per second and dumps the
console feed on exit.

Usage:
    cnc-monitor /dev/ttyUSB0 [--dialect grbl] [--baud 115200] [--duration 10] [-v]
    cnc-monitor --list-ports
"""

import sys
import time
import argparse
import logging
from dataclasses import replace
from typing import List, Optional

from cnc_config import ControllerSettings, SettingsError, load_settings
from cnc_core import CNCError, MachineStatus
from cnc_session import CNCSession
from cnc_utils import find_serial_ports
from dialects import available_dialects

PRINT_INTERVAL = 1.0  # seconds


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cnc-monitor", description="Monitor a CNC motion controller")
    parser.add_argument("port", nargs="?", help="Serial port, pyserial URL or host:port")
    parser.add_argument("--dialect", choices=available_dialects(), help="Controller firmware dialect")
    parser.add_argument("--baud", type=int, help="Serial line speed")
    parser.add_argument("--config", help="YAML settings file")
    parser.add_argument("--duration", type=float, default=10.0, help="Seconds to monitor (default: 10)")
    parser.add_argument("--list-ports", action="store_true", help="List serial ports and exit")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    return parser


def format_status(status: MachineStatus) -> str:
    parts = [status.state.value]
    if status.machine_position is not None:
        parts.append("MPos:{:.3f},{:.3f},{:.3f}".format(*status.machine_position.as_tuple()))
    if status.work_position is not None:
        parts.append("WPos:{:.3f},{:.3f},{:.3f}".format(*status.work_position.as_tuple()))
    if status.feed_rate is not None:
        parts.append(f"F:{status.feed_rate:g}")
    if status.spindle_speed is not None:
        parts.append(f"S:{status.spindle_speed:g}")
    return " ".join(parts)


def _settings(args: argparse.Namespace) -> ControllerSettings:
    settings = load_settings(args.config) if args.config else ControllerSettings()
    if args.dialect:
        settings = replace(settings, connection=replace(settings.connection, dialect=args.dialect))
    return settings


def main(argv: Optional[List[str]] = None) -> int:
    """Main function."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.list_ports:
        ports = find_serial_ports()
        if not ports:
            print("No serial ports found.")
        for port in ports:
            print(port)
        return 0

    try:
        settings = _settings(args)
    except SettingsError as e:
        print(e, file=sys.stderr)
        return 2

    port = args.port or settings.connection.port
    if not port:
        parser.error("a port is required unless --list-ports is given")

    session = CNCSession(settings)
    try:
        session.connect(port, args.baud)
        print(f"Connected to {port} ({session.controller.firmware_version})")
        deadline = time.time() + args.duration
        while time.time() < deadline:
            time.sleep(PRINT_INTERVAL)
            print(format_status(session.monitor.current_status()))
        analytics = session.analytics()
        print(f"Samples: {analytics.samples}, distance: {analytics.total_distance:.3f} mm")
        return 0
    except KeyboardInterrupt:
        print("\nMonitoring interrupted by user")
        return 1
    except CNCError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        session.disconnect()
        for message in session.console_messages():
            print(message.format_display())


if __name__ == "__main__":
    sys.exit(main())
