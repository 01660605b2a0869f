"""Log serial traffic with the acquisition board, one timestamped line per TX/RX.

Opens the port directly (the relay must not be running), optionally sends a
few commands and records everything the board prints for a while.

Usage:
    python -m tools.serial_monitor /dev/ttyACM0 --send b --send STATUS --seconds 10
"""

import argparse
import logging
import sys
import time
from datetime import datetime, timezone
from typing import Optional, Sequence, TextIO

from sensor_relay.errors import SerialIOError
from sensor_relay.transport import Transport

logger = logging.getLogger(__name__)


class SerialMonitor:
    """Writes every transmitted and received line to a log stream."""

    def __init__(self, transport: Transport, out: TextIO) -> None:
        self._transport = transport
        self._out = out
        self.tx_count = 0
        self.rx_count = 0

    def log(self, direction: str, text: str) -> None:
        stamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
        self._out.write(f"{stamp} {direction}: {text!r}\n")
        self._out.flush()

    def send(self, command: str) -> None:
        self._transport.write_line(command)
        self.tx_count += 1
        self.log("TX", command)

    def capture(self, seconds: float) -> int:
        """Record received lines for ``seconds``.

        Returns:
            Number of lines received during the window
        """
        received = 0
        deadline = time.monotonic() + seconds
        while time.monotonic() < deadline:
            line = self._transport.readline()
            if line is None:
                continue
            received += 1
            self.rx_count += 1
            self.log("RX", line)
        return received


def run(
    port: str,
    baud: int,
    commands: Sequence[str],
    seconds: float,
    out: TextIO,
    settle: float = 2.0,
    transport: Optional[Transport] = None,
) -> SerialMonitor:
    """Open the port, send ``commands`` and capture output.

    Args:
        port: Serial device
        baud: Baud rate
        commands: Commands sent after the settle delay, in order
        seconds: Capture window after the last command
        out: Stream receiving the log lines
        settle: Capture window before the first command (power-on output)
        transport: Already open transport, for tests

    Returns:
        The monitor, with TX/RX counters
    """
    transport = transport or Transport.open(port, baud)
    monitor = SerialMonitor(transport, out)
    monitor.log("--", f"opened {port} at {baud} baud")
    try:
        monitor.capture(settle)
        for command in commands:
            monitor.send(command)
            monitor.capture(0.5)
        monitor.capture(seconds)
    finally:
        transport.close()
        monitor.log("--", f"closed after TX={monitor.tx_count} RX={monitor.rx_count}")
    return monitor


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Timestamped serial TX/RX log")
    parser.add_argument("port", nargs="?", default="/dev/ttyACM0", help="Serial device")
    parser.add_argument("--baud", type=int, default=9600, help="Baud rate, default 9600")
    parser.add_argument("--send", action="append", default=[], help="Command to send (repeatable)")
    parser.add_argument("--seconds", type=float, default=10.0, help="Capture window in seconds")
    parser.add_argument("--output", default=None, help="Log file (default stdout)")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        if args.output:
            with open(args.output, "a", encoding="ascii", errors="replace") as out:
                run(args.port, args.baud, args.send, args.seconds, out)
        else:
            run(args.port, args.baud, args.send, args.seconds, sys.stdout)
    except SerialIOError as e:
        logger.error(f"Serial error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
