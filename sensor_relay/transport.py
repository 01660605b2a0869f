"""Serial transport layer for the acquisition device."""

import logging
from typing import Optional, Protocol

import serial

from sensor_relay import parsing, protocol
from sensor_relay.errors import SerialIOError

logger = logging.getLogger(__name__)


class SerialLike(Protocol):
    """Protocol for serial port interface (allows test doubles)."""

    def write(self, data: bytes) -> int:
        """Write bytes to serial port."""
        ...

    def readline(self) -> bytes:
        """Read a line from serial port."""
        ...

    def flush(self) -> None:
        """Flush output buffer (force transmission)."""
        ...

    def reset_input_buffer(self) -> None:
        """Flush input buffer."""
        ...

    def close(self) -> None:
        """Close serial port."""
        ...

    @property
    def is_open(self) -> bool:
        """Check if port is open."""
        ...


class Transport:
    """Wrapper around pyserial with line-protocol helpers.

    Handles CRLF termination on both directions and maps every pyserial
    failure to SerialIOError.
    """

    def __init__(self, serial_port: SerialLike) -> None:
        """Initialize transport with a serial port instance.

        Args:
            serial_port: Object implementing SerialLike protocol
                        (e.g., serial.Serial or FakeSerial for testing)
        """
        self._port = serial_port
        # Bytes of a line cut short by the read timeout
        self._partial = b""

    @classmethod
    def open(
        cls, port: str, baud: int = 9600, timeout_s: float = protocol.READ_TIMEOUT
    ) -> "Transport":
        """Open a real serial port.

        Args:
            port: Serial port device name (e.g., "/dev/ttyACM0", "COM3")
            baud: Baud rate. Firmware UART runs at 9600.
            timeout_s: Read timeout in seconds; bounds how long readline() blocks.

        Returns:
            Transport instance wrapping opened serial port

        Raises:
            SerialIOError: If port cannot be opened
        """
        try:
            ser = serial.Serial(
                port=port,
                baudrate=baud,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=timeout_s,
                write_timeout=1.0,
                rtscts=False,
                dsrdtr=False,
                xonxoff=False,
            )
            logger.info(f"Opened serial port {port} at {baud} baud, timeout={timeout_s}s")
            return cls(ser)
        except (serial.SerialException, OSError, ValueError) as e:
            raise SerialIOError(f"Failed to open {port} at {baud} baud: {e}") from e

    def close(self) -> None:
        """Close the serial port."""
        if self._port.is_open:
            self._port.close()
            logger.info("Closed serial port")

    @property
    def is_open(self) -> bool:
        """Check if port is currently open."""
        return self._port.is_open

    def write_line(self, command: str) -> int:
        """Write a command, appending CRLF if absent.

        Args:
            command: Command string (e.g., "a", "T1:5", "STATUS")

        Returns:
            Number of bytes written

        Raises:
            SerialIOError: If the port is closed or the write fails
        """
        if not self._port.is_open:
            raise SerialIOError("Serial port is not open")

        data = parsing.encode_command(command)
        try:
            sent = self._port.write(data)
            self._port.flush()  # Force immediate transmission
        except Exception as e:
            raise SerialIOError(f"Failed to write to port: {e}") from e

        logger.debug(f"Sent {sent} bytes: {data!r}")
        return sent

    def readline(self) -> Optional[str]:
        """Read one CRLF-terminated line from the device.

        Returns:
            Line as string with CRLF stripped, or None on timeout/no data

        Raises:
            SerialIOError: If port is closed or read fails
        """
        if not self._port.is_open:
            raise SerialIOError("Serial port is not open")

        try:
            line_bytes = self._port.readline()
        except Exception as e:
            raise SerialIOError(f"Failed to read line: {e}") from e

        if not line_bytes:
            return None

        line_bytes = self._partial + line_bytes
        if not line_bytes.endswith(b"\n"):
            self._partial = line_bytes
            return None
        self._partial = b""

        line = line_bytes.decode("ascii", errors="replace").rstrip("\r\n")
        logger.debug(f"Received line: {line!r}")
        return line

    def flush_input(self) -> None:
        """Discard all pending input from device (e.g., the power-on banner).

        Raises:
            SerialIOError: If port is closed
        """
        if not self._port.is_open:
            raise SerialIOError("Serial port is not open")

        try:
            self._port.reset_input_buffer()
            self._partial = b""
            logger.debug("Flushed input buffer")
        except Exception as e:
            raise SerialIOError(f"Failed to flush input: {e}") from e
