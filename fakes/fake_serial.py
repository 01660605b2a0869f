"""Fake serial port that simulates the acquisition board firmware.

Byte handling follows the board's UART interrupt: every ``a`` or ``b`` byte
starts or stops acquisition immediately (even in the middle of a command),
every other byte is collected until CR or LF and the collected text is run as a
``KEY:value`` command and answered with ``OK:KEY:value``.
"""

import logging
import queue
import threading
from typing import List, Optional

logger = logging.getLogger(__name__)


class FakeSerial:
    """Deterministic simulator of the acquisition board.

    Implements the wire protocol including:
    - Single-byte ``a``/``b`` start/stop, not acknowledged by default
    - ``T1``/``T2``/``TU``/``FT``/``FP``/``ST``/``SP`` settings with firmware range checks
    - ``TEMP:%.2f`` / ``PESO:%.2f`` lines while acquisition runs (optional streaming thread)
    - CRLF output terminators
    - Programmable write failures and port breakage for error-path tests

    Extras the stock firmware does not have are opt-in: ``answer_status``
    answers ``STATUS`` with an ``INFO:STATUS:`` line and ``ack_controls``
    answers ``a``/``b`` with ``OK:a``/``OK:b``.
    """

    def __init__(
        self,
        answer_status: bool = False,
        ack_controls: bool = False,
        stream_interval_s: Optional[float] = None,
        banner: bool = False,
        temperature: float = 23.5,
        weight: float = 412.25,
    ) -> None:
        """Initialize fake board.

        Args:
            answer_status: Reply to STATUS with INFO:STATUS:k=v,...
            ack_controls: Reply to a/b with OK:a / OK:b
            stream_interval_s: If set, emit TEMP/PESO lines at this period while running
            banner: Queue the power-on banner lines
            temperature: Value reported in TEMP lines
            weight: Value reported in PESO lines
        """
        self.answer_status = answer_status
        self.ack_controls = ack_controls
        self.stream_interval_s = stream_interval_s
        self.temperature = temperature
        self.weight = weight

        # Firmware state (defaults after reset)
        self.running = False
        self.temp_sample_time = 1
        self.weight_sample_time = 1
        self.time_unit = "s"
        self.temp_filter = False
        self.weight_filter = False
        self.temp_samples = 10
        self.weight_samples = 10

        # Everything the host sent: control bytes as "a"/"b", commands as text
        self.received: List[str] = []

        # Output queue for lines to send to "host"
        self._output_queue: queue.Queue[bytes] = queue.Queue()

        # Command bytes collected until CR/LF
        self._cmd_buffer = bytearray()

        self._fail_writes = 0
        self._lock = threading.Lock()

        # Threading for continuous streaming
        self._stream_thread: Optional[threading.Thread] = None
        self._stop_streaming = threading.Event()

        # Port state
        self.is_open = True
        self._broken = False

        if banner:
            self._send_line("Sistema iniciado")
            self._send_line("Enviar 'a' para iniciar, 'b' para detener")

    # ========================================================================
    # SerialLike interface
    # ========================================================================

    def close(self) -> None:
        """Close the fake serial port."""
        self.is_open = False
        self._stop_streaming_thread()
        logger.debug("FakeSerial closed")

    def write(self, data: bytes) -> int:
        """Feed bytes to the firmware (from host perspective).

        Returns:
            Number of bytes written

        Raises:
            OSError: If the port is broken or a write failure was programmed
        """
        if not self.is_open:
            raise RuntimeError("Port is closed")

        with self._lock:
            if self._broken:
                raise OSError("Device disconnected")
            if self._fail_writes > 0:
                self._fail_writes -= 1
                raise OSError("Simulated write failure")

        logger.debug(f"FakeSerial received: {data!r}")
        for byte in data:
            self._handle_byte(bytes([byte]))
        return len(data)

    def readline(self) -> bytes:
        """Read one line from device output.

        Returns:
            Line as bytes with CRLF terminator, or b"" on timeout
        """
        if not self.is_open:
            raise RuntimeError("Port is closed")
        if self._broken:
            raise OSError("Device disconnected")

        try:
            line = self._output_queue.get(timeout=0.05)
            logger.debug(f"FakeSerial sending line: {line!r}")
            return line
        except queue.Empty:
            return b""

    def flush(self) -> None:
        """Flush output buffer (writes are immediate, so this is a no-op)."""
        pass

    def reset_input_buffer(self) -> None:
        """Drop lines the host has not read yet."""
        while True:
            try:
                self._output_queue.get_nowait()
            except queue.Empty:
                break

    # ========================================================================
    # Test controls
    # ========================================================================

    def inject_line(self, text: str) -> None:
        """Queue an arbitrary device line (CRLF appended)."""
        self._send_line(text)

    def fail_next_writes(self, count: int) -> None:
        """Make the next ``count`` writes raise OSError."""
        with self._lock:
            self._fail_writes = count

    def break_port(self) -> None:
        """Simulate the USB cable being pulled: every read and write fails."""
        with self._lock:
            self._broken = True
        self._stop_streaming_thread()

    def emit_readings(self) -> None:
        """Queue one TEMP line and one PESO line, as both timers firing."""
        self._send_line(f"TEMP:{self.temperature:.2f}")
        self._send_line(f"PESO:{self.weight:.2f}")

    def commands(self) -> List[str]:
        """Snapshot of everything received so far."""
        with self._lock:
            return list(self.received)

    # ========================================================================
    # Internal: Input Processing
    # ========================================================================

    def _handle_byte(self, byte: bytes) -> None:
        if byte == b"a":
            self._record("a")
            self._set_running(True)
        elif byte == b"b":
            self._record("b")
            self._set_running(False)
        elif byte in (b"\r", b"\n"):
            if self._cmd_buffer:
                cmd = self._cmd_buffer.decode("ascii", errors="replace")
                self._cmd_buffer.clear()
                self._record(cmd)
                self._process_command(cmd)
        elif len(self._cmd_buffer) < 31:
            self._cmd_buffer.extend(byte)

    def _record(self, item: str) -> None:
        with self._lock:
            self.received.append(item)

    def _set_running(self, running: bool) -> None:
        self.running = running
        if self.ack_controls:
            self._send_line("OK:a" if running else "OK:b")
        if self.stream_interval_s:
            if running:
                self._start_streaming_thread()
            else:
                self._stop_streaming_thread()

    def _process_command(self, cmd: str) -> None:
        if cmd == "STATUS":
            if self.answer_status:
                self._send_status()
            return

        if ":" not in cmd:
            return

        key, value = cmd.split(":", 1)
        if self._apply_setting(key, value):
            self._send_line(f"OK:{key}:{value}")

    def _apply_setting(self, key: str, value: str) -> bool:
        """Apply a setting like the firmware does.

        Out-of-range values are ignored but still acknowledged; unknown keys
        are not acknowledged.
        """
        if key in ("T1", "T2", "ST", "SP"):
            try:
                number = int(value)
            except ValueError:
                number = 0
            if key == "T1" and number > 0:
                self.temp_sample_time = number
            elif key == "T2" and number > 0:
                self.weight_sample_time = number
            elif key == "ST" and 0 < number <= 50:
                self.temp_samples = number
            elif key == "SP" and 0 < number <= 50:
                self.weight_samples = number
            return True
        if key == "TU":
            if value[:1] in ("m", "s", "M"):
                self.time_unit = value[:1]
            return True
        if key == "FT":
            self.temp_filter = value == "1"
            return True
        if key == "FP":
            self.weight_filter = value == "1"
            return True
        return False

    # ========================================================================
    # Internal: Output
    # ========================================================================

    def _send_line(self, text: str) -> None:
        self._output_queue.put((text + "\r\n").encode("ascii"))

    def _send_status(self) -> None:
        fields = [
            f"RUN={int(self.running)}",
            f"T1={self.temp_sample_time}",
            f"T2={self.weight_sample_time}",
            f"TU={self.time_unit}",
            f"FT={int(self.temp_filter)}",
            f"FP={int(self.weight_filter)}",
            f"ST={self.temp_samples}",
            f"SP={self.weight_samples}",
        ]
        self._send_line("INFO:STATUS:" + ",".join(fields))

    def _start_streaming_thread(self) -> None:
        if self._stream_thread and self._stream_thread.is_alive():
            return
        self._stop_streaming.clear()
        self._stream_thread = threading.Thread(
            target=self._streaming_loop, name="FakeSerialStream", daemon=True
        )
        self._stream_thread.start()

    def _stop_streaming_thread(self) -> None:
        self._stop_streaming.set()
        thread = self._stream_thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=1.0)
        self._stream_thread = None

    def _streaming_loop(self) -> None:
        assert self.stream_interval_s is not None
        while not self._stop_streaming.wait(timeout=self.stream_interval_s):
            self.emit_readings()
