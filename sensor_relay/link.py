"""Serial link lifecycle: open, read lines, reconnect forever, write with retry."""

import logging
import threading
from typing import Callable, Optional

import tenacity

from sensor_relay import protocol
from sensor_relay.errors import SerialIOError
from sensor_relay.models import LinkState
from sensor_relay.transport import Transport

logger = logging.getLogger(__name__)

LineHandler = Callable[[str], None]
Opener = Callable[[str, int], Transport]


def _log_write_retry(retry_state: tenacity.RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
    logger.warning(
        f"Serial write failed (attempt {retry_state.attempt_number}): {exc}; "
        f"retrying in {delay:.2f}s"
    )


class SerialLinkManager:
    """Owns the single serial connection and keeps it alive.

    One supervisor thread opens the port, reads lines and hands them to
    ``on_line``. Any open or read failure discards the transport and schedules
    a reopen; retries never stop while the manager runs. After each successful
    open the device is stopped (``b``) and asked for ``STATUS``.
    """

    def __init__(
        self,
        port: str,
        baud: int = 9600,
        on_line: Optional[LineHandler] = None,
        on_connect: Optional[Callable[[], None]] = None,
        on_state_change: Optional[Callable[[LinkState], None]] = None,
        opener: Optional[Opener] = None,
        reconnect_delay: float = protocol.RECONNECT_DELAY,
        reconnect_max_delay: float = protocol.RECONNECT_MAX_DELAY,
        reconnect_jitter: float = 1.0,
        post_open_settle: float = protocol.POST_OPEN_SETTLE,
    ) -> None:
        """Initialize link manager (does not open the port).

        Args:
            port: Serial port device name
            baud: Baud rate
            on_line: Called on the reader thread for every received line
            on_connect: Called after the init sequence has been sent
            on_state_change: Called whenever the LinkState changes
            opener: Factory returning an open Transport. Defaults to Transport.open.
            reconnect_delay: First delay before reopening after a failure
            reconnect_max_delay: Cap for the growing reopen delay
            reconnect_jitter: Random seconds added to each reopen delay
            post_open_settle: Pause after open before the init sequence
        """
        self.port = port
        self.baud = baud
        self._on_line = on_line
        self._on_connect = on_connect
        self._on_state_change = on_state_change
        self._opener = opener
        self._post_open_settle = post_open_settle

        self._reconnect_wait = tenacity.wait_exponential(
            multiplier=reconnect_delay, min=reconnect_delay, max=reconnect_max_delay
        ) + tenacity.wait_random(0, reconnect_jitter)

        self._transport: Optional[Transport] = None
        self._state = LinkState.DISCONNECTED
        self._failures = 0

        # Serializes writes against each other and against transport swaps
        self._io_lock = threading.RLock()

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._restart_event = threading.Event()
        # Cuts a reconnect backoff short on stop() or restart()
        self._wake_event = threading.Event()

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start(self) -> None:
        """Start the supervisor thread. Safe to call once."""
        if self._thread and self._thread.is_alive():
            raise SerialIOError("Serial link already started")

        self._stop_event.clear()
        self._wake_event.clear()
        self._thread = threading.Thread(
            target=self._supervisor_loop,
            name="SerialLink",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"Serial link supervisor started for {self.port} at {self.baud} baud")

    def stop(self) -> None:
        """Stop the supervisor thread and close the port."""
        self._stop_event.set()
        self._wake_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)
            if self._thread.is_alive():
                logger.warning("Serial link thread did not stop cleanly")
        self._thread = None
        self._discard_transport()
        self._set_state(LinkState.CLOSED)

    def restart(self) -> None:
        """Close the current port; the supervisor reopens it."""
        logger.info("Serial link restart requested")
        self._restart_event.set()
        self._wake_event.set()

    def open(self) -> Optional[Transport]:
        """Attempt to open the configured port once.

        Returns:
            The open Transport, or None if opening failed (a retry is due)
        """
        self._set_state(LinkState.CONNECTING)
        opener = self._opener or Transport.open
        try:
            transport = opener(self.port, self.baud)
        except SerialIOError as e:
            self._failures += 1
            logger.error(f"Could not open {self.port}: {e}")
            self._set_state(LinkState.DISCONNECTED)
            return None

        with self._io_lock:
            self._transport = transport
        self._failures = 0
        self._set_state(LinkState.CONNECTED)
        return transport

    # ========================================================================
    # Status
    # ========================================================================

    @property
    def state(self) -> LinkState:
        return self._state

    def is_connected(self) -> bool:
        with self._io_lock:
            return (
                self._transport is not None
                and self._transport.is_open
                and self._state == LinkState.CONNECTED
            )

    def next_reconnect_delay(self) -> float:
        """Delay before the next reopen attempt, growing with consecutive failures."""
        retry_state = tenacity.RetryCallState(
            retry_object=tenacity.Retrying(),
            fn=None,
            args=(),
            kwargs={},
        )
        retry_state.attempt_number = max(1, self._failures)
        return self._reconnect_wait(retry_state)

    # ========================================================================
    # Writing
    # ========================================================================

    def write(self, command: str) -> bool:
        """Send one command, appending the line terminator if absent.

        Returns:
            True if the bytes were handed to the port, False otherwise
        """
        try:
            self._write_once(command)
        except SerialIOError as e:
            logger.warning(f"Failed to send {command!r}: {e}")
            return False
        return True

    def write_with_retry(
        self,
        command: str,
        max_retries: int = protocol.WRITE_RETRIES,
        backoff: float = protocol.WRITE_BACKOFF,
    ) -> None:
        """Send a command, retrying with a linearly growing delay.

        Args:
            command: Command text
            max_retries: Total attempts before giving up
            backoff: Delay before the second attempt; grows by the same step

        Raises:
            SerialIOError: The last write error once attempts are exhausted
        """
        retryer = tenacity.Retrying(
            stop=tenacity.stop_after_attempt(max(1, max_retries)),
            wait=tenacity.wait_incrementing(start=backoff, increment=backoff),
            retry=tenacity.retry_if_exception_type(SerialIOError),
            before_sleep=_log_write_retry,
            reraise=True,
        )
        for attempt in retryer:
            with attempt:
                self._write_once(command)

    def _write_once(self, command: str) -> None:
        with self._io_lock:
            if self._transport is None:
                raise SerialIOError(f"Serial port {self.port} is not connected")
            logger.info(f"Sending command: {command!r}")
            self._transport.write_line(command)

    # ========================================================================
    # Internal: Supervisor Thread
    # ========================================================================

    def _supervisor_loop(self) -> None:
        """Open, initialize and read until stopped; reopen on any failure."""
        logger.info(f"Serial link loop started (thread {threading.get_ident()})")

        while not self._stop_event.is_set():
            if self._restart_event.is_set():
                self._restart_event.clear()
                self._wake_event.clear()
                self._failures = 0
                self._discard_transport()
                self._set_state(LinkState.DISCONNECTED)
                if self._stop_event.wait(timeout=1.0):
                    break

            with self._io_lock:
                transport = self._transport

            if transport is None:
                transport = self.open()
                if transport is None:
                    delay = self.next_reconnect_delay()
                    logger.info(f"Retrying serial connection in {delay:.1f}s")
                    self._backoff(delay)
                    continue
                if not self._initialize_device(transport):
                    continue

            try:
                line = transport.readline()
            except SerialIOError as e:
                self._handle_port_error(e)
                continue

            if not line or self._on_line is None:
                continue

            try:
                self._on_line(line)
            except Exception as e:
                logger.error(f"Error handling line {line!r}: {e}", exc_info=True)

        logger.info("Serial link loop stopped")

    def _initialize_device(self, transport: Transport) -> bool:
        """Wait for the device to settle, then stop acquisition and request status.

        Returns:
            False if the port failed during initialization (reopen is due)
        """
        if self._stop_event.wait(timeout=self._post_open_settle):
            return False

        try:
            transport.flush_input()
            self.write_with_retry(protocol.CMD_STOP)
            self.write_with_retry(protocol.CMD_STATUS)
        except SerialIOError as e:
            self._handle_port_error(e)
            return False

        logger.info(f"Serial port {self.port} initialized")
        if self._on_connect is not None:
            try:
                self._on_connect()
            except Exception as e:
                logger.error(f"Error in connect callback: {e}", exc_info=True)
        return True

    def _handle_port_error(self, error: Exception) -> None:
        """Discard the broken transport; the loop reopens after a backoff."""
        self._failures += 1
        logger.error(f"Serial port error on {self.port}: {error}")
        self._discard_transport()
        self._set_state(LinkState.DISCONNECTED)

        delay = self.next_reconnect_delay()
        logger.info(f"Reopening serial port in {delay:.1f}s")
        self._backoff(delay)

    def _backoff(self, delay: float) -> None:
        self._wake_event.wait(timeout=delay)
        self._wake_event.clear()

    def _discard_transport(self) -> None:
        with self._io_lock:
            transport, self._transport = self._transport, None
        if transport is None:
            return
        try:
            transport.close()
        except Exception as e:
            logger.debug(f"Ignoring error while closing old port: {e}")

    def _set_state(self, state: LinkState) -> None:
        if state == self._state:
            return
        logger.info(f"Serial link {self._state.value} -> {state.value}")
        self._state = state
        if self._on_state_change is not None:
            try:
                self._on_state_change(state)
            except Exception as e:
                logger.error(f"Error in link state callback: {e}", exc_info=True)
