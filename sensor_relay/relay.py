"""High-level relay wiring the serial link, codec, state store and sequencer."""

import logging
import threading
from typing import Callable, List, Optional

from sensor_relay import parsing, protocol
from sensor_relay.link import Opener, SerialLinkManager
from sensor_relay.models import (
    ErrorEvent,
    LinkState,
    SensorEvent,
    StatusEvent,
)
from sensor_relay.sequencer import SENT, CommandSequencer
from sensor_relay.state import SystemStateStore

logger = logging.getLogger(__name__)

EventListener = Callable[[SensorEvent], None]


class SensorRelay:
    """Bridges one serial device to any number of event listeners.

    Device lines are decoded, applied to the SystemState and published to
    listeners; client commands are validated and routed either through the
    CommandSequencer (settings, start/stop) or straight to the link.
    """

    def __init__(
        self,
        port: str,
        baud: int = 9600,
        opener: Optional[Opener] = None,
        reconnect_delay: float = protocol.RECONNECT_DELAY,
        reconnect_max_delay: float = protocol.RECONNECT_MAX_DELAY,
        reconnect_jitter: float = 1.0,
        post_open_settle: float = protocol.POST_OPEN_SETTLE,
        settle_delay: float = protocol.SETTLE_DELAY,
        resume_delay: float = protocol.RESUME_DELAY,
        ack_timeout: float = protocol.ACK_TIMEOUT,
    ) -> None:
        """Initialize relay (does not open the port; call start()).

        Args:
            port: Serial port device name
            baud: Baud rate
            opener: Transport factory, for tests
            reconnect_delay: First delay before reopening the port
            reconnect_max_delay: Cap for the reopen delay
            reconnect_jitter: Random seconds added to each reopen delay
            post_open_settle: Pause between open and the init sequence
            settle_delay: Pause between sequential setting commands
            resume_delay: Pause before resuming after the last setting
            ack_timeout: Wait for an acknowledgement before falling back
        """
        self.store = SystemStateStore()
        self._listeners: List[EventListener] = []
        self._listeners_lock = threading.Lock()

        self.link = SerialLinkManager(
            port,
            baud,
            on_line=self.handle_line,
            on_connect=self._on_link_connected,
            opener=opener,
            reconnect_delay=reconnect_delay,
            reconnect_max_delay=reconnect_max_delay,
            reconnect_jitter=reconnect_jitter,
            post_open_settle=post_open_settle,
        )
        self.sequencer = CommandSequencer(
            self.link,
            self.store,
            on_state_change=self.publish_status,
            on_error=self._publish_error,
            settle_delay=settle_delay,
            resume_delay=resume_delay,
            ack_timeout=ack_timeout,
        )

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start(self) -> None:
        self.link.start()

    def stop(self) -> None:
        logger.info("Stopping relay...")
        self.sequencer.shutdown()
        self.link.stop()

    def restart_serial(self) -> None:
        self.link.restart()

    @property
    def link_state(self) -> LinkState:
        return self.link.state

    # ========================================================================
    # Listeners
    # ========================================================================

    def add_listener(self, listener: EventListener) -> None:
        with self._listeners_lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _emit(self, event: SensorEvent) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Listener failed for {event!r}: {e}", exc_info=True)

    def publish_status(self) -> None:
        """Publish the current SystemState to every listener."""
        self._emit(StatusEvent(self.store.snapshot()))

    def _publish_error(self, message: str) -> None:
        self._emit(ErrorEvent(message))

    # ========================================================================
    # Device -> Clients
    # ========================================================================

    def handle_line(self, line: str) -> Optional[SensorEvent]:
        """Decode one device line, update state and publish the resulting event.

        Runs on the serial reader thread.

        Returns:
            The published event, or None if the line carried nothing
        """
        parsed = parsing.parse_line(line)
        if parsed is None:
            return None

        if parsed.updates:
            self.store.apply(parsed.updates)

        if parsed.ack is not None:
            self.sequencer.on_ack(parsed.ack)

        event: Optional[SensorEvent]
        if parsed.is_status:
            event = StatusEvent(self.store.snapshot())
        else:
            event = parsed.event

        if event is not None:
            self._emit(event)
        return event

    def _on_link_connected(self) -> None:
        # Init sequence sent "b": acquisition is stopped and nothing is in flight
        self.sequencer.reset()
        self.store.set_running(False)

    # ========================================================================
    # Clients -> Device
    # ========================================================================

    def submit_command(self, command: str) -> str:
        """Route a client command to the device.

        Settings (``T1:5``) go through the sequencer, ``a``/``b`` through its
        acknowledgement tracking, everything else is written as-is.

        Returns:
            "sent" or "queued"

        Raises:
            CommandRejected: If the command is empty or not single-line ASCII
            SerialIOError: If the write fails after retries
        """
        text = parsing.normalize_command(command)

        setting = parsing.parse_setting_command(text)
        if setting is not None:
            return self.sequencer.submit(*setting)

        if text in (protocol.CMD_START, protocol.CMD_STOP):
            return self.sequencer.control(text)

        self.link.write_with_retry(text)
        return SENT

    def reset_defaults(self) -> str:
        """Stop, restore the factory settings and resume acquisition."""
        logger.info("Restoring default device settings")
        return self.sequencer.execute_sequence(protocol.DEFAULT_SETTINGS)
