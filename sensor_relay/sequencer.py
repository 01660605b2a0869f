"""Stop -> configure -> resume sequencing for settings changes.

The firmware only applies sample-time and filter settings safely while
acquisition is stopped, so a change requested during acquisition is queued,
acquisition is stopped, every queued setting is sent one at a time and
acquisition is resumed.

States::

    idle --begin_sequence--> stopping --stop_confirmed--> configuring
    configuring --settings_applied--> resuming --sequence_done--> idle
    resuming --more_settings--> configuring
    any --abort_sequence--> idle

``stop_confirmed`` fires on ``OK:b`` or, if the device never acknowledges,
after ``ack_timeout``. Settings arriving while a sequence is in flight are
merged into the same PendingConfig batch.
"""

import logging
import threading
from typing import TYPE_CHECKING, Callable, Iterable, Optional, Tuple

from transitions import Machine

from sensor_relay import protocol
from sensor_relay.errors import SequenceTimeout, SerialIOError
from sensor_relay.link import SerialLinkManager
from sensor_relay.state import SystemStateStore

logger = logging.getLogger(__name__)

SENT = "sent"
QUEUED = "queued"


class CommandSequencer:
    """Routes settings and start/stop commands so no setting reaches a running device."""

    if TYPE_CHECKING:
        # FSM generated methods and attributes for static analysis
        fsm_state: str
        begin_sequence: Callable[[], bool]
        stop_confirmed: Callable[[], bool]
        settings_applied: Callable[[], bool]
        more_settings: Callable[[], bool]
        sequence_done: Callable[[], bool]
        abort_sequence: Callable[[], bool]

    # FSM States
    STATE_IDLE = "idle"
    STATE_STOPPING = "stopping"
    STATE_CONFIGURING = "configuring"
    STATE_RESUMING = "resuming"

    def __init__(
        self,
        link: SerialLinkManager,
        store: SystemStateStore,
        on_state_change: Optional[Callable[[], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
        settle_delay: float = protocol.SETTLE_DELAY,
        resume_delay: float = protocol.RESUME_DELAY,
        ack_timeout: float = protocol.ACK_TIMEOUT,
        ack_retries: int = 1,
    ) -> None:
        """Initialize sequencer.

        Args:
            link: Serial link used for every write
            store: Shared SystemState / PendingConfig owner
            on_state_change: Called after an optimistic SystemState update
            on_error: Called with a message when a queued setting could not be sent
            settle_delay: Pause between sequential setting commands
            resume_delay: Pause after the last setting before sending "a"
            ack_timeout: How long to wait for OK:<key> / OK:b before falling back
            ack_retries: Resends of a setting whose acknowledgement never arrived
        """
        self._link = link
        self._store = store
        self._on_state_change = on_state_change
        self._on_error = on_error
        self._settle_delay = settle_delay
        self._resume_delay = resume_delay
        self._ack_timeout = ack_timeout
        self._ack_retries = max(0, ack_retries)

        self._lock = threading.RLock()
        self._resume_after = True
        self._generation = 0
        self._stop_timer: Optional[threading.Timer] = None
        self._control_timer: Optional[threading.Timer] = None
        self._pending_control: Optional[str] = None
        self._expected_ack: Optional[str] = None
        self._ack_event = threading.Event()
        self._worker: Optional[threading.Thread] = None
        self._shutdown = threading.Event()

        self.state_machine = Machine(
            model=self,
            states=[
                self.STATE_IDLE,
                self.STATE_STOPPING,
                self.STATE_CONFIGURING,
                self.STATE_RESUMING,
            ],
            initial=self.STATE_IDLE,
            ignore_invalid_triggers=True,
            model_attribute="fsm_state",
        )

        self.state_machine.add_transition(
            trigger="begin_sequence", source=self.STATE_IDLE, dest=self.STATE_STOPPING
        )
        self.state_machine.add_transition(
            trigger="stop_confirmed", source=self.STATE_STOPPING, dest=self.STATE_CONFIGURING
        )
        self.state_machine.add_transition(
            trigger="settings_applied", source=self.STATE_CONFIGURING, dest=self.STATE_RESUMING
        )
        self.state_machine.add_transition(
            trigger="more_settings", source=self.STATE_RESUMING, dest=self.STATE_CONFIGURING
        )
        self.state_machine.add_transition(
            trigger="sequence_done", source=self.STATE_RESUMING, dest=self.STATE_IDLE
        )
        self.state_machine.add_transition(
            trigger="abort_sequence", source="*", dest=self.STATE_IDLE
        )

    # ========================================================================
    # Public API
    # ========================================================================

    @property
    def in_flight(self) -> bool:
        return self.fsm_state != self.STATE_IDLE

    def submit(self, key: str, value: str) -> str:
        """Apply one setting, wrapping it in stop/resume if acquisition runs.

        Returns:
            "sent" if written directly, "queued" if it joined a stop/resume batch

        Raises:
            SerialIOError: If the direct write (or the stop command) fails
        """
        with self._lock:
            if self.in_flight:
                self._store.add_pending(key, value)
                logger.info(f"Merged {key}:{value} into in-flight sequence ({self.fsm_state})")
                return QUEUED

            if self._effective_running():
                self._store.add_pending(key, value)
                self._start_sequence(resume=True)
                return QUEUED

        self._link.write_with_retry(protocol.make_setting_cmd(key, value))
        return SENT

    def execute_sequence(self, settings: Iterable[Tuple[str, str]]) -> str:
        """Always stop, apply every setting, then resume acquisition.

        Used for batches like the factory defaults where the device state is
        not trusted.

        Returns:
            "queued"
        """
        with self._lock:
            for key, value in settings:
                self._store.add_pending(key, value)
            if self.in_flight:
                self._resume_after = True
                logger.info(f"Merged batch into in-flight sequence ({self.fsm_state})")
                return QUEUED
            self._start_sequence(resume=True)
            return QUEUED

    def control(self, command: str) -> str:
        """Send "a" or "b".

        During a sequence the command only decides whether acquisition resumes
        at the end; otherwise it is written and isRunning follows the device
        acknowledgement, or the command itself after ``ack_timeout``.

        Returns:
            "sent" or "queued"
        """
        if command not in (protocol.CMD_START, protocol.CMD_STOP):
            raise ValueError(f"Not a control command: {command!r}")

        with self._lock:
            if self.in_flight:
                self._resume_after = command == protocol.CMD_START
                logger.info(
                    f"Sequence in flight; acquisition will "
                    f"{'resume' if self._resume_after else 'stay stopped'} afterwards"
                )
                return QUEUED

            self._link.write_with_retry(command)
            self._cancel_control_timer()
            self._pending_control = command
            self._control_timer = self._start_timer(self._on_control_timeout, command)
            return SENT

    def on_ack(self, ack: str) -> None:
        """Feed a device acknowledgement ("a", "b" or a setting key)."""
        with self._lock:
            if ack == self._pending_control:
                self._cancel_control_timer()
                self._pending_control = None

            if ack == protocol.CMD_STOP and self.fsm_state == self.STATE_STOPPING:
                self._confirm_stop(fallback=False)
                return

            if ack == self._expected_ack:
                self._ack_event.set()

    def reset(self) -> None:
        """Drop any in-flight sequence (the link was reopened and the device stopped)."""
        with self._lock:
            if self.in_flight or self._store.has_pending():
                logger.warning(
                    f"Abandoning sequence in state {self.fsm_state} with "
                    f"pending {self._store.pending()}"
                )
            self._generation += 1
            self._cancel_stop_timer()
            self._cancel_control_timer()
            self._pending_control = None
            self._expected_ack = None
            self._ack_event.set()
            self._store.clear_pending()
            self._resume_after = True
            self.abort_sequence()

    def shutdown(self) -> None:
        self._shutdown.set()
        self.reset()
        worker = self._worker
        if worker and worker.is_alive() and worker is not threading.current_thread():
            worker.join(timeout=5.0)

    # ========================================================================
    # Internal: State Machine Steps
    # ========================================================================

    def _effective_running(self) -> bool:
        """Running state including an unacknowledged a/b. Caller holds the lock."""
        if self._pending_control is not None:
            return self._pending_control == protocol.CMD_START
        return self._store.is_running

    def _start_sequence(self, resume: bool) -> None:
        """idle -> stopping: send "b" and arm the fallback timer. Caller holds the lock."""
        # The sequence now decides the running state; a pending "a" fallback must not fire
        self._cancel_control_timer()
        self._pending_control = None
        self._resume_after = resume
        self.begin_sequence()
        logger.info(f"Stopping acquisition to apply {self._store.pending()}")
        try:
            self._link.write_with_retry(protocol.CMD_STOP)
        except SerialIOError:
            self._store.clear_pending()
            self.abort_sequence()
            raise
        self._stop_timer = self._start_timer(self._on_stop_timeout, self._generation)

    def _on_stop_timeout(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self.fsm_state != self.STATE_STOPPING:
                return
            logger.warning(f"No OK:b within {self._ack_timeout}s; assuming acquisition stopped")
            self._confirm_stop(fallback=True)

    def _confirm_stop(self, fallback: bool) -> None:
        """stopping -> configuring and start the drain worker. Caller holds the lock."""
        self._cancel_stop_timer()
        if fallback:
            self._store.set_running(False)
            self._notify_state_change()
        self.stop_confirmed()
        self._worker = threading.Thread(
            target=self._drain_loop,
            args=(self._generation,),
            name="CommandSequencer",
            daemon=True,
        )
        self._worker.start()

    def _drain_loop(self, generation: int) -> None:
        """Send queued settings one by one, then resume. Runs on the worker thread."""
        logger.info(f"Applying pending config (thread {threading.get_ident()})")
        try:
            while not self._aborted(generation):
                item = self._store.pop_pending()
                if item is not None:
                    self._apply_setting(generation, *item)
                    continue

                with self._lock:
                    if self._aborted(generation):
                        return
                    if self._store.has_pending():
                        continue
                    self.settings_applied()

                if self._shutdown.wait(timeout=self._resume_delay):
                    return

                with self._lock:
                    if self._aborted(generation):
                        return
                    if self._store.has_pending():
                        self.more_settings()
                        continue
                    self._finish_sequence()
                    return
        except Exception as e:
            logger.error(f"Error in sequencer worker: {e}", exc_info=True)
            with self._lock:
                if not self._aborted(generation):
                    self._store.clear_pending()
                    self.abort_sequence()

    def _apply_setting(self, generation: int, key: str, value: str) -> None:
        command = protocol.make_setting_cmd(key, value)
        for attempt in range(1 + self._ack_retries):
            with self._lock:
                if self._aborted(generation):
                    return
                self._expected_ack = key
                self._ack_event.clear()

            try:
                self._link.write_with_retry(command)
            except SerialIOError as e:
                logger.error(f"Giving up on {command!r}: {e}")
                self._report_error(f"Failed to send {command}: {e}")
                break

            try:
                self._await_ack(key)
                break
            except SequenceTimeout as e:
                logger.warning(f"{e} (attempt {attempt + 1}/{1 + self._ack_retries})")

        with self._lock:
            self._expected_ack = None
        self._shutdown.wait(timeout=self._settle_delay)

    def _await_ack(self, key: str) -> None:
        if not self._ack_event.wait(timeout=self._ack_timeout):
            raise SequenceTimeout(f"No OK:{key} within {self._ack_timeout}s")

    def _finish_sequence(self) -> None:
        """resuming -> idle, sending "a" unless a stop was requested. Caller holds the lock."""
        self._store.clear_pending()
        if self._resume_after:
            try:
                self._link.write_with_retry(protocol.CMD_START)
            except SerialIOError as e:
                logger.error(f"Could not resume acquisition: {e}")
                self._report_error(f"Failed to resume acquisition: {e}")
            else:
                self._store.set_running(True)
                self._notify_state_change()
                logger.info("Acquisition resumed after configuration")
        else:
            logger.info("Configuration applied; acquisition left stopped")
        self._resume_after = True
        self.sequence_done()

    def _on_control_timeout(self, command: str) -> None:
        with self._lock:
            if command != self._pending_control:
                return
            self._pending_control = None
            self._control_timer = None
        logger.info(f"No OK:{command} within {self._ack_timeout}s; assuming it took effect")
        self._store.set_running(command == protocol.CMD_START)
        self._notify_state_change()

    # ========================================================================
    # Internal: Helpers
    # ========================================================================

    def _aborted(self, generation: int) -> bool:
        return generation != self._generation or self._shutdown.is_set()

    def _start_timer(self, callback: Callable[..., None], arg: object) -> threading.Timer:
        timer = threading.Timer(self._ack_timeout, callback, args=(arg,))
        timer.daemon = True
        timer.start()
        return timer

    def _cancel_stop_timer(self) -> None:
        if self._stop_timer is not None:
            self._stop_timer.cancel()
            self._stop_timer = None

    def _cancel_control_timer(self) -> None:
        if self._control_timer is not None:
            self._control_timer.cancel()
            self._control_timer = None

    def _notify_state_change(self) -> None:
        if self._on_state_change is None:
            return
        try:
            self._on_state_change()
        except Exception as e:
            logger.error(f"Error in state change callback: {e}", exc_info=True)

    def _report_error(self, message: str) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(message)
        except Exception as e:
            logger.error(f"Error in sequencer error callback: {e}", exc_info=True)
