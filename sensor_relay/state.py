"""Process-wide device state and pending configuration, guarded by one lock.

The serial reader thread applies device acknowledgements here while the
sequencer and request handlers read and queue settings, so every access goes
through the same RLock.
"""

import logging
import threading
from typing import Any, Dict, List, Optional, Tuple

from sensor_relay.models import SystemState

logger = logging.getLogger(__name__)


class SystemStateStore:
    """Owner of the single SystemState and the PendingConfig batch."""

    def __init__(self, initial: Optional[SystemState] = None) -> None:
        self._lock = threading.RLock()
        self._state = initial.copy() if initial else SystemState()
        # Insertion-ordered: settings drain in the order they were first requested
        self._pending: Dict[str, str] = {}

    # ========================================================================
    # SystemState
    # ========================================================================

    def snapshot(self) -> SystemState:
        """Copy of the current state, safe to hand to other threads."""
        with self._lock:
            return self._state.copy()

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._state.is_running

    def apply(self, updates: Dict[str, Any]) -> SystemState:
        """Overwrite the named SystemState fields.

        Unknown attribute names are ignored.

        Returns:
            Copy of the state after the update
        """
        with self._lock:
            for name, value in updates.items():
                if not hasattr(self._state, name):
                    logger.debug(f"Ignoring unknown state field {name!r}")
                    continue
                old = getattr(self._state, name)
                if old != value:
                    logger.debug(f"State {name}: {old!r} -> {value!r}")
                setattr(self._state, name, value)
            return self._state.copy()

    def set_running(self, running: bool) -> None:
        """Optimistically record the acquisition flag before the device confirms."""
        self.apply({"is_running": running})

    # ========================================================================
    # PendingConfig
    # ========================================================================

    def add_pending(self, key: str, value: str) -> None:
        """Queue a setting; a repeated key keeps its slot and takes the new value."""
        with self._lock:
            self._pending[key] = value
            logger.debug(f"Pending config: {self._pending}")

    def pop_pending(self) -> Optional[Tuple[str, str]]:
        """Remove and return the oldest queued setting, or None when drained."""
        with self._lock:
            if not self._pending:
                return None
            key = next(iter(self._pending))
            return key, self._pending.pop(key)

    def pending(self) -> List[Tuple[str, str]]:
        with self._lock:
            return list(self._pending.items())

    def has_pending(self) -> bool:
        with self._lock:
            return bool(self._pending)

    def clear_pending(self) -> None:
        with self._lock:
            if self._pending:
                logger.debug(f"Discarding pending config: {self._pending}")
            self._pending.clear()
