"""Thread-safe reading store backing the dashboard replay and exports.

Readings are appended from the serial reader thread and queried from request
handlers. Nothing here touches disk: exports are rendered in memory and the
buffer is bounded, so old readings fall off as new ones arrive.
"""

import logging
import threading
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Deque, Dict, List, Optional

import pandas as pd

from data_store.schemas import SCHEMA, reading_to_row
from sensor_relay.models import IntensityEvent, Reading, SensorEvent, TemperatureEvent

logger = logging.getLogger(__name__)

_EVENT_TYPES = {"temperature": TemperatureEvent, "intensity": IntensityEvent}


class ReadingStore:
    """Bounded history of temperature/intensity readings plus the last value per kind.

    The last value per kind is tracked separately from the ring buffer so a
    slow series (e.g. intensity sampled every minute) is still replayed to new
    clients after a fast series has pushed it out of the buffer.
    """

    def __init__(self, max_readings: int = 1000) -> None:
        """Initialize empty store.

        Args:
            max_readings: Ring buffer capacity. Oldest readings are discarded first.
        """
        if max_readings <= 0:
            raise ValueError(f"max_readings must be positive, got {max_readings}")

        self._buffer: Deque[Reading] = deque(maxlen=max_readings)
        self._lock = threading.Lock()
        self._last: Dict[str, Reading] = {}
        self._last_events: Dict[str, SensorEvent] = {}

    @property
    def capacity(self) -> int:
        return self._buffer.maxlen

    def record(
        self,
        kind: str,
        value: float,
        ts: Optional[datetime] = None,
        event: Optional[SensorEvent] = None,
    ) -> Reading:
        """Append a reading and remember it as the latest of its kind.

        Args:
            kind: "temperature" or "intensity"
            value: Reading value
            ts: Timestamp; defaults to now (UTC)
            event: The relay event that carried the reading, kept for replay

        Returns:
            The stored Reading
        """
        reading = Reading(ts=ts or datetime.now(timezone.utc), kind=kind, value=value)
        with self._lock:
            self._buffer.append(reading)
            self._last[kind] = reading
            self._last_events[kind] = event or _EVENT_TYPES[kind](value)
            logger.debug(f"Recorded {kind}={value}, buffer size: {len(self._buffer)}/{self.capacity}")
        return reading

    def latest(self, kind: str) -> Optional[Reading]:
        """Most recent reading of the given kind, or None if none arrived yet."""
        with self._lock:
            return self._last.get(kind)

    def handle_event(self, event: SensorEvent) -> None:
        """Relay listener: record temperature and intensity events."""
        if isinstance(event, TemperatureEvent):
            self.record("temperature", event.value, event=event)
        elif isinstance(event, IntensityEvent):
            self.record("intensity", event.value, event=event)

    def replay_events(self) -> List[SensorEvent]:
        """Last reading event of each kind, for a newly connected client.

        These are the same objects the relay published, so the hub can tell a
        replayed reading from its still-queued broadcast.
        """
        with self._lock:
            return [
                self._last_events[kind]
                for kind in ("temperature", "intensity")
                if kind in self._last_events
            ]

    def _snapshot(self) -> List[Reading]:
        with self._lock:
            return list(self._buffer)

    def get_dataframe(self) -> pd.DataFrame:
        """All buffered readings as a DataFrame, oldest first."""
        rows = [reading_to_row(r) for r in self._snapshot()]
        return pd.DataFrame(rows, columns=list(SCHEMA.keys()))

    def get_recent(self, seconds: int = 60) -> pd.DataFrame:
        """Get readings from the last N seconds.

        Args:
            seconds: Number of seconds of recent history to retrieve

        Returns:
            DataFrame containing only readings within the time window
        """
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=seconds)
        rows = [reading_to_row(r) for r in self._snapshot() if _as_utc(r.ts) >= cutoff]
        return pd.DataFrame(rows, columns=list(SCHEMA.keys()))

    def get_stats(self) -> dict:
        """Get summary statistics per kind.

        Returns:
            Dictionary with keys:
                - row_count: Total number of buffered readings
                - capacity: Ring buffer size
                - temperature / intensity: {count, min, max, mean} or None
        """
        df = self.get_dataframe()
        stats: dict = {"row_count": len(df), "capacity": self.capacity}

        for kind in ("temperature", "intensity"):
            values = df.loc[df["kind"] == kind, "value"].astype(float)
            if values.empty:
                stats[kind] = None
                continue
            stats[kind] = {
                "count": int(values.count()),
                "min": float(values.min()),
                "max": float(values.max()),
                "mean": float(values.mean()),
            }
        return stats

    def export_csv(self) -> str:
        """Render the buffer as CSV text."""
        df = self.get_dataframe()
        logger.info(f"Exporting {len(df)} readings as CSV")
        return df.to_csv(index=False)

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)


def _as_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)
