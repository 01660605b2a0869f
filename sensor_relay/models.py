"""Data models for the sensor relay."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Literal, Union


class LinkState(Enum):
    """Serial link manager states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


@dataclass
class SystemState:
    """Snapshot of the device configuration as last reported by the device.

    Attributes:
        is_running: Acquisition running, per the last confirmed a/b acknowledgement.
        temp_sample_time: Temperature sample interval in time_unit (T1).
        weight_sample_time: Intensity sample interval in time_unit (T2).
        time_unit: Wire time unit: "m" (ms), "s" (seconds) or "M" (minutes).
        temp_filter: Temperature moving-average filter enabled (FT).
        weight_filter: Intensity moving-average filter enabled (FP).
        temp_samples: Temperature filter window (ST).
        weight_samples: Intensity filter window (SP).
    """

    is_running: bool = False
    temp_sample_time: int = 1
    weight_sample_time: int = 1
    time_unit: str = "s"
    temp_filter: bool = False
    weight_filter: bool = False
    temp_samples: int = 10
    weight_samples: int = 10

    def to_dict(self) -> Dict[str, Any]:
        """Serialize with the field names the dashboard expects."""
        return {
            "isRunning": self.is_running,
            "tempSampleTime": self.temp_sample_time,
            "weightSampleTime": self.weight_sample_time,
            "timeUnit": self.time_unit,
            "tempFilter": self.temp_filter,
            "weightFilter": self.weight_filter,
            "tempSamples": self.temp_samples,
            "weightSamples": self.weight_samples,
        }

    def copy(self) -> "SystemState":
        return SystemState(**asdict(self))


# ============================================================================
# Sensor Events (one per parsed device line or server-side error)
# ============================================================================


@dataclass(frozen=True)
class TemperatureEvent:
    value: float

    def to_message(self) -> Dict[str, Any]:
        return {"type": "temperature", "value": self.value}


@dataclass(frozen=True)
class IntensityEvent:
    """Intensity percentage, published as "weight" for dashboard compatibility."""

    value: float

    def to_message(self) -> Dict[str, Any]:
        return {"type": "weight", "value": self.value}


@dataclass(frozen=True)
class ConfirmationEvent:
    message: str

    def to_message(self) -> Dict[str, Any]:
        return {"type": "confirmation", "message": self.message}


@dataclass(frozen=True)
class StatusEvent:
    state: SystemState

    def to_message(self) -> Dict[str, Any]:
        return {"type": "status", "state": self.state.to_dict()}


@dataclass(frozen=True)
class ErrorEvent:
    message: str

    def to_message(self) -> Dict[str, Any]:
        return {"type": "error", "message": self.message}


SensorEvent = Union[
    TemperatureEvent, IntensityEvent, ConfirmationEvent, StatusEvent, ErrorEvent
]


@dataclass
class Reading:
    """A single timestamped sensor reading kept for the dashboard.

    Attributes:
        ts: UTC timestamp when the line was parsed.
        kind: "temperature" or "intensity".
        value: Reading value as sent by the device.
    """

    ts: datetime
    kind: Literal["temperature", "intensity"]
    value: float

    def __post_init__(self) -> None:
        if self.kind not in ("temperature", "intensity"):
            raise ValueError(f"kind must be 'temperature' or 'intensity', got '{self.kind}'")


@dataclass
class ParsedLine:
    """Result of decoding one device line.

    Attributes:
        event: Event to broadcast, or None. Status lines leave this None and set
            is_status; the status event is built from the store after updates apply.
        updates: SystemState attribute -> new value.
        is_status: Line was a full INFO:STATUS dump.
        ack: Acknowledged command: "a", "b" or a setting key such as "T1".
    """

    event: Union[TemperatureEvent, IntensityEvent, ConfirmationEvent, None] = None
    updates: Dict[str, Any] = field(default_factory=dict)
    is_status: bool = False
    ack: Union[str, None] = None
