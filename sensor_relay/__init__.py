"""
sensor_relay - Serial-to-WebSocket relay for the temperature/intensity acquisition board.

Decodes the board's line protocol, tracks its configuration and sequences
setting changes around acquisition stop/resume.
"""

from sensor_relay.errors import (
    CommandRejected,
    SensorRelayError,
    SequenceTimeout,
    SerialIOError,
)
from sensor_relay.models import (
    ConfirmationEvent,
    ErrorEvent,
    IntensityEvent,
    LinkState,
    Reading,
    SensorEvent,
    StatusEvent,
    SystemState,
    TemperatureEvent,
)
from sensor_relay.relay import SensorRelay

__version__ = "0.1.0"

__all__ = [
    "SensorRelay",
    "SystemState",
    "SensorEvent",
    "TemperatureEvent",
    "IntensityEvent",
    "ConfirmationEvent",
    "StatusEvent",
    "ErrorEvent",
    "Reading",
    "LinkState",
    "SensorRelayError",
    "SerialIOError",
    "CommandRejected",
    "SequenceTimeout",
]
