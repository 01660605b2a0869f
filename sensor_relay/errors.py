"""Custom exceptions for the sensor relay."""


class SensorRelayError(Exception):
    """Base exception for all sensor relay errors."""

    pass


class SerialIOError(SensorRelayError):
    """Raised when serial communication fails (port closed, open failure, write error)."""

    pass


class CommandRejected(SensorRelayError):
    """Raised when a command cannot be sent to the device as given."""

    pass


class SequenceTimeout(SensorRelayError):
    """Raised when an expected device acknowledgement does not arrive in time."""

    pass
