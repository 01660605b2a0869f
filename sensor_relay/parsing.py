"""Pure functions for decoding device lines and encoding host commands."""

import logging
import math
from typing import Any, Dict, Optional

from sensor_relay import protocol
from sensor_relay.errors import CommandRejected
from sensor_relay.models import (
    ConfirmationEvent,
    IntensityEvent,
    ParsedLine,
    TemperatureEvent,
)

logger = logging.getLogger(__name__)


def parse_line(line: str) -> Optional[ParsedLine]:
    """Decode one device line into an event and SystemState updates.

    Prefix dispatch, first match wins:
        TEMP:<float>            -> TemperatureEvent
        PESO:<float>            -> IntensityEvent
        OK:<cmd> / OK:<k>:<v>   -> ConfirmationEvent (+ is_running or setting update)
        ERROR:<text>            -> ConfirmationEvent carrying the raw text
        INFO:STATUS:<k=v,...>   -> is_status with updates for every valid pair

    Never raises on malformed input.

    Args:
        line: Raw line from device (CRLF should be stripped by caller)

    Returns:
        ParsedLine, or None if the line carries nothing (unknown shape or bad reading)
    """
    line = line.strip()
    if not line:
        return None

    if line.startswith(protocol.PREFIX_TEMP):
        value = parse_reading_value(line[len(protocol.PREFIX_TEMP):])
        if value is None:
            logger.debug(f"Dropping malformed temperature line: {line!r}")
            return None
        return ParsedLine(event=TemperatureEvent(value))

    if line.startswith(protocol.PREFIX_INTENSITY):
        value = parse_reading_value(line[len(protocol.PREFIX_INTENSITY):])
        if value is None:
            logger.debug(f"Dropping malformed intensity line: {line!r}")
            return None
        return ParsedLine(event=IntensityEvent(value))

    if line.startswith(protocol.PREFIX_OK):
        return parse_ok_line(line)

    if line.startswith(protocol.PREFIX_ERROR):
        return ParsedLine(event=ConfirmationEvent(line))

    if line.startswith(protocol.PREFIX_STATUS):
        return ParsedLine(
            updates=parse_status_fields(line[len(protocol.PREFIX_STATUS):]),
            is_status=True,
        )

    logger.debug(f"Ignoring unrecognized line: {line!r}")
    return None


def parse_reading_value(text: str) -> Optional[float]:
    """Parse a TEMP/PESO payload; None for anything that is not a finite float."""
    try:
        value = float(text.strip())
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    return value


def parse_ok_line(line: str) -> ParsedLine:
    """Decode an OK acknowledgement.

    Only ``OK:a``, ``OK:b`` and ``OK:<KEY>:<value>`` with an exact known key
    touch SystemState; every OK line is still surfaced as a confirmation.
    """
    result = ParsedLine(event=ConfirmationEvent(line))

    match = protocol.RE_OK_CONTROL.match(line)
    if match:
        cmd = match.group(1)
        result.ack = cmd
        result.updates["is_running"] = cmd == protocol.CMD_START
        return result

    match = protocol.RE_OK_SETTING.match(line)
    if match:
        key, raw = match.group(1), match.group(2)
        result.ack = key
        try:
            result.updates[protocol.KEY_TO_FIELD[key]] = convert_setting(key, raw)
        except ValueError as e:
            logger.debug(f"Acknowledged {key} with unusable value: {e}")

    return result


def parse_status_fields(payload: str) -> Dict[str, Any]:
    """Parse comma-separated KEY=value pairs from an INFO:STATUS dump.

    Unknown keys and malformed values are skipped; the remaining pairs still apply.

    Args:
        payload: Text after "INFO:STATUS:", e.g. "T1=1,T2=1,TU=s,RUN=1"

    Returns:
        SystemState attribute -> converted value
    """
    updates: Dict[str, Any] = {}
    for pair in payload.split(","):
        key, sep, raw = pair.partition("=")
        key = key.strip()
        if not sep or key not in protocol.KEY_TO_FIELD:
            continue
        try:
            updates[protocol.KEY_TO_FIELD[key]] = convert_setting(key, raw.strip())
        except ValueError as e:
            logger.debug(f"Skipping status field {key!r}: {e}")
    return updates


def convert_setting(key: str, raw: str) -> Any:
    """Convert a wire value to its SystemState type.

    Mirrors what the firmware accepts, so the store never holds a value the
    device would have ignored.

    Raises:
        ValueError: If the value is malformed or outside the accepted range
    """
    if key in protocol.BOOL_KEYS:
        return raw == "1"

    if key == protocol.KEY_TIME_UNIT:
        if raw not in protocol.VALID_TIME_UNITS:
            raise ValueError(f"invalid time unit {raw!r}")
        return raw

    if key in protocol.INT_KEYS:
        value = int(raw)
        if value <= 0:
            raise ValueError(f"{key} must be positive, got {value}")
        if key in (protocol.KEY_TEMP_SAMPLES, protocol.KEY_WEIGHT_SAMPLES):
            if value > protocol.MAX_FILTER_SAMPLES:
                raise ValueError(
                    f"{key} must be <= {protocol.MAX_FILTER_SAMPLES}, got {value}"
                )
        return value

    raise ValueError(f"unknown setting key {key!r}")


def parse_setting_command(command: str) -> Optional[tuple[str, str]]:
    """Split a client command into (key, value) if it is a setting change.

    Returns:
        (key, value) for commands matching ^(T1|T2|TU|FT|FP|ST|SP):\\S+$, else None
    """
    match = protocol.RE_SETTING_COMMAND.match(command)
    if not match:
        return None
    return match.group(1), match.group(2)


def normalize_command(command: str) -> str:
    """Validate and strip a command before it goes on the wire.

    Raises:
        CommandRejected: If the command is empty or not plain ASCII
    """
    if not isinstance(command, str):
        raise CommandRejected(f"Command must be a string, got {type(command).__name__}")

    text = command.strip()
    if not text:
        raise CommandRejected("Empty command")

    if not text.isascii() or any(ch in text for ch in "\r\n"):
        raise CommandRejected(f"Command must be single-line ASCII: {command!r}")

    return text


def encode_command(command: str) -> bytes:
    """Encode a command for the wire, appending CRLF if absent."""
    if not command.endswith(protocol.INPUT_TERMINATOR):
        command = command + protocol.INPUT_TERMINATOR
    return command.encode("ascii")
