"""Wire protocol constants and patterns for the acquisition firmware.

The device talks newline-delimited ASCII in both directions. Host commands are
single control characters (``a``/``b``), ``KEY:value`` settings or ``STATUS``;
the device answers with ``TEMP:``, ``PESO:``, ``OK:``, ``ERROR:`` and
``INFO:STATUS:`` lines.
"""

import re
from typing import Final

# ============================================================================
# Line Termination
# ============================================================================

# Host appends CRLF to every command
INPUT_TERMINATOR: Final[str] = "\r\n"

# ============================================================================
# Control Commands
# ============================================================================

CMD_START: Final[str] = "a"  # Start acquisition
CMD_STOP: Final[str] = "b"  # Stop acquisition
CMD_STATUS: Final[str] = "STATUS"  # Request full status dump

# ============================================================================
# Setting Keys (sent as KEY:value)
# ============================================================================

KEY_TEMP_SAMPLE_TIME: Final[str] = "T1"
KEY_WEIGHT_SAMPLE_TIME: Final[str] = "T2"
KEY_TIME_UNIT: Final[str] = "TU"
KEY_TEMP_FILTER: Final[str] = "FT"
KEY_WEIGHT_FILTER: Final[str] = "FP"
KEY_TEMP_SAMPLES: Final[str] = "ST"
KEY_WEIGHT_SAMPLES: Final[str] = "SP"

# Only reported in INFO:STATUS lines
KEY_RUNNING: Final[str] = "RUN"

SETTING_KEYS: Final[tuple[str, ...]] = (
    KEY_TEMP_SAMPLE_TIME,
    KEY_WEIGHT_SAMPLE_TIME,
    KEY_TIME_UNIT,
    KEY_TEMP_FILTER,
    KEY_WEIGHT_FILTER,
    KEY_TEMP_SAMPLES,
    KEY_WEIGHT_SAMPLES,
)

# Device key -> SystemState attribute
KEY_TO_FIELD: Final[dict[str, str]] = {
    KEY_TEMP_SAMPLE_TIME: "temp_sample_time",
    KEY_WEIGHT_SAMPLE_TIME: "weight_sample_time",
    KEY_TIME_UNIT: "time_unit",
    KEY_TEMP_FILTER: "temp_filter",
    KEY_WEIGHT_FILTER: "weight_filter",
    KEY_TEMP_SAMPLES: "temp_samples",
    KEY_WEIGHT_SAMPLES: "weight_samples",
    KEY_RUNNING: "is_running",
}

INT_KEYS: Final[frozenset[str]] = frozenset(
    {KEY_TEMP_SAMPLE_TIME, KEY_WEIGHT_SAMPLE_TIME, KEY_TEMP_SAMPLES, KEY_WEIGHT_SAMPLES}
)
BOOL_KEYS: Final[frozenset[str]] = frozenset({KEY_TEMP_FILTER, KEY_WEIGHT_FILTER, KEY_RUNNING})

# Wire values for TU
TIME_UNIT_MS: Final[str] = "m"
TIME_UNIT_S: Final[str] = "s"
TIME_UNIT_MIN: Final[str] = "M"
VALID_TIME_UNITS: Final[frozenset[str]] = frozenset({TIME_UNIT_MS, TIME_UNIT_S, TIME_UNIT_MIN})

# Firmware filter buffer size (MAX_SAMPLES)
MAX_FILTER_SAMPLES: Final[int] = 50

# Factory settings restored by the reset-to-defaults sequence
DEFAULT_SETTINGS: Final[tuple[tuple[str, str], ...]] = (
    (KEY_TEMP_SAMPLE_TIME, "1"),
    (KEY_WEIGHT_SAMPLE_TIME, "1"),
    (KEY_TIME_UNIT, TIME_UNIT_S),
    (KEY_TEMP_FILTER, "0"),
    (KEY_WEIGHT_FILTER, "0"),
    (KEY_TEMP_SAMPLES, "10"),
    (KEY_WEIGHT_SAMPLES, "10"),
)


def make_setting_cmd(key: str, value: str) -> str:
    """Build a setting command: <KEY>:<value>

    Returns:
        Command string (no terminator - transport layer handles)
    """
    return f"{key}:{value}"


# ============================================================================
# Device Line Prefixes
# ============================================================================

PREFIX_TEMP: Final[str] = "TEMP:"
PREFIX_INTENSITY: Final[str] = "PESO:"
PREFIX_OK: Final[str] = "OK:"
PREFIX_ERROR: Final[str] = "ERROR:"
PREFIX_STATUS: Final[str] = "INFO:STATUS:"

# ============================================================================
# Timing Constants (seconds)
# ============================================================================

# First reconnect delay after an open failure or port error; doubles per failure
RECONNECT_DELAY: Final[float] = 5.0

# Upper bound for the reconnect backoff (before jitter)
RECONNECT_MAX_DELAY: Final[float] = 30.0

# Pause after open before sending the init sequence (device may print a banner)
POST_OPEN_SETTLE: Final[float] = 2.0

# Pause between sequential setting commands
SETTLE_DELAY: Final[float] = 0.5

# Pause after the last setting before resuming acquisition
RESUME_DELAY: Final[float] = 1.0

# How long the sequencer waits for an acknowledgement before falling back
ACK_TIMEOUT: Final[float] = 2.0

# write_with_retry defaults
WRITE_RETRIES: Final[int] = 3
WRITE_BACKOFF: Final[float] = 0.1

# Read timeout on the serial port, bounds how quickly the reader notices stop()
READ_TIMEOUT: Final[float] = 0.2

# ============================================================================
# Regular Expressions
# ============================================================================

_SETTING_KEY_PATTERN = "|".join(SETTING_KEYS)

# Client setting command: exactly one known key and a non-blank value
RE_SETTING_COMMAND: Final[re.Pattern[str]] = re.compile(
    rf"^({_SETTING_KEY_PATTERN}):(\S+)$"
)

# Setting acknowledgement: OK:<KEY>:<value>, exact key match
RE_OK_SETTING: Final[re.Pattern[str]] = re.compile(
    rf"^OK:({_SETTING_KEY_PATTERN}):(.*)$"
)

# Control acknowledgement: OK:a / OK:b
RE_OK_CONTROL: Final[re.Pattern[str]] = re.compile(r"^OK:([ab])$")
