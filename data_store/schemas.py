"""Schema normalization for relay readings to DataFrame format.

Temperature and intensity readings share one table; the kind column tells
them apart so the dashboard can split the series after export.
"""

from datetime import timezone
from typing import Any, Dict

from sensor_relay.models import Reading

# DataFrame schema: column names and their dtypes
SCHEMA = {
    "timestamp": str,  # UTC ISO 8601 format
    "kind": str,  # "temperature" or "intensity"
    "value": float,  # Value exactly as reported by the device
}


def reading_to_row(reading: Reading) -> Dict[str, Any]:
    """Convert a Reading instance to a DataFrame row dictionary.

    Normalizes timestamps to UTC ISO 8601.

    Args:
        reading: A Reading instance from the relay's ring buffer

    Returns:
        Dictionary with all SCHEMA keys, ready for DataFrame construction
    """
    ts = reading.ts
    if ts.tzinfo is None:
        # Assume naive timestamps are UTC (relay uses datetime.now(timezone.utc))
        ts = ts.replace(tzinfo=timezone.utc)
    elif ts.tzinfo != timezone.utc:
        ts = ts.astimezone(timezone.utc)

    return {
        "timestamp": ts.isoformat(),
        "kind": reading.kind,
        "value": reading.value,
    }
