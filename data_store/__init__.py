"""In-memory reading buffer for the dashboard."""

from data_store.schemas import SCHEMA, reading_to_row
from data_store.store import ReadingStore

__all__ = ["SCHEMA", "reading_to_row", "ReadingStore"]
