"""SQLAlchemy models package."""

from calbridge.models.kv_store import KeyValueEntry

__all__ = [
    "KeyValueEntry",
]
