"""Key-value store model.

One row per logical store (e.g. ``calendar_connections``). The value is an
opaque JSON document; token fields inside it are already encrypted by the
token store before they reach the database.
"""

from datetime import datetime

from sqlalchemy import DateTime, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from calbridge.database import Base


class KeyValueEntry(Base):
    """A single JSON blob addressed by key."""

    __tablename__ = "kv_store"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )
