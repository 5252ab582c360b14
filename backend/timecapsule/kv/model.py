"""SQLAlchemy model backing the key-value store."""

from typing import Optional

from sqlalchemy import Float, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from timecapsule.db.session import Base


class KVEntry(Base):
    """One key-value record. Value is a JSON string; expires_at is epoch seconds or None (no TTL)."""

    __tablename__ = "kv_entries"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[Optional[float]] = mapped_column(Float, nullable=True, index=True)
