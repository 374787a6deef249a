"""Idempotency ledger rows for the SQL dedup store."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String, Text

from src.database import Base


class DedupEntry(Base):
    __tablename__ = "dedup_entries"

    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=False, default="1")
    expires_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(
        DateTime, default=lambda: datetime.now(timezone.utc).replace(tzinfo=None), nullable=False
    )
