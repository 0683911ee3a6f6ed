"""Sync models — append-only history of sync passes."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from ..database import UTCDateTime
from .base import Base


class SyncHistory(Base):
    """One row per sync pass. Created RUNNING at start, finalized once."""

    __tablename__ = "sync_history"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    sync_type = Column(String(20), nullable=False)  # FULL | INCREMENTAL
    status = Column(String(20), nullable=False, default="RUNNING")  # RUNNING | SUCCESS | FAILED

    contacts_processed = Column(Integer, default=0, nullable=False)
    contacts_updated = Column(Integer, default=0, nullable=False)
    contacts_created = Column(Integer, default=0, nullable=False)
    contacts_failed = Column(Integer, default=0, nullable=False)

    start_time = Column(UTCDateTime, nullable=False)
    end_time = Column(UTCDateTime)
    duration_ms = Column(Integer)
    since = Column(UTCDateTime)  # incremental cursor used for this pass

    error = Column(Text)
    error_kind = Column(String(50))
    retryable = Column(Boolean)

    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))

    user = relationship("User", back_populates="sync_history")

    __table_args__ = (
        Index("ix_sync_history_user_start", "user_id", "start_time"),
    )
