"""Auth & user models."""

from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Text
from sqlalchemy.orm import relationship

from ..database import UTCDateTime
from .base import Base


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    email = Column(String(255), unique=True, nullable=False)
    name = Column(String(255))

    # CRM credential: Fernet envelope, or a legacy 40-char hex plaintext
    # that credential_service migrates on first read
    crm_api_key = Column(Text)
    crm_api_key_validated_at = Column(UTCDateTime)
    crm_user_id = Column(Integer)  # remote owner id, back-filled on first lookup

    # Sync state, persisted so mutual exclusion survives restarts
    sync_status = Column(String(20), default="IDLE", nullable=False)  # IDLE | SYNCING | SYNCED | FAILED
    last_sync_at = Column(UTCDateTime)

    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    contacts = relationship("Contact", back_populates="user")
    sync_history = relationship("SyncHistory", back_populates="user")
