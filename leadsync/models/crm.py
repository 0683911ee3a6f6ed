"""CRM models — Contacts, Organizations, and Activities."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from ..database import UTCDateTime
from .base import Base


class Organization(Base):
    """Canonical company: one row per normalized name per user."""

    __tablename__ = "organizations"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)  # display name as first seen
    normalized_name = Column(String(255), nullable=False)
    crm_org_id = Column(String(50))
    industry = Column(String(255))
    country = Column(String(100))
    website = Column(String(500))

    # Aggregates recomputed after each reconciliation pass
    contact_count = Column(Integer, default=0, nullable=False)
    last_activity_at = Column(UTCDateTime)

    update_sync_status = Column(String(20), default="SYNCED", nullable=False)
    last_crm_update = Column(UTCDateTime)

    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    contacts = relationship("Contact", back_populates="organization")

    __table_args__ = (
        Index("ix_org_user_normalized", "user_id", "normalized_name", unique=True),
        Index("ix_org_crm_org_id", "crm_org_id"),
    )


class Contact(Base):
    """Local lead record, optionally linked to a remote person."""

    __tablename__ = "contacts"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    email = Column(String(255))
    phone = Column(String(100))
    job_title = Column(String(255))
    organization_name = Column(String(255))  # raw string as entered / synced

    warmness_score = Column(Integer, default=0, nullable=False)  # negative → lost
    last_contacted = Column(UTCDateTime)
    added_to_campaign = Column(Boolean, default=False, nullable=False)

    # Soft deactivation, never hard-deleted while remote links exist
    is_active = Column(Boolean, default=True, nullable=False)
    deactivated_at = Column(UTCDateTime)
    deactivated_by = Column(Integer)
    deactivation_reason = Column(Text)

    # Remote links
    crm_person_id = Column(String(50))
    crm_org_id = Column(String(50))
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="SET NULL"))
    crm_updated_at = Column(UTCDateTime)  # remote update_time seen at last sync
    last_crm_update = Column(UTCDateTime)
    update_sync_status = Column(String(20), default="SYNCED", nullable=False)

    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    user = relationship("User", back_populates="contacts")
    organization = relationship("Organization", back_populates="contacts")
    activities = relationship("Activity", back_populates="contact")

    __table_args__ = (
        Index("ix_contacts_user", "user_id"),
        Index("ix_contacts_user_person", "user_id", "crm_person_id"),
        Index("ix_contacts_org", "organization_id"),
    )


class Activity(Base):
    """Timestamped interaction, immutable once synced except the remote id."""

    __tablename__ = "activities"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    contact_id = Column(Integer, ForeignKey("contacts.id", ondelete="SET NULL"))
    type = Column(String(30), nullable=False)  # CALL | EMAIL | MEETING | MEETING_REQUEST | LINKEDIN | REFERRAL | CONFERENCE
    subject = Column(String(255))
    note = Column(Text)
    due_date = Column(UTCDateTime)

    crm_activity_id = Column(String(50))
    replicated_to_crm = Column(Boolean, default=False, nullable=False)
    crm_sync_attempts = Column(Integer, default=0, nullable=False)
    last_crm_sync_attempt = Column(UTCDateTime)
    last_crm_update = Column(UTCDateTime)
    update_sync_status = Column(String(20), default="SYNCED", nullable=False)

    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))

    contact = relationship("Contact", back_populates="activities")

    __table_args__ = (
        Index("ix_activities_contact", "contact_id"),
        Index("ix_activities_user_created", "user_id", "created_at"),
    )
