"""My-500 priority ranking — pure functions over contact records.

Ordering, most important key first:
  1. added_to_campaign   True before False
  2. warmness_score      ascending (needier contacts surface first)
  3. last_contacted      ascending, never-contacted first
  4. created_at          descending (newest first)

sorted() is stable, so contacts equal on every key keep their input order.
The classifiers below never feed the comparator; they are labels for the
presentation layer. Their boundaries come from RankingThresholds so they can
be tuned without code changes.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone

from .config import Settings, settings

STATUS_LOST = "lost"
STATUS_COLD = "cold"
STATUS_WARM = "warm"
STATUS_HOT = "hot"
STATUSES = (STATUS_LOST, STATUS_COLD, STATUS_WARM, STATUS_HOT)


@dataclass(frozen=True)
class RankingThresholds:
    warm_min: int = 3
    hot_min: int = 7
    medium_priority_min: int = 3
    stale_days: int = 30
    low_score_max: int = 2

    @classmethod
    def from_settings(cls, s: Settings | None = None) -> "RankingThresholds":
        s = s or settings
        return cls(
            warm_min=s.status_warm_min,
            hot_min=s.status_hot_min,
            medium_priority_min=s.priority_medium_min,
            stale_days=s.attention_stale_days,
            low_score_max=s.attention_low_score_max,
        )


DEFAULT_THRESHOLDS = RankingThresholds()


def _utc(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def _score(contact) -> int:
    return contact.warmness_score or 0


def priority_key(contact) -> tuple:
    last = contact.last_contacted
    created = contact.created_at
    return (
        not contact.added_to_campaign,
        _score(contact),
        (0, 0.0) if last is None else (1, _utc(last).timestamp()),
        (1, 0.0) if created is None else (0, -_utc(created).timestamp()),
    )


def rank(contacts) -> list:
    """Return contacts in My-500 order. Input is not modified."""
    return sorted(contacts, key=priority_key)


def activity_status(contact, thresholds: RankingThresholds = DEFAULT_THRESHOLDS) -> str:
    score = _score(contact)
    if score < 0:
        return STATUS_LOST
    if score >= thresholds.hot_min:
        return STATUS_HOT
    if score >= thresholds.warm_min:
        return STATUS_WARM
    return STATUS_COLD


def priority(contact, thresholds: RankingThresholds = DEFAULT_THRESHOLDS) -> str:
    if contact.added_to_campaign:
        return "high"
    if _score(contact) >= thresholds.medium_priority_min:
        return "medium"
    return "low"


def days_since_last_contact(contact, now: datetime | None = None) -> int | None:
    """Whole days since last contact, rounded up; None when never contacted."""
    if contact.last_contacted is None:
        return None
    now = now or datetime.now(timezone.utc)
    elapsed = (_utc(now) - _utc(contact.last_contacted)).total_seconds()
    return max(0, math.ceil(elapsed / 86400))


def needs_attention(contact, thresholds: RankingThresholds = DEFAULT_THRESHOLDS, now: datetime | None = None) -> bool:
    days = days_since_last_contact(contact, now)
    if days is None:
        return True
    return days > thresholds.stale_days and _score(contact) <= thresholds.low_score_max


def contact_summary(contact, thresholds: RankingThresholds = DEFAULT_THRESHOLDS, now: datetime | None = None) -> dict:
    """Contact fields plus the derived labels, as served by the My-500 list."""
    return {
        "id": contact.id,
        "name": contact.name,
        "email": contact.email,
        "phone": contact.phone,
        "organization": contact.organization_name,
        "organization_id": contact.organization_id,
        "warmness_score": _score(contact),
        "last_contacted": contact.last_contacted.isoformat() if contact.last_contacted else None,
        "added_to_campaign": bool(contact.added_to_campaign),
        "is_active": contact.is_active,
        "crm_person_id": contact.crm_person_id,
        "created_at": contact.created_at.isoformat() if contact.created_at else None,
        "status": activity_status(contact, thresholds),
        "priority": priority(contact, thresholds),
        "days_since_last_contact": days_since_last_contact(contact, now),
        "needs_attention": needs_attention(contact, thresholds, now),
    }
