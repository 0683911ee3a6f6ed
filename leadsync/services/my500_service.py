"""My-500 service — the ranked working set, with search, filters and paging.

Business Rules:
- only the user's own active contacts (inactive on request)
- search: case-insensitive substring over name, email and organization
- filter "campaign": added_to_campaign only; filter "status": one
  activity_status band (lost / cold / warm / hot)
- no explicit sort → ranking.rank() order, capped at my500_max_contacts
- explicit sort → that field, nulls last ascending, ties keep rank order
- page >= 1, 1 <= limit <= 100

Called by: routers/sync.py
Depends on: ranking.py, repository.py, models (Contact, Activity)
"""

import math
from dataclasses import dataclass
from datetime import datetime

from ..config import settings
from ..errors import NotFoundError, ValidationError
from ..models import Activity, Contact
from ..ranking import STATUSES, RankingThresholds, activity_status, contact_summary, needs_attention, rank
from ..repository import Repository


DEFAULT_LIMIT = 50
MAX_LIMIT = 100
AVAILABLE_FILTERS = ("campaign", "status")
AVAILABLE_SORTS = ("name", "email", "organization_name", "warmness_score", "last_contacted", "created_at")


@dataclass
class My500Query:
    page: int = 1
    limit: int = DEFAULT_LIMIT
    search: str | None = None
    filter: str | None = None
    status: str | None = None
    sort: str | None = None
    order: str = "asc"
    include_inactive: bool = False

    def validate(self) -> None:
        errors = []
        if self.page < 1:
            errors.append("page must be greater than or equal to 1")
        if not 1 <= self.limit <= MAX_LIMIT:
            errors.append(f"limit must be between 1 and {MAX_LIMIT}")
        if self.filter is not None and self.filter not in AVAILABLE_FILTERS:
            errors.append(f"filter must be one of {', '.join(AVAILABLE_FILTERS)}")
        if self.filter == "status" and self.status not in STATUSES:
            errors.append(f"status must be one of {', '.join(STATUSES)}")
        if self.sort is not None and self.sort not in AVAILABLE_SORTS:
            errors.append(f"sort must be one of {', '.join(AVAILABLE_SORTS)}")
        if self.order not in ("asc", "desc"):
            errors.append("order must be 'asc' or 'desc'")
        if errors:
            raise ValidationError("; ".join(errors), details={"errors": errors})


def calculate_pagination(page: int, limit: int, total: int) -> dict:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": total_pages,
        "has_next": page < total_pages,
        "has_prev": page > 1,
    }


def _field_key(name: str):
    def key(contact):
        value = getattr(contact, name)
        if isinstance(value, str):
            value = value.lower()
        return (value is None, value if value is not None else 0)

    return key


def search_contacts(
    repo: Repository,
    user_id: int,
    query: My500Query | None = None,
    thresholds: RankingThresholds | None = None,
    now: datetime | None = None,
) -> dict:
    query = query or My500Query()
    query.validate()
    thresholds = thresholds or RankingThresholds.from_settings()

    where: dict = {"user_id": user_id}
    if not query.include_inactive:
        where["is_active"] = True
    term = (query.search or "").strip()
    if term:
        where["or"] = [
            {"name": {"contains": term}},
            {"email": {"contains": term}},
            {"organization_name": {"contains": term}},
        ]
    if query.filter == "campaign":
        where["added_to_campaign"] = True

    contacts = repo.find_many(Contact, where, order_by=[("id", "asc")])
    if query.filter == "status":
        contacts = [c for c in contacts if activity_status(c, thresholds) == query.status]

    ranked = rank(contacts)
    if query.sort:
        ordered = sorted(ranked, key=_field_key(query.sort))
        if query.order == "desc":
            # reverse the non-null part only, nulls stay last
            present = [c for c in ordered if getattr(c, query.sort) is not None]
            missing = [c for c in ordered if getattr(c, query.sort) is None]
            ordered = sorted(present, key=_field_key(query.sort), reverse=True) + missing
    else:
        ordered = ranked[: settings.my500_max_contacts]

    total = len(ordered)
    start = (query.page - 1) * query.limit
    page = ordered[start:start + query.limit]

    items = []
    for contact in page:
        summary = contact_summary(contact, thresholds, now)
        latest = repo.find_first(Activity, {"contact_id": contact.id}, order_by=[("created_at", "desc")])
        summary["last_activity"] = _activity_dict(latest) if latest else None
        items.append(summary)

    applied = [query.filter] if query.filter else []
    return {
        "contacts": items,
        "pagination": calculate_pagination(query.page, query.limit, total),
        "filters": {"available": list(AVAILABLE_FILTERS), "applied": applied},
    }


def get_contact(repo: Repository, user_id: int, contact_id: int, thresholds: RankingThresholds | None = None) -> dict:
    contact = repo.find_first(Contact, {"id": contact_id, "user_id": user_id})
    if contact is None:
        raise NotFoundError(f"Contact {contact_id} not found")
    summary = contact_summary(contact, thresholds or RankingThresholds.from_settings())
    activities = repo.find_many(Activity, {"contact_id": contact.id}, order_by=[("created_at", "desc")])
    summary["activities"] = [_activity_dict(a) for a in activities]
    return summary


def get_contact_stats(repo: Repository, user_id: int, thresholds: RankingThresholds | None = None) -> dict:
    thresholds = thresholds or RankingThresholds.from_settings()
    contacts = repo.find_many(Contact, {"user_id": user_id})
    active = [c for c in contacts if c.is_active]
    by_status = {s: 0 for s in STATUSES}
    for c in active:
        by_status[activity_status(c, thresholds)] += 1
    return {
        "total": len(contacts),
        "active": len(active),
        "in_campaign": sum(1 for c in active if c.added_to_campaign),
        "linked_to_crm": sum(1 for c in active if c.crm_person_id),
        "needs_attention": sum(1 for c in active if needs_attention(c, thresholds)),
        "by_status": by_status,
    }


def _activity_dict(activity: Activity) -> dict:
    return {
        "id": activity.id,
        "type": activity.type,
        "subject": activity.subject,
        "due_date": activity.due_date.isoformat() if activity.due_date else None,
        "created_at": activity.created_at.isoformat() if activity.created_at else None,
        "replicated_to_crm": activity.replicated_to_crm,
    }
