"""
organization_service.py — Organization normalization and deduplication

Folds raw company strings from contacts into one canonical Organization per
normalized name per user, then refreshes aggregate stats.

Business Rules:
- normalize: lowercase, punctuation (. , & - _) → space, collapse whitespace
- one Organization per (user_id, normalized_name); first-seen raw name wins
  as the display name, first present remote org id is kept
- every contact in a group is attached to its Organization, and the raw
  organization_name always normalizes to the attached org's key
- stats recomputed for every touched org: contact_count, and
  last_activity_at = created_at of the newest Activity on any member contact

Called by: services/sync_service.py, services/warm_lead_service.py
Depends on: repository.py, models (Organization, Contact, Activity)
"""

import logging
import re

from ..errors import ValidationError
from ..models import Activity, Contact, Organization
from ..repository import Repository

log = logging.getLogger("leadsync.organizations")

_PUNCT = re.compile(r"[.,&\-_]")
_SPACES = re.compile(r"\s+")


def normalize_org_name(name: str | None) -> str:
    """'  ACME   corp ' and 'Acme Corp' both become 'acme corp'."""
    if not name:
        return ""
    return _SPACES.sub(" ", _PUNCT.sub(" ", name.lower())).strip()


def find_or_create_organization(
    repo: Repository, user_id: int, raw_name: str, crm_org_id: str | None = None
) -> tuple[Organization, bool]:
    """Return (organization, created) for a raw company string."""
    key = normalize_org_name(raw_name)
    if not key:
        raise ValidationError("Organization name is required")

    org = repo.find_first(Organization, {"user_id": user_id, "normalized_name": key})
    if org:
        if crm_org_id and not org.crm_org_id:
            repo.update(org, crm_org_id=str(crm_org_id))
        return org, False

    org = repo.create(
        Organization,
        user_id=user_id,
        name=raw_name.strip(),
        normalized_name=key,
        crm_org_id=str(crm_org_id) if crm_org_id else None,
    )
    log.info("Created organization %r (key=%r) for user %s", org.name, key, user_id)
    return org, True


def update_organization_stats(repo: Repository, org: Organization) -> Organization:
    """contact_count and the creation time of the newest activity on any member contact."""
    contact_ids = [c.id for c in repo.find_many(Contact, {"organization_id": org.id})]
    latest = None
    if contact_ids:
        latest = repo.find_first(
            Activity, {"contact_id": {"in": contact_ids}}, order_by=[("created_at", "desc")]
        )
    return repo.update(
        org,
        contact_count=len(contact_ids),
        last_activity_at=latest.created_at if latest else None,
    )


def reconcile_organizations(repo: Repository, user_id: int, contacts: list[Contact] | None = None) -> dict:
    """Group contacts by normalized org name and link each group to one org.

    With contacts=None, every contact of the user is reconciled. Returns
    {"organizations_created", "organizations_linked", "contacts_linked"}.
    """
    if contacts is None:
        contacts = repo.find_many(
            Contact,
            {"user_id": user_id},
            order_by=[("created_at", "asc"), ("id", "asc")],
        )

    created = 0
    linked = 0
    touched: dict[int, Organization] = {}

    groups: dict[str, list[Contact]] = {}
    for contact in contacts:
        key = normalize_org_name(contact.organization_name)
        if key:
            groups.setdefault(key, []).append(contact)
        elif contact.organization_id:
            # company string cleared, link must go with it
            old = repo.find_unique(Organization, contact.organization_id)
            if old:
                touched[old.id] = old
            repo.update(contact, organization_id=None)

    for members in groups.values():
        remote_id = next((c.crm_org_id for c in members if c.crm_org_id), None)
        org, was_created = find_or_create_organization(
            repo, user_id, members[0].organization_name, crm_org_id=remote_id
        )
        created += int(was_created)
        for contact in members:
            if contact.organization_id != org.id:
                # previous org loses this contact; refresh its counts too
                if contact.organization_id:
                    old = repo.find_unique(Organization, contact.organization_id)
                    if old:
                        touched[old.id] = old
                repo.update(contact, organization_id=org.id)
                linked += 1
        touched[org.id] = org

    for org in touched.values():
        update_organization_stats(repo, org)
    repo.commit()

    if created or linked:
        log.info(
            "Reconciled organizations for user %s: %d groups, %d created, %d contacts linked",
            user_id, len(groups), created, linked,
        )
    return {
        "organizations_created": created,
        "organizations_linked": len(groups),
        "contacts_linked": linked,
    }
