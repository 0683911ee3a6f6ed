"""Contact lifecycle — soft deactivation and reactivation.

Contacts are never hard-deleted while remote links exist; deactivation
keeps the row (and its crm_person_id) and records who, when and why.
"""

import logging
from datetime import datetime, timezone

from ..errors import NotFoundError, ValidationError
from ..models import Contact
from ..repository import Repository

log = logging.getLogger("leadsync.contacts")


def _get_owned(repo: Repository, user_id: int, contact_id: int) -> Contact:
    contact = repo.find_first(Contact, {"id": contact_id, "user_id": user_id})
    if contact is None:
        raise NotFoundError(f"Contact {contact_id} not found")
    return contact


def deactivate_contact(repo: Repository, user_id: int, contact_id: int, reason: str | None = None) -> Contact:
    contact = _get_owned(repo, user_id, contact_id)
    if not contact.is_active:
        raise ValidationError(f"Contact {contact_id} is already deactivated")
    repo.update(
        contact,
        is_active=False,
        deactivated_at=datetime.now(timezone.utc),
        deactivated_by=user_id,
        deactivation_reason=(reason or "").strip() or None,
    )
    repo.commit()
    log.info("Contact %s deactivated by user %s", contact_id, user_id)
    return contact


def reactivate_contact(repo: Repository, user_id: int, contact_id: int) -> Contact:
    contact = _get_owned(repo, user_id, contact_id)
    if contact.is_active:
        raise ValidationError(f"Contact {contact_id} is already active")
    repo.update(
        contact,
        is_active=True,
        deactivated_at=None,
        deactivated_by=None,
        deactivation_reason=None,
    )
    repo.commit()
    log.info("Contact %s reactivated by user %s", contact_id, user_id)
    return contact
