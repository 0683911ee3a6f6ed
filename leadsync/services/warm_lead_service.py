"""
warm_lead_service.py — Warm-lead promotion into the CRM

When a contact's warmness score crosses the threshold it is created as a
remote person, owned by the user's CRM account and tagged with the
"Warm lead" label.

Business Rules:
- score below warm_lead_threshold (default 4) → not a warm lead, no calls made
- a contact already linked to a remote person is already a warm lead → True
- owner id: user.crm_user_id, looked up by email and persisted on first use
- the contact's organization is created remotely when it has no remote id;
  failure there is logged and the person is created without an org
- label: person field named "label" of type enum, option "Warm lead";
  the option is added when missing, and the option id is cached per
  credential so the field list is read once per account
- a remote person-create failure is a failed promotion (result dict), not an
  exception; only CredentialError / TransportError propagate

Called by: routers/sync.py
Depends on: connectors/crm_client.py, services/organization_service.py,
            services/activity_replication.py, repository.py
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from ..config import settings
from ..errors import CredentialError, NotFoundError, ValidationError
from ..models import Activity, Contact, User
from ..repository import Repository
from .activity_replication import replicate_activity
from .organization_service import find_or_create_organization

log = logging.getLogger("leadsync.warmlead")

_MISSING = object()

# credential fingerprint → option id (None when the account has no label field)
_label_cache: dict[str, int | None] = {}


@dataclass(frozen=True)
class WarmLeadTrigger:
    contact_id: int
    user_id: int
    warmness_score: int


class WarmLeadService:
    def __init__(
        self,
        repo: Repository,
        client,
        *,
        threshold: int | None = None,
        label_name: str | None = None,
        label_cache: dict | None = None,
        create_activity: bool | None = None,
    ):
        self.repo = repo
        self.client = client
        self.threshold = threshold if threshold is not None else settings.warm_lead_threshold
        self.label_name = label_name or settings.warm_lead_label_name
        self.label_cache = label_cache if label_cache is not None else _label_cache
        self.create_activity = (
            create_activity if create_activity is not None else settings.warm_lead_create_activity
        )

    async def check_and_create_warm_lead(self, trigger: WarmLeadTrigger) -> bool:
        """True when the contact is (or just became) a warm lead in the CRM."""
        return (await self.promote(trigger))["is_warm_lead"]

    async def promote(self, trigger: WarmLeadTrigger) -> dict:
        if not isinstance(trigger.warmness_score, int) or isinstance(trigger.warmness_score, bool):
            raise ValidationError("warmness_score must be an integer")
        if trigger.warmness_score < self.threshold:
            return {"success": True, "is_warm_lead": False, "created": False}

        contact = self.repo.find_first(Contact, {"id": trigger.contact_id, "user_id": trigger.user_id})
        if contact is None:
            raise NotFoundError(f"Contact {trigger.contact_id} not found")
        if contact.crm_person_id:
            log.debug("Contact %s already linked to person %s", contact.id, contact.crm_person_id)
            return {
                "success": True,
                "is_warm_lead": True,
                "created": False,
                "person_id": contact.crm_person_id,
            }

        user = self.repo.get_or_raise(User, trigger.user_id)
        owner_id = await self._owner_id(user)
        org_id = await self._remote_org_id(contact, owner_id)
        label_id = await self._warm_lead_label_id()

        payload = self.client.person_payload(contact)
        if owner_id:
            payload["owner_id"] = owner_id
        if org_id:
            payload["org_id"] = int(org_id)
        if label_id is not None:
            payload["label_ids"] = [label_id]

        result = await self.client.create_person(payload)
        if not result["success"]:
            if result.get("code") == "unauthorized":
                raise CredentialError(result["error"])
            log.error("Warm lead creation failed for contact %s: %s", contact.id, result.get("error"))
            return {
                "success": False,
                "is_warm_lead": False,
                "created": False,
                "error": result.get("error"),
                "code": result.get("code"),
            }

        person_id = str(result["person_id"])
        self.repo.update(
            contact,
            crm_person_id=person_id,
            crm_org_id=str(org_id) if org_id else contact.crm_org_id,
            last_crm_update=datetime.now(timezone.utc),
            update_sync_status="SYNCED",
        )
        self.repo.commit()
        log.info("Contact %s promoted to warm lead (person %s)", contact.id, person_id)

        out = {"success": True, "is_warm_lead": True, "created": True, "person_id": person_id}
        if self.create_activity:
            out["activity"] = await self.create_warm_lead_activity(contact)
        return out

    async def create_warm_lead_activity(self, contact: Contact) -> dict:
        """Log a follow-up email activity against the new remote person."""
        if not contact.crm_person_id:
            return {"success": False, "error": "Contact is not linked to a CRM person", "code": "not_linked"}
        activity = self.repo.create(
            Activity,
            user_id=contact.user_id,
            contact_id=contact.id,
            type="EMAIL",
            subject=f"[CMPGN-WARM] Warm Lead Created - {contact.name}",
            note=f"Contact {contact.name} has been identified as a warm lead and created in the CRM.",
            due_date=datetime.now(timezone.utc),
        )
        self.repo.commit()
        return await replicate_activity(self.repo, self.client, activity)

    # ── Helpers ─────────────────────────────────────────────────────

    async def _owner_id(self, user: User) -> int | None:
        if user.crm_user_id:
            return user.crm_user_id
        result = await self.client.find_user_by_email(user.email)
        if result["success"] and result.get("user"):
            owner_id = result["user"].get("id")
            if owner_id:
                self.repo.update(user, crm_user_id=int(owner_id))
                self.repo.commit()
                log.info("Stored CRM user id %s for user %s", owner_id, user.id)
                return int(owner_id)
        log.warning("No CRM user found for %s, person will use the token owner", user.email)
        return None

    async def _remote_org_id(self, contact: Contact, owner_id: int | None) -> str | None:
        org = contact.organization
        if org is None and contact.organization_name and contact.organization_name.strip():
            org, _ = find_or_create_organization(
                self.repo, contact.user_id, contact.organization_name, crm_org_id=contact.crm_org_id
            )
            self.repo.update(contact, organization_id=org.id)
        if org is None:
            return contact.crm_org_id
        if org.crm_org_id:
            return org.crm_org_id

        result = await self.client.create_organization({"name": org.name, "owner_id": owner_id})
        if not result["success"]:
            log.warning("Organization %r not created in CRM: %s", org.name, result.get("error"))
            return contact.crm_org_id
        self.repo.update(org, crm_org_id=str(result["org_id"]), last_crm_update=datetime.now(timezone.utc))
        self.repo.commit()
        return org.crm_org_id

    async def _warm_lead_label_id(self) -> int | None:
        cached = self.label_cache.get(self.client.key, _MISSING)
        if cached is not _MISSING:
            return cached

        result = await self.client.get_person_custom_fields()
        if not result["success"]:
            # not cached: the next promotion tries again
            log.warning("Person fields unavailable, creating warm lead without label")
            return None

        field = next(
            (f for f in result["fields"]
             if (f.get("name") or "").lower() == "label" and f.get("field_type") == "enum"),
            None,
        )
        if field is None:
            log.warning("No enum 'Label' person field in this CRM account")
            self.label_cache[self.client.key] = None
            return None

        option = next(
            (o for o in field["options"] if (o.get("label") or "").lower() == self.label_name.lower()),
            None,
        )
        if option:
            option_id = option["id"]
        else:
            added = await self.client.add_person_field_option(field, self.label_name)
            if not added["success"]:
                log.warning("Could not add label option %r: %s", self.label_name, added.get("error"))
                return None
            option_id = added["option_id"]
            log.info("Added label option %r (id %s)", self.label_name, option_id)

        self.label_cache[self.client.key] = option_id
        return option_id


def clear_label_cache() -> None:
    _label_cache.clear()
