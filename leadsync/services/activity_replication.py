"""Activity replication — push a local Activity to the CRM once.

Activities are immutable after a successful push; only crm_activity_id and
the attempt bookkeeping are written back. Retries happen inside CrmClient,
so each call here is a single attempt that bumps crm_sync_attempts.
"""

import logging
from datetime import datetime, timezone

from ..errors import NotFoundError, TransportError
from ..models import Activity, Contact
from ..repository import Repository

log = logging.getLogger("leadsync.activities")


async def replicate_activity(repo: Repository, client, activity: Activity) -> dict:
    if activity.replicated_to_crm and activity.crm_activity_id:
        return {
            "success": True,
            "activity_id": activity.crm_activity_id,
            "already_replicated": True,
        }

    contact = repo.find_unique(Contact, activity.contact_id) if activity.contact_id else None
    if not contact or not contact.crm_person_id:
        return {
            "success": False,
            "error": "Contact is not linked to a CRM person",
            "code": "not_linked",
        }

    org_id = (contact.organization.crm_org_id if contact.organization else None) or contact.crm_org_id
    attempt_at = datetime.now(timezone.utc)
    try:
        result = await client.create_activity(activity, person_id=contact.crm_person_id, org_id=org_id)
    except TransportError:
        repo.update(
            activity,
            crm_sync_attempts=(activity.crm_sync_attempts or 0) + 1,
            last_crm_sync_attempt=attempt_at,
            update_sync_status="FAILED",
        )
        repo.commit()
        raise

    values = {
        "crm_sync_attempts": (activity.crm_sync_attempts or 0) + 1,
        "last_crm_sync_attempt": attempt_at,
    }
    if result["success"]:
        values.update(
            crm_activity_id=str(result["activity_id"]),
            replicated_to_crm=True,
            last_crm_update=attempt_at,
            update_sync_status="SYNCED",
        )
        log.info("Replicated activity %s as CRM activity %s", activity.id, result["activity_id"])
    else:
        values["update_sync_status"] = "FAILED"
        log.error("Activity %s replication failed: %s", activity.id, result.get("error"))
    repo.update(activity, **values)
    repo.commit()

    if result["success"]:
        return {"success": True, "activity_id": str(result["activity_id"]), "already_replicated": False}
    return {"success": False, "error": result.get("error"), "code": result.get("code")}


async def replicate_activity_by_id(repo: Repository, client, user_id: int, activity_id: int) -> dict:
    activity = repo.find_first(Activity, {"id": activity_id, "user_id": user_id})
    if activity is None:
        raise NotFoundError(f"Activity {activity_id} not found")
    return await replicate_activity(repo, client, activity)
