"""
routers/sync.py — Sync, CRM and My-500 routes

Thin HTTP shell over the engine: request bodies are validated by
schemas/sync.py, the engine returns plain dicts or raises LeadSyncError,
and main.py maps error codes onto status codes.

Business Rules:
- POST /sync is rejected with 409 while the user's sync is running
- batch update answers 200 when every item succeeded, 207 otherwise
- organization and contact search answer 429 with Retry-After once the
  per-user budget is spent; cached organization hits are flagged
  "cached": true
- PUT /api-key confirms the key against the CRM (unless told not to)
  before storing it; a key the CRM rejects is never stored
- contacts are soft-deactivated, never deleted

Called by: main.py (router mount)
Depends on: dependencies, schemas/sync, services/*, ranking
"""

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from loguru import logger

from ..connectors.crm_client import CrmClient
from ..dependencies import get_client_factory, get_crm_client, get_repo, get_user
from ..errors import CredentialError, ValidationError
from ..models import User
from ..repository import Repository
from ..schemas.sync import (
    ApiKeyUpdate,
    BatchUpdateRequest,
    DeactivateRequest,
    SearchRequest,
    SyncRequest,
    WarmLeadCheck,
)
from ..services import my500_service
from ..services.activity_replication import replicate_activity_by_id
from ..services.contact_service import deactivate_contact, reactivate_contact
from ..services.credential_service import (
    mark_api_key_validated,
    mask_value,
    store_user_api_key,
    validate_api_key_format,
)
from ..services.sync_service import SyncService
from ..services.update_service import BatchUpdateItem, UpdateService
from ..services.warm_lead_service import WarmLeadService, WarmLeadTrigger

router = APIRouter(prefix="/api/users/{user_id}", tags=["sync"])

ERROR_STATUS = {
    "validation_error": 400,
    "credential_error": 400,
    "crypto_error": 400,
    "format_error": 400,
    "unauthorized": 400,
    "not_found": 404,
    "sync_in_progress": 409,
    "not_linked": 409,
    "conflict": 409,
    "rate_limited": 429,
    "transport_error": 502,
    "remote_error": 502,
    "sync_timeout": 504,
}


def _failure_response(result: dict) -> JSONResponse:
    status = ERROR_STATUS.get(result.get("code"), 502)
    headers = {}
    if result.get("retry_after"):
        headers["Retry-After"] = str(int(result["retry_after"]))
    return JSONResponse(result, status_code=status, headers=headers or None)


# ── Sync ──────────────────────────────────────────────────────────────


@router.post("/sync")
async def start_sync(
    user_id: int,
    payload: SyncRequest | None = None,
    repo: Repository = Depends(get_repo),
    client_factory=Depends(get_client_factory),
):
    force_full = payload.force_full if payload else False
    result = await SyncService(repo, client_factory).run_sync(user_id, force_full=force_full)
    if not result["success"]:
        return _failure_response(result)
    return result


@router.get("/sync/status")
async def sync_status(user_id: int, repo: Repository = Depends(get_repo)):
    return {"success": True, "data": SyncService(repo).get_sync_status(user_id)}


@router.get("/sync/latest")
async def latest_sync(user_id: int, repo: Repository = Depends(get_repo)):
    return {"success": True, "data": SyncService(repo).get_latest_sync(user_id)}


@router.get("/sync/history")
async def sync_history(
    user_id: int,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    repo: Repository = Depends(get_repo),
):
    return {"success": True, "data": SyncService(repo).get_sync_history(user_id, limit=limit, offset=offset)}


@router.get("/sync/{sync_id:int}")
async def sync_detail(user_id: int, sync_id: int, repo: Repository = Depends(get_repo)):
    return {"success": True, "data": SyncService(repo).get_sync(user_id, sync_id)}


# ── CRM ───────────────────────────────────────────────────────────────


@router.post("/crm/batch-update")
async def batch_update(
    user_id: int,
    payload: BatchUpdateRequest,
    repo: Repository = Depends(get_repo),
    client: CrmClient = Depends(get_crm_client),
):
    items = [BatchUpdateItem(record_type=u.record_type, record_id=u.record_id, data=u.data) for u in payload.updates]
    result = await UpdateService(repo, client, user_id=user_id).batch_update(items)
    body = result.to_dict()
    if not result.success:
        logger.warning("Batch update for user {} partially failed: {}", user_id, body["summary"])
    return JSONResponse(body, status_code=200 if result.success else 207)


@router.post("/crm/organizations/search")
async def search_organizations(
    user_id: int,
    payload: SearchRequest,
    client: CrmClient = Depends(get_crm_client),
):
    result = await client.search_organizations(payload.query, user_id=user_id)
    if not result["success"]:
        return _failure_response(result)
    return result


@router.post("/crm/contacts/search")
async def search_contacts(
    user_id: int,
    payload: SearchRequest,
    client: CrmClient = Depends(get_crm_client),
):
    result = await client.search_contacts(payload.query, user_id=user_id)
    if not result["success"]:
        return _failure_response(result)
    return result


@router.get("/crm/custom-fields")
async def custom_fields(user_id: int, client: CrmClient = Depends(get_crm_client)):
    person = await client.get_person_custom_fields()
    org = await client.get_organization_custom_fields()
    for result in (person, org):
        if not result["success"]:
            return _failure_response(result)
    return {
        "success": True,
        "data": {"person_fields": person["fields"], "organization_fields": org["fields"]},
    }


@router.get("/crm/test-connection")
async def test_connection(
    user_id: int,
    user: User = Depends(get_user),
    repo: Repository = Depends(get_repo),
    client: CrmClient = Depends(get_crm_client),
):
    result = await client.test_connection()
    if result["success"]:
        mark_api_key_validated(repo, user)
    return result


@router.put("/api-key")
async def update_api_key(
    user_id: int,
    payload: ApiKeyUpdate,
    user: User = Depends(get_user),
    repo: Repository = Depends(get_repo),
    client_factory=Depends(get_client_factory),
):
    api_key = payload.api_key.strip()
    if not validate_api_key_format(api_key):
        raise ValidationError("API key must be a 32 or 40 character hexadecimal string")

    result = None
    if payload.test_connection:
        result = await client_factory(api_key).test_connection()
        if result.get("code") == "unauthorized":
            # a rejected key is never stored
            raise CredentialError("CRM rejected the API key", details=result.get("diagnostics") or {})

    store_user_api_key(repo, user, api_key)
    out = {"success": True, "masked_key": mask_value(api_key), "validated": False}
    if result is not None:
        if result["success"]:
            mark_api_key_validated(repo, user)
            out["validated"] = True
        else:
            out["validation_error"] = result.get("error")
    logger.info("API key updated for user {} (validated={})", user_id, out["validated"])
    return out


# ── My-500 ────────────────────────────────────────────────────────────


@router.get("/my-500")
async def my_500(
    user_id: int,
    page: int = Query(1),
    limit: int = Query(my500_service.DEFAULT_LIMIT),
    search: str | None = None,
    filter: str | None = None,
    status: str | None = None,
    sort: str | None = None,
    order: str = "asc",
    include_inactive: bool = False,
    user: User = Depends(get_user),
    repo: Repository = Depends(get_repo),
):
    query = my500_service.My500Query(
        page=page,
        limit=limit,
        search=search,
        filter=filter,
        status=status,
        sort=sort,
        order=order,
        include_inactive=include_inactive,
    )
    data = my500_service.search_contacts(repo, user.id, query)
    return {"success": True, "data": data}


@router.get("/my-500/stats")
async def my_500_stats(user_id: int, user: User = Depends(get_user), repo: Repository = Depends(get_repo)):
    return {"success": True, "data": my500_service.get_contact_stats(repo, user.id)}


# ── Contacts & activities ─────────────────────────────────────────────


@router.get("/contacts/{contact_id}")
async def get_contact(user_id: int, contact_id: int, repo: Repository = Depends(get_repo)):
    return {"success": True, "data": my500_service.get_contact(repo, user_id, contact_id)}


@router.post("/contacts/{contact_id}/check-warm-lead")
async def check_warm_lead(
    user_id: int,
    contact_id: int,
    payload: WarmLeadCheck,
    repo: Repository = Depends(get_repo),
    client: CrmClient = Depends(get_crm_client),
):
    trigger = WarmLeadTrigger(contact_id=contact_id, user_id=user_id, warmness_score=payload.warmness_score)
    result = await WarmLeadService(repo, client).promote(trigger)
    if not result["success"]:
        return _failure_response(result)
    return result


@router.post("/contacts/{contact_id}/deactivate")
async def deactivate(
    user_id: int,
    contact_id: int,
    payload: DeactivateRequest | None = None,
    repo: Repository = Depends(get_repo),
):
    contact = deactivate_contact(repo, user_id, contact_id, reason=payload.reason if payload else None)
    return {"success": True, "data": {"id": contact.id, "is_active": contact.is_active}}


@router.post("/contacts/{contact_id}/reactivate")
async def reactivate(user_id: int, contact_id: int, repo: Repository = Depends(get_repo)):
    contact = reactivate_contact(repo, user_id, contact_id)
    return {"success": True, "data": {"id": contact.id, "is_active": contact.is_active}}


@router.post("/activities/{activity_id}/replicate")
async def replicate(
    user_id: int,
    activity_id: int,
    repo: Repository = Depends(get_repo),
    client: CrmClient = Depends(get_crm_client),
):
    result = await replicate_activity_by_id(repo, client, user_id, activity_id)
    if not result["success"]:
        return _failure_response(result)
    return result
