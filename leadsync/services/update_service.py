"""
update_service.py — Batched multi-record CRM updates with per-item accounting

Business Rules:
- record types: activity, person, organization, deal
- every item is dispatched concurrently; one failure never aborts the batch,
  not even an unexpected exception (recorded as code "internal_error")
- record_id must be a positive integer; anything else fails the item with
  validation_error before a request is made
- item state: pending → success | failed, one hop, no retries here
  (transport retries are the client's job)
- success is True only when failed == 0
- conflict (remote 409) policy, settings.conflict_policy:
    skip      → item failed with code "conflict" (default)
    requeue   → item failed, local record marked PENDING and returned in
                `requeued` so the caller can resubmit
    overwrite → the same update is sent once more; a second 409 fails it
- local records linked to the remote id get update_sync_status SYNCED or
  FAILED and last_crm_update on success

Called by: routers/sync.py
Depends on: connectors/crm_client.py, repository.py, models
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

from ..config import settings
from ..connectors.crm_client import is_remote_id
from ..errors import ConflictError, LeadSyncError, ValidationError
from ..models import Activity, Contact, Organization
from ..repository import Repository

log = logging.getLogger("leadsync.updates")

RECORD_TYPES = ("activity", "person", "organization", "deal")
CONFLICT_POLICIES = ("skip", "requeue", "overwrite")

_LOCAL = {
    "activity": (Activity, "crm_activity_id"),
    "person": (Contact, "crm_person_id"),
    "organization": (Organization, "crm_org_id"),
}


@dataclass
class BatchUpdateItem:
    record_type: str
    record_id: str
    data: dict = field(default_factory=dict)


@dataclass
class UpdateResult:
    record_type: str
    record_id: str
    status: str = "pending"  # pending | success | failed
    error: str | None = None
    code: str | None = None
    requeued: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def success(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> dict:
        out = asdict(self)
        out["success"] = self.success
        out["timestamp"] = self.timestamp.isoformat()
        return out


@dataclass
class BatchUpdateResult:
    results: list[UpdateResult]
    requeued: list[BatchUpdateItem] = field(default_factory=list)

    @property
    def summary(self) -> dict:
        successful = sum(1 for r in self.results if r.success)
        return {
            "total": len(self.results),
            "successful": successful,
            "failed": len(self.results) - successful,
            "errors": [r.error for r in self.results if not r.success and r.error],
        }

    @property
    def success(self) -> bool:
        return self.summary["failed"] == 0

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "summary": self.summary,
            "results": [r.to_dict() for r in self.results],
            "requeued": [asdict(i) for i in self.requeued],
        }


class UpdateService:
    def __init__(self, repo: Repository, client, *, user_id: int | None = None, conflict_policy: str | None = None):
        policy = conflict_policy or settings.conflict_policy
        if policy not in CONFLICT_POLICIES:
            raise ValidationError(f"Unknown conflict policy '{policy}'")
        self.repo = repo
        self.client = client
        self.user_id = user_id
        self.conflict_policy = policy

    async def batch_update(self, items: list) -> BatchUpdateResult:
        if not isinstance(items, (list, tuple)):
            raise ValidationError("Batch update expects a list of items")
        items = [_coerce(i) for i in items]

        outcomes = await asyncio.gather(*(self._dispatch(i) for i in items), return_exceptions=True)

        batch = BatchUpdateResult(results=[])
        for item, outcome in zip(items, outcomes):
            result = UpdateResult(record_type=item.record_type, record_id=item.record_id)
            if isinstance(outcome, ConflictError):
                result.status = "failed"
                result.error = outcome.message
                result.code = outcome.code
                if self.conflict_policy == "requeue":
                    result.requeued = True
                    batch.requeued.append(item)
            elif isinstance(outcome, LeadSyncError):
                result.status = "failed"
                result.error = outcome.message
                result.code = outcome.code
            elif isinstance(outcome, Exception):
                log.error(
                    "Update of %s %s failed unexpectedly", item.record_type, item.record_id, exc_info=outcome
                )
                result.status = "failed"
                result.error = f"{type(outcome).__name__}: {outcome}"
                result.code = "internal_error"
            elif isinstance(outcome, BaseException):
                raise outcome
            elif outcome.get("success"):
                result.status = "success"
            else:
                result.status = "failed"
                result.error = outcome.get("error") or "Unknown error"
                result.code = outcome.get("code")
            batch.results.append(result)
            self._mark_local(item, result)

        self.repo.commit()
        summary = batch.summary
        log.info(
            "Batch update: %d total, %d successful, %d failed",
            summary["total"], summary["successful"], summary["failed"],
        )
        return batch

    async def _dispatch(self, item: BatchUpdateItem) -> dict:
        try:
            return await self._send(item)
        except ConflictError:
            if self.conflict_policy != "overwrite":
                raise
            log.warning("Conflict on %s %s, overwriting", item.record_type, item.record_id)
            return await self._send(item)

    async def _send(self, item: BatchUpdateItem) -> dict:
        if not item.record_id:
            raise ValidationError(f"{item.record_type or 'record'} update is missing record_id")
        if not is_remote_id(item.record_id):
            raise ValidationError(f"record_id must be a positive integer, got {item.record_id!r}")
        if item.record_type == "activity":
            return await self.client.update_activity(item.record_id, item.data)
        if item.record_type == "person":
            return await self.client.update_person(item.record_id, item.data)
        if item.record_type == "organization":
            return await self.client.update_organization(item.record_id, item.data)
        if item.record_type == "deal":
            return await self.client.update_deal(item.record_id, item.data)
        raise ValidationError(f"Unsupported record type: {item.record_type}")

    def _mark_local(self, item: BatchUpdateItem, result: UpdateResult) -> None:
        if item.record_type not in _LOCAL:
            return
        model, remote_col = _LOCAL[item.record_type]
        where = {remote_col: item.record_id}
        if self.user_id is not None:
            where["user_id"] = self.user_id
        record = self.repo.find_first(model, where)
        if record is None:
            return
        if result.success:
            self.repo.update(record, update_sync_status="SYNCED", last_crm_update=result.timestamp)
        else:
            self.repo.update(record, update_sync_status="PENDING" if result.requeued else "FAILED")


def _coerce(raw) -> BatchUpdateItem:
    if isinstance(raw, BatchUpdateItem):
        return raw
    if isinstance(raw, dict):
        return BatchUpdateItem(
            record_type=raw.get("record_type") or raw.get("recordType") or "",
            record_id=str(raw.get("record_id") or raw.get("recordId") or ""),
            data=raw.get("data") or {},
        )
    return BatchUpdateItem(
        record_type=getattr(raw, "record_type", ""),
        record_id=str(getattr(raw, "record_id", "")),
        data=getattr(raw, "data", None) or {},
    )
