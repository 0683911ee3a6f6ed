"""
sync_service.py — Sync orchestrator: pull CRM persons into local contacts

Per-user state machine: IDLE → SYNCING → SYNCED | FAILED.

Business Rules:
- SYNCING is exclusive per user, claimed with a conditional UPDATE on the
  persisted status so it survives restarts; a second request is rejected
  with SyncInProgressError and writes no SyncHistory row
- a claim whose RUNNING pass (or, before that row exists, the claim
  itself) is older than twice the timeout is treated as abandoned
  (process died): finalized FAILED and the claim released
- incremental when a SUCCESS pass exists (persons changed since its start
  time), full otherwise
- each page is committed as it lands; a failure keeps partial progress
- a contact counts as updated only when a field actually changed, so
  re-running with no remote changes yields created=0, updated=0
- CredentialError (missing key, 401) halts the pass, never retried
- the whole pass runs under sync_timeout_seconds; timing out is a FAILED
  pass with error_kind "sync_timeout" and retryable=True
- every failure leaves a FAILED SyncHistory row with the causal message

Called by: routers/sync.py
Depends on: connectors/crm_client.py, services/credential_service.py,
            services/organization_service.py, repository.py
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone

from ..config import settings
from ..connectors.crm_client import CrmClient, parse_remote_time, person_fields
from ..errors import (
    CredentialError,
    LeadSyncError,
    NotFoundError,
    RateLimitError,
    RemoteError,
    SyncInProgressError,
    SyncTimeoutError,
    ValidationError,
)
from ..models import Contact, SyncHistory, User
from ..repository import Repository
from .credential_service import load_user_api_key, mark_api_key_validated
from .organization_service import reconcile_organizations

log = logging.getLogger("leadsync.sync")


@dataclass
class SyncCounts:
    processed: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0


class SyncService:
    def __init__(
        self,
        repo: Repository,
        client_factory=None,
        *,
        timeout: float | None = None,
        page_size: int | None = None,
    ):
        self.repo = repo
        self.client_factory = client_factory or (lambda api_key: CrmClient(api_key))
        self.timeout = timeout if timeout is not None else settings.sync_timeout_seconds
        self.page_size = page_size or settings.sync_page_size

    # ── Run ─────────────────────────────────────────────────────────

    async def run_sync(self, user_id: int, *, force_full: bool = False) -> dict:
        repo = self.repo
        user = repo.get_or_raise(User, user_id)
        self._release_abandoned(user)

        claimed = repo.update_where(
            User,
            {"id": user_id, "sync_status": {"ne": "SYNCING"}},
            {"sync_status": "SYNCING", "updated_at": datetime.now(timezone.utc)},
        )
        if not claimed:
            repo.rollback()
            raise SyncInProgressError(f"A sync is already running for user {user_id}")
        repo.commit()
        repo.refresh(user)

        last_success = repo.find_first(
            SyncHistory, {"user_id": user_id, "status": "SUCCESS"}, order_by=[("start_time", "desc")]
        )
        since = None if force_full or last_success is None else last_success.start_time
        history = repo.create(
            SyncHistory,
            user_id=user_id,
            sync_type="INCREMENTAL" if since else "FULL",
            status="RUNNING",
            start_time=datetime.now(timezone.utc),
            since=since,
        )
        repo.commit()
        history_id = history.id
        log.info("Sync %s started for user %s (%s)", history_id, user_id, history.sync_type)

        counts = SyncCounts()
        try:
            await asyncio.wait_for(self._run_pass(user, since, history, counts), timeout=self.timeout)
        except asyncio.TimeoutError:
            error = SyncTimeoutError(f"Sync exceeded {self.timeout:.0f}s and was stopped")
            return self._finish_failed(user_id, history_id, counts, error)
        except LeadSyncError as e:
            return self._finish_failed(user_id, history_id, counts, e)
        except Exception as e:
            repo.rollback()
            self._finish_failed(user_id, history_id, counts, e)
            raise

        return self._finish_success(user_id, history_id, counts)

    async def _run_pass(self, user: User, since: datetime | None, history: SyncHistory, counts: SyncCounts) -> None:
        api_key = load_user_api_key(self.repo, user)
        client = self.client_factory(api_key)

        start = 0
        while True:
            if since:
                page = await client.get_recent_persons(since, start=start, limit=self.page_size)
            else:
                page = await client.get_persons(start=start, limit=self.page_size)
            if not page["success"]:
                raise _page_error(page)

            now = datetime.now(timezone.utc)
            for person in page["persons"]:
                counts.processed += 1
                try:
                    self._apply_person(user.id, person, counts, now)
                except ValidationError as e:
                    counts.failed += 1
                    log.warning("Skipped remote person for user %s: %s", user.id, e)

            self.repo.update(
                history,
                contacts_processed=counts.processed,
                contacts_created=counts.created,
                contacts_updated=counts.updated,
                contacts_failed=counts.failed,
            )
            self.repo.commit()

            if not page["more_items"]:
                break
            start = page["next_start"]

        reconcile_organizations(self.repo, user.id)
        if not user.crm_api_key_validated_at:
            mark_api_key_validated(self.repo, user)

    def _apply_person(self, user_id: int, person: dict, counts: SyncCounts, now: datetime) -> None:
        person_id = person.get("id")
        if not person_id:
            raise ValidationError("Remote person without id")
        person_id = str(person_id)
        fields = person_fields(person)
        remote_updated = parse_remote_time(person.get("update_time"))

        contact = self.repo.find_first(Contact, {"user_id": user_id, "crm_person_id": person_id})
        if contact is None and fields["email"]:
            # link a manually entered contact instead of duplicating it
            contact = self.repo.find_first(
                Contact, {"user_id": user_id, "crm_person_id": None, "email": {"iequals": fields["email"]}}
            )

        if contact is None:
            self.repo.create(
                Contact,
                user_id=user_id,
                crm_person_id=person_id,
                crm_updated_at=remote_updated,
                last_crm_update=now,
                update_sync_status="SYNCED",
                **fields,
            )
            counts.created += 1
            return

        changes = {k: v for k, v in fields.items() if getattr(contact, k) != v}
        if contact.crm_person_id != person_id:
            changes["crm_person_id"] = person_id
        if changes:
            self.repo.update(
                contact,
                **changes,
                crm_updated_at=remote_updated,
                last_crm_update=now,
                update_sync_status="SYNCED",
            )
            counts.updated += 1

    # ── Finalize ────────────────────────────────────────────────────

    def _finish_success(self, user_id: int, history_id: int, counts: SyncCounts) -> dict:
        repo = self.repo
        history = repo.get_or_raise(SyncHistory, history_id)
        end = datetime.now(timezone.utc)
        repo.update(
            history,
            status="SUCCESS",
            end_time=end,
            duration_ms=_duration_ms(history.start_time, end),
            contacts_processed=counts.processed,
            contacts_created=counts.created,
            contacts_updated=counts.updated,
            contacts_failed=counts.failed,
        )
        repo.update(repo.get_or_raise(User, user_id), sync_status="SYNCED", last_sync_at=end)
        repo.commit()
        log.info(
            "Sync %s for user %s finished: %d processed, %d created, %d updated, %d failed",
            history_id, user_id, counts.processed, counts.created, counts.updated, counts.failed,
        )
        return {"success": True, "data": history_to_dict(history)}

    def _finish_failed(self, user_id: int, history_id: int, counts: SyncCounts, error: Exception) -> dict:
        repo = self.repo
        if isinstance(error, LeadSyncError):
            message, kind, retryable = error.message, error.code, error.retryable
        else:
            message, kind, retryable = f"{type(error).__name__}: {error}", "internal_error", False

        history = repo.get_or_raise(SyncHistory, history_id)
        end = datetime.now(timezone.utc)
        repo.update(
            history,
            status="FAILED",
            end_time=end,
            duration_ms=_duration_ms(history.start_time, end),
            contacts_processed=counts.processed,
            contacts_created=counts.created,
            contacts_updated=counts.updated,
            contacts_failed=counts.failed,
            error=message,
            error_kind=kind,
            retryable=retryable,
        )
        repo.update(repo.get_or_raise(User, user_id), sync_status="FAILED")
        repo.commit()
        log.error("Sync %s for user %s failed (%s): %s", history_id, user_id, kind, message)

        details = {"sync": history_to_dict(history), "retryable": retryable}
        if isinstance(error, LeadSyncError) and error.details:
            details["cause"] = error.details
        return {"success": False, "error": message, "code": kind, "details": details}

    def _release_abandoned(self, user: User) -> None:
        if user.sync_status != "SYNCING":
            return
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.timeout * 2)
        running = self.repo.find_first(
            SyncHistory, {"user_id": user.id, "status": "RUNNING"}, order_by=[("start_time", "desc")]
        )
        if running is not None and running.start_time >= cutoff:
            return
        # claim committed but its history row not written yet
        if running is None and user.updated_at is not None and user.updated_at >= cutoff:
            return
        if running is not None:
            self.repo.update(
                running,
                status="FAILED",
                end_time=datetime.now(timezone.utc),
                error="Sync abandoned before completion",
                error_kind="abandoned",
                retryable=True,
            )
        self.repo.update(user, sync_status="FAILED")
        self.repo.commit()
        log.warning("Released abandoned sync claim for user %s", user.id)

    # ── Status ──────────────────────────────────────────────────────

    def get_sync_status(self, user_id: int) -> dict:
        repo = self.repo
        user = repo.get_or_raise(User, user_id)
        total = repo.count(Contact, {"user_id": user_id})
        synced = repo.count(Contact, {"user_id": user_id, "crm_person_id": {"not_null": True}})
        pending = repo.count(
            Contact, {"user_id": user_id, "update_sync_status": {"in": ["PENDING", "FAILED"]}}
        )
        last_sync = user.last_sync_at
        if last_sync is None:
            last = repo.find_first(
                SyncHistory, {"user_id": user_id, "status": "SUCCESS"}, order_by=[("start_time", "desc")]
            )
            last_sync = last.end_time if last else None
        return {
            "lastSync": last_sync.isoformat() if last_sync else None,
            "totalContacts": total,
            "syncedContacts": synced,
            "pendingSync": pending > 0,
            "syncInProgress": user.sync_status == "SYNCING",
        }

    def get_latest_sync(self, user_id: int) -> dict:
        self.repo.get_or_raise(User, user_id)
        latest = self.repo.find_first(SyncHistory, {"user_id": user_id}, order_by=[("start_time", "desc")])
        if latest is None:
            raise NotFoundError(f"No sync has run for user {user_id}")
        return history_to_dict(latest)

    def get_sync(self, user_id: int, sync_id: int) -> dict:
        """One pass by id, scoped to its owner; used to poll a running sync."""
        self.repo.get_or_raise(User, user_id)
        history = self.repo.find_first(SyncHistory, {"id": sync_id, "user_id": user_id})
        if history is None:
            raise NotFoundError(f"Sync {sync_id} not found")
        return history_to_dict(history)

    def get_sync_history(self, user_id: int, limit: int = 20, offset: int = 0) -> list[dict]:
        if not 1 <= limit <= 100:
            raise ValidationError("limit must be between 1 and 100")
        self.repo.get_or_raise(User, user_id)
        rows = self.repo.find_many(
            SyncHistory, {"user_id": user_id}, order_by=[("start_time", "desc")], limit=limit, offset=offset
        )
        return [history_to_dict(h) for h in rows]


def _page_error(page: dict) -> LeadSyncError:
    code = page.get("code")
    message = page.get("error") or "CRM request failed"
    if code == "unauthorized":
        return CredentialError(message, details=page.get("diagnostics") or {})
    if code == "rate_limited":
        return RateLimitError(message, retry_after=page.get("retry_after"), details=page.get("diagnostics") or {})
    return RemoteError(message, retryable=code == "server_error", details=page.get("diagnostics") or {})


def _duration_ms(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() * 1000)


def history_to_dict(h: SyncHistory) -> dict:
    return {
        "id": h.id,
        "sync_type": h.sync_type,
        "status": h.status,
        "start_time": h.start_time.isoformat() if h.start_time else None,
        "end_time": h.end_time.isoformat() if h.end_time else None,
        "duration_ms": h.duration_ms,
        "since": h.since.isoformat() if h.since else None,
        "counts": asdict(
            SyncCounts(
                processed=h.contacts_processed or 0,
                created=h.contacts_created or 0,
                updated=h.contacts_updated or 0,
                failed=h.contacts_failed or 0,
            )
        ),
        "error": h.error,
        "error_kind": h.error_kind,
        "retryable": h.retryable,
    }
