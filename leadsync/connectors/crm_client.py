"""CRM client — rate-limited, retrying wrapper over the Pipedrive-style REST API.

API docs: https://developers.pipedrive.com/docs/api/v1

Every public method returns a dict:
    {"success": True, <payload>, "diagnostics": {...}}
    {"success": False, "error": str, "code": str, "diagnostics": {...}}

Ordinary remote failures (4xx/5xx) never raise. Apart from ValidationError on
malformed input (a blank org name, a record id that is not a positive integer),
only two things do:
  - TransportError — network fault after retries were exhausted
  - ConflictError  — 409 on an update, so reconciliation can apply its policy

Retry discipline:
  - 429 → hold the credential for rate_limit_delay, retry up to max_retries
    (safe for every method, the remote rejected the request)
  - transport faults / 5xx → capped exponential backoff, retried only for
    idempotent calls (GET, PUT-by-id); a POST is never replayed
"""

import asyncio
import logging
import re
import time
from datetime import datetime, timezone
from urllib.parse import quote

import httpx

from ..cache.search_cache import get_search_cache
from ..config import CrmClientConfig
from ..errors import ConflictError, CredentialError, TransportError, ValidationError
from ..rate_limit import CrmRateLimiter, credential_key, get_limiter

log = logging.getLogger("leadsync.crm")

_IDEMPOTENT = {"GET", "PUT", "DELETE", "HEAD"}

ACTIVITY_TYPE_MAP = {
    "CALL": "call",
    "EMAIL": "email",
    "MEETING": "meeting",
    "MEETING_REQUEST": "lunch",
    "LINKEDIN": "task",
    "REFERRAL": "task",
    "CONFERENCE": "meeting",
}

_SCRIPT_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]*>")
_REMOTE_ID_RE = re.compile(r"[0-9]+")


def sanitize_string(value, max_length: int) -> str | None:
    """Strip HTML tags and scripts, trim, and truncate to max_length."""
    if not value:
        return None
    cleaned = _TAG_RE.sub("", _SCRIPT_RE.sub("", str(value))).strip()
    if not cleaned:
        return None
    return cleaned[:max_length]


def is_remote_id(value) -> bool:
    """Remote record ids are positive integers, given as int or digit string."""
    if value is None or isinstance(value, bool):
        return False
    text = str(value).strip()
    return bool(_REMOTE_ID_RE.fullmatch(text)) and int(text) > 0


def map_activity_type(activity_type: str | None) -> str:
    return ACTIVITY_TYPE_MAP.get((activity_type or "").upper(), "task")


def format_date(dt: datetime) -> str:
    return _as_utc(dt).strftime("%Y-%m-%d")


def format_time(dt: datetime) -> str:
    return _as_utc(dt).strftime("%H:%M")


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _first_value(field) -> str | None:
    """Remote email/phone fields arrive as ["a"] or [{"value": "a", "primary": True}]."""
    if not field:
        return None
    if isinstance(field, str):
        return field or None
    items = list(field)
    primary = next((i for i in items if isinstance(i, dict) and i.get("primary")), None)
    item = primary or items[0]
    if isinstance(item, dict):
        return item.get("value") or None
    return item or None


def _pagination(additional: dict | None, start: int, count: int) -> tuple[bool, int | None]:
    page = (additional or {}).get("pagination") or {}
    more = bool(page.get("more_items_in_collection"))
    next_start = page.get("next_start")
    if more and next_start is None:
        next_start = start + count
    return more, (next_start if more else None)


class CrmClient:
    def __init__(
        self,
        api_key: str,
        *,
        config: CrmClientConfig | None = None,
        limiter: CrmRateLimiter | None = None,
        search_cache=None,
        http_client: httpx.AsyncClient | None = None,
        sleep=asyncio.sleep,
    ):
        if not api_key or not api_key.strip():
            raise CredentialError("CRM API key is required")
        self.config = config or CrmClientConfig.from_settings()
        errors = self.config.validate()
        if errors:
            raise ValidationError(f"Invalid CRM configuration: {', '.join(errors)}")
        self._api_key = api_key.strip()
        self.key = credential_key(self._api_key)
        self.limiter = limiter or get_limiter()
        self.search_cache = search_cache if search_cache is not None else get_search_cache()
        self._http = http_client
        self._sleep = sleep

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            from ..http_client import http

            self._http = http
        return self._http

    # ── Transport ───────────────────────────────────────────────────

    def _backoff(self, attempt: int) -> float:
        return min(self.config.retry_delay * (2 ** (attempt - 1)), self.config.max_backoff)

    def _auth(self, params: dict, headers: dict) -> None:
        if self.config.auth_mode == "bearer":
            headers["Authorization"] = f"Bearer {self._api_key}"
        else:
            params["api_token"] = self._api_key

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict | None = None,
        json: dict | None = None,
        context: dict | None = None,
    ) -> dict:
        cfg = self.config
        url = f"{cfg.api_url}{path}"
        max_retries = cfg.max_retries if cfg.enable_retries else 0
        idempotent = method.upper() in _IDEMPOTENT
        context = context or {}

        attempt = 0
        while True:
            attempt += 1
            if cfg.enable_rate_limiting:
                await self.limiter.acquire(self.key)

            query = dict(params or {})
            headers = {"Content-Type": "application/json"}
            self._auth(query, headers)
            started = time.monotonic()
            try:
                resp = await self.http.request(
                    method, url, params=query, json=json, headers=headers, timeout=cfg.timeout
                )
            except httpx.TransportError as e:
                if idempotent and attempt <= max_retries:
                    delay = self._backoff(attempt)
                    log.warning(
                        "CRM %s %s failed (attempt %d): %s; retrying in %.1fs",
                        method, path, attempt, type(e).__name__, delay,
                    )
                    await self._sleep(delay)
                    continue
                log.error("CRM %s %s failed after %d attempt(s): %s", method, path, attempt, e)
                raise TransportError(
                    f"Failed to connect to CRM API: {type(e).__name__}",
                    details={"attempt": attempt, "endpoint": path, "method": method, **context},
                ) from e

            diagnostics = {
                "attempt": attempt,
                "endpoint": path,
                "method": method,
                "status": resp.status_code,
                "response_time_ms": int((time.monotonic() - started) * 1000),
                "rate_limit": self.limiter.record_headers(self.key, resp.headers),
                **context,
            }

            if resp.status_code == 429:
                retry_after = _retry_after(resp)
                if cfg.enable_rate_limiting:
                    self.limiter.block(self.key, cfg.rate_limit_delay)
                    if attempt <= max_retries:
                        log.warning(
                            "CRM rate limit hit on %s %s (attempt %d); holding %.0fs",
                            method, path, attempt, cfg.rate_limit_delay,
                        )
                        continue
                log.error("CRM rate limit exceeded on %s %s", method, path)
                return _failure(
                    "Rate limit exceeded", "rate_limited", diagnostics,
                    retry_after=retry_after or cfg.rate_limit_delay,
                )

            if resp.status_code >= 500 and idempotent and attempt <= max_retries:
                delay = self._backoff(attempt)
                log.warning(
                    "CRM %s %s returned %d (attempt %d); retrying in %.1fs",
                    method, path, resp.status_code, attempt, delay,
                )
                await self._sleep(delay)
                continue

            if resp.status_code == 401:
                log.error("CRM API key expired or invalid")
                return _failure("API key expired or invalid", "unauthorized", diagnostics)

            body = _json_or_empty(resp)
            if not resp.is_success:
                message = body.get("error") or f"HTTP {resp.status_code}: {resp.reason_phrase}"
                if cfg.enable_detailed_logging:
                    log.error("CRM API error: %s", {**diagnostics, "body": body})
                code = {404: "not_found", 409: "conflict"}.get(
                    resp.status_code, "server_error" if resp.status_code >= 500 else "remote_error"
                )
                return _failure(message, code, diagnostics)

            if body.get("success") is False:
                return _failure(body.get("error") or "CRM API reported failure", "remote_error", diagnostics)

            return {
                "success": True,
                "data": body.get("data"),
                "additional_data": body.get("additional_data") or {},
                "diagnostics": diagnostics,
            }

    # ── Connection ──────────────────────────────────────────────────

    async def test_connection(self) -> dict:
        """Confirm the credential against /users/me."""
        started = time.monotonic()
        try:
            result = await self._request("GET", "/users/me", context={"test_connection": True})
        except TransportError as e:
            return {
                "success": False,
                "error": e.message,
                "code": e.code,
                "diagnostics": {**e.details, "error_type": "Network Error"},
            }
        diagnostics = {
            **result["diagnostics"],
            "response_time": f"{int((time.monotonic() - started) * 1000)}ms",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "api_version": self.config.api_version,
        }
        if result["success"]:
            return {"success": True, "user": result["data"], "diagnostics": diagnostics}
        return {
            "success": False,
            "error": result["error"] or "Failed to connect to CRM API",
            "code": result["code"],
            "diagnostics": {**diagnostics, "error_type": "API Error"},
        }

    # ── Persons ─────────────────────────────────────────────────────

    async def get_persons(self, start: int = 0, limit: int = 100) -> dict:
        result = await self._request("GET", "/persons", params={"start": start, "limit": limit})
        if not result["success"]:
            return result
        persons = result["data"] or []
        more, next_start = _pagination(result["additional_data"], start, len(persons))
        return {
            "success": True,
            "persons": persons,
            "more_items": more,
            "next_start": next_start,
            "diagnostics": result["diagnostics"],
        }

    async def get_recent_persons(self, since: datetime, start: int = 0, limit: int = 100) -> dict:
        """Persons changed since `since` — the incremental sync feed."""
        result = await self._request(
            "GET",
            "/recents",
            params={
                "since_timestamp": _as_utc(since).strftime("%Y-%m-%d %H:%M:%S"),
                "items": "person",
                "start": start,
                "limit": limit,
            },
        )
        if not result["success"]:
            return result
        rows = result["data"] or []
        persons = [
            r.get("data") for r in rows
            if r.get("item") == "person" and isinstance(r.get("data"), dict)
        ]
        more, next_start = _pagination(result["additional_data"], start, len(rows))
        return {
            "success": True,
            "persons": persons,
            "more_items": more,
            "next_start": next_start,
            "diagnostics": result["diagnostics"],
        }

    def person_payload(self, contact) -> dict:
        """Map a local Contact onto the remote person shape (sanitized when enabled)."""
        cfg = self.config
        name, email, phone = contact.name, contact.email, contact.phone
        if cfg.enable_data_sanitization:
            name = sanitize_string(name, cfg.max_name_length)
            email = sanitize_string(email, cfg.max_email_length)
            phone = sanitize_string(phone, cfg.max_phone_length)
        payload = {
            "name": name or "Unknown Contact",
            "email": [email] if email else [],
            "phone": [phone] if phone else [],
        }
        if contact.crm_org_id:
            payload["org_id"] = int(contact.crm_org_id)
        return payload

    async def create_person(self, data: dict) -> dict:
        payload = {k: v for k, v in data.items() if v is not None}
        result = await self._request("POST", "/persons", json=payload, context={"person_name": payload.get("name")})
        if not result["success"]:
            return result
        person_id = (result["data"] or {}).get("id")
        if not person_id:
            log.error("CRM API returned no person id")
            return _failure("Invalid response from CRM API", "invalid_response", result["diagnostics"])
        return {"success": True, "person_id": person_id, "diagnostics": result["diagnostics"]}

    async def create_or_update_person(self, contact) -> dict:
        """Upsert by natural key: update when the contact is already linked."""
        payload = self.person_payload(contact)
        if contact.crm_person_id:
            result = await self.update_person(contact.crm_person_id, payload)
            if result["success"]:
                result["person_id"] = int(contact.crm_person_id)
            return result
        return await self.create_person(payload)

    async def update_person(self, person_id, data: dict) -> dict:
        return await self._update("person", "persons", person_id, data)

    async def search_persons(self, query: str) -> dict:
        result = await self._request("GET", "/persons/search", params={"term": query})
        if not result["success"]:
            return result
        items = (result["data"] or {}).get("items") or []
        persons = []
        for row in items:
            item = row.get("item") or row
            org = item.get("organization") or {}
            persons.append({
                "id": item.get("id") or 0,
                "name": item.get("name") or "",
                "email": item.get("emails") or item.get("email") or [],
                "phone": item.get("phones") or item.get("phone") or [],
                "org_name": org.get("name") or item.get("org_name"),
                "org_id": org.get("id") or item.get("org_id"),
            })
        return {"success": True, "persons": persons, "diagnostics": result["diagnostics"]}

    async def search_contacts(self, query: str, user_id=None) -> dict:
        """Search persons once per whitespace-separated term, merged and de-duplicated by id."""
        min_length = self.config.min_search_length
        if not isinstance(query, str) or len(query.strip()) < min_length:
            raise ValidationError(f"Query must be at least {min_length} characters long")

        allowed, retry_after = self.limiter.hit_search(user_id)
        if not allowed:
            return {
                "success": False,
                "error": "Rate limit exceeded. Please wait before searching again.",
                "code": "rate_limited",
                "retry_after": retry_after,
            }

        terms = list(dict.fromkeys(query.split()))
        results = await asyncio.gather(*(self.search_persons(t) for t in terms))
        for result in results:
            if not result["success"]:
                return result

        seen, persons = set(), []
        for result in results:
            for person in result["persons"]:
                if person["id"] not in seen:
                    seen.add(person["id"])
                    persons.append(person)
        return {"success": True, "persons": persons}

    # ── Organizations ───────────────────────────────────────────────

    async def get_organizations(self, start: int = 0, limit: int = 100) -> dict:
        result = await self._request("GET", "/organizations", params={"start": start, "limit": limit})
        if not result["success"]:
            return result
        orgs = result["data"] or []
        more, next_start = _pagination(result["additional_data"], start, len(orgs))
        return {
            "success": True,
            "organizations": orgs,
            "more_items": more,
            "next_start": next_start,
            "diagnostics": result["diagnostics"],
        }

    async def create_organization(self, data: dict) -> dict:
        payload = {k: v for k, v in data.items() if v is not None}
        if self.config.enable_data_sanitization:
            payload["name"] = sanitize_string(payload.get("name"), self.config.max_org_name_length)
        if not payload.get("name"):
            raise ValidationError("Organization name is required")
        result = await self._request("POST", "/organizations", json=payload, context={"org_name": payload["name"]})
        if not result["success"]:
            return result
        org_id = (result["data"] or {}).get("id")
        if not org_id:
            return _failure("Invalid response from CRM API", "invalid_response", result["diagnostics"])
        return {"success": True, "org_id": org_id, "diagnostics": result["diagnostics"]}

    async def update_organization(self, org_id, data: dict) -> dict:
        return await self._update("organization", "organizations", org_id, data)

    async def search_organizations(self, query: str, user_id=None) -> dict:
        """Search by name, cached per (user, normalized query) and budgeted per user."""
        min_length = self.config.min_search_length
        if not isinstance(query, str) or len(query.strip()) < min_length:
            raise ValidationError(f"Query must be at least {min_length} characters long")

        cached = self.search_cache.get(user_id, query)
        if cached is not None:
            return {"success": True, "organizations": cached, "cached": True}

        allowed, retry_after = self.limiter.hit_search(user_id)
        if not allowed:
            return {
                "success": False,
                "error": "Rate limit exceeded. Please wait before searching again.",
                "code": "rate_limited",
                "retry_after": retry_after,
                "cached": False,
            }

        result = await self._request(
            "GET", "/organizations/search", params={"term": query.strip()}, context={"search_query": query}
        )
        if not result["success"]:
            return {**result, "cached": False}

        items = (result["data"] or {}).get("items") or []
        organizations = []
        for row in items:
            item = row.get("item") or row
            organizations.append({
                "id": item.get("id") or 0,
                "name": item.get("name") or "",
                "address": item.get("address"),
            })
        self.search_cache.set(user_id, query, organizations)
        return {
            "success": True,
            "organizations": organizations,
            "cached": False,
            "diagnostics": result["diagnostics"],
        }

    # ── Activities & deals ──────────────────────────────────────────

    def activity_payload(self, activity, person_id=None, org_id=None) -> dict:
        cfg = self.config
        subject = activity.subject or "Activity"
        note = activity.note
        if cfg.enable_data_sanitization:
            subject = sanitize_string(subject, cfg.max_subject_length) or "Activity"
            note = sanitize_string(note, cfg.max_note_length)
        payload = {
            "subject": subject,
            "type": map_activity_type(activity.type),
            "note": note,
            "person_id": int(person_id) if person_id else None,
            "org_id": int(org_id) if org_id else None,
        }
        if activity.due_date:
            payload["due_date"] = format_date(activity.due_date)
            payload["due_time"] = format_time(activity.due_date)
        return {k: v for k, v in payload.items() if v is not None}

    async def create_activity(self, activity, person_id=None, org_id=None) -> dict:
        payload = self.activity_payload(activity, person_id=person_id, org_id=org_id)
        result = await self._request(
            "POST", "/activities", json=payload,
            context={"activity_id": getattr(activity, "id", None), "activity_type": activity.type},
        )
        if not result["success"]:
            return result
        activity_id = (result["data"] or {}).get("id")
        if not activity_id:
            return _failure("Invalid response from CRM API", "invalid_response", result["diagnostics"])
        return {"success": True, "activity_id": activity_id, "diagnostics": result["diagnostics"]}

    async def update_activity(self, activity_id, data: dict) -> dict:
        return await self._update("activity", "activities", activity_id, data)

    async def update_deal(self, deal_id, data: dict) -> dict:
        return await self._update("deal", "deals", deal_id, data)

    async def _update(self, record_type: str, collection: str, record_id, data: dict) -> dict:
        if not is_remote_id(record_id):
            raise ValidationError(f"Invalid {record_type} id: {record_id!r}")
        record_id = str(record_id).strip()
        result = await self._request(
            "PUT",
            f"/{collection}/{quote(record_id, safe='')}",
            json=data,
            context={"record_type": record_type, "record_id": record_id},
        )
        if result.get("code") == "conflict":
            raise ConflictError(
                result["error"] or f"Conflict updating {record_type} {record_id}",
                record_type=record_type,
                record_id=record_id,
                details=result["diagnostics"],
            )
        if not result["success"]:
            return result
        return {
            "success": True,
            "record_id": record_id,
            "data": result["data"],
            "diagnostics": result["diagnostics"],
        }

    # ── Users & custom fields ───────────────────────────────────────

    async def find_user_by_email(self, email: str) -> dict:
        result = await self._request(
            "GET", "/users/find", params={"term": email, "search_by_email": 1}
        )
        if not result["success"]:
            return result
        users = result["data"] or []
        if isinstance(users, dict):
            users = [users]
        match = next((u for u in users if (u.get("email") or "").lower() == email.lower()), None)
        return {"success": True, "user": match, "diagnostics": result["diagnostics"]}

    async def get_person_custom_fields(self) -> dict:
        return await self._fields("/personFields")

    async def get_organization_custom_fields(self) -> dict:
        return await self._fields("/organizationFields")

    async def add_person_field_option(self, field: dict, label: str) -> dict:
        """Append an option to an enum person field. Returns the new option id."""
        options = [{"id": o["id"], "label": o["label"]} for o in field.get("options") or []]
        result = await self._request(
            "PUT",
            f"/personFields/{field['id']}",
            json={"options": options + [{"label": label}]},
            context={"field_key": field.get("key")},
        )
        if not result["success"]:
            return result
        created = next(
            (o for o in (result["data"] or {}).get("options") or []
             if (o.get("label") or "").lower() == label.lower()),
            None,
        )
        if not created:
            return _failure("Label option missing from response", "invalid_response", result["diagnostics"])
        return {"success": True, "option_id": created["id"], "diagnostics": result["diagnostics"]}

    async def _fields(self, path: str) -> dict:
        result = await self._request("GET", path, params={"start": 0, "limit": 500})
        if not result["success"]:
            return result
        fields = [
            {
                "id": f.get("id"),
                "key": f.get("key"),
                "name": f.get("name"),
                "field_type": f.get("field_type"),
                "options": f.get("options") or [],
            }
            for f in (result["data"] or [])
        ]
        return {"success": True, "fields": fields, "diagnostics": result["diagnostics"]}


def _failure(error: str, code: str, diagnostics: dict, **extra) -> dict:
    return {"success": False, "error": error, "code": code, "diagnostics": diagnostics, **extra}


def _json_or_empty(resp: httpx.Response) -> dict:
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {"data": body}


def _retry_after(resp: httpx.Response) -> float | None:
    raw = resp.headers.get("retry-after")
    try:
        return float(raw) if raw is not None else None
    except ValueError:
        return None


def person_fields(person: dict) -> dict:
    """Flatten a remote person into local Contact column values."""
    org = person.get("org_id")
    org_id = org.get("value") if isinstance(org, dict) else org
    org_name = person.get("org_name") or (org.get("name") if isinstance(org, dict) else None)
    return {
        "name": (person.get("name") or "").strip() or "Unknown Contact",
        "email": _first_value(person.get("email")),
        "phone": _first_value(person.get("phone")),
        "organization_name": org_name or None,
        "crm_org_id": str(org_id) if org_id else None,
    }


def parse_remote_time(raw) -> datetime | None:
    """Remote timestamps look like '2025-07-14 09:30:00' (UTC)."""
    if not raw:
        return None
    for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S.%fZ", "%Y-%m-%dT%H:%M:%SZ"):
        try:
            return datetime.strptime(raw, fmt).replace(tzinfo=timezone.utc)
        except (TypeError, ValueError):
            continue
    return None
