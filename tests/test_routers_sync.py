"""
tests/test_routers_sync.py — HTTP tests for the sync router

Covers: status-code mapping for engine errors, 207 partial batch updates,
409 on concurrent sync, 429 + Retry-After on search budget, API-key
rotation, My-500 query validation, contact lifecycle endpoints.

Called by: pytest
Depends on: leadsync.main (app), leadsync.routers.sync, tests/crm_fakes.py
"""

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from crm_fakes import Recorder, fail, ok, paginated
from leadsync.database import get_db
from leadsync.dependencies import get_client_factory, get_crm_client
from leadsync.main import app
from leadsync.models import SyncHistory
from leadsync.services.credential_service import decrypt_value


@pytest.fixture()
def crm():
    """Recording CRM stub; tests swap crm.handler before calling the API."""
    return Recorder(lambda r: ok([], paginated()))


@pytest.fixture()
def client(db_session, make_client, crm):
    def _db():
        yield db_session

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_crm_client] = lambda: make_client(crm)
    app.dependency_overrides[get_client_factory] = lambda: (lambda api_key: make_client(crm, api_key=api_key))
    yield TestClient(app)
    app.dependency_overrides.clear()


def url(user, path: str) -> str:
    return f"/api/users/{user.id}{path}"


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


# ── Sync ─────────────────────────────────────────────────────────────


def test_sync_runs_and_reports(client, test_user, crm):
    crm.handler = lambda r: ok([{"id": 1, "name": "Ann"}], paginated())

    resp = client.post(url(test_user, "/sync"))

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["data"]["counts"]["created"] == 1

    status = client.get(url(test_user, "/sync/status")).json()["data"]
    assert status["totalContacts"] == 1
    assert status["syncInProgress"] is False

    latest = client.get(url(test_user, "/sync/latest")).json()["data"]
    assert latest["status"] == "SUCCESS"
    assert len(client.get(url(test_user, "/sync/history")).json()["data"]) == 1


def test_sync_detail_by_id(client, test_user, crm):
    crm.handler = lambda r: ok([{"id": 1, "name": "Ann"}], paginated())
    sync_id = client.post(url(test_user, "/sync")).json()["data"]["id"]

    detail = client.get(url(test_user, f"/sync/{sync_id}"))

    assert detail.status_code == 200
    assert detail.json()["data"]["status"] == "SUCCESS"
    assert client.get(url(test_user, f"/sync/{sync_id + 100}")).status_code == 404


def test_sync_while_running_is_409(client, db_session, test_user, crm):
    test_user.sync_status = "SYNCING"
    db_session.add(SyncHistory(
        user_id=test_user.id, sync_type="FULL", status="RUNNING", start_time=datetime.now(timezone.utc),
    ))
    db_session.commit()

    resp = client.post(url(test_user, "/sync"))

    assert resp.status_code == 409
    assert resp.json()["code"] == "sync_in_progress"
    assert crm.requests == []


def test_sync_with_rejected_key_is_400(client, test_user, crm):
    crm.handler = lambda r: fail(401, "unauthorized")

    resp = client.post(url(test_user, "/sync"))

    assert resp.status_code == 400
    body = resp.json()
    assert body["code"] == "credential_error"
    assert body["details"]["sync"]["status"] == "FAILED"


def test_unknown_user_is_404(client):
    assert client.get("/api/users/999/sync/status").status_code == 404


def test_latest_without_history_is_404(client, test_user):
    assert client.get(url(test_user, "/sync/latest")).status_code == 404


def test_history_limit_bounds(client, test_user):
    assert client.get(url(test_user, "/sync/history?limit=0")).status_code == 422


# ── CRM ──────────────────────────────────────────────────────────────


def test_batch_update_partial_failure_is_207(client, test_user, crm):
    def handler(request):
        if request.url.path == "/v1/persons/2":
            return fail(400, "Invalid email")
        return ok({"id": 1})

    crm.handler = handler

    resp = client.post(url(test_user, "/crm/batch-update"), json={"updates": [
        {"record_type": "activity", "record_id": "1", "data": {"done": True}},
        {"record_type": "person", "record_id": "2", "data": {"email": ["x"]}},
        {"record_type": "organization", "record_id": "3", "data": {"name": "Acme"}},
    ]})

    assert resp.status_code == 207
    body = resp.json()
    assert body["success"] is False
    assert body["summary"]["total"] == 3
    assert body["summary"]["successful"] == 2
    assert body["summary"]["failed"] == 1


def test_batch_update_all_ok_is_200(client, test_user, crm):
    crm.handler = lambda r: ok({"id": 1})
    resp = client.post(url(test_user, "/crm/batch-update"), json={"updates": [
        {"record_type": "deal", "record_id": 1, "data": {"value": 5}},
    ]})
    assert resp.status_code == 200
    assert resp.json()["success"] is True


@pytest.mark.parametrize("payload", [
    {"updates": []},
    {"updates": [{"record_type": "invoice", "record_id": "1"}]},
    {"updates": [{"record_type": "deal", "record_id": "  "}]},
    {"updates": [{"record_type": "deal", "record_id": "../persons/1"}]},
])
def test_batch_update_payload_validated(client, test_user, payload):
    assert client.post(url(test_user, "/crm/batch-update"), json=payload).status_code == 422


def test_batch_update_rejects_path_like_record_id(client, test_user, crm):
    resp = client.post(url(test_user, "/crm/batch-update"), json={"updates": [
        {"record_type": "person", "record_id": "../deals/9", "data": {"value": 0}},
    ]})

    assert resp.status_code == 422
    assert "positive integer" in resp.text
    assert crm.requests == []


def test_org_search_budget_answers_429(client, test_user, crm):
    crm.handler = lambda r: ok({"items": [{"item": {"id": 1, "name": "Acme"}}]})
    for i in range(10):
        assert client.post(url(test_user, "/crm/organizations/search"), json={"query": f"acme {i}"}).status_code == 200

    resp = client.post(url(test_user, "/crm/organizations/search"), json={"query": "globex"})

    assert resp.status_code == 429
    assert resp.json()["code"] == "rate_limited"
    assert int(resp.headers["Retry-After"]) >= 1


def test_org_search_cached_flag(client, test_user, crm):
    crm.handler = lambda r: ok({"items": [{"item": {"id": 1, "name": "Acme"}}]})
    first = client.post(url(test_user, "/crm/organizations/search"), json={"query": "Acme"}).json()
    second = client.post(url(test_user, "/crm/organizations/search"), json={"query": "acme"}).json()
    assert first["cached"] is False
    assert second["cached"] is True


def test_org_search_short_query_422(client, test_user):
    assert client.post(url(test_user, "/crm/organizations/search"), json={"query": " ab "}).status_code == 422


def test_contact_search_route(client, test_user, crm):
    crm.handler = lambda r: ok({"items": [{"item": {"id": 4, "name": "Ann Archer"}}]})

    body = client.post(url(test_user, "/crm/contacts/search"), json={"query": "Ann Archer"}).json()

    assert body["success"] is True
    assert [p["id"] for p in body["persons"]] == [4]
    assert len(crm.requests) == 2


def test_custom_fields(client, test_user, crm):
    crm.handler = lambda r: ok([{"id": 1, "key": "label", "name": "Label", "field_type": "enum", "options": []}])
    body = client.get(url(test_user, "/crm/custom-fields")).json()
    assert body["data"]["person_fields"][0]["key"] == "label"
    assert body["data"]["organization_fields"][0]["key"] == "label"


def test_test_connection_marks_key_validated(client, test_user, crm):
    crm.handler = lambda r: ok({"id": 7, "email": "rep@leadsync.test"})

    body = client.get(url(test_user, "/crm/test-connection")).json()

    assert body["success"] is True
    assert test_user.crm_api_key_validated_at is not None


# ── API key ──────────────────────────────────────────────────────────


def test_api_key_rotation_tested_and_stored(client, test_user, crm):
    crm.handler = lambda r: ok({"id": 7})
    new_key = "ab" * 16

    resp = client.put(url(test_user, "/api-key"), json={"api_key": new_key})

    assert resp.status_code == 200
    body = resp.json()
    assert body["validated"] is True
    assert body["masked_key"].endswith("abab")
    assert new_key not in body["masked_key"]
    assert decrypt_value(test_user.crm_api_key) == new_key
    assert crm.requests[0].url.params["api_token"] == new_key


def test_rejected_api_key_not_stored(client, test_user, crm):
    before = test_user.crm_api_key
    crm.handler = lambda r: fail(401, "unauthorized")

    resp = client.put(url(test_user, "/api-key"), json={"api_key": "cd" * 16})

    assert resp.status_code == 400
    assert test_user.crm_api_key == before


def test_api_key_bad_format_400(client, test_user, crm):
    resp = client.put(url(test_user, "/api-key"), json={"api_key": "not-hex"})
    assert resp.status_code == 400
    assert resp.json()["code"] == "validation_error"
    assert crm.requests == []


def test_api_key_stored_without_test(client, test_user, crm):
    resp = client.put(url(test_user, "/api-key"), json={"api_key": "ef" * 20, "test_connection": False})
    assert resp.json()["validated"] is False
    assert crm.requests == []


# ── My-500 & contacts ────────────────────────────────────────────────


def test_my_500_lists_ranked_contacts(client, test_user, make_contact):
    make_contact(name="Warm", warmness_score=5)
    make_contact(name="Campaign", warmness_score=9, added_to_campaign=True)

    body = client.get(url(test_user, "/my-500")).json()

    assert [c["name"] for c in body["data"]["contacts"]] == ["Campaign", "Warm"]
    assert body["data"]["pagination"]["total"] == 2


def test_my_500_invalid_query_400(client, test_user):
    resp = client.get(url(test_user, "/my-500?limit=500&filter=vip"))
    assert resp.status_code == 400
    assert len(resp.json()["details"]["errors"]) == 2


def test_my_500_stats(client, test_user, make_contact):
    make_contact(name="Hot", warmness_score=8)
    assert client.get(url(test_user, "/my-500/stats")).json()["data"]["by_status"]["hot"] == 1


def test_contact_detail_and_lifecycle(client, test_user, make_contact):
    contact = make_contact(name="Ann")

    assert client.get(url(test_user, f"/contacts/{contact.id}")).json()["data"]["name"] == "Ann"
    off = client.post(url(test_user, f"/contacts/{contact.id}/deactivate"), json={"reason": "left"})
    assert off.json()["data"]["is_active"] is False
    assert client.post(url(test_user, f"/contacts/{contact.id}/deactivate")).status_code == 400
    on = client.post(url(test_user, f"/contacts/{contact.id}/reactivate"))
    assert on.json()["data"]["is_active"] is True


def test_missing_contact_404(client, test_user):
    assert client.get(url(test_user, "/contacts/999")).status_code == 404


def test_check_warm_lead_below_threshold(client, test_user, make_contact, crm):
    contact = make_contact(name="Ann")
    body = client.post(url(test_user, f"/contacts/{contact.id}/check-warm-lead"), json={"warmness_score": 1}).json()
    assert body["is_warm_lead"] is False
    assert crm.requests == []


def test_replicate_unlinked_activity_409(client, test_user, make_contact, make_activity):
    activity = make_activity(make_contact(name="Ann"))
    resp = client.post(url(test_user, f"/activities/{activity.id}/replicate"))
    assert resp.status_code == 409
    assert resp.json()["code"] == "not_linked"
