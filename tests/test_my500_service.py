"""Tests for the My-500 list: ranking, search, filters, sorting, paging, stats."""

from datetime import datetime, timedelta, timezone

import pytest

from leadsync.errors import NotFoundError, ValidationError
from leadsync.models import Contact, User
from leadsync.services import my500_service
from leadsync.services.my500_service import My500Query, calculate_pagination, get_contact, get_contact_stats, search_contacts

NOW = datetime(2025, 7, 14, 12, 0, tzinfo=timezone.utc)


def names(result):
    return [c["name"] for c in result["contacts"]]


@pytest.fixture()
def roster(make_contact):
    return [
        make_contact(name="Hot Harry", warmness_score=8, last_contacted=NOW - timedelta(days=1), email="harry@globex.test"),
        make_contact(name="Cold Cara", warmness_score=0, organization_name="Acme Corp"),
        make_contact(name="Camp Carl", warmness_score=5, added_to_campaign=True),
        make_contact(name="Lost Lou", warmness_score=-1, last_contacted=NOW - timedelta(days=60)),
        make_contact(name="Gone Gina", warmness_score=1, is_active=False),
    ]


def test_default_order_is_ranked(repo, test_user, roster):
    result = search_contacts(repo, test_user.id, now=NOW)
    assert names(result) == ["Camp Carl", "Lost Lou", "Cold Cara", "Hot Harry"]
    assert result["pagination"]["total"] == 4
    assert result["filters"] == {"available": ["campaign", "status"], "applied": []}


def test_items_carry_labels_and_last_activity(repo, test_user, roster, make_activity):
    make_activity(roster[0], subject="Demo")

    result = search_contacts(repo, test_user.id, My500Query(search="harry"), now=NOW)

    item = result["contacts"][0]
    assert item["status"] == "hot"
    assert item["priority"] == "medium"
    assert item["days_since_last_contact"] == 1
    assert item["last_activity"]["subject"] == "Demo"


def test_inactive_included_on_request(repo, test_user, roster):
    result = search_contacts(repo, test_user.id, My500Query(include_inactive=True), now=NOW)
    assert "Gone Gina" in names(result)


@pytest.mark.parametrize("term,expected", [
    ("CARA", ["Cold Cara"]),
    ("globex", ["Hot Harry"]),
    ("acme", ["Cold Cara"]),
    ("nobody", []),
])
def test_search_matches_name_email_and_org(repo, test_user, roster, term, expected):
    assert names(search_contacts(repo, test_user.id, My500Query(search=term), now=NOW)) == expected


def test_campaign_filter(repo, test_user, roster):
    result = search_contacts(repo, test_user.id, My500Query(filter="campaign"), now=NOW)
    assert names(result) == ["Camp Carl"]
    assert result["filters"]["applied"] == ["campaign"]


def test_status_filter(repo, test_user, roster):
    result = search_contacts(repo, test_user.id, My500Query(filter="status", status="lost"), now=NOW)
    assert names(result) == ["Lost Lou"]


def test_explicit_sort_puts_nulls_last(repo, test_user, roster):
    asc = search_contacts(repo, test_user.id, My500Query(sort="last_contacted"), now=NOW)
    desc = search_contacts(repo, test_user.id, My500Query(sort="last_contacted", order="desc"), now=NOW)

    assert names(asc)[:2] == ["Lost Lou", "Hot Harry"]
    assert names(desc)[:2] == ["Hot Harry", "Lost Lou"]
    assert set(names(asc)[2:]) == set(names(desc)[2:]) == {"Camp Carl", "Cold Cara"}


def test_sort_by_name_is_case_insensitive(repo, test_user, make_contact):
    make_contact(name="bravo")
    make_contact(name="Alpha")
    result = search_contacts(repo, test_user.id, My500Query(sort="name"), now=NOW)
    assert names(result) == ["Alpha", "bravo"]


def test_paging(repo, test_user, roster):
    first = search_contacts(repo, test_user.id, My500Query(page=1, limit=3), now=NOW)
    second = search_contacts(repo, test_user.id, My500Query(page=2, limit=3), now=NOW)

    assert len(first["contacts"]) == 3
    assert names(second) == ["Hot Harry"]
    assert second["pagination"] == {
        "page": 2, "limit": 3, "total": 4, "total_pages": 2, "has_next": False, "has_prev": True,
    }


def test_default_order_capped(repo, test_user, make_contact, monkeypatch):
    for i in range(4):
        make_contact(name=f"c{i}", warmness_score=i)
    monkeypatch.setattr(my500_service.settings, "my500_max_contacts", 2)

    result = search_contacts(repo, test_user.id, now=NOW)

    assert result["pagination"]["total"] == 2
    assert names(result) == ["c0", "c1"]


def test_other_users_contacts_hidden(repo, db_session, test_user, roster):
    other = User(email="other@leadsync.test")
    db_session.add(other)
    db_session.commit()
    db_session.add(Contact(user_id=other.id, name="Stranger"))
    db_session.commit()

    assert "Stranger" not in names(search_contacts(repo, test_user.id, now=NOW))


@pytest.mark.parametrize("query", [
    My500Query(page=0),
    My500Query(limit=0),
    My500Query(limit=101),
    My500Query(filter="vip"),
    My500Query(filter="status", status="tepid"),
    My500Query(sort="password"),
    My500Query(order="sideways"),
])
def test_invalid_query_rejected(repo, test_user, query):
    with pytest.raises(ValidationError) as exc:
        search_contacts(repo, test_user.id, query)
    assert exc.value.details["errors"]


def test_calculate_pagination():
    assert calculate_pagination(1, 50, 0) == {
        "page": 1, "limit": 50, "total": 0, "total_pages": 0, "has_next": False, "has_prev": False,
    }
    assert calculate_pagination(1, 50, 51)["has_next"] is True


def test_get_contact_with_activities(repo, test_user, roster, make_activity):
    make_activity(roster[1], subject="First")
    make_activity(roster[1], subject="Second")

    detail = get_contact(repo, test_user.id, roster[1].id)

    assert detail["name"] == "Cold Cara"
    assert {a["subject"] for a in detail["activities"]} == {"First", "Second"}


def test_get_contact_not_found(repo, test_user):
    with pytest.raises(NotFoundError):
        get_contact(repo, test_user.id, 999)


def test_contact_stats(repo, test_user, roster):
    roster[0].crm_person_id = "11"
    repo.commit()

    stats = get_contact_stats(repo, test_user.id)

    assert stats["total"] == 5
    assert stats["active"] == 4
    assert stats["in_campaign"] == 1
    assert stats["linked_to_crm"] == 1
    assert stats["by_status"] == {"lost": 1, "cold": 1, "warm": 1, "hot": 1}
