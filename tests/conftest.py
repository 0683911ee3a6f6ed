"""
conftest.py — Shared test fixtures for LeadSync

Provides an in-memory SQLite database, a Repository bound to it, a CRM
client wired to httpx.MockTransport, and factory fixtures for users,
contacts, organizations and activities.

Business Rules:
- All tests run against an isolated in-memory DB (fresh schema per test)
- No test touches the network: CRM calls go through MockTransport handlers
- Backoff and rate-limit sleeps are AsyncMocks so suites stay fast

Called by: all test files via pytest autodiscovery
Depends on: leadsync.models (Base), leadsync.database (get_db)
"""

import os

os.environ["TESTING"] = "1"  # Must be set before importing leadsync modules
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("SECRET_KEY", "test-secret-key")

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_fakes import API_KEY
from leadsync.cache.search_cache import MemorySearchCache
from leadsync.config import CrmClientConfig
from leadsync.connectors.crm_client import CrmClient
from leadsync.models import Activity, Base, Contact, Organization, User
from leadsync.rate_limit import CrmRateLimiter
from leadsync.repository import Repository
from leadsync.services.credential_service import encrypt_value
from leadsync.services.warm_lead_service import clear_label_cache


# ── In-memory SQLite engine ──────────────────────────────────────────

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@event.listens_for(engine, "connect")
def _enable_fk(dbapi_conn, _):
    """SQLite ignores FKs by default; turn them on."""
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def db_session():
    """Create all tables, yield a session, then tear down."""
    Base.metadata.create_all(bind=engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def _reset_label_cache():
    clear_label_cache()
    yield
    clear_label_cache()


@pytest.fixture()
def repo(db_session: Session) -> Repository:
    return Repository(db_session)


@pytest.fixture()
def test_user(db_session: Session) -> User:
    """A user with an encrypted CRM key."""
    user = User(
        email="rep@leadsync.test",
        name="Test Rep",
        crm_api_key=encrypt_value(API_KEY),
        created_at=datetime.now(timezone.utc),
    )
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture()
def make_contact(db_session: Session, test_user: User):
    """Factory: make_contact(name=..., warmness_score=..., ...)."""

    def _make(**kw) -> Contact:
        values = {
            "user_id": test_user.id,
            "name": "Contact",
            "warmness_score": 0,
            "added_to_campaign": False,
            "is_active": True,
        }
        values.update(kw)
        contact = Contact(**values)
        db_session.add(contact)
        db_session.commit()
        db_session.refresh(contact)
        return contact

    return _make


@pytest.fixture()
def test_org(db_session: Session, test_user: User) -> Organization:
    org = Organization(user_id=test_user.id, name="Acme Corp", normalized_name="acme corp")
    db_session.add(org)
    db_session.commit()
    db_session.refresh(org)
    return org


@pytest.fixture()
def make_activity(db_session: Session, test_user: User):
    def _make(contact: Contact, **kw) -> Activity:
        values = {
            "user_id": test_user.id,
            "contact_id": contact.id,
            "type": "CALL",
            "subject": "Intro call",
            "due_date": datetime(2025, 7, 14, 9, 30, tzinfo=timezone.utc),
        }
        values.update(kw)
        activity = Activity(**values)
        db_session.add(activity)
        db_session.commit()
        db_session.refresh(activity)
        return activity

    return _make


# ── CRM client wiring ────────────────────────────────────────────────


@pytest.fixture()
def crm_config() -> CrmClientConfig:
    return CrmClientConfig(
        base_url="https://crm.test",
        max_retries=2,
        retry_delay=0.1,
        rate_limit_delay=1.0,
    )


@pytest.fixture()
def limiter() -> CrmRateLimiter:
    return CrmRateLimiter("memory://", search_limit="10/minute", sleep=AsyncMock())


@pytest.fixture()
def search_cache() -> MemorySearchCache:
    return MemorySearchCache(ttl_seconds=300, max_entries=100)


@pytest.fixture()
def make_client(crm_config, limiter, search_cache):
    """Factory: make_client(handler) → CrmClient over httpx.MockTransport.

    handler(request) returns an httpx.Response; the client's backoff sleep
    is an AsyncMock available as client._sleep.
    """

    def _make(handler, api_key: str = API_KEY, **kw) -> CrmClient:
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return CrmClient(
            api_key,
            config=kw.pop("config", crm_config),
            limiter=kw.pop("limiter", limiter),
            search_cache=kw.pop("search_cache", search_cache),
            http_client=http,
            sleep=AsyncMock(),
        )

    return _make
