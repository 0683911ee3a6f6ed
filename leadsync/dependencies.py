"""
dependencies.py — Shared FastAPI dependencies

Builds the per-request Repository and CRM client so routers never touch the
Session or the credential vault directly.

Business Rules:
- get_user raises NotFoundError (→ 404) for an unknown user id
- get_crm_client decrypts the user's key (migrating legacy storage) and
  raises CredentialError (→ 400) when none is configured
- the client shares the process-wide limiter and search cache

Called by: routers/sync.py
Depends on: database, repository, services/credential_service, connectors
"""

from fastapi import Depends
from sqlalchemy.orm import Session

from .connectors.crm_client import CrmClient
from .database import get_db
from .models import User
from .repository import Repository
from .services.credential_service import load_user_api_key


def get_repo(db: Session = Depends(get_db)) -> Repository:
    return Repository(db)


def get_user(user_id: int, repo: Repository = Depends(get_repo)) -> User:
    return repo.get_or_raise(User, user_id)


def get_crm_client(user: User = Depends(get_user), repo: Repository = Depends(get_repo)) -> CrmClient:
    return CrmClient(load_user_api_key(repo, user))


def get_client_factory():
    """api_key → CrmClient; the sync orchestrator decrypts the key itself."""
    return CrmClient
