"""
schemas/sync.py — Pydantic models for sync and CRM endpoints

Business Rules:
- batch items: record_type one of activity/person/organization/deal,
  record_id a positive integer, at most 100 items per request
- organization search query is at least search_min_query_length (3)
  characters after trimming
- API keys are 32- or 40-char hex strings (checked by credential_service)
- warmness_score is a plain integer, negative allowed (lost band)

Called by: routers/sync.py
Depends on: pydantic, config, connectors/crm_client (is_remote_id)
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, field_validator

from ..config import settings
from ..connectors.crm_client import is_remote_id


# ── Sync ─────────────────────────────────────────────────────────────


class SyncRequest(BaseModel):
    force_full: bool = False


# ── Batch update ─────────────────────────────────────────────────────


class BatchUpdateItemIn(BaseModel):
    record_type: Literal["activity", "person", "organization", "deal"]
    record_id: str
    data: dict = Field(default_factory=dict)

    @field_validator("record_id", mode="before")
    @classmethod
    def record_id_positive_int(cls, v) -> str:
        v = str(v).strip() if v is not None else ""
        if not v:
            raise ValueError("record_id is required")
        if not is_remote_id(v):
            raise ValueError("record_id must be a positive integer")
        return v


class BatchUpdateRequest(BaseModel):
    updates: list[BatchUpdateItemIn] = Field(min_length=1, max_length=100)


# ── Search ───────────────────────────────────────────────────────────


class SearchRequest(BaseModel):
    query: str

    @field_validator("query")
    @classmethod
    def query_min_length(cls, v: str) -> str:
        v = v.strip()
        if len(v) < settings.search_min_query_length:
            raise ValueError(f"Query must be at least {settings.search_min_query_length} characters long")
        return v


# ── Credentials ──────────────────────────────────────────────────────


class ApiKeyUpdate(BaseModel):
    api_key: str
    test_connection: bool = True


# ── Contacts ─────────────────────────────────────────────────────────


class WarmLeadCheck(BaseModel):
    warmness_score: int


class DeactivateRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)
