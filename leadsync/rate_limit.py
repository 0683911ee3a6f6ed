"""Shared rate limiter for outbound CRM calls and the per-user search budget.

Built on the `limits` library (the engine underneath slowapi). The storage
URI decides where counters live: "memory://" for a single process,
"redis://…" to share budgets across workers without code changes.

One CrmRateLimiter instance is injected into every CrmClient. All state is
keyed by credential fingerprint or user id, never shared across users.
"""

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, field

from limits import parse
from limits.storage import storage_from_string
from limits.strategies import MovingWindowRateLimiter

from .config import settings

log = logging.getLogger("leadsync.ratelimit")


def credential_key(api_key: str) -> str:
    """Stable, non-reversible limiter key for a credential."""
    return hashlib.sha256(api_key.encode()).hexdigest()[:16]


@dataclass
class RemoteRateState:
    """Last rate-limit headers seen from the remote for one credential."""

    limit: int | None = None
    remaining: int | None = None
    reset_at: float | None = None  # monotonic deadline
    blocked_until: float = 0.0
    updated_at: float = field(default_factory=time.monotonic)

    def as_dict(self, now: float) -> dict:
        return {
            "limit": self.limit,
            "remaining": self.remaining,
            "reset": round(max(self.reset_at - now, 0), 2) if self.reset_at else None,
        }


class CrmRateLimiter:
    def __init__(
        self,
        storage_uri: str | None = None,
        search_limit: str | None = None,
        outbound_limit: str | None = None,
        sleep=asyncio.sleep,
        clock=time.monotonic,
    ):
        self.storage = storage_from_string(storage_uri or settings.rate_limit_storage_uri)
        self.strategy = MovingWindowRateLimiter(self.storage)
        self.search_item = parse(search_limit or f"{settings.search_requests_per_minute}/minute")
        self.outbound_item = parse(outbound_limit) if outbound_limit else None
        self._remote: dict[str, RemoteRateState] = {}
        self._sleep = sleep
        self._clock = clock

    # ── Outbound calls ──────────────────────────────────────────────

    async def acquire(self, key: str) -> None:
        """Wait until a call on this credential is allowed.

        Only the calling task sleeps; other users' tasks are unaffected.
        """
        state = self._remote.get(key)
        if state and state.blocked_until > self._clock():
            wait = state.blocked_until - self._clock()
            log.info("CRM limiter: credential %s throttled, waiting %.1fs", key, wait)
            await self._sleep(wait)

        if self.outbound_item is None:
            return
        while not self.strategy.hit(self.outbound_item, "crm", key):
            stats = self.strategy.get_window_stats(self.outbound_item, "crm", key)
            wait = max(stats.reset_time - time.time(), 0.05)
            log.debug("CRM limiter: local budget exhausted for %s, waiting %.2fs", key, wait)
            await self._sleep(wait)

    def record_headers(self, key: str, headers) -> dict:
        """Read x-ratelimit-* headers from a response. Returns the diagnostics dict."""
        state = self._remote.setdefault(key, RemoteRateState())
        limit = _int_header(headers, "x-ratelimit-limit")
        remaining = _int_header(headers, "x-ratelimit-remaining")
        reset = _int_header(headers, "x-ratelimit-reset")
        if limit is not None:
            state.limit = limit
        if remaining is not None:
            state.remaining = remaining
        if reset is not None:
            state.reset_at = self._clock() + reset
            if remaining == 0:
                state.blocked_until = state.reset_at
        state.updated_at = self._clock()
        return state.as_dict(self._clock())

    def block(self, key: str, seconds: float) -> None:
        """Remote signalled exhaustion (429): hold this credential for `seconds`."""
        state = self._remote.setdefault(key, RemoteRateState())
        state.blocked_until = max(state.blocked_until, self._clock() + seconds)

    def remote_state(self, key: str) -> dict:
        state = self._remote.get(key)
        return state.as_dict(self._clock()) if state else {"limit": None, "remaining": None, "reset": None}

    # ── Per-user search budget ──────────────────────────────────────

    def hit_search(self, user_id) -> tuple[bool, int]:
        """Consume one search request. Returns (allowed, retry_after_seconds)."""
        if self.strategy.hit(self.search_item, "search", str(user_id)):
            return True, 0
        stats = self.strategy.get_window_stats(self.search_item, "search", str(user_id))
        return False, max(int(stats.reset_time - time.time()) + 1, 1)

    def reset(self) -> None:
        self.storage.reset()
        self._remote.clear()


def _int_header(headers, name: str) -> int | None:
    raw = headers.get(name) if headers is not None else None
    if raw is None:
        return None
    try:
        return int(float(raw))
    except (TypeError, ValueError):
        return None


_default_limiter: CrmRateLimiter | None = None


def get_limiter() -> CrmRateLimiter:
    """Process-wide limiter used when a caller doesn't inject one."""
    global _default_limiter
    if _default_limiter is None:
        _default_limiter = CrmRateLimiter()
    return _default_limiter
