"""Shared HTTP client — connection pooling for all outbound CRM requests.

One module-level singleton httpx.AsyncClient (no redirects, connection
pooling). CrmClient uses it unless a client is injected (tests inject one
built on httpx.MockTransport).

Per-request timeout overrides via http.get(url, timeout=15).

Usage:
    from leadsync.http_client import http
    resp = await http.get(url, params={...}, timeout=15)
"""

import httpx

from .config import settings

_LIMITS = httpx.Limits(
    max_connections=50,
    max_keepalive_connections=20,
    keepalive_expiry=30,
)

http = httpx.AsyncClient(
    timeout=settings.crm_timeout,
    limits=_LIMITS,
    follow_redirects=False,
    headers={"Accept": "application/json"},
)


async def close_clients():
    """Shut down the shared client. Call from app lifespan shutdown."""
    try:
        await http.aclose()
    except RuntimeError:
        pass
