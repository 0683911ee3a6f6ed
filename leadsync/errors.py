"""
errors.py — Typed error taxonomy for the sync engine

Every engine failure that is not an ordinary remote failure (those come back
as {"success": False, ...} dicts) is raised as one of these. Each carries a
stable `code` for the API layer and a `retryable` flag for the orchestrator.

Business Rules:
- TransportError / RateLimitError are retried inside the CRM client
- ConflictError goes to the reconciliation engine's conflict policy
- CredentialError halts a sync pass, never retried
- ValidationError / NotFoundError surface straight to the caller

Called by: connectors/crm_client.py, services/*, routers/sync.py, main.py
Depends on: nothing
"""


class LeadSyncError(Exception):
    code = "error"
    retryable = False

    def __init__(self, message: str = "", *, details: dict | None = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details = details or {}

    def to_dict(self) -> dict:
        """Error body returned by the API."""
        out = {"success": False, "error": self.message, "code": self.code}
        if self.details:
            out["details"] = self.details
        return out


class CredentialError(LeadSyncError):
    """Missing, invalid or undecryptable CRM API key."""

    code = "credential_error"


class CryptoError(LeadSyncError):
    """Encryption or decryption failed on malformed input."""

    code = "crypto_error"


class FormatError(CryptoError):
    """Stored value is neither an envelope nor a legacy plaintext key."""

    code = "format_error"


class TransportError(LeadSyncError):
    """Network failure after retries were exhausted."""

    code = "transport_error"
    retryable = True


class RateLimitError(LeadSyncError):
    code = "rate_limited"
    retryable = True

    def __init__(self, message: str = "", *, retry_after: float | None = None, details: dict | None = None):
        super().__init__(message, details=details)
        self.retry_after = retry_after


class ConflictError(LeadSyncError):
    """Remote answered 409 on an update."""

    code = "conflict"

    def __init__(self, message: str = "", *, record_type: str = "", record_id: str = "", details: dict | None = None):
        super().__init__(message, details=details)
        self.record_type = record_type
        self.record_id = record_id


class ValidationError(LeadSyncError):
    code = "validation_error"


class NotFoundError(LeadSyncError):
    code = "not_found"


class SyncInProgressError(LeadSyncError):
    code = "sync_in_progress"


class SyncTimeoutError(LeadSyncError):
    code = "sync_timeout"
    retryable = True


class RemoteError(LeadSyncError):
    """CRM rejected a call a sync pass cannot continue without."""

    code = "remote_error"

    def __init__(self, message: str = "", *, retryable: bool = False, details: dict | None = None):
        super().__init__(message, details=details)
        self.retryable = retryable
