"""
credential_service.py — Encrypted storage for the user's CRM API key.

Keys are encrypted at rest using Fernet (AES-128-CBC + HMAC-SHA256, fresh
random IV per call). The Fernet key is derived from the configured
encryption secret via PBKDF2.

Business Rules:
- A stored value that is a 40-char hex string is a legacy plaintext key:
  decrypt returns it unchanged and flags it for migration
- The vault functions are side-effect free; load_user_api_key is the caller
  that re-encrypts and persists a legacy key on first read
- Plaintext is never logged, only masked values

Called by: dependencies.py, services/sync_service.py, routers/sync.py
Depends on: config.py (encryption secret), repository.py, models (User)
"""

import base64
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..config import settings
from ..errors import CredentialError, CryptoError, FormatError, ValidationError
from ..models import User
from ..repository import Repository

log = logging.getLogger("leadsync.credentials")

_LEGACY_KEY = re.compile(r"^[0-9a-fA-F]{40}$")
_API_KEY_FORMAT = re.compile(r"^(?:[0-9a-fA-F]{32}|[0-9a-fA-F]{40})$")


@dataclass(frozen=True)
class DecryptedCredential:
    plaintext: str
    needs_migration: bool = False


@lru_cache(maxsize=4)
def _fernet_for(secret: str) -> Fernet:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"leadsync-crm-credential-salt-v1",
        iterations=100_000,
    )
    key = base64.urlsafe_b64encode(kdf.derive(secret.encode()))
    return Fernet(key)


def _get_fernet() -> Fernet:
    """Derive a Fernet key from the app secret and return a Fernet instance."""
    return _fernet_for(settings.encryption_secret)


def is_legacy_key(value: str | None) -> bool:
    """True for a pre-encryption plaintext key (40 hex characters)."""
    return bool(value) and bool(_LEGACY_KEY.match(value))


def encrypt_value(plaintext: str) -> str:
    """Encrypt a credential value. Returns a base64 Fernet token string."""
    if not isinstance(plaintext, str) or not plaintext:
        raise CryptoError("Cannot encrypt an empty credential")
    return _get_fernet().encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str) -> str:
    """Decrypt a credential value. Legacy plaintext keys pass through unchanged."""
    return decrypt_credential(ciphertext).plaintext


def decrypt_credential(stored: str) -> DecryptedCredential:
    """Decrypt a stored value and report whether it still needs migration."""
    if not isinstance(stored, str) or not stored.strip():
        raise CryptoError("Cannot decrypt an empty credential")
    value = stored.strip()
    if is_legacy_key(value):
        return DecryptedCredential(plaintext=value, needs_migration=True)
    try:
        plaintext = _get_fernet().decrypt(value.encode()).decode()
    except (InvalidToken, ValueError, UnicodeDecodeError) as e:
        raise FormatError("Stored credential is not a valid envelope") from e
    return DecryptedCredential(plaintext=plaintext, needs_migration=False)


def mask_value(plaintext: str) -> str:
    """Mask a credential value for display: show last 4 chars only."""
    if not plaintext:
        return ""
    if len(plaintext) <= 4:
        return "****"
    return "●" * min(8, len(plaintext) - 4) + plaintext[-4:]


def validate_api_key_format(api_key) -> bool:
    """CRM API keys are 32- or 40-character hexadecimal strings."""
    if not isinstance(api_key, str) or not api_key:
        return False
    return bool(_API_KEY_FORMAT.match(api_key.strip()))


def store_user_api_key(repo: Repository, user: User, plaintext: str) -> User:
    """Rotate the user's CRM API key. Resets validation until re-tested."""
    if not validate_api_key_format(plaintext):
        raise ValidationError("API key must be a 32 or 40 character hexadecimal string")
    repo.update(
        user,
        crm_api_key=encrypt_value(plaintext.strip()),
        crm_api_key_validated_at=None,
    )
    repo.commit()
    log.info("CRM API key rotated for user %s (%s)", user.id, mask_value(plaintext.strip()))
    return user


def mark_api_key_validated(repo: Repository, user: User) -> None:
    repo.update(user, crm_api_key_validated_at=datetime.now(timezone.utc))
    repo.commit()


def load_user_api_key(repo: Repository, user: User) -> str:
    """Return the user's plaintext CRM API key, migrating legacy storage.

    Raises CredentialError when no key is configured or it can't be decrypted.
    """
    if not user.crm_api_key or not user.crm_api_key.strip():
        raise CredentialError(f"No CRM API key configured for user {user.id}")
    try:
        cred = decrypt_credential(user.crm_api_key)
    except CryptoError as e:
        log.error("CRM API key for user %s could not be decrypted: %s", user.id, e)
        raise CredentialError("Stored CRM API key could not be decrypted") from e

    if cred.needs_migration:
        repo.update(user, crm_api_key=encrypt_value(cred.plaintext))
        repo.commit()
        log.info("Migrated legacy plaintext CRM API key for user %s", user.id)
    return cred.plaintext
