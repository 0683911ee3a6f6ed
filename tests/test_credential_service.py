"""Tests for the credential vault: encryption, legacy migration, key format."""

import pytest

from crm_fakes import API_KEY
from leadsync.errors import CredentialError, CryptoError, FormatError, ValidationError
from leadsync.models import User
from leadsync.services.credential_service import (
    decrypt_credential,
    decrypt_value,
    encrypt_value,
    is_legacy_key,
    load_user_api_key,
    mark_api_key_validated,
    mask_value,
    store_user_api_key,
    validate_api_key_format,
)

LEGACY = "abcdef0123456789abcdef0123456789abcdef01"


# ── Encryption ───────────────────────────────────────────────────────


def test_encrypt_decrypt_roundtrip():
    """Encrypt then decrypt returns the original value."""
    encrypted = encrypt_value("my-super-secret-api-key-12345")
    assert encrypted != "my-super-secret-api-key-12345"
    assert decrypt_value(encrypted) == "my-super-secret-api-key-12345"


@pytest.mark.parametrize(
    "plaintext",
    [
        API_KEY,
        LEGACY,
        "ab" * 16,
        "  padded key  ",
        "tab\tand\nnewline",
        "clé-ünïcødé-🔑",
        "x",
        "k" * 512,
    ],
)
def test_roundtrip_preserves_value(plaintext):
    envelope = encrypt_value(plaintext)
    decrypted = decrypt_credential(envelope)
    assert decrypted.plaintext == plaintext
    assert decrypted.needs_migration is False


def test_same_plaintext_encrypts_to_distinct_envelopes():
    first = encrypt_value(API_KEY)
    second = encrypt_value(API_KEY)

    assert decrypt_value(first) == API_KEY
    assert decrypt_value(second) == API_KEY
    assert first != second


def test_encrypt_does_not_leak_plaintext():
    encrypted = encrypt_value(API_KEY)
    assert API_KEY not in encrypted
    assert decrypt_credential(encrypted).needs_migration is False


def test_encrypt_empty_rejected():
    with pytest.raises(CryptoError):
        encrypt_value("")


def test_legacy_plaintext_passes_through():
    """A 40-char hex value predates encryption and is flagged for migration."""
    cred = decrypt_credential(LEGACY)
    assert cred.plaintext == LEGACY
    assert cred.needs_migration is True
    assert decrypt_value(LEGACY) == LEGACY


def test_malformed_envelope_is_format_error():
    with pytest.raises(FormatError):
        decrypt_value("not-a-fernet-token")


def test_format_error_is_a_crypto_error():
    with pytest.raises(CryptoError):
        decrypt_value("gAAAAA-truncated")


def test_decrypt_empty_rejected():
    with pytest.raises(CryptoError):
        decrypt_value("   ")


def test_is_legacy_key():
    assert is_legacy_key(LEGACY)
    assert not is_legacy_key(LEGACY[:32])
    assert not is_legacy_key(None)
    assert not is_legacy_key("z" * 40)


# ── Format & masking ─────────────────────────────────────────────────


@pytest.mark.parametrize(
    "value,expected",
    [
        ("a" * 32, True),
        ("A1" * 20, True),
        (f"  {'b' * 40}  ", True),
        ("a" * 33, False),
        ("g" * 32, False),
        ("", False),
        (None, False),
        (12345, False),
    ],
)
def test_validate_api_key_format(value, expected):
    assert validate_api_key_format(value) is expected


def test_mask_value_shows_last_four():
    masked = mask_value(API_KEY)
    assert masked.endswith("4567")
    assert API_KEY[:8] not in masked
    assert mask_value("abc") == "****"
    assert mask_value("") == ""


# ── Persistence ──────────────────────────────────────────────────────


def test_load_user_api_key_decrypts(repo, test_user):
    assert load_user_api_key(repo, test_user) == API_KEY


def test_load_migrates_legacy_key(repo, db_session):
    user = User(email="legacy@leadsync.test", crm_api_key=LEGACY)
    db_session.add(user)
    db_session.commit()

    assert load_user_api_key(repo, user) == LEGACY

    db_session.refresh(user)
    assert user.crm_api_key != LEGACY
    assert decrypt_credential(user.crm_api_key).needs_migration is False
    assert decrypt_value(user.crm_api_key) == LEGACY


def test_load_without_key_raises(repo, db_session):
    user = User(email="nokey@leadsync.test")
    db_session.add(user)
    db_session.commit()
    with pytest.raises(CredentialError):
        load_user_api_key(repo, user)


def test_load_undecryptable_key_raises_credential_error(repo, db_session):
    user = User(email="broken@leadsync.test", crm_api_key="garbage-envelope")
    db_session.add(user)
    db_session.commit()
    with pytest.raises(CredentialError) as exc:
        load_user_api_key(repo, user)
    assert "garbage" not in exc.value.message


def test_store_rotates_and_resets_validation(repo, test_user):
    mark_api_key_validated(repo, test_user)
    assert test_user.crm_api_key_validated_at is not None

    new_key = "f" * 32
    store_user_api_key(repo, test_user, new_key)

    assert test_user.crm_api_key_validated_at is None
    assert new_key not in test_user.crm_api_key
    assert load_user_api_key(repo, test_user) == new_key


def test_store_rejects_bad_format(repo, test_user):
    with pytest.raises(ValidationError):
        store_user_api_key(repo, test_user, "short")
