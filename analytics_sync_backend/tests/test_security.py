"""
Unit tests for state signing, secret encryption and expiry helpers.
"""
import base64
import hashlib
from datetime import datetime, timedelta, timezone

from src.core.security import (
    compute_expiry,
    decrypt_secret,
    encrypt_secret,
    generate_oauth_state,
    generate_pkce,
    is_expired,
    verify_oauth_state,
)


def test_state_binds_tenant_and_provider():
    state = generate_oauth_state("tenant:with:colons", "quickbooks")
    assert verify_oauth_state(state) == ("tenant:with:colons", "quickbooks")
    assert generate_oauth_state("t1", "quickbooks") != generate_oauth_state("t1", "quickbooks")


def test_forged_or_malformed_state_is_rejected():
    state = generate_oauth_state("t1", "google_business")
    _, mac = state.rsplit(".", 1)
    forged_blob = base64.urlsafe_b64encode(b"nonce:t2:google_business").decode().rstrip("=")
    assert verify_oauth_state(f"{forged_blob}.{mac}") is None
    assert verify_oauth_state("no-dot") is None
    assert verify_oauth_state(None) is None


def test_secrets_are_not_stored_in_clear():
    token = encrypt_secret("ya29.secret")
    assert "ya29" not in token
    assert decrypt_secret(token) == "ya29.secret"
    assert decrypt_secret("garbage") is None


def test_pkce_challenge_is_s256_of_verifier():
    pkce = generate_pkce()
    digest = hashlib.sha256(pkce.verifier.encode()).digest()
    assert pkce.challenge == base64.urlsafe_b64encode(digest).decode().rstrip("=")


def test_expiry_with_buffer():
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    expires = compute_expiry(3600, now=now)
    assert expires == now + timedelta(hours=1)
    assert not is_expired(expires, now=now, buffer_seconds=300)
    assert is_expired(expires, now=now + timedelta(minutes=56), buffer_seconds=300)
    # naive values are read as UTC
    assert not is_expired(expires.replace(tzinfo=None), now=now)
    assert is_expired(None)
