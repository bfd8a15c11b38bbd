from __future__ import annotations

import base64
import hashlib
import hmac
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken

from src.core.settings import get_settings
from src.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class PKCEBundle:
    verifier: str
    challenge: str
    method: str = "S256"


# PUBLIC_INTERFACE
def get_fernet() -> Fernet:
    """Return a Fernet instance configured with ENCRYPTION_KEY from settings.

    The ENCRYPTION_KEY is an operator-provided string which we derive into a Fernet key
    with SHA-256 (a simple derivation, not a password KDF).
    """
    raw = get_settings().security.ENCRYPTION_KEY
    digest = hashlib.sha256(raw.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


# PUBLIC_INTERFACE
def encrypt_secret(plaintext: str) -> str:
    """Encrypt a secret string with Fernet; returns token in urlsafe base64."""
    token = get_fernet().encrypt(plaintext.encode("utf-8"))
    return token.decode("utf-8")


# PUBLIC_INTERFACE
def decrypt_secret(token: Optional[str]) -> Optional[str]:
    """Decrypt a token; returns plaintext or None if input is None or undecryptable."""
    if token is None:
        return None
    try:
        plain = get_fernet().decrypt(token.encode("utf-8"))
        return plain.decode("utf-8")
    except (InvalidToken, ValueError):
        # Do not leak the token content in logs
        logger.warning("Failed to decrypt secret token; treating as missing.")
        return None


def _sign(message: bytes) -> str:
    key = get_settings().security.ENCRYPTION_KEY.encode("utf-8")
    return hmac.new(key, message, hashlib.sha256).hexdigest()


# PUBLIC_INTERFACE
def generate_oauth_state(tenant_id: str, provider: str) -> str:
    """Generate an OAuth state bound to tenant and provider.

    Layout: base64url("<nonce>:<tenant>:<provider>") + "." + hex HMAC-SHA256 of that blob.
    The callback has no tenant header, so the tenant is recovered from the state itself.
    """
    nonce = base64.urlsafe_b64encode(os.urandom(18)).decode("utf-8").rstrip("=")
    blob = base64.urlsafe_b64encode(f"{nonce}:{tenant_id}:{provider}".encode("utf-8")).decode("utf-8").rstrip("=")
    return f"{blob}.{_sign(blob.encode('utf-8'))}"


# PUBLIC_INTERFACE
def verify_oauth_state(state: Optional[str]) -> Optional[Tuple[str, str]]:
    """Check the state signature and return (tenant_id, provider), or None if it is malformed or forged.

    Callers must still compare the state with the copy stored for the pending session.
    """
    if not state or "." not in state:
        return None
    blob, mac = state.rsplit(".", 1)
    if not hmac.compare_digest(_sign(blob.encode("utf-8")), mac):
        return None
    padded = blob + "=" * (-len(blob) % 4)
    try:
        decoded = base64.urlsafe_b64decode(padded.encode("utf-8")).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        return None
    parts = decoded.split(":")
    if len(parts) < 3:
        return None
    # tenant ids may contain ':'; nonce is first and provider is last
    tenant_id = ":".join(parts[1:-1])
    provider = parts[-1]
    if not tenant_id or not provider:
        return None
    return tenant_id, provider


# PUBLIC_INTERFACE
def generate_pkce() -> PKCEBundle:
    """Generate PKCE code_verifier and S256 code_challenge."""
    verifier = base64.urlsafe_b64encode(os.urandom(40)).rstrip(b"=").decode("utf-8")
    sha = hashlib.sha256(verifier.encode("utf-8")).digest()
    challenge = base64.urlsafe_b64encode(sha).decode("utf-8").rstrip("=")
    return PKCEBundle(verifier=verifier, challenge=challenge)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


# PUBLIC_INTERFACE
def compute_expiry(expires_in_seconds: int, now: Optional[datetime] = None, skew_seconds: int = 0) -> datetime:
    """Return absolute expiry time (now + expires_in), optionally shortened by a safety skew."""
    base = now or _now_utc()
    return base + timedelta(seconds=max(0, expires_in_seconds - skew_seconds))


# PUBLIC_INTERFACE
def is_expired(expires_at: Optional[datetime], now: Optional[datetime] = None, buffer_seconds: int = 0) -> bool:
    """True when the timestamp is missing or falls within ``buffer_seconds`` of now."""
    if not expires_at:
        return True
    if expires_at.tzinfo is None:
        # pymongo hands back naive datetimes in UTC
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return (now or _now_utc()) + timedelta(seconds=buffer_seconds) >= expires_at
