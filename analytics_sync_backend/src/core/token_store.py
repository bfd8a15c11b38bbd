from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterator, Optional

from src.core import db
from src.core.logging import get_logger
from src.core.models import ConnectionCredential, OAuthSession
from src.core.security import decrypt_secret, encrypt_secret

logger = get_logger(__name__)

_TOKEN_FIELDS = ("access_token", "refresh_token")


def _doc_id(tenant_id: str, provider: str) -> str:
    return f"{tenant_id}::{provider}"


class CredentialStore:
    """Tenant-keyed persistence of provider credentials with tokens encrypted at rest.

    One document per (tenant, provider) in the shared ``connections`` collection; callers
    always address a credential by id, never by scanning for "the connected one".
    """

    def __init__(self, col=None):
        self.collection = col if col is not None else db.collection(db.CONNECTIONS)

    # PUBLIC_INTERFACE
    def get(self, tenant_id: str, provider: str) -> Optional[ConnectionCredential]:
        """Load and decrypt the credential, or None when the tenant never connected."""
        doc = self.collection.find_one({"_id": _doc_id(tenant_id, provider)})
        if not doc:
            return None
        return self._from_doc(doc)

    # PUBLIC_INTERFACE
    def save(self, credential: ConnectionCredential) -> None:
        """Upsert the credential, encrypting token fields."""
        if credential.connected and not credential.refresh_token:
            raise ValueError("A connected credential must keep a refresh token")
        payload: Dict[str, Any] = credential.model_dump()
        for key in _TOKEN_FIELDS:
            if payload.get(key):
                payload[key] = encrypt_secret(payload[key])
        payload["_id"] = _doc_id(credential.tenant_id, credential.provider)
        db.upsert_by_id(self.collection, _id=payload["_id"], payload=payload)

    # PUBLIC_INTERFACE
    def start_session(self, tenant_id: str, provider: str, session: OAuthSession) -> None:
        """Remember a pending OAuth session without touching the stored tokens."""
        cred = self.get(tenant_id, provider) or ConnectionCredential(tenant_id=tenant_id, provider=provider)  # type: ignore[arg-type]
        cred.oauth_session = session
        self.save(cred)

    # PUBLIC_INTERFACE
    def mark_synced(self, tenant_id: str, provider: str, when: datetime) -> None:
        self.collection.update_one({"_id": _doc_id(tenant_id, provider)}, {"$set": {"last_synced": when}})

    # PUBLIC_INTERFACE
    def iter_connected(self, provider: str) -> Iterator[ConnectionCredential]:
        """Yield every connected credential of a provider, across tenants."""
        for doc in self.collection.find({"provider": provider, "connected": True}):
            yield self._from_doc(doc)

    def _from_doc(self, doc: Dict[str, Any]) -> ConnectionCredential:
        data = {k: v for k, v in doc.items() if k != "_id"}
        for key in _TOKEN_FIELDS:
            data[key] = decrypt_secret(data.get(key))
        return ConnectionCredential(**data)
