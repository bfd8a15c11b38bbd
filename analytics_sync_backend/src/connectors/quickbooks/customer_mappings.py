from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import List, Optional

from src.core import db
from src.core.errors import NotFound
from src.core.models import CustomerMapping

COLLECTION = "quickbooks_customer_mappings"


class CustomerMappingStore:
    """Portal customer -> QuickBooks customer links, one per portal customer, tenant-scoped."""

    def __init__(self, tenant_id: str, col=None):
        self.tenant_id = tenant_id
        self.collection = col if col is not None else db.tenant_collection(tenant_id, COLLECTION)

    # PUBLIC_INTERFACE
    def list(self) -> List[CustomerMapping]:
        docs = sorted(self.collection.find({}), key=lambda d: str(d.get("created_at") or ""))
        return [self._from_doc(d) for d in docs]

    # PUBLIC_INTERFACE
    def upsert(self, portal_customer_id: str, quickbooks_customer_id: str, display_name: Optional[str] = None) -> CustomerMapping:
        """Create the mapping, or repoint the existing one for this portal customer."""
        now = datetime.now(timezone.utc)
        existing = self.collection.find_one({"portal_customer_id": portal_customer_id})
        mapping = CustomerMapping(
            id=existing["_id"] if existing else uuid.uuid4().hex,
            portal_customer_id=portal_customer_id,
            quickbooks_customer_id=quickbooks_customer_id,
            quickbooks_customer_display_name=display_name,
            created_at=existing.get("created_at") if existing else now,
            updated_at=now,
        )
        payload = mapping.model_dump(exclude={"id"})
        db.upsert_by_id(self.collection, _id=mapping.id, payload=payload)
        return mapping

    # PUBLIC_INTERFACE
    def delete(self, mapping_id: str) -> None:
        res = self.collection.delete_one({"_id": mapping_id})
        if not res.deleted_count:
            raise NotFound("Customer mapping not found", details={"mapping_id": mapping_id})

    # PUBLIC_INTERFACE
    def for_portal_customer(self, portal_customer_id: str) -> Optional[CustomerMapping]:
        doc = self.collection.find_one({"portal_customer_id": portal_customer_id})
        return self._from_doc(doc) if doc else None

    def _from_doc(self, doc) -> CustomerMapping:
        data = {k: v for k, v in doc.items() if k != "_id"}
        return CustomerMapping(id=doc["_id"], **data)
