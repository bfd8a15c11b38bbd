from __future__ import annotations

from typing import Any, Dict

from pymongo import MongoClient

from src.core.settings import get_settings
from src.core.logging import get_logger

logger = get_logger(__name__)

_client: MongoClient | None = None

CONNECTIONS = "connections"
AGGREGATES = "aggregates"


# PUBLIC_INTERFACE
def get_mongo_client() -> MongoClient:
    """Return a singleton MongoClient using settings from environment variables."""
    global _client
    if _client is None:
        settings = get_settings()
        logger.info("Connecting to MongoDB...")
        # tz_aware so expiry timestamps round-trip as UTC-aware datetimes
        _client = MongoClient(settings.mongo.MONGODB_URL, tz_aware=True)
    return _client


# PUBLIC_INTERFACE
def get_db():
    """Get the configured MongoDB database handle."""
    settings = get_settings()
    return get_mongo_client()[settings.mongo.MONGODB_DB]


# PUBLIC_INTERFACE
def collection(name: str):
    """Get a shared collection by name (documents carry their own tenant_id)."""
    return get_db()[name]


# PUBLIC_INTERFACE
def tenant_collection(tenant_id: str, name: str):
    """Get a tenant-scoped collection by name.

    Using naming convention: <tenantId>__<collection>
    """
    return get_db()[f"{tenant_id}__{name}"]


# PUBLIC_INTERFACE
def upsert_by_id(col, _id: str, payload: Dict[str, Any]):
    """Upsert a document by id."""
    col.update_one({"_id": _id}, {"$set": payload}, upsert=True)
