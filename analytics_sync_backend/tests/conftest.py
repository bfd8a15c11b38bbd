import copy
import os
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

# Settings are read once per process; set test values before anything imports src.*
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key")
os.environ.setdefault("MONGODB_URL", "mongodb://localhost:27017")
os.environ.setdefault("MONGODB_DB", "analytics_sync_test")
os.environ["INTER_BATCH_DELAY_MS"] = "0"
os.environ["BULK_DELAY_MS"] = "0"
os.environ["RETRY_BASE_DELAY_MS"] = "1"
os.environ["RETRY_MAX_DELAY_MS"] = "1"
os.environ["TOKEN_REFRESH_INTERVAL_SECONDS"] = "0"

import pytest  # noqa: E402

from src.connectors.oauth import TokenGrant  # noqa: E402
from src.core import db, token_lifecycle  # noqa: E402
from src.core.settings import get_settings  # noqa: E402
from src.sync.models import FetchWindow, MetricPoint, PartialSeries, SeriesGroup  # noqa: E402
from src.sync.source import MetricsSource  # noqa: E402
from src.sync.summary import Bucket, SummaryTable  # noqa: E402

get_settings.cache_clear()


# ---- In-memory stand-in for the pymongo calls the stores make ----

_MISSING = object()


def _lookup(doc: Dict[str, Any], dotted: str) -> Any:
    value: Any = doc
    for part in dotted.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _matches(doc: Dict[str, Any], flt: Dict[str, Any]) -> bool:
    return all(_lookup(doc, k) == v for k, v in (flt or {}).items())


@dataclass
class _Result:
    deleted_count: int = 0
    matched_count: int = 0


class FakeCollection:
    def __init__(self):
        self.docs: Dict[Any, Dict[str, Any]] = {}

    def find(self, flt: Optional[Dict[str, Any]] = None):
        return [copy.deepcopy(d) for d in self.docs.values() if _matches(d, flt or {})]

    def find_one(self, flt: Optional[Dict[str, Any]] = None, sort=None):
        found = self.find(flt)
        for key, direction in reversed(sort or []):
            found.sort(key=lambda d: d.get(key), reverse=direction < 0)
        return found[0] if found else None

    def update_one(self, flt, update, upsert=False):
        for _id, doc in self.docs.items():
            if _matches(doc, flt):
                doc.update(copy.deepcopy(update.get("$set", {})))
                return _Result(matched_count=1)
        if upsert:
            new = {k: v for k, v in flt.items() if "." not in k}
            new.update(copy.deepcopy(update.get("$set", {})))
            self.docs[new["_id"]] = new
        return _Result()

    def replace_one(self, flt, doc, upsert=False):
        for _id, existing in list(self.docs.items()):
            if _matches(existing, flt):
                self.docs[_id] = copy.deepcopy(doc)
                return _Result(matched_count=1)
        if upsert:
            self.docs[doc["_id"]] = copy.deepcopy(doc)
        return _Result()

    def delete_one(self, flt):
        for _id, doc in list(self.docs.items()):
            if _matches(doc, flt):
                del self.docs[_id]
                return _Result(deleted_count=1)
        return _Result()

    def delete_many(self, flt):
        doomed = [_id for _id, doc in self.docs.items() if _matches(doc, flt)]
        for _id in doomed:
            del self.docs[_id]
        return _Result(deleted_count=len(doomed))


class FakeDatabase:
    def __init__(self):
        self.collections: Dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        return self.collections.setdefault(name, FakeCollection())


class FakeMongoClient:
    def __init__(self):
        self.databases: Dict[str, FakeDatabase] = {}

    def __getitem__(self, name: str) -> FakeDatabase:
        return self.databases.setdefault(name, FakeDatabase())


@pytest.fixture(autouse=True)
def fake_mongo(monkeypatch):
    client = FakeMongoClient()
    monkeypatch.setattr(db, "_client", client)
    token_lifecycle._LOCKS.clear()
    yield client
    token_lifecycle._LOCKS.clear()


# ---- Provider doubles ----


class FakeOAuth:
    """Token endpoint double: answers refreshes from a queue of grants or exceptions."""

    def __init__(self, *answers):
        self.answers: List[Any] = list(answers)
        self.calls: List[str] = []

    async def refresh(self, refresh_token: str) -> TokenGrant:
        self.calls.append(refresh_token)
        answer = self.answers.pop(0) if self.answers else TokenGrant(access_token=f"access-{len(self.calls)}", refresh_token=None, expires_in=3600)
        if isinstance(answer, BaseException):
            raise answer
        return answer


COUNT_TABLE = SummaryTable([Bucket("clicks", ("CLICKS",)), Bucket("calls", ("CALLS",))])


class FakeSource(MetricsSource):
    """One CLICKS point and two CALLS points per day; selected windows fail."""

    provider = "google_business"
    table = COUNT_TABLE
    entity_label = "location"
    max_window_days = 10
    single_request_threshold_days = 10

    def __init__(self, fail_windows=None):
        self.fail_windows = dict(fail_windows or {})
        self.windows: List[FetchWindow] = []
        self.tokens: List[str] = []

    async def fetch_window(self, token: str, entity_id: str, window: FetchWindow) -> PartialSeries:
        self.windows.append(window)
        self.tokens.append(token)
        error = self.fail_windows.get(window.sequence_index)
        if error is not None:
            raise error
        days = [window.start + timedelta(days=i) for i in range(window.days)]
        return PartialSeries(
            groups=[
                SeriesGroup("CLICKS", [MetricPoint(d, 1.0) for d in days]),
                SeriesGroup("CALLS", [MetricPoint(d, 2.0) for d in days]),
            ]
        )


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def fake_source():
    return FakeSource()


@pytest.fixture
def today():
    return date(2024, 6, 30)
