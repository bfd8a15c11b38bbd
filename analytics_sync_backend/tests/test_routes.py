"""
API tests for the connector routes (mocked provider calls).
"""
from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from src.api.main import app
from src.connectors.google_business.router import GoogleBusinessConnector
from src.connectors.oauth import OAuthClient, TokenGrant
from src.core.errors import UpstreamRequestError
from src.core.models import ConnectionCredential
from src.core.settings import get_settings
from src.core.token_store import CredentialStore
from src.sync.cache import AggregateStore
from src.sync.models import AggregateResult, Period
from src.sync.periods import resolve_period

from conftest import FakeSource

client = TestClient(app)

TENANT = {"X-Tenant-ID": "t1"}


def _connect(provider="google_business", **extra):
    fields = dict(
        tenant_id="t1",
        provider=provider,
        access_token="access-0",
        refresh_token="refresh-0",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        connected=True,
        realm_id="loc-1",
    )
    fields.update(extra)
    CredentialStore().save(ConnectionCredential(**fields))


def _configure_google(monkeypatch):
    oauth = get_settings().oauth
    monkeypatch.setattr(oauth, "GOOGLE_BUSINESS_CLIENT_ID", "client-id")
    monkeypatch.setattr(oauth, "GOOGLE_BUSINESS_REDIRECT_URI", "http://localhost/connectors/google_business/callback")


def test_health():
    r = client.get("/")
    assert r.status_code == 200
    assert r.json()["data"]["message"] == "Healthy"
    assert "X-Request-ID" in r.headers


def test_list_connectors_with_status():
    _connect()
    r = client.get("/connectors", headers=TENANT)
    assert r.status_code == 200
    items = {c["id"]: c for c in r.json()["data"]}
    assert set(items) == {"google_business", "quickbooks"}
    assert items["google_business"]["status"]["connected"] is True
    assert items["quickbooks"]["status"]["connected"] is False


def test_unknown_provider_is_404():
    r = client.get("/connectors/jira/status", headers=TENANT)
    assert r.status_code == 404
    assert r.json()["code"] == "NOT_FOUND"


def test_invalid_tenant_header():
    r = client.get("/connectors", headers={"X-Tenant-ID": "a::b"})
    assert r.status_code == 400
    assert r.json()["status"] == "error"


def test_connect_requires_oauth_config():
    r = client.get("/connectors/google_business/connect", headers=TENANT)
    assert r.status_code == 400
    assert r.json()["code"] == "CONFIG_REQUIRED"


def test_oauth_round_trip(monkeypatch):
    _configure_google(monkeypatch)
    captured = {}

    async def fake_exchange(self, code, code_verifier=None):
        captured["code"] = code
        captured["verifier"] = code_verifier
        return TokenGrant(access_token="a", refresh_token="r", expires_in=3600, scope="https://www.googleapis.com/auth/business.manage")

    monkeypatch.setattr(OAuthClient, "exchange_code", fake_exchange)

    r = client.get("/connectors/google_business/connect", headers=TENANT)
    assert r.status_code == 200
    data = r.json()["data"]
    assert "code_challenge=" in data["auth_url"]
    assert "access_type=offline" in data["auth_url"]

    r2 = client.get("/connectors/google_business/callback", params={"code": "c0de", "state": data["state"]})
    assert r2.status_code == 200
    assert r2.json()["data"]["connected"] is True
    assert captured["code"] == "c0de"
    assert captured["verifier"]

    status = client.get("/connectors/google_business/status", headers=TENANT).json()["data"]
    assert status["connected"] is True
    assert status["scopes"] == ["https://www.googleapis.com/auth/business.manage"]


def test_callback_rejects_tampered_state(monkeypatch):
    _configure_google(monkeypatch)
    state = client.get("/connectors/google_business/connect", headers=TENANT).json()["data"]["state"]

    r = client.get("/connectors/google_business/callback", params={"code": "c", "state": state[:-1] + ("1" if state.endswith("0") else "0")})
    assert r.status_code == 400
    assert r.json()["code"] == "VALIDATION_ERROR"

    # a genuine state replayed for another provider
    r = client.get("/connectors/quickbooks/callback", params={"code": "c", "state": state})
    assert r.status_code == 400


def test_callback_redirects_to_admin_ui_on_error(monkeypatch):
    monkeypatch.setattr(get_settings().oauth, "FRONTEND_URL", "https://portal.example.com")
    r = client.get("/connectors/quickbooks/callback", params={"error": "access_denied"}, follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["location"].startswith("https://portal.example.com/admin/quickbooks?error=")


def test_insights_served_from_cache():
    _connect()
    period = resolve_period(days=30)
    AggregateStore().replace(
        AggregateResult(
            tenant_id="t1",
            provider="google_business",
            entity_id="loc-1",
            period=Period(start=period.start, end=period.end, days=period.days),
            summary={"views": 12, "searches": 4, "website_clicks": 1, "calls": 0, "directions": 2},
            daily_breakdown=[],
            last_updated=datetime.now(timezone.utc),
        )
    )

    r = client.get("/connectors/google_business/insights/t1", params={"days": 30})

    assert r.status_code == 200
    body = r.json()
    assert body["meta"]["source"] == "cached"
    assert body["data"]["summary"]["views"] == 12
    assert body["data"]["period"]["days"] == 30


def test_insights_needs_reauth_envelope():
    _connect(needs_reauth=True)
    r = client.get("/connectors/google_business/insights/t1")
    assert r.status_code == 401
    body = r.json()
    assert body["code"] == "AUTH_REVOKED"
    assert body["requires_reauth"] is True


def test_insights_not_connected_and_bad_range():
    r = client.get("/connectors/quickbooks/insights/t1")
    assert r.status_code == 400
    assert r.json()["code"] == "NOT_CONNECTED"

    _connect(provider="quickbooks")
    r = client.get("/connectors/quickbooks/insights/t1", params={"start": "2024-05-10", "end": "2024-05-01"})
    assert r.status_code == 400
    assert r.json()["code"] == "VALIDATION_ERROR"


def test_disconnect_clears_tokens():
    _connect()
    r = client.get("/connectors/google_business/disconnect", headers=TENANT)
    assert r.status_code == 200
    assert r.json()["data"]["disconnected"] is True
    status = client.get("/connectors/google_business/status", headers=TENANT).json()["data"]
    assert status["connected"] is False
    assert status["token_expiry"] is None


def test_select_location_updates_status():
    _connect(realm_id=None)
    r = client.post("/connectors/google_business/location", headers=TENANT, json={"location_id": "locations/42", "location_name": "Main St"})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["realm_id"] == "42"
    assert data["entity_name"] == "Main St"


def test_customer_mappings_crud():
    r = client.post(
        "/connectors/quickbooks/customer-mappings",
        headers=TENANT,
        json={"portal_customer_id": "p1", "quickbooks_customer_id": "58", "quickbooks_customer_display_name": "Jane"},
    )
    assert r.status_code == 200
    mapping_id = r.json()["data"]["id"]

    # same portal customer is repointed, not duplicated
    r = client.post("/connectors/quickbooks/customer-mappings", headers=TENANT, json={"portal_customer_id": "p1", "quickbooks_customer_id": "59"})
    assert r.json()["data"]["id"] == mapping_id

    items = client.get("/connectors/quickbooks/customer-mappings", headers=TENANT).json()["data"]["items"]
    assert [(m["portal_customer_id"], m["quickbooks_customer_id"]) for m in items] == [("p1", "59")]

    assert client.delete(f"/connectors/quickbooks/customer-mappings/{mapping_id}", headers=TENANT).status_code == 200
    assert client.delete(f"/connectors/quickbooks/customer-mappings/{mapping_id}", headers=TENANT).status_code == 404


def test_portal_invoices_without_mapping_is_404():
    _connect(provider="quickbooks")
    r = client.get("/connectors/quickbooks/portal-customers/p404/invoices", headers=TENANT)
    assert r.status_code == 404


def test_manual_refresh_all_with_no_connections():
    r = client.post("/connectors/google_business/manual-refresh-all")
    assert r.status_code == 200
    assert r.json()["data"] == {"total": 0, "refreshed": 0, "failed": 0, "results": []}


class _GroupClient:
    async def list_accounts(self):
        return [
            {"name": "accounts/1", "accountName": "Clinic", "type": "PERSONAL"},
            {"name": "accounts/9", "accountName": "All clinics", "type": "LOCATION_GROUP"},
        ]

    async def list_locations(self, account):
        assert account == "accounts/9"
        return [
            {"name": "locations/good", "title": "Main St"},
            {"name": "locations/bad", "title": "Harbour Rd"},
        ]


class _OneBadLocation(FakeSource):
    async def fetch_window(self, token, entity_id, window):
        if entity_id == "bad":
            raise UpstreamRequestError("location not found")
        return await super().fetch_window(token, entity_id, window)


def test_group_insights_isolates_failing_location(monkeypatch):
    _connect()
    monkeypatch.setattr(get_settings().oauth, "GOOGLE_BUSINESS_GROUP_NAME", None)
    monkeypatch.setattr(GoogleBusinessConnector, "_client", lambda self, token: _GroupClient())
    monkeypatch.setattr(GoogleBusinessConnector, "metrics_source", lambda self: _OneBadLocation())

    r = client.get("/connectors/google_business/group-insights?days=7", headers=TENANT)

    assert r.status_code == 200
    data = r.json()["data"]
    assert data["account"] == "All clinics"
    assert data["summary"] == {"total_locations": 2, "successful_fetches": 1, "failed_fetches": 1}
    rows = {row["location_id"]: row for row in data["locations"]}
    assert rows["good"]["summary"] == {"clicks": 7, "calls": 14}
    assert rows["bad"]["error"] is True
    assert rows["bad"]["location_name"] == "Harbour Rd"
    assert "location not found" in rows["bad"]["error_message"]
