"""
Unit tests for token refresh, revocation and the 401 retry.
"""
import asyncio
import gc
from datetime import datetime, timedelta, timezone

import pytest

from src.connectors.oauth import TokenGrant
from src.core.errors import AuthExpired, AuthRevoked, ConfigRequired, NotConnected, TokenEndpointError, UpstreamUnavailable
from src.core.models import ConnectionCredential
from src.core import token_lifecycle
from src.core.token_lifecycle import TokenLifecycleManager, classify_refresh_error, credential_lock, with_token_retry
from src.core.settings import get_settings
from src.core.token_store import CredentialStore

from conftest import FakeOAuth, no_sleep

NOW = datetime(2024, 6, 30, 12, 0, tzinfo=timezone.utc)


def _connect(expires_in_seconds=3600, **extra):
    cred = ConnectionCredential(
        tenant_id="t1",
        provider="google_business",
        access_token="access-0",
        refresh_token="refresh-0",
        expires_at=NOW + timedelta(seconds=expires_in_seconds),
        connected=True,
        **extra,
    )
    CredentialStore().save(cred)
    return cred


def _manager(oauth):
    return TokenLifecycleManager("t1", "google_business", oauth, buffer_seconds=300, clock=lambda: NOW, sleep=no_sleep)


def test_tokens_are_encrypted_at_rest(fake_mongo):
    _connect()
    raw = fake_mongo[get_settings().mongo.MONGODB_DB]["connections"].docs["t1::google_business"]
    assert raw["access_token"] != "access-0"
    assert raw["refresh_token"] != "refresh-0"
    assert CredentialStore().get("t1", "google_business").refresh_token == "refresh-0"


async def test_fresh_token_is_returned_without_refresh():
    _connect(expires_in_seconds=3600)
    oauth = FakeOAuth()
    assert await _manager(oauth).get_valid_access_token() == "access-0"
    assert oauth.calls == []


async def test_token_inside_buffer_is_refreshed_and_old_refresh_token_kept():
    _connect(expires_in_seconds=60)
    oauth = FakeOAuth(TokenGrant(access_token="access-1", refresh_token=None, expires_in=3600))

    token = await _manager(oauth).get_valid_access_token()

    assert token == "access-1"
    stored = CredentialStore().get("t1", "google_business")
    assert stored.access_token == "access-1"
    assert stored.refresh_token == "refresh-0"
    assert stored.expires_at == NOW + timedelta(seconds=3600)
    assert stored.last_refreshed == NOW


async def test_rotated_refresh_token_is_stored():
    _connect(expires_in_seconds=0)
    oauth = FakeOAuth(TokenGrant(access_token="access-1", refresh_token="refresh-1", expires_in=3600))
    await _manager(oauth).get_valid_access_token()
    assert CredentialStore().get("t1", "google_business").refresh_token == "refresh-1"


async def test_concurrent_callers_share_one_refresh():
    _connect(expires_in_seconds=0)
    oauth = FakeOAuth(TokenGrant(access_token="access-1", refresh_token=None, expires_in=3600))

    tokens = await asyncio.gather(*[_manager(oauth).get_valid_access_token() for _ in range(5)])

    assert set(tokens) == {"access-1"}
    assert len(oauth.calls) == 1


async def test_invalid_grant_marks_connection_for_reauth():
    _connect(expires_in_seconds=0)
    oauth = FakeOAuth(TokenEndpointError("refresh failed", oauth_error="invalid_grant"))

    with pytest.raises(AuthRevoked):
        await _manager(oauth).get_valid_access_token()

    stored = CredentialStore().get("t1", "google_business")
    assert stored.needs_reauth is True
    assert stored.connected is False
    assert stored.last_error

    # later calls fail fast without touching the token endpoint
    with pytest.raises(AuthRevoked):
        await _manager(oauth).get_valid_access_token()
    assert len(oauth.calls) == 1


async def test_transient_refresh_failure_leaves_connection_alone():
    _connect(expires_in_seconds=0)
    oauth = FakeOAuth(*[UpstreamUnavailable("token endpoint down")] * 3)

    with pytest.raises(UpstreamUnavailable):
        await _manager(oauth).get_valid_access_token()

    stored = CredentialStore().get("t1", "google_business")
    assert stored.connected is True
    assert stored.needs_reauth is False
    assert len(oauth.calls) == 3


async def test_not_connected_and_missing_entity():
    with pytest.raises(NotConnected):
        await _manager(FakeOAuth()).get_valid_access_token()

    _connect()
    with pytest.raises(ConfigRequired):
        _manager(FakeOAuth()).require_connected(entity_label="location")


async def test_wrap_call_refreshes_once_on_401():
    _connect(expires_in_seconds=3600)
    oauth = FakeOAuth(TokenGrant(access_token="access-1", refresh_token=None, expires_in=3600))
    seen = []

    async def op(token):
        seen.append(token)
        if token == "access-0":
            raise AuthExpired("expired", upstream_status=401)
        return "payload"

    assert await _manager(oauth).wrap_call(op) == "payload"
    assert seen == ["access-0", "access-1"]


async def test_second_401_becomes_auth_revoked():
    _connect(expires_in_seconds=3600)
    oauth = FakeOAuth(TokenGrant(access_token="access-1", refresh_token=None, expires_in=3600))

    async def op(token):
        raise AuthExpired("expired", upstream_status=401)

    with pytest.raises(AuthRevoked):
        await _manager(oauth).wrap_call(op)
    assert len(oauth.calls) == 1


async def test_decorator_passes_token():
    _connect()
    manager = _manager(FakeOAuth())

    @with_token_retry(manager)
    async def whoami(token, suffix):
        return f"{token}:{suffix}"

    assert await whoami("x") == "access-0:x"


async def test_store_grant_requires_a_refresh_token():
    with pytest.raises(TokenEndpointError):
        await _manager(FakeOAuth()).store_grant(TokenGrant(access_token="a", refresh_token=None, expires_in=3600))


async def test_store_grant_then_disconnect():
    manager = _manager(FakeOAuth())
    cred = await manager.store_grant(TokenGrant(access_token="a", refresh_token="r", expires_in=3600, scope="s1 s2"), realm_id="123")
    assert cred.connected and cred.realm_id == "123"

    assert await manager.disconnect() is True
    stored = CredentialStore().get("t1", "google_business")
    assert stored.connected is False
    assert stored.access_token is None and stored.refresh_token is None


def test_classify_refresh_error():
    assert classify_refresh_error(TokenEndpointError("x", oauth_error="invalid_grant")) == "permanent"
    assert classify_refresh_error(TokenEndpointError("Token has been expired or revoked: invalid_grant")) == "permanent"
    assert classify_refresh_error(TokenEndpointError("x", oauth_error="temporarily_unavailable")) == "transient"
    assert classify_refresh_error(UpstreamUnavailable("down")) == "transient"


async def test_credential_locks_are_released_when_idle():
    _connect(expires_in_seconds=0)
    oauth = FakeOAuth(TokenGrant(access_token="access-1", refresh_token=None, expires_in=3600))

    held = credential_lock("t1", "google_business")
    again = credential_lock("t1", "google_business")
    assert again is held
    del held, again
    gc.collect()
    assert ("t1", "google_business") not in token_lifecycle._LOCKS

    await _manager(oauth).get_valid_access_token()
    gc.collect()
    assert len(token_lifecycle._LOCKS) == 0


def test_store_rejects_connected_credential_without_refresh_token():
    cred = ConnectionCredential(tenant_id="t1", provider="google_business", access_token="a", connected=True)
    with pytest.raises(ValueError):
        CredentialStore().save(cred)
    assert CredentialStore().get("t1", "google_business") is None
