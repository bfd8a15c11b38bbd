from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from src.core.errors import error_code_of
from src.core.logging import get_logger
from src.core.models import ConnectionCredential
from src.core.security import is_expired
from src.core.settings import get_settings
from src.core.token_lifecycle import TokenLifecycleManager
from src.core.token_store import CredentialStore
from src.sync.fetcher import ConcurrencyLimitedFetcher
from src.sync.service import InsightsService

logger = get_logger(__name__)

ServiceFactory = Callable[[str], InsightsService]
ManagerFactory = Callable[[str], TokenLifecycleManager]


# PUBLIC_INTERFACE
async def refresh_all_aggregates(
    provider: str,
    service_for: ServiceFactory,
    store: Optional[CredentialStore] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> Dict[str, Any]:
    """Manual refresh for every usable connection of a provider, through its own worker pool."""
    sync = get_settings().sync
    store = store or CredentialStore()
    creds = [c for c in store.iter_connected(provider) if not c.needs_reauth and c.realm_id]
    fetcher = ConcurrencyLimitedFetcher(concurrency=sync.GROUP_CONCURRENCY, delay=sync.BULK_DELAY_MS / 1000.0, sleep=sleep)

    async def refresh_one(cred: ConnectionCredential):
        return await service_for(cred.tenant_id).manual_refresh()

    report = await fetcher.fetch_all(creds, refresh_one)
    results = []
    for outcome in report.outcomes:
        entry: Dict[str, Any] = {"tenant_id": outcome.unit.tenant_id, "success": outcome.ok}
        if outcome.ok:
            entry["last_updated"] = outcome.result.last_updated.isoformat()  # type: ignore[union-attr]
        else:
            entry["error_code"] = error_code_of(outcome.error)  # type: ignore[arg-type]
            entry["error"] = str(outcome.error)
        results.append(entry)
    summary = {"total": len(creds), "refreshed": len(report.successes), "failed": len(report.failures), "results": results}
    logger.info("manual refresh of all aggregates finished", extra={k: summary[k] for k in ("total", "refreshed", "failed")})
    return summary


# PUBLIC_INTERFACE
async def refresh_expiring_tokens(
    provider: str,
    manager_for: ManagerFactory,
    store: Optional[CredentialStore] = None,
    buffer_seconds: Optional[int] = None,
    now: Optional[datetime] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> Dict[str, int]:
    """Refresh tokens that expire within the background buffer before a request needs them."""
    sync = get_settings().sync
    store = store or CredentialStore()
    buffer = sync.BACKGROUND_REFRESH_BUFFER_SECONDS if buffer_seconds is None else buffer_seconds
    now = now or datetime.now(timezone.utc)
    connected = [c for c in store.iter_connected(provider) if not c.needs_reauth]
    expiring = [c for c in connected if is_expired(c.expires_at, now=now, buffer_seconds=buffer)]
    fetcher = ConcurrencyLimitedFetcher(concurrency=sync.GROUP_CONCURRENCY, delay=0, sleep=sleep)

    async def refresh_one(cred: ConnectionCredential):
        return await manager_for(cred.tenant_id).refresh(force=True, observed_access_token=cred.access_token)

    report = await fetcher.fetch_all(expiring, refresh_one)
    counts = {"checked": len(connected), "refreshed": len(report.successes), "failed": len(report.failures)}
    logger.info("background token refresh finished", extra={"provider_name": provider, **counts})
    return counts


# PUBLIC_INTERFACE
async def run_periodically(
    interval_seconds: float,
    job: Callable[[], Awaitable[Any]],
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> None:
    """Run ``job`` every interval until cancelled. A failed round is logged and the loop goes on."""
    sleeper = sleep or asyncio.sleep
    while True:
        await sleeper(interval_seconds)
        try:
            await job()
        except Exception:
            logger.exception("background job round failed")
