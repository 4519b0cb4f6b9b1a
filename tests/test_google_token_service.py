from __future__ import annotations

try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover - fallback for direct execution
    import _bootstrap  # type: ignore # noqa: F401

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from fakes import FakeBackend, FakeOAuthClient, FakeRedis
from token_broker.clients.google_auth import GoogleOAuthClient
from token_broker.core.config import BrokerSettings, GoogleSettings, OAuthSettings
from token_broker.core.errors import (
    BackendUnreachableError,
    LockTimeoutError,
    MisconfiguredClientError,
    RefreshFailedError,
    TokenRevokedError,
)
from token_broker.models.oauth import CachedToken, RefreshedCredentials, StoredCredentials, now_ms
from token_broker.models.tenant import TenantKey
from token_broker.services.google_tokens import GoogleTokenService
from token_broker.services.metrics import TokenMetrics
from token_broker.services.refresh_lock import RefreshLock
from token_broker.services.token_cache import TokenCache

TENANT = TenantKey(environment="hom", sigla="ABC", store_id="7")


def _refreshed(access_token: str = "X", *, refresh_token: str | None = None, seconds: int = 3600):
    return RefreshedCredentials(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=seconds),
    )


def _build(
    *,
    fake_redis: FakeRedis | None = None,
    oauth=None,
    backend: FakeBackend | None = None,
    broker: BrokerSettings | None = None,
    sleep=None,
):
    fake_redis = fake_redis or FakeRedis()
    backend = backend if backend is not None else FakeBackend(
        {TENANT: StoredCredentials(access_token="old", refresh_token="stored-refresh")}
    )
    oauth = oauth or FakeOAuthClient(result=_refreshed())
    metrics = TokenMetrics()
    kwargs = {"sleep": sleep} if sleep is not None else {}
    service = GoogleTokenService(
        cache=TokenCache(fake_redis),
        lock=RefreshLock(fake_redis),
        oauth_client=oauth,
        backend=backend,
        broker_settings=broker or BrokerSettings(),
        metrics=metrics,
        **kwargs,
    )
    return service, fake_redis, oauth, backend, metrics


@pytest.mark.asyncio
async def test_cache_hit_skips_lock_and_network() -> None:
    service, fake_redis, oauth, backend, metrics = _build()
    fake_redis.put_raw(
        TENANT.cache_key,
        CachedToken(access_token="cached", expires_at=now_ms() + 3_600_000).model_dump_json(
            by_alias=True
        ),
        ex=3000,
    )

    token = await service.obtain_valid_access_token(TENANT)

    assert token == "cached"
    assert fake_redis.set_calls == []
    assert oauth.calls == []
    assert backend.reads == []
    assert metrics.counter_value("google_token_cache_hit_total", **TENANT.labels()) == 1


@pytest.mark.asyncio
async def test_refresh_persists_caches_and_returns_token() -> None:
    service, fake_redis, oauth, backend, metrics = _build()

    token = await service.obtain_valid_access_token(TENANT)

    assert token == "X"
    assert oauth.calls == ["stored-refresh"]
    assert backend.writes == [(TENANT, "X", "stored-refresh")]
    cache_writes = [call for call in fake_redis.set_calls if call["key"] == TENANT.cache_key]
    assert len(cache_writes) == 1
    assert 3475 <= cache_writes[0]["ex"] <= 3480
    assert fake_redis.keys() == [TENANT.cache_key]
    assert metrics.counter_value("google_token_refresh_total", **TENANT.labels()) == 1
    assert metrics.counter_value("google_token_cache_miss_total", **TENANT.labels()) == 1


@pytest.mark.asyncio
async def test_rotated_refresh_token_is_persisted() -> None:
    oauth = FakeOAuthClient(result=_refreshed("Y", refresh_token="rotated"))
    service, _, _, backend, _ = _build(oauth=oauth)

    await service.obtain_valid_access_token(TENANT)

    assert backend.writes == [(TENANT, "Y", "rotated")]


@pytest.mark.asyncio
async def test_second_call_is_served_from_cache() -> None:
    service, _, oauth, _, _ = _build()

    first = await service.acquire(TENANT)
    second = await service.acquire(TENANT)

    assert first.from_cache is False
    assert second.from_cache is True
    assert second.access_token == first.access_token
    assert len(oauth.calls) == 1


@pytest.mark.asyncio
async def test_token_inside_safety_margin_forces_refresh() -> None:
    service, fake_redis, oauth, _, _ = _build()
    fake_redis.put_raw(
        TENANT.cache_key,
        CachedToken(access_token="nearly-expired", expires_at=now_ms() + 60_000).model_dump_json(
            by_alias=True
        ),
        ex=600,
    )

    token = await service.obtain_valid_access_token(TENANT)

    assert token == "X"
    assert len(oauth.calls) == 1


@pytest.mark.asyncio
async def test_short_lived_token_is_not_cached() -> None:
    oauth = FakeOAuthClient(result=_refreshed(seconds=100))
    service, fake_redis, _, backend, _ = _build(oauth=oauth)

    token = await service.obtain_valid_access_token(TENANT)

    assert token == "X"
    assert backend.writes
    assert TENANT.cache_key not in fake_redis.keys()


@pytest.mark.asyncio
async def test_missing_refresh_token_means_not_authenticated() -> None:
    service, fake_redis, oauth, _, metrics = _build(backend=FakeBackend())

    token = await service.obtain_valid_access_token(TENANT)

    assert token is None
    assert oauth.calls == []
    assert fake_redis.keys() == []
    assert (
        metrics.counter_value(
            "google_token_refresh_error_total", reason="no_refresh_token", **TENANT.labels()
        )
        == 1
    )


@pytest.mark.asyncio
async def test_revoked_grant_clears_cache_and_releases_lock() -> None:
    oauth = FakeOAuthClient(error=TokenRevokedError("revoked"))
    service, fake_redis, _, backend, metrics = _build(oauth=oauth)

    with pytest.raises(TokenRevokedError):
        await service.obtain_valid_access_token(TENANT)

    assert fake_redis.keys() == []
    assert backend.writes == []
    assert (
        metrics.counter_value(
            "google_token_refresh_error_total", reason="TOKEN_REVOKED", **TENANT.labels()
        )
        == 1
    )


@pytest.mark.asyncio
async def test_failed_refresh_does_not_poison_next_attempt() -> None:
    oauth = FakeOAuthClient(error=MisconfiguredClientError("bad client"))
    service, _, _, _, _ = _build(oauth=oauth)

    with pytest.raises(MisconfiguredClientError):
        await service.obtain_valid_access_token(TENANT)

    oauth.error = None
    oauth.result = _refreshed("fresh")
    assert await service.obtain_valid_access_token(TENANT) == "fresh"


@pytest.mark.asyncio
async def test_backend_outage_is_not_mistaken_for_unlinked_store() -> None:
    backend = FakeBackend()
    backend.unreachable = True
    service, fake_redis, oauth, _, _ = _build(backend=backend)

    with pytest.raises(BackendUnreachableError):
        await service.obtain_valid_access_token(TENANT)

    assert oauth.calls == []
    assert fake_redis.keys() == []


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh() -> None:
    gate = asyncio.Event()
    oauth = FakeOAuthClient(result=_refreshed("shared"), gate=gate)
    service, fake_redis, _, _, _ = _build(oauth=oauth)

    callers = [asyncio.ensure_future(service.obtain_valid_access_token(TENANT)) for _ in range(10)]
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    gate.set()
    tokens = await asyncio.gather(*callers)

    assert tokens == ["shared"] * 10
    assert oauth.calls == ["stored-refresh"]
    lock_attempts = [call for call in fake_redis.set_calls if call["nx"]]
    assert len(lock_attempts) == 1


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_failure() -> None:
    gate = asyncio.Event()
    oauth = FakeOAuthClient(error=TokenRevokedError("revoked"), gate=gate)
    service, fake_redis, _, _, _ = _build(oauth=oauth)

    callers = [asyncio.ensure_future(service.obtain_valid_access_token(TENANT)) for _ in range(5)]
    await asyncio.sleep(0)
    gate.set()
    results = await asyncio.gather(*callers, return_exceptions=True)

    assert all(isinstance(result, TokenRevokedError) for result in results)
    assert len({id(result) for result in results}) == 1
    assert len(oauth.calls) == 1
    assert fake_redis.keys() == []


@pytest.mark.asyncio
async def test_cancelled_waiter_leaves_refresh_running() -> None:
    gate = asyncio.Event()
    oauth = FakeOAuthClient(result=_refreshed("survivor"), gate=gate)
    service, fake_redis, _, _, _ = _build(oauth=oauth)

    first = asyncio.ensure_future(service.obtain_valid_access_token(TENANT))
    second = asyncio.ensure_future(service.obtain_valid_access_token(TENANT))
    await asyncio.sleep(0)
    first.cancel()
    await asyncio.sleep(0)
    gate.set()

    assert await second == "survivor"
    assert first.cancelled()
    assert len(oauth.calls) == 1
    assert fake_redis.keys() == [TENANT.cache_key]


@pytest.mark.asyncio
async def test_lock_held_elsewhere_waits_once_then_reads_cache() -> None:
    fake_redis = FakeRedis()
    fake_redis.put_raw(TENANT.lock_key, "1", ex=30)
    waits: list[float] = []

    async def other_instance_finishes(seconds: float) -> None:
        waits.append(seconds)
        fake_redis.put_raw(
            TENANT.cache_key,
            CachedToken(access_token="from-peer", expires_at=now_ms() + 3_600_000).model_dump_json(
                by_alias=True
            ),
            ex=3480,
        )

    service, _, oauth, backend, _ = _build(fake_redis=fake_redis, sleep=other_instance_finishes)

    token = await service.obtain_valid_access_token(TENANT)

    assert token == "from-peer"
    assert waits == [0.5]
    assert oauth.calls == []
    assert backend.reads == []


@pytest.mark.asyncio
async def test_lock_held_elsewhere_times_out_without_releasing() -> None:
    fake_redis = FakeRedis()
    fake_redis.put_raw(TENANT.lock_key, "1", ex=30)
    waits: list[float] = []

    async def no_progress(seconds: float) -> None:
        waits.append(seconds)

    service, _, oauth, _, _ = _build(fake_redis=fake_redis, sleep=no_progress)

    with pytest.raises(LockTimeoutError):
        await service.obtain_valid_access_token(TENANT)

    assert waits == [0.5]
    assert oauth.calls == []
    assert TENANT.lock_key in fake_redis.keys()


@pytest.mark.asyncio
async def test_crashed_holder_lock_expires_and_refresh_resumes() -> None:
    fake_redis = FakeRedis()
    fake_redis.put_raw(TENANT.lock_key, "1", ex=30)

    async def no_progress(seconds: float) -> None:
        return None

    service, _, oauth, _, _ = _build(fake_redis=fake_redis, sleep=no_progress)

    with pytest.raises(LockTimeoutError):
        await service.obtain_valid_access_token(TENANT)

    fake_redis.advance(30)
    assert await service.obtain_valid_access_token(TENANT) == "X"
    assert len(oauth.calls) == 1


@pytest.mark.asyncio
async def test_link_and_unlink_store() -> None:
    service, fake_redis, oauth, backend, _ = _build(backend=FakeBackend())

    await service.link_store(
        TENANT, access_token="linked", refresh_token="linked-refresh", expires_in=3600
    )
    assert backend.writes == [(TENANT, "linked", "linked-refresh")]
    assert await service.obtain_valid_access_token(TENANT) == "linked"
    assert oauth.calls == []

    await service.unlink_store(TENANT)
    assert backend.deletes == [TENANT]
    assert fake_redis.keys() == []


@pytest.mark.asyncio
async def test_stalled_google_call_is_cut_off_before_the_lock_expires() -> None:
    async def stalled(request: httpx.Request) -> httpx.Response:
        await asyncio.Event().wait()

    oauth = GoogleOAuthClient(
        GoogleSettings(GOOGLE_CLIENT_ID="client", GOOGLE_CLIENT_SECRET="secret"),
        OAuthSettings(),
        transport=httpx.MockTransport(stalled),
    )
    broker = BrokerSettings(BROKER_LOCK_TTL_SECONDS=1, BROKER_REFRESH_DEADLINE_SECONDS=0.05)
    service, fake_redis, _, backend, metrics = _build(oauth=oauth, broker=broker)

    with pytest.raises(RefreshFailedError) as excinfo:
        await service.obtain_valid_access_token(TENANT)

    assert excinfo.value.status_code == 504
    assert backend.writes == []
    assert fake_redis.keys() == []
    assert (
        metrics.counter_value(
            "google_token_refresh_error_total", reason="REFRESH_FAILED", **TENANT.labels()
        )
        == 1
    )


@pytest.mark.asyncio
async def test_two_instances_sharing_redis_refresh_once() -> None:
    fake_redis = FakeRedis()
    backend = FakeBackend(
        {TENANT: StoredCredentials(access_token="old", refresh_token="stored-refresh")}
    )
    gate = asyncio.Event()
    oauth = FakeOAuthClient(result=_refreshed("from-first"), gate=gate)
    first_call: asyncio.Future | None = None

    async def let_first_instance_finish(seconds: float) -> None:
        gate.set()
        await first_call

    first, _, _, _, _ = _build(fake_redis=fake_redis, oauth=oauth, backend=backend)
    second, _, _, _, _ = _build(
        fake_redis=fake_redis, oauth=oauth, backend=backend, sleep=let_first_instance_finish
    )

    first_call = asyncio.ensure_future(first.obtain_valid_access_token(TENANT))
    while not oauth.calls:
        await asyncio.sleep(0)

    assert await second.obtain_valid_access_token(TENANT) == "from-first"
    assert await first_call == "from-first"
    assert oauth.calls == ["stored-refresh"]
    assert backend.writes == [(TENANT, "from-first", "stored-refresh")]
    lock_attempts = [call for call in fake_redis.set_calls if call["nx"]]
    assert len(lock_attempts) == 2
