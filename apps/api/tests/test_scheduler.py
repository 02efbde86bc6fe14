"""
Tests de los bucles del scheduler: selección y refresco de tokens, aislamiento
de fallos por usuario y parada limpia.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from conftest import NOW, FakeStore, make_account, make_context, make_token
from sync.monzo_client import AccountResponse, MonzoTransportError, TokenResponse
from sync.scheduler import Scheduler, TickStats, run_account_poll_tick, run_periodic, run_token_refresh_tick
from sync.sync_service import SyncService


def token_response(user_id: str, expires_in: int = 21600) -> TokenResponse:
    return TokenResponse(
        access_token=f"new-access-{user_id}",
        expires_in=expires_in,
        refresh_token=f"new-refresh-{user_id}",
        token_type="Bearer",
        user_id=user_id,
    )


# ---------------------------------------------------------------------------
# Tests: token refresh
# ---------------------------------------------------------------------------


async def test_refresh_selects_only_tokens_inside_threshold():
    store = FakeStore()
    store.tokens["soon"] = make_token("soon", expires_in=timedelta(minutes=30))
    store.tokens["later"] = make_token("later", expires_in=timedelta(hours=2))
    ctx = make_context(store, token_refresh_threshold=3600)
    ctx.client.refresh_access_token.side_effect = lambda cid, secret, refresh: token_response("soon")

    stats = await run_token_refresh_tick(ctx, now=NOW)

    assert stats == TickStats(candidates=1, succeeded=1, failed=0)
    ctx.client.refresh_access_token.assert_awaited_once_with(
        "oauth2client_test", "mnzconf_test_secret", "refresh-soon"
    )
    assert store.tokens["later"].access_token == "access-later"


async def test_refreshed_token_expiry_is_now_plus_expires_in():
    store = FakeStore()
    store.tokens["user_1"] = make_token("user_1", expires_in=timedelta(minutes=5))
    ctx = make_context(store)
    ctx.client.refresh_access_token.return_value = token_response("user_1", expires_in=21600)

    before = datetime.now(timezone.utc)
    await run_token_refresh_tick(ctx, now=NOW)
    after = datetime.now(timezone.utc)

    refreshed = store.tokens["user_1"]
    assert refreshed.access_token == "new-access-user_1"
    assert refreshed.refresh_token == "new-refresh-user_1"
    # expiry_time se calcula con el reloj real en el momento de la respuesta
    assert before + timedelta(seconds=21600) <= refreshed.expiry_time <= after + timedelta(seconds=21600)


async def test_refresh_failure_is_not_retried_within_tick():
    store = FakeStore()
    store.tokens["user_a"] = make_token("user_a", expires_in=timedelta(minutes=1))
    store.tokens["user_b"] = make_token("user_b", expires_in=timedelta(minutes=2))
    ctx = make_context(store)

    async def refresh(client_id, client_secret, refresh_token):
        if refresh_token == "refresh-user_a":
            raise MonzoTransportError("Monzo rechazó POST /oauth2/token", 400)
        return token_response("user_b")

    ctx.client.refresh_access_token.side_effect = refresh

    stats = await run_token_refresh_tick(ctx, now=NOW)

    assert stats == TickStats(candidates=2, succeeded=1, failed=1)
    assert ctx.client.refresh_access_token.await_count == 2
    # El token que falló queda intacto hasta el siguiente tick
    assert store.tokens["user_a"].access_token == "access-user_a"
    assert store.tokens["user_b"].access_token == "new-access-user_b"


async def test_refresh_stores_credentials_under_response_user_id():
    store = FakeStore()
    store.tokens["user_1"] = make_token("user_1", expires_in=timedelta(minutes=1))
    ctx = make_context(store)
    ctx.client.refresh_access_token.return_value = token_response("user_other")

    await run_token_refresh_tick(ctx, now=NOW)

    # Las credenciales nuevas no pisan la fila de user_1
    assert store.tokens["user_1"].access_token == "access-user_1"
    assert store.tokens["user_other"].access_token == "new-access-user_other"

    ctx.client.list_accounts.return_value = [
        AccountResponse(id="acc_other", description="Otra", created="2024-01-01T00:00:00Z"),
    ]
    await SyncService(ctx, store.tokens["user_other"]).sync_accounts()

    assert store.accounts["acc_other"].user_id == "user_other"
    ctx.client.list_accounts.assert_awaited_once_with("new-access-user_other")


async def test_refresh_store_failure_counts_as_failed():
    store = FakeStore()
    store.tokens["user_1"] = make_token("user_1", expires_in=timedelta(minutes=1))
    store.fail_on.add("upsert_token")
    ctx = make_context(store)
    ctx.client.refresh_access_token.return_value = token_response("user_1")

    stats = await run_token_refresh_tick(ctx, now=NOW)

    assert stats.failed == 1


# ---------------------------------------------------------------------------
# Tests: account poll
# ---------------------------------------------------------------------------


async def test_account_poll_isolates_user_failures():
    store = FakeStore()
    store.tokens["user_a"] = make_token("user_a")
    store.tokens["user_b"] = make_token("user_b")
    store.accounts["acc_b"] = make_account("acc_b", "user_b")
    ctx = make_context(store)

    async def list_accounts(access_token):
        if access_token == "access-user_a":
            raise MonzoTransportError("Timeout en GET /accounts")
        return [AccountResponse(id="acc_b", description="B", created="2024-01-01T00:00:00Z")]

    ctx.client.list_accounts.side_effect = list_accounts
    ctx.client.list_all_transactions.return_value = []
    ctx.client.list_webhooks.return_value = []

    stats = await run_account_poll_tick(ctx)

    assert stats == TickStats(candidates=2, succeeded=1, failed=1)
    assert ctx.client.list_accounts.await_count == 2
    ctx.client.register_webhook.assert_awaited_once()


async def test_account_poll_query_failure_returns_empty_stats():
    store = FakeStore()
    store.fail_on.add("all_tokens")

    stats = await run_account_poll_tick(make_context(store))

    assert stats == TickStats()


# ---------------------------------------------------------------------------
# Tests: bucles
# ---------------------------------------------------------------------------


async def test_run_periodic_first_tick_is_immediate_and_stops_on_event():
    stop = asyncio.Event()
    ticks = 0

    async def tick() -> TickStats:
        nonlocal ticks
        ticks += 1
        stop.set()
        return TickStats()

    # Intervalo enorme: si el primer tick no fuera inmediato el test no terminaría
    await asyncio.wait_for(run_periodic("test", 3600, tick, stop), timeout=1)

    assert ticks == 1


async def test_run_periodic_survives_unexpected_tick_error():
    stop = asyncio.Event()
    ticks = 0

    async def tick() -> TickStats:
        nonlocal ticks
        ticks += 1
        if ticks == 1:
            raise RuntimeError("boom")
        stop.set()
        return TickStats()

    await asyncio.wait_for(run_periodic("test", 0.01, tick, stop), timeout=1)

    assert ticks == 2


async def test_scheduler_start_and_stop():
    store = FakeStore()
    ctx = make_context(store, token_refresh_interval=3600, account_poll_interval=3600)
    scheduler = Scheduler(ctx)

    scheduler.start()
    await asyncio.sleep(0.05)
    assert scheduler.running

    await scheduler.stop(timeout=1)

    assert not scheduler.running
    assert "tokens_expiring_before" in store.calls
    assert "all_tokens" in store.calls
