"""
Tests del SyncService.
Store en memoria + MonzoClient mockeado: sin red ni base de datos.
"""

import asyncio
from datetime import datetime, timezone

import pytest

from conftest import WEBHOOK_URL, FakeStore, make_account, make_context, make_token
from sync.monzo_client import (
    AccountResponse,
    MonzoDecodeError,
    MonzoTransportError,
    TransactionResponse,
    WebhookResponse,
)
from sync.sync_service import SyncService, map_transaction, parse_monzo_date


def raw_tx(tx_id: str, **overrides) -> TransactionResponse:
    body = {
        "id": tx_id,
        "amount": -1250,
        "created": "2026-09-01T10:00:00.000Z",
        "currency": "GBP",
        "description": "TESCO",
        "category": "groceries",
        "settled": "2026-09-02T06:00:00.000Z",
        "merchant": "merch_1",
    }
    body.update(overrides)
    return TransactionResponse.model_validate(body)


# ---------------------------------------------------------------------------
# Tests: fechas y mapeo
# ---------------------------------------------------------------------------


def test_parse_monzo_date_handles_z_suffix():
    assert parse_monzo_date("2026-09-01T10:00:00Z") == datetime(2026, 9, 1, 10, 0, tzinfo=timezone.utc)


def test_parse_monzo_date_truncates_extra_fraction_digits():
    parsed = parse_monzo_date("2026-09-01T10:00:00.123456789Z")
    assert parsed.microsecond == 123456


def test_parse_monzo_date_empty_is_none():
    assert parse_monzo_date("") is None
    assert parse_monzo_date(None) is None


def test_parse_monzo_date_invalid_raises_decode_error():
    with pytest.raises(MonzoDecodeError):
        parse_monzo_date("not-a-date")


def test_map_transaction_pending_settled_is_none():
    transaction = map_transaction(raw_tx("tx_1", settled=""), "acc_1")
    assert transaction.settled is None
    assert transaction.account_id == "acc_1"
    assert transaction.amount == -1250


def test_map_transaction_without_created_raises():
    with pytest.raises(MonzoDecodeError):
        map_transaction(raw_tx("tx_1", created=""), "acc_1")


# ---------------------------------------------------------------------------
# Tests: cuentas
# ---------------------------------------------------------------------------


async def test_sync_accounts_skips_only_unparsable_records():
    ctx = make_context()
    ctx.client.list_accounts.return_value = [
        AccountResponse(id="acc_1", description="Personal", created="2024-01-01T00:00:00Z"),
        AccountResponse(id="acc_2", description="Roto", created="ayer"),
        AccountResponse(id="acc_3", description="Conjunta", created="2024-02-01T00:00:00Z"),
    ]
    service = SyncService(ctx, make_token("user_1"))

    saved = await service.sync_accounts()

    assert saved == 2
    assert set(ctx.store.accounts) == {"acc_1", "acc_3"}
    assert ctx.store.accounts["acc_1"].user_id == "user_1"
    assert service.stats.accounts_skipped == 1


# ---------------------------------------------------------------------------
# Tests: transacciones
# ---------------------------------------------------------------------------


async def test_sync_transactions_uses_accounts_from_store():
    store = FakeStore()
    store.accounts["acc_1"] = make_account("acc_1", "user_1")
    store.accounts["acc_other"] = make_account("acc_other", "user_2")
    ctx = make_context(store)
    ctx.client.list_all_transactions.return_value = [raw_tx("tx_1"), raw_tx("tx_2", settled="")]

    saved = await SyncService(ctx, make_token("user_1")).sync_transactions()

    assert saved == 2
    ctx.client.list_all_transactions.assert_awaited_once()
    assert ctx.client.list_all_transactions.await_args[0][1] == "acc_1"
    assert store.transactions["tx_2"].settled is None


async def test_sync_transactions_is_idempotent():
    store = FakeStore()
    store.accounts["acc_1"] = make_account("acc_1", "user_1")
    ctx = make_context(store)
    ctx.client.list_all_transactions.return_value = [raw_tx("tx_1"), raw_tx("tx_2")]
    token = make_token("user_1")

    await SyncService(ctx, token).sync_transactions()
    await SyncService(ctx, token).sync_transactions()

    assert sorted(store.transactions) == ["tx_1", "tx_2"]


async def test_sync_transactions_isolates_failing_account():
    store = FakeStore()
    store.accounts["acc_1"] = make_account("acc_1", "user_1")
    store.accounts["acc_2"] = make_account("acc_2", "user_1")
    ctx = make_context(store)

    async def fetch(access_token, account_id, max_pages):
        if account_id == "acc_1":
            raise MonzoTransportError("Timeout en GET /transactions")
        return [raw_tx("tx_ok")]

    ctx.client.list_all_transactions.side_effect = fetch
    service = SyncService(ctx, make_token("user_1"))

    saved = await service.sync_transactions()

    assert saved == 1
    assert store.transactions["tx_ok"].account_id == "acc_2"
    assert any("acc_1" in error for error in service.stats.errors)


async def test_sync_transactions_bounds_in_flight_fetches():
    store = FakeStore()
    for i in range(4):
        store.accounts[f"acc_{i}"] = make_account(f"acc_{i}", "user_1")
    ctx = make_context(store, concurrency=2)
    in_flight = 0
    peak = 0

    async def fetch(access_token, account_id, max_pages):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return []

    ctx.client.list_all_transactions.side_effect = fetch

    await SyncService(ctx, make_token("user_1")).sync_transactions()

    assert peak == 2


# ---------------------------------------------------------------------------
# Tests: sync completo
# ---------------------------------------------------------------------------


async def test_sync_user_runs_all_steps_and_registers_webhooks():
    ctx = make_context()
    ctx.client.list_accounts.return_value = [
        AccountResponse(id="acc_1", description="Personal", created="2024-01-01T00:00:00Z"),
    ]
    ctx.client.list_all_transactions.return_value = [raw_tx("tx_1")]
    ctx.client.list_webhooks.return_value = []

    stats = await SyncService(ctx, make_token("user_1")).sync_user()

    assert stats.errors == []
    assert stats.accounts_saved == 1
    assert stats.transactions_saved == 1
    assert stats.webhooks_created == 1
    ctx.client.register_webhook.assert_awaited_once_with("access-user_1", "acc_1", WEBHOOK_URL)
    assert stats.finished_at is not None


async def test_sync_user_continues_after_accounts_failure():
    store = FakeStore()
    store.accounts["acc_1"] = make_account("acc_1", "user_1")
    ctx = make_context(store)
    ctx.client.list_accounts.side_effect = MonzoTransportError("Monzo rechazó GET /accounts", 500)
    ctx.client.list_all_transactions.return_value = [raw_tx("tx_1")]
    ctx.client.list_webhooks.return_value = [
        WebhookResponse(id="wh_1", account_id="acc_1", url=WEBHOOK_URL),
    ]

    stats = await SyncService(ctx, make_token("user_1")).sync_user()

    assert len(stats.errors) == 1
    assert stats.errors[0].startswith("accounts")
    assert "tx_1" in store.transactions
    ctx.client.register_webhook.assert_not_awaited()


async def test_initial_load_only_syncs_accounts():
    ctx = make_context()
    ctx.client.list_accounts.return_value = [
        AccountResponse(id="acc_1", description="Personal", created="2024-01-01T00:00:00Z"),
    ]

    stats = await SyncService(ctx, make_token("user_1")).initial_load()

    assert stats.accounts_saved == 1
    ctx.client.list_all_transactions.assert_not_awaited()
    ctx.client.list_webhooks.assert_not_awaited()


async def test_sync_transactions_upserts_with_fixed_worker_pool():
    store = FakeStore()
    store.accounts["acc_1"] = make_account("acc_1", "user_1")
    ctx = make_context(store, concurrency=2)
    ctx.client.list_all_transactions.return_value = [raw_tx(f"tx_{i}") for i in range(20)]
    workers = set()
    in_flight = 0
    peak = 0
    original_upsert = store.upsert_transaction

    async def upsert(transaction):
        nonlocal in_flight, peak
        workers.add(asyncio.current_task())
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0)
        in_flight -= 1
        return await original_upsert(transaction)

    store.upsert_transaction = upsert

    saved = await SyncService(ctx, make_token("user_1")).sync_transactions()

    assert saved == 20
    assert len(store.transactions) == 20
    # Dos workers reutilizados, no una tarea por transacción
    assert len(workers) == 2
    assert peak == 2


async def test_sync_transactions_upsert_failure_is_recorded_and_continues():
    store = FakeStore()
    store.accounts["acc_1"] = make_account("acc_1", "user_1")
    store.fail_on.add("upsert_transaction")
    ctx = make_context(store)
    ctx.client.list_all_transactions.return_value = [raw_tx("tx_1"), raw_tx("tx_2")]
    service = SyncService(ctx, make_token("user_1"))

    saved = await service.sync_transactions()

    assert saved == 0
    assert store.calls.count("upsert_transaction") == 2
    assert len(service.stats.errors) == 2
