"""
Servicio de sincronización de un usuario autorizado con la API de Monzo.

Reglas:
- Orden por usuario: cuentas → transacciones → webhooks. Cada paso está aislado:
  un fallo se registra en SyncStats y se loguea, pero no impide los siguientes.
- Las cuentas se leen de Monzo; las transacciones se piden para las cuentas que ya
  están en el Store (no las que acaba de devolver Monzo).
- Un registro con fecha ilegible se descarta individualmente, nunca aborta el paso.
- Upserts idempotentes (last-write-wins): re-sincronizar no duplica nada.
- SYNC_CONCURRENCY acota las paginaciones y los upserts en vuelo (1 = secuencial).
"""

import asyncio
import re
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog

from sync.context import SyncContext
from sync.domain import Account, Token, Transaction
from sync.monzo_client import MonzoAPIError, MonzoDecodeError, TransactionResponse
from sync.store import StoreError
from sync.webhook_reconciler import WebhookAction, reconcile_webhook

logger = structlog.get_logger(__name__)

# Monzo puede devolver más de 6 decimales en los segundos; datetime solo admite microsegundos
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def parse_monzo_date(value: str | None) -> datetime | None:
    """
    Convierte un timestamp RFC 3339 de Monzo a datetime UTC.
    "" / None → None (e.g. `settled` de una transacción pendiente).
    Lanza MonzoDecodeError si el valor no es una fecha válida.
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(_FRACTION_RE.sub(r"\1", value).replace("Z", "+00:00"))
    except ValueError as exc:
        raise MonzoDecodeError(f"Fecha inválida: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def map_transaction(raw: TransactionResponse, account_id: str) -> Transaction:
    """Convierte una transacción de la API al tipo de dominio. `created` es obligatorio."""
    created = parse_monzo_date(raw.created)
    if created is None:
        raise MonzoDecodeError(f"Transacción {raw.id} sin fecha de creación")
    return Transaction(
        id=raw.id,
        account_id=account_id,
        amount=raw.amount,
        currency=raw.currency,
        description=raw.description,
        notes=raw.notes,
        merchant=raw.merchant,
        category=raw.category,
        created=created,
        settled=parse_monzo_date(raw.settled),
    )


# ---------------------------------------------------------------------------
# Resultado de sincronización
# ---------------------------------------------------------------------------


@dataclass
class SyncStats:
    user_id: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    accounts_saved: int = 0
    accounts_skipped: int = 0
    transactions_fetched: int = 0
    transactions_saved: int = 0
    transactions_skipped: int = 0
    webhooks_created: int = 0
    webhooks_replaced: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        if self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def finish(self) -> None:
        self.finished_at = datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Servicio principal
# ---------------------------------------------------------------------------


class SyncService:
    """
    Sincroniza los datos de un usuario a partir de su Token.

    Uso:
        stats = await SyncService(ctx, token).sync_user()

    El servicio no cierra el cliente de Monzo: es compartido y lo gestiona quien crea el contexto.
    """

    def __init__(self, ctx: SyncContext, token: Token) -> None:
        self.ctx = ctx
        self.token = token
        self.stats = SyncStats(user_id=token.user_id)
        self._log = logger.bind(user_id=token.user_id)

    async def sync_user(self) -> SyncStats:
        """Sincronización completa: cuentas + transacciones + webhooks."""
        self._log.info("sync.start")

        await self._run_step("accounts", self.sync_accounts())
        await self._run_step("transactions", self.sync_transactions())
        await self._run_step("webhooks", self.reconcile_webhooks())

        self.stats.finish()
        self._log.info(
            "sync.complete",
            accounts=self.stats.accounts_saved,
            transactions=self.stats.transactions_saved,
            webhooks_created=self.stats.webhooks_created,
            webhooks_replaced=self.stats.webhooks_replaced,
            duration_seconds=round(self.stats.duration_seconds, 2),
            errors=len(self.stats.errors),
        )
        return self.stats

    async def initial_load(self) -> SyncStats:
        """
        Carga tras una autorización OAuth: solo cuentas.
        Las transacciones llegan en el siguiente ciclo del scheduler.
        """
        self._log.info("sync.initial_load")
        await self._run_step("accounts", self.sync_accounts())
        self.stats.finish()
        return self.stats

    async def _run_step(self, name: str, coro: Awaitable[object]) -> None:
        """Ejecuta un paso de sync capturando errores para no abortar el resto."""
        try:
            await coro
        except MonzoAPIError as exc:
            msg = f"{name}: {exc}"
            self.stats.errors.append(msg)
            self._log.warning("sync.step_error", step=name, error=msg)
        except StoreError as exc:
            msg = f"{name}: {exc}"
            self.stats.errors.append(msg)
            self._log.error("sync.step_store_error", step=name, error=msg)
        except Exception as exc:
            msg = f"{name}: {type(exc).__name__}: {exc}"
            self.stats.errors.append(msg)
            self._log.error("sync.step_unexpected_error", step=name, error=msg, exc_info=exc)

    # -----------------------------------------------------------------------
    # Cuentas
    # -----------------------------------------------------------------------

    async def sync_accounts(self) -> int:
        """Lista las cuentas en Monzo y las guarda asociadas al user_id del token."""
        accounts = await self.ctx.client.list_accounts(self.token.access_token)
        self._log.info("sync.accounts_found", count=len(accounts))

        saved = 0
        for raw in accounts:
            try:
                created = parse_monzo_date(raw.created)
                if created is None:
                    raise MonzoDecodeError(f"Cuenta {raw.id} sin fecha de creación")
            except MonzoDecodeError as exc:
                self.stats.accounts_skipped += 1
                self.stats.errors.append(f"accounts: {exc}")
                self._log.warning("sync.account_skipped", account_id=raw.id, error=str(exc))
                continue

            account = Account(
                id=raw.id,
                user_id=self.token.user_id,
                description=raw.description,
                created=created,
            )
            try:
                await self.ctx.store.upsert_account(account)
            except StoreError as exc:
                self.stats.errors.append(f"accounts: {exc}")
                continue
            saved += 1
            self._log.debug("sync.account_upserted", account_id=account.id)

        self.stats.accounts_saved += saved
        self._log.info("sync.accounts_done", count=saved)
        return saved

    # -----------------------------------------------------------------------
    # Transacciones
    # -----------------------------------------------------------------------

    async def sync_transactions(self) -> int:
        """
        Pagina el historial de cada cuenta conocida del usuario y hace upsert de todo.
        Una cuenta cuya paginación falla se omite; el resto continúa.
        """
        account_ids = await self.ctx.store.account_ids_for_user(self.token.user_id)
        self._log.info("sync.transactions_start", accounts=len(account_ids))

        semaphore = asyncio.Semaphore(self.ctx.config.concurrency)

        async def fetch(account_id: str) -> tuple[str, list[TransactionResponse] | None]:
            async with semaphore:
                try:
                    pages = await self.ctx.client.list_all_transactions(
                        self.token.access_token, account_id, max_pages=self.ctx.config.max_pages
                    )
                except MonzoAPIError as exc:
                    self.stats.errors.append(f"transactions[{account_id}]: {exc}")
                    self._log.warning("sync.transactions_fetch_failed", account_id=account_id, error=str(exc))
                    return account_id, None
            self._log.info("sync.transactions_fetched", account_id=account_id, count=len(pages))
            return account_id, pages

        results = await asyncio.gather(*(fetch(account_id) for account_id in account_ids))

        transactions: list[Transaction] = []
        for account_id, responses in results:
            if responses is None:
                continue
            self.stats.transactions_fetched += len(responses)
            for raw in responses:
                try:
                    transactions.append(map_transaction(raw, account_id))
                except MonzoDecodeError as exc:
                    self.stats.transactions_skipped += 1
                    self._log.warning("sync.transaction_skipped", transaction_id=raw.id, error=str(exc))

        self._log.info("sync.transactions_upserting", count=len(transactions))

        # Pool fijo de `concurrency` workers que consumen el mismo iterador
        pending = iter(transactions)
        saved = 0

        async def worker() -> None:
            nonlocal saved
            for transaction in pending:
                try:
                    saved += await self.ctx.store.upsert_transaction(transaction)
                except StoreError as exc:
                    self.stats.errors.append(f"transactions[{transaction.id}]: {exc}")

        workers = min(self.ctx.config.concurrency, len(transactions))
        await asyncio.gather(*(worker() for _ in range(workers)))

        self.stats.transactions_saved += saved
        self._log.info("sync.transactions_done", count=saved)
        return saved

    # -----------------------------------------------------------------------
    # Webhooks
    # -----------------------------------------------------------------------

    async def reconcile_webhooks(self) -> None:
        """Reconcilia el webhook de cada cuenta conocida; un fallo por cuenta no detiene las demás."""
        account_ids = await self.ctx.store.account_ids_for_user(self.token.user_id)

        for account_id in account_ids:
            try:
                action = await reconcile_webhook(
                    self.ctx.client,
                    self.token.access_token,
                    account_id,
                    self.ctx.config.webhook_url,
                )
            except MonzoAPIError as exc:
                self.stats.errors.append(f"webhooks[{account_id}]: {exc}")
                self._log.warning("sync.webhook_failed", account_id=account_id, error=str(exc))
                continue

            if action is WebhookAction.CREATED:
                self.stats.webhooks_created += 1
            elif action is WebhookAction.REPLACED:
                self.stats.webhooks_replaced += 1
