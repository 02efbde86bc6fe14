"""
Bucles periódicos del motor de sincronización.

- token refresh: refresca los tokens que expiran antes de ahora + umbral
- account poll: sincroniza cuentas, transacciones y webhooks de todos los usuarios

Cada bucle es un único worker secuencial: el primer tick se ejecuta al arrancar,
los siguientes a intervalo fijo. Un fallo en un token o usuario se loguea y el
bucle continúa. Ambos bucles paran limpiamente cuando se activa el evento `stop`.

Normalmente arrancan dentro del lifespan de la API (SCHEDULER_ENABLED=true).
Como proceso independiente: python -m sync.scheduler
"""

import asyncio
import signal
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import structlog

from sync.context import SyncContext
from sync.domain import Token
from sync.monzo_client import MonzoAPIError
from sync.store import StoreError
from sync.sync_service import SyncService

logger = structlog.get_logger(__name__)


@dataclass
class TickStats:
    candidates: int = 0
    succeeded: int = 0
    failed: int = 0


# ---------------------------------------------------------------------------
# Token refresh
# ---------------------------------------------------------------------------


async def run_token_refresh_tick(ctx: SyncContext, now: datetime | None = None) -> TickStats:
    """
    Un ciclo: busca tokens con expiry_time < now + umbral y los refresca uno a uno.
    Sin reintentos: un token que falla se reconsidera en el siguiente tick.
    """
    stats = TickStats()
    now = now or datetime.now(timezone.utc)
    deadline = now + timedelta(seconds=ctx.config.token_refresh_threshold)

    try:
        candidates = await ctx.store.tokens_expiring_before(deadline)
    except StoreError as exc:
        logger.error("scheduler.token_refresh.query_failed", error=str(exc))
        return stats

    stats.candidates = len(candidates)
    logger.info("scheduler.token_refresh.candidates", count=stats.candidates)

    for token in candidates:
        log = logger.bind(user_id=token.user_id)
        try:
            response = await ctx.client.refresh_access_token(
                ctx.config.client_id,
                ctx.config.client_secret,
                token.refresh_token,
            )
        except MonzoAPIError as exc:
            stats.failed += 1
            log.error("scheduler.token_refresh.request_failed", error=str(exc))
            continue

        # Las credenciales se guardan bajo el user_id que devuelve Monzo, nunca bajo otro usuario
        refreshed = Token.from_response(response)
        if refreshed.user_id != token.user_id:
            log.warning("scheduler.token_refresh.user_mismatch", response_user_id=refreshed.user_id)

        try:
            await ctx.store.upsert_token(refreshed)
        except StoreError as exc:
            stats.failed += 1
            log.error("scheduler.token_refresh.store_failed", error=str(exc))
            continue

        stats.succeeded += 1
        log.info("scheduler.token_refresh.refreshed", expiry_time=refreshed.expiry_time.isoformat())

    return stats


# ---------------------------------------------------------------------------
# Account poll
# ---------------------------------------------------------------------------


async def run_account_poll_tick(ctx: SyncContext) -> TickStats:
    """Un ciclo: sync completo (cuentas → transacciones → webhooks) de cada usuario, en serie."""
    stats = TickStats()

    try:
        tokens = await ctx.store.all_tokens()
    except StoreError as exc:
        logger.error("scheduler.account_poll.query_failed", error=str(exc))
        return stats

    stats.candidates = len(tokens)
    logger.info("scheduler.account_poll.users", count=stats.candidates)

    for token in tokens:
        result = await SyncService(ctx, token).sync_user()
        if result.errors:
            stats.failed += 1
        else:
            stats.succeeded += 1

    return stats


# ---------------------------------------------------------------------------
# Bucles
# ---------------------------------------------------------------------------


async def run_periodic(
    name: str,
    interval: float,
    tick: Callable[[], Awaitable[TickStats]],
    stop: asyncio.Event,
) -> None:
    """
    Ejecuta `tick` inmediatamente y después cada `interval` segundos hasta que se active `stop`.
    Si un tick dura más que el intervalo, el siguiente arranca en cuanto termina (sin ráfagas).
    """
    loop = asyncio.get_running_loop()
    log = logger.bind(loop=name)
    log.info("scheduler.loop_start", interval_seconds=interval)

    next_run = loop.time()
    while not stop.is_set():
        log.info("scheduler.tick_start")
        try:
            result = await tick()
        except Exception as exc:
            # Los ticks ya aíslan sus fallos; esto cubre errores inesperados
            log.error("scheduler.tick_unexpected_error", error=str(exc), exc_info=exc)
        else:
            log.info(
                "scheduler.tick_done",
                candidates=result.candidates,
                succeeded=result.succeeded,
                failed=result.failed,
            )

        next_run = max(next_run + interval, loop.time())
        try:
            await asyncio.wait_for(stop.wait(), timeout=next_run - loop.time())
        except asyncio.TimeoutError:
            pass

    log.info("scheduler.loop_stopped")


async def token_refresh_loop(ctx: SyncContext, stop: asyncio.Event) -> None:
    await run_periodic(
        "token_refresh",
        ctx.config.token_refresh_interval,
        lambda: run_token_refresh_tick(ctx),
        stop,
    )


async def account_poll_loop(ctx: SyncContext, stop: asyncio.Event) -> None:
    await run_periodic(
        "account_poll",
        ctx.config.account_poll_interval,
        lambda: run_account_poll_tick(ctx),
        stop,
    )


class Scheduler:
    """
    Arranca y para los dos bucles como tareas asyncio.

    Uso:
        scheduler = Scheduler(ctx)
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(self, ctx: SyncContext) -> None:
        self.ctx = ctx
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._tasks = [
            asyncio.create_task(token_refresh_loop(self.ctx, self._stop), name="token_refresh_loop"),
            asyncio.create_task(account_poll_loop(self.ctx, self._stop), name="account_poll_loop"),
        ]

    async def stop(self, timeout: float = 30.0) -> None:
        """Pide a los bucles que terminen tras el tick en curso; cancela si no lo hacen a tiempo."""
        self._stop.set()
        if not self._tasks:
            return
        _, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            logger.warning("scheduler.cancel", task=task.get_name())
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []


# ---------------------------------------------------------------------------
# Proceso independiente
# ---------------------------------------------------------------------------


async def _serve() -> None:
    from core.config import settings
    from core.database import engine
    from core.dependencies import build_sync_context

    ctx = build_sync_context(settings)
    scheduler = Scheduler(ctx)

    loop = asyncio.get_running_loop()
    shutdown = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    scheduler.start()
    try:
        await shutdown.wait()
    finally:
        await scheduler.stop()
        await ctx.client.close()
        await engine.dispose()


def main() -> None:
    from core.config import settings
    from core.logging_config import configure_logging

    configure_logging(settings.LOG_LEVEL, settings.LOG_DIR, json_console=settings.APP_ENV != "development")
    logger.info(
        "scheduler.process_start",
        token_refresh_interval=settings.TOKEN_REFRESH_INTERVAL_SECONDS,
        account_poll_interval=settings.ACCOUNT_POLL_INTERVAL_SECONDS,
        env=settings.APP_ENV,
    )
    asyncio.run(_serve())


if __name__ == "__main__":
    main()
