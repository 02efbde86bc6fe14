"""
Router OAuth de Monzo (sin prefijo):
GET /authorise       → redirige a la pantalla de autorización de Monzo
GET /oauth/callback  → intercambia el código por un token, lo guarda y lanza la carga inicial
"""

from urllib.parse import urlencode

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse

from core.dependencies import get_sync_context
from core.security import new_oauth_state
from sync.context import SyncContext
from sync.domain import Token
from sync.monzo_client import MonzoAPIError
from sync.store import StoreError
from sync.sync_service import SyncService

logger = structlog.get_logger(__name__)

router = APIRouter()


async def _initial_load(ctx: SyncContext, token: Token) -> list[str]:
    """Tarea de fondo: solo cuentas; las transacciones llegan con el siguiente poll."""
    stats = await SyncService(ctx, token).initial_load()
    return stats.errors


@router.get("/authorise")
async def authorise(ctx: SyncContext = Depends(get_sync_context)) -> RedirectResponse:
    query = urlencode(
        {
            "client_id": ctx.config.client_id,
            "redirect_uri": ctx.config.redirect_uri,
            "response_type": "code",
            "state": new_oauth_state(),
        }
    )
    logger.info("oauth.redirect", redirect_uri=ctx.config.redirect_uri)
    return RedirectResponse(f"{ctx.config.auth_url}?{query}", status_code=status.HTTP_307_TEMPORARY_REDIRECT)


@router.get("/oauth/callback")
async def oauth_callback(
    background_tasks: BackgroundTasks,
    code: str | None = Query(None),
    state: str | None = Query(None),
    ctx: SyncContext = Depends(get_sync_context),
) -> RedirectResponse:
    """
    Intercambia el código de autorización por un token y lo guarda (cifrado).
    La carga inicial corre en background: la respuesta no la espera.
    """
    if not code:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No se ha recibido un código de autorización",
        )

    # NUNCA loguear el código: es canjeable por un token
    logger.info("oauth.callback", state=state or "")

    try:
        token_response = await ctx.client.exchange_auth_code(
            ctx.config.client_id,
            ctx.config.client_secret,
            ctx.config.redirect_uri,
            code,
        )
    except MonzoAPIError as exc:
        logger.error("oauth.exchange_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="No se pudo completar la autorización con Monzo",
        ) from exc

    token = Token.from_response(token_response)

    try:
        await ctx.store.upsert_token(token)
    except StoreError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Error al guardar la autorización",
        ) from exc

    job = ctx.jobs.register("initial_load", token.user_id)
    background_tasks.add_task(ctx.jobs.run, job, lambda: _initial_load(ctx, token))
    logger.info("oauth.authorised", user_id=token.user_id, job_id=job.job_id)

    return RedirectResponse(f"{ctx.config.app_base_url}/", status_code=status.HTTP_307_TEMPORARY_REDIRECT)
