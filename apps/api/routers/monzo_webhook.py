"""
Router: POST /api/monzo-callback
Recibe los webhooks de Monzo (transaction.created / transaction.updated) y hace
el mismo upsert que el poll periódico. Un cuerpo mal formado → 400 sin tocar la BD.
"""

from typing import Literal

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, ValidationError

from core.dependencies import get_sync_context
from core.responses import ok
from sync.context import SyncContext
from sync.monzo_client import MonzoDecodeError, TransactionResponse
from sync.store import StoreError
from sync.sync_service import map_transaction

logger = structlog.get_logger(__name__)

router = APIRouter()


class TransactionEventData(TransactionResponse):
    # En los webhooks `merchant` llega expandido (objeto); el validador lo reduce a su id
    account_id: str


class TransactionEvent(BaseModel):
    type: Literal["transaction.created", "transaction.updated"]
    data: TransactionEventData


def _bad_request(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


@router.post("/api/monzo-callback", status_code=status.HTTP_201_CREATED)
async def monzo_callback(
    request: Request,
    ctx: SyncContext = Depends(get_sync_context),
) -> dict:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise _bad_request("El cuerpo debe ser JSON") from exc

    try:
        event = TransactionEvent.model_validate(payload)
        transaction = map_transaction(event.data, event.data.account_id)
    except (ValidationError, MonzoDecodeError) as exc:
        logger.info("monzo_callback.invalid_data", error_type=type(exc).__name__)
        raise _bad_request("No se pudo interpretar `data` como transacción") from exc

    log = logger.bind(event_type=event.type, transaction_id=transaction.id, account_id=transaction.account_id)

    try:
        await ctx.store.upsert_transaction(transaction)
    except StoreError as exc:
        log.error("monzo_callback.store_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Error al guardar la transacción",
        ) from exc

    log.info("monzo_callback.upserted")
    return ok(data={"transaction_id": transaction.id})
