"""
Router: /api/v1/transactions
GET /{user_id}  → transacciones de todas las cuentas del usuario, más recientes primero
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from core.dependencies import get_sync_context
from core.responses import paginated
from sync.context import SyncContext
from sync.domain import Transaction
from sync.store import StoreError

router = APIRouter()


@router.get("/{user_id}")
async def list_user_transactions(
    user_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(100, ge=1, le=500),
    ctx: SyncContext = Depends(get_sync_context),
) -> dict:
    """
    Historial paginado de transacciones del usuario.
    meta incluye: page, limit, total, pages.
    """
    offset = (page - 1) * limit
    try:
        account_ids = await ctx.store.account_ids_for_user(user_id)
        total = await ctx.store.count_transactions_for_accounts(account_ids)
        rows = await ctx.store.transactions_for_accounts(account_ids, offset=offset, limit=limit)
    except StoreError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Error al consultar las transacciones",
        ) from exc

    return paginated([_tx_to_dict(tx) for tx in rows], page=page, limit=limit, total=total)


def _tx_to_dict(tx: Transaction) -> dict:
    return {
        "id": tx.id,
        "account_id": tx.account_id,
        "amount": tx.amount,
        "currency": tx.currency,
        "description": tx.description,
        "notes": tx.notes,
        "merchant": tx.merchant,
        "category": tx.category,
        "created": tx.created.isoformat(),
        "settled": tx.settled.isoformat() if tx.settled else None,
    }
