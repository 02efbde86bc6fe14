"""
Router: /api/v1/sync
POST /trigger/{user_id} → lanza un sync completo del usuario en background
GET  /jobs/{job_id}     → estado de un job (carga inicial OAuth o sync manual)
"""

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status

from core.dependencies import get_sync_context
from core.responses import ok
from sync.context import SyncContext
from sync.domain import Token
from sync.store import StoreError
from sync.sync_service import SyncService

router = APIRouter()


async def _run_sync(ctx: SyncContext, token: Token) -> list[str]:
    """Tarea de fondo: mismo sync que hace el scheduler en cada poll."""
    stats = await SyncService(ctx, token).sync_user()
    return stats.errors


@router.post("/trigger/{user_id}", status_code=status.HTTP_202_ACCEPTED)
async def trigger_sync(
    user_id: str,
    background_tasks: BackgroundTasks,
    ctx: SyncContext = Depends(get_sync_context),
) -> dict:
    """
    Lanza una sincronización inmediata para un usuario ya autorizado.
    Retorna job_id para consultar el estado con GET /jobs/{job_id}.
    """
    try:
        token = await ctx.store.get_token(user_id)
    except StoreError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Error al consultar el token",
        ) from exc

    if token is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Usuario sin autorizar. Completa primero el flujo en /authorise.",
        )

    job = ctx.jobs.register("sync_user", user_id)
    background_tasks.add_task(ctx.jobs.run, job, lambda: _run_sync(ctx, token))

    return ok(
        data={"job_id": job.job_id, "status": "triggered"},
        meta={"message": f"Sincronización iniciada. Consulta GET /api/v1/sync/jobs/{job.job_id}."},
    )


@router.get("/jobs/{job_id}")
async def get_job(
    job_id: str,
    ctx: SyncContext = Depends(get_sync_context),
) -> dict:
    job = ctx.jobs.get(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job no encontrado")
    return ok(data=job.to_dict())
