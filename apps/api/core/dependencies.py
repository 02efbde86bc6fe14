"""
Dependencias inyectables de FastAPI y construcción del contexto de sincronización.
Uso: añadir como parámetro en la firma del endpoint con Depends().
"""

from fastapi import Request

from core.config import Settings
from core.database import AsyncSessionLocal
from core.security import TokenCipher
from sync.context import SyncConfig, SyncContext
from sync.monzo_client import MonzoClient
from sync.store import SqlAlchemyStore


def build_sync_context(settings: Settings) -> SyncContext:
    """
    Crea Store + cliente de Monzo + configuración a partir de Settings.
    Quien llama es responsable de cerrar ctx.client al apagar.
    """
    store = SqlAlchemyStore(AsyncSessionLocal, TokenCipher(settings.ENCRYPTION_KEY))
    client = MonzoClient(
        base_url=settings.MONZO_API_BASE_URL,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )
    return SyncContext(store=store, client=client, config=SyncConfig.from_settings(settings))


# ---------------------------------------------------------------------------
# Contexto compartido (creado en el lifespan de main.py)
# ---------------------------------------------------------------------------


def get_sync_context(request: Request) -> SyncContext:
    """Devuelve el SyncContext guardado en app.state durante el arranque."""
    return request.app.state.sync_context
