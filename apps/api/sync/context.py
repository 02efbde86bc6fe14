"""
Contexto compartido del motor de sincronización.

Agrupa las dependencias (Store, cliente de Monzo, registro de jobs) y los valores
de configuración que necesitan el SyncService y los bucles del scheduler.
Se construye una vez en el arranque y se pasa explícitamente; nada en sync/
lee core.config directamente.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sync.jobs import JobRegistry
from sync.monzo_client import DEFAULT_MAX_PAGES, MonzoClient
from sync.store import Store

if TYPE_CHECKING:
    from core.config import Settings


@dataclass(frozen=True)
class SyncConfig:
    client_id: str
    client_secret: str
    redirect_uri: str
    webhook_url: str
    auth_url: str = "https://auth.monzo.com/"
    app_base_url: str = ""
    token_refresh_interval: float = 300.0
    token_refresh_threshold: float = 3600.0
    account_poll_interval: float = 3600.0
    concurrency: int = 1
    max_pages: int = DEFAULT_MAX_PAGES

    def __repr__(self) -> str:
        return f"SyncConfig(client_id={self.client_id!r}, webhook_url={self.webhook_url!r})"

    @classmethod
    def from_settings(cls, settings: "Settings") -> "SyncConfig":
        return cls(
            client_id=settings.MONZO_CLIENT_ID,
            client_secret=settings.MONZO_CLIENT_SECRET,
            redirect_uri=settings.oauth_redirect_url,
            webhook_url=settings.WEBHOOK_URL,
            auth_url=settings.MONZO_AUTH_URL,
            app_base_url=settings.BASE_URL,
            token_refresh_interval=settings.TOKEN_REFRESH_INTERVAL_SECONDS,
            token_refresh_threshold=settings.TOKEN_REFRESH_THRESHOLD_SECONDS,
            account_poll_interval=settings.ACCOUNT_POLL_INTERVAL_SECONDS,
            concurrency=settings.SYNC_CONCURRENCY,
            max_pages=settings.MAX_TRANSACTION_PAGES,
        )


@dataclass
class SyncContext:
    store: Store
    client: MonzoClient
    config: SyncConfig
    jobs: JobRegistry = field(default_factory=JobRegistry)
