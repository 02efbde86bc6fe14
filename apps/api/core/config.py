"""
Configuración centralizada de la aplicación.
Lee todas las variables de entorno usando pydantic-settings.
NUNCA hardcodear valores sensibles aquí.
"""

from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Base de datos -------------------------------------------------------
    # URL asíncrona (asyncpg) para el servidor FastAPI y el scheduler
    DATABASE_URL: str

    # URL síncrona (psycopg2) usada exclusivamente por Alembic para migraciones
    DATABASE_SYNC_URL: str

    # --- Seguridad -----------------------------------------------------------
    # Clave AES-256-GCM (32 bytes en base64 url-safe) para cifrar los tokens OAuth en BD.
    # Genera con: base64.urlsafe_b64encode(secrets.token_bytes(32)).decode()
    ENCRYPTION_KEY: str

    # --- Monzo ---------------------------------------------------------------
    MONZO_CLIENT_ID: str
    MONZO_CLIENT_SECRET: str
    MONZO_API_BASE_URL: str = "https://api.monzo.com"
    MONZO_AUTH_URL: str = "https://auth.monzo.com/"

    # URL pública de este servicio, e.g. "https://example.com" (sin barra final)
    BASE_URL: str

    # Destino de los webhooks de Monzo. Vacío → BASE_URL + /api/monzo-callback
    WEBHOOK_URL: str = ""

    # --- Aplicación ----------------------------------------------------------
    APP_ENV: str = "production"
    LOG_LEVEL: str = "INFO"

    # Directorio de logs. Vacío → solo stdout
    LOG_DIR: str = ""

    # Orígenes CORS permitidos (cadena separada por comas)
    CORS_ORIGINS: str = "http://localhost:3000"

    # --- Sincronización ------------------------------------------------------
    # Cada cuánto se buscan tokens próximos a expirar
    TOKEN_REFRESH_INTERVAL_SECONDS: int = 300

    # Margen antes de la expiración a partir del cual se refresca un token
    TOKEN_REFRESH_THRESHOLD_SECONDS: int = 3600

    # Cada cuánto se sincronizan cuentas, transacciones y webhooks de todos los usuarios
    ACCOUNT_POLL_INTERVAL_SECONDS: int = 3600

    # Peticiones de paginación / upserts en vuelo por usuario (1 = secuencial)
    SYNC_CONCURRENCY: int = 1

    # Tope de páginas por cuenta para evitar bucles infinitos con cursores inválidos
    MAX_TRANSACTION_PAGES: int = 1000

    HTTP_TIMEOUT_SECONDS: float = 30.0

    # Arrancar los bucles del scheduler dentro del proceso de la API
    SCHEDULER_ENABLED: bool = True

    # --- Propiedades calculadas ----------------------------------------------
    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def oauth_redirect_url(self) -> str:
        return f"{self.BASE_URL}/oauth/callback"

    @field_validator("BASE_URL")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator(
        "TOKEN_REFRESH_INTERVAL_SECONDS",
        "ACCOUNT_POLL_INTERVAL_SECONDS",
        "SYNC_CONCURRENCY",
        "MAX_TRANSACTION_PAGES",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("debe ser >= 1")
        return v

    @field_validator("TOKEN_REFRESH_THRESHOLD_SECONDS")
    @classmethod
    def validate_threshold(cls, v: int) -> int:
        if v < 0:
            raise ValueError("TOKEN_REFRESH_THRESHOLD_SECONDS no puede ser negativo")
        return v

    @field_validator("HTTP_TIMEOUT_SECONDS")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("HTTP_TIMEOUT_SECONDS debe ser > 0")
        return v

    @field_validator("APP_ENV")
    @classmethod
    def validate_app_env(cls, v: str) -> str:
        allowed = {"development", "production", "test"}
        if v not in allowed:
            raise ValueError(f"APP_ENV debe ser uno de: {allowed}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"LOG_LEVEL debe ser uno de: {allowed}")
        return v.upper()

    @model_validator(mode="after")
    def default_webhook_url(self) -> "Settings":
        if not self.WEBHOOK_URL:
            self.WEBHOOK_URL = f"{self.BASE_URL}/api/monzo-callback"
        return self


@lru_cache
def get_settings() -> Settings:
    """Instancia singleton de Settings, cacheada para evitar re-lecturas del .env."""
    return Settings()


# Exportación conveniente para importar directamente en otros módulos
settings: Settings = get_settings()
