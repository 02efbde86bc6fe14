"""
Motor SQLAlchemy async y fábrica de sesiones.

Cada operación del Store abre su propia sesión y el pool se comparte entre la API,
los dos bucles del scheduler y los jobs en background. Con SYNC_CONCURRENCY > 1
un solo usuario puede tener varios upserts en vuelo, así que el pool crece con ella.
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from core.config import Settings, settings

_BASE_POOL_SIZE = 5


def create_engine(config: Settings) -> AsyncEngine:
    return create_async_engine(
        config.DATABASE_URL,
        echo=config.APP_ENV == "development",
        pool_pre_ping=True,   # detecta conexiones muertas entre ticks largos
        pool_size=max(_BASE_POOL_SIZE, config.SYNC_CONCURRENCY + 2),
        max_overflow=10,
    )


engine = create_engine(settings)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)
