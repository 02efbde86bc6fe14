"""
Entorno de Alembic para las tablas del sync de Monzo (tokens, accounts, transactions).
Conecta con DATABASE_SYNC_URL (psycopg2): las migraciones son síncronas aunque
la API y el scheduler usen asyncpg.

Uso (desde apps/api):
    alembic upgrade head
"""

import os
import sys
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from core.config import get_settings  # noqa: E402
from models import Base  # noqa: E402

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

config.set_main_option("sqlalchemy.url", get_settings().DATABASE_SYNC_URL)

target_metadata = Base.metadata

# Opciones comunes a ambos modos: detectar cambios de tipo (e.g. String(50) → Text)
_CONFIGURE_OPTS = {
    "target_metadata": target_metadata,
    "compare_type": True,
}


def run_migrations_offline() -> None:
    """Emite el SQL sin conexión (revisión manual antes de aplicarlo en producción)."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_CONFIGURE_OPTS,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, **_CONFIGURE_OPTS)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
