"""
Configuración de logging estructurado (structlog sobre logging de la stdlib).

- stdout: ConsoleRenderer en desarrollo, JSON en el resto de entornos
- LOG_DIR opcional: fichero plano rotado a diario + copia JSON en LOG_DIR/structured/
- Los logs de librerías (httpx, sqlalchemy, uvicorn) pasan por el mismo pipeline

NUNCA loguear access_token, refresh_token, client_secret ni códigos OAuth.
"""

import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

import structlog

LOG_FILE_NAME = "expenses.log"

# Librerías ruidosas: se limitan aunque LOG_LEVEL sea DEBUG
_QUIET_LOGGERS: dict[str, int] = {
    "httpx": logging.INFO,
    "httpcore": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "uvicorn.access": logging.WARNING,
}

_SHARED_PROCESSORS: list = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.StackInfoRenderer(),
]


def _formatter(renderer) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_SHARED_PROCESSORS,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )


def _daily_file_handler(path: Path, renderer) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = TimedRotatingFileHandler(path, when="midnight", utc=True, encoding="utf-8")
    handler.setFormatter(_formatter(renderer))
    return handler


def configure_logging(level: str = "INFO", log_dir: str = "", json_console: bool = True) -> None:
    """
    Configura structlog y el root logger. Idempotente: reemplaza los handlers previos.
    level: nivel del root logger ("DEBUG", "INFO", ...)
    log_dir: si no está vacío, añade ficheros rotados a diario
    json_console: False → salida coloreada legible para desarrollo
    """
    console_renderer = (
        structlog.processors.JSONRenderer()
        if json_console
        else structlog.dev.ConsoleRenderer(colors=True)
    )

    handlers: list[logging.Handler] = []

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(_formatter(console_renderer))
    handlers.append(stdout_handler)

    if log_dir:
        base = Path(log_dir)
        handlers.append(
            _daily_file_handler(base / LOG_FILE_NAME, structlog.dev.ConsoleRenderer(colors=False))
        )
        handlers.append(
            _daily_file_handler(base / "structured" / LOG_FILE_NAME, structlog.processors.JSONRenderer())
        )

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level.upper())

    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    structlog.configure(
        processors=[
            *_SHARED_PROCESSORS,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
