"""
Monzo Expenses Sync — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.config import settings
from core.database import engine
from core.dependencies import build_sync_context
from core.logging_config import configure_logging
from core.responses import err
from routers import monzo_webhook, oauth, sync, transactions
from sync.scheduler import Scheduler

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.LOG_LEVEL, settings.LOG_DIR, json_console=settings.APP_ENV != "development")
    logger.info("api.startup", env=settings.APP_ENV, log_level=settings.LOG_LEVEL)

    ctx = build_sync_context(settings)
    app.state.sync_context = ctx

    scheduler = Scheduler(ctx)
    if settings.SCHEDULER_ENABLED:
        scheduler.start()
        logger.info("api.scheduler_started")

    yield

    await scheduler.stop()
    await ctx.jobs.drain()
    await ctx.client.close()
    await engine.dispose()
    logger.info("api.shutdown")


app = FastAPI(
    title="Monzo Expenses Sync API",
    description="Sincroniza cuentas y transacciones de Monzo en PostgreSQL.",
    version="1.0.0",
    docs_url="/docs" if settings.APP_ENV != "production" else None,
    redoc_url="/redoc" if settings.APP_ENV != "production" else None,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middlewares
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
)

# ---------------------------------------------------------------------------
# Exception handlers globales: mismo formato { data, error, meta }
# ---------------------------------------------------------------------------


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    headers = getattr(exc, "headers", None)
    return JSONResponse(
        status_code=exc.status_code,
        content=err(exc.detail),
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=err(f"Error de validación: {exc.errors()}"),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception", path=request.url.path, error=str(exc), exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=err(f"Error interno del servidor: {type(exc).__name__}"),
    )


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------

app.include_router(oauth.router, tags=["oauth"])
app.include_router(monzo_webhook.router, tags=["webhooks"])
app.include_router(transactions.router, prefix="/api/v1/transactions", tags=["transactions"])
app.include_router(sync.router, prefix="/api/v1/sync", tags=["sync"])


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------


@app.get("/health", tags=["health"])
async def health_check() -> dict:
    return {"status": "ok", "env": settings.APP_ENV}
