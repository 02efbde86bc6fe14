"""
Registro en memoria de jobs de sincronización lanzados en background
(carga inicial tras OAuth, sync manual).

Cada job tiene un job_id que se enlaza al contexto de structlog, de forma que
todos los logs del job se pueden correlacionar y su resultado se puede consultar
en GET /api/v1/sync/jobs/{job_id}.
"""

import asyncio
import uuid
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog

logger = structlog.get_logger(__name__)

MAX_TRACKED_JOBS: int = 200


@dataclass
class JobStatus:
    job_id: str
    kind: str
    user_id: str
    status: str = "pending"  # pending | running | succeeded | failed
    started_at: datetime | None = None
    finished_at: datetime | None = None
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "kind": self.kind,
            "user_id": self.user_id,
            "status": self.status,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "errors": list(self.errors),
        }


class JobRegistry:
    """Guarda los últimos MAX_TRACKED_JOBS jobs; los más antiguos se descartan."""

    def __init__(self, max_jobs: int = MAX_TRACKED_JOBS) -> None:
        self._jobs: OrderedDict[str, JobStatus] = OrderedDict()
        self._max_jobs = max_jobs
        self._active = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def active(self) -> int:
        return self._active

    def register(self, kind: str, user_id: str) -> JobStatus:
        job = JobStatus(job_id=uuid.uuid4().hex, kind=kind, user_id=user_id)
        self._jobs[job.job_id] = job
        while len(self._jobs) > self._max_jobs:
            self._jobs.popitem(last=False)
        return job

    def get(self, job_id: str) -> JobStatus | None:
        return self._jobs.get(job_id)

    async def run(self, job: JobStatus, work: Callable[[], Awaitable[list[str]]]) -> None:
        """
        Ejecuta `work` (devuelve la lista de errores no fatales) y registra el resultado.
        Nunca propaga: un job en background no tiene a quién devolver el error.
        """
        with structlog.contextvars.bound_contextvars(job_id=job.job_id, job_kind=job.kind, user_id=job.user_id):
            job.status = "running"
            self._active += 1
            self._idle.clear()
            job.started_at = datetime.now(timezone.utc)
            logger.info("job.start")
            try:
                errors = await work()
            except Exception as exc:
                job.errors.append(f"{type(exc).__name__}: {exc}")
                job.status = "failed"
                logger.error("job.failed", error=str(exc), exc_info=exc)
            else:
                job.errors.extend(errors)
                job.status = "failed" if errors else "succeeded"
                logger.info("job.complete", status=job.status, errors=len(errors))
            finally:
                job.finished_at = datetime.now(timezone.utc)
                self._active -= 1
                if self._active == 0:
                    self._idle.set()

    async def drain(self, timeout: float = 30.0) -> bool:
        """Espera a que terminen los jobs en curso. False si vence el timeout."""
        if self._active:
            logger.info("job.drain", active=self._active)
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("job.drain_timeout", active=self._active)
            return False
        return True
