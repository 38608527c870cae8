from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

from mfdl.schemas.models import Job


class JobRegistry:
    """
    id → Job en memoria. Un único escritor por job (su JobManager) y
    muchos lectores (SSE, descarga del fichero).

    ``get`` devuelve copias: nadie fuera del registro toca el objeto vivo.
    El lock es de ``threading`` porque el envío del fichero corre en el
    threadpool de Starlette.
    """

    def __init__(self):
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()

    def create(self, job_id: str, **fields) -> Job:
        with self._lock:
            if job_id in self._jobs:
                raise KeyError(f"job id already registered: {job_id}")
            job = Job(id=job_id, **fields)
            self._jobs[job_id] = job
            return job.model_copy()

    def update(self, job_id: str, **partial) -> Job | None:
        """Mezcla campos; la legalidad de la transición es cosa del JobManager."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            partial.setdefault("updated_at", datetime.now(timezone.utc))
            job = job.model_copy(update=partial)
            self._jobs[job_id] = job
            return job.model_copy()

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy() if job is not None else None

    def delete(self, job_id: str) -> bool:
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def list(self) -> list[Job]:
        with self._lock:
            return [j.model_copy() for j in self._jobs.values()]

    def evict_finished(self, older_than_secs: float, now: datetime | None = None) -> int:
        """Quita jobs terminales cuyo ``finished_at`` supera la retención."""
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(seconds=older_than_secs)
        with self._lock:
            stale = [
                jid
                for jid, job in self._jobs.items()
                if job.state.terminal and job.finished_at is not None and job.finished_at < cutoff
            ]
            for jid in stale:
                del self._jobs[jid]
            return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._jobs
