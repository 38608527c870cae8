from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable

from mfdl.config.settings import settings
from mfdl.core.logging import logger
from mfdl.core.registry import JobRegistry

WAITING_SNAPSHOT = {"percent": 0, "status": "waiting"}
UNKNOWN_SNAPSHOT = {"percent": 0, "status": "unknown"}

_END = object()


class Subscription:
    """
    Un observador de un job. Su propia tarea muestrea el registro cada
    ``interval`` segundos y deja los snapshots en una cola; la iteración
    acaba tras el primer snapshot terminal. ``close()`` cancela sólo esta
    tarea: el job sigue igual.
    """

    def __init__(
        self,
        registry: JobRegistry,
        job_id: str,
        interval: float,
        unknown_grace: float,
        on_close: Callable[[Subscription], None] | None = None,
    ):
        self.registry = registry
        self.job_id = job_id
        self.interval = interval
        self.unknown_grace = unknown_grace
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._done = False
        self._on_close = on_close

    def start(self) -> Subscription:
        self._task = asyncio.create_task(self._tick(), name=f"progress-{self.job_id}")
        return self

    async def _tick(self) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        seen = False
        waited = False
        try:
            while True:
                job = self.registry.get(self.job_id)
                if job is None:
                    if seen:
                        # entregado y borrado entre dos ticks
                        return
                    if waited and loop.time() - started >= self.unknown_grace:
                        self._queue.put_nowait(dict(UNKNOWN_SNAPSHOT))
                        return
                    self._queue.put_nowait(dict(WAITING_SNAPSHOT))
                    waited = True
                else:
                    seen = True
                    # un snapshot por tick aunque no cambie nada
                    self._queue.put_nowait(job.snapshot())
                    if job.state.terminal:
                        return
                await asyncio.sleep(self.interval)
        finally:
            self._queue.put_nowait(_END)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> dict:
        if self._done:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            self.close()
            raise StopAsyncIteration
        return item

    def close(self) -> None:
        if self._done:
            return
        self._done = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        if self._on_close is not None:
            self._on_close(self)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def aclose(self) -> None:
        self.close()
        if self._task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task


class ProgressBroadcaster:
    def __init__(
        self,
        registry: JobRegistry,
        *,
        interval: float | None = None,
        unknown_grace: float | None = None,
    ):
        self.registry = registry
        self.interval = settings.PROGRESS_INTERVAL_SECS if interval is None else interval
        self.unknown_grace = (
            settings.PROGRESS_UNKNOWN_GRACE_SECS if unknown_grace is None else unknown_grace
        )
        self._subs: set[Subscription] = set()

    def subscribe(self, job_id: str) -> Subscription:
        sub = Subscription(
            self.registry, job_id, self.interval, self.unknown_grace, on_close=self._subs.discard
        )
        self._subs.add(sub)
        logger.debug("[SSE][open] job=%s observers=%d", job_id, len(self._subs))
        return sub.start()

    @property
    def observers(self) -> int:
        return len(self._subs)

    def close_all(self) -> None:
        for sub in list(self._subs):
            sub.close()
