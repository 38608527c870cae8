from __future__ import annotations

import json
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from mfdl.config.settings import settings
from mfdl.core.broadcast import ProgressBroadcaster
from mfdl.core.errors import LaunchFailure, NotFound, NotReady, ResolutionFailure
from mfdl.core.jobs import JobManager
from mfdl.core.logging import logger
from mfdl.schemas.models import DownloadRequest, InfoRequest

CHUNK_SIZE = 1024 * 1024


def _iter_file(path, job_id: str, manager: JobManager):
    """Sólo si se llegó al último trozo se limpia; si no, queda para el barrido."""
    completed = False
    try:
        with open(path, "rb") as f:
            while True:
                chunk = f.read(CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        completed = True
    finally:
        if completed:
            manager.finalize_delivery(job_id)
        else:
            logger.warning("[HTTP][file] transfer aborted id=%s → left for sweep", job_id)


def create_app(
    manager: JobManager | None = None,
    broadcaster: ProgressBroadcaster | None = None,
    *,
    sweep_every_secs: int | None = None,
) -> FastAPI:
    manager = manager if manager is not None else JobManager()
    if broadcaster is None:
        broadcaster = ProgressBroadcaster(manager.registry)
    sweep_every = sweep_every_secs or settings.SWEEP_EVERY_SECS

    app = FastAPI(title="mfdl", version="0.1.0")
    app.state.manager = manager
    app.state.broadcaster = broadcaster
    app.state.scheduler = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def _startup():
        # ficheros viejos de una ejecución anterior
        manager.sweep()
        scheduler = AsyncIOScheduler()
        scheduler.add_job(manager.sweep, IntervalTrigger(seconds=sweep_every), id="sweep")
        scheduler.start()
        app.state.scheduler = scheduler
        logger.info("[HTTP] ready temp=%s sweep_every=%ss", manager.store.root, sweep_every)

    @app.on_event("shutdown")
    async def _shutdown():
        if app.state.scheduler is not None:
            app.state.scheduler.shutdown(wait=False)
        broadcaster.close_all()
        await manager.shutdown()

    # ---------- API JSON ----------

    @app.get("/api/test")
    async def health():
        return {"message": "Server is running!", "timestamp": datetime.now().isoformat()}

    @app.post("/api/info")
    async def info(body: InfoRequest):
        try:
            return await manager.resolve_metadata(body.url, body.platform)
        except ResolutionFailure as e:
            logger.error("[HTTP][info] %s", e.message)
            return JSONResponse(
                status_code=500, content={"error": e.message, "suggestion": e.suggestion}
            )
        except LaunchFailure as e:
            logger.error("[HTTP][info] %s", e.message)
            return JSONResponse(status_code=500, content={"error": e.message, "suggestion": ""})

    @app.post("/api/download")
    async def download(body: DownloadRequest):
        job_id = manager.submit(body.url, body.formatId, body.platform)
        return {"downloadId": job_id}

    # ---------- SSE ----------

    @app.get("/api/download-progress/{job_id}")
    async def download_progress(job_id: str):
        async def event_stream():
            sub = broadcaster.subscribe(job_id)
            try:
                async for snap in sub:
                    yield f"data: {json.dumps(snap)}\n\n"
            finally:
                # desconexión del cliente o fin normal: sólo muere este observador
                sub.close()

        headers = {
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        }
        return StreamingResponse(event_stream(), media_type="text/event-stream", headers=headers)

    # ---------- fichero ----------

    @app.get("/api/download-file/{job_id}")
    async def download_file(job_id: str):
        try:
            artifact = manager.open_artifact(job_id)
        except NotFound as e:
            return JSONResponse(status_code=404, content={"error": e.message})
        except NotReady as e:
            return JSONResponse(status_code=409, content={"error": e.message, "state": e.state})

        headers = {
            "Content-Disposition": f'attachment; filename="{artifact.filename}"',
            "Content-Length": str(artifact.size),
            "Cache-Control": "no-cache",
            "X-Content-Type-Options": "nosniff",
        }
        logger.info(
            "[HTTP][file] id=%s sending %s (%d bytes)", job_id, artifact.filename, artifact.size
        )
        return StreamingResponse(
            _iter_file(artifact.path, job_id, manager),
            media_type=artifact.content_type,
            headers=headers,
        )

    return app
