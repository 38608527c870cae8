from __future__ import annotations

import asyncio
import uuid
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from mfdl.adapters.downloaders import runner, ytdlp
from mfdl.adapters.downloaders.runner import OutputLine, ProcessHandle, TerminalResult
from mfdl.config.settings import settings
from mfdl.core.errors import (
    EmptyOutput,
    LaunchFailure,
    MfdlError,
    NoOutputProduced,
    NotFound,
    NotReady,
    ProcessFailure,
)
from mfdl.core.logging import logger
from mfdl.core.progress import parse_progress_line
from mfdl.core.registry import JobRegistry
from mfdl.core.state import ALLOWED_TRANSITIONS, JobState
from mfdl.core.store import TransientStore
from mfdl.schemas.models import Artifact, Job
from mfdl.utils.media import (
    FormatChoice,
    content_type_for,
    display_filename,
    parse_format_id,
    planned_extension,
)

Resolver = Callable[[str, str | None], Awaitable[dict[str, Any]]]
Launcher = Callable[[Sequence[str]], Awaitable[ProcessHandle]]

PERCENT_DOWNLOAD_START = 10
PERCENT_VERIFYING = 95
PERCENT_COMPLETE = 100
STDERR_TAIL = 20


@dataclass
class DownloadPlan:
    prefix: str
    title: str | None
    choice: FormatChoice
    planned_ext: str
    argv: list[str]


@dataclass
class _RunContext:
    job_id: str
    plan: DownloadPlan
    stderr_tail: deque = field(default_factory=lambda: deque(maxlen=STDERR_TAIL))


class IllegalTransition(RuntimeError):
    pass


class JobManager:
    """
    Dueño de cada job de principio a fin:

        queued → resolving → downloading → verifying → complete
                      └──────────┴─────────────┴──────→ failed

    ``submit`` registra el job y devuelve el id en el acto; el resto corre en
    una tarea asyncio. Es el único que escribe en el registro para sus jobs.
    """

    def __init__(
        self,
        registry: JobRegistry | None = None,
        store: TransientStore | None = None,
        *,
        resolver: Resolver | None = None,
        launcher: Launcher | None = None,
        settle_delay: float | None = None,
        max_run_secs: float | None = None,
        retention_secs: float | None = None,
        title_max_len: int | None = None,
    ):
        self.registry = registry if registry is not None else JobRegistry()
        self.store = store if store is not None else TransientStore(settings.TEMP_DIR)
        self._resolver = resolver or ytdlp.resolve_metadata
        self._launcher = launcher or runner.launch
        self.settle_delay = settings.SETTLE_DELAY_SECS if settle_delay is None else settle_delay
        self.max_run_secs = settings.JOB_MAX_RUN_SECS if max_run_secs is None else max_run_secs
        self.retention_secs = settings.RETENTION_SECS if retention_secs is None else retention_secs
        self.title_max_len = (
            settings.TITLE_MAX_LEN if title_max_len is None else title_max_len
        )

        self._tasks: set[asyncio.Task] = set()
        # (estado, tipo de evento) → handler; lo que no está aquí se ignora
        self._handlers: dict[tuple[JobState, type], Callable[[_RunContext, Any], None]] = {
            (JobState.DOWNLOADING, OutputLine): self._on_output_line,
            (JobState.DOWNLOADING, TerminalResult): self._on_terminal_result,
        }

    # ---------- API pública ----------

    def submit(self, url: str, format_id: str | None = None, platform: str | None = None) -> str:
        job_id = uuid.uuid4().hex
        self.registry.create(job_id, url=url, format_id=format_id, platform=platform)
        logger.info(
            "[JOB][submit] id=%s url=%s format=%s platform=%s", job_id, url, format_id, platform
        )
        task = asyncio.create_task(self._run(job_id), name=f"job-{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job_id

    async def resolve_metadata(self, url: str, platform: str | None = None) -> dict[str, Any]:
        return await self._resolver(url, platform)

    def open_artifact(self, job_id: str) -> Artifact:
        job = self.registry.get(job_id)
        if job is None:
            raise NotFound(f"Job not found: {job_id}")
        if job.state is not JobState.COMPLETE or job.artifact is None:
            raise NotReady(f"File not ready (state: {job.state.value})", job.state.value)
        if not job.artifact.path.is_file():
            raise NotFound("File not found")
        return job.artifact

    def finalize_delivery(self, job_id: str) -> None:
        """Tras enviar el fichero completo: fuera del disco y del registro."""
        removed = self.store.remove(self._prefix(job_id))
        self.registry.delete(job_id)
        logger.info("[JOB][delivered] id=%s files_removed=%d", job_id, removed)

    def sweep(self) -> tuple[int, int]:
        files = self.store.sweep(self.retention_secs)
        jobs = self.registry.evict_finished(self.retention_secs)
        if jobs:
            logger.info("[JOB][sweep] evicted %d finished jobs", jobs)
        return files, jobs

    @property
    def active(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for t in list(self._tasks):
            t.cancel()
        await self.wait_idle()

    # ---------- máquina de estados ----------

    @staticmethod
    def _prefix(job_id: str) -> str:
        return job_id

    def _state_of(self, job_id: str) -> JobState:
        job = self.registry.get(job_id)
        if job is None:
            raise IllegalTransition(f"job vanished from registry: {job_id}")
        return job.state

    def _transition(self, job_id: str, new_state: JobState, **fields) -> Job:
        current = self._state_of(job_id)
        if new_state not in ALLOWED_TRANSITIONS[current]:
            raise IllegalTransition(f"{current.value} -> {new_state.value} (job {job_id})")
        if new_state.terminal:
            fields["finished_at"] = datetime.now(timezone.utc)
        logger.info("[JOB][state] id=%s %s -> %s", job_id, current.value, new_state.value)
        return self.registry.update(job_id, state=new_state, **fields)

    def _fail(self, job_id: str, err: MfdlError) -> None:
        job = self.registry.get(job_id)
        if job is None or job.state.terminal:
            logger.warning(
                "[JOB][fail] id=%s already final, dropping %s: %s", job_id, err.kind, err
            )
            return
        logger.error("[JOB][fail] id=%s kind=%s cause=%s", job_id, err.kind, err.message)
        self._transition(
            job_id, JobState.FAILED, error=err.message, error_kind=err.kind, speed=None, eta=None
        )

    async def _run(self, job_id: str) -> None:
        try:
            await self._drive(job_id)
        except asyncio.CancelledError:
            self._fail(job_id, MfdlError("cancelled: server shutting down"))
            raise
        except MfdlError as e:
            self._fail(job_id, e)
        except Exception as e:
            logger.exception("[JOB][crash] id=%s", job_id)
            self._fail(job_id, MfdlError(f"internal error: {e!r}"))

    async def _drive(self, job_id: str) -> None:
        job = self._transition(job_id, JobState.RESOLVING)
        info = await self._resolver(job.url, job.platform)

        plan = self._plan(job, info)
        self._transition(
            job_id, JobState.DOWNLOADING, percent=PERCENT_DOWNLOAD_START, title=plan.title
        )
        target = display_filename(plan.title, plan.planned_ext, self.title_max_len)
        logger.info("[JOB][exec] id=%s target=%s", job_id, target)
        handle = await self._launcher(plan.argv)

        ctx = _RunContext(job_id, plan)
        await self._consume(ctx, handle)
        if self._state_of(job_id) is not JobState.VERIFYING:
            return

        await asyncio.sleep(self.settle_delay)
        artifact = self._verify(ctx)
        self._transition(job_id, JobState.COMPLETE, percent=PERCENT_COMPLETE, artifact=artifact)
        logger.info(
            "[JOB][done] id=%s file=%s size=%.2fMB",
            job_id,
            artifact.filename,
            artifact.size / 1024 / 1024,
        )

    def _plan(self, job: Job, info: dict[str, Any]) -> DownloadPlan:
        choice = parse_format_id(job.format_id)
        info_ext = info.get("ext")
        prefix = self._prefix(job.id)
        argv = ytdlp.download_command(
            job.url,
            self.store.output_template(prefix),
            choice,
            info_ext=info_ext,
            platform=job.platform,
        )
        return DownloadPlan(
            prefix=prefix,
            title=info.get("title"),
            choice=choice,
            planned_ext=planned_extension(info_ext, choice),
            argv=argv,
        )

    async def _consume(self, ctx: _RunContext, handle: ProcessHandle) -> None:
        async def _pump() -> None:
            async for event in handle.events():
                handler = self._handlers.get((self._state_of(ctx.job_id), type(event)))
                if handler is None:
                    continue
                handler(ctx, event)
                if isinstance(event, TerminalResult):
                    return
            raise ProcessFailure("process stream ended without an exit status")

        try:
            if self.max_run_secs and self.max_run_secs > 0:
                await asyncio.wait_for(_pump(), timeout=self.max_run_secs)
            else:
                await _pump()
        except TimeoutError:
            logger.error(
                "[JOB][timeout] id=%s killing process after %ss", ctx.job_id, self.max_run_secs
            )
            await handle.terminate()
            raise ProcessFailure(f"timed out after {self.max_run_secs}s") from None
        except asyncio.CancelledError:
            handle.kill()
            raise

    # ---------- handlers (estado DOWNLOADING) ----------

    def _on_output_line(self, ctx: _RunContext, event: OutputLine) -> None:
        if event.stream == "stderr":
            if event.text.strip():
                ctx.stderr_tail.append(event.text)
            return
        ev = parse_progress_line(event.text)
        if ev is None:
            return
        job = self.registry.get(ctx.job_id)
        if job is None or ev.percent <= job.percent:
            return
        fields: dict[str, Any] = {"percent": ev.percent}
        if ev.speed:
            fields["speed"] = ev.speed
        if ev.eta:
            fields["eta"] = ev.eta
        self.registry.update(ctx.job_id, **fields)
        logger.debug("[JOB][progress] id=%s %d%%", ctx.job_id, ev.percent)

    def _on_terminal_result(self, ctx: _RunContext, result: TerminalResult) -> None:
        if result.launch_error is not None:
            self._fail(ctx.job_id, LaunchFailure(result.launch_error))
            return
        if result.returncode != 0:
            errs = [ln for ln in ctx.stderr_tail if ln.startswith("ERROR")]
            detail = errs[-1] if errs else (ctx.stderr_tail[-1] if ctx.stderr_tail else "")
            msg = f"yt-dlp exited with code {result.returncode}"
            if detail:
                msg = f"{msg}: {detail}"
            self._fail(ctx.job_id, ProcessFailure(msg, result.returncode))
            return
        self._transition(
            ctx.job_id, JobState.VERIFYING, percent=PERCENT_VERIFYING, speed=None, eta=None
        )

    # ---------- verificación ----------

    def _verify(self, ctx: _RunContext) -> Artifact:
        outputs = self.store.find_outputs(ctx.plan.prefix)
        if not outputs:
            raise NoOutputProduced("Download failed - no output produced")
        path = outputs[0]
        try:
            size = path.stat().st_size
        except OSError as e:
            raise NoOutputProduced(f"Download failed - output vanished: {e}") from e
        if size == 0:
            raise EmptyOutput("Download failed - output empty")
        # la extensión real manda (yt-dlp puede fusionar/convertir)
        ext = path.suffix.lstrip(".").lower() or ctx.plan.planned_ext
        return Artifact(
            path=path,
            filename=display_filename(ctx.plan.title, ext, self.title_max_len),
            content_type=content_type_for(ext),
            size=size,
        )
