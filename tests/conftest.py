from __future__ import annotations

import asyncio
from collections import defaultdict
from pathlib import Path

import pytest

from mfdl.adapters.downloaders.runner import ProcessHandle
from mfdl.core.jobs import JobManager
from mfdl.core.registry import JobRegistry
from mfdl.core.store import TransientStore


class _FakeStream:
    def __init__(self, lines, delay: float = 0.0):
        self._lines = [(ln + "\n").encode("utf-8") for ln in lines]
        self._delay = delay

    async def readline(self):
        if self._delay:
            await asyncio.sleep(self._delay)
        if not self._lines:
            return b""
        return self._lines.pop(0)


class FakeProc:
    """Proceso falso: stdout/stderr predefinidos, rc fijo y efecto al salir."""

    def __init__(self, stdout=(), stderr=(), rc=0, on_exit=None, hang=False, line_delay=0.0):
        self.stdout = _FakeStream(stdout, line_delay)
        self.stderr = _FakeStream(stderr)
        self.pid = 4242
        self.killed = False
        self._rc = rc
        self._on_exit = on_exit
        self._hang = hang
        self._killed_evt = asyncio.Event()

    async def wait(self):
        if self._hang:
            await self._killed_evt.wait()
            return -9
        if self._on_exit:
            self._on_exit()
            self._on_exit = None
        return self._rc

    def kill(self):
        self.killed = True
        self._killed_evt.set()


class RecordingRegistry(JobRegistry):
    """Guarda (estado, %, hay artefacto, hay error) de cada escritura."""

    def __init__(self):
        super().__init__()
        self.history = defaultdict(list)

    @staticmethod
    def _row(job):
        return (job.state, job.percent, job.artifact is not None, job.error is not None)

    def create(self, job_id, **fields):
        job = super().create(job_id, **fields)
        self.history[job_id].append(self._row(job))
        return job

    def update(self, job_id, **partial):
        job = super().update(job_id, **partial)
        if job is not None:
            self.history[job_id].append(self._row(job))
        return job


@pytest.fixture
def store(tmp_path) -> TransientStore:
    return TransientStore(tmp_path / "temp")


@pytest.fixture
def registry() -> RecordingRegistry:
    return RecordingRegistry()


@pytest.fixture
def fake_launcher():
    """
    Fábrica de launchers falsos. Al "salir" el proceso escribe
    ``<prefijo>.<output_ext>`` usando la plantilla -o de argv.
    """

    def _make(
        *,
        stdout=(),
        stderr=(),
        rc=0,
        output_ext: str | None = "mp4",
        output_bytes: bytes = b"x" * 2048,
        launch_error: str | None = None,
        hang: bool = False,
        line_delay: float = 0.0,
        calls: list | None = None,
        procs: list | None = None,
    ):
        async def _launch(argv):
            if calls is not None:
                calls.append(list(argv))
            if launch_error is not None:
                return ProcessHandle(argv, launch_error=launch_error)
            outtmpl = argv[argv.index("-o") + 1]

            def _write():
                if output_ext is not None:
                    Path(outtmpl.replace("%(ext)s", output_ext)).write_bytes(output_bytes)

            proc = FakeProc(stdout, stderr, rc, on_exit=_write, hang=hang, line_delay=line_delay)
            if procs is not None:
                procs.append(proc)
            return ProcessHandle(argv, proc)

        return _launch

    return _make


def make_resolver(info=None, error: Exception | None = None, calls: list | None = None):
    info = info if info is not None else {"title": "My Clip!", "ext": "mp4"}

    async def _resolve(url, platform=None):
        if calls is not None:
            calls.append((url, platform))
        if error is not None:
            raise error
        return dict(info)

    return _resolve


@pytest.fixture
def resolver_factory():
    return make_resolver


@pytest.fixture
def manager_factory(registry, store, fake_launcher):
    def _make(*, launcher=None, resolver=None, settle_delay=0.01, max_run_secs=0, **kw):
        return JobManager(
            registry,
            store,
            resolver=resolver or make_resolver(),
            launcher=launcher or fake_launcher(),
            settle_delay=settle_delay,
            max_run_secs=max_run_secs,
            retention_secs=kw.pop("retention_secs", 3600),
            **kw,
        )

    return _make
