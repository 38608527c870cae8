from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field

from mfdl.core.logging import logger

# --dump-json imprime todo el JSON en una sola línea; el límite por defecto
# de StreamReader (64 KiB) se queda corto.
STREAM_LIMIT = 16 * 1024 * 1024

_EOF = object()


@dataclass(frozen=True)
class OutputLine:
    stream: str  # "stdout" | "stderr"
    text: str


@dataclass(frozen=True)
class TerminalResult:
    returncode: int | None = None
    launch_error: str | None = None

    @property
    def ok(self) -> bool:
        return self.launch_error is None and self.returncode == 0


ProcessEvent = OutputLine | TerminalResult


class ProcessHandle:
    """
    Proceso lanzado (o fallido al lanzar). ``events()`` entrega las líneas de
    stdout/stderr en orden de llegada y termina con un único TerminalResult;
    ``result`` es un Future que se resuelve con ese mismo valor.
    """

    def __init__(
        self,
        argv: Sequence[str],
        proc: asyncio.subprocess.Process | None = None,
        launch_error: str | None = None,
    ):
        self.argv = list(argv)
        self.proc = proc
        self.launch_error = launch_error
        self.result: asyncio.Future[TerminalResult] = asyncio.get_running_loop().create_future()
        self._consumed = False

    @property
    def pid(self) -> int | None:
        return getattr(self.proc, "pid", None)

    def _settle(self, res: TerminalResult) -> TerminalResult:
        if not self.result.done():
            self.result.set_result(res)
        return res

    async def _pump(self, name: str, reader: asyncio.StreamReader, queue: asyncio.Queue) -> None:
        try:
            while True:
                try:
                    chunk = await reader.readline()
                except ValueError as e:
                    # línea por encima de STREAM_LIMIT: se descarta y seguimos
                    logger.warning("[PROC][%s] oversized line dropped: %r", name, e)
                    continue
                if not chunk:
                    break
                ln = chunk.decode("utf-8", "ignore").rstrip("\r\n")
                if name == "stderr" and ln:
                    logger.warning("[PROC][stderr] %s", ln)
                queue.put_nowait(OutputLine(name, ln))
        finally:
            queue.put_nowait(_EOF)

    async def events(self) -> AsyncIterator[ProcessEvent]:
        if self._consumed:
            raise RuntimeError("process events can only be consumed once")
        self._consumed = True

        if self.proc is None:
            yield self._settle(TerminalResult(launch_error=self.launch_error or "launch failed"))
            return

        queue: asyncio.Queue = asyncio.Queue()
        pumps = [
            asyncio.create_task(self._pump(name, reader, queue))
            for name, reader in (
                ("stdout", getattr(self.proc, "stdout", None)),
                ("stderr", getattr(self.proc, "stderr", None)),
            )
            if reader is not None
        ]
        try:
            open_streams = len(pumps)
            while open_streams:
                item = await queue.get()
                if item is _EOF:
                    open_streams -= 1
                    continue
                yield item
            rc = await self.proc.wait()
            yield self._settle(TerminalResult(returncode=rc))
        finally:
            for t in pumps:
                if not t.done():
                    t.cancel()

    async def wait(self) -> TerminalResult:
        """Consume lo que quede y devuelve el resultado final."""
        if not self._consumed:
            async for _ in self.events():
                pass
        return await self.result

    def kill(self) -> None:
        if self.proc is None:
            return
        with contextlib.suppress(ProcessLookupError):
            self.proc.kill()

    async def terminate(self, grace: float = 5.0) -> None:
        """kill + reap, para no dejar zombis."""
        if self.proc is None:
            return
        self.kill()
        with contextlib.suppress(TimeoutError, ProcessLookupError):
            await asyncio.wait_for(self.proc.wait(), timeout=grace)


async def launch(argv: Sequence[str]) -> ProcessHandle:
    """
    Lanza ``argv`` con stdout/stderr en pipe. Un fallo de arranque no lanza
    excepción: devuelve un handle cuyo único evento es el TerminalResult con
    ``launch_error``, distinto de un código de salida != 0.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STREAM_LIMIT,
        )
    except OSError as e:
        msg = f"cannot launch {argv[0]!r}: {e.strerror or e}"
        logger.error("[PROC][launch] %s", msg)
        return ProcessHandle(argv, launch_error=msg)
    logger.info("[PROC][launch] pid=%s bin=%s", getattr(proc, "pid", None), argv[0])
    return ProcessHandle(argv, proc)


@dataclass
class CompletedRun:
    result: TerminalResult
    stdout: list[str] = field(default_factory=list)
    stderr: list[str] = field(default_factory=list)


async def run_to_completion(argv: Sequence[str]) -> CompletedRun:
    handle = await launch(argv)
    run = CompletedRun(result=TerminalResult())
    async for ev in handle.events():
        if isinstance(ev, OutputLine):
            (run.stdout if ev.stream == "stdout" else run.stderr).append(ev.text)
        else:
            run.result = ev
    return run
