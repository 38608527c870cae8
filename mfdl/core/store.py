from __future__ import annotations

import re
import time
from pathlib import Path

from mfdl.core.logging import logger

# Restos de yt-dlp mientras descarga/fusiona: nunca cuentan como resultado.
PARTIAL_SUFFIXES = {".part", ".ytdl", ".temp", ".tmp", ".path"}
_RE_PARTIAL_NAME = re.compile(r"(\.part-Frag\d+|\.f\d+\.[A-Za-z0-9]+$)", re.I)


class TransientStore:
    """
    Carpeta compartida por todos los jobs. Cada job escribe sólo ficheros
    ``<prefijo>.*``; el barrido por antigüedad se encarga de lo que nadie
    llegó a recoger.
    """

    def __init__(self, root: Path):
        self.root = Path(root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def output_template(self, prefix: str) -> str:
        return str(self.root / f"{prefix}.%(ext)s")

    def _entries(self, prefix: str) -> list[Path]:
        try:
            return sorted(p for p in self.root.glob(f"{prefix}.*") if p.is_file())
        except OSError as e:
            logger.error("[STORE][scan] prefix=%s err=%r", prefix, e)
            return []

    @staticmethod
    def is_partial(path: Path) -> bool:
        if path.suffix.lower() in PARTIAL_SUFFIXES:
            return True
        return bool(_RE_PARTIAL_NAME.search(path.name))

    def find_outputs(self, prefix: str) -> list[Path]:
        return [p for p in self._entries(prefix) if not self.is_partial(p)]

    def remove(self, prefix: str) -> int:
        n = 0
        for p in self._entries(prefix):
            try:
                p.unlink(missing_ok=True)
                n += 1
            except OSError as e:
                logger.warning("[STORE][rm] could not delete %s: %r", p.name, e)
        if n:
            logger.info("[STORE][rm] prefix=%s removed=%d", prefix, n)
        return n

    def sweep(self, max_age_secs: float, now: float | None = None) -> int:
        """Borra cualquier fichero con mtime más viejo que ``max_age_secs``."""
        cutoff = (time.time() if now is None else now) - max_age_secs
        n = 0
        try:
            entries = list(self.root.iterdir())
        except OSError as e:
            logger.error("[STORE][sweep] cannot list %s: %r", self.root, e)
            return 0
        for p in entries:
            try:
                if p.is_file() and p.stat().st_mtime < cutoff:
                    p.unlink(missing_ok=True)
                    n += 1
            except OSError as e:
                logger.warning("[STORE][sweep] skip %s: %r", p.name, e)
        logger.info("[STORE][sweep] dir=%s removed=%d", self.root, n)
        return n
