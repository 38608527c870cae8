from __future__ import annotations

import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from mfdl.config.settings import settings

# librerías que a nivel INFO anuncian cada ejecución del barrido
_QUIET = ("apscheduler", "apscheduler.scheduler", "apscheduler.executors.default")


class _JsonFormatter(logging.Formatter):
    """Una línea JSON por registro; incluye dónde se emitió."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "where": f"{record.module}:{record.lineno}",
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def setup_logging(
    level: str = "INFO", log_dir: Path | None = None, filename: str = "mfdl.log"
) -> logging.Logger:
    logger = logging.getLogger("mfdl")
    if logger.handlers:
        return logger
    lvl = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(lvl)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", "%H:%M:%S"))
    logger.addHandler(console)

    target = "-"
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        target = str(log_dir / filename)
        fh = RotatingFileHandler(target, maxBytes=2_000_000, backupCount=5, encoding="utf-8")
        fh.setFormatter(_JsonFormatter())
        logger.addHandler(fh)

    for name in _QUIET:
        logging.getLogger(name).setLevel(max(lvl, logging.WARNING))

    logger.propagate = False
    logger.debug("logging ready level=%s file=%s", logging.getLevelName(lvl), target)
    return logger


logger = setup_logging(settings.LOG_LEVEL, settings.LOG_DIR, settings.LOG_FILE)
