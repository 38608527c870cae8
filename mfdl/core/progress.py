from __future__ import annotations

import re

from mfdl.schemas.models import ProgressEvent

# yt-dlp --newline:
#   [download]  42.3% of ~12.34MiB at  1.21MiB/s ETA 00:09
# Extracción best-effort: basta con "<número>%"; velocidad y ETA son opcionales.
_RE_PERCENT = re.compile(r"(\d{1,3}(?:\.\d+)?)\s*%")
_RE_SPEED = re.compile(r"\bat\s+(~?\s*[\d.]+\s*[KMGT]?i?B/s)", re.I)
_RE_ETA = re.compile(r"\bETA\s+([0-9:]{2,})")

# El 90-100 queda reservado para verificación/finalización.
PERCENT_CEILING = 90


def parse_progress_line(line: str) -> ProgressEvent | None:
    if not line:
        return None
    m = _RE_PERCENT.search(line)
    if not m:
        return None
    try:
        pct = float(m.group(1))
    except ValueError:
        return None
    percent = max(0, min(PERCENT_CEILING, round(pct)))

    speed = None
    ms = _RE_SPEED.search(line)
    if ms:
        speed = ms.group(1).replace(" ", "")
    eta = None
    me = _RE_ETA.search(line)
    if me:
        eta = me.group(1)
    return ProgressEvent(percent=percent, speed=speed, eta=eta)
