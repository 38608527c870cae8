from __future__ import annotations

import json
import shutil
import sys
from pathlib import Path
from typing import Any

from mfdl.adapters.downloaders.runner import CompletedRun, run_to_completion
from mfdl.config.settings import settings
from mfdl.core.errors import LaunchFailure, ResolutionFailure
from mfdl.core.logging import logger
from mfdl.utils.media import AUDIO_EXTS, IMAGE_EXTS, FormatChoice, FormatPolicy

# Chrome con la BD de cookies bloqueada: yt-dlp dice "Could not copy ... cookie database"
AUTH_CONTENTION_MARKER = "Could not copy"
AUTH_REQUIRED_MSG = (
    "Authentication required: close the browser completely or export a cookies.txt file"
)

SUGGEST_CONTENTION = "Close ALL Chrome windows and try again, or export cookies.txt file"
SUGGEST_LOGIN = "Instagram/TikTok requires authentication. Export cookies.txt file."


# ================= Binario / cookies =================


def _resolve_yt_dlp() -> str:
    """
    Prioriza YTDLP_BIN, luego el yt-dlp del venv (junto a sys.executable),
    luego PATH (shutil.which), y por último 'yt-dlp'.
    """
    if settings.YTDLP_BIN:
        return settings.YTDLP_BIN
    exe = Path(sys.executable)
    for name in ("yt-dlp.exe", "yt-dlp"):
        cand = exe.with_name(name)
        if cand.exists():
            return str(cand)
    return shutil.which("yt-dlp") or "yt-dlp"


def cookies_args(platform: str | None) -> list[str]:
    """
    Sólo para las plataformas que lo necesitan (COOKIE_PLATFORMS) y sólo si
    el cookies.txt existe; si falta, se avisa y se intenta sin autenticación.
    """
    plat = (platform or "").strip().lower()
    if plat not in {p.lower() for p in settings.COOKIE_PLATFORMS}:
        return []
    ck = Path(settings.COOKIES_FILE)
    if ck.exists():
        logger.info("[YTDLP][cookies] using %s for %s", ck, plat)
        return ["--cookies", str(ck)]
    logger.warning("[YTDLP][cookies] no %s found - %s will likely fail", ck, plat)
    return []


# ================= Argumentos =================


def info_command(url: str, cookies: list[str]) -> list[str]:
    return [
        _resolve_yt_dlp(),
        url,
        "--dump-json",
        "--no-warnings",
        "--skip-download",
        *cookies,
        "--extractor-retries",
        "3",
    ]


def format_args(choice: FormatChoice, info_ext: str | None) -> list[str]:
    if choice.policy is FormatPolicy.AUDIO:
        return ["-f", "bestaudio/best", "-x", "--audio-format", "mp3", "--audio-quality", "0"]
    # Imágenes y audio nativo: que yt-dlp baje lo que haya
    ext = (info_ext or "").lower()
    if ext in IMAGE_EXTS or ext in AUDIO_EXTS:
        return []
    if choice.policy is FormatPolicy.HEIGHT:
        h = choice.max_height
        fmt = f"bestvideo[height<={h}]+bestaudio/best[height<={h}]/best"
    else:
        fmt = "bestvideo+bestaudio/best"
    return ["-f", fmt, "--merge-output-format", "mp4"]


def download_command(
    url: str,
    outtmpl: str,
    choice: FormatChoice,
    *,
    info_ext: str | None = None,
    platform: str | None = None,
) -> list[str]:
    return [
        _resolve_yt_dlp(),
        url,
        *cookies_args(platform),
        *format_args(choice, info_ext),
        "-o",
        outtmpl,
        "--no-warnings",
        "--no-playlist",
        "--newline",  # una línea por actualización de progreso
        "--no-mtime",  # mtime = hora de descarga (lo usa el barrido)
    ]


# ================= Metadatos =================


def suggestion_for(message: str) -> str:
    low = (message or "").lower()
    if AUTH_CONTENTION_MARKER.lower() in low:
        return SUGGEST_CONTENTION
    if "login required" in low or "rate-limit" in low:
        return SUGGEST_LOGIN
    return ""


def _error_message(run: CompletedRun) -> str:
    errs = [ln for ln in run.stderr if ln.startswith("ERROR")]
    if errs:
        return errs[-1]
    tail = [ln for ln in run.stderr if ln.strip()][-3:]
    if tail:
        return " | ".join(tail)
    return f"yt-dlp exited with code {run.result.returncode}"


async def _dump_json(argv: list[str]) -> dict[str, Any]:
    run = await run_to_completion(argv)
    if run.result.launch_error is not None:
        raise LaunchFailure(run.result.launch_error)
    if run.result.returncode != 0:
        msg = _error_message(run)
        contention = any(AUTH_CONTENTION_MARKER in ln for ln in run.stderr)
        raise ResolutionFailure(msg, auth_contention=contention, suggestion=suggestion_for(msg))

    for ln in run.stdout:
        s = ln.strip()
        if not s.startswith("{"):
            continue
        try:
            info = json.loads(s)
        except ValueError as e:
            raise ResolutionFailure(f"could not parse metadata: {e}") from e
        if isinstance(info, dict):
            return info
    raise ResolutionFailure("metadata query returned no data")


async def resolve_metadata(url: str, platform: str | None = None) -> dict[str, Any]:
    """
    ``--dump-json`` con las cookies de la plataforma. Único reintento: si la
    BD de cookies estaba bloqueada por el navegador, se repite una vez sin
    cookies. No es una política general de reintentos.
    """
    cookies = cookies_args(platform)
    logger.info("[YTDLP][info] url=%s platform=%s cookies=%s", url, platform, bool(cookies))
    try:
        info = await _dump_json(info_command(url, cookies))
    except ResolutionFailure as e:
        if not (e.auth_contention and cookies):
            raise
        logger.warning("[YTDLP][retry] cookie database locked → retrying without cookies")
        try:
            info = await _dump_json(info_command(url, []))
        except ResolutionFailure as e2:
            raise ResolutionFailure(
                AUTH_REQUIRED_MSG, auth_contention=True, suggestion=SUGGEST_CONTENTION
            ) from e2
    logger.info("[YTDLP][info] resolved title=%r ext=%s", info.get("title"), info.get("ext"))
    return info
