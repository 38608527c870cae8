from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

IMAGE_EXTS = {"jpg", "jpeg", "png", "webp", "gif"}
AUDIO_EXTS = {"mp3", "m4a"}
DEFAULT_CONTENT_TYPE = "video/mp4"

_CONTENT_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "gif": "image/gif",
    "mp3": "audio/mpeg",
    "m4a": "audio/mpeg",
    "mp4": "video/mp4",
    "webm": "video/webm",
}

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9]")
_HEIGHT_RE = re.compile(r"^(\d{3,4})p$", re.I)


class FormatPolicy(str, Enum):
    BEST   = "best"
    HEIGHT = "height"
    AUDIO  = "audio"


@dataclass(frozen=True)
class FormatChoice:
    policy: FormatPolicy
    max_height: int | None = None


def content_type_for(ext: str | None) -> str:
    return _CONTENT_TYPES.get((ext or "").lower().lstrip("."), DEFAULT_CONTENT_TYPE)


def safe_stem(title: str | None, max_len: int = 50) -> str:
    """'My Clip!' → 'My_Clip_' (todo lo que no sea [A-Za-z0-9] pasa a '_')."""
    if not title:
        return "download"
    return _UNSAFE_RE.sub("_", title)[:max_len]


def display_filename(title: str | None, ext: str, max_len: int = 50) -> str:
    return f"{safe_stem(title, max_len)}.{ext.lstrip('.')}"


def parse_format_id(format_id: str | None) -> FormatChoice:
    """
    'audio'          → sólo audio (mp3)
    '720p', '1080p'… → vídeo con altura máxima
    cualquier otro   → mejor vídeo+audio disponible
    """
    fid = (format_id or "").strip()
    if fid.lower() == "audio":
        return FormatChoice(FormatPolicy.AUDIO)
    m = _HEIGHT_RE.match(fid)
    if m:
        return FormatChoice(FormatPolicy.HEIGHT, int(m.group(1)))
    return FormatChoice(FormatPolicy.BEST)


def planned_extension(info_ext: str | None, choice: FormatChoice) -> str:
    """Extensión prevista antes de descargar; la real la decide yt-dlp."""
    if choice.policy is FormatPolicy.AUDIO:
        return "mp3"
    ext = (info_ext or "mp4").lower()
    if ext in IMAGE_EXTS:
        return ext
    if ext in AUDIO_EXTS:
        return "mp3"
    return "mp4"
