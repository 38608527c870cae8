from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, Field

from mfdl.core.state import JobState


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Artifact(BaseModel):
    path: Path
    filename: str
    content_type: str
    size: int


class ProgressEvent(BaseModel):
    percent: int
    speed: str | None = None
    eta: str | None = None


class Job(BaseModel):
    id: str
    state: JobState = JobState.QUEUED
    percent: int = 0
    speed: str | None = None
    eta: str | None = None
    artifact: Artifact | None = None
    error: str | None = None
    error_kind: str | None = None

    url: str | None = None
    platform: str | None = None
    format_id: str | None = None
    title: str | None = None

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    finished_at: datetime | None = None

    def snapshot(self) -> dict:
        """Vista pública que se envía por SSE (sin rutas del servidor)."""
        data: dict = {"percent": self.percent, "status": self.state.value}
        if self.speed is not None:
            data["speed"] = self.speed
        if self.eta is not None:
            data["eta"] = self.eta
        if self.error is not None:
            data["error"] = self.error
        if self.artifact is not None:
            data["filename"] = self.artifact.filename
            data["fileSize"] = self.artifact.size
        return data


# ---------- cuerpos HTTP ----------


class InfoRequest(BaseModel):
    url: str
    platform: str | None = None


class DownloadRequest(BaseModel):
    url: str
    formatId: str | None = None
    platform: str | None = None
