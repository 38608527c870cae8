from datetime import datetime, timedelta, timezone

import pytest

from mfdl.core.registry import JobRegistry
from mfdl.core.state import JobState


def test_crud_roundtrip():
    reg = JobRegistry()
    job = reg.create("j1", url="http://x")
    assert job.state is JobState.QUEUED and job.percent == 0
    reg.update("j1", percent=10, state=JobState.RESOLVING)
    assert reg.get("j1").percent == 10
    assert reg.delete("j1") is True
    assert reg.get("j1") is None
    assert reg.update("j1", percent=50) is None
    assert reg.delete("j1") is False


def test_duplicate_ids_are_rejected():
    reg = JobRegistry()
    reg.create("j1")
    with pytest.raises(KeyError):
        reg.create("j1")


def test_get_returns_a_copy():
    reg = JobRegistry()
    reg.create("j1")
    snap = reg.get("j1")
    snap.percent = 77
    assert reg.get("j1").percent == 0


def test_evict_finished_keeps_active_jobs():
    reg = JobRegistry()
    old = datetime.now(timezone.utc) - timedelta(hours=2)
    reg.create("done")
    reg.update("done", state=JobState.FAILED, error="x", finished_at=old)
    reg.create("running")
    reg.update("running", state=JobState.DOWNLOADING)
    assert reg.evict_finished(3600) == 1
    assert "done" not in reg and "running" in reg
