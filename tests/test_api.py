from __future__ import annotations

import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from mfdl.core.broadcast import ProgressBroadcaster
from mfdl.core.errors import ResolutionFailure
from mfdl.web.api import create_app


def _sse(body: str) -> list[dict]:
    return [json.loads(ln[len("data: "):]) for ln in body.splitlines() if ln.startswith("data: ")]


@pytest.fixture
def client_for(manager_factory):
    def _make(**kw):
        mgr = manager_factory(**kw)
        app = create_app(mgr, ProgressBroadcaster(mgr.registry, interval=0.02))
        return TestClient(app), mgr

    return _make


def test_health(client_for):
    client, _ = client_for()
    with client:
        r = client.get("/api/test")
    assert r.status_code == 200
    assert r.json()["message"] == "Server is running!"


def test_info_ok_and_error(client_for, resolver_factory):
    client, _ = client_for(resolver=resolver_factory({"title": "My Clip!", "ext": "mp4"}))
    with client:
        r = client.post("/api/info", json={"url": "https://youtu.be/x", "platform": "youtube"})
    assert r.status_code == 200
    assert r.json()["title"] == "My Clip!"

    err = ResolutionFailure("ERROR: login required", suggestion="export cookies")
    client, _ = client_for(resolver=resolver_factory(error=err))
    with client:
        r = client.post("/api/info", json={"url": "https://instagram.com/p/x"})
    assert r.status_code == 500
    assert r.json() == {"error": "ERROR: login required", "suggestion": "export cookies"}


def test_submit_progress_and_fetch_file(client_for, fake_launcher):
    client, mgr = client_for(
        launcher=fake_launcher(stdout=["[download]  50.0% of 1MiB at 1.00MiB/s ETA 00:01"])
    )
    with client:
        r = client.post(
            "/api/download", json={"url": "https://youtu.be/x", "formatId": "720p"}
        )
        assert r.status_code == 200
        job_id = r.json()["downloadId"]

        r = client.get(f"/api/download-progress/{job_id}")
        assert r.headers["content-type"].startswith("text/event-stream")
        snaps = _sse(r.text)
        assert snaps[-1]["status"] == "complete"
        assert snaps[-1]["percent"] == 100
        pcts = [s["percent"] for s in snaps]
        assert pcts == sorted(pcts)

        r = client.get(f"/api/download-file/{job_id}")
        assert r.status_code == 200
        assert r.headers["content-type"] == "video/mp4"
        assert r.headers["content-disposition"] == 'attachment; filename="My_Clip_.mp4"'
        assert int(r.headers["content-length"]) == len(r.content) == 2048

        # entregado: fuera del disco y del registro
        assert list(mgr.store.root.iterdir()) == []
        r = client.get(f"/api/download-file/{job_id}")
        assert r.status_code == 404


def test_file_not_ready_reports_state(client_for):
    async def slow_resolver(url, platform=None):
        await asyncio.sleep(30)
        return {}

    client, _ = client_for(resolver=slow_resolver)
    with client:
        r = client.post("/api/download", json={"url": "https://youtu.be/x"})
        job_id = r.json()["downloadId"]
        r = client.get(f"/api/download-file/{job_id}")
        assert r.status_code == 409
        body = r.json()
        assert body["state"] in ("queued", "resolving")
        assert body["state"] in body["error"]

        r = client.get("/api/download-file/does-not-exist")
        assert r.status_code == 404


def test_failed_job_is_visible_in_progress_stream(client_for, fake_launcher):
    client, _ = client_for(launcher=fake_launcher(rc=1, stderr=["ERROR: Unsupported URL"]))
    with client:
        job_id = client.post("/api/download", json={"url": "https://nope"}).json()["downloadId"]
        snaps = _sse(client.get(f"/api/download-progress/{job_id}").text)
    assert snaps[-1]["status"] == "failed"
    assert "Unsupported URL" in snaps[-1]["error"]
