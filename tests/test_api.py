"""HTTP-level tests: routers, auth, error envelope, NDJSON events and range streaming."""

import json
import time
from contextlib import asynccontextmanager

import fakeredis
import pytest
from fastapi.testclient import TestClient

from conftest import ScriptedStrategy, make_runner
from core.broadcaster import ProgressBroadcaster
from core.sinks import FilesystemSink
from core.supervisor import JobSupervisor
from main import app
from repository.job_repository import InMemoryJobStore
from repository.owner_repository import InMemoryOwnerRepository
from repository.session_repository import SessionRepository
from service.container import Services
from service.identity_service import IdentityService
from service.job_service import JobService
from service.library_service import LibraryService

AUTH = {"Authorization": "Bearer tok-1"}
OTHER = {"Authorization": "Bearer tok-2"}
SOURCE = "https://youtu.be/abc12345678"


@pytest.fixture
def client(tmp_path, monkeypatch):
    @asynccontextmanager
    async def _lifespan(app_):
        store = InMemoryJobStore()
        sink = FilesystemSink(InMemoryOwnerRepository(), root=str(tmp_path / "storage"))
        supervisor = JobSupervisor(
            make_runner(store, sink, ScriptedStrategy("ytdlp", [b"0123", b"456789"]))
        )
        sessions = SessionRepository(fakeredis.FakeAsyncRedis(), ttl_seconds=600)
        await sessions.put("tok-1", "owner-1")
        await sessions.put("tok-2", "owner-2")
        app_.state.services = Services(
            jobs=JobService(store, supervisor, ProgressBroadcaster(store, interval=0.01)),
            library=LibraryService(sink, store),
            identity=IdentityService(sessions),
            supervisor=supervisor,
        )
        yield
        await supervisor.shutdown(timeout=2)

    monkeypatch.setattr(app.router, "lifespan_context", _lifespan)
    with TestClient(app) as c:
        yield c


def _wait_done(client: TestClient, job_id: str) -> dict:
    for _ in range(300):
        body = client.get(f"/api/v1/jobs/{job_id}", headers=AUTH).json()
        if body["stage"] in ("done", "error", "canceled"):
            return body
        time.sleep(0.01)
    raise AssertionError(f"job {job_id} did not finish: {body}")


def _submit(client: TestClient, **extra) -> dict:
    res = client.post("/api/v1/jobs", json={"sourceUrl": SOURCE, **extra}, headers=AUTH)
    assert res.status_code == 201, res.text
    return res.json()


class TestAuth:
    def test_missing_token(self, client) -> None:
        res = client.post("/api/v1/jobs", json={"sourceUrl": SOURCE})

        assert res.status_code == 401
        body = res.json()
        assert body["ok"] is False
        assert body["error"] == "auth_required"
        assert body["authUrl"]

    def test_unknown_token(self, client) -> None:
        res = client.get("/api/v1/library", headers={"Authorization": "Bearer nope"})

        assert res.status_code == 401

    def test_query_token(self, client) -> None:
        assert client.get("/api/v1/library?token=tok-1").status_code == 200


class TestJobsApi:
    def test_invalid_url(self, client) -> None:
        res = client.post("/api/v1/jobs", json={"sourceUrl": "not-a-real-source"}, headers=AUTH)

        assert res.status_code == 422
        assert res.json() == {
            "ok": False,
            "error": "invalid_source_url",
            "message": "Invalid YouTube URL",
        }

    def test_malformed_body(self, client) -> None:
        res = client.post("/api/v1/jobs", json={}, headers=AUTH)

        assert res.status_code == 422
        assert res.json()["error"] == "invalid_request"

    def test_submit_to_done(self, client) -> None:
        created = _submit(client, name="Chosen")

        assert created["provisionalName"] == "Chosen"
        final = _wait_done(client, created["jobId"])
        assert final["stage"] == "done"
        assert final["progress"] == 100
        assert final["outputRef"]
        assert "error" not in final

    def test_events_stream_ends_on_terminal(self, client) -> None:
        created = _submit(client)
        _wait_done(client, created["jobId"])

        res = client.get(f"/api/v1/jobs/{created['jobId']}/events", headers=AUTH)

        assert res.status_code == 200
        assert res.headers["content-type"].startswith("application/x-ndjson")
        lines = [json.loads(l) for l in res.text.splitlines() if l]
        assert lines[-1]["stage"] == "done"

    def test_other_owner_sees_404(self, client) -> None:
        created = _submit(client)

        for res in (
            client.get(f"/api/v1/jobs/{created['jobId']}", headers=OTHER),
            client.post(f"/api/v1/jobs/{created['jobId']}/cancel", headers=OTHER),
            client.get(f"/api/v1/jobs/{created['jobId']}/events", headers=OTHER),
        ):
            assert res.status_code == 404
            assert res.json()["error"] == "not_found"

    def test_retry_of_done_job_conflicts(self, client) -> None:
        created = _submit(client)
        _wait_done(client, created["jobId"])

        res = client.post(f"/api/v1/jobs/{created['jobId']}/retry", headers=AUTH)

        assert res.status_code == 409
        assert res.json()["error"] == "retry_not_allowed"

    def test_cancel_after_done_is_noop(self, client) -> None:
        created = _submit(client)
        done = _wait_done(client, created["jobId"])

        res = client.post(f"/api/v1/jobs/{created['jobId']}/cancel", headers=AUTH)

        assert res.status_code == 200
        assert res.json()["stage"] == "done"
        assert res.json()["outputRef"] == done["outputRef"]


class TestLibraryApi:
    def _stored(self, client) -> str:
        created = _submit(client, name="Track")
        return _wait_done(client, created["jobId"])["outputRef"]

    def test_list_enriched_with_job(self, client) -> None:
        ref = self._stored(client)

        items = client.get("/api/v1/library", headers=AUTH).json()

        assert len(items) == 1
        assert items[0]["ref"] == ref
        assert items[0]["name"] == "Track.webm"
        assert items[0]["size"] == 10
        assert items[0]["jobId"]
        assert items[0]["stage"] == "done"
        assert client.get("/api/v1/library", headers=OTHER).json() == []

    def test_full_stream(self, client) -> None:
        ref = self._stored(client)

        res = client.get(f"/api/v1/library/{ref}/stream", headers=AUTH)

        assert res.status_code == 200
        assert res.content == b"0123456789"
        assert res.headers["content-length"] == "10"
        assert res.headers["accept-ranges"] == "bytes"

    def test_range_stream(self, client) -> None:
        ref = self._stored(client)

        res = client.get(
            f"/api/v1/library/{ref}/stream?token=tok-1", headers={"Range": "bytes=2-5"}
        )

        assert res.status_code == 206
        assert res.content == b"2345"
        assert res.headers["content-range"] == "bytes 2-5/10"
        assert res.headers["content-length"] == "4"

    def test_unsatisfiable_range(self, client) -> None:
        ref = self._stored(client)

        res = client.get(
            f"/api/v1/library/{ref}/stream", headers={**AUTH, "Range": "bytes=50-"}
        )

        assert res.status_code == 416
        assert res.json()["error"] == "range_not_satisfiable"

    def test_delete(self, client) -> None:
        ref = self._stored(client)

        res = client.delete(f"/api/v1/library/{ref}", headers=AUTH)

        assert res.status_code == 200
        assert res.json() == {"ok": True, "ref": ref}
        assert client.get(f"/api/v1/library/{ref}/stream", headers=AUTH).status_code == 404
        assert client.delete(f"/api/v1/library/{ref}", headers=OTHER).status_code == 404


def test_healthz(client) -> None:
    res = client.get("/healthz")

    assert res.status_code == 200
    assert res.json()["ok"] is True
