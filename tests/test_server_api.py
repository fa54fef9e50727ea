from __future__ import annotations

import base64
import io
import sys
from concurrent.futures import Future
from pathlib import Path

import httpx
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from jobs import AuthGate, JobStatus, JobStore, QueueScheduler  # noqa: E402
from jobs.models import utcnow  # noqa: E402
from server import create_app  # noqa: E402
from services.veo_client import VeoClient  # noqa: E402


class InlineExecutor:
    def submit(self, fn, *args, **kwargs) -> Future:
        future: Future = Future()
        future.set_result(fn(*args, **kwargs))
        return future

    def shutdown(self, wait: bool = True) -> None:
        return None


def _video_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, content=b"mp4-bytes", headers={"content-type": "video/mp4"})


@pytest.fixture()
def components():
    store = JobStore()
    gate = AuthGate()
    client = VeoClient(
        gate.require_key,
        base_url="https://veo.test/v1beta",
        http_client=httpx.Client(transport=httpx.MockTransport(_video_handler)),
    )
    scheduler = QueueScheduler(store, gate, client, executor=InlineExecutor())
    return store, gate, scheduler


@pytest.fixture()
def app(components):
    store, gate, scheduler = components
    app = create_app(store=store, gate=gate, scheduler=scheduler, start_scheduler=False)
    app.config.update(TESTING=True)
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _submit(client, **overrides):
    payload = {"prompt": "a lighthouse at dawn", "quantity": 1}
    payload.update(overrides)
    return client.post("/api/jobs", json=payload)


def _complete(store: JobStore, job_id: str, uri: str = "https://veo.test/v1beta/files/x:download") -> None:
    store.update(job_id, status=JobStatus.PROCESSING, started_at=utcnow(), progress_message="Initializing...")
    store.update(job_id, status=JobStatus.COMPLETED, video_uri=uri, progress_message="Completed")


def test_submit_batch_creates_idle_jobs(client):
    response = _submit(client, quantity=3, model="veo-3.1-generate-preview", aspect_ratio="9:16")

    assert response.status_code == 201
    data = response.get_json()
    assert len(data["jobs"]) == 3
    assert {job["status"] for job in data["jobs"]} == {"idle"}
    assert {job["model"] for job in data["jobs"]} == {"veo-3.1-generate-preview"}
    assert len({job["id"] for job in data["jobs"]}) == 3
    assert data["stats"] == {"total": 3, "completed": 0, "failed": 0, "pending": 3}
    assert response.headers.get("X-Trace-Id")


@pytest.mark.parametrize(
    "overrides",
    [
        {"prompt": "   "},
        {"quantity": 0},
        {"quantity": 11},
        {"aspect_ratio": "4:3"},
        {"model": "veo-2"},
        {"input_type": "image"},
        {"unexpected": True},
    ],
)
def test_submit_rejects_invalid_payload(client, overrides):
    response = _submit(client, **overrides)

    assert response.status_code == 400
    assert response.get_json()["error"]["message"]


def test_submit_image_job_from_json(client):
    encoded = base64.b64encode(b"\x89PNG-frame").decode("ascii")
    response = _submit(
        client,
        prompt="",
        input_type="image",
        image={"data": f"data:image/png;base64,{encoded}", "mime_type": "image/png", "filename": "f.png"},
    )

    assert response.status_code == 201
    job = response.get_json()["jobs"][0]
    assert job["input_type"] == "image"
    assert job["image"] == {"mime_type": "image/png", "filename": "f.png", "size": len(b"\x89PNG-frame")}


def test_submit_image_job_rejects_bad_base64(client):
    response = _submit(
        client,
        input_type="image",
        image={"data": "@@not-base64@@", "mime_type": "image/png"},
    )

    assert response.status_code == 400


def test_submit_image_job_from_multipart(client):
    response = client.post(
        "/api/jobs",
        data={
            "input_type": "image",
            "prompt": "make it move",
            "quantity": "2",
            "image": (io.BytesIO(b"jpeg-bytes"), "frame.jpg", "image/jpeg"),
        },
        content_type="multipart/form-data",
    )

    assert response.status_code == 201
    jobs = response.get_json()["jobs"]
    assert len(jobs) == 2
    assert jobs[0]["image"]["mime_type"] == "image/jpeg"
    assert jobs[0]["prompt"] == "make it move"


def test_list_and_get_jobs(client):
    created = _submit(client, quantity=2).get_json()["jobs"]

    listing = client.get("/api/jobs").get_json()
    assert [job["id"] for job in listing["jobs"]] == [job["id"] for job in created]

    single = client.get(f"/api/jobs/{created[0]['id']}")
    assert single.status_code == 200
    assert single.get_json()["id"] == created[0]["id"]
    assert client.get("/api/jobs/missing").status_code == 404


def test_remove_processing_job_is_conflict(client, components):
    store, _, _ = components
    job_id = _submit(client).get_json()["jobs"][0]["id"]
    store.update(job_id, status=JobStatus.PROCESSING, started_at=utcnow())

    response = client.delete(f"/api/jobs/{job_id}")

    assert response.status_code == 409
    assert store.get(job_id) is not None


def test_remove_idle_job(client):
    job_id = _submit(client).get_json()["jobs"][0]["id"]

    response = client.delete(f"/api/jobs/{job_id}")

    assert response.status_code == 200
    assert client.get(f"/api/jobs/{job_id}").status_code == 404
    assert client.delete(f"/api/jobs/{job_id}").status_code == 404


def test_duplicate_completed_job(client, components):
    store, _, _ = components
    job_id = _submit(client).get_json()["jobs"][0]["id"]
    _complete(store, job_id)

    response = client.post(f"/api/jobs/{job_id}/duplicate")

    assert response.status_code == 201
    clone = response.get_json()
    assert clone["id"] != job_id
    assert clone["status"] == "idle"
    assert clone["video_uri"] is None
    assert clone["started_at"] is None
    assert clone["prompt"] == "a lighthouse at dawn"


def test_clear_finished_jobs(client, components):
    store, _, _ = components
    done_id, idle_id = [job["id"] for job in _submit(client, quantity=2).get_json()["jobs"]]
    _complete(store, done_id)

    response = client.post("/api/jobs/clear")

    assert response.get_json()["removed"] == [done_id]
    assert [job.id for job in store.list()] == [idle_id]


def test_queue_requires_credentials(client):
    response = client.post("/api/queue/start")
    assert response.status_code == 409

    selected = client.post("/api/credentials", json={"api_key": "secret"})
    assert selected.get_json()["ready"] is True

    started = client.post("/api/queue/start")
    assert started.status_code == 200
    assert started.get_json()["running"] is True

    paused = client.post("/api/queue/pause")
    assert paused.get_json()["running"] is False


def test_select_credentials_requires_key(client):
    response = client.post("/api/credentials", json={"api_key": ""})

    assert response.status_code == 400


def test_download_video_proxies_content(client, components):
    store, gate, _ = components
    gate.select("secret")
    job_id = _submit(client).get_json()["jobs"][0]["id"]

    assert client.get(f"/api/jobs/{job_id}/video").status_code == 409

    _complete(store, job_id)
    response = client.get(f"/api/jobs/{job_id}/video")

    assert response.status_code == 200
    assert response.data == b"mp4-bytes"
    assert response.mimetype == "video/mp4"


def test_health_reports_queue(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["ok"] is True
    assert payload["checks"]["credentials"]["ok"] is False
    assert "jobs.processing" in payload["metrics"]


def test_unknown_route_returns_json_404(client):
    response = client.get("/api/nope")

    assert response.status_code == 404
    assert response.get_json()["error"]["code"] == 404
