"""Tests for the HTTP adapter around the dehazing pipeline."""

import io

import pytest
from PIL import Image
from starlette.testclient import TestClient

import api.api_server as api_server
from api.api_server import create_app, download_stem
from api.job_manager import JobManager
from api.schemas import JobState
from core.pipeline import DehazingPipeline, PipelineConfig, SourceImage
from runtime.ai import ai_inference


@pytest.fixture
def client():
    pipeline = DehazingPipeline(PipelineConfig(), probe=None)
    return TestClient(create_app(pipeline))


def upload(client, data, content_type="image/png", filename="hazy.png"):
    return client.post("/api/upload", files={"file": (filename, data, content_type)})


class TestUpload:

    def test_upload_image(self, client, image_bytes):
        data = image_bytes()
        resp = upload(client, data)
        assert resp.status_code == 200
        body = resp.json()
        assert body["filename"] == "hazy.png"
        assert body["size"] == len(data)

        status = client.get(f"/api/status/{body['job_id']}").json()
        assert status["state"] == "uploaded"
        assert status["progress"] == 0

    def test_non_image_rejected(self, client):
        resp = upload(client, b"%PDF-1.4", content_type="application/pdf", filename="doc.pdf")
        assert resp.status_code == 400
        assert "Invalid file type" in resp.json()["detail"]

    def test_too_large_rejected(self, client, image_bytes, monkeypatch):
        monkeypatch.setattr(api_server, "MAX_FILE_SIZE", 16)
        resp = upload(client, image_bytes())
        assert resp.status_code == 413


class TestProcessing:

    def test_full_flow(self, client, image_bytes):
        job_id = upload(client, image_bytes(2048, 1024, (100, 100, 100, 255))).json()["job_id"]

        resp = client.post("/api/process", json={"job_id": job_id})
        assert resp.status_code == 200
        assert resp.json()["state"] == "queued"

        status = client.get(f"/api/status/{job_id}").json()
        assert status["state"] == "completed"
        assert status["progress"] == 100
        assert status["stage"] == "Complete!"
        assert status["strategy"] == "fallback"

        result = client.get(f"/api/result/{job_id}")
        assert result.status_code == 200
        assert result.headers["content-type"] == "image/png"
        assert result.headers["content-disposition"] == 'attachment; filename="dehazed_hazy.png"'
        with Image.open(io.BytesIO(result.content)) as image:
            assert image.size == (1024, 512)
            assert image.convert("RGBA").getpixel((0, 0)) == (130, 130, 117, 255)

    def test_corrupt_image_fails_job(self, client):
        job_id = upload(client, b"not really a png").json()["job_id"]
        client.post("/api/process", json={"job_id": job_id})

        status = client.get(f"/api/status/{job_id}").json()
        assert status["state"] == "failed"
        assert status["failed_stage"] == "decoding"
        assert "Failed to load image" in status["error"]
        assert status["progress"] <= 10

        assert client.get(f"/api/result/{job_id}").status_code == 400

    def test_failed_job_can_be_retried(self, client, image_bytes):
        job_id = upload(client, image_bytes()).json()["job_id"]
        job = client.app.state.job_manager.get_job(job_id)
        good_source = job.source
        job.source = type(good_source)(b"broken", "image/png")
        client.post("/api/process", json={"job_id": job_id})
        assert client.get(f"/api/status/{job_id}").json()["state"] == "failed"

        job.source = good_source
        client.post("/api/process", json={"job_id": job_id})
        status = client.get(f"/api/status/{job_id}").json()
        assert status["state"] == "completed"
        assert status["error"] is None

    def test_unknown_job(self, client):
        assert client.post("/api/process", json={"job_id": "missing"}).status_code == 404
        assert client.get("/api/status/missing").status_code == 404
        assert client.get("/api/result/missing").status_code == 404

    def test_result_before_processing(self, client, image_bytes):
        job_id = upload(client, image_bytes()).json()["job_id"]
        resp = client.get(f"/api/result/{job_id}")
        assert resp.status_code == 400
        assert "not ready" in resp.json()["detail"]


def test_health(client, monkeypatch):
    monkeypatch.setattr(ai_inference.ort, "get_available_providers", lambda: ["CPUExecutionProvider"])
    body = client.get("/api/health").json()
    assert body["status"] == "ok"
    assert body["accelerated_available"] is False
    assert body["providers"] == ["CPUExecutionProvider"]


class TestJobLifecycle:

    def test_source_released_after_completion(self, client, image_bytes):
        job_id = upload(client, image_bytes()).json()["job_id"]
        client.post("/api/process", json={"job_id": job_id})

        job = client.app.state.job_manager.get_job(job_id)
        assert job.state == JobState.COMPLETED
        assert job.source is None
        assert client.get(f"/api/result/{job_id}").status_code == 200
        assert client.post("/api/process", json={"job_id": job_id}).status_code == 409

    def test_delete_job(self, client, image_bytes):
        job_id = upload(client, image_bytes()).json()["job_id"]
        client.post("/api/process", json={"job_id": job_id})

        assert client.delete(f"/api/jobs/{job_id}").status_code == 204
        assert client.get(f"/api/status/{job_id}").status_code == 404
        assert client.get(f"/api/result/{job_id}").status_code == 404
        assert client.delete(f"/api/jobs/{job_id}").status_code == 404


class TestJobManager:

    @staticmethod
    def source():
        return SourceImage(b"data", "image/png")

    def test_oldest_finished_jobs_evicted(self):
        manager = JobManager(max_jobs=2)
        first = manager.create_job("a.png", self.source())
        second = manager.create_job("b.png", self.source())
        manager.fail(first.job_id, "broken")
        manager.fail(second.job_id, "broken")

        third = manager.create_job("c.png", self.source())

        assert manager.get_job(first.job_id) is None
        assert manager.get_job(second.job_id) is second
        assert manager.get_job(third.job_id) is third

    def test_pending_jobs_never_evicted(self):
        manager = JobManager(max_jobs=1)
        jobs = [manager.create_job(f"{i}.png", self.source()) for i in range(3)]
        manager.queue_job(jobs[1].job_id)

        assert all(manager.get_job(job.job_id) is job for job in jobs)

    def test_failed_job_keeps_source_for_retry(self):
        manager = JobManager()
        job = manager.create_job("a.png", self.source())
        manager.fail(job.job_id, "broken", stage="decoding")
        assert job.source is not None


@pytest.mark.parametrize("filename, expected", [
    ("hazy.png", "hazy"),
    ("holiday photo.final.jpg", "holiday_photo.final"),
    ('quote".png', "quote_"),
    ("caf\u00e9.png", "caf_"),
    ("", ""),
    (None, ""),
])
def test_download_stem(filename, expected):
    assert download_stem(filename) == expected
