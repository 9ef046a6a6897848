"""
Tests for Image Studio Backend API endpoints.

Tests cover:
- Health check
- Sessions and image uploads
- Job submission (edit, feature edit, refine, generate) and idempotency
- Job listing, detail and recovery
- Backend listing, recommendation, summary and connection tests
- API configuration management
- Rate limiting of job submissions
"""

import time

import pytest
from fastapi.testclient import TestClient

from conftest import GATEWAY_URL, make_png
from image_studio_backend.errors import BackendError
from image_studio_backend.main import create_app
from image_studio_backend.service import build_service

TERMINAL = ("done", "error", "failed")


@pytest.fixture
def client(service):
    """Test client over a configured service; the lifespan keeps background jobs running."""
    with TestClient(create_app(service)) as test_client:
        yield test_client


@pytest.fixture
def unconfigured_client(unconfigured_service):
    with TestClient(create_app(unconfigured_service)) as test_client:
        yield test_client


def upload(client, name="product.png", color=(200, 40, 40), session_id=None):
    data = {"session_id": session_id} if session_id else {}
    response = client.post("/images", files={"image": (name, make_png(color), "image/png")}, data=data)
    assert response.status_code == 201
    return response.json()


def wait_for_job(client, job_id, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = client.get(f"/jobs/{job_id}").json()
        if job["status"] in TERMINAL:
            return job
        time.sleep(0.02)
    raise AssertionError(f"Job {job_id} did not finish within {timeout}s")


class TestHealthCheck:
    """Tests for the /healthz endpoint."""

    def test_health_check_returns_ok(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["configured"] is True
        assert data["available_backends"] == ["gemini", "sora", "chatgpt"]

    def test_health_check_without_configuration(self, unconfigured_client):
        data = unconfigured_client.get("/healthz").json()
        assert data["configured"] is False
        assert data["available_backends"] == []


class TestSessionsAndImages:
    def test_create_and_get_session(self, client):
        response = client.post("/sessions", json={"project_id": "p1", "context": {"product_category": "food"}})
        assert response.status_code == 201
        session = response.json()
        assert session["context"]["previous_edits"] == []

        fetched = client.get(f"/sessions/{session['id']}").json()
        assert fetched["context"]["product_category"] == "food"

    def test_unknown_session(self, client):
        response = client.get("/sessions/missing")
        assert response.status_code == 404
        assert response.json()["error"] == "E_NOT_FOUND"

    def test_upload_image(self, client):
        image = upload(client)
        assert image["kind"] == "upload"
        assert (image["width"], image["height"]) == (64, 48)
        assert client.get(f"/images/{image['id']}").json()["id"] == image["id"]

    def test_download_uploaded_image(self, client):
        image = upload(client)
        assert image["url"] == f"/images/{image['id']}/file"

        response = client.get(image["url"])
        assert response.status_code == 200
        assert response.headers["content-type"] == "image/png"
        assert response.content == make_png((200, 40, 40))

    def test_download_unknown_image(self, client):
        assert client.get("/images/missing/file").status_code == 404

    def test_upload_rejects_non_images(self, client):
        response = client.post("/images", files={"image": ("notes.png", b"plain text", "image/png")})
        assert response.status_code == 400

    def test_features_grouped_by_scenario(self, client):
        scenarios = client.get("/features").json()
        assert [s["code"] for s in scenarios] == ["ecommerce", "creative", "artistic", "utility"]
        assert any(f["code"] == "color_palette" for f in scenarios[2]["features"])


class TestEditJobs:
    def test_edit_runs_to_completion(self, client, fake_backends):
        image = upload(client)
        response = client.post("/edit", json={"image_id": image["id"], "type": "edit"})
        assert response.status_code == 202
        accepted = response.json()
        assert accepted["created"] is True
        assert accepted["recommended_backend"] == "gemini"

        job = wait_for_job(client, accepted["job_id"])
        assert job["status"] == "done"
        assert job["attempts"] == 1
        assert job["backend_used"] == "gemini"
        assert len(job["variants"]) == 1
        assert job["variants"][0]["score"] == 0.85

        variant = job["variants"][0]
        download = client.get(variant["url"])
        assert download.status_code == 200
        assert download.content == fake_backends.image_bytes

    def test_optimize_produces_three_variants(self, client):
        image = upload(client)
        accepted = client.post("/edit", json={"image_id": image["id"], "type": "optimize", "prompt": "warmer"}).json()
        job = wait_for_job(client, accepted["job_id"])
        assert [v["score"] for v in job["variants"]] == [0.95, 0.9, 0.85]

    def test_idempotency_key_replays_job(self, client):
        image = upload(client)
        headers = {"Idempotency-Key": "edit-123"}
        first = client.post("/edit", json={"image_id": image["id"]}, headers=headers).json()
        second = client.post("/edit", json={"image_id": image["id"]}, headers=headers).json()

        assert second["job_id"] == first["job_id"]
        assert second["created"] is False
        wait_for_job(client, first["job_id"])
        assert len(client.get("/jobs").json()) == 1

    def test_unknown_image_creates_no_job(self, client):
        response = client.post("/edit", json={"image_id": "missing"})
        assert response.status_code == 404
        assert client.get("/jobs").json() == []

    def test_unknown_preferred_backend(self, client):
        image = upload(client)
        response = client.post("/edit", json={"image_id": image["id"], "preferred_backend": "dalle"})
        assert response.status_code == 400
        assert client.get("/jobs").json() == []

    def test_fallback_is_recorded(self, client, fake_backends):
        fake_backends.script("gemini", *[BackendError("upstream 500", http_status=500)] * 3)
        image = upload(client)
        accepted = client.post("/edit", json={"image_id": image["id"]}).json()
        job = wait_for_job(client, accepted["job_id"])
        assert job["status"] == "done"
        assert job["backend_used"] == "sora"

    def test_all_backends_failing_marks_error(self, client, fake_backends):
        for backend_id in ("gemini", "sora", "chatgpt"):
            fake_backends.script(backend_id, *[BackendError("down")] * 3)
        image = upload(client)
        accepted = client.post("/edit", json={"image_id": image["id"]}).json()
        job = wait_for_job(client, accepted["job_id"])
        assert job["status"] == "error"
        assert job["error_msg"] == "All backends failed. Last error: down"
        assert job["last_error"] == job["error_msg"]

    def test_no_configuration_marks_error(self, unconfigured_client):
        image = upload(unconfigured_client)
        accepted = unconfigured_client.post("/edit", json={"image_id": image["id"]}).json()
        job = wait_for_job(unconfigured_client, accepted["job_id"])
        assert job["status"] == "error"
        assert job["error_msg"] == "No backends available for processing"


class TestFeatureJobs:
    def test_missing_second_image_is_rejected_up_front(self, client):
        image = upload(client)
        response = client.post("/edit/feature", json={"image_id": image["id"], "feature_code": "color_palette"})
        assert response.status_code == 400
        assert client.get("/jobs").json() == []

    def test_unknown_feature(self, client):
        image = upload(client)
        response = client.post("/edit/feature", json={"image_id": image["id"], "feature_code": "time_travel"})
        assert response.status_code == 404
        assert response.json()["error"] == "E_FEATURE_NOT_FOUND"

    def test_two_step_feature(self, client, fake_backends):
        image = upload(client)
        palette = upload(client, "palette.png", color=(10, 120, 200))
        accepted = client.post(
            "/edit/feature",
            json={"image_id": image["id"], "feature_code": "color_palette", "second_image_id": palette["id"]},
        ).json()
        job = wait_for_job(client, accepted["job_id"])

        assert job["status"] == "done"
        assert job["feature_id"] == "color_palette"
        assert job["feature_context"]["mode"] == "TwoStep"
        assert len(job["variants"]) == 1
        assert job["variants"][0]["metadata"]["step"] == 2
        assert len(fake_backends.calls("gemini")) == 2

    def test_feature_preferred_backend(self, client):
        image = upload(client)
        accepted = client.post("/edit/feature", json={"image_id": image["id"], "feature_code": "van_gogh"}).json()
        assert accepted["recommended_backend"] == "sora"
        assert wait_for_job(client, accepted["job_id"])["backend_used"] == "sora"

    def test_custom_prompt_feature_requires_text(self, client):
        image = upload(client)
        response = client.post("/edit/feature", json={"image_id": image["id"], "feature_code": "custom_prompt"})
        assert response.status_code == 400


class TestRefineAndGenerate:
    def test_refine_appends_to_session_history(self, client):
        session = client.post("/sessions", json={}).json()
        image = upload(client, session_id=session["id"])
        accepted = client.post(
            "/edit/refine",
            json={"session_id": session["id"], "image_id": image["id"], "prompt": "soften shadows"},
        ).json()
        wait_for_job(client, accepted["job_id"])

        edits = client.get(f"/sessions/{session['id']}").json()["context"]["previous_edits"]
        assert len(edits) == 1
        assert edits[0]["prompt"] == "soften shadows"
        assert edits[0]["job_id"] == accepted["job_id"]

    def test_refine_requires_prompt(self, client):
        session = client.post("/sessions", json={}).json()
        image = upload(client)
        response = client.post("/edit/refine", json={"session_id": session["id"], "image_id": image["id"], "prompt": ""})
        assert response.status_code == 422

    def test_generate(self, client):
        response = client.post("/generate", json={"prompt": "a ceramic mug", "style": "minimal", "size": "512x512"})
        assert response.status_code == 202
        job = wait_for_job(client, response.json()["job_id"])
        assert job["status"] == "done"
        assert job["type"] == "generate"
        assert job["feature_context"] == {"style": "minimal", "size": "512x512"}
        assert len(job["variants"]) == 1

    def test_generate_rejects_unknown_style_and_size(self, client):
        assert client.post("/generate", json={"prompt": "mug", "style": "gothic"}).status_code == 400
        assert client.post("/generate", json={"prompt": "mug", "size": "3x3"}).status_code == 400
        assert client.get("/jobs").json() == []

    def test_generation_options(self, client):
        options = client.get("/generate/options").json()
        assert options["default_size"] == "1024x1024"
        assert "minimal" in options["styles"]


class TestJobQueries:
    def test_list_filters_by_status(self, client):
        image = upload(client)
        accepted = client.post("/edit", json={"image_id": image["id"]}).json()
        wait_for_job(client, accepted["job_id"])
        assert [j["id"] for j in client.get("/jobs", params={"status": "done"}).json()] == [accepted["job_id"]]
        assert client.get("/jobs", params={"status": "queued"}).json() == []

    def test_invalid_status_filter(self, client):
        response = client.get("/jobs", params={"status": "paused"})
        assert response.status_code == 400
        assert response.json()["error"] == "E_INVALID_STATUS"

    def test_unknown_job(self, client):
        response = client.get("/jobs/nonexistent-job-id")
        assert response.status_code == 404
        assert response.json()["error"] == "E_JOB_NOT_FOUND"

    def test_recover_and_retryable(self, client):
        assert client.post("/jobs/recover").json() == {"recovered": 0}
        assert client.get("/jobs/retryable").json() == []


class TestBackendEndpoints:
    def test_list_models(self, client):
        models = client.get("/models").json()
        assert [m["id"] for m in models] == ["gemini", "sora", "chatgpt"]
        assert all(m["available"] for m in models)

    def test_recommend(self, client):
        data = client.get("/models/recommend", params={"task_type": "edit", "preferred_backend": "chatgpt"}).json()
        assert data["backend_id"] == "chatgpt"
        assert [r["backend_id"] for r in data["ranking"]] == ["gemini", "sora", "chatgpt"]

    def test_recommend_invalid_task(self, client):
        assert client.get("/models/recommend", params={"task_type": "upscale"}).status_code == 400

    def test_summary(self, client):
        summary = client.get("/models/summary").json()
        assert summary["has_configuration"] is True
        assert summary["configuration_name"] == "primary"
        assert summary["source"] == "database"

    def test_connection_tests_are_recorded(self, client, service, fake_backends):
        fake_backends.script("sora", BackendError("unreachable"))
        results = {r["backend_id"]: r for r in client.post("/models/test").json()}
        assert results["gemini"]["ok"] is True
        assert results["sora"]["ok"] is False
        assert service.config_store.active_record().test_results["sora"]["ok"] is False

    def test_single_connection_test(self, client):
        results = client.post("/models/test", json={"backend_id": "chatgpt"}).json()
        assert results == [{"backend_id": "chatgpt", "ok": True, "error": None}]


class TestConfigEndpoints:
    def test_create_activate_and_delete(self, client):
        response = client.post(
            "/config",
            json={
                "name": "gemini-only",
                "api_key": "sk-another-key-9999",
                "base_url": GATEWAY_URL,
                "backends": {"gemini": {"enabled": True, "model_name": "gemini-2.5-flash-image-preview"}},
                "activate": True,
            },
        )
        assert response.status_code == 201
        created = response.json()
        assert created["api_key_masked"] == "sk-a...9999"
        assert created["is_active"] is True
        assert client.get("/healthz").json()["available_backends"] == ["gemini"]

        configs = client.get("/config").json()
        assert sum(1 for c in configs if c["is_active"]) == 1

        assert client.delete(f"/config/{created['id']}").status_code == 204
        assert client.get("/healthz").json()["configured"] is False

    def test_activate_switches_configuration(self, client):
        other = client.post(
            "/config",
            json={"name": "chatgpt-only", "api_key": "sk-chatgpt-key-0000", "backends": {"chatgpt": {"model_name": "gpt-4o"}}},
        ).json()
        assert client.get("/models/summary").json()["configuration_name"] == "primary"

        client.post(f"/config/{other['id']}/activate")
        summary = client.get("/models/summary").json()
        assert summary["configuration_name"] == "chatgpt-only"
        assert summary["available_backends"] == ["chatgpt"]

    def test_unknown_backend_in_configuration(self, client):
        response = client.post("/config", json={"name": "bad", "api_key": "sk-bad-key-00000", "backends": {"dalle": {}}})
        assert response.status_code == 400

    def test_refresh(self, client):
        summary = client.post("/config/refresh").json()
        assert summary["has_configuration"] is True
        assert summary["stats"]["total_backends"] == 3


class TestRateLimit:
    def test_job_submissions_are_rate_limited(self, settings_overrides, fake_backends, recording_sleep):
        settings_overrides["http"]["rate_limit_per_minute"] = 2
        service = build_service(settings_overrides, client_factory=fake_backends, sleep=recording_sleep)
        with TestClient(create_app(service)) as client:
            for _ in range(2):
                assert client.post("/edit", json={"image_id": "missing"}).status_code == 404
            response = client.post("/edit", json={"image_id": "missing"})
            assert response.status_code == 429
            assert int(response.headers["Retry-After"]) > 0
            # Reads are never limited.
            assert client.get("/jobs").status_code == 200
