#!/usr/bin/env python3
"""
Test Suite for the HTTP API

Exercises the FastAPI routes through TestClient: submission status codes,
ownership checks, cancellation, outputs, admin access, identity resolution
and the embedded worker lifecycle.
"""

import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from api.auth import IdentityResolver
from api.main import create_app
from config.settings import Settings
from core.dispatcher import ProviderDispatcher
from core.job_state import JobRecord
from core.service import build_components
from test_job_worker import STORED_URL, ScriptedProvider, chinese_result

JOB_ID = "0123456789abcdef0123456789abcdef"
ADMIN_HEADERS = {"X-Admin-Token": "admin-secret"}


def submit_body(duration=360, **options):
    return {
        "source": {"kind": "stored", "reference": STORED_URL, "duration_seconds": duration},
        "options": options,
        "client": {"timezone": "Asia/Shanghai"},
    }


@pytest.fixture
def components(tmp_path):
    settings = Settings(
        storage_path=tmp_path / "blobs",
        public_base_url="https://cdn.example.com/blobs",
        ffmpeg_enabled=False,
        worker_idle_sleep=0.01,
        admin_token="admin-secret",
    )
    components = build_components(settings, use_database=False)
    components.dispatcher = ProviderDispatcher([ScriptedProvider(result=chinese_result())])
    return components


@pytest.fixture
def client(components):
    with TestClient(create_app(components, start_worker=False)) as test_client:
        yield test_client


class TestSubmission:

    def test_health(self, client):
        response = client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["queue_depth"] == 0
        assert data["worker"] is None

    def test_submit_and_read_status(self, client):
        headers = {"X-Account-Id": "acct-1", "X-Tier": "pro"}
        response = client.post("/api/v1/jobs", json=submit_body(language="zh"), headers=headers)
        assert response.status_code == 202
        job = response.json()
        assert job["status"] == "queued"
        assert job["queue_position"] == 1

        status = client.get(f"/api/v1/jobs/{job['job_id']}", headers=headers)
        assert status.status_code == 200
        assert status.json()["state"] == "queued"

        foreign = client.get(f"/api/v1/jobs/{job['job_id']}", headers={"X-Account-Id": "acct-2"})
        assert foreign.status_code == 404

    def test_anonymous_rate_limit(self, client):
        assert client.post("/api/v1/jobs", json=submit_body(60)).status_code == 202

        response = client.post("/api/v1/jobs", json=submit_body(60))
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "3600"
        assert response.json()["detail"] == {"reason": "rate_limited", "retry_after": 3600}

    def test_quota_exceeded(self, client):
        response = client.post(
            "/api/v1/jobs", json=submit_body(40 * 60), headers={"X-Account-Id": "acct-1", "X-Tier": "free"}
        )
        assert response.status_code == 402
        assert response.json()["detail"]["reason"] == "file_too_long"

    def test_blocked_identity(self, client, components):
        detector = components.service.admission.abuse_detector
        detector.weights.block_threshold = 1
        detector.record_request("acct-bad", user_agent="scraper-bot")

        response = client.post("/api/v1/jobs", json=submit_body(), headers={"X-Account-Id": "acct-bad"})
        assert response.status_code == 403

        reset = client.post("/api/v1/admin/identities/acct-bad/reset", headers=ADMIN_HEADERS)
        assert reset.json() == {"identity": "acct-bad", "reset": True}
        assert not detector.is_blocked("acct-bad")

    def test_bad_requests(self, client):
        unknown_tier = client.post("/api/v1/jobs", json=submit_body(), headers={"X-Account-Id": "a", "X-Tier": "gold"})
        assert unknown_tier.status_code == 400

        bad_format = client.post("/api/v1/jobs", json=submit_body(formats=["docx"]))
        assert bad_format.status_code == 422

        summary = client.post(
            "/api/v1/jobs", json=submit_body(job_type="summary"), headers={"X-Account-Id": "a", "X-Tier": "pro"}
        )
        assert summary.status_code == 400
        assert summary.json()["detail"]["reason"] == "unsupported_job_type"


class TestAdminAccess:

    def test_reset_requires_admin_token(self, client, components):
        """A blocked caller cannot lift its own block."""
        detector = components.service.admission.abuse_detector
        detector.weights.block_threshold = 1
        detector.record_request("acct-bad", user_agent="scraper-bot")

        missing = client.post("/api/v1/admin/identities/acct-bad/reset", headers={"X-Account-Id": "acct-bad"})
        wrong = client.post("/api/v1/admin/identities/acct-bad/reset", headers={"X-Admin-Token": "guess"})

        assert missing.status_code == 401
        assert wrong.status_code == 401
        assert detector.is_blocked("acct-bad")
        assert client.post(
            "/api/v1/jobs", json=submit_body(), headers={"X-Account-Id": "acct-bad"}
        ).status_code == 403

    def test_admin_routes_disabled_without_token(self, components):
        components.settings.admin_token = None
        with TestClient(create_app(components, start_worker=False)) as client:
            response = client.post("/api/v1/admin/identities/acct-bad/reset", headers=ADMIN_HEADERS)
        assert response.status_code == 403


class TestIdentityResolution:

    @pytest.fixture
    def production_client(self, components):
        resolver = IdentityResolver({"key-pro-1": "acct-pro:pro"}, trust_headers=False)
        with TestClient(create_app(components, start_worker=False, identity_resolver=resolver)) as test_client:
            yield test_client

    def test_untrusted_tier_header_is_ignored(self, production_client):
        """Outside development a caller cannot claim a tier by header."""
        headers = {"X-Account-Id": "acct-1", "X-Tier": "premium"}
        response = production_client.post("/api/v1/jobs", json=submit_body(40 * 60), headers=headers)
        assert response.status_code == 402
        assert response.json()["detail"]["reason"] == "file_too_long"

    def test_api_key_identity(self, production_client):
        bearer = {"Authorization": "Bearer key-pro-1"}
        response = production_client.post("/api/v1/jobs", json=submit_body(40 * 60), headers=bearer)
        assert response.status_code == 202
        job_id = response.json()["job_id"]

        assert production_client.get(f"/api/v1/jobs/{job_id}", headers={"X-API-Key": "key-pro-1"}).status_code == 200
        assert production_client.get(
            f"/api/v1/jobs/{job_id}", headers={"Authorization": "Bearer key-other"}
        ).status_code == 401
        # Header claims are not an owner
        assert production_client.delete(
            f"/api/v1/jobs/{job_id}", headers={"X-Account-Id": "acct-pro"}
        ).status_code == 404

    def test_trust_follows_deployment_mode(self):
        assert IdentityResolver.from_settings(Settings(deployment_mode="DEVELOPMENT")).trust_headers
        assert not IdentityResolver.from_settings(Settings(deployment_mode="PRODUCTION")).trust_headers
        assert IdentityResolver.from_settings(
            Settings(deployment_mode="PRODUCTION", trust_identity_headers=True)
        ).trust_headers


class TestJobResources:

    def test_cancel(self, client):
        headers = {"X-Account-Id": "acct-1", "X-Tier": "pro"}
        job_id = client.post("/api/v1/jobs", json=submit_body(), headers=headers).json()["job_id"]

        assert client.delete(f"/api/v1/jobs/{job_id}").status_code == 404
        assert client.delete(f"/api/v1/jobs/{job_id}", headers={"X-Account-Id": "acct-2"}).status_code == 404

        cancelled = client.delete(f"/api/v1/jobs/{job_id}", headers=headers)
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"

        assert client.delete(f"/api/v1/jobs/{job_id}", headers=headers).status_code == 409

    def test_outputs(self, client, components):
        async def seed():
            await components.state_machine.create(JobRecord(
                job_id=JOB_ID, owner="acct-1", source_kind="stored", source_ref=STORED_URL,
            ))
            await components.repository.save_outputs(JOB_ID, {"txt": "你好。", "srt": "1\n"}, "zh")

        asyncio.run(seed())

        txt = client.get(f"/api/v1/jobs/{JOB_ID}/output/txt", headers={"X-Account-Id": "acct-1"})
        assert txt.status_code == 200
        assert txt.text == "你好。"
        assert txt.headers["content-type"].startswith("text/plain")

        assert client.get(f"/api/v1/jobs/{JOB_ID}/output/docx").status_code == 400
        assert client.get(f"/api/v1/jobs/{JOB_ID}/output/vtt").status_code == 404
        assert client.get(
            f"/api/v1/jobs/{JOB_ID}/output/txt", headers={"X-Account-Id": "acct-2"}
        ).status_code == 404

    def test_unknown_job(self, client):
        assert client.get(f"/api/v1/jobs/{JOB_ID}").status_code == 404


class TestEmbeddedWorker:

    def test_job_completes_through_the_api(self, components):
        headers = {"X-Account-Id": "acct-1", "X-Tier": "pro"}
        with TestClient(create_app(components)) as client:
            job_id = client.post("/api/v1/jobs", json=submit_body(language="zh"), headers=headers).json()["job_id"]

            status = None
            for _ in range(200):
                status = client.get(f"/api/v1/jobs/{job_id}", headers=headers).json()
                if status["status"] in ("completed", "failed"):
                    break
                time.sleep(0.02)

            assert status["status"] == "completed"
            assert status["progress"] == 100
            output = client.get(f"/api/v1/jobs/{job_id}/output/srt", headers=headers)
            assert "今天天气很好。" in output.text
            assert client.get("/").json()["worker"]["jobs_processed"] == 1
