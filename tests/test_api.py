"""End-to-end HTTP tests over memory backends and fake collaborators."""

from __future__ import annotations

import json
import time
from unittest.mock import AsyncMock

import pytest
from fakes import FakeAnalyzer, FakeExtractor
from fastapi.testclient import TestClient

from src.api.dependencies import Services, assemble_services
from src.config import settings
from src.errors import RateLimited
from src.main import create_app
from src.pipeline.orchestrator import RetryPolicy
from src.security.consent import MemoryConsentLedger
from src.security.encryption import SessionCipher
from src.security.vault import MemoryPIIVault
from src.sessions.store import MemorySessionStore

POLICY_TEXT = "Policyholder: Jane Smith\nEmail: jane@example.com\nSilver Plus Hospital Cover.\n"


async def _no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def services(cipher: SessionCipher) -> Services:
    return assemble_services(
        MemorySessionStore(),
        MemoryPIIVault(cipher),
        MemoryConsentLedger(ip_hash_secret="test"),
        FakeExtractor(text=POLICY_TEXT),
        FakeAnalyzer(),
        retry=RetryPolicy(max_attempts=3, base_delay=0.0, multiplier=1.0),
        sleep=_no_sleep,
    )


@pytest.fixture
def client(services: Services):
    with TestClient(create_app(services)) as test_client:
        yield test_client


def _submit_text(client: TestClient, **extra) -> str:
    response = client.post("/api/policies/analyze", json={"content": POLICY_TEXT, "jurisdiction": "AU", **extra})
    assert response.status_code == 202, response.text
    return response.json()["sessionId"]


def _wait_until_done(client: TestClient, session_id: str) -> dict:
    for _ in range(100):
        body = client.get(f"/api/policies/progress/{session_id}").json()
        if body["status"] in ("completed", "failed"):
            return body
        time.sleep(0.02)
    pytest.fail("session did not finish")


def _sse_events(text: str) -> list[tuple[str, dict]]:
    events = []
    for frame in text.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in frame.splitlines())
        events.append((lines["event"], json.loads(lines["data"])))
    return events


class TestAnalyze:
    def test_text_submission_round_trip(self, client: TestClient) -> None:
        response = client.post("/api/policies/analyze", json={"content": POLICY_TEXT, "jurisdiction": "AU"})
        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "created"
        assert body["estimatedTimeSeconds"] == 150

        progress = _wait_until_done(client, body["sessionId"])
        assert progress["status"] == "completed"
        assert progress["progressPercent"] == 100

        results = client.get(f"/api/policies/results/{body['sessionId']}")
        assert results.status_code == 200
        data = results.json()
        assert len(data["recommendations"]) == 3
        assert data["piiDetected"] is True
        assert len(data["encryptionKey"]) == 64

        again = client.get(f"/api/policies/results/{body['sessionId']}").json()
        assert "encryptionKey" not in again

    def test_file_submission(self, client: TestClient) -> None:
        response = client.post(
            "/api/policies/analyze",
            files={"policy": ("policy.pdf", b"%PDF-1.7 body", "application/pdf")},
            data={"jurisdiction": "nz"},
        )
        assert response.status_code == 202, response.text
        progress = _wait_until_done(client, response.json()["sessionId"])
        assert progress["status"] == "completed"

    def test_upload_size_limit_is_inclusive(self, client: TestClient, monkeypatch) -> None:
        monkeypatch.setattr(settings.processing, "max_upload_bytes", 10)
        ok = client.post("/api/policies/analyze", files={"policy": ("p.pdf", b"x" * 10, "application/pdf")})
        too_big = client.post("/api/policies/analyze", files={"policy": ("p.pdf", b"x" * 11, "application/pdf")})
        assert ok.status_code == 202
        assert too_big.status_code == 413
        assert too_big.json()["error"] == "file_too_large"

    @pytest.mark.parametrize(
        ("kwargs", "status", "code"),
        [
            ({"files": {"policy": ("p.exe", b"MZ", "application/x-msdownload")}}, 400, "invalid_file_type"),
            ({"files": {"policy": ("p.pdf", b"", "application/pdf")}}, 400, "empty_file"),
            ({"files": {"other": ("p.pdf", b"x", "application/pdf")}}, 400, "no_file_provided"),
            ({"json": {"content": "   "}}, 400, "no_content_provided"),
            ({"json": {"text": "wrong field"}}, 400, "invalid_request_format"),
            ({"json": {"content": "x", "jurisdiction": "Australia"}}, 400, "invalid_jurisdiction"),
            ({"json": {"content": "x", "jurisdiction": "AU\n"}}, 400, "invalid_jurisdiction"),
            ({"content": b"plain", "headers": {"content-type": "text/plain"}}, 415, "unsupported_media_type"),
        ],
    )
    def test_rejected_submissions(self, client: TestClient, services: Services, kwargs, status, code) -> None:
        response = client.post("/api/policies/analyze", **kwargs)
        assert response.status_code == status
        assert response.json()["error"] == code
        assert services.orchestrator.active_sessions == 0

    def test_rate_limited(self, services: Services) -> None:
        services.rate_limiter = AsyncMock()
        services.rate_limiter.enforce_submission.side_effect = RateLimited(30)
        with TestClient(create_app(services)) as client:
            response = client.post("/api/policies/analyze", json={"content": POLICY_TEXT})
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "30"
        assert response.json()["error"] == "rate_limit_exceeded"


class TestProgressAndResults:
    def test_unknown_session(self, client: TestClient) -> None:
        for path in ("/api/policies/progress/nope", "/api/policies/results/nope"):
            response = client.get(path)
            assert response.status_code == 404
            assert response.json()["error"] == "session_not_found"

    def test_failed_session_results(self, client: TestClient) -> None:
        session_id = _submit_text(client, jurisdiction="SG")
        progress = _wait_until_done(client, session_id)
        assert progress["status"] == "failed"
        assert progress["error"]["code"] == "unsupported_jurisdiction"

        response = client.get(f"/api/policies/results/{session_id}")
        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "unsupported_jurisdiction"
        assert body["detail"] == {"stage": "score"}

    def test_stream_endpoint(self, client: TestClient) -> None:
        session_id = _submit_text(client)
        _wait_until_done(client, session_id)

        response = client.get(f"/api/policies/progress/{session_id}/stream")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = _sse_events(response.text)
        assert [name for name, _ in events] == ["connected", "progress", "results"]
        assert events[-1][1]["type"] == "results"
        assert "encryptionKey" in events[-1][1]

    def test_progress_negotiates_sse(self, client: TestClient) -> None:
        response = client.get("/api/policies/progress/nope", headers={"Accept": "text/event-stream"})
        assert response.status_code == 200
        events = _sse_events(response.text)
        assert [name for name, _ in events] == ["connected", "error"]
        assert events[-1][1]["error"] == "session_not_found"


class TestPrivacyRoutes:
    def test_consent_flow(self, client: TestClient) -> None:
        session_id = _submit_text(client)
        default = client.get(f"/api/privacy/consent/{session_id}").json()
        assert default["isDefault"] is True

        recorded = client.post(
            "/api/privacy/consent",
            json={"sessionId": session_id, "consent": {"includeName": True, "dataRetention": "1-hour"}},
            headers={"User-Agent": "pytest"},
        )
        assert recorded.status_code == 200
        assert recorded.json()["choices"]["includeName"] is True

        history = client.get(f"/api/privacy/consent/{session_id}/history").json()
        assert len(history["history"]) == 1

    def test_consent_for_unknown_session(self, client: TestClient) -> None:
        response = client.post("/api/privacy/consent", json={"sessionId": "nope", "consent": {}})
        assert response.status_code == 404

    def test_consent_body_validation(self, client: TestClient) -> None:
        response = client.post("/api/privacy/consent", json={"consent": {}})
        assert response.status_code == 422
        assert response.json()["error"] == "invalid_request_format"

    def test_report_personalize_export(self, client: TestClient) -> None:
        session_id = _submit_text(client, consent={"includeName": True})
        _wait_until_done(client, session_id)
        key = client.get(f"/api/policies/results/{session_id}").json()["encryptionKey"]

        report = client.post(
            "/api/privacy/report",
            json={"sessionId": session_id, "encryptionKey": key, "includeValues": True},
        ).json()
        assert report["vaultStatus"] == "available"
        names = [item for item in report["items"] if item["category"] == "name"]
        assert names[0]["values"] == ["Jane Smith"]

        personalized = client.post(
            "/api/privacy/personalize",
            json={"sessionId": session_id, "encryptionKey": key, "text": "Hi [NAME_1] at [EMAIL_1]"},
        ).json()
        assert personalized["personalizedText"] == "Hi Jane Smith at [EMAIL_1]"

        export = client.post("/api/privacy/export", json={"sessionId": session_id, "encryptionKey": key}).json()
        assert export["processingHistory"][-1] == "finalize"
        assert len(export["consentHistory"]) == 1

    def test_personalize_with_wrong_key(self, client: TestClient) -> None:
        session_id = _submit_text(client)
        _wait_until_done(client, session_id)
        response = client.post(
            "/api/privacy/personalize",
            json={"sessionId": session_id, "encryptionKey": "00" * 32, "text": "Hi [NAME_1]"},
        )
        assert response.status_code == 410
        assert response.json()["error"] == "vault_miss"

    def test_delete(self, client: TestClient) -> None:
        session_id = _submit_text(client)
        _wait_until_done(client, session_id)

        response = client.delete(f"/api/privacy/{session_id}")
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert "processing history" in body["itemsDeleted"]
        assert client.get(f"/api/policies/progress/{session_id}").status_code == 404

        again = client.delete(f"/api/privacy/{session_id}")
        assert again.status_code == 200
        assert again.json()["success"] is True


def test_health(client: TestClient) -> None:
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["storageBackend"] == "memory"
    assert body["activeSessions"] == 0
