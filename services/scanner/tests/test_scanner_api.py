from __future__ import annotations

import json
from io import BytesIO
from pathlib import Path

import pytest
from docx import Document
from fastapi.testclient import TestClient
from scanner.main import create_app, parse_api_tokens

pytestmark = pytest.mark.integration

DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


def _cv_docx() -> bytes:
    document = Document()
    for line in ("Ada Lovelace", "EXPERIENCE", "Head of Business Operations", "SKILLS", "SQL"):
        document.add_paragraph(line)
    buffer = BytesIO()
    document.save(buffer)
    return buffer.getvalue()


@pytest.fixture
def client(tmp_path: Path, fake_llm, email_sender, job_source):
    app = create_app(
        database_path=str(tmp_path / "scanner.sqlite3"),
        llm=fake_llm,
        email_sender=email_sender,
        job_source=job_source,
        app_url="https://gigradar.test",
    )
    with TestClient(app) as test_client:
        yield test_client


def _onboard(client: TestClient, email: str = "ada@example.com") -> str:
    user = client.post("/users", json={"email": email, "name": "Ada Lovelace"})
    assert user.status_code == 200
    user_id = user.json()["id"]
    upload = client.post(
        f"/users/{user_id}/cv",
        files={"file": ("cv.docx", _cv_docx(), DOCX_MIME)},
    )
    assert upload.status_code == 200
    preference = client.post(
        f"/users/{user_id}/preferences",
        json={"name": "Primary", "roles": ["BizOps"], "locations": ["Tel Aviv"]},
    )
    assert preference.status_code == 200
    return user_id


def test_health_endpoint(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "scanner"}


def test_user_onboarding_flow(client: TestClient) -> None:
    user_id = _onboard(client)

    user = client.get(f"/users/{user_id}")
    assert user.json()["has_cv"] is True
    cv = client.get(f"/users/{user_id}/cv")
    assert cv.json()["base_cv"].startswith("Ada Lovelace\nEXPERIENCE")
    config = client.get(f"/users/{user_id}/scan-config")
    assert config.json()["threshold"] == 65
    assert config.json()["timezone"] == "Asia/Jerusalem"

    duplicate = client.post("/users", json={"email": "ada@example.com", "name": "Again"})
    assert duplicate.status_code == 400
    assert client.get("/users/missing").status_code == 404


def test_cv_upload_validation(client: TestClient) -> None:
    user_id = client.post("/users", json={"email": "ada@example.com", "name": "Ada"}).json()["id"]

    wrong_type = client.post(
        f"/users/{user_id}/cv",
        files={"file": ("cv.pdf", b"%PDF-1.4", "application/pdf")},
    )
    assert wrong_type.status_code == 400
    assert wrong_type.json()["detail"] == "Only DOCX files are supported"

    corrupt = client.post(
        f"/users/{user_id}/cv",
        files={"file": ("cv.docx", b"not a zip", DOCX_MIME)},
    )
    assert corrupt.status_code == 400
    assert client.get(f"/users/{user_id}/cv").status_code == 404


def test_cv_upload_reports_sections_and_keywords(client: TestClient) -> None:
    user_id = client.post("/users", json={"email": "ada@example.com", "name": "Ada"}).json()["id"]

    upload = client.post(
        f"/users/{user_id}/cv",
        files={"file": ("cv.docx", _cv_docx(), DOCX_MIME)},
    )

    assert upload.status_code == 200
    body = upload.json()
    assert body["file_name"] == "cv.docx"
    assert body["sections"] == {
        "experience": ["Head of Business Operations"],
        "skills": ["SQL"],
    }
    assert "business" in body["keywords"]


def test_preference_limit_and_updates(client: TestClient) -> None:
    user_id = client.post("/users", json={"email": "ada@example.com", "name": "Ada"}).json()["id"]
    payload = {"name": "Set", "roles": ["BizOps"], "locations": ["Remote"]}
    created = [client.post(f"/users/{user_id}/preferences", json=payload) for _ in range(3)]
    assert all(response.status_code == 200 for response in created)

    fourth = client.post(f"/users/{user_id}/preferences", json=payload)
    assert fourth.status_code == 400

    preference_id = created[0].json()["id"]
    patched = client.patch(
        f"/users/{user_id}/preferences/{preference_id}",
        json={"active": False},
    )
    assert patched.json()["active"] is False
    deleted = client.delete(f"/users/{user_id}/preferences/{preference_id}")
    assert deleted.json() == {"deleted": True}
    again = client.delete(f"/users/{user_id}/preferences/{preference_id}")
    assert again.status_code == 404
    assert len(client.get(f"/users/{user_id}/preferences").json()) == 2


def test_scan_config_rejects_invalid_values(client: TestClient) -> None:
    user_id = client.post("/users", json={"email": "ada@example.com", "name": "Ada"}).json()["id"]

    assert client.patch(f"/users/{user_id}/scan-config", json={"threshold": 101}).status_code == 422
    bad_snooze = client.patch(f"/users/{user_id}/scan-config", json={"snooze_until": "later"})
    assert bad_snooze.status_code == 422
    missing = client.patch("/users/missing/scan-config", json={"threshold": 70})
    assert missing.status_code == 404


def test_cron_scan_creates_tickets_and_sends_digest(
    client: TestClient,
    job_source,
    email_sender,
) -> None:
    user_id = _onboard(client)
    job_source.add("BizOps Lead", "Acme", "Own planning and reporting.")

    response = client.get("/cron/scan-jobs")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["scan"] == {"users_scanned": 1, "total_tickets_created": 1, "errors": []}
    assert [(item["user_id"], item["success"]) for item in body["digests"]] == [(user_id, True)]
    subjects = [message.subject for message in email_sender.sent]
    assert subjects == [
        "\U0001f389 High Fit Alert: BizOps Lead at Acme",
        "\U0001f3af Daily Digest: 1 new job found",
    ]
    types = [item["type"] for item in client.get(f"/users/{user_id}/notifications").json()]
    assert sorted(types) == ["DAILY_DIGEST", "HIGH_FIT_ALERT", "NEW_TICKET"]

    second = client.post("/cron/scan-jobs")
    assert second.json()["scan"]["total_tickets_created"] == 0


def test_cron_scan_reports_errors_with_success_status(
    client: TestClient,
    job_source,
    fake_llm,
) -> None:
    _onboard(client)
    job_source.add("Broken Role", "Initech", "Fails to score.")
    fake_llm.failing_titles.add("Broken Role")

    response = client.post("/cron/scan-jobs")

    assert response.status_code == 200
    assert response.json()["scan"]["errors"] == [
        "Error processing job Broken Role at Initech: model unavailable"
    ]


def test_ticket_lifecycle_and_artifacts(client: TestClient, job_source) -> None:
    user_id = _onboard(client)
    job_source.add("BizOps Lead", "Acme", "Own planning and reporting.")
    scan = client.post(f"/users/{user_id}/scan")
    assert scan.status_code == 200
    assert scan.json()["tickets_created"] == 1

    tickets = client.get(f"/users/{user_id}/tickets").json()
    ticket_id = tickets[0]["id"]
    assert tickets[0]["job"]["title"] == "BizOps Lead"
    assert tickets[0]["overall_score"] == 93.2

    submitted = client.patch(
        f"/users/{user_id}/tickets/{ticket_id}",
        json={"status": "SUBMITTED", "application_method": "Referral"},
    )
    assert submitted.status_code == 200
    submitted_at = submitted.json()["submitted_at"]
    assert submitted_at is not None
    resubmitted = client.patch(
        f"/users/{user_id}/tickets/{ticket_id}",
        json={"status": "SUBMITTED"},
    )
    assert resubmitted.json()["submitted_at"] == submitted_at
    assert resubmitted.json()["application_method"] == "Referral"

    filtered = client.get(f"/users/{user_id}/tickets", params={"status": "IDENTIFIED"})
    assert filtered.json() == []

    generated = client.post(f"/users/{user_id}/tickets/{ticket_id}/artifacts")
    assert generated.status_code == 200
    regenerated = client.post(f"/users/{user_id}/tickets/{ticket_id}/artifacts")
    artifacts = regenerated.json()["artifacts"]
    assert [item["type"] for item in artifacts] == ["CV_DOCX", "CV_PDF", "COVER_LETTER_TXT"]
    detail = client.get(f"/users/{user_id}/tickets/{ticket_id}").json()
    assert [item["id"] for item in detail["artifacts"]] == [item["id"] for item in artifacts]

    download = client.get(f"/users/{user_id}/artifacts/{artifacts[2]['id']}/download")
    assert download.status_code == 200
    assert download.headers["content-type"].startswith("text/plain")
    assert "attachment" in download.headers["content-disposition"]
    assert "Re: BizOps Lead at Acme" in download.text

    pdf = client.get(f"/users/{user_id}/artifacts/{artifacts[1]['id']}/download")
    assert pdf.content.startswith(b"%PDF")
    assert client.get(f"/users/other/artifacts/{artifacts[1]['id']}/download").status_code == 404
    assert client.get(f"/users/{user_id}/tickets/missing").status_code == 404


def test_insights_endpoint(client: TestClient, job_source) -> None:
    user_id = _onboard(client)
    job_source.add("BizOps Lead", "Acme", "Own planning and reporting.")
    client.post(f"/users/{user_id}/scan")

    insights = client.get(f"/users/{user_id}/insights").json()

    assert insights["new_roles_today"] == 1
    assert insights["top_companies"] == [{"name": "Acme", "count": 1}]
    assert insights["status_distribution"] == {"IDENTIFIED": 1}
    assert len(insights["daily_tickets"]) == 7


def test_job_sources_can_be_registered(client: TestClient) -> None:
    response = client.post(
        "/job-sources",
        json={
            "source_id": "builtin_demo",
            "name": "Builtin Demo",
            "source_type": "inline_json",
            "postings": [
                {"title": "BizOps Lead", "company": "Acme", "description": "Own planning."}
            ],
        },
    )
    assert response.status_code == 200
    assert response.json()["config"]["postings"][0]["company"] == "Acme"

    invalid = client.post(
        "/job-sources",
        json={"source_id": "remote", "name": "Remote", "source_type": "json_url"},
    )
    assert invalid.status_code == 422
    listed = client.get("/job-sources").json()
    assert [item["source_id"] for item in listed] == ["builtin_demo"]


def test_metrics_and_request_ids(client: TestClient) -> None:
    client.get("/health", headers={"x-request-id": "req-123"})
    client.get("/users/missing")

    metrics = client.get("/metrics").json()

    assert metrics["totals"]["requests"] >= 2
    assert metrics["totals"]["errors"] >= 1
    assert metrics["endpoints"]["GET /health"]["2xx"] == 1
    response = client.get("/health", headers={"x-request-id": "req-456"})
    assert response.headers["x-request-id"] == "req-456"


def test_scoped_tokens_guard_writes(tmp_path: Path, fake_llm, email_sender, job_source) -> None:
    app = create_app(
        database_path=str(tmp_path / "scanner.sqlite3"),
        api_tokens={"reader": [], "writer": ["users:write"]},
        cron_secret="cron-secret",
        llm=fake_llm,
        email_sender=email_sender,
        job_source=job_source,
    )
    payload = {"email": "ada@example.com", "name": "Ada"}
    with TestClient(app) as client:
        assert client.post("/users", json=payload).status_code == 401
        assert client.post("/users", json=payload, headers={"x-api-key": "nope"}).status_code == 401
        assert (
            client.post("/users", json=payload, headers={"x-api-key": "reader"}).status_code
            == 403
        )
        created = client.post("/users", json=payload, headers={"x-api-key": "writer"})
        assert created.status_code == 200

        assert client.get("/cron/scan-jobs").status_code == 401
        assert (
            client.get(
                "/cron/scan-jobs",
                headers={"Authorization": "Bearer writer"},
            ).status_code
            == 403
        )
        cron = client.get("/cron/scan-jobs", headers={"Authorization": "Bearer cron-secret"})
        assert cron.status_code == 200
        digest = client.post("/cron/digest", headers={"Authorization": "Bearer cron-secret"})
        assert digest.json() == {"success": True, "digests": []}


def test_api_key_from_environment_grants_all_scopes(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    fake_llm,
    email_sender,
    job_source,
) -> None:
    monkeypatch.setenv("SCANNER_API_KEY", "admin-key")
    monkeypatch.setenv("SCANNER_API_TOKENS_JSON", json.dumps({"ops": ["sources:write"]}))
    app = create_app(
        database_path=str(tmp_path / "scanner.sqlite3"),
        llm=fake_llm,
        email_sender=email_sender,
        job_source=job_source,
    )
    with TestClient(app) as client:
        created = client.post(
            "/users",
            json={"email": "ada@example.com", "name": "Ada"},
            headers={"x-api-key": "admin-key"},
        )
        assert created.status_code == 200
        forbidden = client.post(
            "/users",
            json={"email": "grace@example.com", "name": "Grace"},
            headers={"x-api-key": "ops"},
        )
        assert forbidden.status_code == 403


def test_parse_api_tokens_validates_shape() -> None:
    assert parse_api_tokens('{"a": "scan", "b": ["users:write", " "]}') == {
        "a": {"scan"},
        "b": {"users:write"},
    }
    with pytest.raises(ValueError):
        parse_api_tokens("[]")
    with pytest.raises(ValueError):
        parse_api_tokens('{"a": 1}')
