import json

import pytest
from fastapi.testclient import TestClient

from ledger_api.core.auth import ALL_SCOPES, LEDGER_READ
from ledger_api.core.config import get_settings
from ledger_api.core.security import hash_api_key
from ledger_api.main import app
from ledger_api.services.repository import get_repository

WORKER_HEADERS = {"X-Module-Id": "ledger-worker", "X-API-Key": "worker-key"}
PORTAL_HEADERS = {"X-Module-Id": "hr-portal", "X-API-Key": "portal-key"}


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setenv("EL_STORAGE_BACKEND", "memory")
    monkeypatch.setenv("EL_JOB_RETRY_BASE_SECONDS", "0")
    monkeypatch.setenv(
        "EL_MODULE_CREDENTIALS_JSON",
        json.dumps(
            {
                "ledger-worker": {"key_hash": hash_api_key("worker-key"), "scopes": sorted(ALL_SCOPES)},
                "hr-portal": {"key_hash": hash_api_key("portal-key"), "scopes": [LEDGER_READ]},
            }
        ),
    )
    get_settings.cache_clear()
    get_repository.cache_clear()
    with TestClient(app) as test_client:
        yield test_client
    get_settings.cache_clear()
    get_repository.cache_clear()


def _start_sync(client: TestClient, employee_id: str = "emp-1", endpoints: list[str] | None = None) -> dict:
    response = client.post(
        "/sessions",
        headers=WORKER_HEADERS,
        json={"source": "provider", "employee_ids": [employee_id], "endpoints": endpoints or ["/employee"]},
    )
    assert response.status_code == 201
    return response.json()


def _claim(client: TestClient) -> dict | None:
    response = client.post("/jobs/claim", headers=WORKER_HEADERS, json={"worker_id": "w1"})
    assert response.status_code == 200
    return response.json()["job"]


def _complete(client: TestClient, job_id: str, payload: dict, collected_at: str) -> dict:
    response = client.post(
        f"/jobs/{job_id}/result",
        headers=WORKER_HEADERS,
        json={
            "status": "done",
            "worker_id": "w1",
            "result": {
                "payload": payload,
                "metadata": {"http_status": 200, "is_partial": False, "retry_count": 0, "collected_at": collected_at},
            },
        },
    )
    assert response.status_code == 200
    return response.json()


def test_unknown_credentials_are_rejected(client: TestClient) -> None:
    response = client.get("/employees/emp-1/status", headers={"X-Module-Id": "ledger-worker", "X-API-Key": "nope"})
    assert response.status_code == 401


def test_read_only_module_cannot_start_sync(client: TestClient) -> None:
    response = client.post("/sessions", headers=PORTAL_HEADERS, json={"source": "provider", "employee_ids": ["emp-1"]})
    assert response.status_code == 403

    response = client.get("/employees/emp-1/status", headers=PORTAL_HEADERS)
    assert response.status_code == 200
    assert response.json() == {"employee_id": "emp-1", "status": "up_to_date"}


def test_rate_limited_fetch_is_retried_and_scored(client: TestClient) -> None:
    started = _start_sync(client)
    session_id = started["session"]["id"]
    assert started["session"]["total_records"] == 1
    assert len(started["jobs"]) == 1

    status = client.get("/employees/emp-1/status", headers=PORTAL_HEADERS)
    assert status.json()["status"] == "syncing"

    for _ in range(2):
        job = _claim(client)
        assert job is not None
        assert job["locked_by"] == "ledger-worker/w1"
        failed = client.post(
            f"/jobs/{job['id']}/result",
            headers=WORKER_HEADERS,
            json={"status": "failed", "worker_id": "w1", "error": "provider returned 429", "retryable": True},
        )
        assert failed.status_code == 200
        assert failed.json()["status"] == "pending"

    job = _claim(client)
    assert job is not None
    done = _complete(client, job["id"], {"salary": {"gross_monthly": 2600}}, "2024-05-01T10:00:00+00:00")
    assert done["status"] == "completed"
    assert done["attempts"] == 2
    assert done["result"]["outcome"] == "succeeded"

    versions = client.get("/employees/emp-1/versions", headers=PORTAL_HEADERS).json()
    assert len(versions) == 1
    assert versions[0]["confidence_score"] == pytest.approx(0.8)
    assert versions[0]["retry_count"] == 2
    assert versions[0]["sync_session_id"] == session_id

    session = client.get(f"/sessions/{session_id}", headers=WORKER_HEADERS).json()
    assert session["status"] == "completed"
    assert session["successful_records"] == 1
    assert session["completed_at"] is not None

    events = client.get("/events", headers=WORKER_HEADERS, params={"event_type": "sync_session_completed"}).json()
    assert [event["entity_id"] for event in events] == [session_id]

    status = client.get("/employees/emp-1/status", headers=PORTAL_HEADERS)
    assert status.json()["status"] == "up_to_date"


def test_point_in_time_reads_over_http(client: TestClient) -> None:
    _start_sync(client)
    job = _claim(client)
    _complete(client, job["id"], {"salary": {"gross_monthly": 2600}}, "2024-05-01T10:00:00+00:00")

    same_day = client.get(
        "/employees/emp-1/values/salary.gross_monthly", headers=PORTAL_HEADERS, params={"at": "2024-05-01"}
    )
    before = client.get(
        "/employees/emp-1/values/salary.gross_monthly", headers=PORTAL_HEADERS, params={"at": "2024-04-30"}
    )
    invalid = client.get(
        "/employees/emp-1/values/salary.gross_monthly", headers=PORTAL_HEADERS, params={"at": "yesterday"}
    )

    assert same_day.status_code == 200
    assert same_day.json()["value"] == 2600
    assert same_day.json()["source"] == "baseline"
    assert before.json()["found"] is False
    assert before.json()["source"] == "none"
    assert invalid.status_code == 422


def test_second_job_completion_is_idempotent(client: TestClient) -> None:
    _start_sync(client)
    job = _claim(client)
    first = _complete(client, job["id"], {"salary": {"gross_monthly": 2600}}, "2024-05-01T10:00:00+00:00")
    second = _complete(client, job["id"], {"salary": {"gross_monthly": 9999}}, "2024-05-02T10:00:00+00:00")

    assert second == first
    versions = client.get("/employees/emp-1/versions", headers=PORTAL_HEADERS).json()
    assert len(versions) == 1


def test_result_from_another_worker_is_forbidden(client: TestClient) -> None:
    _start_sync(client)
    job = _claim(client)

    response = client.post(
        f"/jobs/{job['id']}/result",
        headers=WORKER_HEADERS,
        json={"status": "failed", "worker_id": "w2", "error": "boom"},
    )
    assert response.status_code == 403


def test_conflict_lifecycle_over_http(client: TestClient) -> None:
    put = client.put("/employees/emp-1/local-facts/hours.per_week", headers=WORKER_HEADERS, json={"value": 32})
    assert put.status_code == 200
    assert put.json()["set_by"] == "ledger-worker"

    for hours, collected_at in ((32, "2024-01-01T09:00:00+00:00"), (36, "2024-03-01T09:00:00+00:00")):
        response = client.post(
            "/ingest",
            headers=WORKER_HEADERS,
            json={
                "employee_id": "emp-1",
                "endpoint": "/hours",
                "payload": {"hours": {"per_week": hours}},
                "metadata": {"collected_at": collected_at},
            },
        )
        assert response.status_code == 200
    assert len(response.json()["conflicts"]) == 1

    conflicts = client.get("/conflicts", headers=WORKER_HEADERS, params={"status": "unresolved"}).json()
    assert len(conflicts) == 1
    current = client.get("/employees/emp-1/current/hours.per_week", headers=PORTAL_HEADERS).json()
    assert current["value"] == 32
    assert current["source"] == "local"
    assert client.get("/employees/emp-1/status", headers=PORTAL_HEADERS).json()["status"] == "conflict_pending"

    forbidden = client.post(
        f"/conflicts/{conflicts[0]['id']}/resolve", headers=PORTAL_HEADERS, json={"decision": "accept_remote"}
    )
    assert forbidden.status_code == 403

    resolved = client.post(
        f"/conflicts/{conflicts[0]['id']}/resolve", headers=WORKER_HEADERS, json={"decision": "accept_remote"}
    )
    assert resolved.status_code == 200
    assert resolved.json()["resolved_by"] == "ledger-worker"

    again = client.post(
        f"/conflicts/{conflicts[0]['id']}/resolve", headers=WORKER_HEADERS, json={"decision": "keep_local"}
    )
    assert again.status_code == 409

    current = client.get("/employees/emp-1/current/hours.per_week", headers=PORTAL_HEADERS).json()
    assert current["value"] == 36
