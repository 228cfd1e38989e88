from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

from ledger_worker import main
from ledger_worker.core.config import Settings
from ledger_worker.jobs.executor import JobOutcome


class FakeJobClient:
    def __init__(self, jobs: list[dict[str, Any]]) -> None:
        self.jobs = list(jobs)
        self.submitted: list[dict[str, Any]] = []
        self.sweeps: list[str] = []

    async def claim_next(self, *, lease_seconds: int = 120, job_type: str | None = None) -> dict[str, Any] | None:
        return self.jobs.pop(0) if self.jobs else None

    async def submit_result(self, job_id: str, **kwargs: Any) -> dict[str, Any]:
        self.submitted.append({"job_id": job_id, **kwargs})
        return {"id": job_id}

    async def reap_expired_jobs(self, limit: int = 100) -> int:
        self.sweeps.append("reap")
        return 1

    async def promote_starving_jobs(self, limit: int = 100) -> int:
        self.sweeps.append("promote")
        return 0

    async def expire_sessions(self) -> int:
        self.sweeps.append("expire")
        return 0


def _job(**overrides: Any) -> dict[str, Any]:
    job = {
        "id": "job-1",
        "job_type": "fetch_endpoint",
        "status": "processing",
        "attempts": 0,
        "payload": {"employee_id": "emp-1", "endpoint": "/employee"},
        "lease_expires_at": (datetime.now(timezone.utc) + timedelta(minutes=2)).isoformat(),
    }
    job.update(overrides)
    return job


def test_process_one_returns_false_on_empty_queue() -> None:
    client = FakeJobClient([])
    assert asyncio.run(main.process_one(client, provider=None, lease_seconds=60)) is False
    assert client.submitted == []


def test_process_one_submits_successful_outcome(monkeypatch) -> None:
    async def fake_execute(job: dict[str, Any], *, provider: Any) -> JobOutcome:
        return JobOutcome(status="done", result={"payload": {"id": job["payload"]["employee_id"]}})

    monkeypatch.setattr(main, "execute_job", fake_execute)
    client = FakeJobClient([_job()])

    assert asyncio.run(main.process_one(client, provider=None, lease_seconds=60)) is True
    assert client.submitted == [
        {
            "job_id": "job-1",
            "status": "done",
            "result": {"payload": {"id": "emp-1"}},
            "error": None,
            "retryable": True,
        }
    ]


def test_process_one_reports_failures_with_retry_hint(monkeypatch, caplog) -> None:
    async def fake_execute(job: dict[str, Any], *, provider: Any) -> JobOutcome:
        return JobOutcome(status="failed", error="provider returned HTTP 404", retryable=False)

    monkeypatch.setattr(main, "execute_job", fake_execute)
    expired = (datetime.now(timezone.utc) - timedelta(seconds=1)).isoformat()
    client = FakeJobClient([_job(lease_expires_at=expired)])

    with caplog.at_level("WARNING"):
        asyncio.run(main.process_one(client, provider=None, lease_seconds=60))

    assert client.submitted[0]["status"] == "failed"
    assert client.submitted[0]["retryable"] is False
    assert "lease expired before result submission job_id=job-1" in caplog.text
    assert "job execution failed job_id=job-1" in caplog.text


def test_sweeps_run_on_their_own_intervals() -> None:
    settings = Settings(
        lease_reaper_interval_seconds=10,
        starvation_sweep_interval_seconds=60,
        session_expiry_interval_seconds=60,
    )
    client = FakeJobClient([])
    sweeps = main.Sweeps(client, settings)

    asyncio.run(sweeps.run(100.0))
    asyncio.run(sweeps.run(105.0))
    asyncio.run(sweeps.run(111.0))

    assert client.sweeps == ["reap", "promote", "expire", "reap"]
