from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from ledger_api.services.errors import RepositoryNotFoundError, RepositoryValidationError
from ledger_api.services.store import InMemoryRepository

START = datetime(2024, 3, 1, 8, tzinfo=timezone.utc)


def _fetch_result(salary: int) -> dict:
    return {
        "payload": {"salary": {"gross_monthly": salary}},
        "metadata": {"http_status": 200, "collected_at": START.isoformat()},
    }


async def _drain(repository: InMemoryRepository, results: dict[str, dict | None]) -> None:
    """Claim every runnable job; ``None`` in ``results`` means fail it for good."""
    while True:
        job = await repository.claim_next("worker-a")
        if job is None:
            return
        result = results[job.payload["employee_id"]]
        if result is None:
            await repository.fail_job(job.id, "worker-a", "provider returned HTTP 404", retryable=False)
        else:
            await repository.complete_job(job.id, "worker-a", result)


def test_start_sync_fans_out_one_job_per_pair() -> None:
    repository = InMemoryRepository()

    session, jobs = asyncio.run(
        repository.start_sync(
            session_type="manual",
            source="hr-portal",
            employee_ids=["emp-1", "emp-2", "emp-1", " "],
            endpoints=["/employee", "/contracts"],
            priority=3,
        )
    )

    assert session.status == "running"
    assert session.total_records == 4
    assert session.sync_details == {"employee_count": 2, "endpoints": ["/employee", "/contracts"]}
    assert sorted((job.payload["employee_id"], job.payload["endpoint"]) for job in jobs) == [
        ("emp-1", "/contracts"),
        ("emp-1", "/employee"),
        ("emp-2", "/contracts"),
        ("emp-2", "/employee"),
    ]
    assert {job.priority for job in jobs} == {3}
    assert {job.sync_session_id for job in jobs} == {session.id}


def test_session_finishes_partial_when_some_records_fail() -> None:
    repository = InMemoryRepository()

    async def run():
        session, _ = await repository.start_sync(
            session_type="scheduled",
            source="scheduler",
            employee_ids=["emp-1", "emp-2"],
            endpoints=["/employee"],
        )
        await _drain(repository, {"emp-1": _fetch_result(2000), "emp-2": None})
        return await repository.get_session(session.id), await repository.list_events()

    session, events = asyncio.run(run())

    assert session.status == "partial"
    assert (session.successful_records, session.failed_records) == (1, 1)
    assert session.completed_at is not None
    assert [event.event_type for event in events] == ["sync_session_partial"]
    assert events[0].payload["failed_records"] == 1


def test_session_fails_when_every_record_fails() -> None:
    repository = InMemoryRepository()

    async def run():
        session, _ = await repository.start_sync(
            session_type="manual", source="test", employee_ids=["emp-1"], endpoints=["/employee"]
        )
        await _drain(repository, {"emp-1": None})
        return await repository.get_session(session.id)

    assert asyncio.run(run()).status == "failed"


def test_unchanged_payload_counts_as_success() -> None:
    repository = InMemoryRepository()

    async def run():
        for _ in range(2):
            session, _ = await repository.start_sync(
                session_type="manual", source="test", employee_ids=["emp-1"], endpoints=["/employee"]
            )
            await _drain(repository, {"emp-1": _fetch_result(2000)})
        return await repository.get_session(session.id), await repository.list_versions("emp-1")

    session, versions = asyncio.run(run())

    assert session.status == "completed"
    assert session.successful_records == 1
    assert session.sync_details["unchanged_records"] == 1
    assert len(versions) == 1


def test_record_result_is_counted_once_per_pair() -> None:
    repository = InMemoryRepository()

    async def run():
        session, _ = await repository.start_sync(
            session_type="manual", source="test", employee_ids=["emp-1", "emp-2"], endpoints=["/employee"]
        )
        await repository.record_result(session.id, "emp-1", "/employee", "succeeded")
        return await repository.record_result(session.id, "emp-1", "/employee", "failed")

    session = asyncio.run(run())

    assert session.status == "running"
    assert (session.successful_records, session.failed_records) == (1, 0)


def test_late_results_after_finish_are_not_counted() -> None:
    repository = InMemoryRepository()

    async def run():
        session, _ = await repository.start_sync(
            session_type="manual", source="test", employee_ids=["emp-1", "emp-2"], endpoints=["/employee"]
        )
        await repository.record_result(session.id, "emp-1", "/employee", "succeeded")
        finished = await repository.finish_session(session.id)
        late = await repository.record_result(session.id, "emp-2", "/employee", "failed")
        return finished, late

    finished, late = asyncio.run(run())

    assert finished.status == "completed"
    assert finished.sync_details["unreported_records"] == 1
    assert late.failed_records == 0


def test_empty_sync_completes_immediately() -> None:
    repository = InMemoryRepository()

    session, jobs = asyncio.run(
        repository.start_sync(session_type="manual", source="test", employee_ids=[], endpoints=["/employee"])
    )

    assert jobs == []
    assert session.status == "completed"


def test_start_sync_requires_endpoints_and_unknown_sessions_404() -> None:
    repository = InMemoryRepository()

    with pytest.raises(RepositoryValidationError):
        asyncio.run(repository.start_sync(session_type="manual", source="test", employee_ids=["emp-1"], endpoints=[]))
    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(repository.get_session("missing"))
    with pytest.raises(RepositoryValidationError):
        asyncio.run(repository.start_session("manual", " "))


def test_sync_status_progression() -> None:
    repository = InMemoryRepository()

    async def run() -> list[str]:
        statuses = []
        session, _ = await repository.start_sync(
            session_type="manual", source="test", employee_ids=["emp-1"], endpoints=["/employee"]
        )
        statuses.append(await repository.sync_status("emp-1"))
        job = await repository.claim_next("worker-a")
        await repository.complete_job(
            job.id,
            "worker-a",
            {"payload": {"salary": {"gross_monthly": 2000}}, "metadata": {"is_partial": True}},
        )
        statuses.append(await repository.sync_status("emp-1"))
        await repository.ingest(
            employee_id="emp-1",
            endpoint="/employee",
            payload={"salary": {"gross_monthly": 2100}},
        )
        statuses.append(await repository.sync_status("emp-1"))
        return statuses

    assert asyncio.run(run()) == ["syncing", "degraded", "up_to_date"]


def test_scheduled_sync_result_starts_a_session() -> None:
    repository = InMemoryRepository()

    async def run():
        job = await repository.enqueue_job(
            job_type="scheduled_sync",
            payload={"source": "nightly", "endpoints": ["/employee", "/hours"], "priority": 2},
        )
        await repository.claim_next("worker-a", job_type="scheduled_sync")
        completed = await repository.complete_job(job.id, "worker-a", {"employee_ids": ["emp-1", "emp-2"]})
        session = await repository.get_session(completed.result["session_id"])
        fetches = await repository.list_jobs(sync_session_id=session.id)
        return completed, session, fetches

    completed, session, fetches = asyncio.run(run())

    assert completed.result["job_count"] == 4
    assert session.session_type == "scheduled"
    assert session.source == "nightly"
    assert session.total_records == 4
    assert {job.priority for job in fetches} == {2}
