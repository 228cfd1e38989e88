from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from ledger_api.services import versioning
from ledger_api.services.errors import ChainIntegrityError, HashCollisionError, RepositoryValidationError
from ledger_api.services.records import FetchMetadata, IngestOutcome
from ledger_api.services.store import InMemoryRepository
from ledger_api.services.versioning import compute_confidence, plan_ingest, validate_chain

JAN_1 = datetime(2024, 1, 1, 9, tzinfo=timezone.utc)


def _meta(at: datetime, **kwargs) -> FetchMetadata:
    return FetchMetadata(collected_at=at, **kwargs)


def test_confidence_decays_with_retries_and_partial_data() -> None:
    assert compute_confidence(retry_count=0, is_partial=False, retry_penalty=0.1, partial_penalty=0.3) == 1.0
    assert compute_confidence(retry_count=2, is_partial=False, retry_penalty=0.1, partial_penalty=0.3) == 0.8
    assert compute_confidence(retry_count=1, is_partial=True, retry_penalty=0.1, partial_penalty=0.3) == 0.6
    assert compute_confidence(retry_count=20, is_partial=True, retry_penalty=0.1, partial_penalty=0.3) == 0.0


def test_chain_keeps_exactly_one_latest_and_contiguous_pointers() -> None:
    repository = InMemoryRepository()

    async def run() -> list:
        for offset, salary in enumerate([2000, 2100, 2200, 2300]):
            await repository.ingest(
                employee_id="emp-1",
                endpoint="/employee",
                payload={"salary": {"gross_monthly": salary}},
                metadata=_meta(JAN_1 + timedelta(days=30 * offset)),
            )
        return await repository.list_versions("emp-1", "/employee")

    versions = asyncio.run(run())

    assert len(versions) == 4
    assert [version.is_latest for version in versions] == [False, False, False, True]
    assert validate_chain(versions) == []
    for older, newer in zip(versions, versions[1:]):
        assert older.superseded_by == newer.id
        assert newer.supersedes == older.id
        assert older.effective_to == newer.effective_from
    assert asyncio.run(repository.validate_chain("emp-1", "/employee")) == []


def test_reingesting_identical_payload_only_refreshes_verification() -> None:
    repository = InMemoryRepository()
    payload = {"salary": {"gross_monthly": 2000}, "name": "Anna"}

    async def run() -> tuple[IngestOutcome, IngestOutcome, list]:
        first = await repository.ingest(employee_id="emp-1", endpoint="/employee", payload=payload, metadata=_meta(JAN_1))
        second = await repository.ingest(
            employee_id="emp-1",
            endpoint="/employee",
            payload={"name": "Anna", "salary": {"gross_monthly": 2000}},
            metadata=_meta(JAN_1 + timedelta(days=1)),
        )
        return first, second, await repository.list_versions("emp-1")

    first, second, versions = asyncio.run(run())

    assert second.duplicate is True
    assert second.version.id == first.version.id
    assert second.session_outcome == "unchanged"
    assert len(versions) == 1
    assert versions[0].last_verified_at == JAN_1 + timedelta(days=1)
    assert versions[0].collected_at == JAN_1


def test_out_of_order_payload_is_ignored_as_stale() -> None:
    repository = InMemoryRepository()

    async def run() -> IngestOutcome:
        await repository.ingest(
            employee_id="emp-1",
            endpoint="/employee",
            payload={"salary": {"gross_monthly": 2200}},
            metadata=_meta(JAN_1 + timedelta(days=60)),
        )
        return await repository.ingest(
            employee_id="emp-1",
            endpoint="/employee",
            payload={"salary": {"gross_monthly": 2000}},
            metadata=_meta(JAN_1),
        )

    outcome = asyncio.run(run())

    assert outcome.stale is True
    assert outcome.session_outcome == "unchanged"
    assert len(asyncio.run(repository.list_versions("emp-1"))) == 1


def test_clean_retry_recovers_partial_version() -> None:
    repository = InMemoryRepository()
    payload = {"hours": {"per_week": 36}}

    async def run() -> tuple[IngestOutcome, str, IngestOutcome]:
        first = await repository.ingest(
            employee_id="emp-1",
            endpoint="/hours",
            payload=payload,
            metadata=_meta(JAN_1, is_partial=True, http_status=206),
        )
        degraded = await repository.sync_status("emp-1")
        second = await repository.ingest(
            employee_id="emp-1",
            endpoint="/hours",
            payload={"hours": {"per_week": 36}},
            metadata=_meta(JAN_1 + timedelta(hours=1), http_status=200),
        )
        return first, degraded, second

    first, degraded, second = asyncio.run(run())
    versions = asyncio.run(repository.list_versions("emp-1", "/hours"))

    assert first.version.is_partial is True
    assert degraded == "degraded"
    assert second.recovered is True
    assert second.duplicate is False
    assert second.session_outcome == "succeeded"
    assert second.changes == []
    assert second.version.is_partial is False
    assert second.version.confidence_score == 1.0
    assert second.version.supersedes == first.version.id
    assert len(versions) == 2
    assert validate_chain(versions) == []
    assert asyncio.run(repository.list_changes("emp-1")) == []
    assert asyncio.run(repository.sync_status("emp-1")) == "up_to_date"


def test_identical_partial_retry_stays_duplicate() -> None:
    repository = InMemoryRepository()

    async def run() -> IngestOutcome:
        for offset in range(2):
            outcome = await repository.ingest(
                employee_id="emp-1",
                endpoint="/hours",
                payload={"hours": {"per_week": 36}},
                metadata=_meta(JAN_1 + timedelta(hours=offset), is_partial=True, http_status=206),
            )
        return outcome

    outcome = asyncio.run(run())

    assert outcome.duplicate is True
    assert outcome.recovered is False
    assert len(asyncio.run(repository.list_versions("emp-1"))) == 1


def test_hash_collision_is_fatal(monkeypatch) -> None:
    repository = InMemoryRepository()
    monkeypatch.setattr(versioning, "content_hash", lambda payload: "0" * 64)

    async def run() -> None:
        await repository.ingest(employee_id="emp-1", endpoint="/employee", payload={"a": 1}, metadata=_meta(JAN_1))
        await repository.ingest(
            employee_id="emp-1",
            endpoint="/employee",
            payload={"a": 2},
            metadata=_meta(JAN_1 + timedelta(days=1)),
        )

    with pytest.raises(HashCollisionError):
        asyncio.run(run())
    versions = asyncio.run(repository.list_versions("emp-1"))
    assert len(versions) == 1
    assert versions[0].payload == {"a": 1}


def test_plan_ingest_decisions() -> None:
    repository = InMemoryRepository()
    created = asyncio.run(
        repository.ingest(employee_id="emp-1", endpoint="/employee", payload={"a": 1}, metadata=_meta(JAN_1))
    )
    latest = created.version

    assert plan_ingest(employee_id="emp-1", endpoint="/employee", payload={"a": 1}, latest=None, collected_at=JAN_1).action == "create"
    assert plan_ingest(employee_id="emp-1", endpoint="/employee", payload={"a": 1}, latest=latest, collected_at=JAN_1).action == "duplicate"
    later = plan_ingest(
        employee_id="emp-1",
        endpoint="/employee",
        payload={"a": 2},
        latest=latest,
        collected_at=JAN_1 + timedelta(hours=1),
    )
    assert later.action == "supersede"
    assert later.expected_latest_id == latest.id

    partial = asyncio.run(
        repository.ingest(
            employee_id="emp-2",
            endpoint="/employee",
            payload={"a": 1},
            metadata=_meta(JAN_1, is_partial=True),
        )
    ).version
    recovered = plan_ingest(
        employee_id="emp-2",
        endpoint="/employee",
        payload={"a": 1},
        latest=partial,
        collected_at=JAN_1 + timedelta(hours=1),
        confidence_score=1.0,
    )
    assert recovered.action == "recover"
    assert recovered.expected_latest_id == partial.id
    older = plan_ingest(
        employee_id="emp-2",
        endpoint="/employee",
        payload={"a": 1},
        latest=partial,
        collected_at=JAN_1 - timedelta(hours=1),
        confidence_score=1.0,
    )
    assert older.action == "duplicate"


def test_lost_supersession_race_is_retried() -> None:
    class RacingRepository(InMemoryRepository):
        def __init__(self) -> None:
            super().__init__()
            self.attempts = 0

        async def _ingest_once(self, **kwargs) -> IngestOutcome:
            self.attempts += 1
            if self.attempts == 1:
                raise ChainIntegrityError(employee_id="emp-1", endpoint="/employee", expected_latest_id=None)
            return await super()._ingest_once(**kwargs)

    repository = RacingRepository()
    outcome = asyncio.run(
        repository.ingest(employee_id="emp-1", endpoint="/employee", payload={"a": 1}, metadata=_meta(JAN_1))
    )

    assert repository.attempts == 2
    assert outcome.version.is_latest is True


def test_exhausted_supersession_retries_raise() -> None:
    class LosingRepository(InMemoryRepository):
        def __init__(self) -> None:
            super().__init__()
            self.attempts = 0

        async def _ingest_once(self, **kwargs) -> IngestOutcome:
            self.attempts += 1
            raise ChainIntegrityError(employee_id="emp-1", endpoint="/employee", expected_latest_id="v-1")

    repository = LosingRepository()
    with pytest.raises(ChainIntegrityError):
        asyncio.run(repository.ingest(employee_id="emp-1", endpoint="/employee", payload={"a": 1}, metadata=_meta(JAN_1)))
    assert repository.attempts == repository.policy.ingest_max_chain_retries


def test_backend_ingest_requires_collection_time() -> None:
    repository = InMemoryRepository()

    with pytest.raises(RepositoryValidationError):
        asyncio.run(
            repository._ingest_once(employee_id="emp-1", endpoint="/employee", payload={"a": 1}, metadata=FetchMetadata())
        )
    assert asyncio.run(repository.list_versions("emp-1")) == []


def test_validate_chain_reports_two_latest_versions() -> None:
    repository = InMemoryRepository()

    async def run() -> list:
        await repository.ingest(employee_id="emp-1", endpoint="/employee", payload={"a": 1}, metadata=_meta(JAN_1))
        await repository.ingest(
            employee_id="emp-1",
            endpoint="/employee",
            payload={"a": 2},
            metadata=_meta(JAN_1 + timedelta(days=1)),
        )
        return await repository.list_versions("emp-1")

    versions = asyncio.run(run())
    versions[0].is_latest = True

    problems = validate_chain(versions)
    assert "expected exactly one latest version, found 2" in problems
