from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from ledger_api.services.conflicts import find_open_conflict, local_wins
from ledger_api.services.errors import RepositoryConflictError, RepositoryValidationError
from ledger_api.services.records import FetchMetadata
from ledger_api.services.store import InMemoryRepository

JAN_1 = datetime(2024, 1, 1, 9, tzinfo=timezone.utc)
MAR_1 = datetime(2024, 3, 1, 9, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _hours_conflict(clock: Clock | None = None) -> InMemoryRepository:
    """Local record says 32 hours, the provider moves from 32 to 36."""
    repository = InMemoryRepository(clock=clock)

    async def run() -> None:
        await repository.set_local_fact(employee_id="emp-1", field_path="hours.per_week", value=32, set_by="hr")
        await repository.ingest(
            employee_id="emp-1",
            endpoint="/hours",
            payload={"hours": {"per_week": 32}},
            metadata=FetchMetadata(collected_at=JAN_1),
        )
        await repository.ingest(
            employee_id="emp-1",
            endpoint="/hours",
            payload={"hours": {"per_week": 36}},
            metadata=FetchMetadata(collected_at=MAR_1),
        )

    asyncio.run(run())
    return repository


def test_remote_disagreement_raises_unresolved_conflict() -> None:
    repository = _hours_conflict()

    conflicts = asyncio.run(repository.list_conflicts(employee_id="emp-1"))
    events = asyncio.run(repository.list_events(event_type="conflict_raised"))

    assert len(conflicts) == 1
    conflict = conflicts[0]
    assert conflict.resolution_status == "unresolved"
    assert conflict.field_path == "hours.per_week"
    assert conflict.local_data["value"] == 32
    assert conflict.remote_data["value"] == 36
    assert conflict.change_id is not None
    assert len(events) == 1
    assert events[0].payload == {
        "employee_id": "emp-1",
        "field_path": "hours.per_week",
        "local_value": 32,
        "remote_value": 36,
    }


def test_current_read_model_serves_local_value_until_resolved() -> None:
    repository = _hours_conflict()

    current = asyncio.run(repository.current_value("emp-1", "hours.per_week"))
    remote = asyncio.run(repository.lookup_at("emp-1", "hours.per_week", MAR_1 + timedelta(days=1)))
    status = asyncio.run(repository.sync_status("emp-1"))

    assert current.value == 32
    assert current.source == "local"
    assert remote.value == 36
    assert remote.source == "change"
    assert status == "conflict_pending"


def test_keep_local_keeps_serving_local_value() -> None:
    repository = _hours_conflict()
    conflict_id = asyncio.run(repository.list_conflicts())[0].id

    resolved = asyncio.run(repository.resolve_conflict(conflict_id, "keep_local", "hr-admin"))
    current = asyncio.run(repository.current_value("emp-1", "hours.per_week"))

    assert resolved.resolution_status == "resolved"
    assert resolved.resolution == "keep_local"
    assert resolved.resolved_by == "hr-admin"
    assert current.value == 32
    assert asyncio.run(repository.sync_status("emp-1")) == "up_to_date"


def test_accept_remote_updates_local_fact() -> None:
    repository = _hours_conflict()
    conflict_id = asyncio.run(repository.list_conflicts())[0].id

    asyncio.run(repository.resolve_conflict(conflict_id, "accept_remote", "hr-admin"))
    fact = asyncio.run(repository.get_local_fact("emp-1", "hours.per_week"))
    current = asyncio.run(repository.current_value("emp-1", "hours.per_week"))

    assert fact.value == 36
    assert current.value == 36
    assert current.source == "change"


def test_ignore_lets_remote_win_and_closes_conflict() -> None:
    repository = _hours_conflict()
    conflict_id = asyncio.run(repository.list_conflicts())[0].id

    ignored = asyncio.run(repository.resolve_conflict(conflict_id, "ignore", "hr-admin"))

    assert ignored.resolution_status == "ignored"
    assert ignored.resolution is None
    assert asyncio.run(repository.current_value("emp-1", "hours.per_week")).value == 36
    with pytest.raises(RepositoryConflictError):
        asyncio.run(repository.resolve_conflict(conflict_id, "keep_local", "hr-admin"))


def test_unknown_decision_is_rejected() -> None:
    repository = _hours_conflict()
    conflict_id = asyncio.run(repository.list_conflicts())[0].id

    with pytest.raises(RepositoryValidationError):
        asyncio.run(repository.resolve_conflict(conflict_id, "merge", "hr-admin"))


def test_same_remote_value_does_not_raise_twice() -> None:
    repository = _hours_conflict()
    conflict = asyncio.run(repository.list_conflicts())[0]
    change = asyncio.run(repository.list_changes("emp-1", field_path="hours.per_week"))[0]

    assert find_open_conflict(change, [conflict]) is conflict
    assert local_wins(asyncio.run(repository.get_local_fact("emp-1", "hours.per_week")), [conflict]) is True


def test_non_authoritative_fields_never_conflict() -> None:
    repository = InMemoryRepository()

    async def run() -> list:
        await repository.set_local_fact(employee_id="emp-1", field_path="nickname", value="Annie")
        await repository.ingest(
            employee_id="emp-1",
            endpoint="/employee",
            payload={"nickname": "An"},
            metadata=FetchMetadata(collected_at=JAN_1),
        )
        await repository.ingest(
            employee_id="emp-1",
            endpoint="/employee",
            payload={"nickname": "Anna"},
            metadata=FetchMetadata(collected_at=MAR_1),
        )
        return await repository.list_conflicts()

    assert asyncio.run(run()) == []


def test_unresolved_conflicts_escalate_after_threshold() -> None:
    clock = Clock(MAR_1)
    repository = _hours_conflict(clock)

    assert asyncio.run(repository.list_escalated_conflicts()) == []
    clock.now = MAR_1 + timedelta(hours=72)
    escalated = asyncio.run(repository.list_escalated_conflicts())

    assert len(escalated) == 1
    assert escalated[0].resolution_status == "unresolved"


def test_first_observation_disagreeing_with_local_fact_raises_conflict() -> None:
    repository = InMemoryRepository()

    async def run():
        await repository.set_local_fact(employee_id="emp-1", field_path="hours.per_week", value=32, set_by="hr")
        return await repository.ingest(
            employee_id="emp-1",
            endpoint="/hours",
            payload={"hours": {"per_week": 36}},
            metadata=FetchMetadata(collected_at=JAN_1),
        )

    outcome = asyncio.run(run())
    conflicts = asyncio.run(repository.list_conflicts(employee_id="emp-1"))
    current = asyncio.run(repository.current_value("emp-1", "hours.per_week"))

    assert len(outcome.conflicts) == 1
    assert len(conflicts) == 1
    assert conflicts[0].change_id is None
    assert conflicts[0].remote_data["value"] == 36
    assert conflicts[0].remote_data["endpoint"] == "/hours"
    assert conflicts[0].remote_data["record_id"] == outcome.version.id
    assert current.value == 32
    assert current.source == "local"
    assert len(asyncio.run(repository.list_events(event_type="conflict_raised"))) == 1


def test_local_fact_set_after_remote_value_raises_conflict_once() -> None:
    repository = InMemoryRepository()

    async def run() -> None:
        await repository.ingest(
            employee_id="emp-1",
            endpoint="/hours",
            payload={"hours": {"per_week": 32}},
            metadata=FetchMetadata(collected_at=JAN_1),
        )
        await repository.ingest(
            employee_id="emp-1",
            endpoint="/hours",
            payload={"hours": {"per_week": 36}},
            metadata=FetchMetadata(collected_at=MAR_1),
        )
        await repository.set_local_fact(employee_id="emp-1", field_path="hours.per_week", value=32, set_by="hr")
        await repository.set_local_fact(employee_id="emp-1", field_path="hours.per_week", value=32, set_by="hr")

    asyncio.run(run())
    conflicts = asyncio.run(repository.list_conflicts(employee_id="emp-1"))
    change = asyncio.run(repository.list_changes("emp-1", field_path="hours.per_week"))[0]
    current = asyncio.run(repository.current_value("emp-1", "hours.per_week"))

    assert len(conflicts) == 1
    assert conflicts[0].local_data["value"] == 32
    assert conflicts[0].remote_data["value"] == 36
    assert conflicts[0].change_id == change.id
    assert current.value == 32
    assert current.source == "local"
    assert asyncio.run(repository.sync_status("emp-1")) == "conflict_pending"


def test_local_fact_matching_remote_value_raises_nothing() -> None:
    repository = InMemoryRepository()

    async def run() -> list:
        await repository.ingest(
            employee_id="emp-1",
            endpoint="/hours",
            payload={"hours": {"per_week": 36}},
            metadata=FetchMetadata(collected_at=JAN_1),
        )
        await repository.set_local_fact(employee_id="emp-1", field_path="hours.per_week", value=36, set_by="hr")
        await repository.set_local_fact(employee_id="emp-1", field_path="nickname", value="Annie", set_by="hr")
        return await repository.list_conflicts()

    assert asyncio.run(run()) == []


def test_resaving_kept_local_value_does_not_reopen_conflict() -> None:
    repository = _hours_conflict()
    conflict_id = asyncio.run(repository.list_conflicts())[0].id
    asyncio.run(repository.resolve_conflict(conflict_id, "keep_local", "hr-admin"))

    asyncio.run(repository.set_local_fact(employee_id="emp-1", field_path="hours.per_week", value=32, set_by="hr"))
    conflicts = asyncio.run(repository.list_conflicts(employee_id="emp-1"))

    assert len(conflicts) == 1
    assert conflicts[0].resolution == "keep_local"
    assert asyncio.run(repository.sync_status("emp-1")) == "up_to_date"
