from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Iterable
from uuid import uuid4

from ledger_api.core.payloads import values_equal
from ledger_api.services.errors import RepositoryConflictError, RepositoryValidationError
from ledger_api.services.records import (
    CONFLICT_DECISIONS,
    ChangeRecord,
    LocalFact,
    SyncConflict,
)


def disagrees(local_fact: LocalFact | None, remote_value: Any, *, tolerance: float = 0.01) -> bool:
    if local_fact is None or not local_fact.is_authoritative:
        return False
    return not values_equal(local_fact.value, remote_value, tolerance=tolerance)


def needs_conflict(change: ChangeRecord, local_fact: LocalFact | None, *, tolerance: float = 0.01) -> bool:
    if local_fact is None or change.is_duplicate or local_fact.field_path != change.field_path:
        return False
    return disagrees(local_fact, change.new_value, tolerance=tolerance)


def find_open_conflict(
    change: ChangeRecord,
    conflicts: Iterable[SyncConflict],
    *,
    tolerance: float = 0.01,
) -> SyncConflict | None:
    return open_conflict_for(change.field_path, change.new_value, conflicts, tolerance=tolerance)


def open_conflict_for(
    field_path: str,
    remote_value: Any,
    conflicts: Iterable[SyncConflict],
    *,
    tolerance: float = 0.01,
) -> SyncConflict | None:
    for conflict in conflicts:
        if conflict.resolution_status != "unresolved" or conflict.field_path != field_path:
            continue
        if values_equal(conflict.remote_data.get("value"), remote_value, tolerance=tolerance):
            return conflict
    return None


def already_raised(
    local_fact: LocalFact,
    remote_value: Any,
    conflicts: Iterable[SyncConflict],
    *,
    tolerance: float = 0.01,
) -> bool:
    """Whether this local/remote disagreement is already open or was decided."""
    for conflict in conflicts:
        if conflict.field_path != local_fact.field_path:
            continue
        if not values_equal(conflict.remote_data.get("value"), remote_value, tolerance=tolerance):
            continue
        if conflict.resolution_status == "unresolved":
            return True
        if values_equal(conflict.local_data.get("value"), local_fact.value, tolerance=tolerance):
            return True
    return False


def build_conflict(change: ChangeRecord, local_fact: LocalFact, *, now: datetime) -> SyncConflict:
    remote_data = {
        "value": change.new_value,
        "previous_value": change.old_value,
        "endpoint": change.endpoint,
        "change_id": change.id,
        "detected_at": change.detected_at.isoformat(),
    }
    return _new_conflict(local_fact, remote_data=remote_data, change_id=change.id, now=now)


def build_observed_conflict(
    local_fact: LocalFact,
    *,
    remote_value: Any,
    endpoint: str | None,
    observed_at: datetime | None,
    record_id: str | None,
    change_id: str | None,
    now: datetime,
) -> SyncConflict:
    """Conflict against a remote value that was already stored, not a fresh change."""
    remote_data = {
        "value": remote_value,
        "endpoint": endpoint,
        "record_id": record_id,
        "change_id": change_id,
        "detected_at": observed_at.isoformat() if observed_at else None,
    }
    return _new_conflict(local_fact, remote_data=remote_data, change_id=change_id, now=now)


def _new_conflict(
    local_fact: LocalFact,
    *,
    remote_data: dict[str, Any],
    change_id: str | None,
    now: datetime,
) -> SyncConflict:
    return SyncConflict(
        id=str(uuid4()),
        employee_id=local_fact.employee_id,
        field_path=local_fact.field_path,
        conflict_type="value_mismatch",
        local_data={
            "value": local_fact.value,
            "set_by": local_fact.set_by,
            "set_at": local_fact.set_at.isoformat(),
        },
        remote_data=remote_data,
        change_id=change_id,
        resolution_status="unresolved",
        resolution=None,
        resolved_by=None,
        resolved_at=None,
        created_at=now,
    )


def apply_decision(conflict: SyncConflict, *, decision: str, resolved_by: str, now: datetime) -> SyncConflict:
    if decision not in CONFLICT_DECISIONS:
        raise RepositoryValidationError("decision must be one of: keep_local, accept_remote, ignore")
    if not resolved_by or not resolved_by.strip():
        raise RepositoryValidationError("resolved_by must be a non-empty string")
    if conflict.resolution_status != "unresolved":
        raise RepositoryConflictError("conflict is already closed")

    conflict.resolution_status = "ignored" if decision == "ignore" else "resolved"
    conflict.resolution = None if decision == "ignore" else decision
    conflict.resolved_by = resolved_by.strip()
    conflict.resolved_at = now
    return conflict


def local_wins(local_fact: LocalFact | None, conflicts: Iterable[SyncConflict]) -> bool:
    """Whether the current read-model should serve the local value."""
    if local_fact is None or not local_fact.is_authoritative:
        return False
    relevant = [conflict for conflict in conflicts if conflict.field_path == local_fact.field_path]
    if not relevant:
        return False
    if any(conflict.resolution_status == "unresolved" for conflict in relevant):
        return True
    latest = max(relevant, key=lambda conflict: (conflict.resolved_at or conflict.created_at, conflict.id))
    return latest.resolution == "keep_local"


def is_escalated(conflict: SyncConflict, *, now: datetime, threshold_hours: int) -> bool:
    if conflict.resolution_status != "unresolved":
        return False
    return now - conflict.created_at >= timedelta(hours=threshold_hours)


def conflict_event_payload(conflict: SyncConflict) -> dict[str, Any]:
    return {
        "employee_id": conflict.employee_id,
        "field_path": conflict.field_path,
        "local_value": conflict.local_data.get("value"),
        "remote_value": conflict.remote_data.get("value"),
    }
