from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Iterable, Literal

from ledger_api.services.records import Job, RawVersion, SessionStatus, SyncConflict, SyncSession

EmployeeSyncStatus = Literal["up_to_date", "syncing", "degraded", "conflict_pending"]


def terminal_status(session: SyncSession) -> SessionStatus:
    if session.failed_records <= 0:
        return "completed"
    if session.failed_records >= session.total_records:
        return "failed"
    return "partial"


def reported_records(session: SyncSession) -> int:
    # unchanged outcomes count as successful
    return session.successful_records + session.failed_records


def all_reported(session: SyncSession) -> bool:
    return session.total_records > 0 and reported_records(session) >= session.total_records


def is_expired(session: SyncSession, *, now: datetime, max_runtime_seconds: int) -> bool:
    if session.status != "running":
        return False
    return now - session.started_at > timedelta(seconds=max_runtime_seconds)


def session_event_type(status: SessionStatus) -> str:
    return f"sync_session_{status}"


def sync_status(
    *,
    conflicts: Iterable[SyncConflict],
    jobs: Iterable[Job],
    latest_versions: Iterable[RawVersion],
    confidence_floor: float,
) -> EmployeeSyncStatus:
    if any(conflict.resolution_status == "unresolved" for conflict in conflicts):
        return "conflict_pending"
    if any(job.status in {"pending", "processing"} for job in jobs):
        return "syncing"
    if any(version.is_partial or version.confidence_score < confidence_floor for version in latest_versions):
        return "degraded"
    return "up_to_date"


def unique_text(values: Iterable[str]) -> list[str]:
    seen: list[str] = []
    for value in values:
        if not isinstance(value, str):
            continue
        candidate = value.strip()
        if candidate and candidate not in seen:
            seen.append(candidate)
    return seen


def session_event_payload(session: SyncSession) -> dict[str, Any]:
    return {
        "status": session.status,
        "session_type": session.session_type,
        "source": session.source,
        "total_records": session.total_records,
        "successful_records": session.successful_records,
        "failed_records": session.failed_records,
        "reason": session.sync_details.get("reason"),
    }
