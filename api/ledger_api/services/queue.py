from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Iterable

from ledger_api.services.records import Job, SyncSession


def retry_delay_seconds(*, attempts: int, base_seconds: int, max_seconds: int) -> int:
    if base_seconds <= 0:
        return 0
    delay = base_seconds * (2 ** max(0, attempts))
    return min(delay, max_seconds)


def claim_order_key(job: Job) -> tuple[int, datetime, datetime, str]:
    return (-job.priority, job.scheduled_for, job.created_at, job.id)


def is_claimable(
    job: Job,
    *,
    now: datetime,
    sessions: dict[str, SyncSession],
    job_type: str | None = None,
) -> bool:
    if job.status != "pending" or job.scheduled_for > now:
        return False
    if job_type is not None and job.job_type != job_type:
        return False
    if job.sync_session_id is not None:
        session = sessions.get(job.sync_session_id)
        if session is None or session.status != "running":
            return False
    return True


def pick_next(
    jobs: Iterable[Job],
    *,
    now: datetime,
    sessions: dict[str, SyncSession],
    job_type: str | None = None,
) -> Job | None:
    eligible = [job for job in jobs if is_claimable(job, now=now, sessions=sessions, job_type=job_type)]
    if not eligible:
        return None
    return min(eligible, key=claim_order_key)


def is_starving(job: Job, *, now: datetime, max_age_seconds: int, priority: int) -> bool:
    if job.status != "pending" or job.priority >= priority:
        return False
    return now - job.created_at >= timedelta(seconds=max_age_seconds)


def lease_expired(job: Job, *, now: datetime) -> bool:
    return job.status == "processing" and job.lease_expires_at is not None and job.lease_expires_at <= now


def targets_employee(job: Job, employee_id: str) -> bool:
    return str(job.payload.get("employee_id") or "") == employee_id


def error_details(error: str | None, *, retryable: bool, extra: dict[str, Any] | None = None) -> dict[str, Any]:
    details: dict[str, Any] = {"message": (error or "unknown error")[:2000], "retryable": retryable}
    if extra:
        details.update(extra)
    return details
