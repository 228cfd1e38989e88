from __future__ import annotations

import logging
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Iterable

from ledger_api.core.payloads import as_of_instant, get_path, parse_timestamp
from ledger_api.services import conflicts as conflict_rules
from ledger_api.services import queue as queue_rules
from ledger_api.services import temporal
from ledger_api.services.changes import DuplicateDecision, detect, mark_corrections, mark_duplicates
from ledger_api.services.errors import (
    ChainIntegrityError,
    HashCollisionError,
    RepositoryConflictError,
    RepositoryForbiddenError,
    RepositoryValidationError,
)
from ledger_api.services.policy import LedgerPolicy
from ledger_api.services.records import (
    FETCH_JOB_TYPE,
    JOB_TYPES,
    SCHEDULED_SYNC_JOB_TYPE,
    ChangeRecord,
    FetchMetadata,
    IngestOutcome,
    Job,
    LedgerEvent,
    LocalFact,
    RawVersion,
    SessionOutcome,
    SyncConflict,
    SyncSession,
)
from ledger_api.services.sessions import EmployeeSyncStatus, sync_status
from ledger_api.services.versioning import compute_confidence, validate_chain

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LedgerRepository:
    """Operations shared by every storage backend.

    Backends provide the atomic primitives (``_ingest_once``, ``claim_next``,
    ``_mark_job_completed``, ``_apply_job_failure`` and friends); this class
    composes them and serves the read-model.
    """

    def __init__(self, *, policy: LedgerPolicy | None = None, clock: Clock | None = None) -> None:
        self.policy = policy or LedgerPolicy()
        self._clock = clock or utc_now

    def now(self) -> datetime:
        return self._clock()

    async def close(self) -> None:
        return None

    # payload store

    async def ingest(
        self,
        *,
        employee_id: str,
        endpoint: str,
        payload: Any,
        metadata: FetchMetadata | None = None,
    ) -> IngestOutcome:
        employee_id = self._require_text(employee_id, "employee_id")
        endpoint = self._require_text(endpoint, "endpoint")
        metadata = replace(metadata) if metadata is not None else FetchMetadata()
        metadata.collected_at = as_of_instant(metadata.collected_at) if metadata.collected_at else self.now()

        attempts = max(1, self.policy.ingest_max_chain_retries)
        for attempt in range(1, attempts + 1):
            try:
                return await self._ingest_once(
                    employee_id=employee_id,
                    endpoint=endpoint,
                    payload=payload,
                    metadata=metadata,
                )
            except ChainIntegrityError as exc:
                if attempt == attempts:
                    logger.error(
                        "chain supersession retries exhausted employee_id=%s endpoint=%s attempts=%s",
                        employee_id,
                        endpoint,
                        attempts,
                    )
                    raise
                logger.warning(
                    "chain supersession lost race employee_id=%s endpoint=%s expected_latest_id=%s attempt=%s",
                    employee_id,
                    endpoint,
                    exc.expected_latest_id,
                    attempt,
                )
        raise RepositoryConflictError("chain supersession did not complete")

    async def validate_chain(self, employee_id: str, endpoint: str) -> list[str]:
        return validate_chain(await self.list_versions(employee_id, endpoint))

    @staticmethod
    def _collected_at(metadata: FetchMetadata) -> datetime:
        if metadata.collected_at is None:
            raise RepositoryValidationError("fetch metadata must carry collected_at")
        return metadata.collected_at

    def _incoming_confidence(self, metadata: FetchMetadata) -> float:
        return compute_confidence(
            retry_count=metadata.retry_count,
            is_partial=bool(metadata.is_partial),
            retry_penalty=self.policy.confidence_retry_penalty,
            partial_penalty=self.policy.confidence_partial_penalty,
        )

    def _derive_changes(
        self,
        previous: RawVersion,
        version: RawVersion,
        recent: Iterable[ChangeRecord],
    ) -> DuplicateDecision:
        incoming = detect(
            previous,
            version,
            significance=self.policy.significance,
            tolerance=self.policy.numeric_tolerance,
        )
        recent_rows = list(recent)
        decision = mark_duplicates(
            incoming,
            recent_rows,
            window_seconds=self.policy.change_duplicate_window_seconds,
            tolerance=self.policy.numeric_tolerance,
        )
        mark_corrections(
            decision.changes,
            recent_rows,
            tolerance=self.policy.numeric_tolerance,
            excluded_ids=decision.demoted_ids,
        )
        return decision

    def _derive_conflicts(
        self,
        changes: Iterable[ChangeRecord],
        local_facts: dict[str, LocalFact],
        open_conflicts: Iterable[SyncConflict],
    ) -> list[SyncConflict]:
        existing = list(open_conflicts)
        raised: list[SyncConflict] = []
        for change in changes:
            if not self.policy.is_authoritative_field(change.field_path):
                continue
            local_fact = local_facts.get(change.field_path)
            if local_fact is None:
                continue
            if not conflict_rules.needs_conflict(change, local_fact, tolerance=self.policy.numeric_tolerance):
                continue
            if conflict_rules.find_open_conflict(change, existing + raised, tolerance=self.policy.numeric_tolerance):
                continue
            raised.append(conflict_rules.build_conflict(change, local_fact, now=self.now()))
        return raised

    def _baseline_conflicts(
        self,
        version: RawVersion,
        local_facts: dict[str, LocalFact],
        open_conflicts: Iterable[SyncConflict],
    ) -> list[SyncConflict]:
        """Compare local facts against the first payload of a chain."""
        existing = list(open_conflicts)
        raised: list[SyncConflict] = []
        for field_path in sorted(local_facts):
            if not self.policy.is_authoritative_field(field_path):
                continue
            found, remote_value = get_path(version.payload, field_path)
            if not found:
                continue
            local_fact = local_facts[field_path]
            if not conflict_rules.disagrees(local_fact, remote_value, tolerance=self.policy.numeric_tolerance):
                continue
            if conflict_rules.open_conflict_for(field_path, remote_value, existing + raised, tolerance=self.policy.numeric_tolerance):
                continue
            raised.append(
                conflict_rules.build_observed_conflict(
                    local_fact,
                    remote_value=remote_value,
                    endpoint=version.endpoint,
                    observed_at=version.collected_at,
                    record_id=version.id,
                    change_id=None,
                    now=self.now(),
                )
            )
        return raised

    def _fact_conflict(
        self,
        local_fact: LocalFact,
        remote: temporal.PointInTimeValue,
        conflicts: Iterable[SyncConflict],
    ) -> SyncConflict | None:
        """Conflict for a local fact set after the remote value was already stored."""
        if not remote.found or not self.policy.is_authoritative_field(local_fact.field_path):
            return None
        tolerance = self.policy.numeric_tolerance
        if not conflict_rules.disagrees(local_fact, remote.value, tolerance=tolerance):
            return None
        if conflict_rules.already_raised(local_fact, remote.value, conflicts, tolerance=tolerance):
            return None
        return conflict_rules.build_observed_conflict(
            local_fact,
            remote_value=remote.value,
            endpoint=remote.endpoint,
            observed_at=remote.as_of,
            record_id=remote.record_id,
            change_id=remote.record_id if remote.source == "change" else None,
            now=self.now(),
        )

    # job queue

    async def complete_job(self, job_id: str, worker_id: str, result: dict[str, Any] | None) -> Job:
        job = await self.get_job(job_id)
        if job.status == "completed":
            return job
        self._check_lease_holder(job, worker_id)

        summary: dict[str, Any] = dict(result or {})
        if job.job_type == FETCH_JOB_TYPE:
            try:
                outcome = await self._ingest_fetch_result(job, summary)
            except HashCollisionError as exc:
                return await self.fail_job(job_id, worker_id, str(exc), retryable=False)
            summary = {
                "raw_version_id": outcome.version.id,
                "outcome": outcome.session_outcome,
                "duplicate": outcome.duplicate,
                "stale": outcome.stale,
                "recovered": outcome.recovered,
                "change_count": len(outcome.changes),
                "conflict_count": len(outcome.conflicts),
                "confidence_score": outcome.version.confidence_score,
            }
            if job.sync_session_id:
                await self.record_result(
                    job.sync_session_id,
                    str(job.payload.get("employee_id")),
                    str(job.payload.get("endpoint")),
                    outcome.session_outcome,
                )
        elif job.job_type == SCHEDULED_SYNC_JOB_TYPE:
            employee_ids = [str(item) for item in summary.get("employee_ids") or [] if str(item).strip()]
            session, jobs = await self.start_sync(
                session_type=str(job.payload.get("session_type") or "scheduled"),
                source=str(job.payload.get("source") or "scheduler"),
                employee_ids=employee_ids,
                endpoints=job.payload.get("endpoints") or list(self.policy.provider_endpoints),
                priority=int(job.payload.get("priority") or 0),
            )
            summary = {"session_id": session.id, "employee_count": len(employee_ids), "job_count": len(jobs)}

        completed = await self._mark_job_completed(job_id, worker_id, summary)
        logger.info("job completed job_id=%s job_type=%s worker_id=%s", completed.id, completed.job_type, worker_id)
        return completed

    async def _ingest_fetch_result(self, job: Job, result: dict[str, Any]) -> IngestOutcome:
        if "payload" not in result:
            raise RepositoryValidationError("fetch result must include payload")
        raw_metadata = result.get("metadata") or {}
        if not isinstance(raw_metadata, dict):
            raise RepositoryValidationError("fetch result metadata must be an object")
        metadata = FetchMetadata(
            http_status=raw_metadata.get("http_status", 200),
            is_partial=bool(raw_metadata.get("is_partial", False)),
            retry_count=max(job.attempts, int(raw_metadata.get("retry_count") or 0)),
            error_message=raw_metadata.get("error_message"),
            collected_at=parse_timestamp(raw_metadata.get("collected_at")) or self.now(),
            sync_session_id=job.sync_session_id,
        )
        return await self.ingest(
            employee_id=str(job.payload.get("employee_id") or ""),
            endpoint=str(job.payload.get("endpoint") or ""),
            payload=result["payload"],
            metadata=metadata,
        )

    async def fail_job(self, job_id: str, worker_id: str, error: str | None, retryable: bool = True) -> Job:
        job = await self.get_job(job_id)
        self._check_lease_holder(job, worker_id)
        failed = await self._apply_job_failure(
            job_id,
            worker_id,
            error_details=queue_rules.error_details(error, retryable=retryable),
            retryable=retryable,
        )
        await self._after_failure(failed)
        return failed

    async def requeue_expired_leases(self, limit: int = 100) -> int:
        jobs = await self._requeue_expired_leases(limit)
        for job in jobs:
            await self._after_failure(job)
        return len(jobs)

    async def _after_failure(self, job: Job) -> None:
        if job.status != "failed":
            logger.info(
                "job rescheduled job_id=%s attempts=%s scheduled_for=%s",
                job.id,
                job.attempts,
                job.scheduled_for.isoformat(),
            )
            return
        logger.error(
            "job failed terminally job_id=%s job_type=%s attempts=%s error=%s",
            job.id,
            job.job_type,
            job.attempts,
            (job.error_details or {}).get("message"),
        )
        if job.sync_session_id and job.job_type == FETCH_JOB_TYPE:
            await self.record_result(
                job.sync_session_id,
                str(job.payload.get("employee_id")),
                str(job.payload.get("endpoint")),
                "failed",
            )

    def _retry_schedule(self, job: Job, *, retryable: bool, now: datetime) -> tuple[int, str, datetime]:
        attempts = job.attempts + 1
        if retryable and attempts < job.max_attempts:
            delay = queue_rules.retry_delay_seconds(
                attempts=attempts,
                base_seconds=self.policy.job_retry_base_seconds,
                max_seconds=self.policy.job_retry_max_seconds,
            )
            return attempts, "pending", now + timedelta(seconds=delay)
        return attempts, "failed", job.scheduled_for

    def _validate_job(self, job_type: str, payload: dict[str, Any], max_attempts: int | None) -> int:
        if job_type not in JOB_TYPES:
            raise RepositoryValidationError(f"unsupported job_type: {job_type}")
        if not isinstance(payload, dict):
            raise RepositoryValidationError("payload must be an object")
        if job_type == FETCH_JOB_TYPE:
            self._require_text(payload.get("employee_id"), "employee_id")
            self._require_text(payload.get("endpoint"), "endpoint")
        if max_attempts is not None and max_attempts < 1:
            raise RepositoryValidationError("max_attempts must be >= 1")
        return max_attempts or self.policy.job_max_attempts

    @staticmethod
    def _check_lease_holder(job: Job, worker_id: str) -> None:
        if job.status != "processing":
            raise RepositoryConflictError("job is not in processing state")
        if job.locked_by != worker_id:
            raise RepositoryForbiddenError("job claimed by another worker")

    # conflicts

    async def list_escalated_conflicts(self, older_than_hours: int | None = None) -> list[SyncConflict]:
        threshold = older_than_hours or self.policy.conflict_escalation_hours
        now = self.now()
        rows = await self.list_conflicts(status="unresolved", limit=1000)
        return [row for row in rows if conflict_rules.is_escalated(row, now=now, threshold_hours=threshold)]

    # read-model

    async def lookup_at(
        self,
        employee_id: str,
        field_path: str,
        at: date | datetime,
        *,
        prefer_local: bool = False,
    ) -> temporal.PointInTimeValue:
        changes = await self.list_changes(employee_id, field_path=field_path)
        versions = await self.list_versions(employee_id)
        local_fact = None
        field_conflicts: list[SyncConflict] = []
        if prefer_local:
            local_fact = await self.get_local_fact(employee_id, field_path)
            field_conflicts = [
                row for row in await self.list_conflicts(employee_id=employee_id, limit=1000) if row.field_path == field_path
            ]
        return temporal.lookup_at(
            field_path=field_path,
            at=at,
            changes=changes,
            versions=versions,
            confidence_floor=self.policy.confidence_floor,
            local_fact=local_fact,
            conflicts=field_conflicts,
            prefer_local=prefer_local,
        )

    async def value_at(self, employee_id: str, field_path: str, at: date | datetime) -> Any:
        return (await self.lookup_at(employee_id, field_path, at)).value

    async def current_value(self, employee_id: str, field_path: str) -> temporal.PointInTimeValue:
        return await self.lookup_at(employee_id, field_path, self.now(), prefer_local=True)

    async def timeline(
        self,
        employee_id: str,
        *,
        start: date | datetime | None = None,
        end: date | datetime | None = None,
    ) -> list[temporal.TimelineEvent]:
        return temporal.build_timeline(
            employee_id=employee_id,
            changes=await self.list_changes(employee_id),
            versions=await self.list_versions(employee_id),
            collapse_window_seconds=self.policy.timeline_collapse_window_seconds,
            contract_chain_threshold=self.policy.contract_chain_threshold,
            start=start,
            end=end,
            tolerance=self.policy.numeric_tolerance,
        )

    async def salary_progression(
        self,
        employee_id: str,
        *,
        start: date | datetime | None = None,
        end: date | datetime | None = None,
        salary_field: str | None = None,
        hours_field: str | None = None,
    ) -> list[temporal.SalaryPeriod]:
        return temporal.salary_progression(
            changes=await self.list_changes(employee_id),
            versions=await self.list_versions(employee_id),
            cao_table=self.policy.cao_salary_table,
            salary_field=salary_field,
            hours_field=hours_field,
            start=start,
            end=end,
            confidence_floor=self.policy.confidence_floor,
        )

    async def sync_status(self, employee_id: str) -> EmployeeSyncStatus:
        conflicts = await self.list_conflicts(employee_id=employee_id, status="unresolved", limit=1)
        active_jobs = [
            job
            for status in ("pending", "processing")
            for job in await self.list_jobs(status=status, employee_id=employee_id, limit=1)
        ]
        latest = [version for version in await self.list_versions(employee_id) if version.is_latest]
        return sync_status(
            conflicts=conflicts,
            jobs=active_jobs,
            latest_versions=latest,
            confidence_floor=self.policy.confidence_floor,
        )

    # helpers

    @staticmethod
    def _require_text(value: Any, name: str) -> str:
        if not isinstance(value, str) or not value.strip():
            raise RepositoryValidationError(f"{name} must be a non-empty string")
        return value.strip()

    # backend primitives

    async def _ingest_once(
        self,
        *,
        employee_id: str,
        endpoint: str,
        payload: Any,
        metadata: FetchMetadata,
    ) -> IngestOutcome:
        raise NotImplementedError

    async def list_versions(self, employee_id: str, endpoint: str | None = None) -> list[RawVersion]:
        raise NotImplementedError

    async def list_changes(
        self,
        employee_id: str,
        *,
        field_path: str | None = None,
        significant_only: bool = False,
        include_duplicates: bool = True,
        limit: int | None = None,
    ) -> list[ChangeRecord]:
        raise NotImplementedError

    async def get_local_fact(self, employee_id: str, field_path: str) -> LocalFact | None:
        raise NotImplementedError

    async def list_conflicts(
        self,
        *,
        employee_id: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[SyncConflict]:
        raise NotImplementedError

    async def get_job(self, job_id: str) -> Job:
        raise NotImplementedError

    async def list_jobs(
        self,
        *,
        status: str | None = None,
        job_type: str | None = None,
        sync_session_id: str | None = None,
        employee_id: str | None = None,
        limit: int = 100,
    ) -> list[Job]:
        raise NotImplementedError

    async def start_sync(
        self,
        *,
        session_type: str,
        source: str,
        employee_ids: list[str],
        endpoints: list[str],
        priority: int = 0,
    ) -> tuple[SyncSession, list[Job]]:
        raise NotImplementedError

    async def record_result(
        self,
        session_id: str,
        employee_id: str,
        endpoint: str,
        outcome: SessionOutcome,
    ) -> SyncSession:
        raise NotImplementedError

    async def _mark_job_completed(self, job_id: str, worker_id: str, result: dict[str, Any]) -> Job:
        raise NotImplementedError

    async def _apply_job_failure(
        self,
        job_id: str,
        worker_id: str,
        *,
        error_details: dict[str, Any],
        retryable: bool,
    ) -> Job:
        raise NotImplementedError

    async def _requeue_expired_leases(self, limit: int) -> list[Job]:
        raise NotImplementedError

    async def list_events(self, *, after_id: int = 0, limit: int = 100, event_type: str | None = None) -> list[LedgerEvent]:
        raise NotImplementedError

    async def get_latest_version(self, employee_id: str, endpoint: str) -> RawVersion | None:
        raise NotImplementedError

    async def set_local_fact(
        self,
        *,
        employee_id: str,
        field_path: str,
        value: Any,
        is_authoritative: bool = True,
        set_by: str | None = None,
    ) -> LocalFact:
        raise NotImplementedError

    async def get_conflict(self, conflict_id: str) -> SyncConflict:
        raise NotImplementedError

    async def resolve_conflict(self, conflict_id: str, decision: str, resolved_by: str) -> SyncConflict:
        raise NotImplementedError

    async def start_session(self, session_type: str, source: str) -> SyncSession:
        raise NotImplementedError

    async def get_session(self, session_id: str) -> SyncSession:
        raise NotImplementedError

    async def finish_session(self, session_id: str) -> SyncSession:
        raise NotImplementedError

    async def expire_sessions(self, max_runtime_seconds: int | None = None) -> list[SyncSession]:
        raise NotImplementedError

    async def enqueue_job(
        self,
        *,
        job_type: str,
        payload: dict[str, Any],
        priority: int = 0,
        scheduled_for: datetime | None = None,
        max_attempts: int | None = None,
        sync_session_id: str | None = None,
    ) -> Job:
        raise NotImplementedError

    async def claim_next(
        self,
        worker_id: str,
        *,
        job_type: str | None = None,
        lease_seconds: int | None = None,
    ) -> Job | None:
        raise NotImplementedError

    async def promote_starving_jobs(self, max_age_seconds: int | None = None, limit: int = 100) -> int:
        raise NotImplementedError
