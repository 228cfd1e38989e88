from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from ledger_api.services import conflicts as conflict_rules
from ledger_api.services import queue as queue_rules
from ledger_api.services import sessions as session_rules
from ledger_api.services import temporal
from ledger_api.services.errors import (
    ChainIntegrityError,
    RepositoryNotFoundError,
    RepositoryValidationError,
)
from ledger_api.services.ledger import Clock, LedgerRepository
from ledger_api.services.policy import LedgerPolicy
from ledger_api.services.records import (
    FETCH_JOB_TYPE,
    JOB_STATUSES,
    SESSION_OUTCOMES,
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
from ledger_api.services.versioning import build_version, plan_ingest

logger = logging.getLogger(__name__)


class InMemoryRepository(LedgerRepository):
    """Process-local backend for tests and single-node development.

    The lock guards mutations only; reads snapshot the dicts and every
    returned record is a copy.
    """

    def __init__(self, *, policy: LedgerPolicy | None = None, clock: Clock | None = None) -> None:
        super().__init__(policy=policy, clock=clock)
        self.versions: dict[str, RawVersion] = {}
        self.latest_ids: dict[tuple[str, str], str] = {}
        self.changes: dict[str, ChangeRecord] = {}
        self.sessions: dict[str, SyncSession] = {}
        self.session_results: dict[tuple[str, str, str], SessionOutcome] = {}
        self.jobs: dict[str, Job] = {}
        self.local_facts: dict[tuple[str, str], LocalFact] = {}
        self.conflicts: dict[str, SyncConflict] = {}
        self.events: list[LedgerEvent] = []
        self._lock = asyncio.Lock()

    # payload store

    async def _ingest_once(
        self,
        *,
        employee_id: str,
        endpoint: str,
        payload: Any,
        metadata: FetchMetadata,
    ) -> IngestOutcome:
        collected_at = self._collected_at(metadata)
        key = (employee_id, endpoint)
        latest_id = self.latest_ids.get(key)
        latest = replace(self.versions[latest_id]) if latest_id else None
        plan = plan_ingest(
            employee_id=employee_id,
            endpoint=endpoint,
            payload=payload,
            latest=latest,
            collected_at=collected_at,
            confidence_score=self._incoming_confidence(metadata),
            is_partial=bool(metadata.is_partial),
        )

        if plan.action == "duplicate" and latest is not None:
            async with self._lock:
                row = self.versions[latest.id]
                if plan.collected_at > row.last_verified_at:
                    row.last_verified_at = plan.collected_at
                return IngestOutcome(version=replace(row), duplicate=True)

        if plan.action == "stale" and latest is not None:
            logger.info(
                "stale payload ignored employee_id=%s endpoint=%s collected_at=%s latest_collected_at=%s",
                employee_id,
                endpoint,
                plan.collected_at.isoformat(),
                latest.collected_at.isoformat(),
            )
            return IngestOutcome(version=latest, duplicate=False, stale=True)

        version = build_version(
            employee_id=employee_id,
            endpoint=endpoint,
            payload=payload,
            plan=plan,
            metadata=metadata,
            retry_penalty=self.policy.confidence_retry_penalty,
            partial_penalty=self.policy.confidence_partial_penalty,
        )

        async with self._lock:
            current_id = self.latest_ids.get(key)
            if current_id != plan.expected_latest_id:
                raise ChainIntegrityError(
                    employee_id=employee_id,
                    endpoint=endpoint,
                    expected_latest_id=plan.expected_latest_id,
                )

            previous: RawVersion | None = None
            if current_id is not None:
                previous = self.versions[current_id]
                previous.is_latest = False
                previous.effective_to = version.effective_from
                previous.superseded_by = version.id
            self.versions[version.id] = version
            self.latest_ids[key] = version.id

            outcome = IngestOutcome(
                version=replace(version),
                duplicate=False,
                superseded=replace(previous) if previous else None,
            )
            if previous is None:
                raised = self._baseline_conflicts(
                    version,
                    self._facts_for(employee_id),
                    self._open_conflicts_for(employee_id),
                )
                self._store_conflicts(raised)
                outcome.conflicts = [replace(conflict) for conflict in raised]
                logger.info(
                    "raw version created employee_id=%s endpoint=%s version_id=%s confidence=%s conflicts=%s",
                    employee_id,
                    endpoint,
                    version.id,
                    version.confidence_score,
                    len(raised),
                )
                return outcome

            if plan.action == "recover":
                outcome.recovered = True
                logger.info(
                    "partial version recovered employee_id=%s endpoint=%s version_id=%s previous_id=%s confidence=%s",
                    employee_id,
                    endpoint,
                    version.id,
                    previous.id,
                    version.confidence_score,
                )
                return outcome

            history = [row for row in self.changes.values() if row.employee_id == employee_id]
            decision = self._derive_changes(previous, version, history)
            for change_id in decision.demoted_ids:
                # later detection supersedes the earlier equivalent record
                self.changes[change_id].is_duplicate = True
            for change in decision.changes:
                self.changes[change.id] = change

            raised = self._derive_conflicts(
                [change for change in decision.changes if not change.is_duplicate],
                self._facts_for(employee_id),
                self._open_conflicts_for(employee_id),
            )
            self._store_conflicts(raised)

            outcome.changes = [replace(change) for change in decision.changes]
            outcome.conflicts = [replace(conflict) for conflict in raised]

        logger.info(
            "raw version superseded employee_id=%s endpoint=%s version_id=%s previous_id=%s changes=%s conflicts=%s",
            employee_id,
            endpoint,
            version.id,
            previous.id,
            len(outcome.changes),
            len(outcome.conflicts),
        )
        return outcome

    def _facts_for(self, employee_id: str) -> dict[str, LocalFact]:
        return {fact.field_path: fact for (owner, _), fact in self.local_facts.items() if owner == employee_id}

    def _open_conflicts_for(self, employee_id: str) -> list[SyncConflict]:
        return [
            row
            for row in self.conflicts.values()
            if row.employee_id == employee_id and row.resolution_status == "unresolved"
        ]

    def _store_conflicts(self, raised: list[SyncConflict]) -> None:
        for conflict in raised:
            self.conflicts[conflict.id] = conflict
            self._record_event("conflict", conflict.id, "conflict_raised", conflict_rules.conflict_event_payload(conflict))

    async def list_versions(self, employee_id: str, endpoint: str | None = None) -> list[RawVersion]:
        rows = [
            replace(row)
            for row in list(self.versions.values())
            if row.employee_id == employee_id and (endpoint is None or row.endpoint == endpoint)
        ]
        return sorted(rows, key=lambda row: (row.endpoint, row.collected_at, row.id))

    async def get_latest_version(self, employee_id: str, endpoint: str) -> RawVersion | None:
        latest_id = self.latest_ids.get((employee_id, endpoint))
        return replace(self.versions[latest_id]) if latest_id else None

    async def list_changes(
        self,
        employee_id: str,
        *,
        field_path: str | None = None,
        significant_only: bool = False,
        include_duplicates: bool = True,
        limit: int | None = None,
    ) -> list[ChangeRecord]:
        rows = [
            replace(row)
            for row in list(self.changes.values())
            if row.employee_id == employee_id
            and (field_path is None or row.field_path == field_path)
            and (not significant_only or row.is_significant)
            and (include_duplicates or not row.is_duplicate)
        ]
        rows.sort(key=lambda row: (row.detected_at, row.id))
        return rows[:limit] if limit else rows

    # sessions

    async def start_session(self, session_type: str, source: str) -> SyncSession:
        async with self._lock:
            session = self._new_session(session_type, source, total_records=0, details={})
        return replace(session)

    async def start_sync(
        self,
        *,
        session_type: str,
        source: str,
        employee_ids: list[str],
        endpoints: list[str],
        priority: int = 0,
    ) -> tuple[SyncSession, list[Job]]:
        employees = session_rules.unique_text(employee_ids)
        targets = session_rules.unique_text(endpoints)
        if not targets:
            raise RepositoryValidationError("endpoints must contain at least one endpoint")

        async with self._lock:
            session = self._new_session(
                session_type,
                source,
                total_records=len(employees) * len(targets),
                details={"employee_count": len(employees), "endpoints": targets},
            )
            jobs = [
                self._new_job(
                    job_type=FETCH_JOB_TYPE,
                    payload={"employee_id": employee_id, "endpoint": endpoint},
                    priority=priority,
                    scheduled_for=None,
                    max_attempts=None,
                    sync_session_id=session.id,
                )
                for employee_id in employees
                for endpoint in targets
            ]
            if not jobs:
                self._finish_locked(session)

        logger.info(
            "sync session started session_id=%s session_type=%s source=%s jobs=%s",
            session.id,
            session.session_type,
            session.source,
            len(jobs),
        )
        return replace(session), [replace(job) for job in jobs]

    async def get_session(self, session_id: str) -> SyncSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise RepositoryNotFoundError("sync session not found")
        return replace(session)

    async def record_result(
        self,
        session_id: str,
        employee_id: str,
        endpoint: str,
        outcome: SessionOutcome,
    ) -> SyncSession:
        if outcome not in SESSION_OUTCOMES:
            raise RepositoryValidationError("outcome must be one of: succeeded, unchanged, failed")
        async with self._lock:
            session = self.sessions.get(session_id)
            if session is None:
                raise RepositoryNotFoundError("sync session not found")
            key = (session_id, employee_id, endpoint)
            if key in self.session_results:
                return replace(session)
            self.session_results[key] = outcome
            if session.status != "running":
                logger.info(
                    "late session result ignored session_id=%s status=%s employee_id=%s endpoint=%s",
                    session_id,
                    session.status,
                    employee_id,
                    endpoint,
                )
                return replace(session)

            if outcome == "failed":
                session.failed_records += 1
            else:
                session.successful_records += 1
                if outcome == "unchanged":
                    session.sync_details["unchanged_records"] = session.sync_details.get("unchanged_records", 0) + 1
            if session_rules.all_reported(session):
                self._finish_locked(session)
            return replace(session)

    async def finish_session(self, session_id: str) -> SyncSession:
        async with self._lock:
            session = self.sessions.get(session_id)
            if session is None:
                raise RepositoryNotFoundError("sync session not found")
            if session.status == "running":
                self._finish_locked(session)
            return replace(session)

    async def expire_sessions(self, max_runtime_seconds: int | None = None) -> list[SyncSession]:
        runtime = max_runtime_seconds or self.policy.session_max_runtime_seconds
        now = self.now()
        expired: list[SyncSession] = []
        async with self._lock:
            for session in self.sessions.values():
                if not session_rules.is_expired(session, now=now, max_runtime_seconds=runtime):
                    continue
                session.status = "failed"
                session.completed_at = now
                session.sync_details["reason"] = "wall_clock_exceeded"
                self._record_event("sync_session", session.id, "sync_session_failed", session_rules.session_event_payload(session))
                expired.append(replace(session))
        for session in expired:
            logger.error("sync session expired session_id=%s started_at=%s", session.id, session.started_at.isoformat())
        return expired

    def _new_session(self, session_type: str, source: str, *, total_records: int, details: dict[str, Any]) -> SyncSession:
        session = SyncSession(
            id=str(uuid4()),
            session_type=self._require_text(session_type, "session_type"),
            source=self._require_text(source, "source"),
            status="running",
            started_at=self.now(),
            completed_at=None,
            total_records=total_records,
            successful_records=0,
            failed_records=0,
            sync_details=details,
        )
        self.sessions[session.id] = session
        return session

    def _finish_locked(self, session: SyncSession) -> None:
        session.status = session_rules.terminal_status(session)
        session.completed_at = self.now()
        unreported = session.total_records - session_rules.reported_records(session)
        if unreported > 0:
            session.sync_details["unreported_records"] = unreported
        event_type = session_rules.session_event_type(session.status)
        self._record_event("sync_session", session.id, event_type, session_rules.session_event_payload(session))
        logger.info(
            "sync session finished session_id=%s status=%s total=%s successful=%s failed=%s",
            session.id,
            session.status,
            session.total_records,
            session.successful_records,
            session.failed_records,
        )

    # job queue

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
        async with self._lock:
            if sync_session_id is not None and sync_session_id not in self.sessions:
                raise RepositoryNotFoundError("sync session not found")
            job = self._new_job(
                job_type=job_type,
                payload=payload,
                priority=priority,
                scheduled_for=scheduled_for,
                max_attempts=max_attempts,
                sync_session_id=sync_session_id,
            )
            return replace(job)

    def _new_job(
        self,
        *,
        job_type: str,
        payload: dict[str, Any],
        priority: int,
        scheduled_for: datetime | None,
        max_attempts: int | None,
        sync_session_id: str | None,
    ) -> Job:
        attempts_allowed = self._validate_job(job_type, payload, max_attempts)
        now = self.now()
        job = Job(
            id=str(uuid4()),
            job_type=job_type,
            payload=dict(payload),
            priority=priority,
            status="pending",
            attempts=0,
            max_attempts=attempts_allowed,
            scheduled_for=scheduled_for or now,
            started_at=None,
            completed_at=None,
            result=None,
            error_details=None,
            locked_by=None,
            lease_expires_at=None,
            sync_session_id=sync_session_id,
            promoted_at=None,
            created_at=now,
            updated_at=now,
        )
        self.jobs[job.id] = job
        return job

    async def get_job(self, job_id: str) -> Job:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        return replace(job)

    async def list_jobs(
        self,
        *,
        status: str | None = None,
        job_type: str | None = None,
        sync_session_id: str | None = None,
        employee_id: str | None = None,
        limit: int = 100,
    ) -> list[Job]:
        if status is not None and status not in JOB_STATUSES:
            raise RepositoryValidationError(f"unsupported job status: {status}")
        rows = [
            replace(job)
            for job in list(self.jobs.values())
            if (status is None or job.status == status)
            and (job_type is None or job.job_type == job_type)
            and (sync_session_id is None or job.sync_session_id == sync_session_id)
            and (employee_id is None or queue_rules.targets_employee(job, employee_id))
        ]
        rows.sort(key=lambda job: (job.created_at, job.id))
        return rows[: max(0, limit)]

    async def claim_next(
        self,
        worker_id: str,
        *,
        job_type: str | None = None,
        lease_seconds: int | None = None,
    ) -> Job | None:
        worker_id = self._require_text(worker_id, "worker_id")
        lease = lease_seconds or self.policy.job_default_lease_seconds
        async with self._lock:
            now = self.now()
            job = queue_rules.pick_next(self.jobs.values(), now=now, sessions=self.sessions, job_type=job_type)
            if job is None:
                return None
            job.status = "processing"
            job.locked_by = worker_id
            job.started_at = now
            job.lease_expires_at = now + timedelta(seconds=lease)
            job.updated_at = now
            return replace(job)

    async def _mark_job_completed(self, job_id: str, worker_id: str, result: dict[str, Any]) -> Job:
        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None:
                raise RepositoryNotFoundError("job not found")
            if job.status == "completed":
                return replace(job)
            self._check_lease_holder(job, worker_id)
            now = self.now()
            job.status = "completed"
            job.completed_at = now
            job.result = result
            job.locked_by = None
            job.lease_expires_at = None
            job.updated_at = now
            return replace(job)

    async def _apply_job_failure(
        self,
        job_id: str,
        worker_id: str,
        *,
        error_details: dict[str, Any],
        retryable: bool,
    ) -> Job:
        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None:
                raise RepositoryNotFoundError("job not found")
            self._check_lease_holder(job, worker_id)
            self._fail_locked(job, error_details=error_details, retryable=retryable)
            return replace(job)

    async def _requeue_expired_leases(self, limit: int) -> list[Job]:
        async with self._lock:
            now = self.now()
            expired = sorted(
                (job for job in self.jobs.values() if queue_rules.lease_expired(job, now=now)),
                key=lambda job: (job.lease_expires_at, job.id),
            )[: max(0, limit)]
            for job in expired:
                details = queue_rules.error_details("lease expired", retryable=True, extra={"locked_by": job.locked_by})
                self._fail_locked(job, error_details=details, retryable=True)
            return [replace(job) for job in expired]

    def _fail_locked(self, job: Job, *, error_details: dict[str, Any], retryable: bool) -> None:
        now = self.now()
        attempts, status, scheduled_for = self._retry_schedule(job, retryable=retryable, now=now)
        job.attempts = attempts
        job.status = status  # type: ignore[assignment]
        job.scheduled_for = scheduled_for
        job.error_details = error_details
        job.locked_by = None
        job.lease_expires_at = None
        job.updated_at = now
        if status == "failed":
            job.completed_at = now

    async def promote_starving_jobs(self, max_age_seconds: int | None = None, limit: int = 100) -> int:
        max_age = max_age_seconds or self.policy.job_starvation_max_age_seconds
        priority = self.policy.job_starvation_priority
        async with self._lock:
            now = self.now()
            starving = sorted(
                (
                    job
                    for job in self.jobs.values()
                    if queue_rules.is_starving(job, now=now, max_age_seconds=max_age, priority=priority)
                ),
                key=lambda job: (job.created_at, job.id),
            )[: max(0, limit)]
            for job in starving:
                job.priority = priority
                job.promoted_at = now
                job.updated_at = now
        if starving:
            logger.info("starving jobs promoted count=%s priority=%s", len(starving), priority)
        return len(starving)

    # local facts and conflicts

    async def set_local_fact(
        self,
        *,
        employee_id: str,
        field_path: str,
        value: Any,
        is_authoritative: bool = True,
        set_by: str | None = None,
    ) -> LocalFact:
        fact = LocalFact(
            employee_id=self._require_text(employee_id, "employee_id"),
            field_path=self._require_text(field_path, "field_path"),
            value=value,
            is_authoritative=is_authoritative,
            set_by=set_by,
            set_at=self.now(),
        )
        async with self._lock:
            self.local_facts[(fact.employee_id, fact.field_path)] = fact
            remote = temporal.lookup_at(
                field_path=fact.field_path,
                at=fact.set_at,
                changes=[row for row in self.changes.values() if row.employee_id == fact.employee_id],
                versions=[row for row in self.versions.values() if row.employee_id == fact.employee_id],
                confidence_floor=self.policy.confidence_floor,
            )
            conflict = self._fact_conflict(
                fact,
                remote,
                [row for row in self.conflicts.values() if row.employee_id == fact.employee_id],
            )
            if conflict is not None:
                self._store_conflicts([conflict])
        if conflict is not None:
            logger.info(
                "local fact disagrees with remote employee_id=%s field_path=%s conflict_id=%s",
                fact.employee_id,
                fact.field_path,
                conflict.id,
            )
        return replace(fact)

    async def get_local_fact(self, employee_id: str, field_path: str) -> LocalFact | None:
        fact = self.local_facts.get((employee_id, field_path))
        return replace(fact) if fact else None

    async def list_conflicts(
        self,
        *,
        employee_id: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[SyncConflict]:
        rows = [
            replace(row)
            for row in list(self.conflicts.values())
            if (employee_id is None or row.employee_id == employee_id)
            and (status is None or row.resolution_status == status)
        ]
        rows.sort(key=lambda row: (row.created_at, row.id))
        return rows[: max(0, limit)]

    async def get_conflict(self, conflict_id: str) -> SyncConflict:
        conflict = self.conflicts.get(conflict_id)
        if conflict is None:
            raise RepositoryNotFoundError("conflict not found")
        return replace(conflict)

    async def resolve_conflict(self, conflict_id: str, decision: str, resolved_by: str) -> SyncConflict:
        async with self._lock:
            conflict = self.conflicts.get(conflict_id)
            if conflict is None:
                raise RepositoryNotFoundError("conflict not found")
            now = self.now()
            conflict_rules.apply_decision(conflict, decision=decision, resolved_by=resolved_by, now=now)
            if decision == "accept_remote":
                key = (conflict.employee_id, conflict.field_path)
                current = self.local_facts.get(key)
                self.local_facts[key] = LocalFact(
                    employee_id=conflict.employee_id,
                    field_path=conflict.field_path,
                    value=conflict.remote_data.get("value"),
                    is_authoritative=current.is_authoritative if current else True,
                    set_by=conflict.resolved_by,
                    set_at=now,
                )
            self._record_event(
                "conflict",
                conflict.id,
                "conflict_resolved",
                {"decision": decision, "resolved_by": conflict.resolved_by, "field_path": conflict.field_path},
            )
        logger.info("conflict resolved conflict_id=%s decision=%s", conflict_id, decision)
        return replace(conflict)

    # events

    def _record_event(self, entity_type: str, entity_id: str | None, event_type: str, payload: dict[str, Any]) -> None:
        self.events.append(
            LedgerEvent(
                id=len(self.events) + 1,
                entity_type=entity_type,
                entity_id=entity_id,
                event_type=event_type,
                payload=payload,
                created_at=self.now(),
            )
        )

    async def list_events(self, *, after_id: int = 0, limit: int = 100, event_type: str | None = None) -> list[LedgerEvent]:
        rows = [
            replace(event)
            for event in list(self.events)
            if event.id > after_id and (event_type is None or event.event_type == event_type)
        ]
        return rows[: max(0, limit)]
