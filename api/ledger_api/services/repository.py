from __future__ import annotations

import json
import logging
from datetime import datetime
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from ledger_api.core.config import get_settings
from ledger_api.core.payloads import flatten_payload
from ledger_api.services import conflicts as conflict_rules
from ledger_api.services import queue as queue_rules
from ledger_api.services import sessions as session_rules
from ledger_api.services.errors import (
    ChainIntegrityError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
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
from ledger_api.services.store import InMemoryRepository
from ledger_api.services.versioning import build_version, plan_ingest

logger = logging.getLogger(__name__)

STORAGE_BACKENDS = {"postgres", "memory"}

VERSION_COLUMNS = """
  id::text as id,
  employee_id,
  endpoint,
  payload,
  content_hash,
  collected_at,
  last_verified_at,
  effective_from,
  effective_to,
  is_latest,
  is_partial,
  confidence_score,
  http_status,
  error_message,
  retry_count,
  supersedes::text as supersedes,
  superseded_by::text as superseded_by,
  sync_session_id::text as sync_session_id
"""

CHANGE_COLUMNS = """
  id::text as id,
  employee_id,
  endpoint,
  field_path,
  old_value,
  new_value,
  change_type,
  is_significant,
  is_duplicate,
  is_correction,
  detected_at,
  sync_session_id::text as sync_session_id,
  raw_version_id::text as raw_version_id,
  previous_version_id::text as previous_version_id,
  confidence_score,
  metadata
"""

SESSION_COLUMNS = """
  id::text as id,
  session_type,
  source,
  status::text as status,
  started_at,
  completed_at,
  total_records,
  successful_records,
  failed_records,
  sync_details
"""

JOB_COLUMNS = """
  jobs.id::text as id,
  jobs.job_type,
  jobs.payload,
  jobs.priority,
  jobs.status::text as status,
  jobs.attempts,
  jobs.max_attempts,
  jobs.scheduled_for,
  jobs.started_at,
  jobs.completed_at,
  jobs.result,
  jobs.error_details,
  jobs.locked_by,
  jobs.lease_expires_at,
  jobs.sync_session_id::text as sync_session_id,
  jobs.promoted_at,
  jobs.created_at,
  jobs.updated_at
"""

CONFLICT_COLUMNS = """
  id::text as id,
  employee_id,
  field_path,
  conflict_type,
  local_data,
  remote_data,
  change_id::text as change_id,
  resolution_status::text as resolution_status,
  resolution,
  resolved_by,
  resolved_at,
  created_at
"""


class PostgresRepository(LedgerRepository):
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        *,
        policy: LedgerPolicy | None = None,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(policy=policy, clock=clock)
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

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
        pool = await self._get_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                latest_row = await conn.fetchrow(
                    f"""
                    select {VERSION_COLUMNS}
                    from raw_versions
                    where employee_id = $1 and endpoint = $2 and is_latest = true
                    """,
                    employee_id,
                    endpoint,
                )
                latest = self._version_from_row(latest_row) if latest_row else None
                plan = plan_ingest(
                    employee_id=employee_id,
                    endpoint=endpoint,
                    payload=payload,
                    latest=latest,
                    collected_at=collected_at,
                    confidence_score=self._incoming_confidence(metadata),
                    is_partial=bool(metadata.is_partial),
                )

                if plan.action == "duplicate":
                    row = await conn.fetchrow(
                        f"""
                        update raw_versions
                        set last_verified_at = greatest(last_verified_at, $2::timestamptz)
                        where id = $1::uuid
                        returning {VERSION_COLUMNS}
                        """,
                        plan.expected_latest_id,
                        plan.collected_at,
                    )
                    return IngestOutcome(version=self._version_from_row(row), duplicate=True)

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

                previous: RawVersion | None = None
                if latest is not None:
                    row = await conn.fetchrow(
                        f"""
                        update raw_versions
                        set is_latest = false, effective_to = $2::timestamptz
                        where id = $1::uuid and is_latest = true
                        returning {VERSION_COLUMNS}
                        """,
                        latest.id,
                        version.effective_from,
                    )
                    if row is None:
                        raise ChainIntegrityError(
                            employee_id=employee_id,
                            endpoint=endpoint,
                            expected_latest_id=latest.id,
                        )
                    previous = self._version_from_row(row)

                try:
                    await self._insert_version(conn, version)
                except pg_exc.UniqueViolationError as exc:
                    raise ChainIntegrityError(
                        employee_id=employee_id,
                        endpoint=endpoint,
                        expected_latest_id=plan.expected_latest_id,
                    ) from exc

                if previous is None:
                    await conn.execute("select pg_advisory_xact_lock(hashtext($1))", employee_id)
                    raised = self._baseline_conflicts(
                        version,
                        await self._fetch_facts(conn, employee_id),
                        await self._fetch_conflicts(conn, employee_id),
                    )
                    for conflict in raised:
                        await self._insert_conflict(conn, conflict)
                    logger.info(
                        "raw version created employee_id=%s endpoint=%s version_id=%s confidence=%s conflicts=%s",
                        employee_id,
                        endpoint,
                        version.id,
                        version.confidence_score,
                        len(raised),
                    )
                    return IngestOutcome(version=version, duplicate=False, conflicts=raised)

                await conn.execute(
                    "update raw_versions set superseded_by = $2::uuid where id = $1::uuid",
                    previous.id,
                    version.id,
                )
                previous.superseded_by = version.id

                if plan.action == "recover":
                    logger.info(
                        "partial version recovered employee_id=%s endpoint=%s version_id=%s previous_id=%s confidence=%s",
                        employee_id,
                        endpoint,
                        version.id,
                        previous.id,
                        version.confidence_score,
                    )
                    return IngestOutcome(version=version, duplicate=False, superseded=previous, recovered=True)

                # serializes change derivation per employee across endpoints
                await conn.execute("select pg_advisory_xact_lock(hashtext($1))", employee_id)

                paths = sorted(set(flatten_payload(previous.payload)) | set(flatten_payload(version.payload)))
                history_rows = await conn.fetch(
                    f"""
                    select {CHANGE_COLUMNS}
                    from change_records
                    where employee_id = $1 and field_path = any($2::text[])
                    order by detected_at asc, id asc
                    """,
                    employee_id,
                    paths,
                )
                history = [self._change_from_row(row) for row in history_rows]
                decision = self._derive_changes(previous, version, history)

                if decision.demoted_ids:
                    await conn.execute(
                        "update change_records set is_duplicate = true where id = any($1::uuid[])",
                        decision.demoted_ids,
                    )
                await self._insert_changes(conn, decision.changes)

                raised = self._derive_conflicts(
                    [change for change in decision.changes if not change.is_duplicate],
                    await self._fetch_facts(conn, employee_id),
                    await self._fetch_conflicts(conn, employee_id),
                )
                for conflict in raised:
                    await self._insert_conflict(conn, conflict)

        logger.info(
            "raw version superseded employee_id=%s endpoint=%s version_id=%s previous_id=%s changes=%s conflicts=%s",
            employee_id,
            endpoint,
            version.id,
            previous.id,
            len(decision.changes),
            len(raised),
        )
        return IngestOutcome(
            version=version,
            duplicate=False,
            superseded=previous,
            changes=decision.changes,
            conflicts=raised,
        )

    async def _insert_version(self, conn: asyncpg.Connection, version: RawVersion) -> None:
        await conn.execute(
            """
            insert into raw_versions (
              id,
              employee_id,
              endpoint,
              payload,
              content_hash,
              collected_at,
              last_verified_at,
              effective_from,
              effective_to,
              is_latest,
              is_partial,
              confidence_score,
              http_status,
              error_message,
              retry_count,
              supersedes,
              sync_session_id
            )
            values (
              $1::uuid, $2, $3, $4::jsonb, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16::uuid, $17::uuid
            )
            """,
            version.id,
            version.employee_id,
            version.endpoint,
            _dump_json(version.payload),
            version.content_hash,
            version.collected_at,
            version.last_verified_at,
            version.effective_from,
            version.effective_to,
            version.is_latest,
            version.is_partial,
            version.confidence_score,
            version.http_status,
            version.error_message,
            version.retry_count,
            version.supersedes,
            version.sync_session_id,
        )

    async def _insert_changes(self, conn: asyncpg.Connection, changes: list[ChangeRecord]) -> None:
        if not changes:
            return
        await conn.executemany(
            """
            insert into change_records (
              id,
              employee_id,
              endpoint,
              field_path,
              old_value,
              new_value,
              change_type,
              is_significant,
              is_duplicate,
              is_correction,
              detected_at,
              sync_session_id,
              raw_version_id,
              previous_version_id,
              confidence_score,
              metadata
            )
            values (
              $1::uuid, $2, $3, $4, $5::jsonb, $6::jsonb, $7, $8, $9, $10, $11, $12::uuid, $13::uuid, $14::uuid, $15, $16::jsonb
            )
            """,
            [
                (
                    change.id,
                    change.employee_id,
                    change.endpoint,
                    change.field_path,
                    _dump_json(change.old_value),
                    _dump_json(change.new_value),
                    change.change_type,
                    change.is_significant,
                    change.is_duplicate,
                    change.is_correction,
                    change.detected_at,
                    change.sync_session_id,
                    change.raw_version_id,
                    change.previous_version_id,
                    change.confidence_score,
                    _dump_json(change.metadata),
                )
                for change in changes
            ],
        )

    async def _insert_conflict(self, conn: asyncpg.Connection, conflict: SyncConflict) -> None:
        await conn.execute(
            """
            insert into sync_conflicts (
              id,
              employee_id,
              field_path,
              conflict_type,
              local_data,
              remote_data,
              change_id,
              resolution_status,
              created_at
            )
            values ($1::uuid, $2, $3, $4, $5::jsonb, $6::jsonb, $7::uuid, 'unresolved', $8)
            """,
            conflict.id,
            conflict.employee_id,
            conflict.field_path,
            conflict.conflict_type,
            _dump_json(conflict.local_data),
            _dump_json(conflict.remote_data),
            conflict.change_id,
            conflict.created_at,
        )
        await self._record_event(
            conn,
            entity_type="conflict",
            entity_id=conflict.id,
            event_type="conflict_raised",
            payload=conflict_rules.conflict_event_payload(conflict),
        )

    async def _fetch_facts(self, conn: asyncpg.Connection, employee_id: str) -> dict[str, LocalFact]:
        rows = await conn.fetch(
            """
            select employee_id, field_path, value, is_authoritative, set_by, set_at
            from local_facts
            where employee_id = $1
            """,
            employee_id,
        )
        return {row["field_path"]: self._fact_from_row(row) for row in rows}

    async def _fetch_conflicts(
        self,
        conn: asyncpg.Connection,
        employee_id: str,
        field_path: str | None = None,
        *,
        unresolved_only: bool = True,
    ) -> list[SyncConflict]:
        rows = await conn.fetch(
            f"""
            select {CONFLICT_COLUMNS}
            from sync_conflicts
            where employee_id = $1
              and ($2::text is null or field_path = $2)
              and (not $3::boolean or resolution_status = 'unresolved')
            """,
            employee_id,
            field_path,
            unresolved_only,
        )
        return [self._conflict_from_row(row) for row in rows]

    async def list_versions(self, employee_id: str, endpoint: str | None = None) -> list[RawVersion]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {VERSION_COLUMNS}
            from raw_versions
            where employee_id = $1 and ($2::text is null or endpoint = $2)
            order by endpoint asc, collected_at asc, id asc
            """,
            employee_id,
            endpoint,
        )
        return [self._version_from_row(row) for row in rows]

    async def get_latest_version(self, employee_id: str, endpoint: str) -> RawVersion | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {VERSION_COLUMNS}
            from raw_versions
            where employee_id = $1 and endpoint = $2 and is_latest = true
            """,
            employee_id,
            endpoint,
        )
        return self._version_from_row(row) if row else None

    async def list_changes(
        self,
        employee_id: str,
        *,
        field_path: str | None = None,
        significant_only: bool = False,
        include_duplicates: bool = True,
        limit: int | None = None,
    ) -> list[ChangeRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {CHANGE_COLUMNS}
            from change_records
            where employee_id = $1
              and ($2::text is null or field_path = $2)
              and ($3::boolean = false or is_significant = true)
              and ($4::boolean = true or is_duplicate = false)
            order by detected_at asc, id asc
            limit $5
            """,
            employee_id,
            field_path,
            significant_only,
            include_duplicates,
            limit,
        )
        return [self._change_from_row(row) for row in rows]

    # sessions

    async def start_session(self, session_type: str, source: str) -> SyncSession:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into sync_sessions (session_type, source, started_at)
            values ($1, $2, $3)
            returning {SESSION_COLUMNS}
            """,
            self._require_text(session_type, "session_type"),
            self._require_text(source, "source"),
            self.now(),
        )
        return self._session_from_row(row)

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
        pairs = [(employee_id, endpoint) for employee_id in employees for endpoint in targets]

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                session_row = await conn.fetchrow(
                    f"""
                    insert into sync_sessions (session_type, source, started_at, total_records, sync_details)
                    values ($1, $2, $3, $4, $5::jsonb)
                    returning {SESSION_COLUMNS}
                    """,
                    self._require_text(session_type, "session_type"),
                    self._require_text(source, "source"),
                    self.now(),
                    len(pairs),
                    json.dumps({"employee_count": len(employees), "endpoints": targets}),
                )
                session = self._session_from_row(session_row)
                job_rows = await conn.fetch(
                    f"""
                    insert into jobs (job_type, payload, priority, max_attempts, scheduled_for, sync_session_id)
                    select
                      $1,
                      jsonb_build_object('employee_id', pair.employee_id, 'endpoint', pair.endpoint),
                      $2,
                      $3,
                      now(),
                      $4::uuid
                    from unnest($5::text[], $6::text[]) as pair(employee_id, endpoint)
                    returning {JOB_COLUMNS}
                    """,
                    FETCH_JOB_TYPE,
                    priority,
                    self.policy.job_max_attempts,
                    session.id,
                    [pair[0] for pair in pairs],
                    [pair[1] for pair in pairs],
                )
                if not pairs:
                    session = await self._finish_in_tx(conn, session)

        logger.info(
            "sync session started session_id=%s session_type=%s source=%s jobs=%s",
            session.id,
            session.session_type,
            session.source,
            len(job_rows),
        )
        return session, [self._job_from_row(row) for row in job_rows]

    async def get_session(self, session_id: str) -> SyncSession:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {SESSION_COLUMNS} from sync_sessions where id = $1::uuid", session_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("sync session not found") from exc
        if not row:
            raise RepositoryNotFoundError("sync session not found")
        return self._session_from_row(row)

    async def record_result(
        self,
        session_id: str,
        employee_id: str,
        endpoint: str,
        outcome: SessionOutcome,
    ) -> SyncSession:
        if outcome not in SESSION_OUTCOMES:
            raise RepositoryValidationError("outcome must be one of: succeeded, unchanged, failed")
        pool = await self._get_pool()

        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"select {SESSION_COLUMNS} from sync_sessions where id = $1::uuid for update",
                        session_id,
                    )
                    if not row:
                        raise RepositoryNotFoundError("sync session not found")
                    session = self._session_from_row(row)

                    inserted = await conn.fetchval(
                        """
                        insert into sync_session_results (session_id, employee_id, endpoint, outcome)
                        values ($1::uuid, $2, $3, $4)
                        on conflict (session_id, employee_id, endpoint) do nothing
                        returning session_id::text
                        """,
                        session_id,
                        employee_id,
                        endpoint,
                        outcome,
                    )
                    if inserted is None:
                        return session
                    if session.status != "running":
                        logger.info(
                            "late session result ignored session_id=%s status=%s employee_id=%s endpoint=%s",
                            session_id,
                            session.status,
                            employee_id,
                            endpoint,
                        )
                        return session

                    row = await conn.fetchrow(
                        f"""
                        update sync_sessions
                        set
                          successful_records = successful_records + $2::int,
                          failed_records = failed_records + $3::int,
                          sync_details = case
                            when $4::boolean then jsonb_set(
                              sync_details,
                              '{{unchanged_records}}',
                              to_jsonb(coalesce((sync_details ->> 'unchanged_records')::int, 0) + 1)
                            )
                            else sync_details
                          end
                        where id = $1::uuid
                        returning {SESSION_COLUMNS}
                        """,
                        session_id,
                        0 if outcome == "failed" else 1,
                        1 if outcome == "failed" else 0,
                        outcome == "unchanged",
                    )
                    session = self._session_from_row(row)
                    if session_rules.all_reported(session):
                        session = await self._finish_in_tx(conn, session)
                    return session
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("sync session not found") from exc

    async def finish_session(self, session_id: str) -> SyncSession:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"select {SESSION_COLUMNS} from sync_sessions where id = $1::uuid for update",
                        session_id,
                    )
                    if not row:
                        raise RepositoryNotFoundError("sync session not found")
                    session = self._session_from_row(row)
                    if session.status != "running":
                        return session
                    return await self._finish_in_tx(conn, session)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("sync session not found") from exc

    async def _finish_in_tx(self, conn: asyncpg.Connection, session: SyncSession) -> SyncSession:
        status = session_rules.terminal_status(session)
        details: dict[str, Any] = {}
        unreported = session.total_records - session_rules.reported_records(session)
        if unreported > 0:
            details["unreported_records"] = unreported
        row = await conn.fetchrow(
            f"""
            update sync_sessions
            set status = $2::sync_session_status, completed_at = $3, sync_details = sync_details || $4::jsonb
            where id = $1::uuid
            returning {SESSION_COLUMNS}
            """,
            session.id,
            status,
            self.now(),
            json.dumps(details),
        )
        finished = self._session_from_row(row)
        await self._record_event(
            conn,
            entity_type="sync_session",
            entity_id=finished.id,
            event_type=session_rules.session_event_type(finished.status),
            payload=session_rules.session_event_payload(finished),
        )
        logger.info(
            "sync session finished session_id=%s status=%s total=%s successful=%s failed=%s",
            finished.id,
            finished.status,
            finished.total_records,
            finished.successful_records,
            finished.failed_records,
        )
        return finished

    async def expire_sessions(self, max_runtime_seconds: int | None = None) -> list[SyncSession]:
        runtime = max_runtime_seconds or self.policy.session_max_runtime_seconds
        pool = await self._get_pool()
        now = self.now()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    f"""
                    update sync_sessions
                    set
                      status = 'failed',
                      completed_at = $1,
                      sync_details = sync_details || '{{"reason": "wall_clock_exceeded"}}'::jsonb
                    where status = 'running'
                      and started_at < $1 - ($2::int * interval '1 second')
                    returning {SESSION_COLUMNS}
                    """,
                    now,
                    runtime,
                )
                expired = [self._session_from_row(row) for row in rows]
                for session in expired:
                    await self._record_event(
                        conn,
                        entity_type="sync_session",
                        entity_id=session.id,
                        event_type="sync_session_failed",
                        payload=session_rules.session_event_payload(session),
                    )
        for session in expired:
            logger.error("sync session expired session_id=%s started_at=%s", session.id, session.started_at.isoformat())
        return expired

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
        attempts_allowed = self._validate_job(job_type, payload, max_attempts)
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into jobs (job_type, payload, priority, max_attempts, scheduled_for, sync_session_id)
                values ($1, $2::jsonb, $3, $4, coalesce($5::timestamptz, now()), $6::uuid)
                returning {JOB_COLUMNS}
                """,
                job_type,
                _dump_json(payload),
                priority,
                attempts_allowed,
                scheduled_for,
                sync_session_id,
            )
        except (pg_exc.ForeignKeyViolationError, pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("sync session not found") from exc
        return self._job_from_row(row)

    async def get_job(self, job_id: str) -> Job:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {JOB_COLUMNS} from jobs where id = $1::uuid", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if not row:
            raise RepositoryNotFoundError("job not found")
        return self._job_from_row(row)

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
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select {JOB_COLUMNS}
                from jobs
                where ($1::text is null or status::text = $1)
                  and ($2::text is null or job_type = $2)
                  and ($3::uuid is null or sync_session_id = $3::uuid)
                  and ($4::text is null or payload ->> 'employee_id' = $4)
                order by created_at asc, id asc
                limit $5
                """,
                status,
                job_type,
                sync_session_id,
                employee_id,
                max(0, limit),
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("sync_session_id must be a uuid") from exc
        return [self._job_from_row(row) for row in rows]

    async def claim_next(
        self,
        worker_id: str,
        *,
        job_type: str | None = None,
        lease_seconds: int | None = None,
    ) -> Job | None:
        worker_id = self._require_text(worker_id, "worker_id")
        lease = lease_seconds or self.policy.job_default_lease_seconds
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            with candidate as (
              select j.id
              from jobs j
              left join sync_sessions s on s.id = j.sync_session_id
              where j.status = 'pending'
                and j.scheduled_for <= now()
                and ($2::text is null or j.job_type = $2)
                and (j.sync_session_id is null or s.status = 'running')
              order by j.priority desc, j.scheduled_for asc, j.created_at asc
              limit 1
              for update of j skip locked
            )
            update jobs
            set
              status = 'processing',
              locked_by = $1,
              started_at = now(),
              lease_expires_at = now() + ($3::int * interval '1 second'),
              updated_at = now()
            from candidate
            where jobs.id = candidate.id
            returning {JOB_COLUMNS}
            """,
            worker_id,
            job_type,
            lease,
        )
        return self._job_from_row(row) if row else None

    async def _mark_job_completed(self, job_id: str, worker_id: str, result: dict[str, Any]) -> Job:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    job = await self._lock_job(conn, job_id)
                    if job.status == "completed":
                        return job
                    self._check_lease_holder(job, worker_id)
                    row = await conn.fetchrow(
                        f"""
                        update jobs
                        set
                          status = 'completed',
                          completed_at = now(),
                          result = $2::jsonb,
                          locked_by = null,
                          lease_expires_at = null,
                          updated_at = now()
                        where id = $1::uuid
                        returning {JOB_COLUMNS}
                        """,
                        job_id,
                        _dump_json(result),
                    )
                    return self._job_from_row(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc

    async def _apply_job_failure(
        self,
        job_id: str,
        worker_id: str,
        *,
        error_details: dict[str, Any],
        retryable: bool,
    ) -> Job:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    job = await self._lock_job(conn, job_id)
                    self._check_lease_holder(job, worker_id)
                    return await self._fail_in_tx(conn, job, error_details=error_details, retryable=retryable)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc

    async def _requeue_expired_leases(self, limit: int) -> list[Job]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    f"""
                    select {JOB_COLUMNS}
                    from jobs
                    where status = 'processing' and lease_expires_at <= now()
                    order by lease_expires_at asc
                    limit $1
                    for update skip locked
                    """,
                    max(0, limit),
                )
                requeued: list[Job] = []
                for row in rows:
                    job = self._job_from_row(row)
                    details = queue_rules.error_details("lease expired", retryable=True, extra={"locked_by": job.locked_by})
                    requeued.append(await self._fail_in_tx(conn, job, error_details=details, retryable=True))
                return requeued

    async def _fail_in_tx(
        self,
        conn: asyncpg.Connection,
        job: Job,
        *,
        error_details: dict[str, Any],
        retryable: bool,
    ) -> Job:
        now = self.now()
        attempts, status, scheduled_for = self._retry_schedule(job, retryable=retryable, now=now)
        row = await conn.fetchrow(
            f"""
            update jobs
            set
              attempts = $2,
              status = $3::job_status,
              scheduled_for = $4,
              error_details = $5::jsonb,
              completed_at = case when $3 = 'failed' then $6::timestamptz else completed_at end,
              locked_by = null,
              lease_expires_at = null,
              updated_at = $6
            where id = $1::uuid
            returning {JOB_COLUMNS}
            """,
            job.id,
            attempts,
            status,
            scheduled_for,
            _dump_json(error_details),
            now,
        )
        return self._job_from_row(row)

    async def _lock_job(self, conn: asyncpg.Connection, job_id: str) -> Job:
        row = await conn.fetchrow(f"select {JOB_COLUMNS} from jobs where id = $1::uuid for update", job_id)
        if not row:
            raise RepositoryNotFoundError("job not found")
        return self._job_from_row(row)

    async def promote_starving_jobs(self, max_age_seconds: int | None = None, limit: int = 100) -> int:
        max_age = max_age_seconds or self.policy.job_starvation_max_age_seconds
        priority = self.policy.job_starvation_priority
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            update jobs
            set priority = $1, promoted_at = now(), updated_at = now()
            where id in (
              select id
              from jobs
              where status = 'pending'
                and priority < $1
                and created_at <= now() - ($2::int * interval '1 second')
              order by created_at asc
              limit $3
              for update skip locked
            )
            returning id::text as id
            """,
            priority,
            max_age,
            max(0, limit),
        )
        if rows:
            logger.info("starving jobs promoted count=%s priority=%s", len(rows), priority)
        return len(rows)

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
        employee_id = self._require_text(employee_id, "employee_id")
        field_path = self._require_text(field_path, "field_path")
        remote = await self.lookup_at(employee_id, field_path, self.now())
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("select pg_advisory_xact_lock(hashtext($1))", employee_id)
                row = await conn.fetchrow(
                    """
                    insert into local_facts (employee_id, field_path, value, is_authoritative, set_by, set_at)
                    values ($1, $2, $3::jsonb, $4, $5, $6)
                    on conflict (employee_id, field_path) do update
                    set
                      value = excluded.value,
                      is_authoritative = excluded.is_authoritative,
                      set_by = excluded.set_by,
                      set_at = excluded.set_at
                    returning employee_id, field_path, value, is_authoritative, set_by, set_at
                    """,
                    employee_id,
                    field_path,
                    _dump_json(value),
                    is_authoritative,
                    set_by,
                    self.now(),
                )
                fact = self._fact_from_row(row)
                conflict = self._fact_conflict(
                    fact,
                    remote,
                    await self._fetch_conflicts(conn, employee_id, field_path, unresolved_only=False),
                )
                if conflict is not None:
                    await self._insert_conflict(conn, conflict)
        if conflict is not None:
            logger.info(
                "local fact disagrees with remote employee_id=%s field_path=%s conflict_id=%s",
                employee_id,
                field_path,
                conflict.id,
            )
        return fact

    async def get_local_fact(self, employee_id: str, field_path: str) -> LocalFact | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select employee_id, field_path, value, is_authoritative, set_by, set_at
            from local_facts
            where employee_id = $1 and field_path = $2
            """,
            employee_id,
            field_path,
        )
        return self._fact_from_row(row) if row else None

    async def list_conflicts(
        self,
        *,
        employee_id: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[SyncConflict]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {CONFLICT_COLUMNS}
            from sync_conflicts
            where ($1::text is null or employee_id = $1)
              and ($2::text is null or resolution_status::text = $2)
            order by created_at asc, id asc
            limit $3
            """,
            employee_id,
            status,
            max(0, limit),
        )
        return [self._conflict_from_row(row) for row in rows]

    async def get_conflict(self, conflict_id: str) -> SyncConflict:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {CONFLICT_COLUMNS} from sync_conflicts where id = $1::uuid", conflict_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("conflict not found") from exc
        if not row:
            raise RepositoryNotFoundError("conflict not found")
        return self._conflict_from_row(row)

    async def resolve_conflict(self, conflict_id: str, decision: str, resolved_by: str) -> SyncConflict:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"select {CONFLICT_COLUMNS} from sync_conflicts where id = $1::uuid for update",
                        conflict_id,
                    )
                    if not row:
                        raise RepositoryNotFoundError("conflict not found")
                    now = self.now()
                    conflict = conflict_rules.apply_decision(
                        self._conflict_from_row(row),
                        decision=decision,
                        resolved_by=resolved_by,
                        now=now,
                    )
                    await conn.execute(
                        """
                        update sync_conflicts
                        set
                          resolution_status = $2::conflict_resolution_status,
                          resolution = $3,
                          resolved_by = $4,
                          resolved_at = $5
                        where id = $1::uuid
                        """,
                        conflict.id,
                        conflict.resolution_status,
                        conflict.resolution,
                        conflict.resolved_by,
                        conflict.resolved_at,
                    )
                    if decision == "accept_remote":
                        await conn.execute(
                            """
                            insert into local_facts (employee_id, field_path, value, is_authoritative, set_by, set_at)
                            values ($1, $2, $3::jsonb, true, $4, $5)
                            on conflict (employee_id, field_path) do update
                            set value = excluded.value, set_by = excluded.set_by, set_at = excluded.set_at
                            """,
                            conflict.employee_id,
                            conflict.field_path,
                            _dump_json(conflict.remote_data.get("value")),
                            conflict.resolved_by,
                            now,
                        )
                    await self._record_event(
                        conn,
                        entity_type="conflict",
                        entity_id=conflict.id,
                        event_type="conflict_resolved",
                        payload={
                            "decision": decision,
                            "resolved_by": conflict.resolved_by,
                            "field_path": conflict.field_path,
                        },
                    )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("conflict not found") from exc
        logger.info("conflict resolved conflict_id=%s decision=%s", conflict_id, decision)
        return conflict

    # events

    async def _record_event(
        self,
        conn: asyncpg.Connection,
        *,
        entity_type: str,
        entity_id: str | None,
        event_type: str,
        payload: dict[str, Any],
    ) -> None:
        await conn.execute(
            """
            insert into ledger_events (entity_type, entity_id, event_type, payload)
            values ($1, $2, $3, $4::jsonb)
            """,
            entity_type,
            entity_id,
            event_type,
            _dump_json(payload),
        )

    async def list_events(self, *, after_id: int = 0, limit: int = 100, event_type: str | None = None) -> list[LedgerEvent]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id, entity_type, entity_id, event_type, payload, created_at
            from ledger_events
            where id > $1 and ($2::text is null or event_type = $2)
            order by id asc
            limit $3
            """,
            after_id,
            event_type,
            max(0, limit),
        )
        return [
            LedgerEvent(
                id=row["id"],
                entity_type=row["entity_type"],
                entity_id=row["entity_id"],
                event_type=row["event_type"],
                payload=self._coerce_json_dict(row["payload"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("EL_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    # row mapping

    @staticmethod
    def _version_from_row(row: asyncpg.Record) -> RawVersion:
        return RawVersion(
            id=row["id"],
            employee_id=row["employee_id"],
            endpoint=row["endpoint"],
            payload=_load_json(row["payload"]),
            content_hash=row["content_hash"],
            collected_at=row["collected_at"],
            last_verified_at=row["last_verified_at"],
            effective_from=row["effective_from"],
            effective_to=row["effective_to"],
            is_latest=row["is_latest"],
            is_partial=row["is_partial"],
            confidence_score=float(row["confidence_score"]),
            http_status=row["http_status"],
            error_message=row["error_message"],
            retry_count=row["retry_count"],
            supersedes=row["supersedes"],
            superseded_by=row["superseded_by"],
            sync_session_id=row["sync_session_id"],
        )

    def _change_from_row(self, row: asyncpg.Record) -> ChangeRecord:
        return ChangeRecord(
            id=row["id"],
            employee_id=row["employee_id"],
            endpoint=row["endpoint"],
            field_path=row["field_path"],
            old_value=_load_json(row["old_value"]),
            new_value=_load_json(row["new_value"]),
            change_type=row["change_type"],
            is_significant=row["is_significant"],
            is_duplicate=row["is_duplicate"],
            is_correction=row["is_correction"],
            detected_at=row["detected_at"],
            sync_session_id=row["sync_session_id"],
            raw_version_id=row["raw_version_id"],
            previous_version_id=row["previous_version_id"],
            confidence_score=float(row["confidence_score"]),
            metadata=self._coerce_json_dict(row["metadata"]),
        )

    def _session_from_row(self, row: asyncpg.Record) -> SyncSession:
        return SyncSession(
            id=row["id"],
            session_type=row["session_type"],
            source=row["source"],
            status=row["status"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            total_records=row["total_records"],
            successful_records=row["successful_records"],
            failed_records=row["failed_records"],
            sync_details=self._coerce_json_dict(row["sync_details"]),
        )

    def _job_from_row(self, row: asyncpg.Record) -> Job:
        return Job(
            id=row["id"],
            job_type=row["job_type"],
            payload=self._coerce_json_dict(row["payload"]),
            priority=row["priority"],
            status=row["status"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            scheduled_for=row["scheduled_for"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            result=self._coerce_json_dict(row["result"]) if row["result"] is not None else None,
            error_details=self._coerce_json_dict(row["error_details"]) if row["error_details"] is not None else None,
            locked_by=row["locked_by"],
            lease_expires_at=row["lease_expires_at"],
            sync_session_id=row["sync_session_id"],
            promoted_at=row["promoted_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _fact_from_row(row: asyncpg.Record) -> LocalFact:
        return LocalFact(
            employee_id=row["employee_id"],
            field_path=row["field_path"],
            value=_load_json(row["value"]),
            is_authoritative=row["is_authoritative"],
            set_by=row["set_by"],
            set_at=row["set_at"],
        )

    def _conflict_from_row(self, row: asyncpg.Record) -> SyncConflict:
        return SyncConflict(
            id=row["id"],
            employee_id=row["employee_id"],
            field_path=row["field_path"],
            conflict_type=row["conflict_type"],
            local_data=self._coerce_json_dict(row["local_data"]),
            remote_data=self._coerce_json_dict(row["remote_data"]),
            change_id=row["change_id"],
            resolution_status=row["resolution_status"],
            resolution=row["resolution"],
            resolved_by=row["resolved_by"],
            resolved_at=row["resolved_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


def _dump_json(value: Any) -> str:
    return json.dumps(value, default=str)


def _load_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


@lru_cache
def get_repository() -> LedgerRepository:
    settings = get_settings()
    if settings.storage_backend not in STORAGE_BACKENDS:
        raise ValueError(f"unsupported storage backend: {settings.storage_backend}")
    policy = LedgerPolicy.from_settings(settings)
    if settings.storage_backend == "memory":
        return InMemoryRepository(policy=policy)
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        policy=policy,
    )
