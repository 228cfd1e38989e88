from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

ChangeType = Literal["value_changed", "field_added", "field_removed"]
JobStatus = Literal["pending", "processing", "completed", "failed"]
SessionStatus = Literal["running", "completed", "failed", "partial"]
SessionOutcome = Literal["succeeded", "unchanged", "failed"]
ResolutionStatus = Literal["unresolved", "resolved", "ignored"]
ConflictDecision = Literal["keep_local", "accept_remote", "ignore"]

JOB_STATUSES = {"pending", "processing", "completed", "failed"}
SESSION_OUTCOMES = {"succeeded", "unchanged", "failed"}
CONFLICT_DECISIONS = {"keep_local", "accept_remote", "ignore"}
FETCH_JOB_TYPE = "fetch_endpoint"
SCHEDULED_SYNC_JOB_TYPE = "scheduled_sync"
JOB_TYPES = {FETCH_JOB_TYPE, SCHEDULED_SYNC_JOB_TYPE}


@dataclass(slots=True)
class MachineCredentialRecord:
    module_id: str
    scopes: list[str]
    key_hash: str


@dataclass(slots=True)
class FetchMetadata:
    http_status: int | None = 200
    is_partial: bool = False
    retry_count: int = 0
    error_message: str | None = None
    collected_at: datetime | None = None
    sync_session_id: str | None = None


@dataclass(slots=True)
class RawVersion:
    id: str
    employee_id: str
    endpoint: str
    payload: Any
    content_hash: str
    collected_at: datetime
    last_verified_at: datetime
    effective_from: datetime
    effective_to: datetime | None
    is_latest: bool
    is_partial: bool
    confidence_score: float
    http_status: int | None
    error_message: str | None
    retry_count: int
    supersedes: str | None
    superseded_by: str | None
    sync_session_id: str | None


@dataclass(slots=True)
class ChangeRecord:
    id: str
    employee_id: str
    endpoint: str
    field_path: str
    old_value: Any
    new_value: Any
    change_type: ChangeType
    is_significant: bool
    is_duplicate: bool
    is_correction: bool
    detected_at: datetime
    sync_session_id: str | None
    raw_version_id: str
    previous_version_id: str | None
    confidence_score: float = 1.0
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class IngestOutcome:
    version: RawVersion
    duplicate: bool
    superseded: RawVersion | None = None
    stale: bool = False
    recovered: bool = False
    changes: list[ChangeRecord] = field(default_factory=list)
    conflicts: list[SyncConflict] = field(default_factory=list)

    @property
    def session_outcome(self) -> SessionOutcome:
        if self.duplicate or self.stale:
            return "unchanged"
        return "succeeded"


@dataclass(slots=True)
class SyncSession:
    id: str
    session_type: str
    source: str
    status: SessionStatus
    started_at: datetime
    completed_at: datetime | None
    total_records: int
    successful_records: int
    failed_records: int
    sync_details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Job:
    id: str
    job_type: str
    payload: dict[str, Any]
    priority: int
    status: JobStatus
    attempts: int
    max_attempts: int
    scheduled_for: datetime
    started_at: datetime | None
    completed_at: datetime | None
    result: dict[str, Any] | None
    error_details: dict[str, Any] | None
    locked_by: str | None
    lease_expires_at: datetime | None
    sync_session_id: str | None
    promoted_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class LocalFact:
    employee_id: str
    field_path: str
    value: Any
    is_authoritative: bool
    set_by: str | None
    set_at: datetime


@dataclass(slots=True)
class SyncConflict:
    id: str
    employee_id: str
    field_path: str
    conflict_type: str
    local_data: dict[str, Any]
    remote_data: dict[str, Any]
    change_id: str | None
    resolution_status: ResolutionStatus
    resolution: str | None
    resolved_by: str | None
    resolved_at: datetime | None
    created_at: datetime


@dataclass(slots=True)
class LedgerEvent:
    id: int
    entity_type: str
    entity_id: str | None
    event_type: str
    payload: dict[str, Any]
    created_at: datetime
