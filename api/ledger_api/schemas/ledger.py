from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from ledger_api.schemas.conflicts import ConflictOut

ChangeType = Literal["value_changed", "field_added", "field_removed"]
EmployeeSyncStatus = Literal["up_to_date", "syncing", "degraded", "conflict_pending"]


class FetchMetadataIn(BaseModel):
    http_status: int | None = 200
    is_partial: bool = False
    retry_count: int = Field(default=0, ge=0)
    error_message: str | None = None
    collected_at: datetime | None = None


class IngestRequest(BaseModel):
    employee_id: str
    endpoint: str
    payload: Any
    metadata: FetchMetadataIn = Field(default_factory=FetchMetadataIn)
    sync_session_id: str | None = None


class RawVersionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    employee_id: str
    endpoint: str
    payload: Any = None
    content_hash: str
    collected_at: datetime
    last_verified_at: datetime
    effective_from: datetime
    effective_to: datetime | None = None
    is_latest: bool
    is_partial: bool
    confidence_score: float
    http_status: int | None = None
    error_message: str | None = None
    retry_count: int
    supersedes: str | None = None
    superseded_by: str | None = None
    sync_session_id: str | None = None


class ChangeRecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    employee_id: str
    endpoint: str
    field_path: str
    old_value: Any = None
    new_value: Any = None
    change_type: ChangeType
    is_significant: bool
    is_duplicate: bool
    is_correction: bool
    detected_at: datetime
    sync_session_id: str | None = None
    raw_version_id: str
    previous_version_id: str | None = None
    confidence_score: float
    metadata: dict[str, Any] = Field(default_factory=dict)


class IngestResponse(BaseModel):
    version: RawVersionOut
    duplicate: bool
    stale: bool
    recovered: bool = False
    superseded_id: str | None = None
    changes: list[ChangeRecordOut] = Field(default_factory=list)
    conflicts: list[ConflictOut] = Field(default_factory=list)


class PointInTimeValueOut(BaseModel):
    employee_id: str
    field_path: str
    found: bool
    value: Any = None
    source: Literal["change", "baseline", "local", "none"]
    as_of: datetime | None = None
    record_id: str | None = None
    confidence_score: float | None = None
    endpoint: str | None = None


class TimelineEventOut(BaseModel):
    occurred_at: datetime
    event_type: str
    category: str
    sync_session_id: str | None = None
    is_composite: bool
    endpoints: list[str] = Field(default_factory=list)
    milestones: list[str] = Field(default_factory=list)
    duplicate_change_ids: list[str] = Field(default_factory=list)
    details: dict[str, Any] = Field(default_factory=dict)
    changes: list[ChangeRecordOut] = Field(default_factory=list)


class SalaryPeriodOut(BaseModel):
    valid_from: datetime
    valid_to: datetime | None = None
    gross_monthly: float
    hours_per_week: float | None = None
    hourly_wage: float | None = None
    yearly_gross: float
    cao_scale: str | None = None
    cao_trede: str | None = None
    cao_expected_gross_monthly: float | None = None
    cao_deviation: float | None = None


class EmployeeStatusOut(BaseModel):
    employee_id: str
    status: EmployeeSyncStatus


class LocalFactIn(BaseModel):
    value: Any
    is_authoritative: bool = True


class LocalFactOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    employee_id: str
    field_path: str
    value: Any = None
    is_authoritative: bool
    set_by: str | None = None
    set_at: datetime
