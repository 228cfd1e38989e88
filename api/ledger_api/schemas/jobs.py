from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

JobStatus = Literal["pending", "processing", "completed", "failed"]
JobType = Literal["fetch_endpoint", "scheduled_sync"]


class JobOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    job_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int
    status: JobStatus
    attempts: int
    max_attempts: int
    scheduled_for: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: dict[str, Any] | None = None
    error_details: dict[str, Any] | None = None
    locked_by: str | None = None
    lease_expires_at: datetime | None = None
    sync_session_id: str | None = None
    promoted_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class EnqueueJobRequest(BaseModel):
    job_type: JobType
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    scheduled_for: datetime | None = None
    max_attempts: int | None = Field(default=None, ge=1)
    sync_session_id: str | None = None


class ClaimRequest(BaseModel):
    worker_id: str | None = None
    job_type: JobType | None = None
    lease_seconds: int | None = Field(default=None, ge=1, le=3600)


class ClaimResponse(BaseModel):
    job: JobOut | None = None


class ResultRequest(BaseModel):
    status: Literal["done", "failed"]
    worker_id: str | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    retryable: bool = True


class BatchRequest(BaseModel):
    limit: int = Field(default=100, ge=1, le=1000)
    max_age_seconds: int | None = Field(default=None, ge=1)


class CountOut(BaseModel):
    count: int
