from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from ledger_api.schemas.jobs import JobOut

SessionStatus = Literal["running", "completed", "failed", "partial"]


class SyncSessionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    session_type: str
    source: str
    status: SessionStatus
    started_at: datetime
    completed_at: datetime | None = None
    total_records: int
    successful_records: int
    failed_records: int
    sync_details: dict[str, Any] = Field(default_factory=dict)


class StartSyncRequest(BaseModel):
    session_type: str = "manual"
    source: str
    employee_ids: list[str] = Field(default_factory=list)
    endpoints: list[str] | None = None
    priority: int = 0


class StartSyncResponse(BaseModel):
    session: SyncSessionOut
    jobs: list[JobOut] = Field(default_factory=list)


class ExpireSessionsRequest(BaseModel):
    max_runtime_seconds: int | None = Field(default=None, ge=1)
