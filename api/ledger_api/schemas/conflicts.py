from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

ConflictDecision = Literal["keep_local", "accept_remote", "ignore"]
ResolutionStatus = Literal["unresolved", "resolved", "ignored"]


class ConflictOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    employee_id: str
    field_path: str
    conflict_type: str
    local_data: dict[str, Any] = Field(default_factory=dict)
    remote_data: dict[str, Any] = Field(default_factory=dict)
    change_id: str | None = None
    resolution_status: ResolutionStatus
    resolution: str | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime


class ResolveConflictRequest(BaseModel):
    decision: ConflictDecision
    resolved_by: str | None = None


class LedgerEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    entity_type: str
    entity_id: str | None = None
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
