from fastapi import APIRouter, Depends, HTTPException, Query, status

from ledger_api.core.auth import CONFLICTS_READ, CONFLICTS_WRITE
from ledger_api.core.security import get_machine_principal
from ledger_api.schemas.conflicts import ConflictOut, ResolutionStatus, ResolveConflictRequest
from ledger_api.services.errors import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from ledger_api.services.repository import get_repository

router = APIRouter()


@router.get("", response_model=list[ConflictOut])
async def list_conflicts(
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    employee_id: str | None = Query(default=None),
    resolution_status: ResolutionStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=1000),
) -> list[ConflictOut]:
    try:
        principal.require_scopes({CONFLICTS_READ})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows = await repository.list_conflicts(employee_id=employee_id, status=resolution_status, limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [ConflictOut.model_validate(row) for row in rows]


@router.get("/escalated", response_model=list[ConflictOut])
async def list_escalated_conflicts(
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    older_than_hours: int | None = Query(default=None, ge=1),
) -> list[ConflictOut]:
    try:
        principal.require_scopes({CONFLICTS_READ})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows = await repository.list_escalated_conflicts(older_than_hours)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [ConflictOut.model_validate(row) for row in rows]


@router.post("/{conflict_id}/resolve", response_model=ConflictOut)
async def resolve_conflict(
    conflict_id: str,
    payload: ResolveConflictRequest,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> ConflictOut:
    try:
        principal.require_scopes({CONFLICTS_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await repository.resolve_conflict(
            conflict_id,
            payload.decision,
            payload.resolved_by or principal.subject,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    return ConflictOut.model_validate(row)
