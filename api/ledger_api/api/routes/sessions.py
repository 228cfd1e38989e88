from fastapi import APIRouter, Depends, HTTPException, status

from ledger_api.core.auth import SESSIONS_READ, SESSIONS_WRITE
from ledger_api.core.security import get_machine_principal
from ledger_api.schemas.jobs import JobOut
from ledger_api.schemas.sessions import (
    ExpireSessionsRequest,
    StartSyncRequest,
    StartSyncResponse,
    SyncSessionOut,
)
from ledger_api.services.errors import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from ledger_api.services.repository import get_repository

router = APIRouter()


@router.post("", response_model=StartSyncResponse, status_code=status.HTTP_201_CREATED)
async def start_sync(
    payload: StartSyncRequest,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> StartSyncResponse:
    try:
        principal.require_scopes({SESSIONS_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        session, jobs = await repository.start_sync(
            session_type=payload.session_type,
            source=payload.source,
            employee_ids=payload.employee_ids,
            endpoints=payload.endpoints or list(repository.policy.provider_endpoints),
            priority=payload.priority,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    return StartSyncResponse(
        session=SyncSessionOut.model_validate(session),
        jobs=[JobOut.model_validate(job) for job in jobs],
    )


@router.post("/expire", response_model=list[SyncSessionOut])
async def expire_sessions(
    payload: ExpireSessionsRequest,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> list[SyncSessionOut]:
    try:
        principal.require_scopes({SESSIONS_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        expired = await repository.expire_sessions(payload.max_runtime_seconds)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [SyncSessionOut.model_validate(session) for session in expired]


@router.get("/{session_id}", response_model=SyncSessionOut)
async def get_session(
    session_id: str,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> SyncSessionOut:
    try:
        principal.require_scopes({SESSIONS_READ})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        session = await repository.get_session(session_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return SyncSessionOut.model_validate(session)


@router.post("/{session_id}/finish", response_model=SyncSessionOut)
async def finish_session(
    session_id: str,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> SyncSessionOut:
    try:
        principal.require_scopes({SESSIONS_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        session = await repository.finish_session(session_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return SyncSessionOut.model_validate(session)
