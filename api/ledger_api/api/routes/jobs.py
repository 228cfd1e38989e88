from fastapi import APIRouter, Depends, HTTPException, Query, status

from ledger_api.core.auth import JOBS_READ, JOBS_WRITE
from ledger_api.core.security import get_machine_principal
from ledger_api.schemas.jobs import (
    BatchRequest,
    ClaimRequest,
    ClaimResponse,
    CountOut,
    EnqueueJobRequest,
    JobOut,
    JobStatus,
    JobType,
    ResultRequest,
)
from ledger_api.services.errors import (
    HashCollisionError,
    RepositoryConflictError,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from ledger_api.services.repository import get_repository

router = APIRouter()


def _worker_identity(subject: str, worker_id: str | None) -> str:
    # several worker processes may share one module credential
    if worker_id and worker_id.strip():
        return f"{subject}/{worker_id.strip()}"
    return subject


@router.post("", response_model=JobOut, status_code=status.HTTP_201_CREATED)
async def enqueue_job(
    payload: EnqueueJobRequest,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> JobOut:
    try:
        principal.require_scopes({JOBS_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        job = await repository.enqueue_job(
            job_type=payload.job_type,
            payload=payload.payload,
            priority=payload.priority,
            scheduled_for=payload.scheduled_for,
            max_attempts=payload.max_attempts,
            sync_session_id=payload.sync_session_id,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    return JobOut.model_validate(job)


@router.get("", response_model=list[JobOut])
async def list_jobs(
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    job_status: JobStatus | None = Query(default=None, alias="status"),
    job_type: JobType | None = Query(default=None),
    sync_session_id: str | None = Query(default=None),
    employee_id: str | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=500),
) -> list[JobOut]:
    try:
        principal.require_scopes({JOBS_READ})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        jobs = await repository.list_jobs(
            status=job_status,
            job_type=job_type,
            sync_session_id=sync_session_id,
            employee_id=employee_id,
            limit=limit,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [JobOut.model_validate(job) for job in jobs]


@router.post("/claim", response_model=ClaimResponse)
async def claim_job(
    payload: ClaimRequest,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> ClaimResponse:
    try:
        principal.require_scopes({JOBS_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        job = await repository.claim_next(
            _worker_identity(principal.subject, payload.worker_id),
            job_type=payload.job_type,
            lease_seconds=payload.lease_seconds,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if job is None:
        return ClaimResponse(job=None)
    return ClaimResponse(job=JobOut.model_validate(job))


@router.post("/reap-expired", response_model=CountOut)
async def reap_expired_leases(
    payload: BatchRequest,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> CountOut:
    try:
        principal.require_scopes({JOBS_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        count = await repository.requeue_expired_leases(limit=payload.limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return CountOut(count=count)


@router.post("/promote-starving", response_model=CountOut)
async def promote_starving_jobs(
    payload: BatchRequest,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> CountOut:
    try:
        principal.require_scopes({JOBS_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        count = await repository.promote_starving_jobs(payload.max_age_seconds, limit=payload.limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return CountOut(count=count)


@router.get("/{job_id}", response_model=JobOut)
async def get_job(
    job_id: str,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> JobOut:
    try:
        principal.require_scopes({JOBS_READ})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        job = await repository.get_job(job_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return JobOut.model_validate(job)


@router.post("/{job_id}/result", response_model=JobOut)
async def submit_job_result(
    job_id: str,
    payload: ResultRequest,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> JobOut:
    try:
        principal.require_scopes({JOBS_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    worker_id = _worker_identity(principal.subject, payload.worker_id)
    try:
        if payload.status == "done":
            job = await repository.complete_job(job_id, worker_id, payload.result)
        else:
            job = await repository.fail_job(job_id, worker_id, payload.error, retryable=payload.retryable)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryForbiddenError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except (RepositoryConflictError, HashCollisionError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    return JobOut.model_validate(job)
