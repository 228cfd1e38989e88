from fastapi import APIRouter, Depends, HTTPException, status

from ledger_api.core.auth import INGEST_WRITE
from ledger_api.core.security import get_machine_principal
from ledger_api.schemas.conflicts import ConflictOut
from ledger_api.schemas.ledger import ChangeRecordOut, IngestRequest, IngestResponse, RawVersionOut
from ledger_api.services.errors import (
    HashCollisionError,
    RepositoryConflictError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from ledger_api.services.records import FetchMetadata
from ledger_api.services.repository import get_repository

router = APIRouter()


@router.post("", response_model=IngestResponse)
async def ingest_payload(
    payload: IngestRequest,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> IngestResponse:
    try:
        principal.require_scopes({INGEST_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    metadata = FetchMetadata(
        http_status=payload.metadata.http_status,
        is_partial=payload.metadata.is_partial,
        retry_count=payload.metadata.retry_count,
        error_message=payload.metadata.error_message,
        collected_at=payload.metadata.collected_at,
        sync_session_id=payload.sync_session_id,
    )
    try:
        outcome = await repository.ingest(
            employee_id=payload.employee_id,
            endpoint=payload.endpoint,
            payload=payload.payload,
            metadata=metadata,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except (RepositoryConflictError, HashCollisionError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    return IngestResponse(
        version=RawVersionOut.model_validate(outcome.version),
        duplicate=outcome.duplicate,
        stale=outcome.stale,
        recovered=outcome.recovered,
        superseded_id=outcome.superseded.id if outcome.superseded else None,
        changes=[ChangeRecordOut.model_validate(change) for change in outcome.changes],
        conflicts=[ConflictOut.model_validate(conflict) for conflict in outcome.conflicts],
    )
