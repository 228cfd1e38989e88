from fastapi import APIRouter, Depends, HTTPException, Query, status

from ledger_api.core.auth import EVENTS_READ
from ledger_api.core.security import get_machine_principal
from ledger_api.schemas.conflicts import LedgerEventOut
from ledger_api.services.errors import RepositoryUnavailableError
from ledger_api.services.repository import get_repository

router = APIRouter()


@router.get("", response_model=list[LedgerEventOut])
async def list_events(
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    after_id: int = Query(default=0, ge=0),
    event_type: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
) -> list[LedgerEventOut]:
    try:
        principal.require_scopes({EVENTS_READ})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        events = await repository.list_events(after_id=after_id, limit=limit, event_type=event_type)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [LedgerEventOut.model_validate(event) for event in events]
