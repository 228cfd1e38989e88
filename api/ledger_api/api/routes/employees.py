from datetime import date, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ledger_api.core.auth import LEDGER_READ, LOCAL_FACTS_WRITE
from ledger_api.core.security import get_machine_principal
from ledger_api.schemas.ledger import (
    ChangeRecordOut,
    EmployeeStatusOut,
    LocalFactIn,
    LocalFactOut,
    PointInTimeValueOut,
    RawVersionOut,
    SalaryPeriodOut,
    TimelineEventOut,
)
from ledger_api.services.errors import RepositoryUnavailableError, RepositoryValidationError
from ledger_api.services.repository import get_repository
from ledger_api.services.temporal import PointInTimeValue, SalaryPeriod, TimelineEvent

router = APIRouter()


def parse_instant(raw: str | None, name: str) -> date | datetime | None:
    """Accept ``YYYY-MM-DD`` (a whole UTC day) or a full ISO-8601 timestamp."""
    if raw is None or not raw.strip():
        return None
    text = raw.strip()
    try:
        if len(text) == 10:
            return date.fromisoformat(text)
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"{name} must be an ISO-8601 date or timestamp",
        ) from exc


def _value_out(employee_id: str, field_path: str, value: PointInTimeValue) -> PointInTimeValueOut:
    return PointInTimeValueOut(
        employee_id=employee_id,
        field_path=field_path,
        found=value.found,
        value=value.value,
        source=value.source,
        as_of=value.as_of,
        record_id=value.record_id,
        confidence_score=value.confidence_score,
        endpoint=value.endpoint,
    )


def _event_out(event: TimelineEvent) -> TimelineEventOut:
    return TimelineEventOut(
        occurred_at=event.occurred_at,
        event_type=event.event_type,
        category=event.category,
        sync_session_id=event.sync_session_id,
        is_composite=event.is_composite,
        endpoints=event.endpoints,
        milestones=list(event.milestones),
        duplicate_change_ids=list(event.duplicate_change_ids),
        details=dict(event.details),
        changes=[ChangeRecordOut.model_validate(change) for change in event.changes],
    )


def _period_out(period: SalaryPeriod) -> SalaryPeriodOut:
    match = period.scale_match
    return SalaryPeriodOut(
        valid_from=period.valid_from,
        valid_to=period.valid_to,
        gross_monthly=period.gross_monthly,
        hours_per_week=period.hours_per_week,
        hourly_wage=period.hourly_wage,
        yearly_gross=period.yearly_gross,
        cao_scale=match.scale if match else None,
        cao_trede=match.trede if match else None,
        cao_expected_gross_monthly=match.expected_gross_monthly if match else None,
        cao_deviation=match.deviation if match else None,
    )


@router.get("/{employee_id}/values/{field_path:path}", response_model=PointInTimeValueOut)
async def get_value_at(
    employee_id: str,
    field_path: str,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    at: str | None = Query(default=None),
) -> PointInTimeValueOut:
    try:
        principal.require_scopes({LEDGER_READ})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    instant = parse_instant(at, "at") or repository.now()
    try:
        value = await repository.lookup_at(employee_id, field_path, instant)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return _value_out(employee_id, field_path, value)


@router.get("/{employee_id}/current/{field_path:path}", response_model=PointInTimeValueOut)
async def get_current_value(
    employee_id: str,
    field_path: str,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> PointInTimeValueOut:
    try:
        principal.require_scopes({LEDGER_READ})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        value = await repository.current_value(employee_id, field_path)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return _value_out(employee_id, field_path, value)


@router.get("/{employee_id}/timeline", response_model=list[TimelineEventOut])
async def get_timeline(
    employee_id: str,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    start: str | None = Query(default=None),
    end: str | None = Query(default=None),
) -> list[TimelineEventOut]:
    try:
        principal.require_scopes({LEDGER_READ})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        events = await repository.timeline(
            employee_id,
            start=parse_instant(start, "start"),
            end=parse_instant(end, "end"),
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [_event_out(event) for event in events]


@router.get("/{employee_id}/salary-progression", response_model=list[SalaryPeriodOut])
async def get_salary_progression(
    employee_id: str,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    start: str | None = Query(default=None),
    end: str | None = Query(default=None),
) -> list[SalaryPeriodOut]:
    try:
        principal.require_scopes({LEDGER_READ})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        periods = await repository.salary_progression(
            employee_id,
            start=parse_instant(start, "start"),
            end=parse_instant(end, "end"),
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [_period_out(period) for period in periods]


@router.get("/{employee_id}/versions", response_model=list[RawVersionOut])
async def list_versions(
    employee_id: str,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    endpoint: str | None = Query(default=None),
) -> list[RawVersionOut]:
    try:
        principal.require_scopes({LEDGER_READ})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        versions = await repository.list_versions(employee_id, endpoint)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [RawVersionOut.model_validate(version) for version in versions]


@router.get("/{employee_id}/changes", response_model=list[ChangeRecordOut])
async def list_changes(
    employee_id: str,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    field_path: str | None = Query(default=None),
    significant_only: bool = Query(default=False),
    include_duplicates: bool = Query(default=True),
    limit: int = Query(default=100, ge=1, le=1000),
) -> list[ChangeRecordOut]:
    try:
        principal.require_scopes({LEDGER_READ})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        changes = await repository.list_changes(
            employee_id,
            field_path=field_path,
            significant_only=significant_only,
            include_duplicates=include_duplicates,
            limit=limit,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [ChangeRecordOut.model_validate(change) for change in changes]


@router.get("/{employee_id}/status", response_model=EmployeeStatusOut)
async def get_sync_status(
    employee_id: str,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> EmployeeStatusOut:
    try:
        principal.require_scopes({LEDGER_READ})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        sync_status = await repository.sync_status(employee_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return EmployeeStatusOut(employee_id=employee_id, status=sync_status)


@router.put("/{employee_id}/local-facts/{field_path:path}", response_model=LocalFactOut)
async def put_local_fact(
    employee_id: str,
    field_path: str,
    payload: LocalFactIn,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> LocalFactOut:
    try:
        principal.require_scopes({LOCAL_FACTS_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        fact = await repository.set_local_fact(
            employee_id=employee_id,
            field_path=field_path,
            value=payload.value,
            is_authoritative=payload.is_authoritative,
            set_by=principal.subject,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    return LocalFactOut.model_validate(fact)
