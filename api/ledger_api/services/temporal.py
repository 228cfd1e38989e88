"""Point-in-time and timeline reads over the change stream.

Everything here is a pure function of records the repository already
loaded. No wall clock is consulted; callers pass ``at`` explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Iterable, Literal

from ledger_api.core.payloads import as_number, as_of_instant, flatten_payload, get_path, parse_timestamp, values_equal
from ledger_api.services.cao import CaoSalaryTable, ScaleMatch, hourly_wage, nearest_scale_step
from ledger_api.services.changes import infer_category
from ledger_api.services.conflicts import local_wins
from ledger_api.services.records import ChangeRecord, LocalFact, RawVersion, SyncConflict

ValueSource = Literal["change", "baseline", "local", "none"]

CONTRACT_ENDPOINTS = {"/contracts", "/employments"}
SALARY_FIELD_CANDIDATES = ("salary.gross_monthly", "salary.gross", "gross_monthly", "salary.amount")
HOURS_FIELD_CANDIDATES = ("hours.per_week", "hours_per_week", "contract.hours_per_week", "hours.hours_per_week")

FIRST_CONTRACT = "first_contract"
CONTRACT_CHAIN_THRESHOLD = "contract_chain_threshold"
FIVE_YEAR_ANNIVERSARY = "five_year_anniversary"


@dataclass(slots=True)
class PointInTimeValue:
    found: bool
    value: Any
    source: ValueSource
    as_of: datetime | None
    record_id: str | None = None
    confidence_score: float | None = None
    endpoint: str | None = None


@dataclass(slots=True)
class TimelineEvent:
    employee_id: str
    occurred_at: datetime
    event_type: str
    category: str
    sync_session_id: str | None
    changes: list[ChangeRecord] = field(default_factory=list)
    duplicate_change_ids: list[str] = field(default_factory=list)
    milestones: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def is_composite(self) -> bool:
        return len(self.changes) + len(self.duplicate_change_ids) > 1

    @property
    def endpoints(self) -> list[str]:
        if not self.changes:
            endpoint = self.details.get("endpoint")
            return [endpoint] if endpoint else []
        return sorted({change.endpoint for change in self.changes})

    @property
    def last_at(self) -> datetime:
        if not self.changes:
            return self.occurred_at
        return max(change.detected_at for change in self.changes)


@dataclass(slots=True)
class SalaryPeriod:
    valid_from: datetime
    valid_to: datetime | None
    gross_monthly: float
    hours_per_week: float | None
    hourly_wage: float | None
    yearly_gross: float
    scale_match: ScaleMatch | None = None


def lookup_at(
    *,
    field_path: str,
    at: date | datetime,
    changes: Iterable[ChangeRecord],
    versions: Iterable[RawVersion],
    confidence_floor: float = 0.0,
    local_fact: LocalFact | None = None,
    conflicts: Iterable[SyncConflict] = (),
    prefer_local: bool = False,
) -> PointInTimeValue:
    instant = as_of_instant(at)
    if prefer_local and local_fact is not None and local_wins(local_fact, conflicts):
        return PointInTimeValue(
            found=True,
            value=local_fact.value,
            source="local",
            as_of=local_fact.set_at,
            confidence_score=1.0,
        )

    # demoted duplicates still describe what was known at their detection time
    candidates = sorted(
        (change for change in changes if change.field_path == field_path and change.detected_at <= instant),
        key=lambda change: (change.detected_at, change.id),
    )
    confident = [change for change in candidates if change.confidence_score >= confidence_floor]
    if confident:
        return _from_change(confident[-1])

    observed: list[tuple[RawVersion, Any]] = []
    for version in versions:
        if version.collected_at > instant:
            continue
        found, value = get_path(version.payload, field_path)
        if found:
            observed.append((version, value))
    observed.sort(key=lambda item: (item[0].collected_at, item[0].id))

    confident_versions = [item for item in observed if item[0].confidence_score >= confidence_floor]
    if confident_versions:
        return _from_version(*confident_versions[-1])
    if candidates:
        return _from_change(candidates[-1])
    if observed:
        return _from_version(*observed[-1])
    return PointInTimeValue(found=False, value=None, source="none", as_of=None)


def value_at(**kwargs: Any) -> Any:
    return lookup_at(**kwargs).value


def _from_change(change: ChangeRecord) -> PointInTimeValue:
    return PointInTimeValue(
        found=True,
        value=change.new_value,
        source="change",
        as_of=change.detected_at,
        record_id=change.id,
        confidence_score=change.confidence_score,
        endpoint=change.endpoint,
    )


def _from_version(version: RawVersion, value: Any) -> PointInTimeValue:
    return PointInTimeValue(
        found=True,
        value=value,
        source="baseline",
        as_of=version.collected_at,
        record_id=version.id,
        confidence_score=version.confidence_score,
        endpoint=version.endpoint,
    )


def lower_bound(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return as_of_instant(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def is_contract_start_path(endpoint: str, field_path: str) -> bool:
    lowered = field_path.lower()
    if not lowered.endswith("start_date"):
        return False
    return "contract" in lowered or endpoint in CONTRACT_ENDPOINTS


def chain_baselines(versions: Iterable[RawVersion]) -> list[RawVersion]:
    earliest: dict[str, RawVersion] = {}
    for version in versions:
        current = earliest.get(version.endpoint)
        if current is None or (version.collected_at, version.id) < (current.collected_at, current.id):
            earliest[version.endpoint] = version
    return sorted(earliest.values(), key=lambda version: (version.collected_at, version.endpoint))


def build_timeline(
    *,
    employee_id: str,
    changes: Iterable[ChangeRecord],
    versions: Iterable[RawVersion],
    collapse_window_seconds: int = 3600,
    contract_chain_threshold: int = 3,
    start: date | datetime | None = None,
    end: date | datetime | None = None,
    tolerance: float = 0.01,
) -> list[TimelineEvent]:
    """Collapse significant changes into events and flag career milestones.

    The ``start``/``end`` filter is applied after milestones are assigned so
    a window never changes which event counts as e.g. the first contract.
    """
    window = timedelta(seconds=max(0, collapse_window_seconds))
    all_changes = sorted(changes, key=lambda change: (change.detected_at, change.id))
    baselines = chain_baselines(versions)

    events: list[TimelineEvent] = [
        TimelineEvent(
            employee_id=employee_id,
            occurred_at=version.collected_at,
            event_type="first_observed",
            category="baseline",
            sync_session_id=version.sync_session_id,
            details={"endpoint": version.endpoint, "raw_version_id": version.id},
        )
        for version in baselines
    ]

    open_groups: dict[str, TimelineEvent] = {}
    change_events: list[TimelineEvent] = []
    for change in all_changes:
        if not change.is_significant or change.is_duplicate:
            continue
        category = str(change.metadata.get("category") or infer_category(change.field_path))
        group = open_groups.get(category)
        if group is not None and _joins_group(group, change, window):
            group.changes.append(change)
            continue
        group = TimelineEvent(
            employee_id=employee_id,
            occurred_at=change.detected_at,
            event_type=f"{category}_change",
            category=category,
            sync_session_id=change.sync_session_id,
            changes=[change],
        )
        open_groups[category] = group
        change_events.append(group)

    for change in all_changes:
        if not change.is_duplicate:
            continue
        for group in change_events:
            if any(_same_transition(change, member, tolerance) for member in group.changes):
                group.duplicate_change_ids.append(change.id)
                break

    for group in change_events:
        group.event_type = _event_type(group)
        group.details = _summarize(group)
    events.extend(change_events)
    events.sort(key=lambda event: (event.occurred_at, 0 if event.event_type == "first_observed" else 1, event.category))

    _assign_milestones(events, baselines, contract_chain_threshold)

    lower = lower_bound(start) if start is not None else None
    upper = as_of_instant(end) if end is not None else None
    return [
        event
        for event in events
        if (lower is None or event.occurred_at >= lower) and (upper is None or event.occurred_at <= upper)
    ]


def _joins_group(group: TimelineEvent, change: ChangeRecord, window: timedelta) -> bool:
    if change.sync_session_id is not None and change.sync_session_id == group.sync_session_id:
        return True
    return change.detected_at - group.last_at <= window


def _same_transition(left: ChangeRecord, right: ChangeRecord, tolerance: float) -> bool:
    return (
        left.field_path == right.field_path
        and values_equal(left.old_value, right.old_value, tolerance=tolerance)
        and values_equal(left.new_value, right.new_value, tolerance=tolerance)
    )


def _event_type(group: TimelineEvent) -> str:
    if group.category == "salary":
        for change in group.changes:
            amount = change.metadata.get("change_amount")
            if amount:
                return "salary_increase" if amount > 0 else "salary_decrease"
    if group.category == "contract" and any(
        is_contract_start_path(change.endpoint, change.field_path) for change in group.changes
    ):
        return "contract_started"
    return f"{group.category}_change"


def _summarize(group: TimelineEvent) -> dict[str, Any]:
    details: dict[str, Any] = {
        "field_paths": sorted({change.field_path for change in group.changes}),
        "change_count": len(group.changes),
        "confidence_score": min(change.confidence_score for change in group.changes),
    }
    if any(change.is_correction for change in group.changes):
        details["has_correction"] = True
    numeric = [change for change in group.changes if "change_amount" in change.metadata]
    if numeric:
        head = numeric[0]
        details["change_amount"] = head.metadata["change_amount"]
        details["change_percent"] = head.metadata.get("change_percent")
    return details


def _contract_starts(event: TimelineEvent, baselines_by_id: dict[str, RawVersion]) -> list[datetime]:
    starts: list[datetime] = []
    if event.event_type == "first_observed":
        version = baselines_by_id.get(event.details.get("raw_version_id", ""))
        if version is None:
            return starts
        for path, value in flatten_payload(version.payload).items():
            if is_contract_start_path(version.endpoint, path):
                parsed = parse_timestamp(value)
                if parsed is not None:
                    starts.append(parsed)
        return sorted(starts)

    for change in event.changes:
        if change.change_type == "field_removed" or not is_contract_start_path(change.endpoint, change.field_path):
            continue
        parsed = parse_timestamp(change.new_value)
        if parsed is not None:
            starts.append(parsed)
    return sorted(starts)


def _assign_milestones(events: list[TimelineEvent], baselines: list[RawVersion], threshold: int) -> None:
    baselines_by_id = {version.id: version for version in baselines}
    seen: list[datetime] = []
    for event in events:
        for started in _contract_starts(event, baselines_by_id):
            if started in seen:
                continue
            seen.append(started)
            if len(seen) == 1 and FIRST_CONTRACT not in event.milestones:
                event.milestones.append(FIRST_CONTRACT)
            if len(seen) == threshold and CONTRACT_CHAIN_THRESHOLD not in event.milestones:
                event.milestones.append(CONTRACT_CHAIN_THRESHOLD)

    if not seen:
        return
    anniversary = _add_years(min(seen), 5)
    for event in events:
        if event.occurred_at >= anniversary:
            event.milestones.append(FIVE_YEAR_ANNIVERSARY)
            break


def _add_years(value: datetime, years: int) -> datetime:
    try:
        return value.replace(year=value.year + years)
    except ValueError:
        return value.replace(year=value.year + years, day=28)


def resolve_field(
    candidates: Iterable[str],
    changes: list[ChangeRecord],
    versions: list[RawVersion],
) -> str | None:
    for candidate in candidates:
        if any(change.field_path == candidate for change in changes):
            return candidate
        if any(get_path(version.payload, candidate)[0] for version in versions):
            return candidate
    return None


def salary_progression(
    *,
    changes: Iterable[ChangeRecord],
    versions: Iterable[RawVersion],
    cao_table: CaoSalaryTable,
    salary_field: str | None = None,
    hours_field: str | None = None,
    start: date | datetime | None = None,
    end: date | datetime | None = None,
    confidence_floor: float = 0.0,
) -> list[SalaryPeriod]:
    change_rows = list(changes)
    version_rows = list(versions)
    salary_path = salary_field or resolve_field(SALARY_FIELD_CANDIDATES, change_rows, version_rows)
    if salary_path is None:
        return []
    hours_path = hours_field or resolve_field(HOURS_FIELD_CANDIDATES, change_rows, version_rows)
    tracked = {salary_path, hours_path} - {None}

    breakpoints: set[datetime] = {
        change.detected_at for change in change_rows if change.field_path in tracked
    }
    for version in version_rows:
        if any(get_path(version.payload, path)[0] for path in tracked):
            breakpoints.add(version.collected_at)

    periods: list[SalaryPeriod] = []
    for moment in sorted(breakpoints):
        gross = as_number(
            lookup_at(
                field_path=salary_path,
                at=moment,
                changes=change_rows,
                versions=version_rows,
                confidence_floor=confidence_floor,
            ).value
        )
        hours = None
        if hours_path is not None:
            hours = as_number(
                lookup_at(
                    field_path=hours_path,
                    at=moment,
                    changes=change_rows,
                    versions=version_rows,
                    confidence_floor=confidence_floor,
                ).value
            )
        if periods and periods[-1].valid_to is None:
            previous = periods[-1]
            if previous.gross_monthly == gross and previous.hours_per_week == hours:
                continue
            previous.valid_to = moment
        if gross is None:
            continue
        periods.append(
            SalaryPeriod(
                valid_from=moment,
                valid_to=None,
                gross_monthly=gross,
                hours_per_week=hours,
                hourly_wage=hourly_wage(gross, hours) if hours else None,
                yearly_gross=round(gross * 12, 2),
                scale_match=nearest_scale_step(cao_table, gross, hours) if hours else None,
            )
        )

    lower = lower_bound(start) if start is not None else None
    upper = as_of_instant(end) if end is not None else None
    return [
        period
        for period in periods
        if (upper is None or period.valid_from <= upper) and (lower is None or period.valid_to is None or period.valid_to > lower)
    ]
