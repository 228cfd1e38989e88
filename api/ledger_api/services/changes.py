from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable
from uuid import uuid4

from ledger_api.core.payloads import as_number, flatten_payload, values_equal
from ledger_api.services.policy import SignificanceTable
from ledger_api.services.records import ChangeRecord, ChangeType, RawVersion

CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("salary", ("salary", "wage", "hourly", "gross", "bruto", "scale", "trede")),
    ("hours", ("hours", "hour_per_week", "days_per_week")),
    ("contract", ("contract", "employment", "start_date", "end_date")),
    ("position", ("position", "role", "job")),
    ("location", ("location",)),
    ("department", ("department",)),
    ("status", ("status",)),
)


@dataclass(slots=True)
class DuplicateDecision:
    changes: list[ChangeRecord]
    demoted_ids: list[str] = field(default_factory=list)


def infer_category(field_path: str) -> str:
    lowered = field_path.lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return category
    return "personal"


def numeric_delta(old_value: Any, new_value: Any) -> dict[str, float]:
    old_number = as_number(old_value)
    new_number = as_number(new_value)
    if old_number is None or new_number is None:
        return {}
    amount = round(new_number - old_number, 4)
    percent = round((amount / old_number) * 100.0, 2) if old_number != 0 else 0.0
    return {"change_amount": amount, "change_percent": percent}


def detect(
    old_version: RawVersion,
    new_version: RawVersion,
    *,
    significance: SignificanceTable,
    tolerance: float = 0.01,
) -> list[ChangeRecord]:
    """Diff two adjacent versions of a chain, one record per changed field path."""
    old_fields = flatten_payload(old_version.payload)
    new_fields = flatten_payload(new_version.payload)

    changes: list[ChangeRecord] = []
    for field_path in sorted(set(old_fields) | set(new_fields)):
        in_old = field_path in old_fields
        in_new = field_path in new_fields
        old_value = old_fields.get(field_path)
        new_value = new_fields.get(field_path)

        change_type: ChangeType
        if in_old and in_new:
            if values_equal(old_value, new_value, tolerance=tolerance):
                continue
            change_type = "value_changed"
        elif in_new:
            change_type = "field_added"
        else:
            change_type = "field_removed"

        metadata: dict[str, Any] = {"category": infer_category(field_path)}
        metadata.update(numeric_delta(old_value, new_value))
        changes.append(
            ChangeRecord(
                id=str(uuid4()),
                employee_id=new_version.employee_id,
                endpoint=new_version.endpoint,
                field_path=field_path,
                old_value=old_value,
                new_value=new_value,
                change_type=change_type,
                is_significant=significance.is_significant(field_path),
                is_duplicate=False,
                is_correction=False,
                detected_at=new_version.collected_at,
                sync_session_id=new_version.sync_session_id,
                raw_version_id=new_version.id,
                previous_version_id=old_version.id,
                confidence_score=new_version.confidence_score,
                metadata=metadata,
            )
        )
    return changes


def is_equivalent(
    left: ChangeRecord,
    right: ChangeRecord,
    *,
    window: timedelta,
    tolerance: float = 0.01,
) -> bool:
    if left.id == right.id or left.employee_id != right.employee_id or left.field_path != right.field_path:
        return False
    if not values_equal(left.old_value, right.old_value, tolerance=tolerance):
        return False
    if not values_equal(left.new_value, right.new_value, tolerance=tolerance):
        return False
    same_session = left.sync_session_id is not None and left.sync_session_id == right.sync_session_id
    return same_session or abs(left.detected_at - right.detected_at) <= window


def mark_duplicates(
    incoming: list[ChangeRecord],
    recent: Iterable[ChangeRecord],
    *,
    window_seconds: int,
    tolerance: float = 0.01,
) -> DuplicateDecision:
    """Flag incoming records already reported by another endpoint.

    The record with the later ``detected_at`` is authoritative. When an
    incoming record wins, the earlier equivalent is returned in
    ``demoted_ids`` so the caller can flag it.
    """
    window = timedelta(seconds=window_seconds)
    existing = list(recent)
    demoted: list[str] = []

    for change in incoming:
        equivalents = [row for row in existing if is_equivalent(change, row, window=window, tolerance=tolerance)]
        authoritative = next((row for row in equivalents if not row.is_duplicate and row.id not in demoted), None)
        if authoritative is None:
            continue
        if change.detected_at > authoritative.detected_at:
            demoted.append(authoritative.id)
        else:
            change.is_duplicate = True

    return DuplicateDecision(changes=incoming, demoted_ids=demoted)


def mark_corrections(
    incoming: list[ChangeRecord],
    history: Iterable[ChangeRecord],
    *,
    tolerance: float = 0.01,
    excluded_ids: Iterable[str] = (),
) -> list[ChangeRecord]:
    """Flag records that break the old_value == previous new_value chain."""
    excluded = set(excluded_ids)
    previous_by_path: dict[str, ChangeRecord] = {}
    for row in sorted(history, key=lambda item: (item.detected_at, item.id)):
        if row.is_duplicate or row.id in excluded:
            continue
        previous_by_path[row.field_path] = row

    for change in incoming:
        if change.is_duplicate:
            continue
        previous = previous_by_path.get(change.field_path)
        if previous is not None and previous.detected_at <= change.detected_at:
            if not values_equal(previous.new_value, change.old_value, tolerance=tolerance):
                change.is_correction = True
        previous_by_path[change.field_path] = change
    return incoming


def duplicate_window_start(at: datetime, window_seconds: int) -> datetime:
    return at - timedelta(seconds=window_seconds)
