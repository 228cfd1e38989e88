import hashlib
import json
import math
from datetime import date, datetime, time, timezone
from typing import Any

# Provider placeholder for "no date".
NULL_PROVIDER_DATE = "0001-01-01T00:00:00"


def canonical_json(payload: Any) -> str:
    """Stable serialization used for content addressing."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def content_hash(payload: Any) -> str:
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def flatten_payload(payload: Any, prefix: str = "") -> dict[str, Any]:
    """Flatten a nested document into dotted field paths.

    Dicts recurse by key and lists of containers recurse by index. Scalars,
    lists of scalars and empty containers are leaves.
    """
    flattened: dict[str, Any] = {}
    if isinstance(payload, dict):
        if not payload:
            if prefix:
                flattened[prefix] = {}
            return flattened
        for key, value in payload.items():
            path = f"{prefix}.{key}" if prefix else str(key)
            flattened.update(flatten_payload(value, path))
        return flattened

    if isinstance(payload, list) and payload and any(isinstance(item, (dict, list)) for item in payload):
        for index, value in enumerate(payload):
            path = f"{prefix}.{index}" if prefix else str(index)
            flattened.update(flatten_payload(value, path))
        return flattened

    if prefix:
        flattened[prefix] = payload
    return flattened


def get_path(payload: Any, field_path: str) -> tuple[bool, Any]:
    current = payload
    for part in field_path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return False, None
    return True, current


def values_equal(left: Any, right: Any, *, tolerance: float = 0.01) -> bool:
    if left is right:
        return True
    if isinstance(left, bool) or isinstance(right, bool):
        return left == right
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        if math.isnan(left) or math.isnan(right):
            return False
        return abs(left - right) < tolerance
    if left is None or right is None:
        return False
    if isinstance(left, (dict, list)) or isinstance(right, (dict, list)):
        return canonical_json(left) == canonical_json(right)
    return left == right


def as_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip().replace(",", "."))
        except ValueError:
            return None
    return None


def parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime.combine(value, time.min)
    elif isinstance(value, str):
        raw = value.strip()
        if not raw or raw.startswith(NULL_PROVIDER_DATE):
            return None
        try:
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def as_of_instant(value: date | datetime) -> datetime:
    """Resolve a query bound; a bare date covers that whole UTC day."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return datetime.combine(value, time.max, tzinfo=timezone.utc)
