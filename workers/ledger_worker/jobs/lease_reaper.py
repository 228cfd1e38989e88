from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


def lease_deadline(job: dict[str, Any]) -> datetime | None:
    raw = job.get("lease_expires_at")
    if not raw:
        return None
    if isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))


def lease_expired(job: dict[str, Any], now: datetime | None = None) -> bool:
    """True once a processing job outlived its lease; the API will requeue it."""
    deadline = lease_deadline(job)
    if job.get("status") != "processing" or deadline is None:
        return False
    return deadline <= (now or datetime.now(timezone.utc))
