"""Version chain decisions for the payload store.

Storage backends load the current latest version of a chain, ask
:func:`plan_ingest` what to do with an incoming payload and then apply the
plan with a compare-and-set on the expected latest id.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Literal
from uuid import uuid4

from ledger_api.core.payloads import canonical_json, content_hash
from ledger_api.services.errors import HashCollisionError
from ledger_api.services.records import FetchMetadata, RawVersion

logger = logging.getLogger(__name__)

IngestAction = Literal["create", "supersede", "recover", "duplicate", "stale"]


@dataclass(slots=True)
class IngestPlan:
    action: IngestAction
    content_hash: str
    collected_at: datetime
    expected_latest_id: str | None


def compute_confidence(
    *,
    retry_count: int,
    is_partial: bool,
    retry_penalty: float,
    partial_penalty: float,
) -> float:
    score = 1.0 - retry_penalty * max(0, retry_count)
    if is_partial:
        score -= partial_penalty
    return round(min(1.0, max(0.0, score)), 4)


def plan_ingest(
    *,
    employee_id: str,
    endpoint: str,
    payload: Any,
    latest: RawVersion | None,
    collected_at: datetime,
    confidence_score: float | None = None,
    is_partial: bool = False,
) -> IngestPlan:
    """Decide how an incoming payload extends the chain.

    Identical content is normally a duplicate. It becomes a ``recover`` when
    the latest version was partial or scored lower than the incoming fetch,
    so a clean retry replaces the degraded version without emitting changes.
    """
    digest = content_hash(payload)
    if latest is None:
        return IngestPlan(action="create", content_hash=digest, collected_at=collected_at, expected_latest_id=None)

    if latest.content_hash == digest:
        if canonical_json(latest.payload) != canonical_json(payload):
            logger.error(
                "content hash collision employee_id=%s endpoint=%s hash=%s version_id=%s",
                employee_id,
                endpoint,
                digest,
                latest.id,
            )
            raise HashCollisionError(
                employee_id=employee_id,
                endpoint=endpoint,
                content_hash=digest,
                version_id=latest.id,
            )
        if collected_at >= latest.collected_at and _improves(latest, confidence_score, is_partial):
            return IngestPlan(action="recover", content_hash=digest, collected_at=collected_at, expected_latest_id=latest.id)
        return IngestPlan(action="duplicate", content_hash=digest, collected_at=collected_at, expected_latest_id=latest.id)

    if collected_at < latest.collected_at:
        return IngestPlan(action="stale", content_hash=digest, collected_at=collected_at, expected_latest_id=latest.id)

    return IngestPlan(action="supersede", content_hash=digest, collected_at=collected_at, expected_latest_id=latest.id)


def _improves(latest: RawVersion, confidence_score: float | None, is_partial: bool) -> bool:
    if latest.is_partial and not is_partial:
        return True
    return confidence_score is not None and confidence_score > latest.confidence_score


def build_version(
    *,
    employee_id: str,
    endpoint: str,
    payload: Any,
    plan: IngestPlan,
    metadata: FetchMetadata,
    retry_penalty: float,
    partial_penalty: float,
) -> RawVersion:
    return RawVersion(
        id=str(uuid4()),
        employee_id=employee_id,
        endpoint=endpoint,
        payload=payload,
        content_hash=plan.content_hash,
        collected_at=plan.collected_at,
        last_verified_at=plan.collected_at,
        effective_from=plan.collected_at,
        effective_to=None,
        is_latest=True,
        is_partial=bool(metadata.is_partial),
        confidence_score=compute_confidence(
            retry_count=metadata.retry_count,
            is_partial=bool(metadata.is_partial),
            retry_penalty=retry_penalty,
            partial_penalty=partial_penalty,
        ),
        http_status=metadata.http_status,
        error_message=metadata.error_message,
        retry_count=max(0, metadata.retry_count),
        supersedes=plan.expected_latest_id if plan.action in ("supersede", "recover") else None,
        superseded_by=None,
        sync_session_id=metadata.sync_session_id,
    )


def validate_chain(versions: Iterable[RawVersion]) -> list[str]:
    """Return every integrity problem found in one (employee, endpoint) chain."""
    rows = list(versions)
    if not rows:
        return []

    problems: list[str] = []
    by_id = {row.id: row for row in rows}
    latest = [row for row in rows if row.is_latest]
    if len(latest) != 1:
        problems.append(f"expected exactly one latest version, found {len(latest)}")

    heads = [row for row in rows if row.supersedes is None]
    if len(heads) != 1:
        problems.append(f"expected exactly one chain head, found {len(heads)}")
        return problems

    seen: set[str] = set()
    current: RawVersion | None = heads[0]
    while current is not None:
        if current.id in seen:
            problems.append(f"cycle detected at version {current.id}")
            break
        seen.add(current.id)
        if current.superseded_by is None:
            if current.effective_to is not None:
                problems.append(f"tail version {current.id} has effective_to set")
            if not current.is_latest:
                problems.append(f"tail version {current.id} is not flagged latest")
            current = None
            continue

        successor = by_id.get(current.superseded_by)
        if successor is None:
            problems.append(f"version {current.id} points at missing successor {current.superseded_by}")
            break
        if successor.supersedes != current.id:
            problems.append(f"version {successor.id} does not point back at {current.id}")
        if current.effective_to != successor.effective_from:
            problems.append(f"gap or overlap between {current.id} and {successor.id}")
        if current.is_latest:
            problems.append(f"superseded version {current.id} is still flagged latest")
        current = successor

    if len(seen) != len(rows):
        problems.append(f"{len(rows) - len(seen)} version(s) unreachable from the chain head")
    return problems
