from __future__ import annotations

import logging
from typing import Any

from ledger_worker.services.provider_client import ProviderClient

logger = logging.getLogger(__name__)


async def execute_fetch_endpoint(job: dict[str, Any], *, provider: ProviderClient) -> dict[str, Any]:
    """Fetch one (employee, endpoint) document and shape it for ingestion.

    Provider errors propagate; the executor decides whether they are retryable.
    """
    payload = job.get("payload") if isinstance(job.get("payload"), dict) else {}
    employee_id = str(payload.get("employee_id") or "").strip()
    endpoint = str(payload.get("endpoint") or "").strip()
    if not employee_id or not endpoint:
        raise ValueError("fetch_endpoint job requires employee_id and endpoint")

    fetched = await provider.fetch_endpoint(employee_id, endpoint)
    if fetched.is_partial:
        logger.warning(
            "partial provider response job_id=%s employee_id=%s endpoint=%s status=%s",
            job.get("id"),
            employee_id,
            endpoint,
            fetched.http_status,
        )
    return fetched.as_job_result(retry_count=int(job.get("attempts") or 0))
