from __future__ import annotations

import logging
from typing import Any

from ledger_worker.services.provider_client import ProviderClient

logger = logging.getLogger(__name__)


async def execute_scheduled_sync(job: dict[str, Any], *, provider: ProviderClient) -> dict[str, Any]:
    payload = job.get("payload") if isinstance(job.get("payload"), dict) else {}
    explicit = payload.get("employee_ids")
    if isinstance(explicit, list) and explicit:
        employee_ids = [str(item).strip() for item in explicit if str(item).strip()]
        return {"employee_ids": employee_ids, "discovered": False, "is_partial": False}

    employee_ids, partial = await provider.list_employee_ids()
    logger.info(
        "scheduled sync scope resolved job_id=%s employees=%s partial=%s",
        job.get("id"),
        len(employee_ids),
        partial,
    )
    return {"employee_ids": employee_ids, "discovered": True, "is_partial": partial}
