from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ledger_worker.jobs.fetch import execute_fetch_endpoint
from ledger_worker.jobs.scheduled_sync import execute_scheduled_sync
from ledger_worker.services.provider_client import FetchError, PermanentFetchError, ProviderClient


@dataclass(slots=True)
class JobOutcome:
    status: str
    result: dict[str, Any] | None = None
    error: str | None = None
    retryable: bool = True


async def execute_job(job: dict[str, Any], *, provider: ProviderClient) -> JobOutcome:
    job_type = job.get("job_type")
    try:
        if job_type == "fetch_endpoint":
            result = await execute_fetch_endpoint(job, provider=provider)
        elif job_type == "scheduled_sync":
            result = await execute_scheduled_sync(job, provider=provider)
        else:
            return JobOutcome(status="failed", error=f"unsupported job_type: {job_type}", retryable=False)
    except PermanentFetchError as exc:
        return JobOutcome(status="failed", error=str(exc), retryable=False)
    except FetchError as exc:
        return JobOutcome(status="failed", error=str(exc), retryable=True)
    except ValueError as exc:
        return JobOutcome(status="failed", error=str(exc), retryable=False)
    return JobOutcome(status="done", result=result)
