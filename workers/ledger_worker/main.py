from __future__ import annotations

import asyncio
import logging
import random
import time

from opentelemetry import trace

from ledger_worker.core.config import Settings, get_settings
from ledger_worker.core.telemetry import (
    configure_worker_logging,
    job_span_attributes,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from ledger_worker.jobs.executor import execute_job
from ledger_worker.jobs.lease_reaper import lease_expired
from ledger_worker.services.job_client import JobClient
from ledger_worker.services.provider_client import ProviderClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class Sweeps:
    """Housekeeping calls made on their own cadence between claims."""

    def __init__(self, client: JobClient, settings: Settings) -> None:
        self.client = client
        self.settings = settings
        self.last_reap_at = 0.0
        self.last_promote_at = 0.0
        self.last_expire_at = 0.0

    async def run(self, now: float) -> None:
        if now - self.last_reap_at >= self.settings.lease_reaper_interval_seconds:
            requeued = await self.client.reap_expired_jobs(limit=self.settings.lease_reaper_batch_size)
            if requeued:
                logger.info("requeued expired leases count=%s", requeued)
            self.last_reap_at = now

        if now - self.last_promote_at >= self.settings.starvation_sweep_interval_seconds:
            promoted = await self.client.promote_starving_jobs(limit=self.settings.starvation_sweep_batch_size)
            if promoted:
                logger.info("promoted starving jobs count=%s", promoted)
            self.last_promote_at = now

        if now - self.last_expire_at >= self.settings.session_expiry_interval_seconds:
            expired = await self.client.expire_sessions()
            if expired:
                logger.warning("expired sync sessions over runtime ceiling count=%s", expired)
            self.last_expire_at = now


async def process_one(client: JobClient, provider: ProviderClient, *, lease_seconds: int) -> bool:
    """Claim and run a single job; False when the queue had nothing to hand out."""
    claimed = await client.claim_next(lease_seconds=lease_seconds)
    if claimed is None:
        return False

    with tracer.start_as_current_span("worker.process_job") as job_span:
        job_span.set_attributes(job_span_attributes(claimed))
        outcome = await execute_job(claimed, provider=provider)
        if lease_expired(claimed):
            logger.warning("lease expired before result submission job_id=%s", claimed["id"])
        if outcome.status == "failed":
            logger.warning(
                "job execution failed job_id=%s retryable=%s error=%s",
                claimed["id"],
                outcome.retryable,
                outcome.error,
            )
        await client.submit_result(
            claimed["id"],
            status=outcome.status,
            result=outcome.result,
            error=outcome.error,
            retryable=outcome.retryable,
        )
    return True


async def run_worker() -> None:
    settings = get_settings()
    configure_worker_logging()
    telemetry_runtime = setup_worker_telemetry(settings)
    client = JobClient(
        base_url=settings.api_base_url,
        module_id=settings.module_id,
        api_key=settings.api_key,
        worker_id=settings.worker_id,
        timeout_seconds=settings.api_timeout_seconds,
    )
    provider = ProviderClient(
        settings.provider_base_url,
        settings.provider_company_id,
        settings.provider_api_key,
        timeout_seconds=settings.provider_timeout_seconds,
        page_size=settings.provider_page_size,
        max_pages=settings.provider_max_pages,
    )
    sweeps = Sweeps(client, settings)
    backoff = settings.poll_interval_seconds

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    await sweeps.run(time.monotonic())
                    handled = await process_one(client, provider, lease_seconds=settings.claim_lease_seconds)
                backoff = settings.poll_interval_seconds
                if not handled:
                    await asyncio.sleep(settings.poll_interval_seconds)
            except Exception as exc:  # pragma: no cover - keep polling through API outages
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        shutdown_worker_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
