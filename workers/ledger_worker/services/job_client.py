from __future__ import annotations

from typing import Any

import httpx


class JobClient:
    def __init__(
        self,
        base_url: str,
        module_id: str,
        api_key: str,
        *,
        worker_id: str | None = None,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.worker_id = worker_id
        self.timeout_seconds = timeout_seconds
        self.headers = {
            "X-Module-Id": module_id,
            "X-API-Key": api_key,
        }
        self._client = client

    async def claim_next(self, *, lease_seconds: int = 120, job_type: str | None = None) -> dict[str, Any] | None:
        payload = await self._post(
            "/jobs/claim",
            {"worker_id": self.worker_id, "job_type": job_type, "lease_seconds": lease_seconds},
        )
        return payload.get("job")

    async def submit_result(
        self,
        job_id: str,
        *,
        status: str,
        result: dict[str, Any] | None = None,
        error: str | None = None,
        retryable: bool = True,
    ) -> dict[str, Any]:
        return await self._post(
            f"/jobs/{job_id}/result",
            {
                "status": status,
                "worker_id": self.worker_id,
                "result": result,
                "error": error,
                "retryable": retryable,
            },
        )

    async def reap_expired_jobs(self, limit: int = 100) -> int:
        payload = await self._post("/jobs/reap-expired", {"limit": limit})
        return int(payload.get("count", 0))

    async def promote_starving_jobs(self, limit: int = 100) -> int:
        payload = await self._post("/jobs/promote-starving", {"limit": limit})
        return int(payload.get("count", 0))

    async def expire_sessions(self) -> int:
        payload = await self._post("/sessions/expire", {})
        return len(payload) if isinstance(payload, list) else 0

    async def _post(self, path: str, body: dict[str, Any]) -> Any:
        if self._client is not None:
            response = await self._client.post(f"{self.base_url}{path}", json=body, headers=self.headers)
            response.raise_for_status()
            return response.json()
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            response = await client.post(f"{self.base_url}{path}", json=body, headers=self.headers)
            response.raise_for_status()
            return response.json()
