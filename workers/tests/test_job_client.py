from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from ledger_worker.services.job_client import JobClient


def _client(handler) -> tuple[JobClient, httpx.AsyncClient]:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return (
        JobClient("http://api.test/", "ledger-worker", "worker-key", worker_id="w1", client=http),
        http,
    )


def _run(handler, call):
    async def run():
        client, http = _client(handler)
        try:
            return await call(client)
        finally:
            await http.aclose()

    return asyncio.run(run())


def test_claim_sends_worker_identity_and_credentials() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"job": {"id": "job-1", "job_type": "fetch_endpoint"}})

    job = _run(handler, lambda client: client.claim_next(lease_seconds=90, job_type="fetch_endpoint"))

    assert job == {"id": "job-1", "job_type": "fetch_endpoint"}
    assert str(seen[0].url) == "http://api.test/jobs/claim"
    assert seen[0].headers["X-Module-Id"] == "ledger-worker"
    assert seen[0].headers["X-API-Key"] == "worker-key"
    assert json.loads(seen[0].content) == {"worker_id": "w1", "job_type": "fetch_endpoint", "lease_seconds": 90}


def test_claim_returns_none_when_queue_is_empty() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"job": None})

    assert _run(handler, lambda client: client.claim_next()) is None


def test_submit_result_posts_outcome() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/jobs/job-1/result"
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"id": "job-1", "status": "pending"})

    response = _run(
        handler,
        lambda client: client.submit_result("job-1", status="failed", error="HTTP 429", retryable=True),
    )

    assert response["status"] == "pending"
    assert bodies == [{"status": "failed", "worker_id": "w1", "result": None, "error": "HTTP 429", "retryable": True}]


def test_sweep_calls_return_counts() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/jobs/reap-expired":
            return httpx.Response(200, json={"count": 2})
        if request.url.path == "/jobs/promote-starving":
            return httpx.Response(200, json={"count": 1})
        if request.url.path == "/sessions/expire":
            return httpx.Response(200, json=[{"id": "s-1"}, {"id": "s-2"}, {"id": "s-3"}])
        return httpx.Response(404)

    async def sweep(client: JobClient) -> tuple[int, int, int]:
        return (
            await client.reap_expired_jobs(limit=10),
            await client.promote_starving_jobs(limit=10),
            await client.expire_sessions(),
        )

    assert _run(handler, sweep) == (2, 1, 3)


def test_api_errors_are_raised() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"detail": "invalid module credentials"})

    with pytest.raises(httpx.HTTPStatusError):
        _run(handler, lambda client: client.claim_next())
