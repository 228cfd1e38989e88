from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DETAIL_ENDPOINT = "/employee"
PARTIAL_STATUS_CODES = {203, 206}
TRANSIENT_STATUS_CODES = {408, 425, 429}


class FetchError(Exception):
    """Base provider fetch error."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientFetchError(FetchError):
    """Timeouts, connection errors, throttling and server errors; worth retrying."""


class PermanentFetchError(FetchError):
    """The provider rejected the request for good (404, 410, other 4xx)."""


@dataclass(slots=True)
class FetchResult:
    payload: Any
    http_status: int
    is_partial: bool
    collected_at: datetime
    page_count: int = 1
    issues: list[str] = field(default_factory=list)

    def as_job_result(self, *, retry_count: int = 0) -> dict[str, Any]:
        return {
            "payload": self.payload,
            "metadata": {
                "http_status": self.http_status,
                "is_partial": self.is_partial,
                "retry_count": retry_count,
                "collected_at": self.collected_at.isoformat(),
                "error_message": "; ".join(self.issues) or None,
            },
        }


class ProviderClient:
    def __init__(
        self,
        base_url: str,
        company_id: str,
        api_key: str,
        *,
        timeout_seconds: float = 15.0,
        page_size: int = 100,
        max_pages: int = 500,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.company_id = company_id
        self.timeout_seconds = timeout_seconds
        self.page_size = page_size
        self.max_pages = max_pages
        self.headers = {
            "Authorization": f"Bearer {api_key}",
            "Accept": "application/json",
        }
        self._client = client

    def employees_url(self) -> str:
        return f"{self.base_url}/{self.company_id}/employees"

    def employee_url(self, employee_id: str, endpoint: str) -> str:
        suffix = "" if endpoint in {"", DETAIL_ENDPOINT} else "/" + endpoint.strip("/")
        return f"{self.employees_url()}/{employee_id}{suffix}"

    async def fetch_endpoint(self, employee_id: str, endpoint: str) -> FetchResult:
        url = self.employee_url(employee_id, endpoint)
        if endpoint in {"", DETAIL_ENDPOINT}:
            response = await self._get(url)
            return FetchResult(
                payload=unwrap(_json_body(response)),
                http_status=response.status_code,
                is_partial=response.status_code in PARTIAL_STATUS_CODES,
                collected_at=datetime.now(timezone.utc),
            )
        return await self._collect_pages(url)

    async def list_employee_ids(self) -> tuple[list[str], bool]:
        """Walk ``/employees`` page by page; the flag is set when the walk was cut short."""
        result = await self._collect_pages(self.employees_url())
        employee_ids: list[str] = []
        for item in result.payload if isinstance(result.payload, list) else []:
            employee_id = item.get("id") if isinstance(item, dict) else None
            if employee_id is not None and str(employee_id).strip():
                employee_ids.append(str(employee_id).strip())
        return employee_ids, result.is_partial

    async def _collect_pages(self, url: str) -> FetchResult:
        items: list[Any] = []
        issues: list[str] = []
        partial = False
        last_status = 200
        page = 1
        total_pages = 1
        while True:
            response = await self._get(url, params={"page": page, "per_page": self.page_size})
            last_status = response.status_code
            partial = partial or response.status_code in PARTIAL_STATUS_CODES
            body = _json_body(response)
            if not isinstance(body, dict) or not isinstance(body.get("data"), list):
                # not a paged collection
                return FetchResult(
                    payload=unwrap(body),
                    http_status=last_status,
                    is_partial=partial,
                    collected_at=datetime.now(timezone.utc),
                )
            items.extend(body["data"])
            total_pages = _as_int(body.get("pages"), default=1)
            if page >= total_pages:
                break
            if page >= self.max_pages:
                partial = True
                issues.append(f"stopped after {page} of {total_pages} pages")
                logger.warning("provider page walk truncated url=%s pages=%s total_pages=%s", url, page, total_pages)
                break
            page += 1

        return FetchResult(
            payload=items,
            http_status=last_status,
            is_partial=partial,
            collected_at=datetime.now(timezone.utc),
            page_count=page,
            issues=issues,
        )

    async def _get(self, url: str, params: dict[str, Any] | None = None) -> httpx.Response:
        try:
            if self._client is not None:
                response = await self._client.get(url, params=params, headers=self.headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.get(url, params=params, headers=self.headers)
        except httpx.TimeoutException as exc:
            raise TransientFetchError(f"provider timeout for {url}") from exc
        except httpx.TransportError as exc:
            raise TransientFetchError(f"provider connection error for {url}: {exc}") from exc

        status_code = response.status_code
        if status_code in TRANSIENT_STATUS_CODES or status_code >= 500:
            raise TransientFetchError(f"provider returned HTTP {status_code} for {url}", status_code=status_code)
        if status_code >= 400:
            raise PermanentFetchError(f"provider returned HTTP {status_code} for {url}", status_code=status_code)
        return response


def unwrap(body: Any) -> Any:
    """Strip the ``{"data": ...}`` envelope the provider puts around most responses."""
    if isinstance(body, dict) and set(body) <= {"data", "pages", "total", "page", "per_page"} and "data" in body:
        return body["data"]
    return body


def _json_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise TransientFetchError(
            f"provider returned a non-JSON body for {response.request.url}",
            status_code=response.status_code,
        ) from exc


def _as_int(value: Any, *, default: int) -> int:
    try:
        return max(1, int(value))
    except (TypeError, ValueError):
        return default
