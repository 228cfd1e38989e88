from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from ledger_api.api.router import api_router
from ledger_api.core.config import get_settings
from ledger_api.core.telemetry import (
    TelemetryRuntime,
    configure_api_logging,
    setup_api_telemetry,
    shutdown_api_telemetry,
)
from ledger_api.services.repository import get_repository

settings = get_settings()
configure_api_logging()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    try:
        yield
    finally:
        if _telemetry_runtime is not None:
            shutdown_api_telemetry(app, _telemetry_runtime)
        # postgres backend holds an asyncpg pool
        await get_repository().close()
        get_repository.cache_clear()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
_telemetry_runtime = setup_api_telemetry(app, settings)


LOGGED_PATH_PARAMS = ("employee_id", "field_path", "session_id", "job_id", "conflict_id")


def request_log_fields(request: Request) -> str:
    """key=value fields naming the ledger records a request touched."""
    route = request.scope.get("route")
    fields = [f"route={getattr(route, 'path', request.url.path)}"]
    params = request.scope.get("path_params") or {}
    fields.extend(f"{name}={params[name]}" for name in LOGGED_PATH_PARAMS if name in params)
    module_id = request.headers.get("X-Module-Id")
    if module_id:
        fields.append(f"module_id={module_id}")
    return " ".join(fields)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    # routing fills path_params on the shared scope, so read them afterwards
    logger.info(
        "api request method=%s %s status=%s duration_ms=%.2f",
        request.method,
        request_log_fields(request),
        response.status_code,
        (time.perf_counter() - started_at) * 1000.0,
    )
    return response


app.include_router(api_router)
