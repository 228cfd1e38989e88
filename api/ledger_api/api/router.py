from fastapi import APIRouter

from ledger_api.api.routes import conflicts, employees, events, health, ingest, jobs, sessions

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(sessions.router, prefix="/sessions", tags=["sync"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["queue"])
api_router.include_router(ingest.router, prefix="/ingest", tags=["ingest"])
api_router.include_router(employees.router, prefix="/employees", tags=["ledger"])
api_router.include_router(conflicts.router, prefix="/conflicts", tags=["conflicts"])
api_router.include_router(events.router, prefix="/events", tags=["events"])
