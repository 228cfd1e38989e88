from dataclasses import dataclass

SESSIONS_READ = "sessions:read"
SESSIONS_WRITE = "sessions:write"
JOBS_READ = "jobs:read"
JOBS_WRITE = "jobs:write"
INGEST_WRITE = "ingest:write"
LEDGER_READ = "ledger:read"
LOCAL_FACTS_WRITE = "local_facts:write"
CONFLICTS_READ = "conflicts:read"
CONFLICTS_WRITE = "conflicts:write"
EVENTS_READ = "events:read"

ALL_SCOPES = {
    SESSIONS_READ,
    SESSIONS_WRITE,
    JOBS_READ,
    JOBS_WRITE,
    INGEST_WRITE,
    LEDGER_READ,
    LOCAL_FACTS_WRITE,
    CONFLICTS_READ,
    CONFLICTS_WRITE,
    EVENTS_READ,
}


@dataclass(slots=True)
class Principal:
    subject: str
    scopes: set[str]

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")


def parse_scopes(raw: object) -> set[str]:
    if isinstance(raw, str):
        return {chunk.strip() for chunk in raw.split(",") if chunk.strip()}
    if isinstance(raw, (list, tuple, set)):
        return {str(chunk).strip() for chunk in raw if str(chunk).strip()}
    return set()
