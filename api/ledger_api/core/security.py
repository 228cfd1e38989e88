import hashlib
import hmac
import json
from functools import lru_cache

from fastapi import Depends, Header, HTTPException, status

from ledger_api.core.auth import Principal, parse_scopes
from ledger_api.core.config import Settings, get_settings
from ledger_api.services.records import MachineCredentialRecord


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


@lru_cache(maxsize=8)
def load_module_credentials(raw: str | None) -> dict[str, list[MachineCredentialRecord]]:
    """Parse ``{"module_id": {"key_hash": ..., "scopes": [...]}}``.

    A module may also map to a list of entries to allow key rotation.
    """
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("module credentials must be valid JSON") from exc
    if not isinstance(parsed, dict):
        raise ValueError("module credentials must be a JSON object keyed by module id")

    credentials: dict[str, list[MachineCredentialRecord]] = {}
    for module_id, entries in parsed.items():
        if isinstance(entries, dict):
            entries = [entries]
        if not isinstance(entries, list):
            raise ValueError(f"credentials for module {module_id} must be an object or a list")
        records: list[MachineCredentialRecord] = []
        for entry in entries:
            key_hash = entry.get("key_hash") if isinstance(entry, dict) else None
            if not isinstance(key_hash, str) or not key_hash:
                raise ValueError(f"credentials for module {module_id} require key_hash")
            records.append(
                MachineCredentialRecord(
                    module_id=str(module_id),
                    scopes=sorted(parse_scopes(entry.get("scopes"))),
                    key_hash=key_hash.lower(),
                )
            )
        credentials[str(module_id)] = records
    return credentials


async def get_machine_principal(
    settings: Settings = Depends(get_settings),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    x_module_id: str | None = Header(default=None, alias="X-Module-Id"),
) -> Principal:
    if not x_api_key or not x_module_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"machine auth requires {settings.api_key_header} and X-Module-Id",
        )

    try:
        credentials = load_module_credentials(settings.module_credentials_json).get(x_module_id, [])
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if not credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid module credentials")

    key_hash = hash_api_key(x_api_key)
    matched = next((record for record in credentials if hmac.compare_digest(record.key_hash, key_hash)), None)
    if not matched:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid module credentials")

    return Principal(subject=matched.module_id, scopes=set(matched.scopes))
