from __future__ import annotations

import hashlib
import json
import subprocess
import sys
from pathlib import Path


SCRIPT_PATH = Path(__file__).resolve().parents[2] / "scripts" / "hash_module_key.py"


def _run_script(*args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [sys.executable, str(SCRIPT_PATH), *args],
        check=True,
        capture_output=True,
        text=True,
    )


def test_hash_script_emits_credential_entry_for_given_key() -> None:
    completed = _run_script(
        "--module-id",
        "hr-portal",
        "--api-key",
        "portal-key",
        "--scope",
        "ledger:read",
        "--scope",
        "conflicts:write",
    )

    entry = json.loads(completed.stdout)
    assert entry == {
        "hr-portal": {
            "key_hash": hashlib.sha256(b"portal-key").hexdigest(),
            "scopes": ["conflicts:write", "ledger:read"],
        }
    }


def test_hash_script_generates_key_and_defaults_to_worker_scopes() -> None:
    completed = _run_script("--module-id", "ledger-worker", "--generate")

    entry = json.loads(completed.stdout)["ledger-worker"]
    generated = completed.stderr.strip().rsplit(" ", 1)[-1]
    assert entry["key_hash"] == hashlib.sha256(generated.encode("utf-8")).hexdigest()
    assert entry["scopes"] == ["jobs:read", "jobs:write", "sessions:write"]
