#!/usr/bin/env python3
"""Emit a module credential entry for EL_MODULE_CREDENTIALS_JSON."""

from __future__ import annotations

import argparse
import hashlib
import json
import secrets
import sys

KNOWN_SCOPES = [
    "sessions:read",
    "sessions:write",
    "jobs:read",
    "jobs:write",
    "ingest:write",
    "ledger:read",
    "local_facts:write",
    "conflicts:read",
    "conflicts:write",
    "events:read",
]
WORKER_SCOPES = ["jobs:read", "jobs:write", "sessions:write"]


def render_entry(*, module_id: str, api_key: str, scopes: list[str]) -> str:
    key_hash = hashlib.sha256(api_key.encode("utf-8")).hexdigest()
    return json.dumps({module_id: {"key_hash": key_hash, "scopes": sorted(set(scopes))}}, indent=2)


def main() -> None:
    parser = argparse.ArgumentParser(description="Hash a module API key into a credential entry.")
    parser.add_argument("--module-id", required=True, help="Value the module sends as X-Module-Id")
    key_group = parser.add_mutually_exclusive_group(required=True)
    key_group.add_argument("--api-key", help="Plain API key to hash")
    key_group.add_argument("--generate", action="store_true", help="Generate a random key (printed to stderr)")
    parser.add_argument(
        "--scope",
        action="append",
        choices=KNOWN_SCOPES,
        help="Scope to grant; repeatable. Defaults to the worker scope set.",
    )
    args = parser.parse_args()

    api_key = args.api_key
    if args.generate:
        api_key = secrets.token_urlsafe(32)
        print(f"api key for {args.module_id}: {api_key}", file=sys.stderr)

    print(render_entry(module_id=args.module_id, api_key=api_key, scopes=args.scope or WORKER_SCOPES))


if __name__ == "__main__":
    main()
