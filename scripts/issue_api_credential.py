#!/usr/bin/env python3
"""Mint a machine API key and emit the matching credentials JSON."""

from __future__ import annotations

import argparse
import hashlib
import json
import secrets

ROLES = ["ingestor", "scorer", "moderator", "operator", "admin"]


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def merge_credentials(existing: str | None, *, module_id: str, api_key: str, role: str) -> dict:
    credentials = json.loads(existing) if existing else {}
    if not isinstance(credentials, dict):
        raise SystemExit("existing credentials must be a JSON object keyed by module id")

    entry = {"key_hash": hash_api_key(api_key), "role": role}
    current = credentials.get(module_id)
    if current is None:
        credentials[module_id] = entry
    else:
        rows = current if isinstance(current, list) else [current]
        credentials[module_id] = [*rows, entry]
    return credentials


def main() -> None:
    parser = argparse.ArgumentParser(description="Issue an API key for a machine module.")
    parser.add_argument("--module-id", required=True, help="Value clients send in X-Module-Id")
    parser.add_argument("--role", choices=ROLES, default="scorer", help="Role that maps to API scopes")
    parser.add_argument("--api-key", help="Use this key instead of generating one")
    parser.add_argument(
        "--existing",
        help="Current RAWWIRE_API_CREDENTIALS_JSON value to extend (keeps older keys for rotation)",
    )
    parser.add_argument("--env", action="store_true", help="Print a shell export line instead of JSON")
    args = parser.parse_args()

    api_key = args.api_key or secrets.token_urlsafe(32)
    credentials = merge_credentials(args.existing, module_id=args.module_id, api_key=api_key, role=args.role)
    credentials_json = json.dumps(credentials, sort_keys=True, separators=(",", ":"))

    if args.env:
        print(f"export RAWWIRE_API_CREDENTIALS_JSON='{credentials_json}'")
        print(f"# api key for {args.module_id}: {api_key}")
        return

    print(
        json.dumps(
            {
                "module_id": args.module_id,
                "role": args.role,
                "api_key": api_key,
                "credentials_json": credentials_json,
            },
            indent=2,
        )
    )


if __name__ == "__main__":
    main()
