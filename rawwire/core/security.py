import hashlib
import hmac
import json
from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, status

from rawwire.core.auth import ROLE_SCOPES, Principal, PrincipalType
from rawwire.core.config import Settings, get_settings


@dataclass(slots=True)
class MachineCredential:
    module_id: str
    key_hash: str
    scopes: set[str]
    role: str | None = None


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def parse_credentials(raw: str | None) -> dict[str, list[MachineCredential]]:
    """Parse ``{module_id: {"key_hash", "role" | "scopes"}}``; a list of entries allows key rotation."""
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"api credentials are not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError("api credentials must be a JSON object keyed by module id")

    parsed: dict[str, list[MachineCredential]] = {}
    for module_id, entries in payload.items():
        rows = entries if isinstance(entries, list) else [entries]
        for row in rows:
            if not isinstance(row, dict) or not isinstance(row.get("key_hash"), str):
                raise ValueError(f"credential for module {module_id!r} is missing key_hash")
            role = row.get("role")
            scopes = set(row.get("scopes") or ROLE_SCOPES.get(role or "", set()))
            parsed.setdefault(module_id, []).append(
                MachineCredential(module_id=module_id, key_hash=row["key_hash"], scopes=scopes, role=role)
            )
    return parsed


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
        credentials = parse_credentials(settings.api_credentials_json).get(x_module_id, [])
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    key_hash = hash_api_key(x_api_key)
    matched = next((record for record in credentials if hmac.compare_digest(record.key_hash, key_hash)), None)
    if not matched:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid module credentials")

    return Principal(
        principal_type=PrincipalType.MACHINE,
        subject=matched.module_id,
        scopes=set(matched.scopes),
        role=matched.role,
    )
