from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from rawwire.core.errors import PermissionDenied

CapabilityCheck = Callable[[str], bool]

ROLE_SCOPES: dict[str, set[str]] = {
    "ingestor": {"candidates:read", "candidates:write"},
    "scorer": {"candidates:read", "candidates:write", "scoring:write", "queue:read"},
    "moderator": {"candidates:read", "moderation:write", "queue:read"},
    "operator": {"candidates:read", "pipelines:read", "pipelines:write", "queue:read"},
    "admin": {
        "candidates:read",
        "candidates:write",
        "scoring:write",
        "moderation:write",
        "queue:read",
        "pipelines:read",
        "pipelines:write",
        "admin:write",
    },
}


class PrincipalType(str, Enum):
    MACHINE = "machine"


@dataclass(slots=True)
class Principal:
    principal_type: PrincipalType
    subject: str
    scopes: set[str]
    role: str | None = None

    def can(self, capability: str) -> bool:
        return capability in self.scopes

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionDenied(f"missing required scopes: {sorted(missing)}")


def deny_all(capability: str) -> bool:
    return False


def require_capability(check: CapabilityCheck | None, capability: str) -> None:
    """Gate a mutating operation on the host-supplied capability check."""
    if check is None:
        return
    if not check(capability):
        raise PermissionDenied(f"capability denied: {capability}")
