from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from functools import wraps
from typing import Any

from flask import g

from app.compliance.errors import ForbiddenError

ADMIN = "admin"
SUPERVISOR = "supervisor"
INTERNAL_AUDITOR = "internal_auditor"
WORKER = "worker"

WRITE_ROLES = frozenset({ADMIN, SUPERVISOR, INTERNAL_AUDITOR})
READ_ROLES = WRITE_ROLES | {WORKER}
ADMIN_ROLES = frozenset({ADMIN})


@dataclass(frozen=True)
class CallerIdentity:
    """Opaque identity handed to the engine by the authentication layer."""

    tenant_id: str
    role: str
    user_id: str | None = None


def caller_has_role(caller: CallerIdentity | None, roles: Iterable[str]) -> bool:
    if not caller or not caller.tenant_id:
        return False
    return caller.role in set(roles)


def ensure_role(caller: CallerIdentity | None, roles: Iterable[str]) -> CallerIdentity:
    if not caller_has_role(caller, roles):
        role = caller.role if caller else None
        raise ForbiddenError(f"Role {role!r} is not allowed to perform this action.")
    return caller  # type: ignore[return-value]


def ensure_can_read(caller: CallerIdentity | None) -> CallerIdentity:
    return ensure_role(caller, READ_ROLES)


def ensure_can_write(caller: CallerIdentity | None) -> CallerIdentity:
    return ensure_role(caller, WRITE_ROLES)


def require_role(roles: Iterable[str]) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    allowed = frozenset(roles)

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            ensure_role(getattr(g, "caller", None), allowed)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
