from __future__ import annotations

import uuid

from flask import g, request

from app.compliance.rbac import CallerIdentity

TENANT_HEADER = "X-Tenant-Id"
USER_HEADER = "X-User-Id"
ROLE_HEADER = "X-Role"


def load_current_caller() -> None:
    """
    Loads g.caller from the identity headers set by the upstream auth gateway.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = (request.headers.get("X-Request-Id") or "").strip()[:64] or uuid.uuid4().hex
    if request.path.startswith(("/static/", "/health", "/healthz")):
        g.caller = None
        return

    tenant_id = (request.headers.get(TENANT_HEADER) or "").strip()
    role = (request.headers.get(ROLE_HEADER) or "").strip().lower()
    user_id = (request.headers.get(USER_HEADER) or "").strip() or None
    if not tenant_id or not role:
        g.caller = None
        return
    g.caller = CallerIdentity(tenant_id=tenant_id, role=role, user_id=user_id)


def current_caller() -> CallerIdentity | None:
    return getattr(g, "caller", None)
