import json
from typing import Any

from flask import g, has_request_context
from sqlalchemy.orm import Session

from app.compliance.models import AuditEvent
from app.compliance.rbac import CallerIdentity


def record_event(
    s: Session,
    *,
    actor: CallerIdentity,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """
    Append-only audit event helper.
    """
    rid = request_id or (getattr(g, "request_id", None) if has_request_context() else None)
    ev = AuditEvent(
        tenant_id=actor.tenant_id,
        request_id=rid,
        actor_user_id=actor.user_id,
        actor_role=actor.role,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
    )
    s.add(ev)
    return ev
