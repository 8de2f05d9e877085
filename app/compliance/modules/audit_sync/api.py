from __future__ import annotations

from flask import Blueprint, current_app, g

from app.compliance.api import json_payload, query_bool, storage
from app.compliance.db import db_session
from app.compliance.modules.audit_sync.client import AuditSyncClient, client_from_config
from app.compliance.modules.audit_sync.service import (
    delete_pushed_evidence,
    list_mappings,
    run_export,
    update_pushed_evidence,
    upsert_mapping,
)
from app.compliance.rbac import ADMIN_ROLES, require_role

bp = Blueprint("audit_sync", __name__)


def _client() -> AuditSyncClient:
    return client_from_config(current_app.config, current_app.extensions["audit_sync_rate_limiter"])


@bp.get("/audit-sync/mappings")
@require_role(ADMIN_ROLES)
def mappings_get():
    s = db_session()
    rows = list_mappings(s, g.caller, active_only=query_bool("active_only"))
    return {"items": [m.to_dict() for m in rows]}


@bp.post("/audit-sync/mappings")
@require_role(ADMIN_ROLES)
def mappings_post():
    s = db_session()
    m = upsert_mapping(s, g.caller, json_payload())
    s.commit()
    return m.to_dict()


@bp.post("/audit-sync/validate")
@require_role(ADMIN_ROLES)
def validate_post():
    return _client().validate_connection()


@bp.get("/audit-sync/audits/<audit_id>/status")
@require_role(ADMIN_ROLES)
def audit_status_get(audit_id: str):
    return _client().get_audit_status(audit_id)


@bp.get("/audit-sync/audits/<audit_id>/structure")
@require_role(ADMIN_ROLES)
def audit_structure_get(audit_id: str):
    return _client().get_audit_structure(audit_id)


@bp.patch("/audit-sync/evidence/<evidence_id>")
@require_role(ADMIN_ROLES)
def evidence_patch(evidence_id: str):
    s = db_session()
    result = update_pushed_evidence(s, g.caller, _client(), evidence_id, json_payload())
    s.commit()
    return result


@bp.delete("/audit-sync/evidence/<evidence_id>")
@require_role(ADMIN_ROLES)
def evidence_delete(evidence_id: str):
    s = db_session()
    delete_pushed_evidence(s, g.caller, _client(), evidence_id)
    s.commit()
    return {"deleted": evidence_id}


@bp.post("/audit-sync/export")
@require_role(ADMIN_ROLES)
def export_post():
    s = db_session()
    payload = json_payload()
    client = _client()
    run, result = run_export(s, g.caller, client, payload.get("audit_id") or "", storage=storage())
    s.commit()
    return {"run": run.to_dict(), **result}
