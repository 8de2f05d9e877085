from __future__ import annotations

from flask import Blueprint, g

from app.compliance.api import json_payload
from app.compliance.db import db_session
from app.compliance.modules.evidence_linking.service import auto_link, list_links, manual_link, unlink
from app.compliance.rbac import READ_ROLES, WRITE_ROLES, require_role

bp = Blueprint("evidence_links", __name__)


@bp.get("/documents/<int:doc_id>/links")
@require_role(READ_ROLES)
def links_get(doc_id: int):
    s = db_session()
    return {"items": [x.to_dict() for x in list_links(s, g.caller, doc_id)]}


@bp.post("/documents/<int:doc_id>/links")
@require_role(WRITE_ROLES)
def manual_link_post(doc_id: int):
    s = db_session()
    payload = json_payload()
    link = manual_link(s, g.caller, doc_id, payload.get("element_number"), reason=payload.get("reason"))
    s.commit()
    return link.to_dict(), 201


@bp.post("/documents/<int:doc_id>/links/auto")
@require_role(WRITE_ROLES)
def auto_link_post(doc_id: int):
    s = db_session()
    created = auto_link(s, g.caller, doc_id)
    s.commit()
    return {"created": [x.to_dict() for x in created]}


@bp.delete("/documents/<int:doc_id>/links/<int:element_number>")
@require_role(WRITE_ROLES)
def unlink_delete(doc_id: int, element_number: int):
    s = db_session()
    removed = unlink(s, g.caller, doc_id, element_number)
    s.commit()
    return {"removed": removed}
