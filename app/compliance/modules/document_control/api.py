from __future__ import annotations

from flask import Blueprint, current_app, g, request

from app.compliance.api import json_payload, query_int, storage, text_extractor
from app.compliance.constants import DEFAULT_REVIEW_WINDOW_DAYS
from app.compliance.db import db_session
from app.compliance.errors import ValidationError
from app.compliance.modules.document_control.service import (
    VersionInput,
    add_version,
    create_document,
    find_related,
    get_document,
    list_documents,
    list_due_for_review,
    record_view,
    search_documents,
    set_related_documents,
    set_status,
    supersede,
)
from app.compliance.modules.evidence_linking.service import auto_link
from app.compliance.ratelimit import rate_limited
from app.compliance.rbac import READ_ROLES, WRITE_ROLES, require_role

bp = Blueprint("documents", __name__)


def _version_input(payload: dict) -> VersionInput:
    """Uploaded file (multipart) or JSON fields; text comes from the extractor when a file is sent."""
    f = request.files.get("file")
    vi = VersionInput(
        extracted_text=payload.get("extracted_text"),
        change_summary=payload.get("change_summary"),
        file_reference=payload.get("file_reference"),
    )
    if f is not None and f.filename:
        data = f.read()
        if not data:
            raise ValidationError("Uploaded file is empty.", field="file")
        vi.file_bytes = data
        vi.filename = f.filename
        vi.content_type = f.mimetype or "application/octet-stream"
        if not vi.extracted_text:
            vi.extracted_text = text_extractor()(data, vi.content_type) or None
    return vi


def _list_filters() -> dict:
    return {
        "status": (request.args.get("status") or "").strip() or None,
        "document_type_code": (request.args.get("document_type_code") or "").strip() or None,
        "element": query_int("element"),
        "folder_id": query_int("folder_id"),
        "limit": query_int("limit", 50),
        "offset": query_int("offset", 0),
    }


@bp.post("/documents")
@require_role(WRITE_ROLES)
def create_document_post():
    s = db_session()
    payload = json_payload()
    vi = _version_input(payload)
    d = create_document(
        s,
        g.caller,
        payload,
        version=vi,
        storage=storage() if vi.file_bytes is not None else None,
        control_number_prefix=current_app.config.get("CONTROL_NUMBER_PREFIX", "DOC"),
    )
    links = auto_link(s, g.caller, d.id, vi.extracted_text)
    s.commit()
    return {"document": d.to_dict(), "links": [x.to_dict() for x in links]}, 201


@bp.get("/documents")
@require_role(READ_ROLES)
@rate_limited("list")
def list_documents_get():
    s = db_session()
    docs, total = list_documents(s, g.caller, q=request.args.get("q"), **_list_filters())
    return {"items": [d.to_dict() for d in docs], "total": total}


@bp.get("/documents/search")
@require_role(READ_ROLES)
@rate_limited("list")
def search_documents_get():
    s = db_session()
    docs, total = search_documents(s, g.caller, request.args.get("q") or "", **_list_filters())
    return {"items": [d.to_dict() for d in docs], "total": total}


@bp.get("/documents/due-for-review")
@require_role(READ_ROLES)
def due_for_review_get():
    s = db_session()
    docs = list_due_for_review(s, g.caller, query_int("days_ahead", DEFAULT_REVIEW_WINDOW_DAYS))
    return {"items": [d.to_dict() for d in docs]}


@bp.get("/documents/<int:doc_id>")
@require_role(READ_ROLES)
def document_detail(doc_id: int):
    s = db_session()
    d = get_document(s, g.caller, doc_id)
    record_view(s, g.caller, d)
    s.commit()
    out = d.to_dict(include_text=request.args.get("include_text") == "1")
    out["versions"] = [v.to_dict() for v in d.versions]
    return out


@bp.post("/documents/<int:doc_id>/versions")
@require_role(WRITE_ROLES)
def add_version_post(doc_id: int):
    s = db_session()
    vi = _version_input(json_payload())
    v = add_version(s, g.caller, doc_id, vi, storage=storage() if vi.file_bytes is not None else None)
    links = auto_link(s, g.caller, doc_id, v.extracted_text)
    s.commit()
    return {"version": v.to_dict(), "links": [x.to_dict() for x in links]}, 201


@bp.post("/documents/<int:doc_id>/status")
@require_role(WRITE_ROLES)
def set_status_post(doc_id: int):
    s = db_session()
    payload = json_payload()
    d = set_status(s, g.caller, doc_id, payload.get("status") or "", reason=payload.get("reason"))
    s.commit()
    return d.to_dict()


@bp.post("/documents/supersede")
@require_role(WRITE_ROLES)
def supersede_post():
    s = db_session()
    payload = json_payload()
    old, new = supersede(
        s, g.caller, payload.get("old_control_number") or "", payload.get("new_control_number") or ""
    )
    s.commit()
    return {"old": old.to_dict(), "new": new.to_dict()}


@bp.put("/documents/<int:doc_id>/related")
@require_role(WRITE_ROLES)
def set_related_put(doc_id: int):
    s = db_session()
    payload = json_payload()
    d = set_related_documents(s, g.caller, doc_id, payload.get("related_document_ids"))
    s.commit()
    return d.to_dict()


@bp.get("/documents/<int:doc_id>/related")
@require_role(READ_ROLES)
def related_get(doc_id: int):
    s = db_session()
    return find_related(s, g.caller, doc_id)
