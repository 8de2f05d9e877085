from __future__ import annotations

from flask import Blueprint, current_app, g

from app.compliance.api import json_payload
from app.compliance.db import db_session
from app.compliance.modules.evidence_scoring.service import (
    record_submission,
    summarize_all,
    summarize_element,
    thresholds_from_config,
)
from app.compliance.ratelimit import rate_limited
from app.compliance.rbac import READ_ROLES, WRITE_ROLES, require_role

bp = Blueprint("evidence_scoring", __name__)


@bp.get("/evidence/elements")
@require_role(READ_ROLES)
@rate_limited("list")
def elements_get():
    s = db_session()
    summaries = summarize_all(s, g.caller, thresholds=thresholds_from_config(current_app.config))
    return {"items": [x.to_dict() for x in summaries]}


@bp.get("/evidence/elements/<int:element_number>")
@require_role(READ_ROLES)
def element_get(element_number: int):
    s = db_session()
    summary = summarize_element(s, g.caller, element_number, thresholds=thresholds_from_config(current_app.config))
    return summary.to_dict()


@bp.post("/evidence/submissions")
@require_role(WRITE_ROLES)
def submission_post():
    s = db_session()
    sub = record_submission(s, g.caller, json_payload())
    s.commit()
    return sub.to_dict(), 201
