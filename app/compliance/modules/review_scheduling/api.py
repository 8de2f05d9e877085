from __future__ import annotations

from datetime import date

from flask import Blueprint, g

from app.compliance.api import days_ahead_arg, json_payload, notifier
from app.compliance.db import db_session
from app.compliance.modules.review_scheduling.service import (
    acknowledge,
    acknowledgment_stats,
    distribute,
    list_distributions,
    remind,
    review_dashboard,
)
from app.compliance.ratelimit import rate_limited
from app.compliance.rbac import READ_ROLES, WRITE_ROLES, require_role

bp = Blueprint("review_scheduling", __name__)


@bp.get("/documents/reviews")
@require_role(READ_ROLES)
@rate_limited("list")
def reviews_get():
    s = db_session()
    days = days_ahead_arg()
    buckets = review_dashboard(s, g.caller, days)
    return {
        "days_ahead": days,
        **{k: [d.to_dict() for d in docs] for k, docs in buckets.items()},
    }


@bp.post("/documents/<int:doc_id>/distributions")
@require_role(WRITE_ROLES)
def distribute_post(doc_id: int):
    s = db_session()
    payload = json_payload()
    created = distribute(
        s,
        g.caller,
        doc_id,
        payload.get("recipient_ids"),
        required_by_date=payload.get("required_by_date"),
        notifier=notifier(),
    )
    s.commit()
    return {"created": [x.to_dict() for x in created]}, 201


@bp.get("/documents/<int:doc_id>/distributions")
@require_role(READ_ROLES)
def distributions_get(doc_id: int):
    s = db_session()
    today = date.today()
    rows = list_distributions(s, g.caller, doc_id)
    return {
        "items": [x.to_dict(today=today) for x in rows],
        "stats": acknowledgment_stats(s, g.caller, doc_id, today=today),
    }


@bp.post("/distributions/<int:distribution_id>/acknowledge")
@require_role(READ_ROLES)
def acknowledge_post(distribution_id: int):
    s = db_session()
    dist = acknowledge(s, g.caller, distribution_id)
    s.commit()
    return dist.to_dict()


@bp.post("/documents/<int:doc_id>/remind")
@require_role(WRITE_ROLES)
@rate_limited("remind", key_args=("doc_id",))
def remind_post(doc_id: int):
    s = db_session()
    out = remind(s, g.caller, doc_id, notifier=notifier())
    s.commit()
    return out
