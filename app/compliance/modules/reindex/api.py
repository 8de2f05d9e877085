from __future__ import annotations

from flask import Blueprint, current_app, g

from app.compliance.api import json_payload, query_bool, storage, text_extractor
from app.compliance.db import db_session
from app.compliance.modules.reindex.service import reindex_tenant
from app.compliance.rbac import ADMIN_ROLES, require_role

bp = Blueprint("reindex", __name__)


@bp.post("/reindex")
@require_role(ADMIN_ROLES)
def reindex_post():
    s = db_session()
    payload = json_payload()
    summary = reindex_tenant(
        s,
        g.caller,
        limiter=current_app.extensions["reindex_rate_limiter"],
        storage=storage(),
        extractor=text_extractor(),
        only_empty=query_bool("only_empty", payload),
        force=query_bool("force", payload),
        document_types=payload.get("document_types"),
        batch_size=int(current_app.config.get("REINDEX_BATCH_SIZE", 50)),
    )
    s.commit()
    return summary
