import logging

from flask import Blueprint
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.compliance.db import db_session

logger = logging.getLogger(__name__)

bp = Blueprint("routes", __name__)


@bp.get("/health")
def health():
    """Liveness plus a database round trip."""
    try:
        db_session().execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.warning("health: database check failed: %s", type(e).__name__)
        return {"ok": False, "database": "unavailable"}, 503
    return {"ok": True, "database": "ok"}


@bp.get("/healthz")
def healthz():
    """No DB access; for load-balancer health checks."""
    return "ok", 200
