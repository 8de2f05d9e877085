import logging
import os

from flask import Flask, g, request
from dotenv import load_dotenv
from sqlalchemy import inspect as sa_inspect

from app.compliance.auth import load_current_caller
from app.compliance.config import load_config
from app.compliance.db import init_db, teardown_db_session
from app.compliance.errors import ComplianceError, RateLimitError
from app.compliance.extraction import extract_text
from app.compliance.notifications import LogNotifier
from app.compliance.ratelimit import init_rate_limiters
from app.compliance.routes import bp as routes_bp
from app.compliance.modules.document_control.api import bp as documents_bp
from app.compliance.modules.evidence_linking.api import bp as evidence_links_bp
from app.compliance.modules.evidence_scoring.api import bp as evidence_scoring_bp
from app.compliance.modules.review_scheduling.api import bp as review_scheduling_bp
from app.compliance.modules.audit_sync.api import bp as audit_sync_bp
from app.compliance.modules.reindex.api import bp as reindex_bp

logger = logging.getLogger(__name__)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())

    # Production guardrails (fail fast with clear logs)
    if app.config.get("IS_PRODUCTION"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")
        if not str(app.config.get("AUDIT_SYNC_ENDPOINT") or "").startswith("https://"):
            raise RuntimeError("AUDIT_SYNC_ENDPOINT must use https:// in production.")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Process-local limiters; see ratelimit.py for the multi-instance caveat.
    init_rate_limiters(app)
    app.extensions["notifier"] = LogNotifier()
    app.extensions["text_extractor"] = extract_text

    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [
            key
            for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not app.config.get(key)
        ]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    app.register_blueprint(routes_bp)
    app.register_blueprint(documents_bp, url_prefix="/api")
    app.register_blueprint(evidence_links_bp, url_prefix="/api")
    app.register_blueprint(evidence_scoring_bp, url_prefix="/api")
    app.register_blueprint(review_scheduling_bp, url_prefix="/api")
    app.register_blueprint(audit_sync_bp, url_prefix="/api")
    app.register_blueprint(reindex_bp, url_prefix="/api")

    app.before_request(load_current_caller)
    app.teardown_appcontext(teardown_db_session)

    def _run_schema_health_check() -> None:
        from app.compliance.models import Base

        try:
            insp = sa_inspect(app.extensions["sqlalchemy_engine"])
            missing = [t for t in Base.metadata.tables if not insp.has_table(t)]
        except Exception as e:
            app.logger.exception("Schema health check failed: %s", e)
            return
        if missing:
            app.logger.warning("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))

    _run_schema_health_check()

    @app.errorhandler(ComplianceError)
    def _err_compliance(e: ComplianceError):  # type: ignore[no-redef]
        if e.status_code >= 500:
            app.logger.error(
                "%s (request_id=%s): %s", e.code, getattr(g, "request_id", None), e.message
            )
        elif e.status_code == 403:
            caller = getattr(g, "caller", None)
            app.logger.warning(
                "Forbidden: path=%s role=%s request_id=%s",
                request.path,
                caller.role if caller else None,
                getattr(g, "request_id", None),
            )
        resp = app.json.response(e.to_dict())
        resp.status_code = e.status_code
        if isinstance(e, RateLimitError):
            resp.headers["Retry-After"] = str(e.retry_after_seconds)
        return resp

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return {"error": "not_found", "message": "Resource not found."}, 404

    @app.errorhandler(405)
    def _err_405(e):  # type: ignore[no-redef]
        return {"error": "method_not_allowed", "message": "Method not allowed."}, 405

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        return {"error": "validation_error", "message": "File too large. Maximum size is 25MB.", "field": "file"}, 413

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return {"error": "internal_error", "message": "Internal error."}, 500

    logger.info("create_app() complete; app ready to serve")
    return app
