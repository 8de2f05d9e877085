import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    storage_backend: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    control_number_prefix: str

    audit_sync_endpoint: str
    audit_sync_api_key: str
    audit_sync_timeout_seconds: float
    audit_sync_min_delay_ms: int

    reindex_max_per_hour: int
    reindex_batch_size: int

    evidence_min_forms: int
    evidence_min_recent_submissions: int
    evidence_window_days: int

    request_rate_limit_per_minute: int
    remind_max_per_hour: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getint(name: str, default: int) -> int:
    raw = _getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        return default


def _getfloat(name: str, default: float) -> float:
    raw = _getenv(name, str(default))
    try:
        return float(raw)
    except ValueError:
        return default


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///evidence.db"),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        control_number_prefix=_getenv("CONTROL_NUMBER_PREFIX", "DOC").upper(),
        audit_sync_endpoint=_getenv("AUDIT_SYNC_ENDPOINT", "https://api.auditsoft.co"),
        audit_sync_api_key=_getenv("AUDIT_SYNC_API_KEY", ""),
        audit_sync_timeout_seconds=_getfloat("AUDIT_SYNC_TIMEOUT_SECONDS", 30.0),
        audit_sync_min_delay_ms=_getint("AUDIT_SYNC_MIN_DELAY_MS", 100),
        reindex_max_per_hour=_getint("REINDEX_MAX_PER_HOUR", 3),
        reindex_batch_size=_getint("REINDEX_BATCH_SIZE", 50),
        # Sufficiency thresholds carry no documented rationale; keep them overridable per deployment.
        evidence_min_forms=_getint("EVIDENCE_MIN_FORMS", 3),
        evidence_min_recent_submissions=_getint("EVIDENCE_MIN_RECENT_SUBMISSIONS", 1),
        evidence_window_days=_getint("EVIDENCE_WINDOW_DAYS", 90),
        request_rate_limit_per_minute=_getint("REQUEST_RATE_LIMIT_PER_MINUTE", 60),
        remind_max_per_hour=_getint("REMIND_MAX_PER_HOUR", 10),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "IS_PRODUCTION": is_production,
        "DATABASE_URL": s.database_url,
        "STORAGE_BACKEND": s.storage_backend,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "CONTROL_NUMBER_PREFIX": s.control_number_prefix,
        "AUDIT_SYNC_ENDPOINT": s.audit_sync_endpoint,
        "AUDIT_SYNC_API_KEY": s.audit_sync_api_key,
        "AUDIT_SYNC_TIMEOUT_SECONDS": s.audit_sync_timeout_seconds,
        "AUDIT_SYNC_MIN_DELAY_MS": s.audit_sync_min_delay_ms,
        "REINDEX_MAX_PER_HOUR": s.reindex_max_per_hour,
        "REINDEX_BATCH_SIZE": s.reindex_batch_size,
        "EVIDENCE_MIN_FORMS": s.evidence_min_forms,
        "EVIDENCE_MIN_RECENT_SUBMISSIONS": s.evidence_min_recent_submissions,
        "EVIDENCE_WINDOW_DAYS": s.evidence_window_days,
        "REQUEST_RATE_LIMIT_PER_MINUTE": s.request_rate_limit_per_minute,
        "REMIND_MAX_PER_HOUR": s.remind_max_per_hour,
        # file upload limits (25MB)
        "MAX_CONTENT_LENGTH": 25 * 1024 * 1024,
    }
