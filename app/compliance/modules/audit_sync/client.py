from __future__ import annotations

import base64
import http.client
import json
import logging
import re
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from app.compliance.errors import (
    ComplianceError,
    ConfigurationError,
    ExternalServiceError,
    ProtocolError,
    SyncTimeoutError,
    ValidationError,
)
from app.compliance.ratelimit import MinIntervalRateLimiter

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.auditsoft.co"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MIN_DELAY_SECONDS = 0.1

_BEARER_RX = re.compile(r"(?i)bearer\s+[A-Za-z0-9._~+/=-]+")
_KEY_PARAM_RX = re.compile(r"(?i)(api[_-]?key|token|secret)([\"']?\s*[:=]\s*[\"']?)[^\s\"'&,}]+")


def sanitize_error_message(message: str, *secrets: str) -> str:
    """Strip credentials (the configured key, bearer tokens, key=value pairs) from an error message."""
    out = message or ""
    for secret in secrets:
        if secret:
            out = out.replace(secret, "[redacted]")
    out = _BEARER_RX.sub("Bearer [redacted]", out)
    out = _KEY_PARAM_RX.sub(r"\1\2[redacted]", out)
    return out


@dataclass
class EvidenceFile:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"

    def to_wire(self) -> dict[str, str]:
        return {
            "filename": self.filename,
            "content_type": self.content_type,
            "content_base64": base64.b64encode(self.content).decode("ascii"),
        }


@dataclass
class EvidenceItem:
    element_number: int
    question_id: str
    evidence_type: str
    title: str
    date: str  # YYYY-MM-DD
    description: str | None = None
    file: EvidenceFile | None = None
    metadata: dict[str, Any] | None = None
    # Called at send time when `file` is unset; the bytes are not kept on the item.
    load_file: Callable[[], EvidenceFile | None] | None = field(default=None, repr=False, compare=False)

    def to_wire(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "element_number": self.element_number,
            "question_id": self.question_id,
            "evidence_type": self.evidence_type,
            "title": self.title,
            "date": self.date,
        }
        if self.description:
            body["description"] = self.description
        f = self.file if self.file is not None else (self.load_file() if self.load_file else None)
        if f is not None:
            body["file"] = f.to_wire()
        if self.metadata:
            body["metadata"] = self.metadata
        return body


def _is_valid_upload_response(data: Any) -> bool:
    if not isinstance(data, dict) or not isinstance(data.get("success"), bool):
        return False
    if data["success"]:
        return isinstance(data.get("external_item_id"), str)
    return isinstance(data.get("error"), str)


def _is_valid_validation_response(data: Any) -> bool:
    if not isinstance(data, dict) or not isinstance(data.get("valid"), bool):
        return False
    if data["valid"]:
        return isinstance(data.get("organization_id"), str) and isinstance(data.get("organization_name"), str)
    return isinstance(data.get("error"), str)


def _is_valid_status_response(data: Any) -> bool:
    return isinstance(data, dict) and isinstance(data.get("status"), str)


def _is_valid_question(q: Any) -> bool:
    return isinstance(q, dict) and isinstance(q.get("id"), str) and isinstance(q.get("text", ""), str)


def _is_valid_structure_response(data: Any) -> bool:
    if not isinstance(data, dict) or not isinstance(data.get("audit_id"), str):
        return False
    elements = data.get("elements")
    if not isinstance(elements, list):
        return False
    for el in elements:
        if not isinstance(el, dict) or isinstance(el.get("number"), bool) or not isinstance(el.get("number"), int):
            return False
        questions = el.get("questions")
        if not isinstance(questions, list) or not all(_is_valid_question(q) for q in questions):
            return False
    return True


# Fields the service accepts on PATCH /v1/evidence/{id}.
UPDATABLE_EVIDENCE_FIELDS = ("element_number", "question_id", "evidence_type", "title", "description", "date", "metadata")


@dataclass(frozen=True)
class AuditSyncClient:
    """
    Outbound client for the external audit-management API.

    Every call waits on the shared rate limiter, is bounded by `timeout_seconds`,
    and has its response shape checked. Errors never carry the API key.
    """

    api_key: str
    base_url: str = DEFAULT_BASE_URL
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    rate_limiter: MinIntervalRateLimiter = field(
        default_factory=lambda: MinIntervalRateLimiter(DEFAULT_MIN_DELAY_SECONDS)
    )
    production: bool = False

    def __post_init__(self) -> None:
        scheme = urllib.parse.urlsplit(self.base_url or "").scheme.lower()
        if scheme != "https":
            raise ConfigurationError("Audit sync endpoint must use HTTPS.", field="AUDIT_SYNC_ENDPOINT")
        if not self.api_key:
            raise ConfigurationError("Audit sync API key is not configured.", field="AUDIT_SYNC_API_KEY")

    def _sanitize(self, message: str) -> str:
        return sanitize_error_message(message, self.api_key)

    def _timeout_message(self, what: str) -> str:
        if self.production:
            return f"{what} timeout. Please try again."
        return f"{what} timed out after {self.timeout_seconds:g}s"

    def _error_detail(self, e: urllib.error.HTTPError) -> str:
        try:
            raw = e.read().decode("utf-8", errors="ignore")
        except Exception:
            raw = ""
        try:
            j = json.loads(raw) if raw else {}
        except ValueError:
            j = {}
        if isinstance(j, dict) and isinstance(j.get("message") or j.get("error"), str):
            return j.get("message") or j.get("error")
        return raw[:300]

    def request_json(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        what: str = "Request",
        allow_empty: bool = False,
    ) -> Any:
        url = self.base_url.rstrip("/") + path
        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = urllib.request.Request(url, data=data, method=method)
        req.add_header("Authorization", f"Bearer {self.api_key}")
        req.add_header("Accept", "application/json")
        if data is not None:
            req.add_header("Content-Type", "application/json")

        with self.rate_limiter:
            try:
                with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                    raw = resp.read()
            except urllib.error.HTTPError as e:
                detail = self._error_detail(e)
                raise ExternalServiceError(self._sanitize(f"HTTP {e.code} from audit service: {detail}")) from None
            except TimeoutError:
                raise SyncTimeoutError(self._timeout_message(what)) from None
            except urllib.error.URLError as e:
                if isinstance(e.reason, TimeoutError):
                    raise SyncTimeoutError(self._timeout_message(what)) from None
                raise ExternalServiceError(self._sanitize(f"Audit service unreachable: {e.reason}")) from None
            except (OSError, http.client.HTTPException) as e:
                raise ExternalServiceError(
                    self._sanitize(f"Audit service connection failed: {type(e).__name__}: {e}")
                ) from None

        if allow_empty and not raw.strip():
            return None
        try:
            return json.loads(raw.decode("utf-8"))
        except ValueError:
            raise ProtocolError(f"Invalid JSON from audit service ({path}).") from None

    def validate_connection(self) -> dict[str, Any]:
        """{valid, organization_id, organization_name} or {valid: False, error}; never raises for transport errors."""
        try:
            data = self.request_json("POST", "/v1/auth/validate", body={}, what="Connection")
        except ComplianceError as e:
            return {"valid": False, "error": e.message}
        if not _is_valid_validation_response(data):
            return {"valid": False, "error": "Invalid response format from audit service."}
        return data

    def upload_evidence(self, audit_id: str, item: EvidenceItem) -> dict[str, Any]:
        """
        Push one evidence item. Returns {success: True, external_item_id} or
        {success: False, error} as reported by the service.
        Raises SyncTimeoutError / ProtocolError / ExternalServiceError otherwise.
        """
        path = f"/v1/audits/{urllib.parse.quote(str(audit_id), safe='')}/evidence"
        data = self.request_json("POST", path, body=item.to_wire(), what="Upload")
        if not _is_valid_upload_response(data):
            raise ProtocolError("Invalid response format from audit service.")
        if not data["success"]:
            return {"success": False, "error": self._sanitize(data["error"])}
        return {"success": True, "external_item_id": data["external_item_id"]}

    def get_audit_status(self, audit_id: str) -> dict[str, Any]:
        path = f"/v1/audits/{urllib.parse.quote(str(audit_id), safe='')}/status"
        data = self.request_json("GET", path, what="Status")
        if not _is_valid_status_response(data):
            raise ProtocolError("Invalid response format from audit service.")
        return data

    def get_audit_structure(self, audit_id: str) -> dict[str, Any]:
        """
        Elements and questions of an audit: {audit_id, name, elements: [{number, name, weight,
        questions: [{id, text, evidence_types, required}]}]}. The question ids are what
        EvidenceMapping.external_question_id points at.
        """
        path = f"/v1/audits/{urllib.parse.quote(str(audit_id), safe='')}/structure"
        data = self.request_json("GET", path, what="Structure")
        if not _is_valid_structure_response(data):
            raise ProtocolError("Invalid response format from audit service.")
        return data

    def update_evidence(self, evidence_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        """Patch a previously pushed item. Returns the same shape as upload_evidence()."""
        body = {k: v for k, v in (updates or {}).items() if k in UPDATABLE_EVIDENCE_FIELDS}
        if not body:
            raise ValidationError(
                f"updates must include one of {', '.join(UPDATABLE_EVIDENCE_FIELDS)}.", field="updates"
            )
        path = f"/v1/evidence/{urllib.parse.quote(str(evidence_id), safe='')}"
        data = self.request_json("PATCH", path, body=body, what="Update", allow_empty=True)
        if data is None:
            return {"success": True, "external_item_id": str(evidence_id)}
        if not isinstance(data, dict):
            raise ProtocolError("Invalid response format from audit service.")
        if data.get("success") is False:
            return {"success": False, "error": self._sanitize(str(data.get("error") or "Update failed"))}
        return {"success": True, "external_item_id": str(data.get("external_item_id") or evidence_id)}

    def delete_evidence(self, evidence_id: str) -> None:
        path = f"/v1/evidence/{urllib.parse.quote(str(evidence_id), safe='')}"
        self.request_json("DELETE", path, what="Delete", allow_empty=True)

    def bulk_upload(
        self,
        tenant_id: str,
        audit_id: str,
        items: list[EvidenceItem],
        *,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> dict[str, Any]:
        """
        Upload items one at a time, in order. A failing item is recorded in
        `errors` and the rest still run; on_progress(i, total) fires after every item.
        """
        total = len(items)
        results: list[dict[str, Any]] = []
        errors: list[dict[str, Any]] = []
        logger.info("SYNC: bulk upload start tenant=%s audit=%s items=%s", tenant_id, audit_id, total)

        for i, item in enumerate(items):
            try:
                result = self.upload_evidence(audit_id, item)
                if result["success"]:
                    results.append({"index": i, "title": item.title, **result})
                else:
                    errors.append({"index": i, "title": item.title, "error": result["error"] or "Unknown error"})
            except ComplianceError as e:
                errors.append({"index": i, "title": item.title, "error": e.message})
            except Exception as e:
                logger.warning("SYNC: item %s failed unexpectedly: %s", i, type(e).__name__)
                errors.append({"index": i, "title": item.title, "error": self._sanitize(str(e)) or "Upload failed"})

            if on_progress is not None:
                on_progress(i + 1, total)

        logger.info(
            "SYNC: bulk upload done tenant=%s audit=%s succeeded=%s failed=%s",
            tenant_id,
            audit_id,
            len(results),
            len(errors),
        )
        return {
            "total": total,
            "succeeded": len(results),
            "failed": len(errors),
            "results": results,
            "errors": errors,
        }


def client_from_config(config: dict, rate_limiter: MinIntervalRateLimiter | None = None) -> AuditSyncClient:
    limiter = rate_limiter or MinIntervalRateLimiter(int(config.get("AUDIT_SYNC_MIN_DELAY_MS", 100)) / 1000.0)
    return AuditSyncClient(
        api_key=(config.get("AUDIT_SYNC_API_KEY") or "").strip(),
        base_url=(config.get("AUDIT_SYNC_ENDPOINT") or DEFAULT_BASE_URL).strip(),
        timeout_seconds=float(config.get("AUDIT_SYNC_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS)),
        rate_limiter=limiter,
        production=bool(config.get("IS_PRODUCTION")),
    )
