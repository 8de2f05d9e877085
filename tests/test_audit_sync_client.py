import http.client
import io
import json
import time
import urllib.error

import pytest

from app.compliance.errors import (
    ConfigurationError,
    ExternalServiceError,
    ProtocolError,
    SyncTimeoutError,
    ValidationError,
)
from app.compliance.modules.audit_sync.client import (
    AuditSyncClient,
    EvidenceFile,
    EvidenceItem,
    client_from_config,
    sanitize_error_message,
)
from app.compliance.ratelimit import MinIntervalRateLimiter

API_KEY = "sk-live-123456"


class FakeResponse:
    def __init__(self, payload):
        self._raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")

    def read(self):
        return self._raw

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeTransport:
    """Stands in for urllib.request.urlopen; `handler(request)` returns a payload or raises."""

    def __init__(self, handler):
        self.handler = handler
        self.requests = []

    def __call__(self, req, timeout=None):
        body = json.loads(req.data.decode("utf-8")) if req.data else None
        self.requests.append({"url": req.full_url, "method": req.get_method(), "body": body, "timeout": timeout, "req": req})
        return FakeResponse(self.handler(req, body))


def _client(**kw):
    kw.setdefault("rate_limiter", MinIntervalRateLimiter(0))
    return AuditSyncClient(api_key=API_KEY, base_url="https://audit.example.com", **kw)


def _item(title, element=4):
    return EvidenceItem(element_number=element, question_id=f"Q{element}.1", evidence_type="document", title=title, date="2026-05-01")


def test_requires_https_and_key():
    with pytest.raises(ConfigurationError):
        AuditSyncClient(api_key=API_KEY, base_url="http://audit.example.com")
    with pytest.raises(ConfigurationError):
        AuditSyncClient(api_key="", base_url="https://audit.example.com")
    with pytest.raises(ConfigurationError):
        client_from_config({"AUDIT_SYNC_ENDPOINT": "http://audit.example.com", "AUDIT_SYNC_API_KEY": API_KEY})


def test_client_from_config():
    client = client_from_config(
        {
            "AUDIT_SYNC_ENDPOINT": "https://audit.example.com",
            "AUDIT_SYNC_API_KEY": API_KEY,
            "AUDIT_SYNC_TIMEOUT_SECONDS": 5,
            "AUDIT_SYNC_MIN_DELAY_MS": 250,
            "IS_PRODUCTION": True,
        }
    )
    assert client.timeout_seconds == 5.0
    assert client.rate_limiter.min_delay_seconds == 0.25
    assert client.production is True


def test_upload_sends_authorized_json(monkeypatch):
    transport = FakeTransport(lambda req, body: {"success": True, "external_item_id": "ext-1"})
    monkeypatch.setattr("urllib.request.urlopen", transport)

    item = _item("Lockout procedure")
    item.file = EvidenceFile(filename="sjp.pdf", content=b"%PDF-1.4", content_type="application/pdf")
    result = _client(timeout_seconds=7).upload_evidence("audit 42", item)

    assert result == {"success": True, "external_item_id": "ext-1"}
    sent = transport.requests[0]
    assert sent["url"] == "https://audit.example.com/v1/audits/audit%2042/evidence"
    assert sent["method"] == "POST"
    assert sent["timeout"] == 7
    assert sent["req"].get_header("Authorization") == f"Bearer {API_KEY}"
    assert sent["body"]["element_number"] == 4
    assert sent["body"]["file"]["content_base64"] == "JVBERi0xLjQ="


def test_upload_reports_service_failure(monkeypatch):
    monkeypatch.setattr(
        "urllib.request.urlopen",
        FakeTransport(lambda req, body: {"success": False, "error": f"duplicate item (api_key={API_KEY})"}),
    )
    result = _client().upload_evidence("a1", _item("Dup"))
    assert result["success"] is False
    assert API_KEY not in result["error"]


def test_malformed_responses_raise_protocol_error(monkeypatch):
    monkeypatch.setattr("urllib.request.urlopen", FakeTransport(lambda req, body: {"ok": True}))
    with pytest.raises(ProtocolError):
        _client().upload_evidence("a1", _item("x"))
    with pytest.raises(ProtocolError):
        _client().get_audit_status("a1")

    monkeypatch.setattr("urllib.request.urlopen", FakeTransport(lambda req, body: b"<html>oops</html>"))
    with pytest.raises(ProtocolError):
        _client().upload_evidence("a1", _item("x"))


def test_timeouts(monkeypatch):
    def slow(req, body):
        raise TimeoutError("timed out")

    monkeypatch.setattr("urllib.request.urlopen", FakeTransport(slow))
    with pytest.raises(SyncTimeoutError) as e:
        _client(timeout_seconds=30).upload_evidence("a1", _item("x"))
    assert e.value.message == "Upload timed out after 30s"

    with pytest.raises(SyncTimeoutError) as e:
        _client(production=True).upload_evidence("a1", _item("x"))
    assert e.value.message == "Upload timeout. Please try again."

    def url_timeout(req, body):
        raise urllib.error.URLError(TimeoutError("timed out"))

    monkeypatch.setattr("urllib.request.urlopen", FakeTransport(url_timeout))
    with pytest.raises(SyncTimeoutError):
        _client().get_audit_status("a1")


def test_http_errors_are_sanitized(monkeypatch):
    def rejected(req, body):
        raise urllib.error.HTTPError(
            req.full_url,
            401,
            "Unauthorized",
            {},
            io.BytesIO(json.dumps({"message": f"Key {API_KEY} rejected"}).encode("utf-8")),
        )

    monkeypatch.setattr("urllib.request.urlopen", FakeTransport(rejected))
    with pytest.raises(ExternalServiceError) as e:
        _client().upload_evidence("a1", _item("x"))
    assert "401" in e.value.message
    assert API_KEY not in e.value.message


def test_sanitize_error_message():
    msg = f"failed: Authorization: Bearer abc.DEF-123 token=xyz987 key {API_KEY}"
    clean = sanitize_error_message(msg, API_KEY)
    assert "abc.DEF-123" not in clean
    assert "xyz987" not in clean
    assert API_KEY not in clean
    assert sanitize_error_message("token expired") == "token expired"


def test_validate_connection(monkeypatch):
    monkeypatch.setattr(
        "urllib.request.urlopen",
        FakeTransport(lambda req, body: {"valid": True, "organization_id": "org-1", "organization_name": "NCCI"}),
    )
    assert _client().validate_connection()["organization_name"] == "NCCI"

    def down(req, body):
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr("urllib.request.urlopen", FakeTransport(down))
    result = _client().validate_connection()
    assert result["valid"] is False
    assert "unreachable" in result["error"]


def test_bulk_upload_continues_past_failures(monkeypatch):
    def handler(req, body):
        title = body["title"]
        if title == "dup":
            return {"success": False, "error": "Duplicate"}
        if title == "slow":
            raise TimeoutError("timed out")
        if title == "garbled":
            return {"success": "yes"}
        return {"success": True, "external_item_id": f"ext-{title}"}

    transport = FakeTransport(handler)
    monkeypatch.setattr("urllib.request.urlopen", transport)
    progress = []
    items = [_item("a"), _item("dup"), _item("slow"), _item("b"), _item("garbled")]

    result = _client().bulk_upload("t1", "a1", items, on_progress=lambda i, n: progress.append((i, n)))

    assert result["total"] == 5
    assert result["succeeded"] == 2
    assert result["failed"] == 3
    assert [r["external_item_id"] for r in result["results"]] == ["ext-a", "ext-b"]
    assert [(e["index"], e["title"]) for e in result["errors"]] == [(1, "dup"), (2, "slow"), (4, "garbled")]
    assert result["errors"][0]["error"] == "Duplicate"
    assert progress == [(1, 5), (2, 5), (3, 5), (4, 5), (5, 5)]
    assert [r["body"]["title"] for r in transport.requests] == ["a", "dup", "slow", "b", "garbled"]


def test_sequential_calls_respect_min_delay(monkeypatch):
    monkeypatch.setattr(
        "urllib.request.urlopen", FakeTransport(lambda req, body: {"success": True, "external_item_id": "x"})
    )
    client = _client(rate_limiter=MinIntervalRateLimiter(0.02))
    started = time.monotonic()
    client.bulk_upload("t1", "a1", [_item(str(i)) for i in range(4)])
    assert time.monotonic() - started >= 3 * 0.02


class DroppedResponse(FakeResponse):
    """Headers arrive, then the connection dies while the body is read."""

    def __init__(self, exc):
        super().__init__(b"")
        self.exc = exc

    def read(self):
        raise self.exc


@pytest.mark.parametrize(
    "exc",
    [
        ConnectionResetError(104, "Connection reset by peer"),
        http.client.IncompleteRead(b'{"valid": tr', 40),
        http.client.RemoteDisconnected("Remote end closed connection without response"),
    ],
)
def test_body_read_failures_become_service_errors(monkeypatch, exc):
    monkeypatch.setattr("urllib.request.urlopen", lambda req, timeout=None: DroppedResponse(exc))

    result = _client().validate_connection()
    assert result["valid"] is False
    assert "connection failed" in result["error"]

    with pytest.raises(ExternalServiceError):
        _client().get_audit_status("a1")


def test_connection_errors_do_not_leak_key(monkeypatch):
    exc = ConnectionResetError(f"reset while sending Bearer {API_KEY}")
    monkeypatch.setattr("urllib.request.urlopen", lambda req, timeout=None: DroppedResponse(exc))
    with pytest.raises(ExternalServiceError) as e:
        _client().upload_evidence("a1", _item("x"))
    assert API_KEY not in e.value.message


STRUCTURE = {
    "audit_id": "audit-7",
    "name": "2026 Certification Audit",
    "elements": [
        {
            "number": 4,
            "name": "Safe Job Procedures",
            "weight": 10,
            "questions": [
                {"id": "Q4.1", "text": "Are procedures written?", "evidence_types": ["document"], "required": True},
            ],
        }
    ],
}


def test_get_audit_structure(monkeypatch):
    transport = FakeTransport(lambda req, body: STRUCTURE)
    monkeypatch.setattr("urllib.request.urlopen", transport)

    data = _client().get_audit_structure("audit 7")
    assert [q["id"] for el in data["elements"] for q in el["questions"]] == ["Q4.1"]
    assert transport.requests[0]["url"] == "https://audit.example.com/v1/audits/audit%207/structure"
    assert transport.requests[0]["method"] == "GET"


@pytest.mark.parametrize(
    "payload",
    [
        {"name": "no id", "elements": []},
        {"audit_id": "a1", "elements": {"4": []}},
        {"audit_id": "a1", "elements": [{"number": "4", "questions": []}]},
        {"audit_id": "a1", "elements": [{"number": 4, "questions": [{"text": "missing id"}]}]},
    ],
)
def test_malformed_structure_raises_protocol_error(monkeypatch, payload):
    monkeypatch.setattr("urllib.request.urlopen", FakeTransport(lambda req, body: payload))
    with pytest.raises(ProtocolError):
        _client().get_audit_structure("a1")


def test_update_evidence(monkeypatch):
    transport = FakeTransport(lambda req, body: b"")
    monkeypatch.setattr("urllib.request.urlopen", transport)

    result = _client().update_evidence("ext 9", {"title": "Lockout v2", "file": "ignored"})
    assert result == {"success": True, "external_item_id": "ext 9"}
    sent = transport.requests[0]
    assert sent["method"] == "PATCH"
    assert sent["url"] == "https://audit.example.com/v1/evidence/ext%209"
    assert sent["body"] == {"title": "Lockout v2"}

    with pytest.raises(ValidationError):
        _client().update_evidence("ext-9", {"file": "nope"})
    assert len(transport.requests) == 1

    monkeypatch.setattr(
        "urllib.request.urlopen",
        FakeTransport(lambda req, body: {"success": False, "error": f"locked (token={API_KEY})"}),
    )
    result = _client().update_evidence("ext-9", {"title": "x"})
    assert result["success"] is False
    assert API_KEY not in result["error"]


def test_delete_evidence(monkeypatch):
    transport = FakeTransport(lambda req, body: b"")
    monkeypatch.setattr("urllib.request.urlopen", transport)
    assert _client().delete_evidence("ext-9") is None
    assert transport.requests[0]["method"] == "DELETE"
    assert transport.requests[0]["url"] == "https://audit.example.com/v1/evidence/ext-9"

    def gone(req, body):
        raise urllib.error.HTTPError(req.full_url, 404, "Not Found", {}, io.BytesIO(b'{"message": "no such item"}'))

    monkeypatch.setattr("urllib.request.urlopen", FakeTransport(gone))
    with pytest.raises(ExternalServiceError) as e:
        _client().delete_evidence("ext-9")
    assert "404" in e.value.message
