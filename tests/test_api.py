import io
import json

import pytest

from app.compliance import create_app
from app.compliance.db import session_scope
from app.compliance.models import AuditEvent, Base
from app.compliance.modules.document_control.models import Document
from app.compliance.notifications import RecordingNotifier

ADMIN = {"X-Tenant-Id": "t1", "X-User-Id": "admin-1", "X-Role": "admin"}
SUPERVISOR = {"X-Tenant-Id": "t1", "X-User-Id": "sup-1", "X-Role": "supervisor"}


def _worker(user_id="u1"):
    return {"X-Tenant-Id": "t1", "X-User-Id": user_id, "X-Role": "worker"}


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("REMIND_MAX_PER_HOUR", "2")
    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    app.extensions["notifier"] = RecordingNotifier()
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _create(client, cn, type_code="POL", title="Health and Safety Policy", headers=ADMIN, **extra):
    body = {"control_number": cn, "document_type_code": type_code, "title": title}
    body.update(extra)
    return client.post("/api/documents", json=body, headers=headers)


def _activate(client, doc_id):
    r = client.post(f"/api/documents/{doc_id}/status", json={"status": "active"}, headers=ADMIN)
    assert r.status_code == 200, r.json


def test_create_document_auto_links(client, app):
    r = _create(client, "NCCI-POL-001")
    assert r.status_code == 201, r.json
    doc = r.json["document"]
    assert doc["control_number"] == "NCCI-POL-001"
    assert doc["status"] == "draft"
    assert doc["elements"] == [1, 5, 13]
    assert sorted(link["element_number"] for link in r.json["links"]) == [1, 5, 13]

    with session_scope(app) as s:
        actions = {e.action for e in s.query(AuditEvent).all()}
        assert {"doc.create", "link.auto"} <= actions


def test_create_document_errors(client):
    assert _create(client, "NCCI-POL-001").status_code == 201

    r = _create(client, "ncci-pol-001")
    assert r.status_code == 409
    assert r.json["error"] == "conflict"
    assert r.json["field"] == "control_number"

    r = _create(client, "NCCI-POL-002", title="")
    assert r.status_code == 400
    assert r.json["field"] == "title"

    r = client.post("/api/documents", data="{not json", headers=ADMIN, content_type="application/json")
    assert r.status_code == 400

    r = _create(client, "NCCI-POL-003", headers=_worker())
    assert r.status_code == 403


def test_generated_control_number_uses_configured_prefix(app, client):
    app.config["CONTROL_NUMBER_PREFIX"] = "NCCI"
    r = client.post("/api/documents", json={"document_type_code": "FRM", "title": "Site Inspection Form"}, headers=ADMIN)
    assert r.status_code == 201
    assert r.json["document"]["control_number"] == "NCCI-FRM-001"


def test_upload_version_links_references(client):
    policy = _create(client, "NCCI-POL-001").json["document"]
    form = _create(client, "NCCI-FRM-014", type_code="FRM", title="Site Inspection Form").json["document"]
    _activate(client, policy["id"])
    _activate(client, form["id"])

    r = client.post(
        f"/api/documents/{policy['id']}/versions",
        data={"file": (io.BytesIO(b"Inspections are recorded on NCCI-FRM-014."), "policy-v2.txt"), "change_summary": "Add form"},
        headers=ADMIN,
        content_type="multipart/form-data",
    )
    assert r.status_code == 201, r.json
    assert r.json["version"]["version_number"] == 2
    assert r.json["version"]["has_text"] is True

    r = client.get(f"/api/documents/{policy['id']}/related", headers=_worker())
    assert r.status_code == 200
    assert [x["control_number"] for x in r.json["references"]] == ["NCCI-FRM-014"]

    r = client.get(f"/api/documents/{form['id']}", headers=_worker())
    assert r.status_code == 200
    assert [v["version_number"] for v in r.json["versions"]] == [1]


def test_status_transitions_over_http(client):
    doc = _create(client, "NCCI-POL-001").json["document"]
    r = client.post(f"/api/documents/{doc['id']}/status", json={"status": "approved"}, headers=ADMIN)
    assert r.status_code == 409
    assert r.json["error"] == "invalid_transition"

    r = client.post(f"/api/documents/{doc['id']}/status", json={"status": "active"}, headers=_worker())
    assert r.status_code == 403

    r = client.get("/api/documents/999", headers=ADMIN)
    assert r.status_code == 404
    assert r.json["error"] == "not_found"


def test_supersede_over_http(client, app):
    _create(client, "NCCI-POL-001")
    _create(client, "NCCI-POL-002")
    r = client.post(
        "/api/documents/supersede",
        json={"old_control_number": "NCCI-POL-001", "new_control_number": "NCCI-POL-404"},
        headers=ADMIN,
    )
    assert r.status_code == 404
    with session_scope(app) as s:
        old = s.query(Document).filter(Document.control_number == "NCCI-POL-001").one()
        assert old.superseded_by_control_number is None

    r = client.post(
        "/api/documents/supersede",
        json={"old_control_number": "NCCI-POL-001", "new_control_number": "NCCI-POL-002"},
        headers=ADMIN,
    )
    assert r.status_code == 200
    assert r.json["old"]["superseded_by_control_number"] == "NCCI-POL-002"
    assert r.json["new"]["supersedes_control_number"] == "NCCI-POL-001"


def test_list_and_search(client):
    _create(client, "NCCI-POL-001")
    _create(client, "NCCI-FRM-014", type_code="FRM", title="Site Inspection Form")

    r = client.get("/api/documents?document_type_code=FRM", headers=_worker())
    assert r.status_code == 200
    assert r.json["total"] == 1

    r = client.get("/api/documents/search?q=inspection", headers=_worker())
    assert [d["control_number"] for d in r.json["items"]] == ["NCCI-FRM-014"]

    r = client.get("/api/documents/search", headers=_worker())
    assert r.status_code == 400

    r = client.get("/api/documents?limit=abc", headers=_worker())
    assert r.status_code == 400


def test_links_api(client):
    doc = _create(client, "NCCI-POL-001").json["document"]

    r = client.post(f"/api/documents/{doc['id']}/links", json={"element_number": 1, "reason": "Signed"}, headers=SUPERVISOR)
    assert r.status_code == 201
    assert r.json["source"] == "manual"

    r = client.post(f"/api/documents/{doc['id']}/links", json={"element_number": 15}, headers=SUPERVISOR)
    assert r.status_code == 400

    r = client.delete(f"/api/documents/{doc['id']}/links/5", headers=ADMIN)
    assert r.json == {"removed": 1}

    r = client.get(f"/api/documents/{doc['id']}/links", headers=_worker())
    assert sorted((x["element_number"], x["source"]) for x in r.json["items"]) == [(1, "manual"), (13, "auto")]

    r = client.post(f"/api/documents/{doc['id']}/links/auto", headers=ADMIN)
    assert [x["element_number"] for x in r.json["created"]] == [5]


def test_evidence_endpoints(client):
    r = client.get("/api/evidence/elements", headers=_worker())
    assert r.status_code == 200
    assert len(r.json["items"]) == 14
    assert {x["evidence_status"] for x in r.json["items"]} == {"insufficient"}

    r = client.post(
        "/api/evidence/submissions",
        json={"element_number": 4, "title": "Lockout sign-off", "record_type": "form_submission"},
        headers=SUPERVISOR,
    )
    assert r.status_code == 201

    r = client.get("/api/evidence/elements/4", headers=_worker())
    assert r.json["submissions_last_90_days"] == 1
    assert r.json["evidence_status"] == "insufficient"

    r = client.get("/api/evidence/elements/15", headers=_worker())
    assert r.status_code == 400


def test_reviews_dashboard_window(client):
    r = client.get("/api/documents/reviews?days_ahead=15", headers=_worker())
    assert r.status_code == 400
    assert r.json["field"] == "days_ahead"

    r = client.get("/api/documents/reviews?days_ahead=7", headers=_worker())
    assert r.status_code == 200
    assert set(r.json) == {"days_ahead", "overdue", "due_this_week", "upcoming"}

    r = client.get("/api/documents/due-for-review", headers=_worker())
    assert r.status_code == 200
    assert r.json["items"] == []


def test_distribution_flow_and_remind_limit(client, app):
    doc = _create(client, "NCCI-POL-001").json["document"]
    r = client.post(f"/api/documents/{doc['id']}/distributions", json={"recipient_ids": ["u1", "u2"]}, headers=ADMIN)
    assert r.status_code == 201
    first = r.json["created"][0]
    assert first["state"] == "pending"

    r = client.post(f"/api/distributions/{first['id']}/acknowledge", headers=_worker("u2"))
    assert r.status_code == 403
    r = client.post(f"/api/distributions/{first['id']}/acknowledge", headers=_worker("u1"))
    assert r.status_code == 200
    assert r.json["acknowledged"] is True

    r = client.post(f"/api/documents/{doc['id']}/remind", headers=ADMIN)
    assert r.json == {"reminders_sent": 1}
    r = client.post(f"/api/documents/{doc['id']}/remind", headers=ADMIN)
    assert r.status_code == 200
    r = client.post(f"/api/documents/{doc['id']}/remind", headers=ADMIN)
    assert r.status_code == 429
    assert int(r.headers["Retry-After"]) >= 1
    assert r.json["error"] == "rate_limited"

    r = client.get(f"/api/documents/{doc['id']}/distributions", headers=_worker())
    assert r.json["stats"]["total"] == 2
    assert r.json["stats"]["acknowledged"] == 1
    assert [x["reminder_count"] for x in r.json["items"]] == [0, 2]

    sent = app.extensions["notifier"].sent
    assert [rid for rid, _ in sent] == ["u1", "u2", "u2", "u2"]


def test_reindex_rate_limit_over_http(client):
    _create(client, "NCCI-POL-001")
    for _ in range(3):
        r = client.post("/api/reindex", json={}, headers=ADMIN)
        assert r.status_code == 200, r.json
        assert r.json["processed"] == 1

    r = client.post("/api/reindex", json={}, headers=ADMIN)
    assert r.status_code == 429
    retry_after = int(r.headers["Retry-After"])
    assert 1 <= retry_after <= 3600
    assert r.json["retry_after"] == retry_after

    r = client.post("/api/reindex", json={}, headers=SUPERVISOR)
    assert r.status_code == 403


def test_audit_sync_requires_configuration(client):
    r = client.post("/api/audit-sync/export", json={"audit_id": "a1"}, headers=ADMIN)
    assert r.status_code == 500
    assert r.json["error"] == "configuration_error"
    assert r.json["field"] == "AUDIT_SYNC_API_KEY"

    r = client.get("/api/audit-sync/mappings", headers=SUPERVISOR)
    assert r.status_code == 403

    r = client.post(
        "/api/audit-sync/mappings",
        json={"element_number": 4, "evidence_source": "document", "external_question_id": "Q4.1"},
        headers=ADMIN,
    )
    assert r.status_code == 200
    r = client.get("/api/audit-sync/mappings?active_only=1", headers=ADMIN)
    assert [m["external_question_id"] for m in r.json["items"]] == ["Q4.1"]


class _JsonResponse:
    def __init__(self, payload):
        self._raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")

    def read(self):
        return self._raw

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def test_audit_structure_and_pushed_evidence_routes(client, app, monkeypatch):
    app.config["AUDIT_SYNC_API_KEY"] = "k-test"
    app.config["AUDIT_SYNC_ENDPOINT"] = "https://audit.example.com"
    calls = []

    def fake_urlopen(req, timeout=None):
        calls.append((req.get_method(), req.full_url))
        if req.full_url.endswith("/structure"):
            return _JsonResponse(
                {"audit_id": "a1", "name": "Audit", "elements": [{"number": 4, "questions": [{"id": "Q4.1", "text": "?"}]}]}
            )
        return _JsonResponse(b"")

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)

    r = client.get("/api/audit-sync/audits/a1/structure", headers=ADMIN)
    assert r.status_code == 200
    assert r.json["elements"][0]["questions"][0]["id"] == "Q4.1"

    r = client.get("/api/audit-sync/audits/a1/structure", headers=SUPERVISOR)
    assert r.status_code == 403

    r = client.patch("/api/audit-sync/evidence/ext-1", json={"title": "Renamed"}, headers=ADMIN)
    assert r.status_code == 200
    assert r.json == {"success": True, "external_item_id": "ext-1"}

    r = client.patch("/api/audit-sync/evidence/ext-1", json={"bogus": 1}, headers=ADMIN)
    assert r.status_code == 400

    r = client.delete("/api/audit-sync/evidence/ext-1", headers=ADMIN)
    assert r.status_code == 200
    assert r.json == {"deleted": "ext-1"}

    assert calls == [
        ("GET", "https://audit.example.com/v1/audits/a1/structure"),
        ("PATCH", "https://audit.example.com/v1/evidence/ext-1"),
        ("DELETE", "https://audit.example.com/v1/evidence/ext-1"),
    ]
    with session_scope(app) as s:
        actions = [e.action for e in s.query(AuditEvent).order_by(AuditEvent.id).all()]
        assert actions == ["sync.evidence_update", "sync.evidence_delete"]


def test_due_for_review_accepts_any_window(client):
    r = client.get("/api/documents/due-for-review?days_ahead=15", headers=_worker())
    assert r.status_code == 200
    assert r.json["items"] == []

    r = client.get("/api/documents/due-for-review?days_ahead=-1", headers=_worker())
    assert r.status_code == 400
    assert r.json["field"] == "days_ahead"
