import json

import pytest

from app.compliance import create_app
from app.compliance.db import session_scope
from app.compliance.errors import ForbiddenError, ValidationError
from app.compliance.models import AuditEvent, Base
from app.compliance.modules.audit_sync.client import AuditSyncClient
from app.compliance.modules.audit_sync.models import AuditSyncRun
from app.compliance.modules.audit_sync.service import (
    build_evidence_items,
    list_mappings,
    run_export,
    upsert_mapping,
)
from app.compliance.modules.document_control.service import VersionInput, create_document, set_status
from app.compliance.modules.evidence_linking.service import manual_link
from app.compliance.modules.evidence_scoring.service import record_submission
from app.compliance.ratelimit import MinIntervalRateLimiter
from app.compliance.rbac import CallerIdentity
from app.compliance.storage import LocalStorage, StorageError

ADMIN = CallerIdentity(tenant_id="t1", role="admin", user_id="admin-1")
SUPERVISOR = CallerIdentity(tenant_id="t1", role="supervisor", user_id="sup-1")


class FakeResponse:
    def __init__(self, payload):
        self._raw = json.dumps(payload).encode("utf-8")

    def read(self):
        return self._raw

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    return app


class CountingStorage(LocalStorage):
    def __init__(self, root):
        super().__init__(root)
        self.reads = []
        self.missing = False

    def get_bytes(self, key):
        self.reads.append(key)
        if self.missing:
            raise StorageError(f"Stored file not found: {key}")
        return super().get_bytes(key)


def _client():
    return AuditSyncClient(api_key="k-1", base_url="https://audit.example.com", rate_limiter=MinIntervalRateLimiter(0))


def test_upsert_mapping_updates_in_place(app):
    with session_scope(app) as s:
        m = upsert_mapping(s, ADMIN, {"element_number": 4, "evidence_source": "document", "external_question_id": "Q4.1"})
        again = upsert_mapping(
            s, ADMIN, {"element_number": "4", "evidence_source": "DOCUMENT", "external_question_id": "Q4.2", "is_active": "false"}
        )
        assert again.id == m.id
        assert again.external_question_id == "Q4.2"
        assert list_mappings(s, ADMIN, active_only=True) == []
        assert len(list_mappings(s, ADMIN)) == 1

        with pytest.raises(ValidationError):
            upsert_mapping(s, ADMIN, {"element_number": 4, "evidence_source": "email"})
        with pytest.raises(ForbiddenError):
            upsert_mapping(s, SUPERVISOR, {"element_number": 4, "evidence_source": "document"})


def test_build_evidence_items(app, tmp_path):
    storage = CountingStorage(tmp_path / "files")
    with session_scope(app) as s:
        d = create_document(
            s,
            ADMIN,
            {"control_number": "NCCI-SJP-001", "document_type_code": "SJP", "title": "Lockout", "effective_date": "2026-01-15"},
            version=VersionInput(file_bytes=b"steps", filename="lockout.txt", content_type="text/plain"),
            storage=storage,
        )
        set_status(s, ADMIN, d.id, "active")
        manual_link(s, ADMIN, d.id, 4)
        draft = create_document(s, ADMIN, {"control_number": "NCCI-SJP-002", "document_type_code": "SJP", "title": "Draft"})
        manual_link(s, ADMIN, draft.id, 4)
        record_submission(
            s,
            ADMIN,
            {"element_number": 8, "record_type": "training_record", "title": "Toolbox talk", "submitted_at": "2026-05-02"},
        )
        upsert_mapping(s, ADMIN, {"element_number": 4, "evidence_source": "document", "external_question_id": "Q4.1"})
        upsert_mapping(s, ADMIN, {"element_number": 8, "evidence_source": "training_record", "external_question_id": "Q8.3"})
        upsert_mapping(s, ADMIN, {"element_number": 9, "evidence_source": "inspection"})  # no question, skipped

        items = build_evidence_items(s, ADMIN, storage=storage)
        assert [(i.element_number, i.question_id, i.title) for i in items] == [
            (4, "Q4.1", "NCCI-SJP-001 Lockout"),
            (8, "Q8.3", "Toolbox talk"),
        ]
        assert items[0].date == "2026-01-15"
        assert storage.reads == []
        assert items[0].file is None
        assert items[0].to_wire()["file"]["content_base64"] == "c3RlcHM="
        assert len(storage.reads) == 1
        storage.missing = True
        assert "file" not in items[0].to_wire()
        assert items[1].evidence_type == "training_record"
        assert items[1].date == "2026-05-02"


def test_run_export_records_run(app, monkeypatch):
    sent = []

    def fake_urlopen(req, timeout=None):
        body = json.loads(req.data.decode("utf-8"))
        sent.append(body["title"])
        if body["title"] == "Second":
            return FakeResponse({"success": False, "error": "Rejected"})
        return FakeResponse({"success": True, "external_item_id": "ext-1"})

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
    with session_scope(app) as s:
        for day, title in ((1, "First"), (2, "Second")):
            record_submission(
                s,
                ADMIN,
                {"element_number": 10, "record_type": "incident_report", "title": title, "submitted_at": f"2026-05-0{day}"},
            )
        upsert_mapping(s, ADMIN, {"element_number": 10, "evidence_source": "incident_report", "external_question_id": "Q10.1"})

        run, result = run_export(s, ADMIN, _client(), "audit-7")
        assert sent == ["First", "Second"]
        assert result["succeeded"] == 1
        assert result["failed"] == 1
        assert run.status == "partial"
        assert json.loads(run.errors_json) == [{"index": 1, "title": "Second", "error": "Rejected"}]

        with pytest.raises(ValidationError):
            run_export(s, ADMIN, _client(), " ")

    with session_scope(app) as s:
        assert s.query(AuditSyncRun).count() == 1
        assert s.query(AuditEvent).filter(AuditEvent.action == "sync.export").count() == 1
