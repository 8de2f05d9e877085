import pytest

from app.compliance import create_app
from app.compliance.db import session_scope
from app.compliance.errors import ForbiddenError, ValidationError
from app.compliance.models import AuditEvent, Base
from app.compliance.modules.document_control.service import create_document, list_documents
from app.compliance.modules.evidence_linking.models import AuditElementLink
from app.compliance.modules.evidence_linking.service import (
    auto_link,
    list_links,
    manual_link,
    parse_element_number,
    unlink,
)
from app.compliance.rbac import CallerIdentity

ADMIN = CallerIdentity(tenant_id="t1", role="admin", user_id="admin-1")
AUDITOR = CallerIdentity(tenant_id="t1", role="internal_auditor", user_id="aud-1")
WORKER = CallerIdentity(tenant_id="t1", role="worker", user_id="worker-1")


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    return app


def _policy(s):
    return create_document(
        s,
        ADMIN,
        {"control_number": "NCCI-POL-001", "document_type_code": "POL", "title": "Health and Safety Policy"},
    )


def test_parse_element_number():
    assert parse_element_number("4") == 4
    with pytest.raises(ValidationError):
        parse_element_number(0)
    with pytest.raises(ValidationError):
        parse_element_number(15)
    with pytest.raises(ValidationError):
        parse_element_number("four")


def test_auto_link_from_type_code_is_idempotent(app):
    with session_scope(app) as s:
        d = _policy(s)
        created = auto_link(s, ADMIN, d.id)
        assert sorted(link.element_number for link in created) == [1, 5, 13]
        assert {link.confidence for link in created} == {90}
        assert {link.source for link in created} == {"auto"}
        assert d.elements == [1, 5, 13]

        assert auto_link(s, ADMIN, d.id) == []
        doc_id = d.id

    with session_scope(app) as s:
        assert s.query(AuditElementLink).filter(AuditElementLink.document_id == doc_id).count() == 3
        assert s.query(AuditEvent).filter(AuditEvent.action == "link.auto").count() == 1


def test_auto_link_uses_body_text(app):
    with session_scope(app) as s:
        d = create_document(s, ADMIN, {"control_number": "NCCI-MIN-001", "document_type_code": "MIN", "title": "Quarterly notes"})
        created = auto_link(s, ADMIN, d.id, "Emergency evacuation drill results")
        by_element = {link.element_number: link for link in created}
        assert set(by_element) == {11, 14}
        assert by_element[14].confidence == 90
        assert by_element[11].confidence == 60


def test_manual_link_replaces_auto_link(app):
    with session_scope(app) as s:
        d = _policy(s)
        auto_link(s, ADMIN, d.id)

        link = manual_link(s, AUDITOR, d.id, 1, reason="Signed by CEO")
        assert link.source == "manual"
        assert link.confidence == 100

        rows = [x for x in list_links(s, WORKER, d.id) if x.element_number == 1]
        assert [(x.source, x.confidence) for x in rows] == [("manual", 100)]

        # Manual again is an upsert, and auto linking leaves the manual pair alone.
        again = manual_link(s, AUDITOR, d.id, "1")
        assert again.id == link.id
        assert auto_link(s, ADMIN, d.id) == []
        assert len([x for x in list_links(s, WORKER, d.id) if x.element_number == 1]) == 1

        manual_link(s, ADMIN, d.id, 9)
        assert d.elements == [1, 5, 9, 13]


def test_unlink_removes_all_sources(app):
    with session_scope(app) as s:
        d = _policy(s)
        auto_link(s, ADMIN, d.id)
        manual_link(s, ADMIN, d.id, 8)

        assert unlink(s, ADMIN, d.id, 5) == 1
        assert unlink(s, ADMIN, d.id, 8) == 1
        assert unlink(s, ADMIN, d.id, 8) == 0
        assert d.elements == [1, 13]
        assert sorted(x.element_number for x in list_links(s, ADMIN, d.id)) == [1, 13]

        rows, total = list_documents(s, ADMIN, element=1)
        assert total == 1
        rows, total = list_documents(s, ADMIN, element=5)
        assert total == 0


def test_linking_requires_write_role(app):
    with session_scope(app) as s:
        d = _policy(s)
        with pytest.raises(ForbiddenError):
            auto_link(s, WORKER, d.id)
        with pytest.raises(ForbiddenError):
            manual_link(s, WORKER, d.id, 1)
        with pytest.raises(ForbiddenError):
            unlink(s, WORKER, d.id, 1)
        with pytest.raises(ValidationError):
            manual_link(s, ADMIN, d.id, 15)
