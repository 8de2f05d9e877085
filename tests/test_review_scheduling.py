from datetime import date, datetime, timedelta
from types import SimpleNamespace

import pytest

from app.compliance import create_app
from app.compliance.db import session_scope
from app.compliance.errors import ForbiddenError, ValidationError
from app.compliance.models import AuditEvent, Base
from app.compliance.modules.document_control.service import create_document, set_status
from app.compliance.modules.review_scheduling.models import Distribution
from app.compliance.modules.review_scheduling.service import (
    acknowledge,
    acknowledgment_stats,
    bucket_reviews,
    distribute,
    distribution_state,
    list_distributions,
    remind,
    review_dashboard,
)
from app.compliance.notifications import RecordingNotifier
from app.compliance.rbac import CallerIdentity

ADMIN = CallerIdentity(tenant_id="t1", role="admin", user_id="admin-1")
SUPERVISOR = CallerIdentity(tenant_id="t1", role="supervisor", user_id="sup-1")
TODAY = date(2026, 3, 1)


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    return app


def _worker(user_id):
    return CallerIdentity(tenant_id="t1", role="worker", user_id=user_id)


def _doc(s, cn="NCCI-POL-001", **extra):
    payload = {"control_number": cn, "document_type_code": "POL", "title": "Health and Safety Policy"}
    payload.update(extra)
    return create_document(s, ADMIN, payload)


def test_bucket_boundaries():
    docs = [
        SimpleNamespace(name="yesterday", next_review_date=TODAY - timedelta(days=1)),
        SimpleNamespace(name="today", next_review_date=TODAY),
        SimpleNamespace(name="plus7", next_review_date=TODAY + timedelta(days=7)),
        SimpleNamespace(name="plus8", next_review_date=TODAY + timedelta(days=8)),
        SimpleNamespace(name="undated", next_review_date=None),
    ]
    buckets = bucket_reviews(docs, TODAY)
    assert [d.name for d in buckets["overdue"]] == ["yesterday"]
    assert [d.name for d in buckets["due_this_week"]] == ["today", "plus7"]
    assert [d.name for d in buckets["upcoming"]] == ["plus8"]


def test_review_dashboard_buckets_current_documents(app):
    with session_scope(app) as s:
        overdue = _doc(s, "NCCI-POL-001", next_review_date=(TODAY - timedelta(days=3)).isoformat())
        week = _doc(s, "NCCI-POL-002", next_review_date=(TODAY + timedelta(days=2)).isoformat())
        later = _doc(s, "NCCI-POL-003", next_review_date=(TODAY + timedelta(days=20)).isoformat())
        far = _doc(s, "NCCI-POL-004", next_review_date=(TODAY + timedelta(days=45)).isoformat())
        _doc(s, "NCCI-POL-005", next_review_date=(TODAY + timedelta(days=1)).isoformat())  # stays draft
        for d in (overdue, week, later, far):
            set_status(s, ADMIN, d.id, "active")

        buckets = review_dashboard(s, ADMIN, 30, today=TODAY)
        assert [d.control_number for d in buckets["overdue"]] == ["NCCI-POL-001"]
        assert [d.control_number for d in buckets["due_this_week"]] == ["NCCI-POL-002"]
        assert [d.control_number for d in buckets["upcoming"]] == ["NCCI-POL-003"]

        buckets = review_dashboard(s, ADMIN, 60, today=TODAY)
        assert [d.control_number for d in buckets["upcoming"]] == ["NCCI-POL-003", "NCCI-POL-004"]


def test_distribute_creates_only_new_recipients(app):
    notifier = RecordingNotifier()
    with session_scope(app) as s:
        d = _doc(s)
        created = distribute(s, ADMIN, d.id, ["u1", "u2"], required_by_date="2026-03-15", notifier=notifier)
        assert [x.recipient_id for x in created] == ["u1", "u2"]
        assert all(x.acknowledged is False and x.reminder_count == 0 for x in created)

        created = distribute(s, SUPERVISOR, d.id, "u2, u3", notifier=notifier)
        assert [x.recipient_id for x in created] == ["u3"]
        assert [x.recipient_id for x in list_distributions(s, ADMIN, d.id)] == ["u1", "u2", "u3"]
        assert [rid for rid, _msg in notifier.sent] == ["u1", "u2", "u3"]
        assert "NCCI-POL-001" in notifier.sent[0][1]

        with pytest.raises(ValidationError):
            distribute(s, ADMIN, d.id, [])
        with pytest.raises(ForbiddenError):
            distribute(s, _worker("u1"), d.id, ["u4"])


def test_distribute_rejects_retired_documents(app):
    with session_scope(app) as s:
        d = _doc(s)
        set_status(s, ADMIN, d.id, "obsolete")
        with pytest.raises(ValidationError):
            distribute(s, ADMIN, d.id, ["u1"])


def test_acknowledge_is_monotonic(app):
    with session_scope(app) as s:
        d = _doc(s)
        dists = distribute(s, ADMIN, d.id, ["u1", "u2"])
        first_id, second_id = dists[0].id, dists[1].id

    with session_scope(app) as s:
        dist = acknowledge(s, _worker("u1"), first_id)
        assert dist.acknowledged is True
        first_at = dist.acknowledged_at
        assert first_at is not None

        again = acknowledge(s, _worker("u1"), first_id)
        assert again.acknowledged is True
        assert again.acknowledged_at == first_at

        with pytest.raises(ForbiddenError):
            acknowledge(s, _worker("u1"), second_id)
        # Supervisors may record an acknowledgment on someone's behalf.
        assert acknowledge(s, SUPERVISOR, second_id).acknowledged is True

    with session_scope(app) as s:
        assert s.query(AuditEvent).filter(AuditEvent.action == "distribution.acknowledge").count() == 2


def test_remind_only_touches_pending(app):
    notifier = RecordingNotifier()
    with session_scope(app) as s:
        d = _doc(s)
        dists = distribute(s, ADMIN, d.id, ["u1", "u2", "u3"])
        doc_id, first_id = d.id, dists[0].id

    with session_scope(app) as s:
        acknowledge(s, _worker("u1"), first_id)
        result = remind(s, ADMIN, doc_id, now=datetime(2026, 3, 2, 9, 0), notifier=notifier)
        assert result == {"reminders_sent": 2}
        assert sorted(rid for rid, _msg in notifier.sent) == ["u2", "u3"]

    with session_scope(app) as s:
        remind(s, ADMIN, doc_id, now=datetime(2026, 3, 3, 9, 0))

    with session_scope(app) as s:
        rows = {r.recipient_id: r for r in s.query(Distribution).filter(Distribution.document_id == doc_id).all()}
        assert rows["u1"].reminder_count == 0
        assert rows["u1"].last_reminder_at is None
        assert rows["u1"].acknowledged is True
        assert rows["u2"].reminder_count == 2
        assert rows["u3"].last_reminder_at == datetime(2026, 3, 3, 9, 0)


def test_remind_with_nothing_pending(app):
    with session_scope(app) as s:
        d = _doc(s)
        assert remind(s, ADMIN, d.id) == {"reminders_sent": 0}

        dist = distribute(s, ADMIN, d.id, ["u1"])[0]
        acknowledge(s, _worker("u1"), dist.id)
        assert remind(s, ADMIN, d.id) == {"reminders_sent": 0}


def test_distribution_state_and_stats(app):
    with session_scope(app) as s:
        d = _doc(s)
        dists = distribute(s, ADMIN, d.id, ["u1", "u2", "u3", "u4"], required_by_date="2026-03-10")
        acknowledge(s, _worker("u1"), dists[0].id)

        assert distribution_state(dists[1], date(2026, 3, 10)) == "pending"
        assert distribution_state(dists[1], date(2026, 3, 11)) == "overdue"
        assert dists[1].to_dict(today=date(2026, 3, 11))["state"] == "overdue"

        stats = acknowledgment_stats(s, ADMIN, d.id, today=date(2026, 3, 11))
        assert stats == {"total": 4, "acknowledged": 1, "pending": 0, "overdue": 3, "acknowledgment_rate": 25.0}
