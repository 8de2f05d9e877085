from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.compliance.audit import record_event
from app.compliance.constants import EVIDENCE_STATUSES
from app.compliance.errors import ForbiddenError, NotFoundError, ValidationError
from app.compliance.modules.document_control.models import Document
from app.compliance.modules.document_control.service import get_document
from app.compliance.modules.review_scheduling.models import Distribution
from app.compliance.notifications import LogNotifier, Notifier, notify_all
from app.compliance.rbac import CallerIdentity, caller_has_role, ensure_can_read, ensure_can_write, WRITE_ROLES
from app.compliance.utils import clean_str_list, parse_date, utcnow

logger = logging.getLogger(__name__)

DUE_THIS_WEEK_DAYS = 7


def bucket_reviews(documents: Iterable[Any], today: date) -> dict[str, list[Any]]:
    """
    Split documents by next_review_date:
    - overdue: before today
    - due_this_week: today .. today + 7 days (inclusive)
    - upcoming: later than that
    Documents without a review date are left out. Each bucket is sorted by date.
    """
    week_end = today + timedelta(days=DUE_THIS_WEEK_DAYS)
    buckets: dict[str, list[Any]] = {"overdue": [], "due_this_week": [], "upcoming": []}
    for d in documents:
        due = getattr(d, "next_review_date", None)
        if due is None:
            continue
        if due < today:
            buckets["overdue"].append(d)
        elif due <= week_end:
            buckets["due_this_week"].append(d)
        else:
            buckets["upcoming"].append(d)
    for k in buckets:
        buckets[k].sort(key=lambda x: x.next_review_date)
    return buckets


def review_dashboard(
    s: Session, caller: CallerIdentity, days_ahead: int = 30, *, today: date | None = None
) -> dict[str, list[Document]]:
    """Current documents due within `days_ahead` days (overdue ones included), bucketed."""
    ensure_can_read(caller)
    if days_ahead < 0:
        raise ValidationError("days_ahead must not be negative.", field="days_ahead")
    today = today or date.today()
    docs = (
        s.query(Document)
        .filter(
            Document.tenant_id == caller.tenant_id,
            Document.status.in_(EVIDENCE_STATUSES),
            Document.next_review_date.is_not(None),
            Document.next_review_date <= today + timedelta(days=days_ahead),
        )
        .all()
    )
    return bucket_reviews(docs, today)


def distribution_state(dist: Distribution, today: date) -> str:
    if dist.acknowledged:
        return "acknowledged"
    if dist.required_by_date is not None and dist.required_by_date < today:
        return "overdue"
    return "pending"


def _get_distribution(s: Session, caller: CallerIdentity, distribution_id: int) -> Distribution:
    dist = (
        s.query(Distribution)
        .filter(Distribution.tenant_id == caller.tenant_id, Distribution.id == distribution_id)
        .one_or_none()
    )
    if not dist:
        raise NotFoundError(f"Distribution {distribution_id} not found.")
    return dist


def distribute(
    s: Session,
    caller: CallerIdentity,
    document_id: int,
    recipient_ids: Any,
    *,
    required_by_date: Any = None,
    notifier: Notifier | None = None,
) -> list[Distribution]:
    """Create pending distributions. Recipients who already have one are left untouched. Returns new rows."""
    ensure_can_write(caller)
    d = get_document(s, caller, document_id)
    if d.status in ("archived", "obsolete"):
        raise ValidationError(f"Cannot distribute a {d.status} document.", field="document_id")
    recipients = clean_str_list(recipient_ids)
    if not recipients:
        raise ValidationError("recipient_ids is required.", field="recipient_ids")
    try:
        required_by = parse_date(required_by_date)
    except ValueError as e:
        raise ValidationError("required_by_date must be a YYYY-MM-DD date.", field="required_by_date") from e

    existing = {
        r[0]
        for r in s.execute(
            select(Distribution.recipient_id).where(
                Distribution.document_id == d.id, Distribution.recipient_id.in_(recipients)
            )
        ).all()
    }
    now = utcnow()
    created: list[Distribution] = []
    for rid in recipients:
        if rid in existing:
            continue
        dist = Distribution(
            tenant_id=caller.tenant_id,
            document_id=d.id,
            recipient_id=rid,
            distributed_at=now,
            distributed_by=caller.user_id,
            required_by_date=required_by,
            acknowledged=False,
            reminder_count=0,
        )
        s.add(dist)
        created.append(dist)
    s.flush()

    if created:
        record_event(
            s,
            actor=caller,
            action="distribution.create",
            entity_type="Document",
            entity_id=str(d.id),
            metadata={"recipients": [x.recipient_id for x in created], "required_by_date": required_by},
        )
        notify_all(
            notifier or LogNotifier(),
            [x.recipient_id for x in created],
            f"Please review and acknowledge {d.control_number} ({d.title}).",
        )
    return created


def acknowledge(s: Session, caller: CallerIdentity, distribution_id: int) -> Distribution:
    """Mark acknowledged. Acknowledging twice is a no-op; acknowledged_at keeps the first time."""
    ensure_can_read(caller)
    dist = _get_distribution(s, caller, distribution_id)
    if dist.recipient_id != caller.user_id and not caller_has_role(caller, WRITE_ROLES):
        raise ForbiddenError("Only the recipient can acknowledge this distribution.")
    if dist.acknowledged:
        return dist

    now = utcnow()
    res = s.execute(
        update(Distribution)
        .where(Distribution.id == dist.id, Distribution.acknowledged.is_(False))
        .values(acknowledged=True, acknowledged_at=now)
    )
    if res.rowcount:
        record_event(
            s,
            actor=caller,
            action="distribution.acknowledge",
            entity_type="Distribution",
            entity_id=str(dist.id),
            metadata={"document_id": dist.document_id, "recipient_id": dist.recipient_id},
        )
    s.refresh(dist)
    return dist


def list_distributions(s: Session, caller: CallerIdentity, document_id: int) -> list[Distribution]:
    d = get_document(s, caller, document_id)
    return (
        s.query(Distribution)
        .filter(Distribution.tenant_id == caller.tenant_id, Distribution.document_id == d.id)
        .order_by(Distribution.distributed_at.asc(), Distribution.id.asc())
        .all()
    )


def acknowledgment_stats(
    s: Session, caller: CallerIdentity, document_id: int, *, today: date | None = None
) -> dict[str, Any]:
    today = today or date.today()
    rows = list_distributions(s, caller, document_id)
    counts = {"acknowledged": 0, "pending": 0, "overdue": 0}
    for r in rows:
        counts[distribution_state(r, today)] += 1
    total = len(rows)
    return {
        "total": total,
        **counts,
        "acknowledgment_rate": round(counts["acknowledged"] * 100.0 / total, 1) if total else 0.0,
    }


def remind(
    s: Session,
    caller: CallerIdentity,
    document_id: int,
    *,
    now: datetime | None = None,
    notifier: Notifier | None = None,
) -> dict[str, int]:
    """
    Nudge every recipient who has not acknowledged yet.

    reminder_count and last_reminder_at are updated in one statement guarded
    by acknowledged = false, so acknowledged rows are never touched.
    Nothing pending is not an error: reminders_sent is 0.
    """
    ensure_can_write(caller)
    d = get_document(s, caller, document_id)
    now = now or utcnow()

    pending = [
        r[0]
        for r in s.execute(
            select(Distribution.recipient_id).where(
                Distribution.tenant_id == caller.tenant_id,
                Distribution.document_id == d.id,
                Distribution.acknowledged.is_(False),
            )
        ).all()
    ]
    if not pending:
        return {"reminders_sent": 0}

    res = s.execute(
        update(Distribution)
        .where(
            Distribution.tenant_id == caller.tenant_id,
            Distribution.document_id == d.id,
            Distribution.acknowledged.is_(False),
        )
        .values(reminder_count=Distribution.reminder_count + 1, last_reminder_at=now)
    )
    sent = int(res.rowcount or 0)
    record_event(
        s,
        actor=caller,
        action="distribution.remind",
        entity_type="Document",
        entity_id=str(d.id),
        metadata={"reminders_sent": sent},
    )
    notify_all(
        notifier or LogNotifier(),
        pending,
        f"Reminder: {d.control_number} ({d.title}) is waiting for your acknowledgment.",
    )
    return {"reminders_sent": sent}
