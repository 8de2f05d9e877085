from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.compliance.audit import record_event
from app.compliance.constants import ELEMENT_NAMES, ELEMENT_NUMBERS, EVIDENCE_STATUSES
from app.compliance.errors import ValidationError
from app.compliance.modules.document_control.models import Document
from app.compliance.modules.evidence_linking.models import AuditElementLink
from app.compliance.modules.evidence_linking.service import parse_element_number
from app.compliance.modules.evidence_scoring.models import RECORD_TYPES, EvidenceSubmission
from app.compliance.rbac import CallerIdentity, ensure_can_read, ensure_can_write
from app.compliance.utils import clean_str, utcnow

SUFFICIENT = "sufficient"
PARTIAL = "partial"
INSUFFICIENT = "insufficient"

# Display order: weakest evidence first.
STATUS_ORDER = {INSUFFICIENT: 0, PARTIAL: 1, SUFFICIENT: 2}


@dataclass(frozen=True)
class SufficiencyThresholds:
    min_forms: int = 3
    min_recent_submissions: int = 1
    window_days: int = 90


def thresholds_from_config(config: dict) -> SufficiencyThresholds:
    return SufficiencyThresholds(
        min_forms=int(config.get("EVIDENCE_MIN_FORMS", 3)),
        min_recent_submissions=int(config.get("EVIDENCE_MIN_RECENT_SUBMISSIONS", 1)),
        window_days=int(config.get("EVIDENCE_WINDOW_DAYS", 90)),
    )


@dataclass(frozen=True)
class ElementEvidenceSummary:
    element_number: int
    element_name: str
    total_forms: int
    converted_forms: int
    manual_forms: int
    submissions_last_90_days: int
    evidence_status: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def classify_evidence(
    total_forms: int,
    recent_submissions: int,
    *,
    min_forms: int = 3,
    min_recent_submissions: int = 1,
) -> str:
    if total_forms <= 0:
        return INSUFFICIENT
    if total_forms >= min_forms and recent_submissions >= min_recent_submissions:
        return SUFFICIENT
    return PARTIAL


def _form_counts(s: Session, tenant_id: str, elements: tuple[int, ...]) -> dict[int, dict[str, int]]:
    """element -> {origin: distinct current documents}"""
    stmt = (
        select(
            AuditElementLink.element_number,
            Document.origin,
            func.count(func.distinct(Document.id)),
        )
        .join(Document, Document.id == AuditElementLink.document_id)
        .where(
            Document.tenant_id == tenant_id,
            AuditElementLink.tenant_id == tenant_id,
            Document.status.in_(EVIDENCE_STATUSES),
            AuditElementLink.element_number.in_(elements),
        )
        .group_by(AuditElementLink.element_number, Document.origin)
    )
    out: dict[int, dict[str, int]] = {}
    for element, origin, n in s.execute(stmt).all():
        out.setdefault(int(element), {})[origin] = int(n or 0)
    return out


def _recent_submission_counts(
    s: Session, tenant_id: str, elements: tuple[int, ...], *, since: datetime, until: datetime
) -> dict[int, int]:
    stmt = (
        select(EvidenceSubmission.element_number, func.count(EvidenceSubmission.id))
        .where(
            EvidenceSubmission.tenant_id == tenant_id,
            EvidenceSubmission.element_number.in_(elements),
            EvidenceSubmission.submitted_at >= since,
            EvidenceSubmission.submitted_at <= until,
        )
        .group_by(EvidenceSubmission.element_number)
    )
    return {int(e): int(n or 0) for e, n in s.execute(stmt).all()}


def _summaries(
    s: Session,
    tenant_id: str,
    elements: tuple[int, ...],
    *,
    now: datetime,
    thresholds: SufficiencyThresholds,
) -> list[ElementEvidenceSummary]:
    forms = _form_counts(s, tenant_id, elements)
    recent = _recent_submission_counts(
        s, tenant_id, elements, since=now - timedelta(days=thresholds.window_days), until=now
    )
    out: list[ElementEvidenceSummary] = []
    for n in elements:
        by_origin = forms.get(n, {})
        converted = by_origin.get("conversion", 0)
        manual = by_origin.get("manual", 0)
        total = converted + manual
        r = recent.get(n, 0)
        out.append(
            ElementEvidenceSummary(
                element_number=n,
                element_name=ELEMENT_NAMES[n],
                total_forms=total,
                converted_forms=converted,
                manual_forms=manual,
                submissions_last_90_days=r,
                evidence_status=classify_evidence(
                    total,
                    r,
                    min_forms=thresholds.min_forms,
                    min_recent_submissions=thresholds.min_recent_submissions,
                ),
            )
        )
    return out


def summarize_element(
    s: Session,
    caller: CallerIdentity,
    element_number: Any,
    *,
    now: datetime | None = None,
    thresholds: SufficiencyThresholds | None = None,
) -> ElementEvidenceSummary:
    ensure_can_read(caller)
    n = parse_element_number(element_number)
    return _summaries(
        s, caller.tenant_id, (n,), now=now or utcnow(), thresholds=thresholds or SufficiencyThresholds()
    )[0]


def sort_summaries(summaries: list[ElementEvidenceSummary]) -> list[ElementEvidenceSummary]:
    return sorted(summaries, key=lambda x: (STATUS_ORDER[x.evidence_status], x.element_number))


def summarize_all(
    s: Session,
    caller: CallerIdentity,
    *,
    now: datetime | None = None,
    thresholds: SufficiencyThresholds | None = None,
) -> list[ElementEvidenceSummary]:
    """All 14 elements, insufficient first, then partial, then sufficient (element number breaks ties)."""
    ensure_can_read(caller)
    summaries = _summaries(
        s,
        caller.tenant_id,
        ELEMENT_NUMBERS,
        now=now or utcnow(),
        thresholds=thresholds or SufficiencyThresholds(),
    )
    return sort_summaries(summaries)


def _parse_timestamp(v: Any) -> datetime | None:
    if v is None or v == "":
        return None
    if isinstance(v, datetime):
        return v.replace(tzinfo=None) if v.tzinfo else v
    try:
        dt = datetime.fromisoformat(str(v).strip())
    except ValueError as e:
        raise ValidationError("submitted_at must be an ISO date or datetime.", field="submitted_at") from e
    return dt.replace(tzinfo=None) if dt.tzinfo else dt


def record_submission(s: Session, caller: CallerIdentity, payload: dict[str, Any]) -> EvidenceSubmission:
    ensure_can_write(caller)
    n = parse_element_number(payload.get("element_number"))
    record_type = clean_str(payload.get("record_type")) or "form_submission"
    if record_type not in RECORD_TYPES:
        raise ValidationError(f"record_type must be one of {', '.join(RECORD_TYPES)}.", field="record_type")
    title = clean_str(payload.get("title"))
    if not title:
        raise ValidationError("title is required.", field="title")

    sub = EvidenceSubmission(
        tenant_id=caller.tenant_id,
        element_number=n,
        record_type=record_type,
        source_id=clean_str(payload.get("source_id")) or None,
        title=title,
        submitted_at=_parse_timestamp(payload.get("submitted_at")) or utcnow(),
        created_by=caller.user_id,
    )
    s.add(sub)
    s.flush()
    record_event(
        s,
        actor=caller,
        action="evidence.submission",
        entity_type="EvidenceSubmission",
        entity_id=str(sub.id),
        metadata={"element_number": n, "record_type": record_type},
    )
    return sub
