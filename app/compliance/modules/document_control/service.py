from __future__ import annotations

import calendar
import hashlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.compliance.audit import record_event
from app.compliance.constants import (
    DEFAULT_REVIEW_INTERVAL_MONTHS,
    DOCUMENT_STATUSES,
    ELEMENT_NUMBERS,
    EVIDENCE_STATUSES,
)
from app.compliance.errors import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from app.compliance.modules.document_control.models import ControlNumberSequence, Document, DocumentVersion
from app.compliance.modules.evidence_linking.models import AuditElementLink
from app.compliance.modules.evidence_linking.parsers import (
    MAX_RESOLVED_REFERENCES,
    extract_control_numbers,
    normalize_control_number,
)
from app.compliance.rbac import CallerIdentity, ensure_can_read, ensure_can_write
from app.compliance.storage import Storage, document_storage_key
from app.compliance.utils import clean_str, clean_str_list, parse_date, utcnow

logger = logging.getLogger(__name__)

# Allowed edges besides "-> obsolete", which every non-obsolete state has.
LIFECYCLE_TRANSITIONS: dict[str, frozenset[str]] = {
    "draft": frozenset({"active"}),
    "active": frozenset({"approved"}),
    "approved": frozenset({"under_review"}),
    "under_review": frozenset({"active", "archived"}),
    "archived": frozenset(),
    "obsolete": frozenset(),
}

ORIGINS = ("manual", "conversion")
MAX_PAGE_SIZE = 200


@dataclass
class VersionInput:
    file_bytes: bytes | None = None
    filename: str | None = None
    content_type: str | None = None
    extracted_text: str | None = None
    change_summary: str | None = None
    file_reference: str | None = None


def can_transition(current: str, new_status: str) -> bool:
    if new_status == "obsolete":
        return current != "obsolete"
    return new_status in LIFECYCLE_TRANSITIONS.get(current, frozenset())


def add_months(d: date, months: int) -> date:
    y, m = divmod(d.month - 1 + months, 12)
    year, month = d.year + y, m + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def _date_field(payload: dict[str, Any], name: str) -> date | None:
    try:
        return parse_date(payload.get(name))
    except ValueError as e:
        raise ValidationError(f"{name} must be a YYYY-MM-DD date.", field=name) from e


def _int_list(values: Any, field: str) -> list[int]:
    if values is None:
        return []
    if not isinstance(values, (list, tuple, set)):
        raise ValidationError(f"{field} must be a list of ids.", field=field)
    out: list[int] = []
    for v in values:
        try:
            i = int(v)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"{field} must contain integers.", field=field) from e
        if i not in out:
            out.append(i)
    return out


def _tenant_documents(s: Session, tenant_id: str):
    return s.query(Document).filter(Document.tenant_id == tenant_id)


def get_document_for_update(s: Session, caller: CallerIdentity, document_id: int) -> Document:
    d = (
        _tenant_documents(s, caller.tenant_id)
        .filter(Document.id == document_id)
        .with_for_update()
        .one_or_none()
    )
    if not d:
        raise NotFoundError(f"Document {document_id} not found.")
    return d


def get_document(s: Session, caller: CallerIdentity, document_id: int) -> Document:
    ensure_can_read(caller)
    d = _tenant_documents(s, caller.tenant_id).filter(Document.id == document_id).one_or_none()
    if not d:
        raise NotFoundError(f"Document {document_id} not found.")
    return d


def get_document_by_control_number(s: Session, caller: CallerIdentity, control_number: str) -> Document:
    ensure_can_read(caller)
    key = normalize_control_number(control_number)
    d = _tenant_documents(s, caller.tenant_id).filter(Document.control_number_key == key).one_or_none()
    if not d:
        raise NotFoundError(f"Document {control_number!r} not found.", field="control_number")
    return d


def control_number_exists(s: Session, tenant_id: str, control_number: str) -> bool:
    key = normalize_control_number(control_number)
    return _tenant_documents(s, tenant_id).filter(Document.control_number_key == key).first() is not None


def next_control_number(s: Session, tenant_id: str, document_type_code: str, *, prefix: str = "DOC") -> str:
    """PREFIX-TYPE-NNN from the per-(tenant, type) sequence, skipping numbers already taken."""
    type_code = document_type_code.strip().upper()
    seq = (
        s.query(ControlNumberSequence)
        .filter(
            ControlNumberSequence.tenant_id == tenant_id,
            ControlNumberSequence.document_type_code == type_code,
        )
        .with_for_update()
        .one_or_none()
    )
    if seq is None:
        seq = ControlNumberSequence(tenant_id=tenant_id, document_type_code=type_code, current_sequence=0)
        s.add(seq)
    n = seq.current_sequence or 0
    while True:
        n += 1
        candidate = f"{prefix.strip().upper()}-{type_code}-{n:03d}"
        if not control_number_exists(s, tenant_id, candidate):
            break
    seq.current_sequence = n
    seq.updated_at = utcnow()
    s.flush()
    return candidate


def _store_version_file(
    storage: Storage | None, tenant_id: str, control_number: str, version_number: int, vi: VersionInput
) -> tuple[str | None, str | None, int | None]:
    if vi.file_bytes is None:
        return (vi.file_reference, None, None)
    digest = hashlib.sha256(vi.file_bytes).hexdigest()
    key = vi.file_reference
    if storage is not None:
        key = document_storage_key(tenant_id, control_number, version_number, vi.filename or "")
        storage.put_bytes(key, vi.file_bytes, content_type=vi.content_type)
    return (key, digest, len(vi.file_bytes))


def _new_version(
    s: Session,
    caller: CallerIdentity,
    d: Document,
    version_number: int,
    vi: VersionInput,
    storage: Storage | None,
) -> DocumentVersion:
    file_reference, digest, size = _store_version_file(storage, d.tenant_id, d.control_number, version_number, vi)
    text = (vi.extracted_text or "").strip() or None
    v = DocumentVersion(
        version_number=version_number,
        file_reference=file_reference,
        filename=clean_str(vi.filename) or None,
        content_type=clean_str(vi.content_type) or None,
        sha256=digest,
        size_bytes=size,
        extracted_text=text,
        change_summary=clean_str(vi.change_summary) or None,
        created_by=caller.user_id,
    )
    d.versions.append(v)
    return v


def create_document(
    s: Session,
    caller: CallerIdentity,
    payload: dict[str, Any],
    *,
    version: VersionInput | None = None,
    storage: Storage | None = None,
    control_number_prefix: str = "DOC",
    today: date | None = None,
) -> Document:
    ensure_can_write(caller)
    title = clean_str(payload.get("title"))
    type_code = clean_str(payload.get("document_type_code")).upper()
    if not type_code:
        raise ValidationError("document_type_code is required.", field="document_type_code")
    if not title:
        raise ValidationError("title is required.", field="title")

    origin = clean_str(payload.get("origin")).lower() or "manual"
    if origin not in ORIGINS:
        raise ValidationError(f"origin must be one of {', '.join(ORIGINS)}.", field="origin")

    effective = _date_field(payload, "effective_date")
    expiry = _date_field(payload, "expiry_date")
    next_review = _date_field(payload, "next_review_date")
    if next_review is None:
        next_review = add_months(effective or today or date.today(), DEFAULT_REVIEW_INTERVAL_MONTHS)

    control_number = clean_str(payload.get("control_number"))
    if control_number:
        if control_number_exists(s, caller.tenant_id, control_number):
            raise ConflictError(f"Control number {control_number!r} already exists.", field="control_number")
    else:
        control_number = next_control_number(s, caller.tenant_id, type_code, prefix=control_number_prefix)

    folder_id = payload.get("folder_id")
    try:
        folder_id = int(folder_id) if folder_id not in (None, "") else None
    except (TypeError, ValueError) as e:
        raise ValidationError("folder_id must be an integer.", field="folder_id") from e

    related_ids = _int_list(payload.get("related_document_ids"), "related_document_ids")
    if related_ids:
        _ensure_same_tenant(s, caller.tenant_id, related_ids)

    vi = version or VersionInput()
    now = utcnow()
    d = Document(
        tenant_id=caller.tenant_id,
        control_number=control_number,
        control_number_key=normalize_control_number(control_number),
        title=title,
        description=clean_str(payload.get("description")) or None,
        document_type_code=type_code,
        status="draft",
        current_version=1,
        folder_id=folder_id,
        origin=origin,
        elements=[],
        tags=clean_str_list(payload.get("tags")),
        keywords=clean_str_list(payload.get("keywords")),
        related_document_ids=related_ids,
        effective_date=effective,
        expiry_date=expiry,
        next_review_date=next_review,
        extracted_text=(vi.extracted_text or "").strip() or None,
        created_by=caller.user_id,
        created_at=now,
        updated_at=now,
    )
    try:
        with s.begin_nested():
            s.add(d)
            s.flush()
    except IntegrityError as e:
        # Lost a race with a concurrent insert of the same control number.
        raise ConflictError(f"Control number {control_number!r} already exists.", field="control_number") from e

    _new_version(s, caller, d, 1, vi, storage)
    s.flush()

    record_event(
        s,
        actor=caller,
        action="doc.create",
        entity_type="Document",
        entity_id=str(d.id),
        metadata={"control_number": d.control_number, "document_type_code": d.document_type_code},
    )
    return d


def add_version(
    s: Session,
    caller: CallerIdentity,
    document_id: int,
    version_input: VersionInput,
    *,
    storage: Storage | None = None,
) -> DocumentVersion:
    ensure_can_write(caller)
    d = get_document_for_update(s, caller, document_id)
    if d.status == "obsolete":
        raise ValidationError("Obsolete documents cannot receive new versions.", field="document_id")

    number = (d.current_version or 0) + 1
    v = _new_version(s, caller, d, number, version_input, storage)
    d.current_version = number
    d.extracted_text = v.extracted_text
    d.updated_at = utcnow()
    s.flush()

    record_event(
        s,
        actor=caller,
        action="doc.version",
        entity_type="Document",
        entity_id=str(d.id),
        metadata={"version": number, "has_text": bool(v.extracted_text), "sha256": v.sha256},
    )
    return v


def set_status(
    s: Session, caller: CallerIdentity, document_id: int, new_status: str, *, reason: str | None = None
) -> Document:
    ensure_can_write(caller)
    new_status = clean_str(new_status).lower()
    if new_status not in DOCUMENT_STATUSES:
        raise ValidationError(f"Unknown status {new_status!r}.", field="status")

    d = get_document_for_update(s, caller, document_id)
    old = d.status
    if not can_transition(old, new_status):
        raise InvalidTransitionError(old, new_status)

    d.status = new_status
    d.updated_at = utcnow()
    s.flush()
    record_event(
        s,
        actor=caller,
        action="doc.status",
        entity_type="Document",
        entity_id=str(d.id),
        reason=reason,
        metadata={"from": old, "to": new_status},
    )
    return d


def supersede(
    s: Session, caller: CallerIdentity, old_control_number: str, new_control_number: str
) -> tuple[Document, Document]:
    """Point old -> new and new -> old. Both documents are loaded before either is touched."""
    ensure_can_write(caller)
    old_key = normalize_control_number(old_control_number)
    new_key = normalize_control_number(new_control_number)
    if not old_key:
        raise ValidationError("old_control_number is required.", field="old_control_number")
    if not new_key:
        raise ValidationError("new_control_number is required.", field="new_control_number")
    if old_key == new_key:
        raise ValidationError("A document cannot supersede itself.", field="new_control_number")

    rows = (
        _tenant_documents(s, caller.tenant_id)
        .filter(Document.control_number_key.in_([old_key, new_key]))
        .with_for_update()
        .all()
    )
    by_key = {r.control_number_key: r for r in rows}
    old = by_key.get(old_key)
    new = by_key.get(new_key)
    if old is None:
        raise NotFoundError(f"Document {old_control_number!r} not found.", field="old_control_number")
    if new is None:
        raise NotFoundError(f"Document {new_control_number!r} not found.", field="new_control_number")

    now = utcnow()
    old.superseded_by_control_number = new.control_number
    new.supersedes_control_number = old.control_number
    old.updated_at = now
    new.updated_at = now
    s.flush()

    record_event(
        s,
        actor=caller,
        action="doc.supersede",
        entity_type="Document",
        entity_id=str(old.id),
        metadata={"old": old.control_number, "new": new.control_number},
    )
    return (old, new)


def _ensure_same_tenant(s: Session, tenant_id: str, ids: list[int]) -> None:
    found = {
        r[0]
        for r in s.execute(select(Document.id).where(Document.tenant_id == tenant_id, Document.id.in_(ids))).all()
    }
    missing = [i for i in ids if i not in found]
    if missing:
        raise ValidationError(f"Unknown related document ids: {missing}.", field="related_document_ids")


def set_related_documents(s: Session, caller: CallerIdentity, document_id: int, ids: Any) -> Document:
    ensure_can_write(caller)
    d = get_document_for_update(s, caller, document_id)
    related = _int_list(ids, "related_document_ids")
    if d.id in related:
        raise ValidationError("A document cannot reference itself.", field="related_document_ids")
    if related:
        _ensure_same_tenant(s, caller.tenant_id, related)

    before = list(d.related_document_ids or [])
    d.related_document_ids = related
    d.updated_at = utcnow()
    s.flush()
    record_event(
        s,
        actor=caller,
        action="doc.related",
        entity_type="Document",
        entity_id=str(d.id),
        metadata={"before": before, "after": related},
    )
    return d


# Control-number resolution: strategies are tried in order; None means "try the next one".
ControlNumberLookup = Callable[[Session, str, str], "Document | None"]


def _lookup_exact(s: Session, tenant_id: str, control_number: str) -> Document | None:
    return (
        _tenant_documents(s, tenant_id)
        .filter(Document.control_number == control_number, Document.status.in_(EVIDENCE_STATUSES))
        .first()
    )


def _lookup_normalized(s: Session, tenant_id: str, control_number: str) -> Document | None:
    return (
        _tenant_documents(s, tenant_id)
        .filter(
            Document.control_number_key == normalize_control_number(control_number),
            Document.status.in_(EVIDENCE_STATUSES),
        )
        .first()
    )


CONTROL_NUMBER_LOOKUPS: tuple[tuple[str, ControlNumberLookup], ...] = (
    ("exact", _lookup_exact),
    ("normalized", _lookup_normalized),
)


def resolve_control_number(s: Session, tenant_id: str, control_number: str) -> Document | None:
    misses: list[str] = []
    for name, lookup in CONTROL_NUMBER_LOOKUPS:
        d = lookup(s, tenant_id, control_number)
        if d is not None:
            return d
        misses.append(name)
    logger.debug("Control number %s unresolved (tried: %s)", control_number, ", ".join(misses))
    return None


def find_related(s: Session, caller: CallerIdentity, document_id: int) -> dict[str, list[dict]]:
    """
    Related documents in four disjoint lists: references, referenced_by,
    supersedes, superseded_by. References include control numbers mentioned
    in the document text when they resolve to a current document.
    """
    d = get_document(s, caller, document_id)
    tenant = caller.tenant_id
    taken: set[int] = {d.id}

    supersedes: list[Document] = []
    if d.supersedes_control_number:
        prev = (
            _tenant_documents(s, tenant)
            .filter(Document.control_number_key == normalize_control_number(d.supersedes_control_number))
            .one_or_none()
        )
        if prev is not None and prev.id not in taken:
            supersedes.append(prev)
            taken.add(prev.id)

    superseded_by: list[Document] = []
    if d.superseded_by_control_number:
        nxt = (
            _tenant_documents(s, tenant)
            .filter(Document.control_number_key == normalize_control_number(d.superseded_by_control_number))
            .one_or_none()
        )
        if nxt is not None and nxt.id not in taken:
            superseded_by.append(nxt)
            taken.add(nxt.id)

    references: list[Document] = []
    explicit_ids = [i for i in (d.related_document_ids or []) if i not in taken]
    if explicit_ids:
        rows = (
            _tenant_documents(s, tenant)
            .filter(Document.id.in_(explicit_ids), Document.status.in_(EVIDENCE_STATUSES))
            .all()
        )
        by_id = {r.id: r for r in rows}
        for i in explicit_ids:
            if i in by_id and i not in taken:
                references.append(by_id[i])
                taken.add(i)

    # Identifier pass over the current text; bounded to the first few distinct matches.
    self_key = d.control_number_key
    mentioned = [cn for cn in extract_control_numbers(d.extracted_text) if normalize_control_number(cn) != self_key]
    for cn in mentioned[:MAX_RESOLVED_REFERENCES]:
        hit = resolve_control_number(s, tenant, cn)
        if hit is not None and hit.id not in taken:
            references.append(hit)
            taken.add(hit.id)

    referenced_by: list[Document] = []
    candidates = (
        _tenant_documents(s, tenant)
        .filter(Document.id != d.id, Document.status.in_(EVIDENCE_STATUSES))
        .order_by(Document.id.asc())
        .all()
    )
    for c in candidates:
        if d.id in (c.related_document_ids or []) and c.id not in taken:
            referenced_by.append(c)
            taken.add(c.id)

    return {
        "references": [x.to_ref() for x in references],
        "referenced_by": [x.to_ref() for x in referenced_by],
        "supersedes": [x.to_ref() for x in supersedes],
        "superseded_by": [x.to_ref() for x in superseded_by],
    }


def list_due_for_review(
    s: Session, caller: CallerIdentity, days_ahead: int, *, today: date | None = None
) -> list[Document]:
    ensure_can_read(caller)
    if days_ahead < 0:
        raise ValidationError("days_ahead must not be negative.", field="days_ahead")
    start = today or date.today()
    end = start + timedelta(days=days_ahead)
    return (
        _tenant_documents(s, caller.tenant_id)
        .filter(
            Document.status.in_(EVIDENCE_STATUSES),
            Document.next_review_date.is_not(None),
            Document.next_review_date >= start,
            Document.next_review_date <= end,
        )
        .order_by(Document.next_review_date.asc(), Document.id.asc())
        .all()
    )


def list_documents(
    s: Session,
    caller: CallerIdentity,
    *,
    q: str | None = None,
    status: str | None = None,
    document_type_code: str | None = None,
    element: int | None = None,
    folder_id: int | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Document], int]:
    """Filtered page of documents plus the total count. Plain substring filters; no ranking."""
    ensure_can_read(caller)
    query = _tenant_documents(s, caller.tenant_id)
    if status:
        if status not in DOCUMENT_STATUSES:
            raise ValidationError(f"Unknown status {status!r}.", field="status")
        query = query.filter(Document.status == status)
    if document_type_code:
        query = query.filter(Document.document_type_code == document_type_code.strip().upper())
    if folder_id is not None:
        query = query.filter(Document.folder_id == folder_id)
    if element is not None:
        if element not in ELEMENT_NUMBERS:
            raise ValidationError("element must be between 1 and 14.", field="element")
        linked = select(AuditElementLink.document_id).where(
            AuditElementLink.tenant_id == caller.tenant_id,
            AuditElementLink.element_number == element,
        )
        query = query.filter(Document.id.in_(linked))
    term = clean_str(q).lower()
    if term:
        like = f"%{term}%"
        query = query.filter(
            or_(func.lower(Document.title).like(like), Document.control_number_key.like(like.upper()))
        )

    limit = max(1, min(int(limit), MAX_PAGE_SIZE))
    offset = max(0, int(offset))
    total = query.count()
    rows = query.order_by(Document.control_number_key.asc()).offset(offset).limit(limit).all()
    return (rows, total)


def search_documents(s: Session, caller: CallerIdentity, q: str, **filters: Any) -> tuple[list[Document], int]:
    if not clean_str(q):
        raise ValidationError("q is required.", field="q")
    return list_documents(s, caller, q=q, **filters)


def record_view(s: Session, caller: CallerIdentity, document: Document) -> None:
    """Bump view counters. Never fails the read it is attached to."""
    try:
        with s.begin_nested():
            s.execute(
                update(Document)
                .where(Document.id == document.id, Document.tenant_id == caller.tenant_id)
                .values(view_count=Document.view_count + 1, last_viewed_at=utcnow())
            )
    except SQLAlchemyError as e:
        logger.warning("View tracking failed for document_id=%s: %s", document.id, e)
