from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.compliance.audit import record_event
from app.compliance.constants import ELEMENT_NUMBERS
from app.compliance.errors import ConflictError, ValidationError
from app.compliance.modules.document_control.models import Document
from app.compliance.modules.document_control.service import get_document, get_document_for_update
from app.compliance.modules.evidence_linking.models import AuditElementLink
from app.compliance.modules.evidence_linking.parsers import combine_matches, match_body_text, match_element_rules
from app.compliance.rbac import CallerIdentity, ensure_can_read, ensure_can_write
from app.compliance.utils import utcnow

logger = logging.getLogger(__name__)

MANUAL_CONFIDENCE = 100


def parse_element_number(value: Any, field: str = "element_number") -> int:
    try:
        n = int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError("element_number must be an integer between 1 and 14.", field=field) from e
    if n not in ELEMENT_NUMBERS:
        raise ValidationError("element_number must be between 1 and 14.", field=field)
    return n


def _links_for(s: Session, document_id: int) -> list[AuditElementLink]:
    return (
        s.query(AuditElementLink)
        .filter(AuditElementLink.document_id == document_id)
        .order_by(AuditElementLink.element_number.asc(), AuditElementLink.source.asc())
        .all()
    )


def sync_document_elements(s: Session, d: Document) -> list[int]:
    """Document.elements mirrors the set of linked elements."""
    s.flush()
    rows = s.execute(
        select(AuditElementLink.element_number).where(AuditElementLink.document_id == d.id).distinct()
    ).all()
    elements = sorted({r[0] for r in rows})
    if elements != sorted(d.elements or []):
        d.elements = elements
        d.updated_at = utcnow()
    return elements


def auto_link(
    s: Session, caller: CallerIdentity, document_id: int, extracted_text: str | None = None
) -> list[AuditElementLink]:
    """
    Infer element links from the type code, title and body text.

    Only (document, element) pairs without any existing link are written, so
    repeat calls add nothing and never touch manual links. Returns the new links.
    """
    ensure_can_write(caller)
    d = get_document_for_update(s, caller, document_id)
    text = extracted_text if extracted_text is not None else d.extracted_text

    matches = combine_matches(
        match_element_rules(d.document_type_code, d.title),
        match_body_text(text),
    )
    linked = {link.element_number for link in _links_for(s, d.id)}

    created: list[AuditElementLink] = []
    for m in matches:
        if m.element_number in linked:
            continue
        link = AuditElementLink(
            tenant_id=d.tenant_id,
            document_id=d.id,
            element_number=m.element_number,
            source="auto",
            confidence=m.confidence,
            reason=m.reason,
            created_by=caller.user_id,
        )
        s.add(link)
        created.append(link)
        linked.add(m.element_number)

    sync_document_elements(s, d)
    if created:
        record_event(
            s,
            actor=caller,
            action="link.auto",
            entity_type="Document",
            entity_id=str(d.id),
            metadata={"elements": [x.element_number for x in created]},
        )
    logger.debug("auto_link document_id=%s matches=%s created=%s", d.id, len(matches), len(created))
    return created


def manual_link(
    s: Session,
    caller: CallerIdentity,
    document_id: int,
    element_number: Any,
    *,
    reason: str | None = None,
) -> AuditElementLink:
    """Assert a link (confidence 100). Replaces any auto link for the same pair."""
    ensure_can_write(caller)
    n = parse_element_number(element_number)
    d = get_document_for_update(s, caller, document_id)

    existing = (
        s.query(AuditElementLink)
        .filter(
            AuditElementLink.document_id == d.id,
            AuditElementLink.element_number == n,
            AuditElementLink.source == "manual",
        )
        .one_or_none()
    )
    s.execute(
        delete(AuditElementLink).where(
            AuditElementLink.document_id == d.id,
            AuditElementLink.element_number == n,
            AuditElementLink.source == "auto",
        )
    )
    if existing is not None:
        if reason:
            existing.reason = reason[:128]
        sync_document_elements(s, d)
        return existing

    link = AuditElementLink(
        tenant_id=d.tenant_id,
        document_id=d.id,
        element_number=n,
        source="manual",
        confidence=MANUAL_CONFIDENCE,
        reason=(reason or "")[:128] or None,
        created_by=caller.user_id,
    )
    try:
        with s.begin_nested():
            s.add(link)
            s.flush()
    except IntegrityError as e:
        raise ConflictError(
            f"Element {n} is already linked to document {d.id}.", field="element_number"
        ) from e

    sync_document_elements(s, d)
    record_event(
        s,
        actor=caller,
        action="link.manual",
        entity_type="Document",
        entity_id=str(d.id),
        reason=reason,
        metadata={"element_number": n},
    )
    return link


def unlink(s: Session, caller: CallerIdentity, document_id: int, element_number: Any) -> int:
    """Remove every link (manual and auto) for the pair. Returns rows removed."""
    ensure_can_write(caller)
    n = parse_element_number(element_number)
    d = get_document_for_update(s, caller, document_id)
    res = s.execute(
        delete(AuditElementLink).where(
            AuditElementLink.document_id == d.id,
            AuditElementLink.element_number == n,
        )
    )
    removed = int(res.rowcount or 0)
    sync_document_elements(s, d)
    record_event(
        s,
        actor=caller,
        action="link.unlink",
        entity_type="Document",
        entity_id=str(d.id),
        metadata={"element_number": n, "removed": removed},
    )
    return removed


def list_links(s: Session, caller: CallerIdentity, document_id: int) -> list[AuditElementLink]:
    ensure_can_read(caller)
    d = get_document(s, caller, document_id)
    return _links_for(s, d.id)
