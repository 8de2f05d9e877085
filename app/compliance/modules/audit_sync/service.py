from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from functools import partial
from typing import Any

from sqlalchemy.orm import Session

from app.compliance.audit import record_event
from app.compliance.constants import EVIDENCE_STATUSES
from app.compliance.errors import ValidationError
from app.compliance.modules.audit_sync.client import AuditSyncClient, EvidenceFile, EvidenceItem
from app.compliance.modules.audit_sync.models import AuditSyncRun, EvidenceMapping
from app.compliance.modules.document_control.models import Document, DocumentVersion
from app.compliance.modules.evidence_linking.models import AuditElementLink
from app.compliance.modules.evidence_linking.service import parse_element_number
from app.compliance.modules.evidence_scoring.models import RECORD_TYPES, EvidenceSubmission
from app.compliance.rbac import ADMIN_ROLES, CallerIdentity, ensure_role
from app.compliance.storage import Storage, StorageError
from app.compliance.utils import clean_str, utcnow

logger = logging.getLogger(__name__)

EVIDENCE_SOURCES = ("document",) + RECORD_TYPES


def _parse_bool(v: Any, default: bool = True) -> bool:
    if v is None or v == "":
        return default
    if isinstance(v, bool):
        return v
    return str(v).strip().lower() in ("1", "true", "yes", "on")


def upsert_mapping(s: Session, caller: CallerIdentity, payload: dict[str, Any]) -> EvidenceMapping:
    ensure_role(caller, ADMIN_ROLES)
    n = parse_element_number(payload.get("element_number"))
    source = clean_str(payload.get("evidence_source")).lower()
    if source not in EVIDENCE_SOURCES:
        raise ValidationError(
            f"evidence_source must be one of {', '.join(EVIDENCE_SOURCES)}.", field="evidence_source"
        )
    source_id = clean_str(payload.get("source_id")) or None

    q = s.query(EvidenceMapping).filter(
        EvidenceMapping.tenant_id == caller.tenant_id,
        EvidenceMapping.element_number == n,
        EvidenceMapping.evidence_source == source,
    )
    q = q.filter(EvidenceMapping.source_id.is_(None)) if source_id is None else q.filter(
        EvidenceMapping.source_id == source_id
    )
    m = q.one_or_none()
    created = m is None
    if m is None:
        m = EvidenceMapping(tenant_id=caller.tenant_id, element_number=n, evidence_source=source, source_id=source_id)
        s.add(m)

    m.external_question_id = clean_str(payload.get("external_question_id")) or None
    m.category = clean_str(payload.get("category")) or None
    m.notes = clean_str(payload.get("notes")) or None
    m.is_active = _parse_bool(payload.get("is_active"), default=True)
    m.updated_at = utcnow()
    s.flush()

    record_event(
        s,
        actor=caller,
        action="mapping.upsert",
        entity_type="EvidenceMapping",
        entity_id=str(m.id),
        metadata={"created": created, "element_number": n, "evidence_source": source},
    )
    return m


def list_mappings(s: Session, caller: CallerIdentity, *, active_only: bool = False) -> list[EvidenceMapping]:
    ensure_role(caller, ADMIN_ROLES)
    q = s.query(EvidenceMapping).filter(EvidenceMapping.tenant_id == caller.tenant_id)
    if active_only:
        q = q.filter(EvidenceMapping.is_active.is_(True))
    return q.order_by(EvidenceMapping.element_number.asc(), EvidenceMapping.id.asc()).all()


def _document_file(storage: Storage | None, v: DocumentVersion | None) -> EvidenceFile | None:
    if storage is None or v is None or not v.file_reference:
        return None
    try:
        content = storage.get_bytes(v.file_reference)
    except StorageError as e:
        logger.warning("SYNC: file for version_id=%s unavailable: %s", v.id, e)
        return None
    return EvidenceFile(
        filename=v.filename or "document.bin",
        content=content,
        content_type=v.content_type or "application/octet-stream",
    )


def _document_items(s: Session, tenant_id: str, m: EvidenceMapping, storage: Storage | None) -> list[EvidenceItem]:
    q = s.query(Document).filter(Document.tenant_id == tenant_id, Document.status.in_(EVIDENCE_STATUSES))
    if m.source_id:
        q = q.filter(Document.control_number_key == m.source_id.strip().upper())
    else:
        linked = s.query(AuditElementLink.document_id).filter(
            AuditElementLink.tenant_id == tenant_id,
            AuditElementLink.element_number == m.element_number,
        )
        q = q.filter(Document.id.in_(linked))
    items: list[EvidenceItem] = []
    for d in q.order_by(Document.control_number_key.asc()).all():
        when = d.effective_date or d.updated_at.date()
        items.append(
            EvidenceItem(
                element_number=m.element_number,
                question_id=m.external_question_id or "",
                evidence_type="document",
                title=f"{d.control_number} {d.title}",
                date=when.isoformat(),
                description=d.description,
                load_file=partial(_document_file, storage, d.current) if storage is not None else None,
                metadata={"control_number": d.control_number, "version": d.current_version, "category": m.category},
            )
        )
    return items


def _submission_items(s: Session, tenant_id: str, m: EvidenceMapping) -> list[EvidenceItem]:
    q = s.query(EvidenceSubmission).filter(
        EvidenceSubmission.tenant_id == tenant_id,
        EvidenceSubmission.element_number == m.element_number,
        EvidenceSubmission.record_type == m.evidence_source,
    )
    if m.source_id:
        q = q.filter(EvidenceSubmission.source_id == m.source_id)
    return [
        EvidenceItem(
            element_number=m.element_number,
            question_id=m.external_question_id or "",
            evidence_type=m.evidence_source,
            title=sub.title,
            date=sub.submitted_at.date().isoformat(),
            metadata={"source_id": sub.source_id, "category": m.category},
        )
        for sub in q.order_by(EvidenceSubmission.submitted_at.asc()).all()
    ]


def build_evidence_items(
    s: Session, caller: CallerIdentity, *, storage: Storage | None = None
) -> list[EvidenceItem]:
    """Evidence for every active mapping that points at an external question."""
    mappings = [m for m in list_mappings(s, caller, active_only=True) if m.external_question_id]
    items: list[EvidenceItem] = []
    for m in mappings:
        if m.evidence_source == "document":
            items.extend(_document_items(s, caller.tenant_id, m, storage))
        else:
            items.extend(_submission_items(s, caller.tenant_id, m))
    return items


def run_export(
    s: Session,
    caller: CallerIdentity,
    client: AuditSyncClient,
    audit_id: str,
    *,
    storage: Storage | None = None,
    on_progress: Callable[[int, int], None] | None = None,
) -> tuple[AuditSyncRun, dict[str, Any]]:
    ensure_role(caller, ADMIN_ROLES)
    audit_id = clean_str(audit_id)
    if not audit_id:
        raise ValidationError("audit_id is required.", field="audit_id")

    items = build_evidence_items(s, caller, storage=storage)
    started = time.monotonic()
    result = client.bulk_upload(caller.tenant_id, audit_id, items, on_progress=on_progress)
    elapsed = time.monotonic() - started

    run = AuditSyncRun(
        tenant_id=caller.tenant_id,
        audit_id=audit_id,
        ran_by=caller.user_id,
        total=result["total"],
        succeeded=result["succeeded"],
        failed=result["failed"],
        duration_seconds=round(elapsed, 3),
        errors_json=json.dumps(result["errors"]) if result["errors"] else None,
    )
    s.add(run)
    s.flush()
    record_event(
        s,
        actor=caller,
        action="sync.export",
        entity_type="AuditSyncRun",
        entity_id=str(run.id),
        metadata={"audit_id": audit_id, "total": run.total, "succeeded": run.succeeded, "failed": run.failed},
    )
    return (run, result)


def update_pushed_evidence(
    s: Session, caller: CallerIdentity, client: AuditSyncClient, evidence_id: str, updates: dict[str, Any]
) -> dict[str, Any]:
    ensure_role(caller, ADMIN_ROLES)
    evidence_id = clean_str(evidence_id)
    if not evidence_id:
        raise ValidationError("evidence_id is required.", field="evidence_id")
    result = client.update_evidence(evidence_id, updates)
    record_event(
        s,
        actor=caller,
        action="sync.evidence_update",
        entity_type="ExternalEvidence",
        entity_id=evidence_id,
        metadata={"fields": sorted(updates or {}), "success": result["success"]},
    )
    return result


def delete_pushed_evidence(s: Session, caller: CallerIdentity, client: AuditSyncClient, evidence_id: str) -> None:
    ensure_role(caller, ADMIN_ROLES)
    evidence_id = clean_str(evidence_id)
    if not evidence_id:
        raise ValidationError("evidence_id is required.", field="evidence_id")
    client.delete_evidence(evidence_id)
    record_event(
        s,
        actor=caller,
        action="sync.evidence_delete",
        entity_type="ExternalEvidence",
        entity_id=evidence_id,
    )
