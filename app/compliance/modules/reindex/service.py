"""
Reindex: re-run text extraction and auto-linking over a tenant's documents.

Runs in keyset-paginated batches. Each document is handled inside its own
savepoint, so one bad file rolls back only that document and is reported in
`errors`; the batch keeps going.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from sqlalchemy.orm import Session

from app.compliance.audit import record_event
from app.compliance.extraction import TextExtractor, extract_text
from app.compliance.modules.document_control.models import Document
from app.compliance.modules.evidence_linking.service import auto_link
from app.compliance.rbac import ADMIN_ROLES, CallerIdentity, ensure_role
from app.compliance.ratelimit import SlidingWindowRateLimiter
from app.compliance.storage import Storage
from app.compliance.utils import clean_str_list

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50


def reindex_key(caller: CallerIdentity) -> str:
    return f"{caller.tenant_id}:{caller.user_id or caller.role}"


def _batches(
    s: Session, tenant_id: str, document_types: list[str], batch_size: int
) -> Iterable[list[Document]]:
    last_id = 0
    while True:
        q = s.query(Document).filter(Document.tenant_id == tenant_id, Document.id > last_id)
        if document_types:
            q = q.filter(Document.document_type_code.in_(document_types))
        batch = q.order_by(Document.id.asc()).limit(batch_size).all()
        if not batch:
            return
        yield batch
        last_id = batch[-1].id


def _reindex_one(
    s: Session, caller: CallerIdentity, d: Document, storage: Storage | None, extractor: TextExtractor
) -> int:
    text = d.extracted_text
    v = d.current
    if v is not None and v.file_reference and storage is not None:
        data = storage.get_bytes(v.file_reference)
        fresh = extractor(data, v.content_type)
        if fresh:
            text = fresh
            d.extracted_text = fresh
    elif v is not None and v.extracted_text and not text:
        text = v.extracted_text
        d.extracted_text = text
    return len(auto_link(s, caller, d.id, text))


def reindex_tenant(
    s: Session,
    caller: CallerIdentity,
    *,
    limiter: SlidingWindowRateLimiter,
    storage: Storage | None = None,
    extractor: TextExtractor = extract_text,
    only_empty: bool = False,
    force: bool = False,
    document_types: Any = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> dict[str, Any]:
    """
    Returns {processed, linked, skipped, errors}. Fails outright only when the
    caller may not run it or has used up its hourly allowance (RateLimitError).
    """
    ensure_role(caller, ADMIN_ROLES)
    limiter.check(reindex_key(caller))

    types = [t.upper() for t in clean_str_list(document_types)]
    batch_size = max(1, int(batch_size))
    processed = 0
    linked = 0
    skipped = 0
    errors: list[dict[str, Any]] = []

    logger.info(
        "REINDEX: start tenant=%s only_empty=%s force=%s types=%s",
        caller.tenant_id,
        only_empty,
        force,
        types or "all",
    )
    for batch in _batches(s, caller.tenant_id, types, batch_size):
        for d in batch:
            if only_empty and d.extracted_text and not force:
                skipped += 1
                continue
            try:
                with s.begin_nested():
                    linked += _reindex_one(s, caller, d, storage, extractor)
                processed += 1
            except Exception as e:
                logger.warning("REINDEX: document_id=%s failed: %s", d.id, e)
                errors.append({"document_id": d.id, "control_number": d.control_number, "error": str(e)})

    summary = {"processed": processed, "linked": linked, "skipped": skipped, "errors": errors}
    record_event(
        s,
        actor=caller,
        action="reindex.run",
        entity_type="Tenant",
        entity_id=caller.tenant_id,
        metadata={**summary, "errors": len(errors)},
    )
    logger.info(
        "REINDEX: done tenant=%s processed=%s linked=%s skipped=%s errors=%s",
        caller.tenant_id,
        processed,
        linked,
        skipped,
        len(errors),
    )
    return summary
