"""
Evidence registry core tables.

ISO 45001 / COR alignment (lightweight):
- Controlled documents have a lifecycle (draft/active/approved/under_review/archived/obsolete)
- Versions are immutable snapshots (new uploads create a new version)
- Meaningful actions are recorded to the append-only audit trail, scoped per tenant
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.compliance.utils import utcnow


class Base(DeclarativeBase):
    pass


class AuditEvent(Base):
    """
    Append-only audit trail event.
    Keep this table intentionally generic; module tables refer to it by entity type/id.
    """

    __tablename__ = "audit_events"
    __table_args__ = (
        Index("idx_audit_events_tenant_created", "tenant_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    actor_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String(32), nullable=True)

    action: Mapped[str] = mapped_column(String(128), nullable=False)  # e.g. "doc.create"
    entity_type: Mapped[str | None] = mapped_column(String(128), nullable=True)  # e.g. "Document"
    entity_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)  # small JSON string


# Ensure module models are imported so Base.metadata includes their tables.
# (Kept at bottom to avoid circular imports.)
from app.compliance.modules.document_control.models import (  # noqa: E402,F401
    ControlNumberSequence,
    Document,
    DocumentVersion,
)
from app.compliance.modules.evidence_linking.models import AuditElementLink  # noqa: E402,F401
from app.compliance.modules.evidence_scoring.models import EvidenceSubmission  # noqa: E402,F401
from app.compliance.modules.review_scheduling.models import Distribution  # noqa: E402,F401
from app.compliance.modules.audit_sync.models import AuditSyncRun, EvidenceMapping  # noqa: E402,F401
