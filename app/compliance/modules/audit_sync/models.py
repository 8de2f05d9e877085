from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, Float, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.compliance.models import Base
from app.compliance.utils import utcnow


class EvidenceMapping(Base):
    """Tenant configuration: which external audit question an element/evidence source answers."""

    __tablename__ = "evidence_mappings"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "element_number", "evidence_source", "source_id", name="uq_evidence_mapping_source"
        ),
        CheckConstraint("element_number BETWEEN 1 AND 14", name="ck_evidence_mapping_element"),
        Index("idx_evidence_mappings_tenant_active", "tenant_id", "is_active"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    element_number: Mapped[int] = mapped_column(Integer, nullable=False)
    evidence_source: Mapped[str] = mapped_column(String(32), nullable=False)  # "document" or a submission record type
    source_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    external_question_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    category: Mapped[str | None] = mapped_column(String(128), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "element_number": self.element_number,
            "evidence_source": self.evidence_source,
            "source_id": self.source_id,
            "external_question_id": self.external_question_id,
            "category": self.category,
            "notes": self.notes,
            "is_active": bool(self.is_active),
        }


class AuditSyncRun(Base):
    __tablename__ = "audit_sync_runs"
    __table_args__ = (Index("idx_audit_sync_runs_tenant_ran", "tenant_id", "ran_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    audit_id: Mapped[str] = mapped_column(String(128), nullable=False)
    ran_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    ran_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    succeeded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    errors_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def status(self) -> str:
        if self.failed and not self.succeeded:
            return "failed"
        if self.failed:
            return "partial"
        return "success"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "audit_id": self.audit_id,
            "ran_at": self.ran_at.isoformat() if self.ran_at else None,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "status": self.status,
            "duration_seconds": self.duration_seconds,
        }
