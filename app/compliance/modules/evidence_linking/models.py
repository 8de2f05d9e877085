from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.compliance.models import Base
from app.compliance.utils import utcnow


class AuditElementLink(Base):
    __tablename__ = "audit_element_links"
    __table_args__ = (
        UniqueConstraint("document_id", "element_number", "source", name="uq_element_link_doc_element_source"),
        CheckConstraint("element_number BETWEEN 1 AND 14", name="ck_element_link_element"),
        CheckConstraint("source IN ('manual','auto')", name="ck_element_link_source"),
        CheckConstraint("confidence BETWEEN 0 AND 100", name="ck_element_link_confidence"),
        Index("idx_element_links_tenant_element", "tenant_id", "element_number"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    element_number: Mapped[int] = mapped_column(Integer, nullable=False)

    source: Mapped[str] = mapped_column(String(16), nullable=False)  # manual|auto
    confidence: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    reason: Mapped[str | None] = mapped_column(String(128), nullable=True)  # rule that produced an auto link

    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "element_number": self.element_number,
            "source": self.source,
            "confidence": self.confidence,
            "reason": self.reason,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
