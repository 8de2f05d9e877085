from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.compliance.models import Base
from app.compliance.utils import utcnow

RECORD_TYPES = (
    "form_submission",
    "certification",
    "training_record",
    "maintenance_record",
    "inspection",
    "incident_report",
    "meeting_minutes",
)


class EvidenceSubmission(Base):
    """
    A dated business record tied to one element (a completed form, a training
    sign-off, a maintenance log entry, ...). Feeds the "recent activity" count.
    """

    __tablename__ = "evidence_submissions"
    __table_args__ = (
        CheckConstraint("element_number BETWEEN 1 AND 14", name="ck_evidence_submission_element"),
        Index("idx_evidence_submissions_tenant_element_date", "tenant_id", "element_number", "submitted_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    element_number: Mapped[int] = mapped_column(Integer, nullable=False)
    record_type: Mapped[str] = mapped_column(String(32), nullable=False, default="form_submission")
    source_id: Mapped[str | None] = mapped_column(String(128), nullable=True)  # id in the producing system
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "element_number": self.element_number,
            "record_type": self.record_type,
            "source_id": self.source_id,
            "title": self.title,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
        }
