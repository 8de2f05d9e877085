from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.compliance.models import Base
from app.compliance.utils import utcnow


class Distribution(Base):
    """
    A document routed to one recipient for acknowledgment.
    acknowledged only goes False -> True; reminder_count only grows while unacknowledged.
    """

    __tablename__ = "distributions"
    __table_args__ = (
        UniqueConstraint("document_id", "recipient_id", name="uq_distribution_document_recipient"),
        Index("idx_distributions_tenant_document", "tenant_id", "document_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    recipient_id: Mapped[str] = mapped_column(String(64), nullable=False)

    distributed_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    distributed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    required_by_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    acknowledged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    reminder_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_reminder_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    def to_dict(self, *, today: date | None = None) -> dict:
        from app.compliance.modules.review_scheduling.service import distribution_state

        return {
            "id": self.id,
            "document_id": self.document_id,
            "recipient_id": self.recipient_id,
            "distributed_at": self.distributed_at.isoformat() if self.distributed_at else None,
            "required_by_date": self.required_by_date.isoformat() if self.required_by_date else None,
            "acknowledged": bool(self.acknowledged),
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "reminder_count": self.reminder_count,
            "last_reminder_at": self.last_reminder_at.isoformat() if self.last_reminder_at else None,
            "state": distribution_state(self, today or date.today()),
        }
