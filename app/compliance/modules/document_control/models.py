from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.compliance.models import Base
from app.compliance.utils import utcnow


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (
        # control_number_key is the upper-cased control number: uniqueness is case-insensitive per tenant.
        UniqueConstraint("tenant_id", "control_number_key", name="uq_documents_tenant_control_number"),
        CheckConstraint(
            "status IN ('draft','active','approved','under_review','archived','obsolete')",
            name="ck_documents_status",
        ),
        CheckConstraint("origin IN ('manual','conversion')", name="ck_documents_origin"),
        Index("idx_documents_tenant_status", "tenant_id", "status"),
        Index("idx_documents_tenant_type", "tenant_id", "document_type_code"),
        Index("idx_documents_next_review", "tenant_id", "next_review_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)

    control_number: Mapped[str] = mapped_column(String(64), nullable=False)  # e.g. "NCCI-POL-001"
    control_number_key: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    document_type_code: Mapped[str] = mapped_column(String(32), nullable=False)

    # draft -> active -> approved -> under_review -> (active | archived); any -> obsolete
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")
    current_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    folder_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Authored in-house ("manual") vs produced by the PDF form conversion pipeline ("conversion")
    origin: Mapped[str] = mapped_column(String(16), nullable=False, default="manual")

    elements: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    keywords: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    related_document_ids: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)

    effective_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    next_review_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    supersedes_control_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    superseded_by_control_number: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Text of the current version; refreshed by reindexing
    extracted_text: Mapped[str | None] = mapped_column(Text, nullable=True)

    view_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_viewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    versions: Mapped[list["DocumentVersion"]] = relationship(
        "DocumentVersion",
        back_populates="document",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="DocumentVersion.version_number",
    )

    @property
    def current(self) -> "DocumentVersion | None":
        for v in self.versions:
            if v.version_number == self.current_version:
                return v
        return None

    def to_dict(self, *, include_text: bool = False) -> dict:
        out = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "control_number": self.control_number,
            "title": self.title,
            "description": self.description,
            "document_type_code": self.document_type_code,
            "status": self.status,
            "current_version": self.current_version,
            "folder_id": self.folder_id,
            "origin": self.origin,
            "elements": sorted(self.elements or []),
            "tags": list(self.tags or []),
            "keywords": list(self.keywords or []),
            "related_document_ids": list(self.related_document_ids or []),
            "effective_date": self.effective_date.isoformat() if self.effective_date else None,
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
            "next_review_date": self.next_review_date.isoformat() if self.next_review_date else None,
            "supersedes_control_number": self.supersedes_control_number,
            "superseded_by_control_number": self.superseded_by_control_number,
            "view_count": self.view_count,
            "last_viewed_at": self.last_viewed_at.isoformat() if self.last_viewed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_text:
            out["extracted_text"] = self.extracted_text
        return out

    def to_ref(self) -> dict:
        return {
            "id": self.id,
            "control_number": self.control_number,
            "title": self.title,
            "document_type_code": self.document_type_code,
            "status": self.status,
            "current_version": self.current_version,
        }


class DocumentVersion(Base):
    """Immutable snapshot; a new upload always appends a new row."""

    __tablename__ = "document_versions"
    __table_args__ = (
        UniqueConstraint("document_id", "version_number", name="uq_document_version_number"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)

    file_reference: Mapped[str | None] = mapped_column(String(512), nullable=True)  # storage key
    filename: Mapped[str | None] = mapped_column(String(255), nullable=True)
    content_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)
    size_bytes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    extracted_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    change_summary: Mapped[str | None] = mapped_column(String(512), nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    document: Mapped[Document] = relationship("Document", back_populates="versions", lazy="selectin")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "version_number": self.version_number,
            "file_reference": self.file_reference,
            "filename": self.filename,
            "content_type": self.content_type,
            "sha256": self.sha256,
            "size_bytes": self.size_bytes,
            "has_text": bool(self.extracted_text),
            "change_summary": self.change_summary,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class ControlNumberSequence(Base):
    __tablename__ = "control_number_sequences"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    document_type_code: Mapped[str] = mapped_column(String(32), primary_key=True)
    current_sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
