"""Initial evidence registry schema.

Revision ID: a0c1e2d3b4f5
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "a0c1e2d3b4f5"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("request_id", sa.String(64), nullable=True),
        sa.Column("actor_user_id", sa.String(64), nullable=True),
        sa.Column("actor_role", sa.String(32), nullable=True),
        sa.Column("action", sa.String(128), nullable=False),
        sa.Column("entity_type", sa.String(128), nullable=True),
        sa.Column("entity_id", sa.String(128), nullable=True),
        sa.Column("reason", sa.String(512), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
    )
    op.create_index("idx_audit_events_tenant_created", "audit_events", ["tenant_id", "created_at"])

    op.create_table(
        "documents",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("control_number", sa.String(64), nullable=False),
        sa.Column("control_number_key", sa.String(64), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("document_type_code", sa.String(32), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="draft"),
        sa.Column("current_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("folder_id", sa.Integer(), nullable=True),
        sa.Column("origin", sa.String(16), nullable=False, server_default="manual"),
        sa.Column("elements", sa.JSON(), nullable=False),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("keywords", sa.JSON(), nullable=False),
        sa.Column("related_document_ids", sa.JSON(), nullable=False),
        sa.Column("effective_date", sa.Date(), nullable=True),
        sa.Column("expiry_date", sa.Date(), nullable=True),
        sa.Column("next_review_date", sa.Date(), nullable=True),
        sa.Column("supersedes_control_number", sa.String(64), nullable=True),
        sa.Column("superseded_by_control_number", sa.String(64), nullable=True),
        sa.Column("extracted_text", sa.Text(), nullable=True),
        sa.Column("view_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_viewed_at", sa.DateTime(), nullable=True),
        sa.Column("created_by", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("tenant_id", "control_number_key", name="uq_documents_tenant_control_number"),
        sa.CheckConstraint(
            "status IN ('draft','active','approved','under_review','archived','obsolete')",
            name="ck_documents_status",
        ),
        sa.CheckConstraint("origin IN ('manual','conversion')", name="ck_documents_origin"),
    )
    op.create_index("idx_documents_tenant_status", "documents", ["tenant_id", "status"])
    op.create_index("idx_documents_tenant_type", "documents", ["tenant_id", "document_type_code"])
    op.create_index("idx_documents_next_review", "documents", ["tenant_id", "next_review_date"])

    op.create_table(
        "document_versions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("document_id", sa.Integer(), nullable=False),
        sa.Column("version_number", sa.Integer(), nullable=False),
        sa.Column("file_reference", sa.String(512), nullable=True),
        sa.Column("filename", sa.String(255), nullable=True),
        sa.Column("content_type", sa.String(128), nullable=True),
        sa.Column("sha256", sa.String(64), nullable=True),
        sa.Column("size_bytes", sa.Integer(), nullable=True),
        sa.Column("extracted_text", sa.Text(), nullable=True),
        sa.Column("change_summary", sa.String(512), nullable=True),
        sa.Column("created_by", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["document_id"], ["documents.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("document_id", "version_number", name="uq_document_version_number"),
    )

    op.create_table(
        "control_number_sequences",
        sa.Column("tenant_id", sa.String(64), primary_key=True),
        sa.Column("document_type_code", sa.String(32), primary_key=True),
        sa.Column("current_sequence", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "audit_element_links",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("document_id", sa.Integer(), nullable=False),
        sa.Column("element_number", sa.Integer(), nullable=False),
        sa.Column("source", sa.String(16), nullable=False),
        sa.Column("confidence", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("reason", sa.String(128), nullable=True),
        sa.Column("created_by", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["document_id"], ["documents.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("document_id", "element_number", "source", name="uq_element_link_doc_element_source"),
        sa.CheckConstraint("element_number BETWEEN 1 AND 14", name="ck_element_link_element"),
        sa.CheckConstraint("source IN ('manual','auto')", name="ck_element_link_source"),
        sa.CheckConstraint("confidence BETWEEN 0 AND 100", name="ck_element_link_confidence"),
    )
    op.create_index("idx_element_links_tenant_element", "audit_element_links", ["tenant_id", "element_number"])

    op.create_table(
        "evidence_submissions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("element_number", sa.Integer(), nullable=False),
        sa.Column("record_type", sa.String(32), nullable=False, server_default="form_submission"),
        sa.Column("source_id", sa.String(128), nullable=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("submitted_at", sa.DateTime(), nullable=False),
        sa.Column("created_by", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("element_number BETWEEN 1 AND 14", name="ck_evidence_submission_element"),
    )
    op.create_index(
        "idx_evidence_submissions_tenant_element_date",
        "evidence_submissions",
        ["tenant_id", "element_number", "submitted_at"],
    )

    op.create_table(
        "distributions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("document_id", sa.Integer(), nullable=False),
        sa.Column("recipient_id", sa.String(64), nullable=False),
        sa.Column("distributed_at", sa.DateTime(), nullable=False),
        sa.Column("distributed_by", sa.String(64), nullable=True),
        sa.Column("required_by_date", sa.Date(), nullable=True),
        sa.Column("acknowledged", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("acknowledged_at", sa.DateTime(), nullable=True),
        sa.Column("reminder_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_reminder_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["document_id"], ["documents.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("document_id", "recipient_id", name="uq_distribution_document_recipient"),
    )
    op.create_index("idx_distributions_tenant_document", "distributions", ["tenant_id", "document_id"])

    op.create_table(
        "evidence_mappings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("element_number", sa.Integer(), nullable=False),
        sa.Column("evidence_source", sa.String(32), nullable=False),
        sa.Column("source_id", sa.String(128), nullable=True),
        sa.Column("external_question_id", sa.String(128), nullable=True),
        sa.Column("category", sa.String(128), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "tenant_id", "element_number", "evidence_source", "source_id", name="uq_evidence_mapping_source"
        ),
        sa.CheckConstraint("element_number BETWEEN 1 AND 14", name="ck_evidence_mapping_element"),
    )
    op.create_index("idx_evidence_mappings_tenant_active", "evidence_mappings", ["tenant_id", "is_active"])

    op.create_table(
        "audit_sync_runs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("audit_id", sa.String(128), nullable=False),
        sa.Column("ran_at", sa.DateTime(), nullable=False),
        sa.Column("ran_by", sa.String(64), nullable=True),
        sa.Column("total", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("succeeded", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("duration_seconds", sa.Float(), nullable=True),
        sa.Column("errors_json", sa.Text(), nullable=True),
    )
    op.create_index("idx_audit_sync_runs_tenant_ran", "audit_sync_runs", ["tenant_id", "ran_at"])


def downgrade() -> None:
    op.drop_index("idx_audit_sync_runs_tenant_ran", table_name="audit_sync_runs")
    op.drop_table("audit_sync_runs")
    op.drop_index("idx_evidence_mappings_tenant_active", table_name="evidence_mappings")
    op.drop_table("evidence_mappings")
    op.drop_index("idx_distributions_tenant_document", table_name="distributions")
    op.drop_table("distributions")
    op.drop_index("idx_evidence_submissions_tenant_element_date", table_name="evidence_submissions")
    op.drop_table("evidence_submissions")
    op.drop_index("idx_element_links_tenant_element", table_name="audit_element_links")
    op.drop_table("audit_element_links")
    op.drop_table("control_number_sequences")
    op.drop_table("document_versions")
    op.drop_index("idx_documents_next_review", table_name="documents")
    op.drop_index("idx_documents_tenant_type", table_name="documents")
    op.drop_index("idx_documents_tenant_status", table_name="documents")
    op.drop_table("documents")
    op.drop_index("idx_audit_events_tenant_created", table_name="audit_events")
    op.drop_table("audit_events")
