"""create_fhir_resource_versions

Revision ID: 3c1f8e2a9b70
Revises:
Create Date: 2026-10-19 09:12:44.518302

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3c1f8e2a9b70"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the append-only fhir_resource_versions table."""
    op.create_table(
        "fhir_resource_versions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("resource_type", sa.String(100), nullable=False),
        sa.Column("fhir_id", sa.String(255), nullable=False),
        sa.Column("version_id", sa.Integer(), nullable=False),
        sa.Column("resource_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(50), nullable=False),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=True),
        sa.Column("fhir_created", sa.DateTime(timezone=True), nullable=True),
        sa.Column("search_parameters", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("security_labels", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("tags", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("patient_reference", sa.String(255), nullable=True),
        sa.Column("organization_reference", sa.String(255), nullable=True),
        sa.Column("practitioner_reference", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_by", sa.String(255), nullable=True),
        sa.Column("last_modified_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_modified_by", sa.String(255), nullable=True),
        sa.Column("is_deleted", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_by", sa.String(255), nullable=True),
        sa.Column("deletion_reason", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("resource_type", "fhir_id", "version_id", name="uq_fhir_resource_version"),
    )
    op.create_index(
        "ix_fhir_resource_versions_resource_type",
        "fhir_resource_versions",
        ["resource_type"],
        unique=False,
    )
    # Current-version lookups group by (resource_type, fhir_id)
    op.create_index(
        "idx_fhir_type_id",
        "fhir_resource_versions",
        ["resource_type", "fhir_id"],
        unique=False,
    )
    op.create_index(
        "idx_fhir_patient_reference",
        "fhir_resource_versions",
        ["patient_reference"],
        unique=False,
    )
    op.create_index(
        "idx_fhir_organization_reference",
        "fhir_resource_versions",
        ["organization_reference"],
        unique=False,
    )
    op.create_index(
        "idx_fhir_practitioner_reference",
        "fhir_resource_versions",
        ["practitioner_reference"],
        unique=False,
    )
    op.create_index(
        "idx_fhir_last_updated",
        "fhir_resource_versions",
        ["last_updated"],
        unique=False,
    )
    # GIN index for search parameter lookups
    op.create_index(
        "idx_fhir_search_parameters_gin",
        "fhir_resource_versions",
        ["search_parameters"],
        unique=False,
        postgresql_using="gin",
    )


def downgrade() -> None:
    """Drop fhir_resource_versions table."""
    op.drop_index("idx_fhir_search_parameters_gin", table_name="fhir_resource_versions")
    op.drop_index("idx_fhir_last_updated", table_name="fhir_resource_versions")
    op.drop_index("idx_fhir_practitioner_reference", table_name="fhir_resource_versions")
    op.drop_index("idx_fhir_organization_reference", table_name="fhir_resource_versions")
    op.drop_index("idx_fhir_patient_reference", table_name="fhir_resource_versions")
    op.drop_index("idx_fhir_type_id", table_name="fhir_resource_versions")
    op.drop_index("ix_fhir_resource_versions_resource_type", table_name="fhir_resource_versions")
    op.drop_table("fhir_resource_versions")
