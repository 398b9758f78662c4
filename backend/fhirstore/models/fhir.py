"""SQLAlchemy models for versioned FHIR resources."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from fhirstore.database import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JsonDocument = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")

STATUS_ACTIVE = "active"
STATUS_DELETED = "deleted"
STATUS_ENTERED_IN_ERROR = "entered-in-error"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FhirResource(Base):
    """One immutable version of a FHIR resource.

    Every write appends a row; the row with the highest version_id for a
    (resource_type, fhir_id) pair is the current version. Rows are never
    updated in place once flushed.
    """

    __tablename__ = "fhir_resource_versions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Identifiers
    resource_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    fhir_id: Mapped[str] = mapped_column(String(255), nullable=False)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # The resource document for this version
    resource_json: Mapped[dict[str, Any]] = mapped_column(JsonDocument, nullable=False)

    status: Mapped[str] = mapped_column(String(50), nullable=False, default=STATUS_ACTIVE)
    last_updated: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    fhir_created: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Derived index, regenerated from resource_json on every write
    search_parameters: Mapped[dict[str, Any] | None] = mapped_column(JsonDocument, nullable=True)
    security_labels: Mapped[list[dict[str, Any]] | None] = mapped_column(JsonDocument, nullable=True)
    tags: Mapped[list[dict[str, Any]] | None] = mapped_column(JsonDocument, nullable=True)
    patient_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    organization_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    practitioner_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Audit
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_modified_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_modified_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    deletion_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        # Optimistic concurrency: two writers of the same next version collide here
        UniqueConstraint("resource_type", "fhir_id", "version_id", name="uq_fhir_resource_version"),
        Index("idx_fhir_type_id", "resource_type", "fhir_id"),
        Index("idx_fhir_patient_reference", "patient_reference"),
        Index("idx_fhir_organization_reference", "organization_reference"),
        Index("idx_fhir_practitioner_reference", "practitioner_reference"),
        Index("idx_fhir_last_updated", "last_updated"),
        Index("idx_fhir_search_parameters_gin", "search_parameters", postgresql_using="gin"),
    )

    @property
    def composite_key(self) -> str:
        return f"{self.resource_type}/{self.fhir_id}"

    @property
    def is_active(self) -> bool:
        return (self.status or "").lower() == STATUS_ACTIVE

    @property
    def is_in_error(self) -> bool:
        return (self.status or "").lower() == STATUS_ENTERED_IN_ERROR

    def __repr__(self) -> str:
        return (
            f"<FhirResource(id={self.id}, key={self.resource_type}/{self.fhir_id}, "
            f"version={self.version_id}, status={self.status})>"
        )
