"""Pydantic schemas for the FHIR resource API.

Response DTOs for single-resource reads and writes, version history and
search results.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class HistoryOperation(str, Enum):
    """Write that produced a history entry."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ResourceResponse(BaseModel):
    """A stored resource version with its record metadata."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    resource_type: str
    fhir_id: str
    version_id: int
    resource_json: dict[str, Any]
    status: str
    composite_key: str
    last_updated: datetime | None = None
    created_at: datetime
    last_modified_at: datetime
    patient_reference: str | None = None
    organization_reference: str | None = None
    practitioner_reference: str | None = None


class CreateResourceResponse(BaseModel):
    fhir_id: str
    version_id: int
    resource_json: dict[str, Any]
    composite_key: str
    created_at: datetime


class UpdateResourceResponse(BaseModel):
    fhir_id: str
    version_id: int
    resource_json: dict[str, Any]
    composite_key: str
    last_modified_at: datetime


class DeleteResourceResponse(BaseModel):
    fhir_id: str
    composite_key: str
    version_id: int
    deleted_at: datetime
    deleted_by: str
    success: bool = True


class ResourceVersion(BaseModel):
    """One entry in a resource's version history."""

    version_id: int
    resource_json: dict[str, Any]
    status: str
    operation: HistoryOperation
    is_current_version: bool
    is_deleted: bool
    created_at: datetime
    last_updated: datetime | None = None
    last_modified_at: datetime
    created_by: str | None = None
    last_modified_by: str | None = None
    deleted_at: datetime | None = None
    deleted_by: str | None = None
    deletion_reason: str | None = None


class PagedResponse(BaseModel):
    total_count: int
    page: int
    page_size: int
    total_pages: int
    has_next_page: bool
    has_previous_page: bool


class HistoryResponse(PagedResponse):
    """Paginated version history, newest first."""

    resource_type: str
    fhir_id: str
    composite_key: str
    versions: list[ResourceVersion] = Field(default_factory=list)


class SearchResponse(PagedResponse):
    """Paginated search results over current versions."""

    resource_type: str
    resources: list[ResourceResponse] = Field(default_factory=list)


def page_info(total: int, page: int, page_size: int) -> dict[str, Any]:
    """Compute the pagination fields shared by paged responses."""
    total_pages = (total + page_size - 1) // page_size if page_size > 0 else 0
    return {
        "total_count": total,
        "page": page,
        "page_size": page_size,
        "total_pages": total_pages,
        "has_next_page": page < total_pages,
        "has_previous_page": page > 1,
    }
