"""Pydantic schemas."""

from fhirstore.schemas.bundle import (
    ErrorSeverity,
    ExportMetadata,
    ExportRequest,
    ExportResult,
    ExportStatistics,
    ImportedResource,
    ImportErrorDetail,
    ImportResponse,
    ImportStatus,
    ImportStrategy,
)
from fhirstore.schemas.fhir import (
    CreateResourceResponse,
    DeleteResourceResponse,
    HistoryOperation,
    HistoryResponse,
    ResourceResponse,
    ResourceVersion,
    SearchResponse,
    UpdateResourceResponse,
)

__all__ = [
    # Resource schemas
    "CreateResourceResponse",
    "DeleteResourceResponse",
    "HistoryOperation",
    "HistoryResponse",
    "ResourceResponse",
    "ResourceVersion",
    "SearchResponse",
    "UpdateResourceResponse",
    # Bundle schemas
    "ErrorSeverity",
    "ExportMetadata",
    "ExportRequest",
    "ExportResult",
    "ExportStatistics",
    "ImportErrorDetail",
    "ImportResponse",
    "ImportStatus",
    "ImportStrategy",
    "ImportedResource",
]
