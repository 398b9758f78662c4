"""Pydantic schemas for bundle export and import.

These schemas define the export request and result, and the per-entry
import report including reconciliation strategies.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

BUNDLE_TYPES = (
    "document",
    "message",
    "transaction",
    "transaction-response",
    "batch",
    "batch-response",
    "history",
    "searchset",
    "collection",
)


# === Export ===


class ExportRequest(BaseModel):
    """Which resources to export and how to shape the bundle."""

    resource_type: str | None = None
    fhir_ids: list[str] | None = None
    search_parameters: dict[str, str] = Field(default_factory=dict)
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=1000, ge=1, le=10000)
    bundle_type: str = "collection"
    include_history: bool = False
    max_history_versions: int = Field(default=10, ge=1, le=100)
    include_deleted: bool = False
    format: Literal["json"] = "json"

    start_date: datetime | None = None
    end_date: datetime | None = None
    time_period: Literal["days", "weeks", "months", "years"] | None = None
    time_period_count: int | None = Field(default=None, gt=0)

    observation_code: str | None = None
    observation_system: str | None = None
    patient_id: str | None = None
    max_observations_per_patient: int | None = Field(default=None, ge=1, le=1000)
    sort_order: Literal["asc", "desc"] = "desc"

    patient_reference: str | None = None
    organization_reference: str | None = None
    practitioner_reference: str | None = None

    include_contained: bool = True
    include_extensions: bool = True
    include_meta: bool = True

    @field_validator("bundle_type")
    @classmethod
    def _check_bundle_type(cls, value: str) -> str:
        value = value.lower()
        if value not in BUNDLE_TYPES:
            raise ValueError(f"Bundle type must be one of: {', '.join(BUNDLE_TYPES)}")
        return value

    @field_validator("start_date", "end_date")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @field_validator("time_period", mode="before")
    @classmethod
    def _lower_time_period(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _check_dates(self) -> "ExportRequest":
        if self.start_date and self.end_date and self.start_date >= self.end_date:
            raise ValueError("Start date must be before end date")
        return self


class ExportMetadata(BaseModel):
    bundle_id: str
    bundle_type: str
    format: str = "json"
    total_resources: int
    resource_types_count: int
    resource_type_breakdown: dict[str, int] = Field(default_factory=dict)
    export_timestamp: datetime
    export_duration_ms: int
    bundle_size_bytes: int


class ExportStatistics(BaseModel):
    resources_processed: int = 0
    resources_included: int = 0
    resources_excluded: int = 0
    history_versions_included: int = 0
    deleted_resources_included: int = 0
    patients_included: int = 0
    resource_type_counts: dict[str, int] = Field(default_factory=dict)

    def as_headers(self) -> dict[str, str]:
        """Statistics as X-Export-* response headers."""
        return {
            "X-Export-Resources-Processed": str(self.resources_processed),
            "X-Export-Resources-Included": str(self.resources_included),
            "X-Export-Resources-Excluded": str(self.resources_excluded),
            "X-Export-History-Versions": str(self.history_versions_included),
            "X-Export-Deleted-Included": str(self.deleted_resources_included),
            "X-Export-Patients-Included": str(self.patients_included),
        }


class ExportResult(BaseModel):
    bundle: dict[str, Any]
    bundle_json: str
    metadata: ExportMetadata
    statistics: ExportStatistics


# === Import ===


class ImportStrategy(str, Enum):
    """How an incoming entry is reconciled with stored state."""

    CREATE_ONLY = "CreateOnly"
    UPDATE_ONLY = "UpdateOnly"
    SKIP_EXISTING = "SkipExisting"
    CREATE_OR_UPDATE = "CreateOrUpdate"


class ImportStatus(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    SKIPPED = "skipped"
    FAILED = "failed"


class ErrorSeverity(str, Enum):
    INFORMATION = "information"
    WARNING = "warning"
    ERROR = "error"
    FATAL = "fatal"


class ImportedResource(BaseModel):
    """Outcome for one bundle entry."""

    entry_index: int
    resource_type: str
    fhir_id: str | None = None
    composite_key: str | None = None
    status: ImportStatus
    version_id: int | None = None
    error_message: str | None = None


class ImportErrorDetail(BaseModel):
    entry_index: int
    resource_type: str
    original_id: str | None = None
    message: str
    error_code: str
    severity: ErrorSeverity = ErrorSeverity.ERROR


class ImportResponse(BaseModel):
    """Per-bundle import report."""

    import_job_id: str
    imported_at: datetime
    strategy: ImportStrategy
    total_processed: int = 0
    successfully_imported: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    failed_to_import: int = 0
    imported_resources: list[ImportedResource] = Field(default_factory=list)
    errors: list[ImportErrorDetail] = Field(default_factory=list)


def resolve_strategy(
    strategy: ImportStrategy | None = None,
    skip_existing: bool = False,
    update_existing: bool = True,
) -> ImportStrategy:
    """Pick the import strategy, honoring the legacy boolean flags.

    An explicit strategy always wins. Otherwise skip_existing selects
    SkipExisting, update_existing=False selects CreateOnly, and the
    default is CreateOrUpdate.
    """
    if strategy is not None:
        return strategy
    if skip_existing:
        return ImportStrategy.SKIP_EXISTING
    if not update_existing:
        return ImportStrategy.CREATE_ONLY
    return ImportStrategy.CREATE_OR_UPDATE
