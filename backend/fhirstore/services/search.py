"""Search engine over current resource versions.

Validates paging and sorting, maps FHIR-style sort names to record
columns, and delegates the query to the repository.
"""

import logging
from dataclasses import dataclass, field

from fhirstore.config import settings
from fhirstore.errors import FhirValidationError
from fhirstore.models.fhir import FhirResource
from fhirstore.repositories.fhir import FhirRepository
from fhirstore.services.validation import VALID_STATUSES, is_known_resource_type

logger = logging.getLogger(__name__)

# Accepted sort names (case-insensitive) -> record column
SORT_FIELDS = {
    "lastupdated": "last_updated",
    "_lastupdated": "last_updated",
    "_id": "fhir_id",
    "fhirid": "fhir_id",
    "versionid": "version_id",
    "createdat": "created_at",
    "status": "status",
}

SORT_DIRECTIONS = ("asc", "desc")


@dataclass
class SearchRequest:
    resource_type: str
    search_parameters: dict[str, str] = field(default_factory=dict)
    page: int = 1
    page_size: int | None = None
    sort_by: str | None = None
    sort_direction: str = "desc"
    status: str | None = None
    patient_reference: str | None = None
    organization_reference: str | None = None
    practitioner_reference: str | None = None
    include_deleted: bool = False


@dataclass
class SearchResult:
    records: list[FhirResource]
    total: int
    page: int
    page_size: int


def resolve_sort(sort_by: str | None, sort_direction: str | None = "desc") -> tuple[str, str]:
    """Map a sort request to (column, direction).

    A leading '-' on the field name sorts descending and overrides
    sort_direction.

    Raises:
        FhirValidationError: For unknown sort fields or directions.
    """
    direction = (sort_direction or "desc").lower()
    if direction not in SORT_DIRECTIONS:
        raise FhirValidationError(f"Invalid sort direction: {sort_direction}")

    if not sort_by:
        return "last_updated", direction

    name = sort_by.strip()
    if name.startswith("-"):
        name = name[1:]
        direction = "desc"

    column = SORT_FIELDS.get(name.lower())
    if column is None:
        raise FhirValidationError(
            f"Unsupported sort field: {sort_by}",
            issues=["Supported sort fields: lastUpdated, _id, versionId, createdAt, status"],
        )
    return column, direction


def check_paging(page: int, page_size: int) -> None:
    if page < 1:
        raise FhirValidationError("Page number must be greater than 0")
    if page_size < 1 or page_size > settings.max_page_size:
        raise FhirValidationError(f"Page size must be between 1 and {settings.max_page_size}")


class SearchEngine:
    """Filters, sorts and paginates current resource versions."""

    def __init__(self, repository: FhirRepository):
        self.repository = repository

    async def search(self, request: SearchRequest) -> SearchResult:
        """Run a search.

        Args:
            request: The search criteria.

        Returns:
            SearchResult with the page of records and the total match count.

        Raises:
            FhirValidationError: For unknown types, statuses, sort fields
                or out-of-range paging.
        """
        if not is_known_resource_type(request.resource_type):
            raise FhirValidationError(f"Unsupported resource type: {request.resource_type}")

        page_size = request.page_size if request.page_size is not None else settings.default_page_size
        check_paging(request.page, page_size)

        status = request.status.lower() if request.status else None
        if status and status not in VALID_STATUSES:
            raise FhirValidationError(f"Invalid status filter: {request.status}")

        sort_column, sort_direction = resolve_sort(request.sort_by, request.sort_direction)

        records, total = await self.repository.search(
            resource_type=request.resource_type,
            search_params=request.search_parameters,
            page=request.page,
            page_size=page_size,
            sort_by=sort_column,
            sort_direction=sort_direction,
            status=status,
            patient_reference=request.patient_reference,
            organization_reference=request.organization_reference,
            practitioner_reference=request.practitioner_reference,
            include_deleted=request.include_deleted,
        )
        logger.info(
            "Search %s matched %d (page %d, size %d)",
            request.resource_type,
            total,
            request.page,
            page_size,
        )
        return SearchResult(records=records, total=total, page=request.page, page_size=page_size)
