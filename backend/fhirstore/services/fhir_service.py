"""Command and query handlers for FHIR resources.

Thin orchestration over the versioning manager, search engine, exporter
and importer. Each handler logs the call and maps stored records to
response DTOs.
"""

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from fhirstore.auth import CurrentUser
from fhirstore.errors import FhirValidationError, ResourceNotFoundError
from fhirstore.models.fhir import FhirResource
from fhirstore.repositories.fhir import FhirRepository
from fhirstore.schemas.bundle import ExportRequest, ExportResult, ImportResponse, ImportStrategy
from fhirstore.schemas.fhir import (
    CreateResourceResponse,
    DeleteResourceResponse,
    HistoryOperation,
    HistoryResponse,
    ResourceResponse,
    ResourceVersion,
    SearchResponse,
    UpdateResourceResponse,
    page_info,
)
from fhirstore.services.bundle_export import BundleExporter
from fhirstore.services.bundle_import import BundleImporter
from fhirstore.services.search import SearchEngine, SearchRequest, check_paging
from fhirstore.services.validation import ResourceValidator, StructuralResourceValidator, is_known_resource_type
from fhirstore.services.versioning import VersionManager, check_resource_body

logger = logging.getLogger(__name__)


def to_resource_response(record: FhirResource) -> ResourceResponse:
    return ResourceResponse(
        id=record.id,
        resource_type=record.resource_type,
        fhir_id=record.fhir_id,
        version_id=record.version_id,
        resource_json=record.resource_json,
        status=record.status,
        composite_key=record.composite_key,
        last_updated=record.last_updated,
        created_at=record.created_at,
        last_modified_at=record.last_modified_at,
        patient_reference=record.patient_reference,
        organization_reference=record.organization_reference,
        practitioner_reference=record.practitioner_reference,
    )


def history_operation(record: FhirResource) -> HistoryOperation:
    """Infer which write produced a version."""
    if record.is_deleted:
        return HistoryOperation.DELETE
    if record.version_id == 1:
        return HistoryOperation.CREATE
    # A version written with fhir_created == last_updated re-created a deleted resource
    if record.fhir_created is not None and record.fhir_created == record.last_updated:
        return HistoryOperation.CREATE
    return HistoryOperation.UPDATE


def _require_known_type(resource_type: str) -> None:
    if not is_known_resource_type(resource_type):
        raise FhirValidationError(f"Unsupported resource type: {resource_type}")


class FhirResourceService:
    """Entry point used by the REST routes."""

    def __init__(
        self,
        db: AsyncSession,
        current_user: CurrentUser | None = None,
        validator: ResourceValidator | None = None,
    ):
        self.repository = FhirRepository(db, current_user)
        self.versions = VersionManager(self.repository)
        self.search_engine = SearchEngine(self.repository)
        self.exporter = BundleExporter(self.repository)
        self.validator = validator or StructuralResourceValidator()
        self.importer = BundleImporter(self.repository, self.validator)

    def _validate(self, resource_type: str, resource_json: Any) -> None:
        check_resource_body(resource_type, resource_json)
        result = self.validator.validate(resource_json)
        if not result.is_valid:
            logger.warning("Rejected %s: %s", resource_type, "; ".join(result.errors))
            raise FhirValidationError("Resource validation failed", issues=result.errors)

    async def create(
        self,
        resource_type: str,
        resource_json: dict[str, Any],
        fhir_id: str | None = None,
    ) -> tuple[CreateResourceResponse, FhirResource]:
        logger.info("Creating FHIR resource: %s", resource_type)
        _require_known_type(resource_type)
        self._validate(resource_type, resource_json)
        record = await self.versions.create(resource_type, resource_json, fhir_id=fhir_id)
        response = CreateResourceResponse(
            fhir_id=record.fhir_id,
            version_id=record.version_id,
            resource_json=record.resource_json,
            composite_key=record.composite_key,
            created_at=record.created_at,
        )
        return response, record

    async def update(
        self,
        resource_type: str,
        fhir_id: str,
        resource_json: dict[str, Any],
        expected_version: int | None = None,
    ) -> UpdateResourceResponse:
        logger.info("Updating FHIR resource: %s/%s", resource_type, fhir_id)
        _require_known_type(resource_type)
        self._validate(resource_type, resource_json)
        record = await self.versions.update(resource_type, fhir_id, resource_json, expected_version)
        return UpdateResourceResponse(
            fhir_id=record.fhir_id,
            version_id=record.version_id,
            resource_json=record.resource_json,
            composite_key=record.composite_key,
            last_modified_at=record.last_modified_at,
        )

    async def delete(self, resource_type: str, fhir_id: str, reason: str | None = None) -> DeleteResourceResponse:
        logger.info("Deleting FHIR resource: %s/%s", resource_type, fhir_id)
        _require_known_type(resource_type)
        record = await self.versions.delete(resource_type, fhir_id, reason)
        return DeleteResourceResponse(
            fhir_id=record.fhir_id,
            composite_key=record.composite_key,
            version_id=record.version_id,
            deleted_at=record.deleted_at,
            deleted_by=record.deleted_by or "",
        )

    async def get(self, resource_type: str, fhir_id: str) -> ResourceResponse:
        """Get the current version.

        Raises:
            ResourceNotFoundError: If absent or deleted.
        """
        _require_known_type(resource_type)
        record = await self.repository.get_by_fhir_id(resource_type, fhir_id)
        if record is None:
            raise ResourceNotFoundError(f"Resource {resource_type}/{fhir_id} not found")
        return to_resource_response(record)

    async def get_version(self, resource_type: str, fhir_id: str, version_id: int) -> ResourceResponse:
        """Get a specific version, including deleted ones."""
        _require_known_type(resource_type)
        record = await self.repository.get_by_version(resource_type, fhir_id, version_id)
        if record is None:
            raise ResourceNotFoundError(f"Resource {resource_type}/{fhir_id} version {version_id} not found")
        return to_resource_response(record)

    async def history(
        self,
        resource_type: str,
        fhir_id: str,
        page: int = 1,
        page_size: int = 100,
        include_deleted: bool = True,
    ) -> HistoryResponse:
        """Get the paginated version history.

        Raises:
            ResourceNotFoundError: If the resource has no versions at all.
        """
        _require_known_type(resource_type)
        check_paging(page, page_size)

        latest = await self.repository.get_latest(resource_type, fhir_id)
        if latest is None:
            raise ResourceNotFoundError(f"Resource {resource_type}/{fhir_id} has no history")

        records, total = await self.repository.get_history(
            resource_type, fhir_id, page=page, page_size=page_size, include_deleted=include_deleted
        )
        versions = [
            ResourceVersion(
                version_id=record.version_id,
                resource_json=record.resource_json,
                status=record.status,
                operation=history_operation(record),
                is_current_version=record.version_id == latest.version_id,
                is_deleted=record.is_deleted,
                created_at=record.created_at,
                last_updated=record.last_updated,
                last_modified_at=record.last_modified_at,
                created_by=record.created_by,
                last_modified_by=record.last_modified_by,
                deleted_at=record.deleted_at,
                deleted_by=record.deleted_by,
                deletion_reason=record.deletion_reason,
            )
            for record in records
        ]
        return HistoryResponse(
            resource_type=resource_type,
            fhir_id=fhir_id,
            composite_key=latest.composite_key,
            versions=versions,
            **page_info(total, page, page_size),
        )

    async def search(self, request: SearchRequest) -> SearchResponse:
        result = await self.search_engine.search(request)
        return SearchResponse(
            resource_type=request.resource_type,
            resources=[to_resource_response(record) for record in result.records],
            **page_info(result.total, result.page, result.page_size),
        )

    async def export_bundle(self, request: ExportRequest) -> ExportResult:
        return await self.exporter.export(request)

    async def import_bundle(
        self,
        bundle: Any,
        strategy: ImportStrategy = ImportStrategy.CREATE_OR_UPDATE,
        validate_resources: bool = True,
    ) -> ImportResponse:
        return await self.importer.import_bundle(bundle, strategy=strategy, validate_resources=validate_resources)
