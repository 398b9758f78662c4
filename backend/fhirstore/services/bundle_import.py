"""Bundle importer.

Reconciles each entry of an incoming Bundle with stored state according
to an import strategy. Entries are processed independently: a failure is
recorded in the report and does not roll back other entries.
"""

import asyncio
import logging
import uuid
from typing import Any

from fhirstore.errors import FhirError, FhirValidationError
from fhirstore.models.fhir import utcnow
from fhirstore.repositories.fhir import FhirRepository
from fhirstore.schemas.bundle import (
    ErrorSeverity,
    ImportedResource,
    ImportErrorDetail,
    ImportResponse,
    ImportStatus,
    ImportStrategy,
)
from fhirstore.services.validation import ResourceValidator, StructuralResourceValidator
from fhirstore.services.versioning import VersionManager
from fhirstore.utils.fhir_helpers import extract_references, is_local_reference, split_reference

logger = logging.getLogger(__name__)

# Foundation resources first so that later entries can reference them
TYPE_PRIORITY = {
    "Patient": 1,
    "Organization": 2,
    "Practitioner": 3,
    "Location": 4,
    "Encounter": 5,
    "Condition": 6,
    "Observation": 7,
    "Procedure": 8,
    "MedicationRequest": 9,
    "AllergyIntolerance": 10,
    "DocumentReference": 11,
    "Composition": 12,
}
DEFAULT_PRIORITY = 100


def _entry_type(entry: Any) -> str | None:
    if not isinstance(entry, dict):
        return None
    resource = entry.get("resource")
    if isinstance(resource, dict) and isinstance(resource.get("resourceType"), str):
        return resource["resourceType"]
    request = entry.get("request")
    if isinstance(request, dict):
        target = split_reference(request.get("url"))
        if target:
            return target[0]
    return None


def order_entries(entries: list[Any]) -> list[tuple[int, Any]]:
    """Order entries by type priority, keeping bundle order within a type.

    Returns:
        List of (original index, entry) pairs.
    """
    return sorted(
        enumerate(entries),
        key=lambda pair: TYPE_PRIORITY.get(_entry_type(pair[1]) or "", DEFAULT_PRIORITY),
    )


def _bundle_keys(entries: list[Any]) -> set[str]:
    keys = set()
    for entry in entries:
        resource = entry.get("resource") if isinstance(entry, dict) else None
        if isinstance(resource, dict) and resource.get("resourceType") and resource.get("id"):
            keys.add(f"{resource['resourceType']}/{resource['id']}")
    return keys


class _EntryFailure(Exception):
    """Per-entry failure carrying an import error code."""

    def __init__(self, message: str, error_code: str):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class BundleImporter:
    """Imports Bundle entries through the versioning manager."""

    def __init__(
        self,
        repository: FhirRepository,
        validator: ResourceValidator | None = None,
    ):
        self.repository = repository
        self.versions = VersionManager(repository)
        self.validator = validator or StructuralResourceValidator()

    async def import_bundle(
        self,
        bundle: Any,
        strategy: ImportStrategy = ImportStrategy.CREATE_OR_UPDATE,
        validate_resources: bool = True,
    ) -> ImportResponse:
        """Import every entry of a Bundle.

        Args:
            bundle: Parsed Bundle JSON.
            strategy: How entries are reconciled with stored resources.
            validate_resources: Run the validator and reference check first.

        Returns:
            ImportResponse with per-entry outcomes and errors.

        Raises:
            FhirValidationError: If the document is not a Bundle with an
                entry list.
        """
        if not isinstance(bundle, dict) or bundle.get("resourceType") != "Bundle":
            raise FhirValidationError("Request body must be a FHIR Bundle")
        entries = bundle.get("entry")
        if entries is None:
            entries = []
        if not isinstance(entries, list):
            raise FhirValidationError("Bundle entry must be a list")

        report = ImportResponse(
            import_job_id=str(uuid.uuid4()),
            imported_at=utcnow(),
            strategy=strategy,
            total_processed=len(entries),
        )
        logger.info(
            "Starting bundle import %s: %d entries, strategy=%s",
            report.import_job_id,
            len(entries),
            strategy.value,
        )

        bundle_keys = _bundle_keys(entries)
        seen: set[str] = set()

        for index, entry in order_entries(entries):
            await asyncio.sleep(0)
            outcome = await self._import_entry(index, entry, strategy, validate_resources, bundle_keys, seen, report)
            report.imported_resources.append(outcome)

        report.imported_resources.sort(key=lambda r: r.entry_index)
        report.errors.sort(key=lambda e: e.entry_index)
        for outcome in report.imported_resources:
            if outcome.status == ImportStatus.CREATED:
                report.created += 1
            elif outcome.status == ImportStatus.UPDATED:
                report.updated += 1
            elif outcome.status == ImportStatus.DELETED:
                report.deleted += 1
            elif outcome.status == ImportStatus.SKIPPED:
                report.skipped += 1
            else:
                report.failed_to_import += 1
        report.successfully_imported = report.created + report.updated + report.deleted

        logger.info(
            "Completed bundle import %s: created=%d updated=%d deleted=%d skipped=%d failed=%d",
            report.import_job_id,
            report.created,
            report.updated,
            report.deleted,
            report.skipped,
            report.failed_to_import,
        )
        return report

    async def _import_entry(
        self,
        index: int,
        entry: Any,
        strategy: ImportStrategy,
        validate_resources: bool,
        bundle_keys: set[str],
        seen: set[str],
        report: ImportResponse,
    ) -> ImportedResource:
        resource_type = _entry_type(entry) or "Unknown"
        resource = entry.get("resource") if isinstance(entry, dict) else None
        raw_id = resource.get("id") if isinstance(resource, dict) else None
        fhir_id = raw_id if isinstance(raw_id, str) else None

        def fail(message: str, error_code: str) -> ImportedResource:
            report.errors.append(
                ImportErrorDetail(
                    entry_index=index,
                    resource_type=resource_type,
                    original_id=fhir_id,
                    message=message,
                    error_code=error_code,
                )
            )
            logger.warning("Import entry %d (%s) failed: %s", index, resource_type, message)
            return ImportedResource(
                entry_index=index,
                resource_type=resource_type,
                fhir_id=fhir_id,
                composite_key=f"{resource_type}/{fhir_id}" if fhir_id else None,
                status=ImportStatus.FAILED,
                error_message=message,
            )

        method = ""
        if isinstance(entry, dict) and isinstance(entry.get("request"), dict):
            method = str(entry["request"].get("method") or "").upper()

        if method == "DELETE":
            target = split_reference(entry["request"].get("url"))
            if target is None and resource_type != "Unknown" and fhir_id:
                target = (resource_type, fhir_id)
            if target is None:
                return fail("DELETE entry has no resolvable request.url", "INVALID_ENTRY")
            try:
                return await self._delete(index, *target)
            except FhirError as e:
                return fail(e.message, _error_code(e))
            except Exception as e:
                logger.exception("Unexpected error deleting import entry %d (%s)", index, resource_type)
                return fail(str(e) or type(e).__name__, "IMPORT_FAILED")

        if not isinstance(resource, dict) or not isinstance(resource.get("resourceType"), str):
            return fail("Entry has no resource or resourceType", "INVALID_ENTRY")
        if raw_id is not None and fhir_id is None:
            return fail("Resource id must be a string", "VALIDATION_FAILED")

        key = f"{resource_type}/{fhir_id}" if fhir_id else None
        if key is not None:
            if key in seen:
                report.errors.append(
                    ImportErrorDetail(
                        entry_index=index,
                        resource_type=resource_type,
                        original_id=fhir_id,
                        message=f"Duplicate entry for {key}",
                        error_code="DUPLICATE_ENTRY",
                        severity=ErrorSeverity.WARNING,
                    )
                )
                return ImportedResource(
                    entry_index=index,
                    resource_type=resource_type,
                    fhir_id=fhir_id,
                    composite_key=key,
                    status=ImportStatus.SKIPPED,
                    error_message=f"Duplicate entry for {key}",
                )
            seen.add(key)

        try:
            if validate_resources:
                await self._validate(resource, bundle_keys)
            return await self._apply(index, resource_type, fhir_id, resource, strategy)
        except _EntryFailure as e:
            return fail(e.message, e.error_code)
        except FhirError as e:
            return fail(e.message, _error_code(e))
        except Exception as e:
            logger.exception("Unexpected error importing entry %d (%s)", index, resource_type)
            return fail(str(e) or type(e).__name__, "IMPORT_FAILED")

    async def _validate(self, resource: dict[str, Any], bundle_keys: set[str]) -> None:
        result = self.validator.validate(resource)
        if not result.is_valid:
            raise _EntryFailure("; ".join(result.errors), "VALIDATION_FAILED")

        unresolved = []
        for reference in extract_references(resource):
            if is_local_reference(reference):
                continue
            target = split_reference(reference)
            if target is None:
                unresolved.append(reference)
                continue
            target_key = f"{target[0]}/{target[1]}"
            if target_key in bundle_keys or await self.repository.exists(*target):
                continue
            unresolved.append(reference)

        if unresolved:
            raise _EntryFailure(
                f"Unresolved references: {', '.join(unresolved)}",
                "INVALID_REFERENCES",
            )

    async def _apply(
        self,
        index: int,
        resource_type: str,
        fhir_id: str | None,
        resource: dict[str, Any],
        strategy: ImportStrategy,
    ) -> ImportedResource:
        exists = bool(fhir_id) and await self.repository.exists(resource_type, fhir_id)

        if exists:
            if strategy == ImportStrategy.CREATE_ONLY:
                raise _EntryFailure(f"Resource {resource_type}/{fhir_id} already exists", "RESOURCE_EXISTS")
            if strategy == ImportStrategy.SKIP_EXISTING:
                return ImportedResource(
                    entry_index=index,
                    resource_type=resource_type,
                    fhir_id=fhir_id,
                    composite_key=f"{resource_type}/{fhir_id}",
                    status=ImportStatus.SKIPPED,
                )
            record = await self.versions.update(resource_type, fhir_id, resource)
            status = ImportStatus.UPDATED
        else:
            if strategy == ImportStrategy.UPDATE_ONLY:
                raise _EntryFailure(f"Resource {resource_type}/{fhir_id} not found", "RESOURCE_NOT_FOUND")
            record = await self.versions.create(resource_type, resource, fhir_id=fhir_id)
            status = ImportStatus.CREATED

        return ImportedResource(
            entry_index=index,
            resource_type=resource_type,
            fhir_id=record.fhir_id,
            composite_key=record.composite_key,
            status=status,
            version_id=record.version_id,
        )

    async def _delete(self, index: int, resource_type: str, fhir_id: str) -> ImportedResource:
        if not await self.repository.exists(resource_type, fhir_id):
            return ImportedResource(
                entry_index=index,
                resource_type=resource_type,
                fhir_id=fhir_id,
                composite_key=f"{resource_type}/{fhir_id}",
                status=ImportStatus.SKIPPED,
                error_message="Resource not found",
            )
        record = await self.versions.delete(resource_type, fhir_id)
        return ImportedResource(
            entry_index=index,
            resource_type=resource_type,
            fhir_id=fhir_id,
            composite_key=record.composite_key,
            status=ImportStatus.DELETED,
            version_id=record.version_id,
        )


def _error_code(error: FhirError) -> str:
    return {
        "conflict": "VERSION_CONFLICT",
        "not-found": "RESOURCE_NOT_FOUND",
        "invalid": "VALIDATION_FAILED",
    }.get(error.code, "IMPORT_FAILED")
