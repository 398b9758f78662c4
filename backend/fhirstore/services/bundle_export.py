"""Bundle assembler for exporting stored resources.

Selects current resource versions, applies the in-memory filters that the
index cannot express (observation coding, patient linkage, per-patient
caps), optionally appends older versions, and renders a FHIR Bundle with
export metadata and statistics.
"""

import asyncio
import copy
import json
import logging
import time
import uuid
from collections import Counter
from datetime import datetime
from typing import Any

from dateutil.relativedelta import relativedelta

from fhirstore.config import settings
from fhirstore.errors import FhirValidationError
from fhirstore.models.fhir import FhirResource, utcnow
from fhirstore.repositories.fhir import FhirRepository
from fhirstore.schemas.bundle import ExportMetadata, ExportRequest, ExportResult, ExportStatistics
from fhirstore.services.validation import is_known_resource_type
from fhirstore.utils.fhir_helpers import extract_references, extract_subject_patient_id, has_coding

logger = logging.getLogger(__name__)


def resolve_date_range(request: ExportRequest, now: datetime) -> tuple[datetime | None, datetime | None]:
    """Compute the last_updated window for an export.

    Explicit start/end dates take precedence over a relative time period.
    Months and years use calendar arithmetic.
    """
    if request.start_date or request.end_date:
        return request.start_date, request.end_date

    if request.time_period and request.time_period_count:
        delta = relativedelta(**{request.time_period: request.time_period_count})
        return now - delta, now

    return None, None


def shape_resource(resource_json: dict[str, Any], request: ExportRequest) -> dict[str, Any]:
    """Copy a resource document, dropping the parts the request excludes."""
    resource = copy.deepcopy(resource_json)
    if not request.include_contained:
        resource.pop("contained", None)
    if not request.include_extensions:
        resource.pop("extension", None)
    if not request.include_meta:
        resource.pop("meta", None)
    return resource


def _references_patient(record: FhirResource, patient_id: str) -> bool:
    if record.resource_type == "Patient":
        return record.fhir_id == patient_id
    return f"Patient/{patient_id}" in extract_references(record.resource_json)


class BundleExporter:
    """Builds export bundles from the repository."""

    def __init__(self, repository: FhirRepository):
        self.repository = repository

    async def export(self, request: ExportRequest) -> ExportResult:
        """Export resources as a FHIR Bundle.

        Args:
            request: Selection, filter and shaping options.

        Returns:
            ExportResult with the bundle, its JSON text, metadata and statistics.

        Raises:
            FhirValidationError: If the requested resource type is unsupported.
        """
        started = time.monotonic()
        timestamp = utcnow()

        if request.resource_type and not is_known_resource_type(request.resource_type):
            raise FhirValidationError(f"Unsupported resource type: {request.resource_type}")

        logger.info(
            "Starting bundle export: type=%s page=%d size=%d",
            request.resource_type or "*",
            request.page,
            request.page_size,
        )

        start_date, end_date = resolve_date_range(request, timestamp)
        records, _total = await self.repository.search(
            resource_type=request.resource_type,
            search_params=request.search_parameters,
            page=request.page,
            page_size=request.page_size,
            sort_by="last_updated",
            sort_direction=request.sort_order,
            patient_reference=request.patient_reference,
            organization_reference=request.organization_reference,
            practitioner_reference=request.practitioner_reference,
            include_deleted=request.include_deleted,
            fhir_ids=request.fhir_ids or None,
            last_updated_from=start_date,
            last_updated_to=end_date,
        )

        selected = await self._filter(records, request)
        history = await self._history(selected, request) if request.include_history else []

        entries = [self._entry(record, request, current=True) for record in selected]
        entries.extend(self._entry(record, request, current=False) for record in history)

        bundle_id = str(uuid.uuid4())
        bundle = {
            "resourceType": "Bundle",
            "id": bundle_id,
            "type": request.bundle_type,
            "timestamp": timestamp.isoformat(),
            "total": len(entries),
            "entry": entries,
        }
        bundle_json = json.dumps(bundle, indent=2)

        breakdown = dict(Counter(record.resource_type for record in selected))
        statistics = ExportStatistics(
            resources_processed=len(records),
            resources_included=len(selected),
            resources_excluded=len(records) - len(selected),
            history_versions_included=len(history),
            deleted_resources_included=sum(1 for record in selected if record.is_deleted),
            patients_included=breakdown.get("Patient", 0),
            resource_type_counts=breakdown,
        )
        duration_ms = int((time.monotonic() - started) * 1000)
        metadata = ExportMetadata(
            bundle_id=bundle_id,
            bundle_type=request.bundle_type,
            format=request.format,
            total_resources=len(entries),
            resource_types_count=len(breakdown),
            resource_type_breakdown=breakdown,
            export_timestamp=timestamp,
            export_duration_ms=duration_ms,
            bundle_size_bytes=len(bundle_json.encode("utf-8")),
        )

        logger.info("Completed bundle export: %d entries in %dms", len(entries), duration_ms)
        return ExportResult(bundle=bundle, bundle_json=bundle_json, metadata=metadata, statistics=statistics)

    async def _filter(self, records: list[FhirResource], request: ExportRequest) -> list[FhirResource]:
        """Apply coding, patient and per-patient cap filters in order."""
        filter_coding = bool(request.observation_code or request.observation_system)
        per_patient: Counter[str] = Counter()
        selected = []

        for record in records:
            await asyncio.sleep(0)

            if filter_coding:
                if record.resource_type != "Observation":
                    continue
                if not has_coding(record.resource_json, request.observation_code, request.observation_system):
                    continue

            if request.patient_id and not _references_patient(record, request.patient_id):
                continue

            if request.max_observations_per_patient:
                patient_id = extract_subject_patient_id(record.resource_json)
                if patient_id is not None:
                    if per_patient[patient_id] >= request.max_observations_per_patient:
                        continue
                    per_patient[patient_id] += 1

            selected.append(record)

        return selected

    async def _history(self, selected: list[FhirResource], request: ExportRequest) -> list[FhirResource]:
        """Older versions of the first selected resources, newest first."""
        limit = min(request.max_history_versions, settings.max_history_versions)
        versions = []
        for record in selected[: settings.export_history_resource_limit]:
            await asyncio.sleep(0)
            older, _ = await self.repository.get_history(
                record.resource_type,
                record.fhir_id,
                page=1,
                page_size=limit + 1,
                include_deleted=request.include_deleted,
            )
            older = [v for v in older if v.version_id < record.version_id]
            versions.extend(older[:limit])
        return versions

    @staticmethod
    def _entry(record: FhirResource, request: ExportRequest, current: bool) -> dict[str, Any]:
        full_url = record.composite_key
        if not current:
            full_url = f"{full_url}/_history/{record.version_id}"
        return {
            "fullUrl": full_url,
            "resource": shape_resource(record.resource_json, request),
            "search": {"mode": "match"},
        }
