"""FHIR REST API routes.

Resource-level read/write/history/search endpoints plus the system-level
$import-bundle and $export-bundle operations. The system operations are
declared first so that their paths are not captured by {resource_type}.
"""

import re
from typing import Any

from fastapi import APIRouter, Body, Depends, Header, Query, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from fhirstore.auth import CurrentUser, get_current_user
from fhirstore.config import settings
from fhirstore.database import get_db
from fhirstore.errors import FhirValidationError
from fhirstore.schemas.bundle import ExportRequest, ImportResponse, ImportStrategy, resolve_strategy
from fhirstore.schemas.fhir import (
    CreateResourceResponse,
    HistoryResponse,
    ResourceResponse,
    SearchResponse,
    UpdateResourceResponse,
)
from fhirstore.schemas.outcome import FHIR_JSON
from fhirstore.services.fhir_service import FhirResourceService
from fhirstore.services.search import SearchRequest


class FhirJSONResponse(JSONResponse):
    media_type = FHIR_JSON


router = APIRouter(prefix="/fhir", tags=["fhir"], default_response_class=FhirJSONResponse)

# Query keys consumed by the search endpoint; anything else is a search parameter
SEARCH_CONTROL_PARAMS = {
    "page",
    "_count",
    "_sort",
    "_sortDir",
    "status",
    "patient",
    "organization",
    "practitioner",
    "_includeDeleted",
}

# Query keys consumed by GET $export-bundle
EXPORT_CONTROL_PARAMS = {
    "resourceType",
    "fhirIds",
    "page",
    "_count",
    "bundleType",
    "includeHistory",
    "maxHistoryVersions",
    "includeDeleted",
    "format",
    "patient",
    "organization",
    "practitioner",
    "startDate",
    "endDate",
    "timePeriod",
    "timePeriodCount",
    "observationCode",
    "observationSystem",
    "patientId",
    "maxObservationsPerPatient",
    "sortOrder",
    "includeContained",
    "includeExtensions",
    "includeMeta",
}

_IF_MATCH = re.compile(r'^(?:W/)?"?(\d+)"?$')


def get_service(
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> FhirResourceService:
    return FhirResourceService(db, current_user)


def etag(version_id: int) -> str:
    return f'W/"{version_id}"'


def parse_if_match(value: str | None) -> int | None:
    """Parse an If-Match header (W/"3", "3" or 3) into a version number.

    Raises:
        FhirValidationError: If the header is present but malformed.
    """
    if value is None:
        return None
    match = _IF_MATCH.match(value.strip())
    if not match:
        raise FhirValidationError(f"Malformed If-Match header: {value}")
    return int(match.group(1))


def _extra_params(request: Request, consumed: set[str]) -> dict[str, str]:
    return {key: value for key, value in request.query_params.items() if key not in consumed}


def typed_reference(value: str | None, resource_type: str) -> str | None:
    """Expand a bare id filter ("p1") to a relative reference ("Patient/p1")."""
    if not value or "/" in value:
        return value
    return f"{resource_type}/{value}"


# === System-level operations ===


@router.post("/$import-bundle", response_model=ImportResponse, response_class=JSONResponse)
async def import_bundle(
    bundle: dict[str, Any] = Body(...),
    validate_resources: bool = Query(True, alias="validateResources"),
    skip_existing: bool = Query(False, alias="skipExisting"),
    update_existing: bool = Query(True, alias="updateExisting"),
    strategy: ImportStrategy | None = Query(None),
    service: FhirResourceService = Depends(get_service),
) -> ImportResponse:
    """Import a FHIR Bundle.

    Partial failures are reported per entry in a 200 response; only a
    malformed Bundle is rejected outright.
    """
    return await service.import_bundle(
        bundle,
        strategy=resolve_strategy(strategy, skip_existing, update_existing),
        validate_resources=validate_resources,
    )


@router.get("/$export-bundle")
async def export_bundle_get(
    request: Request,
    resource_type: str | None = Query(None, alias="resourceType"),
    fhir_ids: str | None = Query(None, alias="fhirIds"),
    page: int = Query(1),
    count: int = Query(settings.export_default_page_size, alias="_count"),
    bundle_type: str = Query("collection", alias="bundleType"),
    include_history: bool = Query(False, alias="includeHistory"),
    max_history_versions: int = Query(10, alias="maxHistoryVersions"),
    include_deleted: bool = Query(False, alias="includeDeleted"),
    format: str = Query("json"),
    patient: str | None = Query(None),
    organization: str | None = Query(None),
    practitioner: str | None = Query(None),
    start_date: str | None = Query(None, alias="startDate"),
    end_date: str | None = Query(None, alias="endDate"),
    time_period: str | None = Query(None, alias="timePeriod"),
    time_period_count: int | None = Query(None, alias="timePeriodCount"),
    observation_code: str | None = Query(None, alias="observationCode"),
    observation_system: str | None = Query(None, alias="observationSystem"),
    patient_id: str | None = Query(None, alias="patientId"),
    max_observations_per_patient: int | None = Query(None, alias="maxObservationsPerPatient"),
    sort_order: str = Query("desc", alias="sortOrder"),
    include_contained: bool = Query(True, alias="includeContained"),
    include_extensions: bool = Query(True, alias="includeExtensions"),
    include_meta: bool = Query(True, alias="includeMeta"),
    service: FhirResourceService = Depends(get_service),
) -> Response:
    """Export resources as a Bundle, configured through query parameters."""
    try:
        export_request = ExportRequest(
            resource_type=resource_type,
            fhir_ids=[i.strip() for i in fhir_ids.split(",") if i.strip()] if fhir_ids else None,
            search_parameters=_extra_params(request, EXPORT_CONTROL_PARAMS),
            page=page,
            page_size=count,
            bundle_type=bundle_type,
            include_history=include_history,
            max_history_versions=max_history_versions,
            include_deleted=include_deleted,
            format=format,
            start_date=start_date,
            end_date=end_date,
            time_period=time_period,
            time_period_count=time_period_count,
            observation_code=observation_code,
            observation_system=observation_system,
            patient_id=patient_id,
            max_observations_per_patient=max_observations_per_patient,
            sort_order=sort_order,
            patient_reference=typed_reference(patient, "Patient"),
            organization_reference=typed_reference(organization, "Organization"),
            practitioner_reference=typed_reference(practitioner, "Practitioner"),
            include_contained=include_contained,
            include_extensions=include_extensions,
            include_meta=include_meta,
        )
    except ValidationError as e:
        raise FhirValidationError(
            "Invalid export request",
            issues=[err["msg"] for err in e.errors()],
        ) from e
    return await _export(service, export_request)


@router.post("/$export-bundle")
async def export_bundle_post(
    export_request: ExportRequest,
    service: FhirResourceService = Depends(get_service),
) -> Response:
    """Export resources as a Bundle, configured through a JSON body."""
    return await _export(service, export_request)


async def _export(service: FhirResourceService, export_request: ExportRequest) -> Response:
    result = await service.export_bundle(export_request)
    return Response(
        content=result.bundle_json,
        media_type=FHIR_JSON,
        headers=result.statistics.as_headers(),
    )


# === Resource-level operations ===


@router.get("/{resource_type}", response_model=SearchResponse)
async def search_resources(
    resource_type: str,
    request: Request,
    page: int = Query(1),
    count: int | None = Query(None, alias="_count"),
    sort: str | None = Query(None, alias="_sort"),
    sort_dir: str = Query("desc", alias="_sortDir"),
    status_filter: str | None = Query(None, alias="status"),
    patient: str | None = Query(None),
    organization: str | None = Query(None),
    practitioner: str | None = Query(None),
    include_deleted: bool = Query(False, alias="_includeDeleted"),
    service: FhirResourceService = Depends(get_service),
) -> SearchResponse:
    """Search current versions of a resource type.

    Query keys other than the paging, sorting and reference controls are
    matched against the search index.
    """
    return await service.search(
        SearchRequest(
            resource_type=resource_type,
            search_parameters=_extra_params(request, SEARCH_CONTROL_PARAMS),
            page=page,
            page_size=count,
            sort_by=sort,
            sort_direction=sort_dir,
            status=status_filter,
            patient_reference=typed_reference(patient, "Patient"),
            organization_reference=typed_reference(organization, "Organization"),
            practitioner_reference=typed_reference(practitioner, "Practitioner"),
            include_deleted=include_deleted,
        )
    )


@router.get("/{resource_type}/{fhir_id}", response_model=ResourceResponse)
async def get_resource(
    resource_type: str,
    fhir_id: str,
    response: Response,
    service: FhirResourceService = Depends(get_service),
) -> ResourceResponse:
    """Get the current version of a resource."""
    resource = await service.get(resource_type, fhir_id)
    response.headers["ETag"] = etag(resource.version_id)
    return resource


@router.get("/{resource_type}/{fhir_id}/_history", response_model=HistoryResponse)
async def get_resource_history(
    resource_type: str,
    fhir_id: str,
    page: int = Query(1),
    count: int = Query(settings.default_page_size, alias="_count"),
    include_deleted: bool = Query(True, alias="includeDeleted"),
    service: FhirResourceService = Depends(get_service),
) -> HistoryResponse:
    """Get the version history of a resource, newest first."""
    return await service.history(resource_type, fhir_id, page=page, page_size=count, include_deleted=include_deleted)


@router.get("/{resource_type}/{fhir_id}/_history/{version_id}", response_model=ResourceResponse)
async def get_resource_version(
    resource_type: str,
    fhir_id: str,
    version_id: int,
    response: Response,
    service: FhirResourceService = Depends(get_service),
) -> ResourceResponse:
    """Get one specific version of a resource."""
    resource = await service.get_version(resource_type, fhir_id, version_id)
    response.headers["ETag"] = etag(resource.version_id)
    return resource


@router.post(
    "/{resource_type}",
    response_model=CreateResourceResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_resource(
    resource_type: str,
    response: Response,
    resource: dict[str, Any] = Body(...),
    service: FhirResourceService = Depends(get_service),
) -> CreateResourceResponse:
    """Create a resource. The id is server-assigned when the body has none."""
    created, record = await service.create(resource_type, resource)
    response.headers["Location"] = f"/fhir/{record.resource_type}/{record.fhir_id}"
    response.headers["ETag"] = etag(record.version_id)
    return created


@router.put("/{resource_type}/{fhir_id}", response_model=UpdateResourceResponse)
async def update_resource(
    resource_type: str,
    fhir_id: str,
    response: Response,
    resource: dict[str, Any] = Body(...),
    if_match: str | None = Header(default=None),
    service: FhirResourceService = Depends(get_service),
) -> UpdateResourceResponse:
    """Update a resource, optionally guarded by If-Match."""
    updated = await service.update(resource_type, fhir_id, resource, expected_version=parse_if_match(if_match))
    response.headers["ETag"] = etag(updated.version_id)
    return updated


@router.delete("/{resource_type}/{fhir_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_resource(
    resource_type: str,
    fhir_id: str,
    reason: str | None = Query(None),
    service: FhirResourceService = Depends(get_service),
) -> Response:
    """Soft-delete a resource."""
    await service.delete(resource_type, fhir_id, reason)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
