"""History and versioning manager.

Owns the version-number rules for writes: create starts at 1 (or continues
past a deleted version), update requires a current version and may be
guarded by an expected version, delete appends a deleted version. Every
write appends; nothing is modified in place.
"""

import logging
import uuid
from typing import Any

from fhirstore.errors import FhirValidationError, ResourceConflictError, ResourceNotFoundError
from fhirstore.models.fhir import STATUS_ACTIVE, STATUS_DELETED, FhirResource, utcnow
from fhirstore.repositories.fhir import FhirRepository, stamp_meta
from fhirstore.services.validation import VALID_STATUSES
from fhirstore.utils.fhir_helpers import is_valid_fhir_id

logger = logging.getLogger(__name__)


def check_resource_body(resource_type: str, resource_json: Any) -> dict[str, Any]:
    """Validate that a request body is a resource of the given type.

    Raises:
        FhirValidationError: If the body is not an object or its
            resourceType does not match, or its id is not a string.
    """
    if not isinstance(resource_json, dict):
        raise FhirValidationError("Resource body must be a JSON object")

    body_type = resource_json.get("resourceType")
    if not body_type:
        raise FhirValidationError("Resource body is missing resourceType")
    if body_type != resource_type:
        raise FhirValidationError(
            f"Resource type mismatch: body is {body_type}, expected {resource_type}"
        )
    if "id" in resource_json and not isinstance(resource_json["id"], str):
        raise FhirValidationError("Resource id must be a string")
    return resource_json


def _check_status(status: str) -> str:
    normalized = status.lower()
    if normalized not in VALID_STATUSES or normalized == STATUS_DELETED:
        raise FhirValidationError(f"Invalid resource status: {status}")
    return normalized


class VersionManager:
    """Applies create/update/delete as appended versions."""

    def __init__(self, repository: FhirRepository):
        self.repository = repository

    async def create(
        self,
        resource_type: str,
        resource_json: dict[str, Any],
        fhir_id: str | None = None,
        status: str = STATUS_ACTIVE,
    ) -> FhirResource:
        """Create a resource.

        The logical id is taken from fhir_id, then the body id, and is
        server-assigned when neither is given. Re-creating a deleted
        resource continues its version sequence.

        Args:
            resource_type: FHIR resource type.
            resource_json: The resource document.
            fhir_id: Explicit logical id.
            status: Record status for the new version.

        Returns:
            The stored version.

        Raises:
            FhirValidationError: If the body or id is malformed.
            ResourceConflictError: If a non-deleted current version exists.
        """
        check_resource_body(resource_type, resource_json)
        status = _check_status(status)

        body_id = resource_json.get("id")
        if fhir_id and body_id and body_id != fhir_id:
            raise FhirValidationError(f"Resource id mismatch: body id {body_id} does not match {fhir_id}")
        fhir_id = fhir_id or body_id or str(uuid.uuid4())
        if not is_valid_fhir_id(fhir_id):
            raise FhirValidationError(f"Invalid FHIR id: {fhir_id}")

        latest = await self.repository.get_latest(resource_type, fhir_id)
        if latest is not None and not latest.is_deleted:
            logger.warning("FHIR resource already exists: %s/%s", resource_type, fhir_id)
            raise ResourceConflictError(f"FHIR resource {resource_type}/{fhir_id} already exists")

        version_id = latest.version_id + 1 if latest is not None else 1
        record = self._build(resource_type, fhir_id, version_id, resource_json, status)
        record.fhir_created = record.last_updated

        saved = await self.repository.save_new_version(record)
        logger.info("Created %s version %d", saved.composite_key, saved.version_id)
        return saved

    async def update(
        self,
        resource_type: str,
        fhir_id: str,
        resource_json: dict[str, Any],
        expected_version: int | None = None,
        status: str | None = None,
    ) -> FhirResource:
        """Update an existing resource by appending the next version.

        Args:
            resource_type: FHIR resource type.
            fhir_id: The FHIR logical id from the request path.
            resource_json: The new resource document.
            expected_version: Version the caller last read (If-Match).
            status: New record status; defaults to the current one.

        Returns:
            The stored version.

        Raises:
            FhirValidationError: If the body is malformed or its id differs.
            ResourceNotFoundError: If there is no current version.
            ResourceConflictError: If expected_version is stale or a
                concurrent writer took the next version.
        """
        check_resource_body(resource_type, resource_json)
        body_id = resource_json.get("id")
        if body_id is not None and body_id != fhir_id:
            raise FhirValidationError(f"Resource id mismatch: body id {body_id} does not match {fhir_id}")

        current = await self.repository.get_by_fhir_id(resource_type, fhir_id)
        if current is None:
            logger.warning("FHIR resource not found: %s/%s", resource_type, fhir_id)
            raise ResourceNotFoundError(f"Resource {resource_type}/{fhir_id} not found")

        if expected_version is not None and expected_version != current.version_id:
            raise ResourceConflictError(
                f"Version conflict: expected version {expected_version}, "
                f"current version is {current.version_id}"
            )

        record = self._build(
            resource_type,
            fhir_id,
            current.version_id + 1,
            resource_json,
            _check_status(status) if status else current.status,
        )
        record.fhir_created = current.fhir_created
        record.created_at = current.created_at
        record.created_by = current.created_by

        saved = await self.repository.save_new_version(record)
        logger.info("Updated %s to version %d", saved.composite_key, saved.version_id)
        return saved

    async def delete(self, resource_type: str, fhir_id: str, reason: str | None = None) -> FhirResource:
        """Soft-delete a resource by appending a deleted version.

        Raises:
            ResourceNotFoundError: If there is no current version.
        """
        deleted = await self.repository.soft_delete(resource_type, fhir_id, reason)
        logger.info("Deleted %s at version %d", deleted.composite_key, deleted.version_id)
        return deleted

    @staticmethod
    def _build(
        resource_type: str,
        fhir_id: str,
        version_id: int,
        resource_json: dict[str, Any],
        status: str,
    ) -> FhirResource:
        now = utcnow()
        document = stamp_meta(resource_json, version_id, now)
        document["id"] = fhir_id
        return FhirResource(
            resource_type=resource_type,
            fhir_id=fhir_id,
            version_id=version_id,
            resource_json=document,
            status=status,
            last_updated=now,
            is_deleted=False,
        )
