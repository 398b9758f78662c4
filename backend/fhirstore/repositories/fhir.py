"""FHIR resource version repository.

Single entry point for versioned FHIR resource persistence. Every write
appends a new row; the derived search index is recomputed from the
resource document on each append. Reads resolve the current version as
the highest version_id per (resource_type, fhir_id).
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import Select, and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fhirstore.auth import SYSTEM_USER, CurrentUser
from fhirstore.errors import ResourceConflictError, ResourceNotFoundError
from fhirstore.indexing import extract_index
from fhirstore.models.fhir import STATUS_DELETED, FhirResource, utcnow

logger = logging.getLogger(__name__)

# Column names the repository accepts for ordering
SORTABLE_COLUMNS = frozenset({"last_updated", "fhir_id", "version_id", "created_at", "status"})


class FhirRepository:
    """Repository for versioned FHIR resource records.

    Rows are append-only. Writes go through save_new_version or
    soft_delete, both of which stamp audit fields from the current user.
    """

    def __init__(self, db: AsyncSession, current_user: CurrentUser | None = None):
        """Initialize repository with database session.

        Args:
            db: Async SQLAlchemy session.
            current_user: User that writes are attributed to. Defaults to
                the system user.
        """
        self.db = db
        self.current_user = current_user or SYSTEM_USER

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_latest(self, resource_type: str, fhir_id: str) -> FhirResource | None:
        """Get the highest version for a key, deleted or not.

        Args:
            resource_type: FHIR resource type.
            fhir_id: The FHIR logical id.

        Returns:
            FhirResource if any version exists, None otherwise.
        """
        result = await self.db.execute(
            select(FhirResource)
            .where(
                FhirResource.resource_type == resource_type,
                FhirResource.fhir_id == fhir_id,
            )
            .order_by(FhirResource.version_id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_by_fhir_id(self, resource_type: str, fhir_id: str) -> FhirResource | None:
        """Get the current, non-deleted version of a resource.

        Args:
            resource_type: FHIR resource type.
            fhir_id: The FHIR logical id.

        Returns:
            FhirResource if the current version exists and is not deleted,
            None otherwise.
        """
        record = await self.get_latest(resource_type, fhir_id)
        if record is None or record.is_deleted:
            return None
        return record

    async def get_by_version(self, resource_type: str, fhir_id: str, version_id: int) -> FhirResource | None:
        """Get one specific version, including historical and deleted ones."""
        result = await self.db.execute(
            select(FhirResource).where(
                FhirResource.resource_type == resource_type,
                FhirResource.fhir_id == fhir_id,
                FhirResource.version_id == version_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_history(
        self,
        resource_type: str,
        fhir_id: str,
        page: int = 1,
        page_size: int = 100,
        include_deleted: bool = True,
    ) -> tuple[list[FhirResource], int]:
        """Get the version history of a resource, newest first.

        Args:
            resource_type: FHIR resource type.
            fhir_id: The FHIR logical id.
            page: 1-based page number.
            page_size: Versions per page.
            include_deleted: Whether deleted versions are part of the history.

        Returns:
            Tuple of (records for the page, total matching versions).
        """
        conditions = [
            FhirResource.resource_type == resource_type,
            FhirResource.fhir_id == fhir_id,
        ]
        if not include_deleted:
            conditions.append(FhirResource.is_deleted.is_(False))

        count_result = await self.db.execute(
            select(func.count()).select_from(FhirResource).where(*conditions)
        )
        total = count_result.scalar() or 0

        result = await self.db.execute(
            select(FhirResource)
            .where(*conditions)
            .order_by(FhirResource.version_id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), total

    def _current_versions(self, resource_type: str | None = None) -> Select[tuple[FhirResource]]:
        """Build a query selecting only the current version of each key."""
        latest = select(
            FhirResource.resource_type.label("resource_type"),
            FhirResource.fhir_id.label("fhir_id"),
            func.max(FhirResource.version_id).label("max_version"),
        )
        if resource_type:
            latest = latest.where(FhirResource.resource_type == resource_type)
        latest = latest.group_by(FhirResource.resource_type, FhirResource.fhir_id).subquery()

        return select(FhirResource).join(
            latest,
            and_(
                FhirResource.resource_type == latest.c.resource_type,
                FhirResource.fhir_id == latest.c.fhir_id,
                FhirResource.version_id == latest.c.max_version,
            ),
        )

    async def search(
        self,
        resource_type: str | None = None,
        search_params: dict[str, str] | None = None,
        page: int = 1,
        page_size: int = 100,
        sort_by: str = "last_updated",
        sort_direction: str = "desc",
        status: str | None = None,
        patient_reference: str | None = None,
        organization_reference: str | None = None,
        practitioner_reference: str | None = None,
        include_deleted: bool = False,
        fhir_ids: Sequence[str] | None = None,
        last_updated_from: datetime | None = None,
        last_updated_to: datetime | None = None,
    ) -> tuple[list[FhirResource], int]:
        """Search current resource versions.

        Keys in search_params are matched by equality against the derived
        search index, except `_id` which matches the logical id. Records
        that do not index a key never match it.

        Args:
            resource_type: Restrict to one resource type, or None for all.
            search_params: Search parameter name to value.
            page: 1-based page number.
            page_size: Records per page.
            sort_by: Column to order by (see SORTABLE_COLUMNS).
            sort_direction: 'asc' or 'desc'.
            status: Exact record status.
            patient_reference: Exact denormalized patient reference.
            organization_reference: Exact denormalized organization reference.
            practitioner_reference: Exact denormalized practitioner reference.
            include_deleted: Include keys whose current version is deleted.
            fhir_ids: Restrict to these logical ids.
            last_updated_from: Inclusive lower bound on last_updated.
            last_updated_to: Inclusive upper bound on last_updated.

        Returns:
            Tuple of (records for the page, total matching records).
        """
        if sort_by not in SORTABLE_COLUMNS:
            raise ValueError(f"Unsupported sort column: {sort_by}")

        query = self._current_versions(resource_type)
        if resource_type:
            query = query.where(FhirResource.resource_type == resource_type)

        for key, value in (search_params or {}).items():
            if key == "_id":
                query = query.where(FhirResource.fhir_id == value)
            else:
                query = query.where(FhirResource.search_parameters[key].as_string() == value)

        if status:
            query = query.where(FhirResource.status == status)
        if not include_deleted and status != STATUS_DELETED:
            query = query.where(FhirResource.is_deleted.is_(False))

        if patient_reference:
            query = query.where(FhirResource.patient_reference == patient_reference)
        if organization_reference:
            query = query.where(FhirResource.organization_reference == organization_reference)
        if practitioner_reference:
            query = query.where(FhirResource.practitioner_reference == practitioner_reference)

        if fhir_ids is not None:
            query = query.where(FhirResource.fhir_id.in_(list(fhir_ids)))
        if last_updated_from is not None:
            query = query.where(FhirResource.last_updated >= last_updated_from)
        if last_updated_to is not None:
            query = query.where(FhirResource.last_updated <= last_updated_to)

        count_result = await self.db.execute(select(func.count()).select_from(query.subquery()))
        total = count_result.scalar() or 0

        column = getattr(FhirResource, sort_by)
        order = column.asc() if sort_direction == "asc" else column.desc()
        tiebreak = FhirResource.fhir_id.asc() if sort_direction == "asc" else FhirResource.fhir_id.desc()
        query = (
            query.order_by(order, FhirResource.resource_type, tiebreak)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )

        result = await self.db.execute(query)
        records = list(result.scalars().all())
        logger.debug(
            "Search %s params=%s page=%d returned %d of %d",
            resource_type or "*",
            search_params,
            page,
            len(records),
            total,
        )
        return records, total

    async def exists(self, resource_type: str, fhir_id: str) -> bool:
        """True if the resource has a current, non-deleted version."""
        return await self.get_by_fhir_id(resource_type, fhir_id) is not None

    async def count_by_type(self, resource_type: str) -> int:
        """Count current, non-deleted resources of a type."""
        query = self._current_versions(resource_type).where(FhirResource.is_deleted.is_(False))
        result = await self.db.execute(select(func.count()).select_from(query.subquery()))
        return result.scalar() or 0

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _apply_index(self, record: FhirResource) -> None:
        index = extract_index(record.resource_json)
        record.search_parameters = index.search_parameters
        record.tags = index.tags
        record.security_labels = index.security_labels
        record.patient_reference = index.patient_reference
        record.organization_reference = index.organization_reference
        record.practitioner_reference = index.practitioner_reference

    async def save_new_version(self, record: FhirResource) -> FhirResource:
        """Append a new version row.

        The insert runs in a savepoint. If another writer already stored the
        same version number, the unique constraint rejects the row and the
        savepoint is rolled back.

        Args:
            record: Unsaved FhirResource carrying the next version_id.

        Returns:
            The persisted FhirResource.

        Raises:
            ResourceConflictError: If the version already exists.
        """
        now = utcnow()
        user_id = self.current_user.id
        record.created_at = record.created_at or now
        record.created_by = record.created_by or user_id
        record.last_modified_at = now
        record.last_modified_by = user_id
        if record.last_updated is None:
            record.last_updated = now
        self._apply_index(record)

        try:
            async with self.db.begin_nested():
                self.db.add(record)
                await self.db.flush()
        except IntegrityError as e:
            logger.warning(
                "Version collision on %s/%s version %s",
                record.resource_type,
                record.fhir_id,
                record.version_id,
            )
            raise ResourceConflictError(
                f"Version conflict: {record.resource_type}/{record.fhir_id} "
                f"version {record.version_id} already exists"
            ) from e

        logger.debug("Saved %s version %d", record.composite_key, record.version_id)
        return record

    async def soft_delete(
        self,
        resource_type: str,
        fhir_id: str,
        reason: str | None = None,
    ) -> FhirResource:
        """Append a deleted version on top of the current one.

        Args:
            resource_type: FHIR resource type.
            fhir_id: The FHIR logical id.
            reason: Optional deletion reason kept on the deleted version.

        Returns:
            The new deleted-version record.

        Raises:
            ResourceNotFoundError: If there is no current, non-deleted version.
            ResourceConflictError: If a concurrent writer took the next version.
        """
        current = await self.get_by_fhir_id(resource_type, fhir_id)
        if current is None:
            raise ResourceNotFoundError(f"Resource {resource_type}/{fhir_id} not found")

        now = utcnow()
        next_version = current.version_id + 1
        document = stamp_meta(current.resource_json, next_version, now)

        deleted = FhirResource(
            resource_type=resource_type,
            fhir_id=fhir_id,
            version_id=next_version,
            resource_json=document,
            status=STATUS_DELETED,
            last_updated=now,
            fhir_created=current.fhir_created,
            created_at=current.created_at,
            created_by=current.created_by,
            is_deleted=True,
            deleted_at=now,
            deleted_by=self.current_user.id,
            deletion_reason=reason,
        )
        return await self.save_new_version(deleted)


def stamp_meta(resource_json: dict[str, Any], version_id: int, last_updated: datetime) -> dict[str, Any]:
    """Return a copy of the document with meta.versionId and meta.lastUpdated set."""
    document = copy.deepcopy(resource_json)
    meta = document.get("meta")
    if not isinstance(meta, dict):
        meta = {}
    meta["versionId"] = str(version_id)
    meta["lastUpdated"] = last_updated.isoformat()
    document["meta"] = meta
    return document
