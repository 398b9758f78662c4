"""SQLAlchemy models."""

from fhirstore.models.fhir import STATUS_ACTIVE, STATUS_DELETED, FhirResource

__all__ = [
    "FhirResource",
    "STATUS_ACTIVE",
    "STATUS_DELETED",
]
