"""Repository layer for data access.

Repositories encapsulate database operations and provide a clean interface
for reading and appending FHIR resource versions.
"""

from fhirstore.repositories.fhir import FhirRepository

__all__ = ["FhirRepository"]
