"""Search index registry and configuration.

The index system maps FHIR resource types to the derived fields stored next
to each resource version: a flat search-parameter map plus the denormalized
patient/organization/practitioner references. The canonical resource JSON
stays the source of truth; the index is recomputed from it on every write.
"""

from dataclasses import dataclass, field
from typing import Any, Callable

from fhirstore.utils.fhir_helpers import get_reference

ReferenceExtractor = Callable[[dict], str | None]


@dataclass
class FieldExtractor:
    """Maps a FHIR field to a search parameter name.

    Args:
        target: Search parameter name in the index (e.g. 'code').
        extractor: Function that extracts the value from FHIR JSON.
    """

    target: str
    extractor: Callable[[dict], Any]


@dataclass
class IndexFields:
    """Derived index values for one resource version."""

    search_parameters: dict[str, Any] | None = None
    tags: list[dict[str, Any]] | None = None
    security_labels: list[dict[str, Any]] | None = None
    patient_reference: str | None = None
    organization_reference: str | None = None
    practitioner_reference: str | None = None


def _no_reference(_: dict) -> str | None:
    return None


def _subject_or_patient(data: dict) -> str | None:
    return get_reference(data, "subject") or get_reference(data, "patient")


@dataclass
class SearchIndexConfig:
    """Configuration for a resource type's search index.

    Defines which search parameters and references are extracted from
    FHIR JSON for the given type.
    """

    resource_type: str
    extractors: list[FieldExtractor] = field(default_factory=list)
    patient_reference: ReferenceExtractor = _subject_or_patient
    organization_reference: ReferenceExtractor = _no_reference
    practitioner_reference: ReferenceExtractor = _no_reference

    def extract(self, fhir_data: dict) -> dict[str, Any]:
        """Extract all search parameters from FHIR data.

        Empty values are omitted so that unindexed keys never match.

        Args:
            fhir_data: Raw FHIR resource JSON.

        Returns:
            Dictionary mapping parameter names to extracted values.
        """
        params = {}
        for e in self.extractors:
            value = e.extractor(fhir_data)
            if value not in (None, "", [], {}):
                params[e.target] = value
        return params


# Module-level storage (not class-level to avoid shared mutable state)
_registry_configs: dict[str, SearchIndexConfig] = {}


class SearchIndexRegistry:
    """Registry of search index configurations by resource type."""

    @classmethod
    def register(cls, config: SearchIndexConfig) -> None:
        """Register an index configuration, replacing any previous one.

        Args:
            config: The index configuration to register.
        """
        _registry_configs[config.resource_type] = config

    @classmethod
    def get(cls, resource_type: str) -> SearchIndexConfig | None:
        """Get index configuration for a resource type.

        Args:
            resource_type: FHIR resource type (e.g., 'Observation').

        Returns:
            SearchIndexConfig if registered, None otherwise.
        """
        return _registry_configs.get(resource_type)

    @classmethod
    def has_config(cls, resource_type: str) -> bool:
        return resource_type in _registry_configs

    @classmethod
    def all_configs(cls) -> dict[str, SearchIndexConfig]:
        return _registry_configs.copy()

    @classmethod
    def _clear_for_testing(cls) -> None:
        """Clear all registered configurations. Internal use in tests only."""
        _registry_configs.clear()


def _coding_summaries(codings: Any) -> list[dict[str, Any]] | None:
    if not isinstance(codings, list) or not codings:
        return None
    return [
        {"code": c.get("code"), "display": c.get("display"), "system": c.get("system")}
        for c in codings
        if isinstance(c, dict)
    ] or None


def extract_index(resource: dict[str, Any]) -> IndexFields:
    """Compute the derived index for a resource document.

    Unregistered types fall back to a config with no search parameters that
    still picks up subject/patient references.

    Args:
        resource: FHIR resource JSON.

    Returns:
        IndexFields for the resource.
    """
    resource_type = resource.get("resourceType", "")
    config = SearchIndexRegistry.get(resource_type) or SearchIndexConfig(resource_type=resource_type)

    meta = resource.get("meta") if isinstance(resource.get("meta"), dict) else {}
    search_parameters = config.extract(resource)

    return IndexFields(
        search_parameters=search_parameters or None,
        tags=_coding_summaries(meta.get("tag")),
        security_labels=_coding_summaries(meta.get("security")),
        patient_reference=config.patient_reference(resource),
        organization_reference=config.organization_reference(resource),
        practitioner_reference=config.practitioner_reference(resource),
    )
