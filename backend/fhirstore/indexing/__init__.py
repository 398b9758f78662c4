"""Derived search index for stored FHIR resources.

Importing this package registers the default per-type extractors.
"""

from fhirstore.indexing.extractors import register_default_indexes
from fhirstore.indexing.registry import (
    FieldExtractor,
    IndexFields,
    SearchIndexConfig,
    SearchIndexRegistry,
    extract_index,
)

register_default_indexes()

__all__ = [
    "FieldExtractor",
    "IndexFields",
    "SearchIndexConfig",
    "SearchIndexRegistry",
    "extract_index",
    "register_default_indexes",
]
