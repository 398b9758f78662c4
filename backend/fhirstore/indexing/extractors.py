"""Default search index extractors for common FHIR resource types.

Pure functions that pull search parameter values and references out of
FHIR JSON. Values are stored as strings so that search can compare them
by equality against the JSON index.
"""

from fhirstore.indexing.registry import FieldExtractor, SearchIndexConfig, SearchIndexRegistry
from fhirstore.utils.fhir_helpers import (
    extract_clinical_status,
    extract_first_coding,
    extract_human_name,
    get_actor_reference,
    get_reference,
)


def _string(data: dict, key: str) -> str | None:
    value = data.get(key)
    return value if isinstance(value, str) else None


def extract_identifier(data: dict) -> str | None:
    """First identifier value."""
    identifiers = data.get("identifier")
    if isinstance(identifiers, list) and identifiers and isinstance(identifiers[0], dict):
        return _string(identifiers[0], "value")
    return None


def extract_family(data: dict) -> str | None:
    names = data.get("name")
    if isinstance(names, list) and names and isinstance(names[0], dict):
        return _string(names[0], "family")
    return None


def extract_code(data: dict) -> str | None:
    """First coding code of resource.code."""
    return _string(extract_first_coding(data.get("code")), "code")


def extract_status(data: dict) -> str | None:
    return _string(data, "status")


def _reference(field: str):
    def extractor(data: dict) -> str | None:
        return get_reference(data, field)

    return extractor


def _actor(field: str):
    def extractor(data: dict) -> str | None:
        return get_actor_reference(data, field)

    return extractor


def _self_patient(data: dict) -> str | None:
    fhir_id = _string(data, "id")
    return f"Patient/{fhir_id}" if fhir_id else None


def _configs() -> list[SearchIndexConfig]:
    subject = FieldExtractor("subject", _reference("subject"))
    patient = FieldExtractor("patient", _reference("patient"))
    status = FieldExtractor("status", extract_status)
    code = FieldExtractor("code", extract_code)

    return [
        SearchIndexConfig(
            resource_type="Patient",
            extractors=[
                FieldExtractor("identifier", extract_identifier),
                FieldExtractor("name", extract_human_name),
                FieldExtractor("family", extract_family),
                FieldExtractor("gender", lambda d: _string(d, "gender")),
                FieldExtractor("birthdate", lambda d: _string(d, "birthDate")),
            ],
            patient_reference=_self_patient,
            organization_reference=_reference("managingOrganization"),
            practitioner_reference=_reference("generalPractitioner"),
        ),
        SearchIndexConfig(
            resource_type="Observation",
            extractors=[code, subject, status],
            practitioner_reference=_reference("performer"),
        ),
        SearchIndexConfig(
            resource_type="Encounter",
            extractors=[
                subject,
                FieldExtractor("service-provider", _reference("serviceProvider")),
                status,
            ],
            organization_reference=_reference("serviceProvider"),
        ),
        SearchIndexConfig(
            resource_type="MedicationRequest",
            extractors=[subject, FieldExtractor("requester", _reference("requester")), status],
            practitioner_reference=_reference("requester"),
        ),
        SearchIndexConfig(
            resource_type="Condition",
            extractors=[
                subject,
                code,
                FieldExtractor("clinical-status", lambda d: extract_clinical_status(d) or None),
            ],
            practitioner_reference=_reference("asserter"),
        ),
        SearchIndexConfig(
            resource_type="Procedure",
            extractors=[subject, code, status],
            practitioner_reference=_actor("performer"),
        ),
        SearchIndexConfig(
            resource_type="DiagnosticReport",
            extractors=[subject, code, status],
            practitioner_reference=_reference("performer"),
        ),
        SearchIndexConfig(
            resource_type="Immunization",
            extractors=[patient, status],
            practitioner_reference=_actor("performer"),
        ),
        SearchIndexConfig(
            resource_type="AllergyIntolerance",
            extractors=[patient, code],
            practitioner_reference=_reference("recorder"),
        ),
    ]


def register_default_indexes() -> None:
    """Register the built-in index configurations. Safe to call repeatedly."""
    for config in _configs():
        SearchIndexRegistry.register(config)


def default_index_types() -> list[str]:
    return [c.resource_type for c in _configs()]
