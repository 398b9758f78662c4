"""Shared FHIR resource parsing utilities.

Consolidates common FHIR extraction patterns used across the indexer,
exporter and importer. All functions are pure and handle missing/malformed
data gracefully.
"""

import re
from typing import Any

FHIR_ID_PATTERN = re.compile(r"^[A-Za-z0-9\-\.]{1,64}$")


def is_valid_fhir_id(fhir_id: Any) -> bool:
    """Check a logical id against the FHIR id grammar (1-64 chars of [A-Za-z0-9-.])."""
    return isinstance(fhir_id, str) and FHIR_ID_PATTERN.match(fhir_id) is not None


def extract_reference_id(reference: str | None) -> str | None:
    """Extract FHIR ID from a reference string.

    Handles both formats:
    - "urn:uuid:abc-123" -> "abc-123"
    - "Patient/abc-123" -> "abc-123"

    Args:
        reference: FHIR reference string

    Returns:
        Extracted ID or None if reference is empty/None
    """
    if not isinstance(reference, str) or not reference:
        return None

    if reference.startswith("urn:uuid:"):
        return reference[9:]  # len("urn:uuid:")
    elif "/" in reference:
        return reference.split("/")[-1]
    return reference


def split_reference(reference: str | None) -> tuple[str, str] | None:
    """Split a relative "Type/id" reference into its parts.

    Versioned references ("Patient/1/_history/2") resolve to the resource,
    not the version. Absolute URLs, urn: and contained (#) references
    return None.
    """
    if not isinstance(reference, str) or reference.startswith(("#", "urn:", "http://", "https://")):
        return None

    parts = [p for p in reference.split("/") if p]
    if len(parts) < 2:
        return None
    return parts[0], parts[1]


def is_local_reference(reference: str) -> bool:
    """True for references that never point at a stored resource."""
    return reference.startswith(("#", "urn:", "http://", "https://"))


def get_reference(resource: dict[str, Any], field: str) -> str | None:
    """Get `resource[field].reference`, or of the first element if it is a list."""
    value = resource.get(field)
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, dict):
        reference = value.get("reference")
        if isinstance(reference, str) and reference:
            return reference
    return None


def get_actor_reference(resource: dict[str, Any], field: str) -> str | None:
    """Get `resource[field][0].actor.reference` (Procedure/Immunization performers)."""
    value = resource.get(field)
    if isinstance(value, list) and value and isinstance(value[0], dict):
        return get_reference(value[0], "actor")
    return None


def extract_references(node: Any) -> list[str]:
    """Collect every Reference.reference string in a resource tree.

    Walks nested objects and arrays, including contained resources and
    extensions, in document order.
    """
    found: list[str] = []
    if isinstance(node, dict):
        reference = node.get("reference")
        if isinstance(reference, str) and reference:
            found.append(reference)
        for key, value in node.items():
            if key != "reference":
                found.extend(extract_references(value))
    elif isinstance(node, list):
        for item in node:
            found.extend(extract_references(item))
    return found


def extract_first_coding(codeable_concept: Any) -> dict[str, Any]:
    """Extract first coding from a FHIR CodeableConcept.

    Args:
        codeable_concept: FHIR CodeableConcept structure

    Returns:
        First coding dict or empty dict if none or malformed
    """
    if not isinstance(codeable_concept, dict):
        return {}
    codings = codeable_concept.get("coding")
    if isinstance(codings, list) and codings and isinstance(codings[0], dict):
        return codings[0]
    return {}


def has_coding(resource: dict[str, Any], code: str | None = None, system: str | None = None) -> bool:
    """Check whether resource.code has a coding matching the given code and/or system."""
    concept = resource.get("code")
    codings = concept.get("coding") if isinstance(concept, dict) else None
    if not isinstance(codings, list):
        return False
    for coding in codings:
        if not isinstance(coding, dict):
            continue
        if code is not None and coding.get("code") != code:
            continue
        if system is not None and coding.get("system") != system:
            continue
        return True
    return False


def extract_subject_patient_id(resource: dict[str, Any]) -> str | None:
    """Extract the patient id from `subject.reference` when it points at a Patient."""
    reference = get_reference(resource, "subject")
    if reference and reference.startswith("Patient/"):
        return reference[len("Patient/"):]
    return None


def extract_clinical_status(resource: dict[str, Any]) -> str:
    """Extract clinical status code from FHIR resource.

    Args:
        resource: FHIR resource with clinicalStatus field

    Returns:
        Status code string or empty string
    """
    code = extract_first_coding(resource.get("clinicalStatus")).get("code")
    return code if isinstance(code, str) else ""


def extract_human_name(resource: dict[str, Any]) -> str | None:
    """First HumanName as text, falling back to the first given name."""
    names = resource.get("name")
    if not isinstance(names, list) or not names or not isinstance(names[0], dict):
        return None
    name = names[0]
    if isinstance(name.get("text"), str) and name["text"]:
        return name["text"]
    given = name.get("given")
    if isinstance(given, list) and given and isinstance(given[0], str):
        return given[0]
    return None
