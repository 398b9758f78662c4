"""Resource validation collaborator.

The storage core only needs to know whether a document is acceptable and
why not. StructuralResourceValidator covers the structural checks with a
JSON schema; a full FHIR profile validator can be plugged in through the
ResourceValidator protocol.
"""

from dataclasses import dataclass
from typing import Any, Protocol

import jsonschema

from fhirstore.utils.fhir_helpers import FHIR_ID_PATTERN

VALID_RESOURCE_TYPES = frozenset(
    {
        "Patient", "Observation", "Medication", "MedicationRequest", "Condition",
        "Encounter", "Procedure", "DiagnosticReport", "ImagingStudy", "AllergyIntolerance",
        "Immunization", "CarePlan", "Goal", "Questionnaire", "QuestionnaireResponse",
        "DocumentReference", "Composition", "Practitioner", "Organization", "Location",
        "Device", "Substance", "MedicationAdministration", "MedicationDispense",
        "MedicationStatement", "Coverage", "Claim", "ExplanationOfBenefit", "Invoice",
        "PaymentNotice", "PaymentReconciliation", "Account", "ChargeItem", "Contract",
        "Group", "HealthcareService", "InsurancePlan", "Network", "PractitionerRole",
        "ResearchStudy", "ResearchSubject", "Schedule", "Slot", "VerificationResult",
    }
)

# Record statuses (FhirResource.status), not resource-level status codes
VALID_STATUSES = frozenset(
    {
        "active", "inactive", "entered-in-error", "draft", "preliminary", "final",
        "amended", "corrected", "cancelled", "unknown", "deleted",
    }
)

RESOURCE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["resourceType"],
    "properties": {
        "resourceType": {"type": "string", "minLength": 1, "maxLength": 100},
        "id": {"type": "string", "pattern": FHIR_ID_PATTERN.pattern},
        "meta": {
            "type": "object",
            "properties": {
                "versionId": {"type": "string"},
                "lastUpdated": {"type": "string"},
                "tag": {"type": "array", "items": {"type": "object"}},
                "security": {"type": "array", "items": {"type": "object"}},
            },
        },
        "contained": {
            "type": "array",
            "items": {"type": "object", "required": ["resourceType"]},
        },
        "extension": {
            "type": "array",
            "items": {"type": "object", "required": ["url"]},
        },
    },
}


def is_known_resource_type(resource_type: str | None) -> bool:
    return resource_type in VALID_RESOURCE_TYPES


@dataclass
class ValidationResult:
    """Outcome of validating one resource document."""

    errors: list[str]

    @property
    def is_valid(self) -> bool:
        return not self.errors


class ResourceValidator(Protocol):
    """Validates a resource document."""

    def validate(self, resource: dict[str, Any]) -> ValidationResult: ...


class StructuralResourceValidator:
    """JSON-schema based structural validator.

    Collects every error rather than stopping at the first one, and checks
    the resource type against the supported types.
    """

    def __init__(self, schema: dict[str, Any] | None = None):
        self._validator = jsonschema.Draft7Validator(schema or RESOURCE_SCHEMA)

    def validate(self, resource: dict[str, Any]) -> ValidationResult:
        if not isinstance(resource, dict):
            return ValidationResult(errors=["Resource must be a JSON object"])

        errors = [self._format(error) for error in self._validator.iter_errors(resource)]

        resource_type = resource.get("resourceType")
        if isinstance(resource_type, str) and resource_type and not is_known_resource_type(resource_type):
            errors.append(f"Unsupported resource type: {resource_type}")

        return ValidationResult(errors=errors)

    @staticmethod
    def _format(error: jsonschema.ValidationError) -> str:
        path = ".".join(str(p) for p in error.absolute_path)
        return f"{path}: {error.message}" if path else error.message
