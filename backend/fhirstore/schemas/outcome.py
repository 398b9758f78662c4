"""FHIR OperationOutcome rendering."""

from typing import Any

FHIR_JSON = "application/fhir+json"


def operation_outcome(
    diagnostics: str,
    code: str = "exception",
    severity: str = "error",
    details: list[str] | None = None,
) -> dict[str, Any]:
    """Build an OperationOutcome with one issue per message.

    Args:
        diagnostics: Primary human-readable message.
        code: FHIR issue type code (e.g. 'not-found', 'conflict', 'invalid').
        severity: Issue severity ('fatal', 'error', 'warning', 'information').
        details: Additional messages, each rendered as its own issue.

    Returns:
        OperationOutcome resource as a dict.
    """
    issues = [{"severity": severity, "code": code, "diagnostics": diagnostics}]
    for message in details or []:
        if message != diagnostics:
            issues.append({"severity": severity, "code": code, "diagnostics": message})
    return {"resourceType": "OperationOutcome", "issue": issues}
