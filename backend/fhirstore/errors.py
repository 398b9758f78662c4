"""Typed errors raised by the storage core.

Each error carries the HTTP status and OperationOutcome issue code the web
boundary renders it with, so routes never map errors by message text.
"""


class FhirError(Exception):
    """Base class for errors surfaced to FHIR clients."""

    status_code = 500
    code = "exception"
    severity = "error"

    def __init__(self, message: str, issues: list[str] | None = None):
        super().__init__(message)
        self.message = message
        self.issues = issues or []


class ResourceNotFoundError(FhirError):
    """Raised when a resource, version or history entry does not exist."""

    status_code = 404
    code = "not-found"


class ResourceConflictError(FhirError):
    """Raised on a version collision or a create against an active resource."""

    status_code = 409
    code = "conflict"


class FhirValidationError(FhirError):
    """Raised for malformed documents, parameters or unsupported types."""

    status_code = 400
    code = "invalid"
