"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere. Journey rule violations
share the JourneyError base so a single handler can serialise them with
their machine code and details.

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="PracticeJourney", resource_id=journey_id)
    raise ValidationError("Unknown field", details={"foo": "not allowed"})
    raise PrerequisiteNotMetError(step_id, missing=["step-1"])
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Security note: Used for BOTH genuinely missing records AND cross-tenant
    access attempts. A 403 would confirm the resource exists; a 404 does not.

    Args:
        resource: Human-readable model/entity name (e.g. "PracticeJourney").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        tenant_id: Optional, the scope that was enforced. For debug logging only.
    """

    code = "ERR_NOT_FOUND"

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        tenant_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.tenant_id = tenant_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if tenant_id is not None:
            msg += f" (tenant={tenant_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Distinct from HTTP 400 (malformed input, caught in blueprint): the data
    was well-formed but violated a rule. Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    code = "ERR_VALIDATION_INVALID"

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidRangeError(ValidationError):
    """A numeric field is outside its allowed closed interval."""

    code = "ERR_INVALID_RANGE"

    def __init__(self, field: str, value, low, high) -> None:
        super().__init__(
            f"{field} must be between {low} and {high}",
            details={"field": field, "value": value, "min": low, "max": high},
        )


# ── Journey rule violations ──────────────────────────────────────────────────


class JourneyError(Exception):
    """Base for journey engine failures. Carries a machine code and details."""

    code = "ERR_JOURNEY"
    retryable = False

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class PrerequisiteNotMetError(JourneyError):
    code = "ERR_PREREQUISITE_NOT_MET"

    def __init__(self, step_id: str, missing: list[str]) -> None:
        super().__init__(
            "Prerequisite steps are not completed",
            details={"step_id": step_id, "incomplete_prerequisites": list(missing)},
        )


class InsufficientEvidenceError(JourneyError):
    code = "ERR_INSUFFICIENT_EVIDENCE"

    def __init__(self, step_id: str, linked: int, required: int) -> None:
        super().__init__(
            f"Step requires at least {required} evidence items, {linked} linked",
            details={"step_id": step_id, "linked": linked, "required": required},
        )


class InvalidTransitionError(JourneyError):
    code = "ERR_INVALID_TRANSITION"

    def __init__(self, entity: str, old_status: str, new_status: str) -> None:
        super().__init__(
            f"Invalid {entity} transition: {old_status} → {new_status}",
            details={"entity": entity, "from": old_status, "to": new_status},
        )


class JourneyPausedError(JourneyError):
    code = "ERR_JOURNEY_PAUSED"

    def __init__(self, journey_id: str) -> None:
        super().__init__(
            "Journey is paused; resume it before changing steps",
            details={"journey_id": journey_id},
        )


class JourneyTerminalError(JourneyError):
    code = "ERR_JOURNEY_TERMINAL"

    def __init__(self, journey_id: str, status: str) -> None:
        super().__init__(
            f"Journey is {status} and can no longer be changed",
            details={"journey_id": journey_id, "status": status},
        )


class ConcurrencyConflictError(JourneyError):
    """Another writer changed the journey first.

    retryable=True when raised by the store (the write path re-runs the whole
    operation); False for a caller-supplied expected_version mismatch.
    """

    code = "ERR_CONCURRENCY_CONFLICT"

    def __init__(self, message: str = "Journey was modified concurrently",
                 details: dict | None = None, retryable: bool = True) -> None:
        super().__init__(message, details=details)
        self.retryable = retryable


class CreationFailedError(JourneyError):
    code = "ERR_CREATION_FAILED"


class StorageUnavailableError(JourneyError):
    code = "ERR_STORAGE_UNAVAILABLE"
