"""Standardised API error responses.

Usage
-----
    from app.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Journey not found")
    return api_error(E.VALIDATION_REQUIRED, "template_id is required")
    return api_error(E.PREREQUISITE_NOT_MET, str(exc), details=exc.details)
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for application errors
     • EVIDENCE_ prefix for non-blocking evidence warnings
    """

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    INVALID_RANGE = "ERR_INVALID_RANGE"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONCURRENCY_CONFLICT = "ERR_CONCURRENCY_CONFLICT"

    # Journey rules – HTTP 409 (state) / 422 (rule)
    PREREQUISITE_NOT_MET = "ERR_PREREQUISITE_NOT_MET"
    INSUFFICIENT_EVIDENCE = "ERR_INSUFFICIENT_EVIDENCE"
    INVALID_TRANSITION = "ERR_INVALID_TRANSITION"
    JOURNEY_PAUSED = "ERR_JOURNEY_PAUSED"
    JOURNEY_TERMINAL = "ERR_JOURNEY_TERMINAL"

    # Server – HTTP 500 / 503
    CREATION_FAILED = "ERR_CREATION_FAILED"
    STORAGE_UNAVAILABLE = "ERR_STORAGE_UNAVAILABLE"
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"

    # Warnings – returned alongside a successful result
    EVIDENCE_BELOW_MINIMUM = "EVIDENCE_BELOW_MINIMUM"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 422,
    E.INVALID_RANGE: 422,
    E.NOT_FOUND: 404,
    E.CONCURRENCY_CONFLICT: 409,
    E.PREREQUISITE_NOT_MET: 422,
    E.INSUFFICIENT_EVIDENCE: 422,
    E.INVALID_TRANSITION: 409,
    E.JOURNEY_PAUSED: 409,
    E.JOURNEY_TERMINAL: 409,
    E.CREATION_FAILED: 500,
    E.STORAGE_UNAVAILABLE: 503,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (missing prerequisites, evidence counts, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def warning(code: str, message: str, **details) -> dict:
    """Non-blocking warning entry for a ``warnings`` list in a 200 response."""
    entry = {"code": code, "message": message}
    if details:
        entry["details"] = details
    return entry
