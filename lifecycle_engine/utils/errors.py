"""Standardised API error responses.

Usage
-----
    from lifecycle_engine.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Pilot not found")
    return api_error(E.GATE_BLOCKED, "TRL 5 is below 6", details={"gate": "pilot_trl"})
"""

from __future__ import annotations

from flask import jsonify

from lifecycle_engine.core.exceptions import (
    AlreadyCompletedError,
    EngineError,
    GateError,
    InvalidStepError,
    NotFoundError,
    PermissionDenied,
    StaleVersionError,
    ValidationError,
)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for standard application errors
     • GATE_ prefix for unmet lifecycle gates
    """

    # Validation – HTTP 400 / 422
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    CONFLICT_STALE = "ERR_CONFLICT_STALE"

    # Permissions – HTTP 403
    FORBIDDEN = "ERR_FORBIDDEN"

    # Rate limit – HTTP 429
    RATE_LIMITED = "ERR_RATE_LIMITED"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"

    # Gates – HTTP 422
    GATE_BLOCKED = "GATE_BLOCKED"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.CONFLICT_STALE: 409,
    E.FORBIDDEN: 403,
    E.RATE_LIMITED: 429,
    E.DATABASE: 500,
    E.INTERNAL: 500,
    E.GATE_BLOCKED: 422,
}

# Most specific first; StaleVersionError etc. all derive from EngineError.
_ENGINE_ERROR_CODES: tuple[tuple[type, str], ...] = (
    (NotFoundError, E.NOT_FOUND),
    (ValidationError, E.VALIDATION_INVALID),
    (PermissionDenied, E.FORBIDDEN),
    (InvalidStepError, E.CONFLICT_STATE),
    (AlreadyCompletedError, E.CONFLICT_STATE),
    (GateError, E.GATE_BLOCKED),
    (StaleVersionError, E.CONFLICT_STALE),
)


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
        Extra structured payload (gate thresholds, field errors, versions).

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


def error_code_for(exc: EngineError) -> str:
    """Map an engine exception to its ``E.*`` code."""
    for exc_type, code in _ENGINE_ERROR_CODES:
        if isinstance(exc, exc_type):
            return code
    return E.INTERNAL


def engine_error_response(exc: EngineError):
    """Render any EngineError through ``api_error``."""
    return api_error(error_code_for(exc), str(exc), details=exc.details)
