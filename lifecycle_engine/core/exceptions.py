"""
Engine-wide exception hierarchy.

Every engine component raises one of these types; the workflow blueprint
registers a handler per type once and maps it to a stable HTTP status and
error code.  Each exception carries structured attributes plus a ``details``
dict so the caller can render a specific message instead of a generic
"operation failed".

Usage:
    from lifecycle_engine.core.exceptions import GateError, ValidationError

    raise ValidationError("evidence is required", details={"evidence": "at least one URI"})
    raise GateError("pilot_trl", required=6, actual=5,
                    message="TRL 5 is below the minimum of 6 required for pilot conversion")
"""


class EngineError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class NotFoundError(EngineError):
    """Raised when an entity, milestone or conversion link does not exist.

    Also raised when the row exists but is of a different kind than the one
    requested, so callers cannot probe across kinds.

    Args:
        resource: Human-readable resource name (e.g. "RDProject", "Milestone").
        resource_id: The id that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg, {"resource": resource, "resource_id": resource_id})


class ValidationError(EngineError):
    """Raised when input is well-formed but violates a business rule.

    Missing evidence, missing required payload fields and out-of-range values
    all land here.

    Args:
        message: Human-readable explanation of what failed.
        details: Field-level breakdown; keys are field names.
    """


class PermissionDenied(EngineError):
    """Raised when the acting role is not the role a step or gate requires."""

    def __init__(self, actor_role: str | None, required_role: str, step: int | None = None) -> None:
        self.actor_role = actor_role
        self.required_role = required_role
        self.step = step
        where = f" for step {step}" if step is not None else ""
        super().__init__(
            f"Role '{actor_role}' cannot decide{where}; required role is '{required_role}'",
            {"actor_role": actor_role, "required_role": required_role, "step": step},
        )


class InvalidStepError(EngineError):
    """Raised when an operation targets a terminal or out-of-sequence state."""

    def __init__(self, message: str, *, current_step: int | None = None,
                 status: str | None = None, details: dict | None = None) -> None:
        self.current_step = current_step
        self.status = status
        payload = {"current_step": current_step, "status": status}
        payload.update(details or {})
        super().__init__(message, payload)


class AlreadyCompletedError(EngineError):
    """Raised when an operation is re-invoked on an already-satisfied state.

    This is an explicit reject rather than a silent no-op so a UI can
    surface the conflict.
    """


class GateError(EngineError):
    """Raised when a numeric or state precondition is not met.

    Args:
        gate: Machine-readable gate name (e.g. "pilot_trl", "integration_progress").
        required: The threshold or required state.
        actual: The value observed on the entity.
        message: Full sentence naming the threshold that failed.
    """

    def __init__(self, gate: str, *, required, actual, message: str,
                 details: dict | None = None) -> None:
        self.gate = gate
        self.required = required
        self.actual = actual
        payload = {"gate": gate, "required": required, "actual": actual}
        payload.update(details or {})
        super().__init__(message, payload)


class StaleVersionError(EngineError):
    """Raised when an optimistic-version write finds the row has moved on.

    The caller must re-fetch the entity and retry; the engine never retries
    on its own.
    """

    def __init__(self, kind: str, entity_id: str, expected: int | None,
                 actual: int | None = None) -> None:
        self.kind = kind
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual
        msg = f"{kind} id={entity_id} was modified concurrently (expected version {expected}"
        if actual is not None:
            msg += f", found {actual}"
        msg += "); re-fetch and retry"
        super().__init__(msg, {
            "kind": kind,
            "entity_id": entity_id,
            "expected_version": expected,
            "actual_version": actual,
        })
