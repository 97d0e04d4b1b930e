"""
Error taxonomy shared by the admin client and the reference backend.

Every failure a mutation can hit is a ``WorkflowError``. The mutation
controller catches these at its boundary, rolls back and turns them into a
``MutationResult``. Nothing above it has to do recovery.
"""

from typing import Any

RATE_LIMIT_MESSAGE = "Too many requests. Please wait a moment before trying again."


class WorkflowError(Exception):
    code = "workflow_error"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ValidationError(WorkflowError):
    """Bad or missing input. Reported inline; the mutation is never sent."""

    code = "validation_error"


class EntityNotFound(WorkflowError):
    code = "not_found"


class ConflictError(WorkflowError):
    code = "conflict"


class InvalidTransition(ConflictError):
    code = "invalid_transition"

    @classmethod
    def between(
        cls, entity_type: str, current: str | None, requested: str
    ) -> "InvalidTransition":
        return cls(f"Cannot move {entity_type} from '{current}' to '{requested}'")


class MutationInFlight(ConflictError):
    code = "mutation_in_flight"


class AssignmentError(ConflictError):
    code = "assignment_error"


class ClientAlreadyAssigned(AssignmentError):
    code = "client_already_assigned"


class TherapistUnavailable(AssignmentError):
    code = "therapist_unavailable"


class AccountNotEligible(ConflictError):
    code = "account_not_eligible"


class IdempotencyKeySpent(ConflictError):
    """The key's assignment is no longer the client's current one."""

    code = "idempotency_key_spent"


class TransientError(WorkflowError):
    """Network or server trouble. Rolled back; the operator may retry."""

    code = "transient_error"


class RateLimited(TransientError):
    code = "rate_limited"


class MutationTimeout(TransientError):
    code = "mutation_timeout"


_CONFLICT_CODES: dict[str, type[ConflictError]] = {
    InvalidTransition.code: InvalidTransition,
    ClientAlreadyAssigned.code: ClientAlreadyAssigned,
    TherapistUnavailable.code: TherapistUnavailable,
    AccountNotEligible.code: AccountNotEligible,
    MutationInFlight.code: MutationInFlight,
    IdempotencyKeySpent.code: IdempotencyKeySpent,
}


def _detail(body: Any) -> tuple[str | None, str]:
    if isinstance(body, dict):
        detail = body.get("detail", body)
        if isinstance(detail, dict):
            return detail.get("code"), str(detail.get("message", ""))
        if isinstance(detail, str):
            return None, detail
        return None, str(detail)
    if body is None:
        return None, ""
    return None, str(body)


def error_from_response(status_code: int, body: Any) -> WorkflowError:
    """Map an HTTP failure from the admin API onto the taxonomy."""
    code, message = _detail(body)
    message = message or f"Request failed with status {status_code}"

    if status_code == 429 or "429" in message:
        return RateLimited(message, status_code=status_code)
    if status_code == 404:
        return EntityNotFound(message, status_code=status_code)
    if status_code in (400, 422):
        return ValidationError(message, status_code=status_code)
    if status_code == 409:
        error_cls = _CONFLICT_CODES.get(code or "", ConflictError)
        return error_cls(message, status_code=status_code)
    return TransientError(message, status_code=status_code)


def user_message(error: WorkflowError, fallback: str) -> str:
    """Text shown to the operator when a mutation fails."""
    if isinstance(error, RateLimited):
        return RATE_LIMIT_MESSAGE
    if isinstance(error, (ValidationError, ConflictError, EntityNotFound)):
        return error.message
    return fallback
