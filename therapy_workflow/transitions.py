"""
Status transition tables for enquiries and clients.

Both the admin side and the backend validate requested status changes here
before anything is written.
"""

from dataclasses import dataclass

from therapy_workflow.errors import InvalidTransition
from therapy_workflow.models import (
    Client,
    ClientStatus,
    Enquiry,
    EnquiryStatus,
    EntityType,
)

ENQUIRY_TRANSITIONS: dict[EnquiryStatus, frozenset[EnquiryStatus]] = {
    EnquiryStatus.ENQUIRY_RECEIVED: frozenset({EnquiryStatus.UNDER_REVIEW}),
    EnquiryStatus.UNDER_REVIEW: frozenset(
        {
            EnquiryStatus.APPROVED,
            EnquiryStatus.REJECTED,
            EnquiryStatus.PENDING_DOCUMENTS,
        }
    ),
    EnquiryStatus.PENDING_DOCUMENTS: frozenset({EnquiryStatus.UNDER_REVIEW}),
    EnquiryStatus.APPROVED: frozenset(),
    EnquiryStatus.REJECTED: frozenset(),
}

CLIENT_TRANSITIONS: dict[ClientStatus, frozenset[ClientStatus]] = {
    ClientStatus.AWAITING_ASSIGNMENT: frozenset({ClientStatus.ASSIGNED}),
    ClientStatus.ASSIGNED: frozenset(
        {ClientStatus.ACTIVE, ClientStatus.AWAITING_ASSIGNMENT}
    ),
    ClientStatus.ACTIVE: frozenset(),
}

# Edges that only the explicit "revoke assignment" action may take
REVOKE_ONLY: frozenset[tuple[ClientStatus, ClientStatus]] = frozenset(
    {(ClientStatus.ASSIGNED, ClientStatus.AWAITING_ASSIGNMENT)}
)

# Client statuses from which an assign (or reassign) is accepted
ASSIGNABLE_STATUSES = frozenset({ClientStatus.AWAITING_ASSIGNMENT, ClientStatus.ASSIGNED})


@dataclass(frozen=True)
class TransitionResult:
    ok: bool
    new_status: str


def _coerce(entity_type: EntityType, status: str):
    enum_cls = EnquiryStatus if entity_type == EntityType.ENQUIRY else ClientStatus
    try:
        return enum_cls(status)
    except ValueError:
        return None


def allowed_transitions(entity_type: EntityType, current: str, *, revoke: bool = False) -> list[str]:
    """Statuses reachable from ``current``, in declaration order."""
    status = _coerce(entity_type, current)
    if status is None:
        return []
    if entity_type == EntityType.ENQUIRY:
        targets = ENQUIRY_TRANSITIONS[status]
        order = list(EnquiryStatus)
    else:
        targets = {
            target
            for target in CLIENT_TRANSITIONS[status]
            if revoke or (status, target) not in REVOKE_ONLY
        }
        order = list(ClientStatus)
    return [s.value for s in order if s in targets]


def can_transition(
    entity_type: EntityType,
    current: str,
    requested: str,
    *,
    revoke: bool = False,
) -> bool:
    return requested in allowed_transitions(entity_type, current, revoke=revoke)


def apply_transition(
    entity_type: EntityType,
    current: str,
    requested: str,
    *,
    revoke: bool = False,
) -> TransitionResult:
    if not can_transition(entity_type, current, requested, revoke=revoke):
        raise InvalidTransition.between(entity_type.value, current, requested)
    return TransitionResult(ok=True, new_status=requested)


def can_create_account(enquiry: Enquiry) -> bool:
    """Approval unlocks account creation; it never creates the account itself."""
    return enquiry.status == EnquiryStatus.APPROVED and not enquiry.account_created


def is_assignment_locked(
    client: Client, therapist_id: str, expected_therapist_id: str | None
) -> bool:
    """
    True when a client is already assigned to someone other than
    ``therapist_id`` and the caller did not acknowledge that assignment.
    """
    if client.status != ClientStatus.ASSIGNED:
        return False
    if client.assigned_therapist_id == therapist_id:
        return False
    return client.assigned_therapist_id != expected_therapist_id
