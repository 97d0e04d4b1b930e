import asyncio
import secrets
import uuid

import structlog
from fastapi import APIRouter, FastAPI, Header, HTTPException, status

from therapy_workflow.config import settings
from therapy_workflow.database import get_db
from therapy_workflow.errors import (
    AccountNotEligible,
    ClientAlreadyAssigned,
    ConflictError,
    EntityNotFound,
    IdempotencyKeySpent,
    InvalidTransition,
    TherapistUnavailable,
    ValidationError,
)
from therapy_workflow.matching import Matcher
from therapy_workflow.models import (
    Assignment,
    AssignTherapistRequest,
    AssignTherapistResponse,
    Client,
    ClientStatus,
    ClientStatusUpdate,
    CreateAccountRequest,
    CreateAccountResponse,
    Enquiry,
    EnquiryStatusUpdate,
    EnquiryTierUpdate,
    EntityType,
    HistoryAction,
    MatchRecommendation,
    NotificationRecord,
    RecommendationRequest,
    ResetPasswordRequest,
    ResetPasswordResponse,
    RevokeAssignmentRequest,
    StatusHistoryEntry,
    Therapist,
    TherapistStatus,
)
from therapy_workflow.notifier import dispatch_assignment_notification
from therapy_workflow.tiers import fee_for
from therapy_workflow.transitions import (
    ASSIGNABLE_STATUSES,
    apply_transition,
    can_create_account,
    is_assignment_locked,
)

log = structlog.get_logger()

router = APIRouter()

_assignment_locks: dict[str, asyncio.Lock] = {}
_locks_lock = asyncio.Lock()

# Weekly session capacity given to a therapist when their account is created
NEW_THERAPIST_CAPACITY = 5


async def _get_assignment_lock(client_id: str) -> asyncio.Lock:
    """Get or create a lock for a specific client to serialise assignments."""
    async with _locks_lock:
        if client_id not in _assignment_locks:
            _assignment_locks[client_id] = asyncio.Lock()
        return _assignment_locks[client_id]


def _error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status_code, detail={"code": code, "message": message}
    )


def _not_found(kind: str, entity_id: str) -> HTTPException:
    return _error(
        status.HTTP_404_NOT_FOUND, EntityNotFound.code, f"{kind} {entity_id} not found"
    )


def _conflict(error: ConflictError) -> HTTPException:
    return _error(status.HTTP_409_CONFLICT, error.code, error.message)


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


# Therapist enquiries


@router.get("/api/admin/therapist-enquiries", response_model=list[Enquiry])
async def list_enquiries() -> list[Enquiry]:
    db = get_db()
    return sorted(db.enquiries.all(), key=lambda e: e.created_at, reverse=True)


@router.put("/api/admin/therapist-enquiries/{enquiry_id}/status", response_model=Enquiry)
async def update_enquiry_status(
    enquiry_id: str,
    body: EnquiryStatusUpdate,
    x_admin_id: str | None = Header(default=None),
) -> Enquiry:
    db = get_db()
    enquiry = db.enquiries.get(enquiry_id)
    if enquiry is None:
        raise _not_found("Enquiry", enquiry_id)

    if enquiry.status == body.status:
        return enquiry

    try:
        apply_transition(EntityType.ENQUIRY, enquiry.status, body.status)
    except InvalidTransition as e:
        raise _conflict(e) from None

    updated = enquiry.model_copy(update={"status": body.status})
    db.enquiries.put(enquiry_id, updated)
    db.history.append(
        StatusHistoryEntry(
            entity_id=enquiry_id,
            entity_type=EntityType.ENQUIRY,
            from_status=enquiry.status,
            to_status=body.status,
            actor_id=x_admin_id,
        )
    )
    log.info(
        "enquiry_status_changed",
        enquiry_id=enquiry_id,
        from_status=enquiry.status.value,
        to_status=body.status.value,
    )
    return updated


@router.put("/api/admin/therapist-enquiries/{enquiry_id}/tier", response_model=Enquiry)
async def update_enquiry_tier(enquiry_id: str, body: EnquiryTierUpdate) -> Enquiry:
    db = get_db()
    enquiry = db.enquiries.get(enquiry_id)
    if enquiry is None:
        raise _not_found("Enquiry", enquiry_id)

    updated = enquiry.model_copy(update={"therapist_tier": body.therapist_tier})
    db.enquiries.put(enquiry_id, updated)

    therapist = db.therapists.get(enquiry_id)
    if therapist is not None:
        db.therapists.put(
            enquiry_id,
            therapist.model_copy(
                update={
                    "tier": body.therapist_tier,
                    "hourly_rate": fee_for(body.therapist_tier),
                }
            ),
        )
    log.info("enquiry_tier_changed", enquiry_id=enquiry_id, tier=body.therapist_tier.value)
    return updated


@router.post("/api/admin/create-therapist-account", response_model=CreateAccountResponse)
async def create_therapist_account(body: CreateAccountRequest) -> CreateAccountResponse:
    """
    Create (or re-activate) the login for an approved enquiry and add the
    therapist to the assignable pool.
    """
    db = get_db()
    enquiry = db.enquiries.get(body.enquiry_id)
    if enquiry is None:
        raise _not_found("Enquiry", body.enquiry_id)

    if enquiry.account_created:
        return CreateAccountResponse(message="Account is already active")
    if not can_create_account(enquiry):
        raise _conflict(
            AccountNotEligible(
                f"Enquiry {enquiry.id} must be approved before an account is created"
            )
        )

    temp_password = None
    if body.email in db.accounts:
        message = "Existing account activated. Therapist is now available for client assignment"
    else:
        temp_password = secrets.token_urlsafe(9)
        db.accounts.put(body.email, temp_password)
        message = "Account created. Therapist is now available for client assignment"

    db.enquiries.put(enquiry.id, enquiry.model_copy(update={"account_created": True}))
    db.therapists.put(
        enquiry.id,
        Therapist(
            id=enquiry.id,
            name=f"{body.first_name} {body.last_name}".strip(),
            email=body.email,
            tier=enquiry.therapist_tier,
            hourly_rate=fee_for(enquiry.therapist_tier) if enquiry.therapist_tier else 0.0,
            capacity=NEW_THERAPIST_CAPACITY,
            status=TherapistStatus.AVAILABLE,
        ),
    )
    log.info("therapist_account_created", enquiry_id=enquiry.id, email=body.email)
    return CreateAccountResponse(temp_password=temp_password, message=message)


@router.post("/api/admin/reset-therapist-password", response_model=ResetPasswordResponse)
async def reset_therapist_password(body: ResetPasswordRequest) -> ResetPasswordResponse:
    db = get_db()
    if body.email not in db.accounts:
        raise _error(
            status.HTTP_404_NOT_FOUND,
            EntityNotFound.code,
            f"No therapist account for {body.email}",
        )
    temp_password = secrets.token_urlsafe(9)
    db.accounts.put(body.email, temp_password)
    log.info("therapist_password_reset", email=body.email)
    return ResetPasswordResponse(temp_password=temp_password)


# Clients and therapists


@router.get("/api/admin/clients", response_model=list[Client])
async def list_clients(status: str = "all") -> list[Client]:
    if status != "all" and status not in {s.value for s in ClientStatus}:
        raise _error(
            422, ValidationError.code, f"Unknown client status filter '{status}'"
        )
    return get_db().get_clients_by_status(status)


@router.put("/api/admin/clients/{client_id}/status", response_model=Client)
async def update_client_status(
    client_id: str,
    body: ClientStatusUpdate,
    x_admin_id: str | None = Header(default=None),
) -> Client:
    """Forward-only status changes. Assigning and revoking have their own endpoints."""
    db = get_db()
    lock = await _get_assignment_lock(client_id)
    async with lock:
        client = db.clients.get(client_id)
        if client is None:
            raise _not_found("Client", client_id)
        if client.status == body.status:
            return client
        if body.status == ClientStatus.ASSIGNED:
            raise _conflict(
                InvalidTransition(
                    "Use /api/admin/assign-therapist to assign a therapist"
                )
            )
        try:
            apply_transition(EntityType.CLIENT, client.status, body.status)
        except InvalidTransition as e:
            raise _conflict(e) from None

        updated = client.model_copy(update={"status": body.status})
        db.clients.put(client_id, updated)
        db.history.append(
            StatusHistoryEntry(
                entity_id=client_id,
                entity_type=EntityType.CLIENT,
                from_status=client.status,
                to_status=body.status,
                actor_id=x_admin_id,
            )
        )
    return updated


@router.get("/api/admin/therapists", response_model=list[Therapist])
async def list_therapists(status: str | None = None) -> list[Therapist]:
    db = get_db()
    if status == TherapistStatus.AVAILABLE:
        return db.get_available_therapists()
    if status in (None, "", "all"):
        return db.therapists.all()
    return [t for t in db.therapists.all() if t.status == status]


@router.post("/api/admin/ai-recommendations", response_model=list[MatchRecommendation])
async def ai_recommendations(body: RecommendationRequest) -> list[MatchRecommendation]:
    db = get_db()
    client = db.clients.get(body.client_id)
    if client is None:
        raise _not_found("Client", body.client_id)

    matcher = Matcher(client, db.get_available_therapists())
    return matcher.run(top_n=settings.recommendation_limit)


# Assignments


@router.post("/api/admin/assign-therapist", response_model=AssignTherapistResponse)
async def assign_therapist(
    body: AssignTherapistRequest,
    idempotency_key: str | None = Header(default=None),
    x_admin_id: str | None = Header(default=None),
) -> AssignTherapistResponse:
    """
    Assign (or reassign) a therapist to a client.

    Idempotent: a repeated Idempotency-Key replays the first response, and
    re-assigning the therapist a client already has creates no new record.
    A reassignment whose expectedTherapistId no longer matches the client's
    current therapist lost a race and is rejected with 409.
    """
    db = get_db()

    lock = await _get_assignment_lock(body.client_id)
    async with lock:
        if idempotency_key:
            replay = db.idempotency.get(idempotency_key)
            if replay is not None:
                return _replay_assignment(replay, body, idempotency_key)

        client = db.clients.get(body.client_id)
        if client is None:
            raise _not_found("Client", body.client_id)
        therapist = db.therapists.get(body.therapist_id)
        if therapist is None:
            raise _not_found("Therapist", body.therapist_id)

        if client.status not in ASSIGNABLE_STATUSES:
            raise _conflict(
                InvalidTransition.between(
                    EntityType.CLIENT.value, client.status, ClientStatus.ASSIGNED
                )
            )

        if client.assigned_therapist_id == body.therapist_id:
            existing = db.get_active_assignment(client.id)
            if existing is not None:
                return AssignTherapistResponse(
                    email_sent=False, assignment=existing, client=client, created=False
                )

        if is_assignment_locked(client, body.therapist_id, body.expected_therapist_id):
            raise _conflict(
                ClientAlreadyAssigned(
                    f"Client {client.id} is already assigned to "
                    f"{client.assigned_therapist_id}"
                )
            )

        if therapist.status != TherapistStatus.AVAILABLE or therapist.capacity <= 0:
            raise _conflict(
                TherapistUnavailable(f"Therapist {therapist.id} is not available")
            )

        previous_id = client.assigned_therapist_id
        if client.status == ClientStatus.AWAITING_ASSIGNMENT:
            apply_transition(EntityType.CLIENT, client.status, ClientStatus.ASSIGNED)

        assignment = Assignment(
            id=f"A-{uuid.uuid4().hex[:12]}",
            client_id=client.id,
            therapist_id=therapist.id,
            ai_recommendation_used=body.ai_recommendation_used,
            notes=body.notes,
            previous_therapist_id=previous_id,
        )
        db.assignments.put(assignment.id, assignment)

        updated = client.model_copy(
            update={
                "status": ClientStatus.ASSIGNED,
                "assigned_therapist_id": therapist.id,
            }
        )
        db.clients.put(client.id, updated)

        db.therapists.put(
            therapist.id, therapist.model_copy(update={"capacity": therapist.capacity - 1})
        )
        _release_capacity(previous_id)

        db.history.append(
            StatusHistoryEntry(
                entity_id=client.id,
                entity_type=EntityType.CLIENT,
                from_status=client.status,
                to_status=ClientStatus.ASSIGNED,
                actor_id=x_admin_id,
                action=HistoryAction.REASSIGNMENT if previous_id else HistoryAction.ASSIGNMENT,
                detail=f"{previous_id} -> {therapist.id}" if previous_id else therapist.id,
            )
        )

        dispatch_assignment_notification(assignment.id)

        response = AssignTherapistResponse(
            email_sent=True, assignment=assignment, client=updated
        )
        if idempotency_key:
            db.idempotency.put(idempotency_key, response)

    log.info(
        "therapist_assigned",
        client_id=client.id,
        therapist_id=therapist.id,
        previous_therapist_id=previous_id,
        ai_recommendation_used=body.ai_recommendation_used,
    )
    return response


def _replay_assignment(
    replay: AssignTherapistResponse, body: AssignTherapistRequest, idempotency_key: str
) -> AssignTherapistResponse:
    """Replay a stored response only while its assignment is still current."""
    db = get_db()
    if (
        replay.assignment.client_id != body.client_id
        or replay.assignment.therapist_id != body.therapist_id
    ):
        raise _error(
            422,
            ValidationError.code,
            "Idempotency-Key was already used for a different assignment",
        )

    active = db.get_active_assignment(body.client_id)
    if active is None or active.id != replay.assignment.id:
        log.info(
            "idempotency_key_spent",
            idempotency_key=idempotency_key,
            assignment_id=replay.assignment.id,
        )
        raise _conflict(
            IdempotencyKeySpent(
                f"Assignment {replay.assignment.id} is no longer current; "
                "retry the assignment with a new request"
            )
        )

    log.info("assignment_replayed", idempotency_key=idempotency_key)
    return replay.model_copy(
        update={
            "created": False,
            "email_sent": False,
            "client": db.clients.get(body.client_id),
        }
    )


def _release_capacity(therapist_id: str | None) -> None:
    if therapist_id is None:
        return
    db = get_db()
    therapist = db.therapists.get(therapist_id)
    if therapist is not None:
        db.therapists.put(
            therapist_id, therapist.model_copy(update={"capacity": therapist.capacity + 1})
        )


@router.post("/api/admin/revoke-assignment", response_model=Client)
async def revoke_assignment(
    body: RevokeAssignmentRequest,
    x_admin_id: str | None = Header(default=None),
) -> Client:
    db = get_db()
    lock = await _get_assignment_lock(body.client_id)
    async with lock:
        client = db.clients.get(body.client_id)
        if client is None:
            raise _not_found("Client", body.client_id)
        try:
            apply_transition(
                EntityType.CLIENT,
                client.status,
                ClientStatus.AWAITING_ASSIGNMENT,
                revoke=True,
            )
        except InvalidTransition as e:
            raise _conflict(e) from None

        previous_id = client.assigned_therapist_id
        updated = client.model_copy(
            update={
                "status": ClientStatus.AWAITING_ASSIGNMENT,
                "assigned_therapist_id": None,
            }
        )
        db.clients.put(client.id, updated)
        _release_capacity(previous_id)
        db.history.append(
            StatusHistoryEntry(
                entity_id=client.id,
                entity_type=EntityType.CLIENT,
                from_status=client.status,
                to_status=ClientStatus.AWAITING_ASSIGNMENT,
                actor_id=x_admin_id,
                action=HistoryAction.REVOCATION,
                detail=body.reason,
            )
        )
    log.info("assignment_revoked", client_id=client.id, therapist_id=previous_id)
    return updated


@router.get(
    "/api/admin/client-therapist-assignments", response_model=list[Assignment]
)
async def list_assignments() -> list[Assignment]:
    return get_db().assignments.all()


@router.get(
    "/api/admin/assignments/{assignment_id}/notification",
    response_model=NotificationRecord,
)
async def get_notification(assignment_id: str) -> NotificationRecord:
    record = get_db().notifications.get(assignment_id)
    if record is None:
        raise _not_found("Notification for assignment", assignment_id)
    return record


@router.post(
    "/api/admin/assignments/{assignment_id}/notify", response_model=NotificationRecord
)
async def retry_notification(assignment_id: str) -> NotificationRecord:
    """Re-send the assignment emails, independently of the assignment itself."""
    if get_db().assignments.get(assignment_id) is None:
        raise _not_found("Assignment", assignment_id)
    return dispatch_assignment_notification(assignment_id)


@router.get(
    "/api/admin/status-history/{entity_id}", response_model=list[StatusHistoryEntry]
)
async def status_history(entity_id: str) -> list[StatusHistoryEntry]:
    return get_db().history.for_entity(entity_id)


def create_app() -> FastAPI:
    app = FastAPI(title=settings.app_name, version=settings.version)
    app.include_router(router)
    return app
