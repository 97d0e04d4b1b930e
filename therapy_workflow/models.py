"""
Domain models for the client-therapist assignment workflow.
"""

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(UTC)


class CamelModel(BaseModel):
    """Base for models exchanged with the admin UI in camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EntityType(StrEnum):
    ENQUIRY = "enquiry"
    CLIENT = "client"


class EnquiryStatus(StrEnum):
    ENQUIRY_RECEIVED = "enquiry_received"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    PENDING_DOCUMENTS = "pending_documents"


class TherapistTier(StrEnum):
    COUNSELLOR = "counsellor"
    PSYCHOTHERAPIST = "psychotherapist"
    PSYCHOLOGIST = "psychologist"
    SPECIALIST = "specialist"


class ClientStatus(StrEnum):
    AWAITING_ASSIGNMENT = "awaiting_assignment"
    ASSIGNED = "assigned"
    ACTIVE = "active"


class TherapistStatus(StrEnum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


class HistoryAction(StrEnum):
    STATUS_CHANGE = "status_change"
    ASSIGNMENT = "assignment"
    REASSIGNMENT = "reassignment"
    REVOCATION = "revocation"


class NotificationStatus(StrEnum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class Enquiry(BaseModel):
    """A prospective therapist's application."""

    id: str
    name: str
    email: str
    status: EnquiryStatus = EnquiryStatus.ENQUIRY_RECEIVED
    account_created: bool = False
    therapist_tier: TherapistTier | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _account_requires_approval(self) -> "Enquiry":
        if self.account_created and self.status != EnquiryStatus.APPROVED:
            raise ValueError("account_created requires status 'approved'")
        return self

    @property
    def first_name(self) -> str:
        return self.name.split(" ", 1)[0]

    @property
    def last_name(self) -> str:
        parts = self.name.split(" ", 1)
        return parts[1] if len(parts) > 1 else ""


class ClientPreferences(CamelModel):
    gender: str | None = None
    approach: str | None = None
    availability: str | None = None


class Client(CamelModel):
    """A service recipient waiting for, or working with, a therapist."""

    id: str
    name: str
    email: str
    status: ClientStatus = ClientStatus.AWAITING_ASSIGNMENT
    assigned_therapist_id: str | None = None
    profile_completed: bool = False
    concerns: list[str] = []
    preferences: ClientPreferences = Field(default_factory=ClientPreferences)
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("concerns")
    @classmethod
    def _dedupe_concerns(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))

    @model_validator(mode="after")
    def _assignment_matches_status(self) -> "Client":
        if self.status == ClientStatus.ASSIGNED and self.assigned_therapist_id is None:
            raise ValueError("assigned client must have an assignedTherapistId")
        if (
            self.status == ClientStatus.AWAITING_ASSIGNMENT
            and self.assigned_therapist_id is not None
        ):
            raise ValueError("client awaiting assignment cannot have a therapist")
        return self


class Therapist(CamelModel):
    id: str
    name: str
    email: str | None = None
    specialisations: list[str] = []
    tier: TherapistTier | None = None
    hourly_rate: float = 0.0
    availability: str = ""
    capacity: int = 0  # sessions per week still open
    gender: str | None = None
    status: TherapistStatus = TherapistStatus.AVAILABLE


class Assignment(CamelModel):
    """One client-therapist pairing. Appended, never overwritten."""

    id: str
    client_id: str
    therapist_id: str
    ai_recommendation_used: bool = False
    notes: str | None = None
    previous_therapist_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class MatchRecommendation(CamelModel):
    therapist_id: str
    name: str | None = None
    match_score: int = Field(ge=0, le=100)
    reasoning: str | None = None
    specialisations: list[str] = []
    availability: str | None = None
    rate: float | None = None


class StatusHistoryEntry(CamelModel):
    entity_id: str
    entity_type: EntityType
    from_status: str | None
    to_status: str
    actor_id: str | None = None
    action: HistoryAction = HistoryAction.STATUS_CHANGE
    detail: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)


class NotificationRecord(CamelModel):
    """Delivery state of the emails sent after an assignment commits."""

    assignment_id: str
    status: NotificationStatus = NotificationStatus.PENDING
    attempts: int = 0
    last_error: str | None = None
    sent_at: datetime | None = None


# Request / response bodies


class EnquiryStatusUpdate(BaseModel):
    status: EnquiryStatus


class EnquiryTierUpdate(BaseModel):
    therapist_tier: TherapistTier


class CreateAccountRequest(BaseModel):
    enquiry_id: str
    email: str
    first_name: str
    last_name: str = ""


class CreateAccountResponse(CamelModel):
    temp_password: str | None = None
    message: str


class ResetPasswordRequest(BaseModel):
    email: str


class ResetPasswordResponse(CamelModel):
    temp_password: str


class RecommendationRequest(CamelModel):
    client_id: str


class AssignTherapistRequest(CamelModel):
    client_id: str
    therapist_id: str
    ai_recommendation_used: bool = False
    notes: str | None = None
    expected_therapist_id: str | None = None  # assignment the operator last saw


class AssignTherapistResponse(CamelModel):
    email_sent: bool
    assignment: Assignment
    client: Client
    created: bool = True


class RevokeAssignmentRequest(CamelModel):
    client_id: str
    reason: str | None = None


class ClientStatusUpdate(BaseModel):
    status: ClientStatus
