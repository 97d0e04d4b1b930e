from therapy_workflow.admin_client import AdminApiClient
from therapy_workflow.cache import QueryKey
from therapy_workflow.config import settings
from therapy_workflow.errors import (
    AccountNotEligible,
    EntityNotFound,
    InvalidTransition,
    ValidationError,
    WorkflowError,
)
from therapy_workflow.models import Enquiry, EnquiryStatus, EntityType
from therapy_workflow.mutations import (
    ANY_ENTITY,
    GuardKey,
    MutationController,
    MutationKind,
    MutationResult,
)
from therapy_workflow.tiers import parse_tier
from therapy_workflow.transitions import allowed_transitions, can_create_account, can_transition

ENQUIRIES: QueryKey = ("enquiries",)


class EnquiryWorkflow:
    """Admin actions on therapist applications: status, tier and account."""

    def __init__(
        self,
        api: AdminApiClient,
        controller: MutationController,
        *,
        tier_update_guard: str | None = None,
    ) -> None:
        self.api = api
        self.controller = controller
        self.cache = controller.cache
        self.tier_update_guard = tier_update_guard or settings.tier_update_guard
        self.cache.register_fetcher("enquiries", lambda key: self.api.list_enquiries())

    async def load(self) -> list[Enquiry]:
        return await self.cache.fetch(ENQUIRIES)

    def enquiries(self) -> list[Enquiry]:
        return self.cache.get(ENQUIRIES) or []

    def get(self, enquiry_id: str) -> Enquiry | None:
        return self.cache.peek("enquiries", enquiry_id)

    def allowed_statuses(self, enquiry_id: str) -> list[str]:
        enquiry = self.get(enquiry_id)
        if enquiry is None:
            return []
        return allowed_transitions(EntityType.ENQUIRY, enquiry.status)

    def _lookup(self, kind: MutationKind, enquiry_id: str) -> Enquiry | MutationResult:
        enquiry = self.get(enquiry_id)
        if enquiry is None:
            return self.controller.reject(
                kind, enquiry_id, EntityNotFound(f"Enquiry {enquiry_id} not found")
            )
        return enquiry

    async def update_status(self, enquiry_id: str, status: str) -> MutationResult:
        kind = MutationKind.ENQUIRY_STATUS
        enquiry = self._lookup(kind, enquiry_id)
        if isinstance(enquiry, MutationResult):
            return enquiry

        try:
            requested = EnquiryStatus(status)
        except ValueError:
            return self.controller.reject(
                kind, enquiry_id, ValidationError(f"Unknown enquiry status '{status}'")
            )
        if requested == enquiry.status:
            return self.controller.reject(
                kind, enquiry_id, ValidationError(f"Enquiry is already '{requested}'")
            )
        if not can_transition(EntityType.ENQUIRY, enquiry.status, requested):
            return self.controller.reject(
                kind,
                enquiry_id,
                InvalidTransition.between(EntityType.ENQUIRY.value, enquiry.status, requested),
            )

        return await self.controller.mutate(
            kind,
            "enquiries",
            enquiry_id,
            update={"status": requested},
            dispatch=lambda: self.api.update_enquiry_status(enquiry_id, requested.value),
            invalidates=("enquiries", "assignments"),
        )

    def tier_guard_key(self, enquiry_id: str) -> GuardKey:
        if self.tier_update_guard == "global":
            return (MutationKind.ENQUIRY_TIER.value, ANY_ENTITY)
        return (MutationKind.ENQUIRY_TIER.value, enquiry_id)

    def tier_update_pending(self, enquiry_id: str) -> bool:
        """Whether the tier control for ``enquiry_id`` should be disabled."""
        return self.controller.is_pending(self.tier_guard_key(enquiry_id))

    async def update_tier(self, enquiry_id: str, tier: str) -> MutationResult:
        kind = MutationKind.ENQUIRY_TIER
        enquiry = self._lookup(kind, enquiry_id)
        if isinstance(enquiry, MutationResult):
            return enquiry

        try:
            parsed = parse_tier(tier)
        except WorkflowError as e:
            return self.controller.reject(kind, enquiry_id, e)

        return await self.controller.mutate(
            kind,
            "enquiries",
            enquiry_id,
            update={"therapist_tier": parsed},
            dispatch=lambda: self.api.update_enquiry_tier(enquiry_id, parsed.value),
            invalidates=("enquiries", "therapists"),
            guard_key=self.tier_guard_key(enquiry_id),
        )

    async def create_account(self, enquiry_id: str) -> MutationResult:
        """
        Create the login for an approved enquiry. ``result.response`` carries
        the temporary password when a new account was made.
        """
        kind = MutationKind.CREATE_ACCOUNT
        enquiry = self._lookup(kind, enquiry_id)
        if isinstance(enquiry, MutationResult):
            return enquiry
        if not can_create_account(enquiry):
            return self.controller.reject(
                kind,
                enquiry_id,
                AccountNotEligible(
                    "Only approved enquiries without an account can have one created"
                ),
            )

        return await self.controller.mutate(
            kind,
            "enquiries",
            enquiry_id,
            update={"account_created": True},
            dispatch=lambda: self.api.create_therapist_account(enquiry),
            extract=lambda response: self.cache.committed("enquiries", enquiry_id).model_copy(
                update={"account_created": True}
            ),
            invalidates=("enquiries", "assignments", "therapists"),
        )

    async def reset_password(self, enquiry_id: str) -> MutationResult:
        kind = MutationKind.RESET_PASSWORD
        enquiry = self._lookup(kind, enquiry_id)
        if isinstance(enquiry, MutationResult):
            return enquiry
        if not enquiry.account_created:
            return self.controller.reject(
                kind, enquiry_id, ValidationError("This therapist has no account yet")
            )

        return await self.controller.mutate(
            kind,
            "enquiries",
            enquiry_id,
            dispatch=lambda: self.api.reset_therapist_password(enquiry.email),
            extract=lambda response: None,
        )
