"""
Client-therapist assignment from the admin side.

``AssignmentCoordinator.assign`` validates against the cached client and
therapist pool and sends the assignment through the mutation controller. It
invalidates the client, therapist and assignment views once the server
confirms. Reassignment is allowed, but only against the assignment the
operator actually saw (``expectedTherapistId``). A session that lost a race
gets ``ClientAlreadyAssigned`` and is never silently overwritten.
"""

import asyncio
import uuid
from dataclasses import replace

import structlog

from therapy_workflow.admin_client import AdminApiClient
from therapy_workflow.cache import QueryKey
from therapy_workflow.errors import (
    ClientAlreadyAssigned,
    EntityNotFound,
    InvalidTransition,
    TherapistUnavailable,
    TransientError,
    ValidationError,
)
from therapy_workflow.models import (
    Assignment,
    AssignTherapistRequest,
    AssignTherapistResponse,
    Client,
    ClientStatus,
    EntityType,
    HistoryAction,
    NotificationRecord,
    Therapist,
)
from therapy_workflow.mutations import (
    GuardKey,
    MutationController,
    MutationKind,
    MutationResult,
    MutationStatus,
)
from therapy_workflow.ranking import MatchRankingClient, RecommendationSet
from therapy_workflow.transitions import ASSIGNABLE_STATUSES, can_transition

log = structlog.get_logger()

AVAILABLE_THERAPISTS: QueryKey = ("therapists", "available")
ASSIGNMENTS: QueryKey = ("assignments",)


def clients_key(status: str = "all") -> QueryKey:
    return ("clients", status)


class AssignmentCoordinator:
    def __init__(
        self,
        api: AdminApiClient,
        controller: MutationController,
        ranking: MatchRankingClient | None = None,
    ) -> None:
        self.api = api
        self.controller = controller
        self.cache = controller.cache
        self.ranking = ranking or MatchRankingClient(api)
        # (client, therapist, expected) -> Idempotency-Key of the unconfirmed attempt
        self._attempt_keys: dict[tuple[str, str, str | None], str] = {}

        self.cache.register_fetcher("clients", lambda key: self.api.list_clients(key[1]))
        self.cache.register_fetcher("therapists", lambda key: self.api.list_therapists(key[1]))
        self.cache.register_fetcher("assignments", lambda key: self.api.list_assignments())

    async def load(self, status: str = "all") -> None:
        # a reload may show a different server state than the unconfirmed attempts saw
        self._attempt_keys.clear()
        await asyncio.gather(
            self.cache.fetch(clients_key(status)),
            self.cache.fetch(AVAILABLE_THERAPISTS),
            self.cache.fetch(ASSIGNMENTS),
        )

    # Views

    def clients(self, status: str = "all") -> list[Client]:
        return self.cache.get(clients_key(status)) or []

    def get_client(self, client_id: str) -> Client | None:
        return self.cache.peek("clients", client_id)

    def available_therapists(self) -> list[Therapist]:
        return self.cache.get(AVAILABLE_THERAPISTS) or []

    def active_assignment(self, client_id: str) -> Assignment | None:
        client = self.get_client(client_id)
        if client is None or client.assigned_therapist_id is None:
            return None
        for assignment in reversed(self.cache.get(ASSIGNMENTS) or []):
            if (
                assignment.client_id == client_id
                and assignment.therapist_id == client.assigned_therapist_id
            ):
                return assignment
        return None

    def guard_key(self, client_id: str) -> GuardKey:
        """Assign and revoke for one client share a single in-flight slot."""
        return ("client_assignment", client_id)

    def assignment_pending(self, client_id: str) -> bool:
        return self.controller.is_pending(self.guard_key(client_id))

    def _forget_attempts(self, client_id: str) -> None:
        for attempt in [a for a in self._attempt_keys if a[0] == client_id]:
            del self._attempt_keys[attempt]

    def _available_therapist(self, therapist_id: str) -> Therapist | None:
        for therapist in self.available_therapists():
            if therapist.id == therapist_id and therapist.capacity > 0:
                return therapist
        return None

    # Mutations

    async def assign(
        self,
        client_id: str,
        therapist_id: str,
        *,
        ai_recommendation_used: bool = False,
        notes: str | None = None,
        actor_id: str | None = None,
    ) -> MutationResult:
        """
        Assign ``therapist_id`` to ``client_id``. On success ``result.value``
        is the ``Assignment``.
        """
        kind = MutationKind.ASSIGN_THERAPIST
        if not client_id or not therapist_id:
            return self.controller.reject(
                kind, client_id, ValidationError("Both a client and a therapist are required")
            )
        if self.assignment_pending(client_id):
            return self.controller.reject(
                kind,
                client_id,
                ClientAlreadyAssigned(
                    f"An assignment for client {client_id} is already in progress"
                ),
            )

        client = self.get_client(client_id)
        if client is None:
            return self.controller.reject(
                kind, client_id, EntityNotFound(f"Client {client_id} not found")
            )
        if client.status not in ASSIGNABLE_STATUSES:
            return self.controller.reject(
                kind,
                client_id,
                InvalidTransition.between(
                    EntityType.CLIENT.value, client.status, ClientStatus.ASSIGNED
                ),
            )

        if (
            client.status == ClientStatus.ASSIGNED
            and client.assigned_therapist_id == therapist_id
        ):
            log.info("assignment_unchanged", client_id=client_id, therapist_id=therapist_id)
            return MutationResult(
                kind=kind,
                entity_id=client_id,
                status=MutationStatus.SUCCESS,
                value=self.active_assignment(client_id),
            )

        if self._available_therapist(therapist_id) is None:
            return self.controller.reject(
                kind,
                client_id,
                TherapistUnavailable(f"Therapist {therapist_id} is not available"),
            )

        expected = client.assigned_therapist_id
        attempt = (client_id, therapist_id, expected)
        idempotency_key = self._attempt_keys.setdefault(attempt, uuid.uuid4().hex)
        request = AssignTherapistRequest(
            client_id=client_id,
            therapist_id=therapist_id,
            ai_recommendation_used=ai_recommendation_used,
            notes=notes,
            expected_therapist_id=expected,
        )

        result = await self.controller.mutate(
            kind,
            "clients",
            client_id,
            update={
                "status": ClientStatus.ASSIGNED,
                "assigned_therapist_id": therapist_id,
            },
            dispatch=lambda: self.api.assign_therapist(request, idempotency_key=idempotency_key),
            extract=lambda response: response.client,
            invalidates=("clients", "therapists", "assignments"),
            guard_key=self.guard_key(client_id),
            actor_id=actor_id,
            action=HistoryAction.REASSIGNMENT if expected else HistoryAction.ASSIGNMENT,
            detail=f"{expected} -> {therapist_id}" if expected else therapist_id,
        )

        # a transient failure keeps the key so an explicit retry is deduplicated
        if result.ok:
            self._forget_attempts(client_id)
        elif not isinstance(result.error, TransientError):
            self._attempt_keys.pop(attempt, None)

        if result.ok:
            response: AssignTherapistResponse = result.response
            log.info(
                "assignment_confirmed",
                client_id=client_id,
                therapist_id=therapist_id,
                assignment_id=response.assignment.id,
                email_sent=response.email_sent,
            )
            return replace(result, value=response.assignment)
        return result

    async def revoke(
        self, client_id: str, *, reason: str | None = None, actor_id: str | None = None
    ) -> MutationResult:
        """Explicitly end a client's assignment: ``assigned -> awaiting_assignment``."""
        kind = MutationKind.REVOKE_ASSIGNMENT
        client = self.get_client(client_id)
        if client is None:
            return self.controller.reject(
                kind, client_id, EntityNotFound(f"Client {client_id} not found")
            )
        if not can_transition(
            EntityType.CLIENT, client.status, ClientStatus.AWAITING_ASSIGNMENT, revoke=True
        ):
            return self.controller.reject(
                kind,
                client_id,
                InvalidTransition.between(
                    EntityType.CLIENT.value, client.status, ClientStatus.AWAITING_ASSIGNMENT
                ),
            )

        result = await self.controller.mutate(
            kind,
            "clients",
            client_id,
            update={
                "status": ClientStatus.AWAITING_ASSIGNMENT,
                "assigned_therapist_id": None,
            },
            dispatch=lambda: self.api.revoke_assignment(client_id, reason),
            invalidates=("clients", "therapists", "assignments"),
            guard_key=self.guard_key(client_id),
            actor_id=actor_id,
            action=HistoryAction.REVOCATION,
            detail=reason,
        )
        if result.ok:
            self._forget_attempts(client_id)
        return result

    async def activate(self, client_id: str, *, actor_id: str | None = None) -> MutationResult:
        """Mark an assigned client as active once therapy has started."""
        kind = MutationKind.CLIENT_STATUS
        client = self.get_client(client_id)
        if client is None:
            return self.controller.reject(
                kind, client_id, EntityNotFound(f"Client {client_id} not found")
            )
        if not can_transition(EntityType.CLIENT, client.status, ClientStatus.ACTIVE):
            return self.controller.reject(
                kind,
                client_id,
                InvalidTransition.between(
                    EntityType.CLIENT.value, client.status, ClientStatus.ACTIVE
                ),
            )

        result = await self.controller.mutate(
            kind,
            "clients",
            client_id,
            update={"status": ClientStatus.ACTIVE},
            dispatch=lambda: self.api.update_client_status(client_id, ClientStatus.ACTIVE.value),
            invalidates=("clients",),
            guard_key=self.guard_key(client_id),
            actor_id=actor_id,
        )
        if result.ok:
            self._forget_attempts(client_id)
        return result

    # Collaborators

    async def recommendations(self, client_id: str) -> RecommendationSet:
        return await self.ranking.recommend(client_id)

    async def retry_notification(self, assignment_id: str) -> NotificationRecord:
        return await self.api.retry_notification(assignment_id)
