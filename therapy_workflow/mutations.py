"""
Optimistic mutations over the shared entity cache.

A mutation snapshots the visible entity, applies its tentative overlay at
once, dispatches the backend call and then either commits the server's
answer or drops the overlay. A keyed in-flight registry refuses a second
mutation with the same guard key while the first is outstanding.
"""

import asyncio
import itertools
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import structlog
from pydantic import BaseModel

from therapy_workflow.cache import EntityCache
from therapy_workflow.config import settings
from therapy_workflow.errors import (
    ConflictError,
    EntityNotFound,
    MutationInFlight,
    MutationTimeout,
    WorkflowError,
    user_message,
)
from therapy_workflow.history import StatusHistoryStore
from therapy_workflow.models import EntityType, HistoryAction, StatusHistoryEntry

log = structlog.get_logger()

GuardKey = tuple[str, str]

# Wildcard entity id for guards that span a whole collection
ANY_ENTITY = "*"


class MutationKind(StrEnum):
    ENQUIRY_STATUS = "enquiry_status"
    ENQUIRY_TIER = "enquiry_tier"
    CREATE_ACCOUNT = "create_account"
    RESET_PASSWORD = "reset_password"
    ASSIGN_THERAPIST = "assign_therapist"
    REVOKE_ASSIGNMENT = "revoke_assignment"
    CLIENT_STATUS = "client_status"


class MutationStatus(StrEnum):
    IDLE = "idle"
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"
    REJECTED = "rejected"  # refused before dispatch


FAILURE_MESSAGES: dict[MutationKind, str] = {
    MutationKind.ENQUIRY_STATUS: "Failed to update therapist status. Please try again.",
    MutationKind.ENQUIRY_TIER: "Failed to update therapist tier. Please try again.",
    MutationKind.CREATE_ACCOUNT: "Failed to create therapist account. Please try again.",
    MutationKind.RESET_PASSWORD: "Failed to reset password. Please try again.",
    MutationKind.ASSIGN_THERAPIST: "Failed to assign therapist. Please try again.",
    MutationKind.REVOKE_ASSIGNMENT: "Failed to revoke assignment. Please try again.",
    MutationKind.CLIENT_STATUS: "Failed to update client status. Please try again.",
}

ROOT_ENTITY_TYPES: dict[str, EntityType] = {
    "enquiries": EntityType.ENQUIRY,
    "clients": EntityType.CLIENT,
}


@dataclass
class MutationResult:
    kind: MutationKind
    entity_id: str
    status: MutationStatus
    value: Any = None
    response: Any = None
    error: WorkflowError | None = None
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == MutationStatus.SUCCESS

    def raise_for_error(self) -> "MutationResult":
        if self.error is not None:
            raise self.error
        return self


class MutationController:
    def __init__(
        self,
        cache: EntityCache,
        *,
        history: StatusHistoryStore | None = None,
        timeout: float | None = None,
        actor_id: str | None = None,
    ) -> None:
        self.cache = cache
        self.history = history if history is not None else StatusHistoryStore()
        self.timeout = settings.mutation_timeout_seconds if timeout is None else timeout
        self.actor_id = actor_id
        self._seq = itertools.count(1)
        self._in_flight: dict[GuardKey, asyncio.Task | None] = {}
        self._states: dict[GuardKey, MutationStatus] = {}

    # State the UI reads

    def status(self, key: GuardKey) -> MutationStatus:
        return self._states.get(key, MutationStatus.IDLE)

    def is_pending(self, key: GuardKey) -> bool:
        return key in self._in_flight

    def in_flight(self) -> list[GuardKey]:
        return list(self._in_flight)

    def cancel(self, key: GuardKey) -> bool:
        """Cancel the outstanding mutation for ``key``; it rolls back."""
        task = self._in_flight.get(key)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def reject(
        self, kind: MutationKind, entity_id: str, error: WorkflowError
    ) -> MutationResult:
        """Result for a mutation refused before anything was written or sent."""
        log.info(
            "mutation_rejected",
            kind=kind.value,
            entity_id=entity_id,
            error=error.code,
            reason=error.message,
        )
        return MutationResult(
            kind=kind,
            entity_id=entity_id,
            status=MutationStatus.REJECTED,
            error=error,
            message=user_message(error, FAILURE_MESSAGES[kind]),
        )

    async def mutate(
        self,
        kind: MutationKind,
        root: str,
        entity_id: str,
        *,
        dispatch: Callable[[], Awaitable[Any]],
        update: dict[str, Any] | None = None,
        extract: Callable[[Any], BaseModel | None] | None = None,
        invalidates: Iterable[str] = (),
        guard_key: GuardKey | None = None,
        actor_id: str | None = None,
        action: HistoryAction = HistoryAction.STATUS_CHANGE,
        detail: str | None = None,
    ) -> MutationResult:
        key = guard_key or (kind.value, entity_id)
        invalidates = tuple(invalidates)

        if key in self._in_flight:
            return self.reject(
                kind,
                entity_id,
                MutationInFlight(
                    f"A {kind.value.replace('_', ' ')} request is already in progress"
                ),
            )

        current = self.cache.peek(root, entity_id)
        if update is not None and current is None:
            return self.reject(
                kind, entity_id, EntityNotFound(f"{root} entry {entity_id} is not loaded")
            )
        snapshot = current.model_copy(deep=True) if current is not None else None

        seq = next(self._seq)
        self._in_flight[key] = asyncio.current_task()
        self._states[key] = MutationStatus.PENDING
        try:
            cancelled = await self.cache.cancel_fetches(root)
            if update is not None:
                self.cache.apply_tentative(root, entity_id, seq, update)
            log.info("mutation_dispatched", kind=kind.value, entity_id=entity_id, seq=seq)

            try:
                response = await asyncio.wait_for(dispatch(), timeout=self.timeout)
            except TimeoutError:
                error = MutationTimeout(f"No response after {self.timeout:g}s")
                return self._roll_back(
                    kind, root, entity_id, seq, key, error, snapshot, invalidates, cancelled
                )
            except WorkflowError as e:
                return self._roll_back(
                    kind, root, entity_id, seq, key, e, snapshot, invalidates, cancelled
                )
            except (asyncio.CancelledError, Exception):
                self.cache.rollback(root, entity_id, seq)
                self._states[key] = MutationStatus.IDLE
                log.warning("mutation_aborted", kind=kind.value, entity_id=entity_id, seq=seq)
                raise

            value = extract(response) if extract is not None else response
            authoritative = value if isinstance(value, BaseModel) else None
            self.cache.commit(root, entity_id, seq, authoritative)
            self._record_history(
                root, entity_id, snapshot, authoritative, actor_id or self.actor_id, action, detail
            )
            self.cache.invalidate(*invalidates)
            self._states[key] = MutationStatus.SUCCESS
            log.info("mutation_committed", kind=kind.value, entity_id=entity_id, seq=seq)
            return MutationResult(
                kind=kind,
                entity_id=entity_id,
                status=MutationStatus.SUCCESS,
                value=value,
                response=response,
            )
        finally:
            self._in_flight.pop(key, None)

    def _roll_back(
        self,
        kind: MutationKind,
        root: str,
        entity_id: str,
        seq: int,
        key: GuardKey,
        error: WorkflowError,
        snapshot: BaseModel | None,
        invalidates: tuple[str, ...],
        cancelled: list,
    ) -> MutationResult:
        visible = self.cache.rollback(root, entity_id, seq)
        if isinstance(error, ConflictError):
            # server state differs from ours; converge after restoring the snapshot
            self.cache.invalidate(*(invalidates or (root,)))
        elif cancelled:
            self.cache.refetch_stale(root)

        self._states[key] = MutationStatus.ERROR
        log.warning(
            "mutation_rolled_back",
            kind=kind.value,
            entity_id=entity_id,
            seq=seq,
            error=error.code,
            status_code=error.status_code,
            restored_status=getattr(snapshot, "status", None),
        )
        return MutationResult(
            kind=kind,
            entity_id=entity_id,
            status=MutationStatus.ERROR,
            value=visible,
            error=error,
            message=user_message(error, FAILURE_MESSAGES[kind]),
        )

    def _record_history(
        self,
        root: str,
        entity_id: str,
        before: BaseModel | None,
        after: BaseModel | None,
        actor_id: str | None,
        action: HistoryAction,
        detail: str | None,
    ) -> None:
        entity_type = ROOT_ENTITY_TYPES.get(root)
        if entity_type is None or after is None:
            return
        from_status = getattr(before, "status", None)
        to_status = getattr(after, "status", None)
        if to_status is None:
            return
        if from_status == to_status and action == HistoryAction.STATUS_CHANGE:
            return
        self.history.append(
            StatusHistoryEntry(
                entity_id=entity_id,
                entity_type=entity_type,
                from_status=from_status,
                to_status=to_status,
                actor_id=actor_id,
                action=action,
                detail=detail,
            )
        )
