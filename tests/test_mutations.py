import asyncio

import pytest

from therapy_workflow.cache import EntityCache
from therapy_workflow.enquiries import EnquiryWorkflow
from therapy_workflow.errors import (
    InvalidTransition,
    MutationInFlight,
    MutationTimeout,
    TransientError,
)
from therapy_workflow.models import Enquiry, EnquiryStatus, HistoryAction
from therapy_workflow.mutations import (
    FAILURE_MESSAGES,
    MutationController,
    MutationKind,
    MutationStatus,
)

ENQUIRIES = ("enquiries",)


async def settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


class FakeBackend:
    """Enquiry store whose responses can be held back."""

    def __init__(self, *enquiries: Enquiry) -> None:
        self.enquiries = {e.id: e for e in enquiries}
        self.gate = asyncio.Event()
        self.gate.set()
        self.fetch_gate = asyncio.Event()
        self.fetch_gate.set()
        self.fetches = 0
        self.tier_calls: list[tuple[str, str]] = []

    async def list_enquiries(self) -> list[Enquiry]:
        self.fetches += 1
        await self.fetch_gate.wait()
        return list(self.enquiries.values())

    async def update_enquiry_tier(self, enquiry_id: str, tier: str) -> Enquiry:
        self.tier_calls.append((enquiry_id, tier))
        await self.gate.wait()
        updated = self.enquiries[enquiry_id].model_copy(update={"therapist_tier": tier})
        self.enquiries[enquiry_id] = updated
        return updated

    async def set_status(self, enquiry_id: str, status: EnquiryStatus) -> Enquiry:
        await self.gate.wait()
        updated = self.enquiries[enquiry_id].model_copy(update={"status": status})
        self.enquiries[enquiry_id] = updated
        return updated


async def _cache_for(backend: FakeBackend) -> EntityCache:
    cache = EntityCache()
    cache.register_fetcher("enquiries", lambda key: backend.list_enquiries())
    await cache.fetch(ENQUIRIES)
    return cache


def _enquiry(enquiry_id: str = "e1", **kwargs) -> Enquiry:
    data = {"name": "Amelia Hart", "email": f"{enquiry_id}@example.com"}
    data.update(kwargs)
    return Enquiry(id=enquiry_id, **data)


@pytest.mark.asyncio
async def test_failed_mutation_restores_snapshot() -> None:
    backend = FakeBackend(_enquiry(status="under_review"))
    cache = await _cache_for(backend)
    controller = MutationController(cache, timeout=1.0)
    before = cache.peek("enquiries", "e1")

    async def fail():
        raise TransientError("Service unavailable", status_code=503)

    result = await controller.mutate(
        MutationKind.ENQUIRY_STATUS,
        "enquiries",
        "e1",
        update={"status": EnquiryStatus.APPROVED},
        dispatch=fail,
    )

    assert result.status == MutationStatus.ERROR
    assert isinstance(result.error, TransientError)
    assert result.message == FAILURE_MESSAGES[MutationKind.ENQUIRY_STATUS]
    assert cache.peek("enquiries", "e1") == before
    assert not cache.has_pending("enquiries", "e1")
    assert not controller.is_pending(("enquiry_status", "e1"))
    assert controller.status(("enquiry_status", "e1")) == MutationStatus.ERROR
    assert len(controller.history) == 0


@pytest.mark.asyncio
async def test_tentative_value_visible_while_pending() -> None:
    backend = FakeBackend(_enquiry(status="under_review"))
    backend.gate.clear()
    cache = await _cache_for(backend)
    controller = MutationController(cache, timeout=1.0, actor_id="admin-1")

    task = asyncio.create_task(
        controller.mutate(
            MutationKind.ENQUIRY_STATUS,
            "enquiries",
            "e1",
            update={"status": EnquiryStatus.APPROVED},
            dispatch=lambda: backend.set_status("e1", EnquiryStatus.APPROVED),
        )
    )
    await settle()

    assert cache.peek("enquiries", "e1").status == EnquiryStatus.APPROVED
    assert cache.committed("enquiries", "e1").status == EnquiryStatus.UNDER_REVIEW
    assert controller.is_pending(("enquiry_status", "e1"))
    assert controller.status(("enquiry_status", "e1")) == MutationStatus.PENDING

    backend.gate.set()
    result = await task

    assert result.ok
    assert cache.committed("enquiries", "e1").status == EnquiryStatus.APPROVED
    entry = controller.history.latest("e1")
    assert entry.from_status == "under_review"
    assert entry.to_status == "approved"
    assert entry.actor_id == "admin-1"


@pytest.mark.asyncio
async def test_single_flight_rejects_second_request() -> None:
    backend = FakeBackend(_enquiry(status="under_review"))
    backend.gate.clear()
    cache = await _cache_for(backend)
    controller = MutationController(cache, timeout=1.0)
    dispatched = []

    def dispatch():
        dispatched.append(1)
        return backend.set_status("e1", EnquiryStatus.APPROVED)

    first = asyncio.create_task(
        controller.mutate(
            MutationKind.ENQUIRY_STATUS,
            "enquiries",
            "e1",
            update={"status": EnquiryStatus.APPROVED},
            dispatch=dispatch,
        )
    )
    await settle()
    second = await controller.mutate(
        MutationKind.ENQUIRY_STATUS,
        "enquiries",
        "e1",
        update={"status": EnquiryStatus.REJECTED},
        dispatch=dispatch,
    )

    assert second.status == MutationStatus.REJECTED
    assert isinstance(second.error, MutationInFlight)
    assert len(dispatched) == 1
    assert cache.peek("enquiries", "e1").status == EnquiryStatus.APPROVED

    backend.gate.set()
    assert (await first).ok
    assert not controller.in_flight()


@pytest.mark.asyncio
async def test_timeout_rolls_back() -> None:
    backend = FakeBackend(_enquiry(status="under_review"))
    backend.gate.clear()
    cache = await _cache_for(backend)
    controller = MutationController(cache, timeout=0.05)

    result = await controller.mutate(
        MutationKind.ENQUIRY_STATUS,
        "enquiries",
        "e1",
        update={"status": EnquiryStatus.APPROVED},
        dispatch=lambda: backend.set_status("e1", EnquiryStatus.APPROVED),
    )

    assert result.status == MutationStatus.ERROR
    assert isinstance(result.error, MutationTimeout)
    assert result.message == FAILURE_MESSAGES[MutationKind.ENQUIRY_STATUS]
    assert cache.peek("enquiries", "e1").status == EnquiryStatus.UNDER_REVIEW
    assert not controller.is_pending(("enquiry_status", "e1"))


@pytest.mark.asyncio
async def test_cancelled_mutation_rolls_back_and_reraises() -> None:
    backend = FakeBackend(_enquiry(status="under_review"))
    backend.gate.clear()
    cache = await _cache_for(backend)
    controller = MutationController(cache, timeout=1.0)

    task = asyncio.create_task(
        controller.mutate(
            MutationKind.ENQUIRY_STATUS,
            "enquiries",
            "e1",
            update={"status": EnquiryStatus.APPROVED},
            dispatch=lambda: backend.set_status("e1", EnquiryStatus.APPROVED),
        )
    )
    await settle()
    assert controller.cancel(("enquiry_status", "e1"))

    with pytest.raises(asyncio.CancelledError):
        await task

    assert cache.peek("enquiries", "e1").status == EnquiryStatus.UNDER_REVIEW
    assert not controller.is_pending(("enquiry_status", "e1"))
    assert controller.status(("enquiry_status", "e1")) == MutationStatus.IDLE
    assert not controller.cancel(("enquiry_status", "e1"))


@pytest.mark.asyncio
async def test_later_issued_mutation_wins() -> None:
    backend = FakeBackend(_enquiry(status="under_review"))
    cache = await _cache_for(backend)
    controller = MutationController(cache, timeout=1.0)
    first_gate = asyncio.Event()
    second_gate = asyncio.Event()

    async def first_dispatch():
        await first_gate.wait()
        return _enquiry(status="approved")

    async def second_dispatch():
        await second_gate.wait()
        raise TransientError("Bad gateway", status_code=502)

    first = asyncio.create_task(
        controller.mutate(
            MutationKind.ENQUIRY_STATUS,
            "enquiries",
            "e1",
            update={"status": EnquiryStatus.APPROVED},
            dispatch=first_dispatch,
            guard_key=("operator_a", "e1"),
        )
    )
    await settle()
    second = asyncio.create_task(
        controller.mutate(
            MutationKind.ENQUIRY_STATUS,
            "enquiries",
            "e1",
            update={"status": EnquiryStatus.REJECTED},
            dispatch=second_dispatch,
            guard_key=("operator_b", "e1"),
        )
    )
    await settle()
    assert cache.peek("enquiries", "e1").status == EnquiryStatus.REJECTED

    first_gate.set()
    assert (await first).ok
    # the second tentative value still shadows the committed one
    assert cache.committed("enquiries", "e1").status == EnquiryStatus.APPROVED
    assert cache.peek("enquiries", "e1").status == EnquiryStatus.REJECTED

    second_gate.set()
    result = await second
    assert result.status == MutationStatus.ERROR
    assert cache.peek("enquiries", "e1").status == EnquiryStatus.APPROVED
    assert result.value.status == EnquiryStatus.APPROVED


@pytest.mark.asyncio
async def test_refetch_keeps_pending_overlay() -> None:
    backend = FakeBackend(_enquiry(status="under_review"))
    backend.gate.clear()
    cache = await _cache_for(backend)
    controller = MutationController(cache, timeout=1.0)

    task = asyncio.create_task(
        controller.mutate(
            MutationKind.ENQUIRY_STATUS,
            "enquiries",
            "e1",
            update={"status": EnquiryStatus.APPROVED},
            dispatch=lambda: backend.set_status("e1", EnquiryStatus.APPROVED),
        )
    )
    await settle()
    await cache.fetch(ENQUIRIES)
    assert cache.peek("enquiries", "e1").status == EnquiryStatus.APPROVED

    backend.gate.set()
    assert (await task).ok


@pytest.mark.asyncio
async def test_mutation_cancels_slow_refetch() -> None:
    backend = FakeBackend(_enquiry(status="under_review"))
    cache = await _cache_for(backend)
    controller = MutationController(cache, timeout=1.0)

    backend.fetch_gate.clear()
    cache.invalidate("enquiries")
    await settle()
    assert backend.fetches == 2

    result = await controller.mutate(
        MutationKind.ENQUIRY_STATUS,
        "enquiries",
        "e1",
        update={"status": EnquiryStatus.APPROVED},
        dispatch=lambda: backend.set_status("e1", EnquiryStatus.APPROVED),
    )
    assert result.ok

    # the stale read never lands on top of the committed value
    backend.fetch_gate.set()
    await cache.wait_idle()
    assert cache.peek("enquiries", "e1").status == EnquiryStatus.APPROVED
    assert cache.is_stale(ENQUIRIES)


@pytest.mark.asyncio
async def test_conflict_invalidates_dependent_roots() -> None:
    backend = FakeBackend(_enquiry(status="under_review"))
    cache = await _cache_for(backend)
    controller = MutationController(cache, timeout=1.0)

    async def conflict():
        raise InvalidTransition("Cannot move enquiry", status_code=409)

    result = await controller.mutate(
        MutationKind.ENQUIRY_STATUS,
        "enquiries",
        "e1",
        update={"status": EnquiryStatus.APPROVED},
        dispatch=conflict,
        invalidates=("enquiries",),
    )
    await cache.wait_idle()

    assert result.status == MutationStatus.ERROR
    assert result.message == "Cannot move enquiry"
    assert backend.fetches == 2
    assert not cache.is_stale(ENQUIRIES)


@pytest.mark.asyncio
async def test_history_grows_only_with_committed_transitions() -> None:
    backend = FakeBackend(_enquiry(status="enquiry_received"))
    cache = await _cache_for(backend)
    controller = MutationController(cache, timeout=1.0)

    async def fail():
        raise TransientError("boom")

    steps = [
        (EnquiryStatus.UNDER_REVIEW, True),
        (EnquiryStatus.PENDING_DOCUMENTS, False),
        (EnquiryStatus.PENDING_DOCUMENTS, True),
        (EnquiryStatus.UNDER_REVIEW, True),
    ]
    lengths = []
    for status, succeeds in steps:
        await controller.mutate(
            MutationKind.ENQUIRY_STATUS,
            "enquiries",
            "e1",
            update={"status": status},
            dispatch=(lambda s=status: backend.set_status("e1", s)) if succeeds else fail,
        )
        lengths.append(len(controller.history.for_entity("e1")))

    assert lengths == [1, 1, 2, 3]
    assert [e.to_status for e in controller.history.for_entity("e1")] == [
        "under_review",
        "pending_documents",
        "under_review",
    ]
    assert all(e.action == HistoryAction.STATUS_CHANGE for e in controller.history)


@pytest.mark.asyncio
async def test_tier_update_single_flight_per_enquiry() -> None:
    backend = FakeBackend(_enquiry("e1", status="under_review"), _enquiry("e2"))
    backend.gate.clear()
    cache = EntityCache()
    controller = MutationController(cache, timeout=1.0)
    workflow = EnquiryWorkflow(backend, controller, tier_update_guard="entity")
    await workflow.load()

    first = asyncio.create_task(workflow.update_tier("e1", "psychologist"))
    await settle()
    assert workflow.tier_update_pending("e1")
    assert not workflow.tier_update_pending("e2")

    repeat = await workflow.update_tier("e1", "specialist")
    assert repeat.status == MutationStatus.REJECTED
    assert isinstance(repeat.error, MutationInFlight)
    assert backend.tier_calls == [("e1", "psychologist")]

    other = asyncio.create_task(workflow.update_tier("e2", "counsellor"))
    await settle()
    assert backend.tier_calls == [("e1", "psychologist"), ("e2", "counsellor")]

    backend.gate.set()
    assert (await first).ok
    assert (await other).ok
    assert workflow.get("e1").therapist_tier == "psychologist"
    await cache.wait_idle()


@pytest.mark.asyncio
async def test_tier_update_global_guard() -> None:
    backend = FakeBackend(_enquiry("e1"), _enquiry("e2"))
    backend.gate.clear()
    cache = EntityCache()
    controller = MutationController(cache, timeout=1.0)
    workflow = EnquiryWorkflow(backend, controller, tier_update_guard="global")
    await workflow.load()

    first = asyncio.create_task(workflow.update_tier("e1", "psychologist"))
    await settle()
    assert workflow.tier_update_pending("e2")

    blocked = await workflow.update_tier("e2", "counsellor")
    assert blocked.status == MutationStatus.REJECTED
    assert backend.tier_calls == [("e1", "psychologist")]

    backend.gate.set()
    assert (await first).ok
    assert not workflow.tier_update_pending("e2")
    assert (await workflow.update_tier("e2", "counsellor")).ok
    await cache.wait_idle()
