from dataclasses import dataclass

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

import therapy_workflow.database
from therapy_workflow import api, notifier
from therapy_workflow.admin_client import AdminApiClient
from therapy_workflow.api import create_app
from therapy_workflow.assignment import AssignmentCoordinator
from therapy_workflow.cache import EntityCache
from therapy_workflow.config import settings
from therapy_workflow.database import load_sample_data
from therapy_workflow.enquiries import EnquiryWorkflow
from therapy_workflow.mutations import MutationController


@pytest_asyncio.fixture(autouse=True)
def reset_db(monkeypatch: pytest.MonkeyPatch):
    """Reset database, locks and background deliveries before each test."""
    notifier.clear_notification_tasks()
    notifier.set_email_transport(None)
    api._assignment_locks.clear()
    monkeypatch.setattr(settings, "notification_retry_delay_seconds", 0.0)

    therapy_workflow.database._db = None
    load_sample_data()
    yield
    notifier.set_email_transport(None)


@pytest_asyncio.fixture
async def client():
    """
    Test fixture that creates an async client for the API.
    """
    app = create_app()
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as async_client:
        yield async_client
        await notifier.wait_for_notifications()


@dataclass
class AdminSession:
    """One operator's view: its own cache, controller and workflows."""

    api: AdminApiClient
    cache: EntityCache
    controller: MutationController
    enquiries: EnquiryWorkflow
    assignments: AssignmentCoordinator


def build_session(
    http: AsyncClient, *, actor_id: str = "admin-1", tier_update_guard: str | None = None
) -> AdminSession:
    admin_api = AdminApiClient(http, actor_id=actor_id)
    cache = EntityCache()
    controller = MutationController(cache, timeout=2.0, actor_id=actor_id)
    return AdminSession(
        api=admin_api,
        cache=cache,
        controller=controller,
        enquiries=EnquiryWorkflow(admin_api, controller, tier_update_guard=tier_update_guard),
        assignments=AssignmentCoordinator(admin_api, controller),
    )


@pytest_asyncio.fixture
async def session(client: AsyncClient):
    admin = build_session(client)
    await admin.enquiries.load()
    await admin.assignments.load()
    yield admin
    await admin.cache.wait_idle()
    admin.cache.clear()


@pytest.fixture
def make_session(client: AsyncClient):
    """Factory for additional admin sessions sharing the same backend."""
    return lambda **kwargs: build_session(client, **kwargs)
