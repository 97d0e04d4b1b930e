"""
Assignment notification emails.

Delivery runs as its own asyncio task after an assignment commits. Its
outcome is recorded on a ``NotificationRecord`` and never feeds back into
the assignment.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

import structlog

from therapy_workflow.config import settings
from therapy_workflow.database import get_db
from therapy_workflow.models import (
    Assignment,
    Client,
    NotificationRecord,
    NotificationStatus,
    Therapist,
)

log = structlog.get_logger()

EmailTransport = Callable[[str, str, str], Awaitable[None]]

# assignment id -> the delivery task still running for it
_notification_tasks: dict[str, asyncio.Task] = {}


async def _log_transport(to: str, subject: str, body: str) -> None:
    log.info("email_sent", to=to, subject=subject)


_transport: EmailTransport = _log_transport


def set_email_transport(transport: EmailTransport | None) -> None:
    """Install a delivery function; ``None`` restores the logging transport."""
    global _transport
    _transport = transport or _log_transport


async def send_email(to: str, subject: str, body: str) -> None:
    await _transport(to, subject, body)


async def send_assignment_emails(
    client: Client, therapist: Therapist, assignment: Assignment
) -> None:
    await send_email(
        client.email,
        "Your therapist has been assigned",
        f"Hello {client.name}, you have been matched with {therapist.name}. "
        "They will be in touch to arrange your first session.",
    )
    if not therapist.email:
        log.warning("therapist_has_no_email", therapist_id=therapist.id)
        return
    await send_email(
        therapist.email,
        "New client assignment",
        f"Hello {therapist.name}, {client.name} has been assigned to you "
        f"(assignment {assignment.id}).",
    )


async def _deliver(assignment_id: str) -> None:
    db = get_db()
    record = db.notifications.get(assignment_id)
    assignment = db.assignments.get(assignment_id)
    if record is None or assignment is None:
        return

    client = db.clients.get(assignment.client_id)
    therapist = db.therapists.get(assignment.therapist_id)
    if client is None or therapist is None:
        record.status = NotificationStatus.FAILED
        record.last_error = "client or therapist no longer exists"
        db.notifications.put(assignment_id, record)
        return

    record.status = NotificationStatus.PENDING
    for attempt in range(1, settings.notification_max_attempts + 1):
        record.attempts += 1
        try:
            await send_assignment_emails(client, therapist, assignment)
        except Exception as e:
            record.last_error = str(e)
            log.warning(
                "assignment_notification_failed",
                assignment_id=assignment_id,
                attempt=attempt,
                error=str(e),
            )
            if attempt < settings.notification_max_attempts:
                await asyncio.sleep(settings.notification_retry_delay_seconds)
            continue

        record.status = NotificationStatus.SENT
        record.sent_at = datetime.now(UTC)
        record.last_error = None
        db.notifications.put(assignment_id, record)
        log.info("assignment_notification_sent", assignment_id=assignment_id)
        return

    record.status = NotificationStatus.FAILED
    db.notifications.put(assignment_id, record)
    log.error(
        "assignment_notification_gave_up",
        assignment_id=assignment_id,
        attempts=record.attempts,
    )


def dispatch_assignment_notification(assignment_id: str) -> NotificationRecord:
    """
    Record a pending notification and start delivering it in the background.

    While a delivery for the assignment is still running, no second task is
    started and the current record is returned as is.
    """
    db = get_db()
    running = _notification_tasks.get(assignment_id)
    if running is not None and not running.done():
        log.info("assignment_notification_in_progress", assignment_id=assignment_id)
        return db.notifications.get(assignment_id).model_copy()

    record = db.notifications.get(assignment_id) or NotificationRecord(
        assignment_id=assignment_id
    )
    record.status = NotificationStatus.PENDING
    db.notifications.put(assignment_id, record)

    task = asyncio.create_task(_deliver(assignment_id))
    _notification_tasks[assignment_id] = task
    task.add_done_callback(lambda t: _forget_task(assignment_id, t))
    return record.model_copy()


def _forget_task(assignment_id: str, task: asyncio.Task) -> None:
    if _notification_tasks.get(assignment_id) is task:
        del _notification_tasks[assignment_id]


async def wait_for_notifications() -> None:
    if _notification_tasks:
        await asyncio.gather(*list(_notification_tasks.values()), return_exceptions=True)


def clear_notification_tasks() -> None:
    """Cancel outstanding deliveries. Used between tests."""
    for task in list(_notification_tasks.values()):
        task.cancel()
    _notification_tasks.clear()
