from __future__ import annotations

import json
import secrets
from collections.abc import Iterator, MutableMapping
from pathlib import Path
from typing import Generic, TypeVar

from therapy_workflow.history import StatusHistoryStore
from therapy_workflow.models import (
    Assignment,
    AssignTherapistResponse,
    Client,
    ClientStatus,
    Enquiry,
    NotificationRecord,
    Therapist,
    TherapistStatus,
)

K = TypeVar("K")
V = TypeVar("V")


class InMemoryKeyValueDatabase(Generic[K, V]):
    """
    Simple in-memory key/value database.
    """

    def __init__(self) -> None:
        self._store: MutableMapping[K, V] = {}

    def put(self, key: K, value: V) -> None:
        self._store[key] = value

    def get(self, key: K) -> V | None:
        return self._store.get(key)

    def all(self) -> list[V]:
        return list(self._store.values())

    def clear(self) -> None:
        self._store.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._store

    def __iter__(self) -> Iterator[V]:
        return iter(self._store.values())

    def __len__(self) -> int:
        return len(self._store)


class Database:
    """Container for all database instances."""

    def __init__(self) -> None:
        self.enquiries: InMemoryKeyValueDatabase[str, Enquiry] = (
            InMemoryKeyValueDatabase()
        )
        self.clients: InMemoryKeyValueDatabase[str, Client] = (
            InMemoryKeyValueDatabase()
        )
        self.therapists: InMemoryKeyValueDatabase[str, Therapist] = (
            InMemoryKeyValueDatabase()
        )
        self.assignments: InMemoryKeyValueDatabase[str, Assignment] = (
            InMemoryKeyValueDatabase()
        )
        self.notifications: InMemoryKeyValueDatabase[str, NotificationRecord] = (
            InMemoryKeyValueDatabase()
        )
        # Idempotency-Key -> response of the request that first used it
        self.idempotency: InMemoryKeyValueDatabase[str, AssignTherapistResponse] = (
            InMemoryKeyValueDatabase()
        )
        # Email -> current temporary password
        self.accounts: InMemoryKeyValueDatabase[str, str] = InMemoryKeyValueDatabase()
        self.history = StatusHistoryStore()

    def clear(self) -> None:
        self.enquiries.clear()
        self.clients.clear()
        self.therapists.clear()
        self.assignments.clear()
        self.notifications.clear()
        self.idempotency.clear()
        self.accounts.clear()
        self.history.clear()

    def get_clients_by_status(self, status: str | None) -> list[Client]:
        """All clients, or those in ``status``. ``"all"`` means no filter."""
        if status in (None, "", "all"):
            return self.clients.all()
        return [client for client in self.clients.all() if client.status == status]

    def get_available_therapists(self) -> list[Therapist]:
        return [
            therapist
            for therapist in self.therapists.all()
            if therapist.status == TherapistStatus.AVAILABLE and therapist.capacity > 0
        ]

    def get_assignments_for_client(self, client_id: str) -> list[Assignment]:
        """Assignments for a client, oldest first."""
        return [a for a in self.assignments.all() if a.client_id == client_id]

    def get_active_assignment(self, client_id: str) -> Assignment | None:
        client = self.clients.get(client_id)
        if client is None or client.status == ClientStatus.AWAITING_ASSIGNMENT:
            return None
        for assignment in reversed(self.get_assignments_for_client(client_id)):
            if assignment.therapist_id == client.assigned_therapist_id:
                return assignment
        return None


_db: Database | None = None


def get_db() -> Database:
    """Get the global database instance."""
    global _db
    if _db is None:
        _db = Database()
    return _db


def load_sample_data(db: Database | None = None) -> None:
    """Load sample data from sample_data.json into the database."""
    if db is None:
        db = get_db()

    sample_data_path = Path(__file__).parent.parent / "sample_data.json"
    with open(sample_data_path) as f:
        data = json.load(f)

    for enquiry_data in data["enquiries"]:
        enquiry = Enquiry(**enquiry_data)
        db.enquiries.put(enquiry.id, enquiry)
        if enquiry.account_created:
            db.accounts.put(enquiry.email, secrets.token_urlsafe(9))

    for client_data in data["clients"]:
        client = Client(**client_data)
        db.clients.put(client.id, client)

    for therapist_data in data["therapists"]:
        therapist = Therapist(**therapist_data)
        db.therapists.put(therapist.id, therapist)

    for assignment_data in data.get("assignments", []):
        assignment = Assignment(**assignment_data)
        db.assignments.put(assignment.id, assignment)
