from collections import defaultdict
from collections.abc import Iterator

from therapy_workflow.models import StatusHistoryEntry


class StatusHistoryStore:
    """
    Append-only log of status changes, grouped by entity id.

    There is no update or delete. Entries come back in the order they were
    appended.
    """

    def __init__(self) -> None:
        self._entries: dict[str, list[StatusHistoryEntry]] = defaultdict(list)
        self._count = 0

    def append(self, entry: StatusHistoryEntry) -> StatusHistoryEntry:
        self._entries[entry.entity_id].append(entry)
        self._count += 1
        return entry

    def for_entity(self, entity_id: str) -> list[StatusHistoryEntry]:
        return list(self._entries.get(entity_id, ()))

    def latest(self, entity_id: str) -> StatusHistoryEntry | None:
        entries = self._entries.get(entity_id)
        return entries[-1] if entries else None

    def clear(self) -> None:
        self._entries.clear()
        self._count = 0

    def __iter__(self) -> Iterator[StatusHistoryEntry]:
        for entries in self._entries.values():
            yield from entries

    def __len__(self) -> int:
        return self._count
