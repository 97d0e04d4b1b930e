"""
Shared entity cache for the admin views.

Collections are keyed by a query key tuple whose first element is the root,
e.g. ``("clients", "awaiting_assignment")``. Each entity is held once per
``(root, id)`` as an ``EntityLog``: the committed value last confirmed by
the server plus the tentative overlays of mutations still in flight. Views
read the visible value; only ``MutationController`` calls the reducers
``apply_tentative``, ``commit`` and ``rollback``.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from pydantic import BaseModel

from therapy_workflow.errors import WorkflowError

log = structlog.get_logger()

QueryKey = tuple[str, ...]
Fetcher = Callable[[QueryKey], Awaitable[list[BaseModel]]]


class EntityLog:
    def __init__(self, committed: BaseModel) -> None:
        self.committed = committed
        # mutation sequence number -> field overlay, applied in issue order
        self.pending: dict[int, dict[str, Any]] = {}

    @property
    def visible(self) -> BaseModel:
        if not self.pending:
            return self.committed
        merged: dict[str, Any] = {}
        for seq in sorted(self.pending):
            merged.update(self.pending[seq])
        return self.committed.model_copy(update=merged)


class EntityCache:
    def __init__(self) -> None:
        self._logs: dict[tuple[str, str], EntityLog] = {}
        self._collections: dict[QueryKey, list[str]] = {}
        self._stale: set[QueryKey] = set()
        self._fetchers: dict[str, Fetcher] = {}
        self._fetch_tasks: dict[QueryKey, asyncio.Task] = {}

    def register_fetcher(self, root: str, fetcher: Fetcher) -> None:
        self._fetchers[root] = fetcher

    # Reads

    def get(self, key: QueryKey) -> list[BaseModel] | None:
        ids = self._collections.get(key)
        if ids is None:
            return None
        return [self._logs[(key[0], entity_id)].visible for entity_id in ids]

    def peek(self, root: str, entity_id: str) -> BaseModel | None:
        entry = self._logs.get((root, entity_id))
        return entry.visible if entry else None

    def committed(self, root: str, entity_id: str) -> BaseModel | None:
        entry = self._logs.get((root, entity_id))
        return entry.committed if entry else None

    def has_pending(self, root: str, entity_id: str) -> bool:
        entry = self._logs.get((root, entity_id))
        return bool(entry and entry.pending)

    def is_stale(self, key: QueryKey) -> bool:
        return key in self._stale

    def keys(self, root: str | None = None) -> list[QueryKey]:
        return [key for key in self._collections if root is None or key[0] == root]

    # Fetching

    async def fetch(self, key: QueryKey) -> list[BaseModel]:
        fetcher = self._fetchers.get(key[0])
        if fetcher is None:
            raise LookupError(f"No fetcher registered for '{key[0]}'")
        items = await fetcher(key)
        self._store(key, items)
        return self.get(key) or []

    def _store(self, key: QueryKey, items: list[BaseModel]) -> None:
        root = key[0]
        ids = []
        for item in items:
            entity_id = item.id
            entry = self._logs.get((root, entity_id))
            if entry is None:
                self._logs[(root, entity_id)] = EntityLog(item)
            else:
                # pending overlays survive a refetch
                entry.committed = item
            ids.append(entity_id)
        self._collections[key] = ids
        self._stale.discard(key)

    def invalidate(self, *roots: str) -> list[asyncio.Task]:
        """Mark every collection under ``roots`` stale and refetch it in the background."""
        tasks = []
        for key in self.keys():
            if key[0] in roots:
                self._stale.add(key)
                if key[0] in self._fetchers:
                    tasks.append(self._schedule_refetch(key))
        return tasks

    def refetch_stale(self, root: str) -> list[asyncio.Task]:
        return [
            self._schedule_refetch(key)
            for key in self.keys(root)
            if key in self._stale and key not in self._fetch_tasks and root in self._fetchers
        ]

    def _schedule_refetch(self, key: QueryKey) -> asyncio.Task:
        existing = self._fetch_tasks.get(key)
        if existing is not None and not existing.done():
            existing.cancel()

        task = asyncio.create_task(self._refetch(key))
        self._fetch_tasks[key] = task

        def _forget(done: asyncio.Task, key: QueryKey = key) -> None:
            if self._fetch_tasks.get(key) is done:
                del self._fetch_tasks[key]

        task.add_done_callback(_forget)
        return task

    async def _refetch(self, key: QueryKey) -> None:
        try:
            await self.fetch(key)
        except WorkflowError as e:
            log.warning("cache_refetch_failed", key=key, error=e.code)

    async def cancel_fetches(self, root: str) -> list[QueryKey]:
        """Cancel in-flight refetches under ``root`` so they can't clobber a tentative write."""
        cancelled = {
            key: task
            for key, task in self._fetch_tasks.items()
            if key[0] == root and not task.done()
        }
        for task in cancelled.values():
            task.cancel()
        if cancelled:
            await asyncio.gather(*cancelled.values(), return_exceptions=True)
            log.debug("cache_fetches_cancelled", keys=list(cancelled))
        return list(cancelled)

    async def wait_idle(self) -> None:
        while True:
            running = [task for task in self._fetch_tasks.values() if not task.done()]
            if not running:
                return
            await asyncio.gather(*running, return_exceptions=True)

    # Reducers (MutationController only)

    def apply_tentative(
        self, root: str, entity_id: str, seq: int, update: dict[str, Any]
    ) -> BaseModel:
        entry = self._logs[(root, entity_id)]
        entry.pending[seq] = dict(update)
        return entry.visible

    def commit(
        self, root: str, entity_id: str, seq: int, value: BaseModel | None
    ) -> BaseModel | None:
        entry = self._logs.get((root, entity_id))
        if entry is None:
            if value is None:
                return None
            entry = self._logs[(root, entity_id)] = EntityLog(value)
        entry.pending.pop(seq, None)
        if value is not None:
            entry.committed = value
        return entry.visible

    def rollback(self, root: str, entity_id: str, seq: int) -> BaseModel | None:
        entry = self._logs.get((root, entity_id))
        if entry is None:
            return None
        entry.pending.pop(seq, None)
        return entry.visible

    def clear(self) -> None:
        for task in self._fetch_tasks.values():
            task.cancel()
        self._fetch_tasks.clear()
        self._logs.clear()
        self._collections.clear()
        self._stale.clear()
