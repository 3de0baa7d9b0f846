"""Append-only keyed record store interface and in-memory implementation.

The engine needs four primitives from its persistence layer:

- put_if_absent: create a record only if its key is unused (idempotent retries)
- update: merge a patch into an existing record
- get / query: read records back
- subscribe: a stream of result sets that re-emits after every write

Records are plain JSON-compatible dicts; typed models are dumped with
``model_dump(mode="json")`` before writing and re-validated on read.
"""

from __future__ import annotations

import asyncio
import copy
from collections import defaultdict, deque
from collections.abc import AsyncIterator, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from carewatch.core.exceptions import RecordNotFoundError
from carewatch.core.logging import get_logger

logger = get_logger(__name__)

COLLECTION_ALERTS = "alerts"
COLLECTION_SYSTEM_NOTIFICATIONS = "systemNotifications"
COLLECTION_STREAM_SESSIONS = "streamSessions"


@dataclass(frozen=True, slots=True)
class Query:
    """Equality-filtered, optionally ordered and limited view of a collection."""

    collection: str
    where: Mapping[str, Any] = field(default_factory=dict)
    order_by: str | None = None
    descending: bool = False
    limit: int | None = None

    def matches(self, record: Mapping[str, Any]) -> bool:
        return all(record.get(key) == value for key, value in self.where.items())

    def apply(self, records: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
        """Filter, sort and limit records, returning deep copies."""
        selected = [copy.deepcopy(dict(r)) for r in records if self.matches(r)]
        if self.order_by is not None:
            order_by = self.order_by
            present = [r for r in selected if r.get(order_by) is not None]
            missing = [r for r in selected if r.get(order_by) is None]
            # id breaks ties deterministically; missing values always sort last
            present.sort(
                key=lambda r: (r[order_by], str(r.get("id", ""))),
                reverse=self.descending,
            )
            selected = present + missing
        if self.limit is not None:
            selected = selected[: self.limit]
        return selected


@runtime_checkable
class RecordStore(Protocol):
    """Protocol for the append-only keyed store used by the engine."""

    async def put_if_absent(
        self, collection: str, record_id: str, record: Mapping[str, Any]
    ) -> bool:
        """Create a record. Returns False without writing if the key exists."""
        ...

    async def update(
        self, collection: str, record_id: str, patch: Mapping[str, Any]
    ) -> dict[str, Any]:
        """Merge a patch into an existing record and return the result.

        Raises:
            RecordNotFoundError: If no record exists for the key
        """
        ...

    async def get(self, collection: str, record_id: str) -> dict[str, Any] | None: ...

    async def query(self, query: Query) -> list[dict[str, Any]]: ...

    def subscribe(self, query: Query) -> AsyncIterator[list[dict[str, Any]]]:
        """Yield the current result set, then again after each collection write."""
        ...


class InMemoryRecordStore:
    """Single-process RecordStore backed by dicts.

    Every operation yields to the event loop once before touching data, the
    way a network round trip would, so concurrent callers interleave like they
    do against a real store.
    """

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self._subscribers: dict[str, set[asyncio.Queue[None]]] = defaultdict(set)
        self._faults: dict[str, deque[Exception]] = defaultdict(deque)

    def fail_next(self, operation: str, error: Exception, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``error``.

        Args:
            operation: One of put_if_absent, update, get, query
            error: Exception instance to raise
            times: Number of consecutive calls that fail
        """
        for _ in range(times):
            self._faults[operation].append(error)

    def subscriber_count(self, collection: str) -> int:
        return len(self._subscribers[collection])

    async def _enter(self, operation: str) -> None:
        await asyncio.sleep(0)
        faults = self._faults[operation]
        if faults:
            raise faults.popleft()

    def _notify(self, collection: str) -> None:
        for queue in self._subscribers[collection]:
            queue.put_nowait(None)

    async def put_if_absent(
        self, collection: str, record_id: str, record: Mapping[str, Any]
    ) -> bool:
        await self._enter("put_if_absent")
        docs = self._collections[collection]
        if record_id in docs:
            logger.debug(f"put_if_absent skipped existing {collection}/{record_id}")
            return False
        docs[record_id] = copy.deepcopy(dict(record))
        self._notify(collection)
        return True

    async def update(
        self, collection: str, record_id: str, patch: Mapping[str, Any]
    ) -> dict[str, Any]:
        await self._enter("update")
        docs = self._collections[collection]
        existing = docs.get(record_id)
        if existing is None:
            raise RecordNotFoundError(collection, record_id)
        merged = {**existing, **copy.deepcopy(dict(patch))}
        docs[record_id] = merged
        self._notify(collection)
        return copy.deepcopy(merged)

    async def get(self, collection: str, record_id: str) -> dict[str, Any] | None:
        await self._enter("get")
        record = self._collections[collection].get(record_id)
        return copy.deepcopy(record) if record is not None else None

    async def query(self, query: Query) -> list[dict[str, Any]]:
        await self._enter("query")
        return query.apply(self._collections[query.collection].values())

    async def subscribe(self, query: Query) -> AsyncIterator[list[dict[str, Any]]]:
        queue: asyncio.Queue[None] = asyncio.Queue()
        self._subscribers[query.collection].add(queue)
        try:
            yield query.apply(self._collections[query.collection].values())
            while True:
                await queue.get()
                # Coalesce bursts of writes into one emission
                while not queue.empty():
                    queue.get_nowait()
                yield query.apply(self._collections[query.collection].values())
        finally:
            self._subscribers[query.collection].discard(queue)
