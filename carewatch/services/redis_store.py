"""Redis-backed RecordStore.

Layout (all keys share a configurable prefix):

- ``{prefix}:{collection}:{id}``   JSON record
- ``{prefix}:index:{collection}``  set of record ids in the collection
- ``{prefix}:changes:{collection}`` pub/sub channel notified after each write

``put_if_absent`` runs SET NX and the index SADD as one script, so a retried
create never overwrites an earlier record and always repairs its index entry.
"""

from __future__ import annotations

import contextlib
from collections.abc import AsyncIterator, Iterator, Mapping
from typing import TYPE_CHECKING, Any

from redis.exceptions import (
    AuthenticationError,
    AuthorizationError,
    ConnectionError,
    NoPermissionError,
    RedisError,
    TimeoutError,
)

from carewatch.core.exceptions import (
    RecordNotFoundError,
    StoreError,
    StorePermissionError,
    StoreUnavailableError,
)
from carewatch.core.logging import get_logger, sanitize_error
from carewatch.services.store import Query

if TYPE_CHECKING:
    from carewatch.core.redis import RedisClient

logger = get_logger(__name__)


@contextlib.contextmanager
def _translate_errors(
    operation: str, collection: str, record_id: str | None = None
) -> Iterator[None]:
    """Map redis-py exceptions onto the store error taxonomy."""
    try:
        yield
    except (AuthenticationError, AuthorizationError, NoPermissionError) as e:
        raise StorePermissionError(
            f"Redis denied {operation}: {sanitize_error(e)}",
            collection=collection,
            record_id=record_id,
            operation=operation,
        ) from e
    except (ConnectionError, TimeoutError) as e:
        raise StoreUnavailableError(
            f"Redis unavailable during {operation}: {sanitize_error(e)}",
            collection=collection,
            record_id=record_id,
            operation=operation,
        ) from e
    except RedisError as e:
        raise StoreError(
            f"Redis error during {operation}: {sanitize_error(e)}",
            collection=collection,
            record_id=record_id,
            operation=operation,
        ) from e


class RedisRecordStore:
    """RecordStore implementation on top of RedisClient."""

    def __init__(self, redis_client: RedisClient, key_prefix: str = "carewatch") -> None:
        self._redis = redis_client
        self._prefix = key_prefix

    def _record_key(self, collection: str, record_id: str) -> str:
        return f"{self._prefix}:{collection}:{record_id}"

    def _index_key(self, collection: str) -> str:
        return f"{self._prefix}:index:{collection}"

    def change_channel(self, collection: str) -> str:
        return f"{self._prefix}:changes:{collection}"

    async def _publish_change(self, collection: str, record_id: str) -> None:
        # The write already succeeded; a lost change message only delays subscribers
        try:
            await self._redis.publish(self.change_channel(collection), {"id": record_id})
        except RedisError as e:
            logger.warning(
                f"Failed to publish change for {collection}/{record_id}: {sanitize_error(e)}"
            )

    async def put_if_absent(
        self, collection: str, record_id: str, record: Mapping[str, Any]
    ) -> bool:
        with _translate_errors("put_if_absent", collection, record_id):
            created = await self._redis.create_indexed(
                self._record_key(collection, record_id),
                self._index_key(collection),
                record_id,
                dict(record),
            )
        if not created:
            logger.debug(f"put_if_absent skipped existing {collection}/{record_id}")
            return False
        await self._publish_change(collection, record_id)
        return True

    async def update(
        self, collection: str, record_id: str, patch: Mapping[str, Any]
    ) -> dict[str, Any]:
        key = self._record_key(collection, record_id)
        with _translate_errors("update", collection, record_id):
            existing = await self._redis.get(key)
            if existing is None:
                raise RecordNotFoundError(collection, record_id)
            merged = {**existing, **dict(patch)}
            if not await self._redis.set(key, merged, only_if_exists=True):
                raise RecordNotFoundError(collection, record_id)
        await self._publish_change(collection, record_id)
        return merged

    async def get(self, collection: str, record_id: str) -> dict[str, Any] | None:
        with _translate_errors("get", collection, record_id):
            value = await self._redis.get(self._record_key(collection, record_id))
        return value if isinstance(value, dict) else None

    async def query(self, query: Query) -> list[dict[str, Any]]:
        with _translate_errors("query", query.collection):
            ids = sorted(await self._redis.smembers(self._index_key(query.collection)))
            values = await self._redis.mget(
                [self._record_key(query.collection, record_id) for record_id in ids]
            )
        return query.apply(v for v in values if isinstance(v, dict))

    async def subscribe(self, query: Query) -> AsyncIterator[list[dict[str, Any]]]:
        channel = self.change_channel(query.collection)
        with _translate_errors("subscribe", query.collection):
            pubsub = await self._redis.subscribe(channel)
        try:
            yield await self.query(query)
            with _translate_errors("subscribe", query.collection):
                async for _message in self._redis.listen(pubsub):
                    yield await self.query(query)
        finally:
            with contextlib.suppress(RedisError, RuntimeError):
                await pubsub.unsubscribe(channel)
                await pubsub.aclose()
