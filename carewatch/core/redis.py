"""Async Redis access for the record store.

Records are JSON values. Creating a record and adding its id to the
collection index run as one Lua script, so a record can never exist
without its index entry.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import random
from collections.abc import AsyncGenerator, Sequence
from typing import Any, cast

from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.client import PubSub
from redis.exceptions import ConnectionError, ResponseError, TimeoutError

from carewatch.core.config import get_settings
from carewatch.core.logging import get_logger

logger = get_logger(__name__)


def _dumps(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value)


class RedisClient:
    """Async Redis client with connection pooling and helper methods."""

    # KEYS: record key, index set key. ARGV: JSON record, index member.
    # Returns 1 if the record was created, 0 if it already existed.
    # SADD runs either way so a retry repairs a missing index entry.
    CREATE_INDEXED = """
    local created = redis.call('SET', KEYS[1], ARGV[1], 'NX')
    redis.call('SADD', KEYS[2], ARGV[2])
    if created then
        return 1
    end
    return 0
    """

    def __init__(self, redis_url: str | None = None):
        """Initialize Redis client with connection pool.

        Args:
            redis_url: Redis connection URL. If not provided, uses settings.
        """
        settings = get_settings()
        self._redis_url = redis_url or settings.redis_url
        self._pool: ConnectionPool | None = None
        self._client: Redis | None = None
        self._script_shas: dict[str, str] = {}
        self._max_retries = 3
        # Exponential backoff settings
        self._base_delay = 1.0
        self._max_delay = 30.0
        self._jitter_factor = 0.25

    def _calculate_backoff_delay(self, attempt: int) -> float:
        """Calculate exponential backoff delay with jitter.

        Args:
            attempt: Current attempt number (1-indexed)

        Returns:
            Delay in seconds with exponential backoff and random jitter
        """
        delay: float = min(self._base_delay * (2 ** (attempt - 1)), self._max_delay)
        jitter: float = delay * random.uniform(0, self._jitter_factor)  # noqa: S311
        return delay + jitter

    async def connect(self) -> None:
        """Establish Redis connection with exponential backoff retry logic."""
        for attempt in range(1, self._max_retries + 1):
            try:
                self._pool = ConnectionPool.from_url(
                    self._redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_keepalive=True,
                    health_check_interval=30,
                    max_connections=10,
                )
                self._client = Redis(connection_pool=self._pool)
                await self._client.ping()  # type: ignore
                logger.info("Successfully connected to Redis")
                return
            except (ConnectionError, TimeoutError) as e:
                logger.warning(
                    f"Redis connection attempt {attempt}/{self._max_retries} failed: {e}"
                )
                if attempt < self._max_retries:
                    backoff_delay = self._calculate_backoff_delay(attempt)
                    logger.info(f"Retrying in {backoff_delay:.2f} seconds...")
                    await asyncio.sleep(backoff_delay)
                else:
                    logger.error("Failed to connect to Redis after all retries")
                    raise

    async def disconnect(self) -> None:
        """Close Redis connection and cleanup resources."""
        with contextlib.suppress(Exception):
            if self._client:
                await self._client.aclose()
                self._client = None

            if self._pool:
                await self._pool.disconnect()
                self._pool = None

            logger.info("Redis connection closed")

    def _ensure_connected(self) -> Redis:
        """Ensure Redis client is connected.

        Raises:
            RuntimeError: If client is not connected
        """
        if not self._client:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        return self._client

    # Key/value operations

    async def get(self, key: str) -> Any | None:
        """Get a JSON value, or None if the key doesn't exist."""
        client = self._ensure_connected()
        value = await client.get(key)
        if value:
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return value
        return None

    async def mget(self, keys: list[str]) -> list[Any | None]:
        """Get several JSON values in one round trip, None for missing keys."""
        if not keys:
            return []
        client = self._ensure_connected()
        values = await client.mget(keys)
        return [json.loads(v) if v else None for v in values]

    async def set(self, key: str, value: Any, *, only_if_exists: bool = False) -> bool:
        """Set a JSON value.

        Args:
            key: Key to write
            value: Value to store (JSON-serialized if not a string)
            only_if_exists: Only overwrite an existing key (SET XX)

        Returns:
            True if the value was written
        """
        client = self._ensure_connected()
        return bool(await client.set(key, _dumps(value), xx=only_if_exists))

    async def _eval_script(
        self, name: str, body: str, keys: Sequence[str], args: Sequence[Any]
    ) -> Any:
        """Run a Lua script by SHA, loading it on first use or after SCRIPT FLUSH."""
        client = self._ensure_connected()
        sha = self._script_shas.get(name)
        if sha is None:
            sha = await client.script_load(body)
            self._script_shas[name] = sha
        try:
            return await client.evalsha(sha, len(keys), *keys, *args)  # type: ignore[misc]
        except ResponseError as e:
            if "NOSCRIPT" not in str(e):
                raise
            logger.debug(f"Reloading Lua script {name}")
            sha = await client.script_load(body)
            self._script_shas[name] = sha
            return await client.evalsha(sha, len(keys), *keys, *args)  # type: ignore[misc]

    async def create_indexed(self, key: str, index_key: str, member: str, value: Any) -> bool:
        """Atomically SET NX a JSON value and SADD its id to an index set.

        Returns:
            True if the key was created, False if it already existed
        """
        result = await self._eval_script(
            "create_indexed", self.CREATE_INDEXED, [key, index_key], [_dumps(value), member]
        )
        return bool(int(result))

    async def smembers(self, key: str) -> set[str]:
        """Return all members of a set."""
        client = self._ensure_connected()
        return cast("set[str]", await client.smembers(key))  # type: ignore[misc]

    # Pub/Sub operations

    async def publish(self, channel: str, message: Any) -> int:
        """Publish a message to a channel.

        Returns:
            Number of subscribers that received the message
        """
        client = self._ensure_connected()
        return cast("int", await client.publish(channel, _dumps(message)))

    async def subscribe(self, *channels: str) -> PubSub:
        """Subscribe to one or more channels on a dedicated PubSub connection.

        Each subscription gets its own PubSub so independent subscribers can
        be closed without affecting each other.
        """
        client = self._ensure_connected()
        pubsub = client.pubsub()
        await pubsub.subscribe(*channels)
        return pubsub

    async def listen(self, pubsub: PubSub) -> AsyncGenerator[dict[str, Any]]:
        """Listen for messages from subscribed channels.

        Yields:
            Messages from subscribed channels with JSON-decoded data
        """
        async for message in pubsub.listen():
            if message["type"] == "message":
                with contextlib.suppress(json.JSONDecodeError, TypeError):
                    message["data"] = json.loads(message["data"])
                yield message
