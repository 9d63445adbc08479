"""Redis client used for the shared credit cache and cross-session broadcast."""

import asyncio
import contextlib
import json
from collections.abc import Callable, Coroutine
from datetime import datetime
from typing import Any, cast

import redis.asyncio as redis
import structlog

logger = structlog.get_logger()

MessageCallback = Callable[[dict[str, Any]], Coroutine[Any, Any, None]]


class DateTimeEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime objects."""

    def default(self, obj: Any) -> Any:
        """Convert datetime to ISO format string."""
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


class RedisClient:
    """Async Redis client wrapper with pub/sub support.

    One background listener task serves every subscribed channel. A channel may
    have several callbacks; Redis is only unsubscribed once the last one leaves.
    """

    def __init__(self, url: str, decode_responses: bool = True) -> None:
        """Initialize Redis client.

        Args:
            url: Redis connection URL (e.g., redis://localhost:6379)
            decode_responses: Whether to decode responses as strings
        """
        self._url = url
        self._decode_responses = decode_responses
        self._client: Any = None
        self._pubsub: Any = None
        self._callbacks: dict[str, list[MessageCallback]] = {}
        self._running = False
        self._listen_task: asyncio.Task[None] | None = None

    async def connect(self) -> None:
        """Connect to Redis."""
        if self._client is not None:
            return

        self._client = redis.from_url(  # type: ignore[no-untyped-call]
            self._url,
            decode_responses=self._decode_responses,
        )
        logger.info("Connected to Redis", url=self._url)

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._listen_task:
            self._running = False
            self._listen_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listen_task
            self._listen_task = None

        if self._pubsub:
            await self._pubsub.aclose()
            self._pubsub = None
        self._callbacks.clear()

        if self._client:
            await self._client.aclose()
            self._client = None

        logger.info("Disconnected from Redis")

    @property
    def client(self) -> Any:
        """Get the underlying Redis client."""
        if self._client is None:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        return self._client

    # Key-value operations

    async def get(self, key: str) -> str | None:
        """Get a value by key."""
        result = await self.client.get(key)
        if result is None:
            return None
        return cast("str", result)

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        """Set a value with optional expiration in seconds."""
        result = await self.client.set(key, value, ex=ex)
        return bool(result)

    async def delete(self, *keys: str) -> int:
        """Delete one or more keys."""
        result = await self.client.delete(*keys)
        return cast("int", result)

    # JSON helpers

    async def get_json(self, key: str) -> dict[str, Any] | list[Any] | None:
        """Get a JSON value by key."""
        data = await self.get(key)
        if data:
            result: dict[str, Any] | list[Any] = json.loads(data)
            return result
        return None

    async def set_json(
        self,
        key: str,
        value: dict[str, Any] | list[Any],
        ex: int | None = None,
    ) -> bool:
        """Set a JSON value."""
        return await self.set(key, json.dumps(value, cls=DateTimeEncoder), ex=ex)

    # Pub/Sub operations

    async def publish(self, channel: str, message: str | dict[str, Any]) -> int:
        """Publish a message to a channel.

        Returns:
            Number of subscribers that received the message
        """
        if isinstance(message, dict):
            message = json.dumps(message, cls=DateTimeEncoder)
        result = await self.client.publish(channel, message)
        return cast("int", result)

    async def subscribe(self, channel: str, callback: MessageCallback) -> None:
        """Subscribe to a channel and process JSON messages with a callback."""
        if self._pubsub is None:
            self._pubsub = self.client.pubsub()

        callbacks = self._callbacks.setdefault(channel, [])
        callbacks.append(callback)
        if len(callbacks) == 1:
            await self._pubsub.subscribe(channel)
        self._running = True

        if self._listen_task is None or self._listen_task.done():
            self._listen_task = asyncio.create_task(self._listen())
        logger.info("Subscribed to Redis channel", channel=channel)

    async def unsubscribe(self, channel: str, callback: MessageCallback | None = None) -> None:
        """Remove a callback from a channel, or all of them when none is given.

        The Redis subscription is dropped once no callbacks remain.
        """
        if callback is not None:
            callbacks = self._callbacks.get(channel)
            if not callbacks or callback not in callbacks:
                return
            callbacks.remove(callback)
            if callbacks:
                return
        self._callbacks.pop(channel, None)
        if self._pubsub:
            await self._pubsub.unsubscribe(channel)
            logger.info("Unsubscribed from Redis channel", channel=channel)

    async def _listen(self) -> None:
        if not self._pubsub:
            return

        try:
            async for message in self._pubsub.listen():
                if not self._running:
                    break
                if message["type"] != "message":
                    continue
                await self._dispatch(message)
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Pubsub listener error")

    async def _dispatch(self, message: dict[str, Any]) -> None:
        channel = message.get("channel")
        callbacks = list(self._callbacks.get(cast("str", channel), []))
        if not callbacks:
            return
        try:
            data = json.loads(message["data"])
        except json.JSONDecodeError:
            logger.warning("Invalid JSON in pubsub message", channel=channel)
            return
        for callback in callbacks:
            try:
                await callback(data)
            except Exception:
                logger.exception("Error processing pubsub message", channel=channel)


# Global instance cache - use dict for mutable singleton pattern
_redis_clients: dict[str, RedisClient] = {}


def get_redis_client(url: str = "redis://localhost:6379") -> RedisClient:
    """Get or create a Redis client for the given URL.

    The client must be connected before use by calling `await client.connect()`.
    """
    if url not in _redis_clients:
        _redis_clients[url] = RedisClient(url)
    return _redis_clients[url]


def clear_redis_clients() -> None:
    """Clear all cached Redis clients. Useful for testing."""
    _redis_clients.clear()
