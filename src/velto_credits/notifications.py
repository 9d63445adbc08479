"""Cross-session change notification for credit state.

A single publish/subscribe subject per cache key. Transports are adapters that
carry changes between sessions and feed them back into the same subject:

- LocalTransport: listeners in the same process (the in-page signal)
- RedisTransport: other processes sharing a Redis (the storage broadcast)

Both transports may deliver the same change; the bus drops duplicates by id.
"""

import asyncio
import contextlib
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, Generic, Protocol, TypeVar
from uuid import uuid4

import structlog
from pydantic import BaseModel, Field, ValidationError

from velto_credits.redis_client import MessageCallback, RedisClient

logger = structlog.get_logger()

ChangeHandler = Callable[["CreditChange"], Awaitable[None]]

T = TypeVar("T")

# How many recent change ids are remembered for de-duplication
SEEN_CHANGE_LIMIT = 256


class CreditChange(BaseModel):
    """A credit state change broadcast to other sessions."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    key: str
    origin: str
    payload: str  # Serialized CreditState
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ChangeTransport(Protocol):
    """Carries changes between sessions."""

    async def start(self, channel: str, handler: ChangeHandler) -> None: ...

    async def publish(self, change: CreditChange) -> None: ...

    async def stop(self, channel: str, handler: ChangeHandler) -> None: ...


class LocalTransport:
    """In-process transport; every bus in the process on the same key hears it."""

    _channels: dict[str, list[ChangeHandler]] = {}

    async def start(self, channel: str, handler: ChangeHandler) -> None:
        self._channels.setdefault(channel, []).append(handler)

    async def publish(self, change: CreditChange) -> None:
        for handler in list(self._channels.get(change.key, [])):
            await handler(change)

    async def stop(self, channel: str, handler: ChangeHandler) -> None:
        handlers = self._channels.get(channel, [])
        with contextlib.suppress(ValueError):
            handlers.remove(handler)
        if not handlers:
            self._channels.pop(channel, None)

    @classmethod
    def reset(cls) -> None:
        """Drop every registered listener. Useful for testing."""
        cls._channels.clear()


class RedisTransport:
    """Redis pub/sub transport for sessions in other processes."""

    def __init__(self, redis_client: RedisClient, channel_prefix: str = "credits:") -> None:
        self._redis = redis_client
        self._prefix = channel_prefix
        self._callbacks: dict[tuple[str, ChangeHandler], MessageCallback] = {}

    def _channel(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def start(self, channel: str, handler: ChangeHandler) -> None:
        async def on_message(data: dict[str, Any]) -> None:
            try:
                change = CreditChange.model_validate(data)
            except ValidationError:
                logger.warning("Ignoring malformed credit change", channel=channel)
                return
            await handler(change)

        self._callbacks[(channel, handler)] = on_message
        await self._redis.subscribe(self._channel(channel), on_message)

    async def publish(self, change: CreditChange) -> None:
        await self._redis.publish(self._channel(change.key), change.model_dump(mode="json"))

    async def stop(self, channel: str, handler: ChangeHandler) -> None:
        on_message = self._callbacks.pop((channel, handler), None)
        if on_message is not None:
            await self._redis.unsubscribe(self._channel(channel), on_message)


class CreditChangeBus:
    """Publish/subscribe subject for one cache key, fed by any number of transports."""

    def __init__(self, key: str, transports: list[ChangeTransport] | None = None) -> None:
        self.key = key
        self._transports = transports if transports is not None else [LocalTransport()]
        self._subscribers: list[ChangeHandler] = []
        self._seen: deque[str] = deque(maxlen=SEEN_CHANGE_LIMIT)
        self._started = False

    async def start(self) -> None:
        """Attach to every transport."""
        if self._started:
            return
        for transport in self._transports:
            await transport.start(self.key, self._on_incoming)
        self._started = True

    async def close(self) -> None:
        """Detach from every transport and drop subscribers."""
        if self._started:
            for transport in self._transports:
                try:
                    await transport.stop(self.key, self._on_incoming)
                except Exception:
                    logger.exception("Failed to detach change transport", key=self.key)
        self._subscribers.clear()
        self._started = False

    def subscribe(self, handler: ChangeHandler) -> Callable[[], None]:
        """Register a handler. Returns a callable that unsubscribes it."""
        self._subscribers.append(handler)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._subscribers.remove(handler)

        return unsubscribe

    async def publish(self, change: CreditChange) -> None:
        """Send a change through every transport.

        Broadcast failures are logged; the change is already applied locally.
        """
        for transport in self._transports:
            try:
                await transport.publish(change)
            except Exception:
                logger.exception(
                    "Failed to broadcast credit change",
                    key=self.key,
                    transport=type(transport).__name__,
                )

    async def _on_incoming(self, change: CreditChange) -> None:
        if change.key != self.key or change.id in self._seen:
            return
        self._seen.append(change.id)
        for handler in list(self._subscribers):
            try:
                await handler(change)
            except Exception:
                logger.exception("Credit change handler failed", key=self.key)


class Debouncer(Generic[T]):
    """Coalesce bursts of items; only the last one in a quiet window is delivered."""

    def __init__(self, delay: float, callback: Callable[[T], Awaitable[None]]) -> None:
        self.delay = delay
        self._callback = callback
        self._latest: T | None = None
        self._task: asyncio.Task[None] | None = None
        self._delivering = False

    def push(self, item: T) -> None:
        """Queue an item, restarting the quiet window."""
        self._latest = item
        if self._task and not self._task.done() and not self._delivering:
            self._task.cancel()
        self._task = asyncio.create_task(self._fire())

    async def _fire(self) -> None:
        await asyncio.sleep(self.delay)
        item, self._latest = self._latest, None
        if item is None:
            return
        self._delivering = True
        try:
            await self._callback(item)
        except Exception:
            logger.exception("Debounced delivery failed")
        finally:
            self._delivering = False

    async def drain(self) -> None:
        """Wait for a pending delivery, if any."""
        if self._task and not self._task.done():
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

    async def cancel(self) -> None:
        """Drop any pending delivery."""
        self._latest = None
        if self._task and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
