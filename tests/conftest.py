"""Pytest configuration for credits tests."""

import asyncio
import os
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import redis.asyncio as redis

from velto_credits.cache import MemoryCache
from velto_credits.exceptions import RemoteUnavailableError
from velto_credits.ledger import CreditLedger
from velto_credits.notifications import LocalTransport
from velto_credits.outbox import RemoteWriteOutbox
from velto_credits.store import MemoryDocumentStore
from velto_credits.tokens import TokenCounter

# Check if integration tests should run
RUN_INTEGRATION_TESTS = os.getenv("RUN_INTEGRATION_TESTS", "false").lower() == "true"
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6380")

FIXED_NOW = datetime(2025, 3, 15, 12, 0, tzinfo=UTC)

LedgerFactory = Callable[..., Awaitable[CreditLedger]]


class GatedStore(MemoryDocumentStore):
    """In-memory store whose writes can be failed or held in flight."""

    def __init__(self) -> None:
        super().__init__()
        self.fail = False
        self.held = asyncio.Event()
        self.writes: list[dict[str, Any]] = []
        self._gate: asyncio.Event | None = None

    def hold_next_write(self) -> asyncio.Event:
        """Block the next write until the returned event is set."""
        self._gate = asyncio.Event()
        self.held.clear()
        return self._gate

    async def set_record(
        self,
        collection: str,
        record_id: str,
        data: dict[str, Any],
        merge: bool = True,
    ) -> None:
        if self.fail:
            raise RemoteUnavailableError("set_record", "connection refused")
        gate, self._gate = self._gate, None
        if gate is not None:
            self.held.set()
            await gate.wait()
        self.writes.append(data)
        await super().set_record(collection, record_id, data, merge=merge)


@pytest.fixture(autouse=True)
def reset_local_transport() -> Iterator[None]:
    """Isolate in-process change listeners between tests."""
    LocalTransport.reset()
    yield
    LocalTransport.reset()


@pytest.fixture
def clock() -> MagicMock:
    """Controllable clock; set ``clock.return_value`` to move time."""
    return MagicMock(return_value=FIXED_NOW)


@pytest.fixture
def memory_store() -> MemoryDocumentStore:
    """Empty in-memory document store."""
    return MemoryDocumentStore()


@pytest.fixture
def memory_cache() -> MemoryCache:
    """Empty in-memory cache."""
    return MemoryCache()


@pytest.fixture
def gated_store() -> GatedStore:
    """In-memory store with controllable writes."""
    return GatedStore()


@pytest.fixture
def failing_store() -> MagicMock:
    """Document store that is unreachable for every call."""
    store = MagicMock()
    error = RemoteUnavailableError("test", "connection refused")
    store.get_record = AsyncMock(side_effect=error)
    store.set_record = AsyncMock(side_effect=error)
    store.delete_record = AsyncMock(side_effect=error)
    store.query_by_field = AsyncMock(side_effect=error)
    return store


@pytest.fixture
def token_counter() -> TokenCounter:
    """Length-based counter (4 characters per token), deterministic offline."""
    return TokenCounter(None)


@pytest.fixture
async def make_ledger(
    memory_store: MemoryDocumentStore,
    memory_cache: MemoryCache,
    clock: MagicMock,
) -> AsyncIterator[LedgerFactory]:
    """Factory for loaded ledgers; every ledger is closed after the test."""
    created: list[CreditLedger] = []

    async def factory(identity: str | None = "user-123", **kwargs: Any) -> CreditLedger:
        kwargs.setdefault("store", memory_store)
        kwargs.setdefault("cache", memory_cache)
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("debounce_seconds", 0.01)
        load = kwargs.pop("load", True)
        ledger = CreditLedger(identity, **kwargs)
        created.append(ledger)
        if load:
            await ledger.load()
            await ledger.settle()
        return ledger

    yield factory

    for ledger in created:
        await ledger.close()


@pytest.fixture
def outbox(memory_store: MemoryDocumentStore) -> RemoteWriteOutbox:
    """Outbox retrying against the in-memory store."""
    return RemoteWriteOutbox(memory_store, max_pending=10, flush_interval=60.0, max_attempts=3)


@pytest.fixture
def sample_record() -> dict[str, Any]:
    """Stored credit record for a starter user in the current period."""
    return {
        "tier": "starter",
        "input_tokens_used": 1200,
        "output_tokens_used": 800,
        "granted_credits": 0,
        "period_key": "2025-03",
        "subscription_started_at": "2025-01-10T09:00:00Z",
        "last_payment_at": "2025-03-10T09:00:00Z",
        "payment_status": "active",
    }


@pytest.fixture
def legacy_record() -> dict[str, Any]:
    """Record in the older camelCase layout with a separate monthly total."""
    return {
        "tier": "industry",
        "credits": 140000,
        "usedThisMonth": 10000,
        "inputTokensUsed": 6000,
        "outputTokensUsed": 4000,
        "lastReset": "2025-03",
        "subscriptionStartDate": "2025-02-01T00:00:00Z",
        "paymentStatus": "active",
    }


@pytest.fixture
def mock_redis_client() -> MagicMock:
    """Create a mock Redis client."""
    client = MagicMock()
    client.get = AsyncMock(return_value=None)
    client.set = AsyncMock(return_value=True)
    client.delete = AsyncMock(return_value=1)
    client.publish = AsyncMock(return_value=1)
    client.ping = AsyncMock(return_value=True)
    client.pubsub = MagicMock()
    client.aclose = AsyncMock()
    return client


@pytest.fixture
async def real_redis_client() -> AsyncIterator[redis.Redis]:
    """Create a real Redis client for integration tests.

    Only available when RUN_INTEGRATION_TESTS=true.
    """
    if not RUN_INTEGRATION_TESTS:
        pytest.skip("Integration tests disabled (set RUN_INTEGRATION_TESTS=true)")

    client = redis.from_url(REDIS_URL, decode_responses=True)
    try:
        await client.ping()
        yield client
    finally:
        await client.flushdb()
        await client.aclose()
