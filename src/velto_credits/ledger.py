"""Credit ledger: one user's tier and token usage for the active session.

The ledger reconciles three places credit state lives:

- the authoritative document store (``users/<uid>``)
- a fast local cache (``ai_credits_v1_<uid>``) that may be stale
- other sessions of the same user, through the change bus

Writes are local-first. The in-memory state and cache are updated under the
ledger lock; the remote write is handed to the outbox, which sends it in the
background in call order, so a slow or hung store never blocks an operation.
Incoming changes from other sessions never change the tier, only usage fields.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

import structlog
from pydantic import ValidationError

from velto_credits.cache import KeyValueCache, cache_key
from velto_credits.config import settings
from velto_credits.exceptions import LedgerNotReadyError, MalformedCacheDataError
from velto_credits.models.credits import (
    CreditState,
    PaymentStatus,
    apply_monthly_reset,
    period_key_for,
    utcnow,
)
from velto_credits.notifications import CreditChange, CreditChangeBus, Debouncer
from velto_credits.outbox import RemoteWriteOutbox
from velto_credits.sentry import add_breadcrumb
from velto_credits.store import DocumentStore
from velto_credits.tiers import Tier, coerce_tier

logger = structlog.get_logger()

StateListener = Callable[[CreditState], Awaitable[None]]


class LedgerStatus(str, Enum):
    """Initialization state of a ledger."""

    UNINITIALIZED = "uninitialized"
    LOADING_REMOTE = "loading_remote"
    READY = "ready"


class CreditLedger:
    """Single source of truth, within a session, for one user's credit state."""

    def __init__(
        self,
        identity: str | None,
        store: DocumentStore,
        cache: KeyValueCache,
        *,
        bus: CreditChangeBus | None = None,
        outbox: RemoteWriteOutbox | None = None,
        known_tier: Tier | str | None = None,
        clock: Callable[[], datetime] | None = None,
        collection: str | None = None,
        cache_prefix: str | None = None,
        debounce_seconds: float | None = None,
    ) -> None:
        """Initialize the ledger.

        Args:
            identity: Authenticated user id, or None for an anonymous session.
                Anonymous sessions never read or write the document store.
            store: Authoritative document store
            cache: Local key-value cache
            bus: Change bus for cross-session notification (one per cache key
                is created when omitted)
            outbox: Ordered writer for remote records (a private one, retrying
                on the settings interval, is created when omitted)
            known_tier: Tier already known to the caller; used only when the
                ledger has to fall back to a default state
            clock: Returns the current time (UTC)
            collection: Document-store collection holding user records
            cache_prefix: Cache key prefix
            debounce_seconds: Quiet window for incoming change notifications
        """
        self.is_anonymous = identity is None
        self.identity = identity or settings.ANONYMOUS_IDENTITY
        self.store = store
        self.cache = cache
        self._owns_outbox = outbox is None
        self.outbox = outbox or RemoteWriteOutbox(
            store,
            max_pending=settings.OUTBOX_MAX_PENDING,
            flush_interval=settings.OUTBOX_FLUSH_INTERVAL_SECONDS,
            max_attempts=settings.OUTBOX_MAX_ATTEMPTS,
        )
        self.known_tier = coerce_tier(known_tier)
        self.collection = collection or settings.USERS_COLLECTION
        self.cache_key = cache_key(identity, cache_prefix)
        self.origin = str(uuid4())

        self._owns_bus = bus is None
        self.bus = bus or CreditChangeBus(self.cache_key)
        self._clock = clock or utcnow
        self._state: CreditState | None = None
        self._status = LedgerStatus.UNINITIALIZED
        self._lock = asyncio.Lock()
        self._listeners: list[StateListener] = []
        self._unsubscribe_bus: Callable[[], None] | None = None

        delay = settings.NOTIFY_DEBOUNCE_SECONDS if debounce_seconds is None else debounce_seconds
        self._debouncer: Debouncer[CreditChange] = Debouncer(delay, self._merge_incoming)

    # State access

    @property
    def status(self) -> LedgerStatus:
        return self._status

    @property
    def is_ready(self) -> bool:
        return self._status is LedgerStatus.READY

    @property
    def state(self) -> CreditState:
        """Current credit state.

        Raises:
            LedgerNotReadyError: If load() has not completed
        """
        if self._status is not LedgerStatus.READY or self._state is None:
            raise LedgerNotReadyError(self.identity)
        return self._state

    @property
    def tier(self) -> Tier:
        return self.state.tier

    def max_tokens(self) -> int:
        return self.state.quota

    def remaining_tokens(self) -> int:
        return self.state.remaining_credits

    def usage_percentage(self) -> float:
        return self.state.usage_percentage

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Observe state changes. Returns a callable that unsubscribes."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # Initialization

    async def load(self) -> CreditState:
        """Load state: remote first, then cache, then a fresh default.

        Never raises for store or cache failures; the ledger always ends ready.
        """
        async with self._lock:
            if self._status is LedgerStatus.READY and self._state is not None:
                return self._state
            self._status = LedgerStatus.LOADING_REMOTE
            try:
                state = await self._load_state()
            except Exception:
                logger.exception("Unexpected error loading credits", user_id=self.identity)
                state = self._default_state()
            self._state = state
            self._status = LedgerStatus.READY

        await self._attach_bus()
        if self._owns_outbox:
            await self.outbox.start()
        await self._notify_listeners(state)
        logger.info(
            "Credit ledger ready",
            user_id=self.identity,
            tier=state.tier.value,
            used=state.quota_used_this_period,
            period=state.period_key,
        )
        return state

    async def reload(self) -> CreditState:
        """Discard the in-memory state and load again.

        Picks up a tier change made by another session.
        """
        async with self._lock:
            self._status = LedgerStatus.UNINITIALIZED
        return await self.load()

    async def _load_state(self) -> CreditState:
        if self.is_anonymous:
            return await self._fallback_state()

        try:
            record = await self.store.get_record(self.collection, self.identity)
        except Exception:
            logger.warning(
                "Remote credit load failed, falling back to local cache",
                user_id=self.identity,
                exc_info=True,
            )
            return await self._fallback_state()

        if record is None:
            state = CreditState.fresh(self._clock())
            await self._write_cache(state)
            self._persist_remote(state)
            logger.info("Created credit record for new user", user_id=self.identity)
            return state

        try:
            remote_state = CreditState.from_record(record)
        except ValidationError as e:
            logger.warning(
                "Remote credit record is invalid, falling back to local cache",
                user_id=self.identity,
                errors=e.error_count(),
            )
            return await self._fallback_state()

        state = apply_monthly_reset(remote_state, self._clock())
        await self._write_cache(state)
        if state != remote_state:
            logger.info(
                "Monthly reset applied on load",
                user_id=self.identity,
                tier=state.tier.value,
                period=state.period_key,
            )
            self._persist_remote(state)
        return state

    async def _fallback_state(self) -> CreditState:
        cached = await self._read_cache()
        if cached is None:
            state = self._default_state()
            await self._write_cache(state)
            return state

        state = apply_monthly_reset(cached, self._clock())
        if state != cached:
            await self._write_cache(state)
        return state

    def _default_state(self) -> CreditState:
        state = CreditState.fresh(self._clock())
        if self.known_tier is not None:
            state = state.model_copy(update={"tier": self.known_tier})
        return state

    # Operations

    async def deduct(self, amount: int, input_tokens: int | None = None) -> CreditState:
        """Record token usage. Overdraft is allowed here.

        Args:
            amount: Total tokens used
            input_tokens: Part of ``amount`` that was prompt tokens; the rest is
                booked as output tokens

        Raises:
            ValueError: If amounts are negative or the split exceeds the total
            LedgerNotReadyError: If load() has not completed
        """
        input_part = input_tokens or 0
        if amount < 0 or input_part < 0 or input_part > amount:
            raise ValueError(f"Invalid deduction: amount={amount}, input_tokens={input_tokens}")

        async with self._lock:
            state = self.state
            new_state = state.model_copy(
                update={
                    "input_tokens_used": state.input_tokens_used + input_part,
                    "output_tokens_used": state.output_tokens_used + (amount - input_part),
                }
            )
            await self._commit(new_state)

        await self._notify_listeners(new_state)
        logger.info(
            "Credits deducted",
            user_id=self.identity,
            amount=amount,
            input_tokens=input_part,
            output_tokens=amount - input_part,
            used=new_state.quota_used_this_period,
            quota=new_state.quota,
        )
        return new_state

    async def add(self, amount: int) -> CreditState:
        """Grant purchased credits for the current period."""
        if amount < 0:
            raise ValueError(f"Invalid credit grant: {amount}")

        async with self._lock:
            state = self.state
            new_state = state.model_copy(
                update={"granted_credits": state.granted_credits + amount}
            )
            await self._commit(new_state)

        await self._notify_listeners(new_state)
        logger.info(
            "Credits added",
            user_id=self.identity,
            amount=amount,
            remaining=new_state.remaining_credits,
        )
        return new_state

    async def set_tier(self, new_tier: Tier | str, is_payment: bool = False) -> CreditState:
        """Change tier and start a fresh usage period.

        This is the only path that resets usage outside the monthly rollover.

        Args:
            new_tier: Tier to switch to
            is_payment: True for a successful (renewal) payment on a paid tier

        Raises:
            ValueError: If ``new_tier`` is not a known tier
        """
        tier = coerce_tier(new_tier)
        if tier is None:
            raise ValueError(f"Unknown tier: {new_tier!r}")

        async with self._lock:
            state = self.state
            now = self._clock()
            update: dict[str, Any] = {
                "tier": tier,
                "input_tokens_used": 0,
                "output_tokens_used": 0,
                "granted_credits": 0,
                "period_key": period_key_for(now),
            }
            if tier is not Tier.FREE and state.tier is Tier.FREE:
                update.update(
                    subscription_started_at=now,
                    last_payment_at=now,
                    payment_status=PaymentStatus.ACTIVE,
                )
            if is_payment and tier is not Tier.FREE:
                update.update(last_payment_at=now, payment_status=PaymentStatus.ACTIVE)
            if tier is Tier.FREE and state.tier is not Tier.FREE:
                # "active" here means no outstanding payment issue
                update.update(
                    subscription_started_at=None,
                    last_payment_at=None,
                    payment_status=PaymentStatus.ACTIVE,
                )
            new_state = state.model_copy(update=update)
            await self._commit(new_state)

        await self._notify_listeners(new_state)
        logger.info(
            "Tier changed",
            user_id=self.identity,
            previous_tier=state.tier.value,
            tier=tier.value,
            is_payment=is_payment,
        )
        add_breadcrumb(
            "Tier changed",
            data={"previous_tier": state.tier.value, "tier": tier.value},
        )
        return new_state

    def check_monthly_reset(self) -> CreditState:
        """State after a monthly reset, if one is due. Does not persist anything."""
        return apply_monthly_reset(self.state, self._clock())

    async def reset_monthly(self) -> CreditState:
        """Apply a due monthly reset and persist it."""
        async with self._lock:
            state = self.state
            new_state = apply_monthly_reset(state, self._clock())
            if new_state == state:
                return state
            await self._commit(new_state)

        await self._notify_listeners(new_state)
        logger.info(
            "Monthly reset applied",
            user_id=self.identity,
            tier=new_state.tier.value,
            period=new_state.period_key,
            credits=new_state.remaining_credits,
        )
        return new_state

    async def mark_payment_failed(self) -> CreditState:
        """Flag a failed payment reported by the payment provider. Tier is kept."""
        return await self._set_payment_status(PaymentStatus.FAILED)

    async def cancel_subscription(self) -> CreditState:
        """Flag a cancelled subscription reported by the payment provider.

        The tier stays until an explicit set_tier() call downgrades it.
        """
        return await self._set_payment_status(PaymentStatus.CANCELLED)

    async def _set_payment_status(self, status: PaymentStatus) -> CreditState:
        async with self._lock:
            state = self.state
            if state.payment_status is status:
                return state
            new_state = state.model_copy(update={"payment_status": status})
            await self._commit(new_state)

        await self._notify_listeners(new_state)
        logger.info("Payment status changed", user_id=self.identity, payment_status=status.value)
        add_breadcrumb("Payment status changed", data={"payment_status": status.value})
        return new_state

    async def settle(self) -> None:
        """Wait for pending merges from other sessions and for in-flight remote writes."""
        await self._debouncer.drain()
        await self.outbox.drain()

    async def close(self) -> None:
        """Stop listening for changes from other sessions.

        A ledger that created its own outbox also finishes its pending writes.
        """
        await self._debouncer.cancel()
        if self._unsubscribe_bus:
            self._unsubscribe_bus()
            self._unsubscribe_bus = None
        if self._owns_bus:
            await self.bus.close()
        if self._owns_outbox:
            await self.outbox.stop()
        self._listeners.clear()

    # Persistence

    async def _commit(self, new_state: CreditState) -> None:
        # Callers hold the lock; listeners are notified after it is released
        self._state = new_state
        await self._write_cache(new_state)
        self._persist_remote(new_state)

    async def _read_cache(self) -> CreditState | None:
        try:
            raw = await self.cache.get(self.cache_key)
        except Exception:
            logger.warning("Local credit cache read failed", key=self.cache_key, exc_info=True)
            return None
        if raw is None:
            return None

        try:
            return CreditState.from_cache(raw, self.cache_key)
        except MalformedCacheDataError as e:
            logger.warning(
                "Discarding malformed cached credits", key=self.cache_key, reason=e.reason
            )
            try:
                await self.cache.delete(self.cache_key)
            except Exception:
                logger.warning("Failed to clear malformed cache entry", key=self.cache_key)
            return None

    async def _write_cache(self, state: CreditState) -> None:
        payload = state.to_cache()
        try:
            await self.cache.set(self.cache_key, payload)
        except Exception:
            logger.warning(
                "Local credit cache write failed", key=self.cache_key, exc_info=True
            )
        await self.bus.publish(CreditChange(key=self.cache_key, origin=self.origin, payload=payload))

    def _persist_remote(self, state: CreditState) -> None:
        if self.is_anonymous:
            return
        self.outbox.submit(self.collection, self.identity, state.to_record())

    # Cross-session changes

    async def _attach_bus(self) -> None:
        if self._unsubscribe_bus is not None:
            return
        self._unsubscribe_bus = self.bus.subscribe(self._on_change)
        await self.bus.start()

    async def _on_change(self, change: CreditChange) -> None:
        if change.origin == self.origin:
            return
        self._debouncer.push(change)

    async def _merge_incoming(self, change: CreditChange) -> None:
        try:
            incoming = CreditState.from_cache(change.payload, change.key)
        except MalformedCacheDataError as e:
            logger.warning("Ignoring malformed credit change", key=change.key, reason=e.reason)
            return

        async with self._lock:
            if self._status is not LedgerStatus.READY or self._state is None:
                return
            current = self._state
            if incoming.tier is not current.tier:
                logger.warning(
                    "Ignoring tier change from another session",
                    user_id=self.identity,
                    tier=current.tier.value,
                    incoming_tier=incoming.tier.value,
                )
            if current.has_same_usage(incoming):
                return
            merged = current.with_usage_from(incoming)
            self._state = merged

        logger.debug(
            "Merged usage from another session",
            user_id=self.identity,
            used=merged.quota_used_this_period,
        )
        await self._notify_listeners(merged)

    async def _notify_listeners(self, state: CreditState) -> None:
        for listener in list(self._listeners):
            try:
                await listener(state)
            except Exception:
                logger.exception("Credit state listener failed", user_id=self.identity)
