"""Process-wide credit session for the signed-in user.

Components take their collaborators as constructor arguments. This module is
the one ambient access point for UI integration code: create the session at
sign-in, fetch it where needed, shut it down at sign-out.
"""

from collections.abc import Mapping
from dataclasses import dataclass

import structlog

from velto_credits.cache import KeyValueCache
from velto_credits.config import SUPPORTED_PROVIDERS, Settings, get_settings
from velto_credits.gateway import CompletionGateway
from velto_credits.ledger import CreditLedger
from velto_credits.notifications import CreditChangeBus
from velto_credits.outbox import RemoteWriteOutbox
from velto_credits.providers import CompletionProvider, build_provider
from velto_credits.store import DocumentStore
from velto_credits.tiers import Tier
from velto_credits.tokens import TokenCounter

logger = structlog.get_logger()


@dataclass
class CreditSession:
    """Ledger, gateway and outbox for one identity."""

    ledger: CreditLedger
    gateway: CompletionGateway
    outbox: RemoteWriteOutbox

    @property
    def identity(self) -> str:
        return self.ledger.identity

    async def close(self) -> None:
        """Stop listening, flush pending writes and close providers."""
        await self.ledger.close()
        await self.outbox.stop()
        await self.gateway.close()


class _CreditSessionSingleton:
    """Singleton holder for the global CreditSession instance."""

    _instance: CreditSession | None = None

    @classmethod
    def get(cls) -> CreditSession | None:
        return cls._instance

    @classmethod
    async def init(
        cls,
        identity: str | None,
        store: DocumentStore,
        cache: KeyValueCache,
        providers: Mapping[str, CompletionProvider] | None = None,
        known_tier: Tier | str | None = None,
        bus: CreditChangeBus | None = None,
        token_counter: TokenCounter | None = None,
        config: Settings | None = None,
    ) -> CreditSession:
        if cls._instance is not None:
            await cls._instance.close()
            cls._instance = None

        cfg = config or get_settings()
        outbox = RemoteWriteOutbox(
            store,
            max_pending=cfg.OUTBOX_MAX_PENDING,
            flush_interval=cfg.OUTBOX_FLUSH_INTERVAL_SECONDS,
            max_attempts=cfg.OUTBOX_MAX_ATTEMPTS,
        )
        ledger = CreditLedger(
            identity,
            store,
            cache,
            bus=bus,
            outbox=outbox,
            known_tier=known_tier,
            collection=cfg.USERS_COLLECTION,
            cache_prefix=cfg.CREDITS_CACHE_PREFIX,
            debounce_seconds=cfg.NOTIFY_DEBOUNCE_SECONDS,
        )
        if providers is None:
            providers = {name: build_provider(name, cfg) for name in SUPPORTED_PROVIDERS}
        gateway = CompletionGateway(
            ledger,
            providers,
            token_counter=token_counter,
            default_provider=cfg.LLM_PROVIDER,
        )

        await ledger.load()
        await outbox.start()
        cls._instance = CreditSession(ledger=ledger, gateway=gateway, outbox=outbox)
        logger.info("Credit session started", user_id=ledger.identity, tier=ledger.tier.value)
        return cls._instance

    @classmethod
    async def shutdown(cls) -> None:
        if cls._instance is not None:
            identity = cls._instance.identity
            await cls._instance.close()
            cls._instance = None
            logger.info("Credit session closed", user_id=identity)


def get_credit_session() -> CreditSession | None:
    """Get the global credit session, if one is active."""
    return _CreditSessionSingleton.get()


async def init_credit_session(
    identity: str | None,
    store: DocumentStore,
    cache: KeyValueCache,
    providers: Mapping[str, CompletionProvider] | None = None,
    known_tier: Tier | str | None = None,
    bus: CreditChangeBus | None = None,
    token_counter: TokenCounter | None = None,
    config: Settings | None = None,
) -> CreditSession:
    """Create, load and install the global credit session.

    Any existing session is closed first.

    Args:
        identity: Signed-in user id, or None for an anonymous session
        store: Authoritative document store
        cache: Local key-value cache
        providers: Completion providers by name (built from settings if omitted)
        known_tier: Tier already known from sign-in, used for degraded defaults
        bus: Change bus (an in-process bus is created if omitted)
        token_counter: Token counter for the gateway
        config: Settings override

    Returns:
        The loaded session
    """
    return await _CreditSessionSingleton.init(
        identity,
        store,
        cache,
        providers=providers,
        known_tier=known_tier,
        bus=bus,
        token_counter=token_counter,
        config=config,
    )


async def shutdown_credit_session() -> None:
    """Close the global credit session, at sign-out."""
    await _CreditSessionSingleton.shutdown()
