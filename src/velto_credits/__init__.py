"""Token credit metering and tier entitlements."""

from velto_credits.access import can_access_feature, can_create_more_projects
from velto_credits.exceptions import (
    CompletionProviderError,
    CreditsError,
    LedgerNotReadyError,
    MalformedCacheDataError,
    QuotaExceededError,
    RemoteUnavailableError,
    UnknownProviderError,
)
from velto_credits.gateway import CompletionGateway, CompletionOutcome, CompletionRequest
from velto_credits.ledger import CreditLedger, LedgerStatus
from velto_credits.models import CreditState, PaymentStatus
from velto_credits.routing import TaskCategory
from velto_credits.sentry import SentryConfig, configure_logging, init_sentry
from velto_credits.session import (
    CreditSession,
    get_credit_session,
    init_credit_session,
    shutdown_credit_session,
)
from velto_credits.tiers import Feature, Tier, quota_for
from velto_credits.tokens import TokenCounter

__version__ = "0.1.0"

__all__ = [
    "CompletionGateway",
    "CompletionOutcome",
    "CompletionProviderError",
    "CompletionRequest",
    "CreditLedger",
    "CreditSession",
    "CreditState",
    "CreditsError",
    "Feature",
    "LedgerNotReadyError",
    "LedgerStatus",
    "MalformedCacheDataError",
    "PaymentStatus",
    "QuotaExceededError",
    "RemoteUnavailableError",
    "SentryConfig",
    "TaskCategory",
    "Tier",
    "TokenCounter",
    "UnknownProviderError",
    "can_access_feature",
    "can_create_more_projects",
    "configure_logging",
    "get_credit_session",
    "init_credit_session",
    "init_sentry",
    "quota_for",
    "shutdown_credit_session",
]
