"""Tier catalog: quotas, feature floors and display metadata.

Everything here is static data plus pure functions. Malformed tier input is
treated as the most restrictive defined tier (free) rather than raising.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog

logger = structlog.get_logger()

# Sentinels for "effectively unlimited" so arithmetic stays integral
UNLIMITED_TOKENS = 999_999_999
UNLIMITED_PROJECTS = 999_999


class Tier(str, Enum):
    """Subscription tiers, declared in entitlement order."""

    FREE = "free"
    STARTER = "starter"
    INDUSTRY = "industry"
    ULTRA = "ultra"
    LIFETIME = "lifetime"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)


_TIER_ORDER: list[Tier] = list(Tier)


class ModelClass(str, Enum):
    """Broad AI model class a tier is served with."""

    BASIC = "basic"
    ADVANCED = "advanced"
    PREMIUM = "premium"


class Feature(str, Enum):
    """Gated dashboard features."""

    CHATBOT = "chatbot"
    LEGAL_COMPLIANCE = "legalCompliance"
    IDEA_GENERATOR = "ideaGenerator"
    BUDGET_PLANNER = "budgetPlanner"
    BOM_ANALYSIS = "bomAnalysis"
    DEEP_ANALYSIS = "deepAnalysis"
    INTEGRATIONS = "integrations"
    TIMELINE_ASSISTANT = "timelineAssistant"
    STORE_SYNC = "storeSync"
    PDF_EXPORT = "pdfExport"
    ANALYTICS = "analytics"
    TEAM_COLLABORATION = "teamCollaboration"
    ADVANCED_AI = "advancedAI"


@dataclass(frozen=True)
class TierDefinition:
    """Immutable description of a tier."""

    display_name: str
    token_quota: int
    price_label: str
    default_model_label: str
    description: str = ""


@dataclass(frozen=True)
class CreditPackage:
    """One-off token pack offered in the purchase flow."""

    token_amount: int
    price_usd: int


TIERS: dict[Tier, TierDefinition] = {
    Tier.FREE: TierDefinition(
        display_name="Free",
        token_quota=10_000,
        price_label="$0",
        default_model_label="Gemini 2.0 Flash",
        description="Get started with all basic features and Gemini 2.0 Flash AI.",
    ),
    Tier.STARTER: TierDefinition(
        display_name="Starter",
        token_quota=50_000,
        price_label="$29.99",
        default_model_label="Claude 3.5 Haiku + Gemini 1.5 Flash",
        description="Unlock advanced features with Claude 3.5 Haiku AI.",
    ),
    Tier.INDUSTRY: TierDefinition(
        display_name="Industry",
        token_quota=150_000,
        price_label="$59.99",
        default_model_label="Claude 3.5 Haiku + Gemini 1.5 Flash",
        description="Advanced features for growing businesses.",
    ),
    Tier.ULTRA: TierDefinition(
        display_name="Ultra",
        token_quota=250_000,
        price_label="$79.99",
        default_model_label="Claude 3.5 Haiku + Gemini 1.5 Flash",
        description="All features unlocked with premium AI models.",
    ),
    Tier.LIFETIME: TierDefinition(
        display_name="Lifetime",
        token_quota=UNLIMITED_TOKENS,
        price_label="$299",
        default_model_label="All Premium AI Models",
        description="Lifetime unlimited access with all premium features.",
    ),
}

FEATURE_ACCESS: dict[Feature, Tier] = {
    Feature.CHATBOT: Tier.FREE,
    Feature.LEGAL_COMPLIANCE: Tier.STARTER,
    Feature.IDEA_GENERATOR: Tier.FREE,
    Feature.BUDGET_PLANNER: Tier.FREE,
    Feature.BOM_ANALYSIS: Tier.FREE,
    Feature.DEEP_ANALYSIS: Tier.STARTER,
    Feature.INTEGRATIONS: Tier.STARTER,
    Feature.TIMELINE_ASSISTANT: Tier.STARTER,
    Feature.STORE_SYNC: Tier.ULTRA,
    Feature.PDF_EXPORT: Tier.STARTER,
    Feature.ANALYTICS: Tier.ULTRA,
    Feature.TEAM_COLLABORATION: Tier.ULTRA,
    Feature.ADVANCED_AI: Tier.ULTRA,
}

CREDIT_PACKAGES: tuple[CreditPackage, ...] = (
    CreditPackage(token_amount=1_000, price_usd=5),
    CreditPackage(token_amount=5_000, price_usd=20),
    CreditPackage(token_amount=20_000, price_usd=60),
)


def coerce_tier(value: Any) -> Tier | None:
    """Convert a raw tier value into a Tier, or None when it is not one."""
    if isinstance(value, Tier):
        return value
    if isinstance(value, str):
        try:
            return Tier(value.strip().lower())
        except ValueError:
            return None
    return None


def quota_for(tier: Any) -> int:
    """Return the monthly token quota for a tier.

    Unknown or missing tiers get the free quota.
    """
    resolved = coerce_tier(tier)
    if resolved is None:
        logger.warning("Invalid tier for quota lookup, defaulting to free", tier=repr(tier))
        return TIERS[Tier.FREE].token_quota
    return TIERS[resolved].token_quota


def entitlement_satisfies(user_tier: Any, required_tier: Any) -> bool:
    """True iff user_tier ranks at or above required_tier."""
    user = coerce_tier(user_tier) or Tier.FREE
    required = coerce_tier(required_tier) or Tier.LIFETIME
    return user.rank >= required.rank


def feature_requirement(feature_id: Feature | str) -> Tier:
    """Minimum tier for a feature. Unknown features need the top tier."""
    try:
        return FEATURE_ACCESS[Feature(feature_id)]
    except ValueError:
        logger.warning("Unknown feature requested", feature=str(feature_id))
        return Tier.LIFETIME


def project_limit(tier: Any) -> int:
    """Free tier gets a single project; every paid tier is unlimited."""
    resolved = coerce_tier(tier) or Tier.FREE
    return 1 if resolved is Tier.FREE else UNLIMITED_PROJECTS


def model_class_for(tier: Any) -> ModelClass:
    """Map a tier onto the broad model class it is served with."""
    resolved = coerce_tier(tier) or Tier.FREE
    if resolved is Tier.FREE:
        return ModelClass.BASIC
    if resolved in (Tier.STARTER, Tier.INDUSTRY):
        return ModelClass.ADVANCED
    return ModelClass.PREMIUM
