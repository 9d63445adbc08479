"""Per-user credit state and period helpers."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    Field,
    ValidationError,
    computed_field,
    field_validator,
    model_validator,
)

from velto_credits.exceptions import MalformedCacheDataError
from velto_credits.tiers import Tier, coerce_tier, quota_for

# Days that must pass since the start of the stored period before usage resets
RESET_AFTER_DAYS = 30

PERIOD_KEY_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"

# Fields another session is allowed to overwrite when its change is merged in
USAGE_FIELDS = ("input_tokens_used", "output_tokens_used", "granted_credits", "period_key")


class PaymentStatus(str, Enum):
    """Subscription payment status."""

    ACTIVE = "active"
    FAILED = "failed"
    CANCELLED = "cancelled"


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(moment: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def period_key_for(now: datetime) -> str:
    """Year-month key for the usage period containing ``now``."""
    return as_utc(now).strftime("%Y-%m")


def period_start(period_key: str) -> datetime:
    """First instant of the period identified by ``period_key``."""
    year, month = period_key.split("-")
    return datetime(int(year), int(month), 1, tzinfo=UTC)


class CreditState(BaseModel):
    """A user's tier, token usage for the current period, and payment metadata.

    ``quota_used_this_period`` is derived from the input/output counters, so the
    two can never drift apart. Usage may exceed the quota (overdraft is recorded);
    ``remaining_credits`` is clamped at zero for display.
    """

    model_config = {"frozen": True}

    tier: Tier = Tier.FREE
    input_tokens_used: int = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("input_tokens_used", "inputTokensUsed"),
    )
    output_tokens_used: int = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("output_tokens_used", "outputTokensUsed"),
    )
    # Purchased top-ups for the current period
    granted_credits: int = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("granted_credits", "grantedCredits"),
    )
    period_key: str = Field(
        pattern=PERIOD_KEY_PATTERN,
        validation_alias=AliasChoices("period_key", "lastReset"),
    )
    subscription_started_at: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices("subscription_started_at", "subscriptionStartDate"),
    )
    last_payment_at: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices("last_payment_at", "lastPaymentDate"),
    )
    payment_status: PaymentStatus = Field(
        default=PaymentStatus.ACTIVE,
        validation_alias=AliasChoices("payment_status", "paymentStatus"),
    )

    @model_validator(mode="before")
    @classmethod
    def absorb_legacy_usage(cls, data: Any) -> Any:
        """Fold a legacy ``usedThisMonth`` total into the per-direction counters.

        Older records kept the total separately and it could run ahead of the
        input/output counters; the difference is booked as output tokens.
        """
        if not isinstance(data, dict) or "usedThisMonth" not in data:
            return data
        if "output_tokens_used" in data or "quota_used_this_period" in data:
            return data
        data = dict(data)
        used = int(data.get("usedThisMonth") or 0)
        input_tokens = int(data.get("inputTokensUsed") or 0)
        output_tokens = int(data.get("outputTokensUsed") or 0)
        data["outputTokensUsed"] = max(output_tokens, used - input_tokens, 0)
        data["inputTokensUsed"] = min(input_tokens, used) if used else input_tokens
        return data

    @field_validator("tier", mode="before")
    @classmethod
    def validate_tier(cls, v: Any) -> Tier:
        return coerce_tier(v) or Tier.FREE

    @computed_field  # type: ignore[prop-decorator]
    @property
    def quota_used_this_period(self) -> int:
        return self.input_tokens_used + self.output_tokens_used

    @computed_field  # type: ignore[prop-decorator]
    @property
    def quota(self) -> int:
        return quota_for(self.tier)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def remaining_credits(self) -> int:
        return max(0, self.quota + self.granted_credits - self.quota_used_this_period)

    @property
    def usage_percentage(self) -> float:
        """Share of the tier quota used, capped at 100."""
        return min(100.0, (self.quota_used_this_period / self.quota) * 100)

    @classmethod
    def fresh(cls, now: datetime | None = None) -> "CreditState":
        """Default state for a user seen for the first time."""
        return cls(tier=Tier.FREE, period_key=period_key_for(now or utcnow()))

    def with_usage_from(self, other: "CreditState") -> "CreditState":
        """Copy usage/credit fields from ``other``, keeping everything else."""
        return self.model_copy(update={name: getattr(other, name) for name in USAGE_FIELDS})

    def has_same_usage(self, other: "CreditState") -> bool:
        return all(getattr(self, name) == getattr(other, name) for name in USAGE_FIELDS)

    # Serialization

    def to_cache(self) -> str:
        """Serialize for the local key-value cache."""
        return self.model_dump_json()

    @classmethod
    def from_cache(cls, raw: str, key: str) -> "CreditState":
        """Parse a cached payload.

        Raises:
            MalformedCacheDataError: If the payload is not a valid credit state
        """
        if not isinstance(raw, str | bytes):
            raise MalformedCacheDataError(key, f"unexpected payload type {type(raw).__name__}")
        try:
            return cls.model_validate_json(raw)
        except ValidationError as e:
            raise MalformedCacheDataError(key, str(e)) from e

    def to_record(self) -> dict[str, Any]:
        """Serialize for the document store."""
        return self.model_dump(mode="json")

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "CreditState":
        """Parse a document-store record. Raises ValidationError when invalid."""
        return cls.model_validate(record)


def apply_monthly_reset(state: CreditState, now: datetime | None = None) -> CreditState:
    """Roll usage over to the current period when one is due.

    Same period: unchanged. Different period and at least 30 days since the stored
    period began: usage and top-ups zeroed, period advanced. The tier is never
    touched here; tier changes only happen through an explicit tier change.
    """
    now = as_utc(now or utcnow())
    current = period_key_for(now)
    if state.period_key == current:
        return state

    days_elapsed = (now - period_start(state.period_key)).days
    if days_elapsed < RESET_AFTER_DAYS:
        return state

    return state.model_copy(
        update={
            "input_tokens_used": 0,
            "output_tokens_used": 0,
            "granted_credits": 0,
            "period_key": current,
        }
    )
