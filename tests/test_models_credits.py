"""Tests for the credit state model."""

import json
from datetime import UTC, datetime
from typing import Any

import pytest
from pydantic import ValidationError

from velto_credits.exceptions import MalformedCacheDataError
from velto_credits.models.credits import (
    CreditState,
    PaymentStatus,
    apply_monthly_reset,
    as_utc,
    period_key_for,
    period_start,
)
from velto_credits.tiers import Tier

from .conftest import FIXED_NOW


def make_state(**overrides: Any) -> CreditState:
    data: dict[str, Any] = {"tier": Tier.FREE, "period_key": "2025-03"}
    data.update(overrides)
    return CreditState(**data)


class TestPeriodHelpers:
    """Tests for period key helpers."""

    def test_period_key_for(self) -> None:
        """Test the key is the UTC year and month."""
        assert period_key_for(FIXED_NOW) == "2025-03"
        assert period_key_for(datetime(2024, 12, 31, 23, 59)) == "2024-12"

    def test_period_start(self) -> None:
        """Test the first instant of a period."""
        assert period_start("2025-02") == datetime(2025, 2, 1, tzinfo=UTC)

    def test_as_utc_naive(self) -> None:
        """Test naive datetimes are taken as UTC."""
        assert as_utc(datetime(2025, 1, 1)).tzinfo is UTC


class TestCreditState:
    """Tests for CreditState."""

    def test_fresh_defaults(self) -> None:
        """Test a first-time user starts on free with nothing used."""
        state = CreditState.fresh(FIXED_NOW)
        assert state.tier is Tier.FREE
        assert state.quota_used_this_period == 0
        assert state.remaining_credits == 10_000
        assert state.period_key == "2025-03"
        assert state.payment_status is PaymentStatus.ACTIVE
        assert state.subscription_started_at is None

    def test_used_is_sum_of_directions(self) -> None:
        """Test the period total is derived from input and output counters."""
        state = make_state(input_tokens_used=300, output_tokens_used=200)
        assert state.quota_used_this_period == 500
        assert state.remaining_credits == 9500
        assert state.usage_percentage == 5.0

    def test_overdraft_recorded_but_display_clamped(self) -> None:
        """Test usage beyond quota is kept while remaining floors at zero."""
        state = make_state(output_tokens_used=10_250)
        assert state.quota_used_this_period == 10_250
        assert state.remaining_credits == 0
        assert state.usage_percentage == 100.0

    def test_granted_credits_raise_remaining(self) -> None:
        """Test purchased credits are added on top of the quota."""
        state = make_state(output_tokens_used=10_000, granted_credits=5_000)
        assert state.remaining_credits == 5_000

    def test_invalid_tier_coerced_to_free(self) -> None:
        """Test an unknown stored tier is read as free."""
        assert make_state(tier="platinum").tier is Tier.FREE

    def test_rejects_negative_usage(self) -> None:
        """Test negative counters are invalid."""
        with pytest.raises(ValidationError):
            make_state(input_tokens_used=-1)

    def test_rejects_bad_period_key(self) -> None:
        """Test the period key must be YYYY-MM."""
        with pytest.raises(ValidationError):
            make_state(period_key="2025-13")

    def test_frozen(self) -> None:
        """Test states are immutable."""
        state = make_state()
        with pytest.raises(ValidationError):
            state.tier = Tier.ULTRA  # type: ignore[misc]

    def test_with_usage_from_keeps_tier(self) -> None:
        """Test merging takes usage fields only."""
        mine = make_state(tier=Tier.ULTRA, payment_status=PaymentStatus.ACTIVE)
        theirs = make_state(
            tier=Tier.FREE,
            input_tokens_used=10,
            output_tokens_used=20,
            granted_credits=1000,
            payment_status=PaymentStatus.FAILED,
        )
        merged = mine.with_usage_from(theirs)
        assert merged.tier is Tier.ULTRA
        assert merged.payment_status is PaymentStatus.ACTIVE
        assert merged.quota_used_this_period == 30
        assert merged.granted_credits == 1000
        assert merged.has_same_usage(theirs)


class TestLegacyRecords:
    """Tests for reading the older record layout."""

    def test_camel_case_aliases(self, legacy_record: dict[str, Any]) -> None:
        """Test camelCase fields are accepted."""
        state = CreditState.from_record(legacy_record)
        assert state.tier is Tier.INDUSTRY
        assert state.period_key == "2025-03"
        assert state.input_tokens_used == 6000
        assert state.output_tokens_used == 4000
        assert state.subscription_started_at == datetime(2025, 2, 1, tzinfo=UTC)

    def test_total_ahead_of_counters(self) -> None:
        """Test a monthly total larger than the counters is booked as output."""
        state = CreditState.from_record(
            {"tier": "free", "usedThisMonth": 900, "inputTokensUsed": 100, "lastReset": "2025-03"}
        )
        assert state.quota_used_this_period == 900
        assert state.input_tokens_used == 100
        assert state.output_tokens_used == 800


class TestSerialization:
    """Tests for cache and record serialization."""

    def test_cache_round_trip(self) -> None:
        """Test a cached state reloads equal to the original."""
        state = make_state(
            tier=Tier.STARTER,
            input_tokens_used=12,
            output_tokens_used=34,
            granted_credits=1000,
            subscription_started_at=FIXED_NOW,
            last_payment_at=FIXED_NOW,
        )
        assert CreditState.from_cache(state.to_cache(), "key") == state

    def test_record_round_trip(self, sample_record: dict[str, Any]) -> None:
        """Test a record reloads equal to the state it came from."""
        state = CreditState.from_record(sample_record)
        assert CreditState.from_record(state.to_record()) == state

    def test_record_includes_derived_totals(self) -> None:
        """Test records carry the derived totals for readers of the store."""
        record = make_state(input_tokens_used=1, output_tokens_used=2).to_record()
        assert record["quota_used_this_period"] == 3
        assert record["remaining_credits"] == 9997
        assert record["tier"] == "free"

    @pytest.mark.parametrize(
        "raw",
        ["not json", "{}", json.dumps({"tier": "free", "period_key": "March"}), "[]"],
    )
    def test_malformed_cache(self, raw: str) -> None:
        """Test unparsable cache payloads raise MalformedCacheDataError."""
        with pytest.raises(MalformedCacheDataError) as exc_info:
            CreditState.from_cache(raw, "ai_credits_v1_user-123")
        assert exc_info.value.key == "ai_credits_v1_user-123"

    def test_malformed_cache_wrong_type(self) -> None:
        """Test non-string payloads are rejected."""
        with pytest.raises(MalformedCacheDataError):
            CreditState.from_cache(42, "key")  # type: ignore[arg-type]


class TestMonthlyReset:
    """Tests for apply_monthly_reset."""

    def test_same_period_is_noop(self) -> None:
        """Test nothing changes within the stored period."""
        state = make_state(tier=Tier.ULTRA, output_tokens_used=5000, granted_credits=100)
        assert apply_monthly_reset(state, FIXED_NOW) is state

    def test_reset_after_period_rollover(self) -> None:
        """Test usage and top-ups are cleared once the period has passed."""
        state = make_state(
            tier=Tier.ULTRA,
            period_key="2025-02",
            input_tokens_used=100,
            output_tokens_used=900,
            granted_credits=500,
        )
        reset = apply_monthly_reset(state, FIXED_NOW)
        assert reset.quota_used_this_period == 0
        assert reset.granted_credits == 0
        assert reset.period_key == "2025-03"
        assert reset.remaining_credits == 250_000

    def test_new_month_under_thirty_days_waits(self) -> None:
        """Test a new calendar month alone does not reset within 30 days."""
        state = make_state(period_key="2025-02", output_tokens_used=900)
        now = datetime(2025, 3, 1, 8, 0, tzinfo=UTC)
        assert apply_monthly_reset(state, now) is state

    def test_tier_never_changes(self) -> None:
        """Test a reset never touches the tier, even for lapsed payments."""
        for tier in Tier:
            state = make_state(
                tier=tier,
                period_key="2024-06",
                output_tokens_used=77,
                payment_status=PaymentStatus.FAILED,
            )
            reset = apply_monthly_reset(state, FIXED_NOW)
            assert reset.tier is tier
            assert reset.payment_status is PaymentStatus.FAILED

    def test_idempotent(self) -> None:
        """Test applying the reset twice equals applying it once."""
        state = make_state(tier=Tier.STARTER, period_key="2024-11", output_tokens_used=40)
        once = apply_monthly_reset(state, FIXED_NOW)
        assert apply_monthly_reset(once, FIXED_NOW) == once

    def test_starter_two_months_later(self) -> None:
        """Test a starter user two months on gets the full quota back."""
        state = make_state(tier="starter", period_key="2025-01", output_tokens_used=41_000)
        reset = apply_monthly_reset(state, FIXED_NOW)
        assert reset.tier is Tier.STARTER
        assert reset.quota_used_this_period == 0
        assert reset.remaining_credits == 50_000
