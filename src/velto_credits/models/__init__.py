"""Data models for credit metering."""

from velto_credits.models.credits import (
    RESET_AFTER_DAYS,
    USAGE_FIELDS,
    CreditState,
    PaymentStatus,
    apply_monthly_reset,
    period_key_for,
    period_start,
)

__all__ = [
    "RESET_AFTER_DAYS",
    "USAGE_FIELDS",
    "CreditState",
    "PaymentStatus",
    "apply_monthly_reset",
    "period_key_for",
    "period_start",
]
