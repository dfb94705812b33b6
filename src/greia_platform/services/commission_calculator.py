"""Commission Calculator: fee, override and split arithmetic.

Pure-function module. NO database access, NO side effects.

    standard_fee  = base_value × standard_rate_pct / 100
    effective_fee = override if override > 0 else standard_fee
    introducer    = effective_fee × split_rate_pct / 100
    fulfiller     = effective_fee − introducer

All money is ``Decimal`` quantized to cents (ROUND_HALF_UP). The fulfiller
share is derived by subtraction, so ``introducer + fulfiller == effective``
holds exactly.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from greia_platform.services.errors import (
    CommissionInvariantViolation,
    InvalidCommissionOverride,
)

Number = Union[Decimal, int, float, str]

CENT = Decimal("0.01")
HUNDRED = Decimal("100")

# Review scores live on the same 0-5 scale as candidate ratings
MIN_REVIEW_SCORE = 0.0
MAX_REVIEW_SCORE = 5.0


@dataclass(frozen=True)
class CommissionSplit:
    """Computed commission figures attached to an engagement."""

    standard_fee: Decimal
    override_fee: Optional[Decimal]
    effective_fee: Decimal
    introducer_share: Decimal
    fulfiller_share: Decimal
    split_rate_pct: Decimal

    def as_fields(self) -> dict:
        """Engagement column values for this split."""
        return {
            "standard_fee": self.standard_fee,
            "override_fee": self.override_fee,
            "effective_fee": self.effective_fee,
            "introducer_share": self.introducer_share,
            "fulfiller_share": self.fulfiller_share,
            "split_rate_pct": float(self.split_rate_pct),
        }


def to_decimal(value: Number) -> Decimal:
    """Convert a number to Decimal without inheriting binary float noise."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def _cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def standard_fee(base_value: Number, standard_rate_pct: Number) -> Decimal:
    """Standard fee as a percentage of the base value."""
    return _cents(to_decimal(base_value) * to_decimal(standard_rate_pct) / HUNDRED)


def effective_fee(standard: Number, override: Optional[Number] = None) -> Decimal:
    """Return the override when provided and positive, else the standard fee."""
    if override is not None and to_decimal(override) > 0:
        return _cents(to_decimal(override))
    return _cents(to_decimal(standard))


def split(effective: Number, split_rate_pct: Number) -> tuple[Decimal, Decimal]:
    """Split an effective fee into (introducer_share, fulfiller_share)."""
    fee = _cents(to_decimal(effective))
    rate = to_decimal(split_rate_pct)
    if rate < 0 or rate > HUNDRED:
        raise InvalidCommissionOverride(
            f"Split rate must be within [0, 100], got {rate}",
            {"split_rate_pct": str(rate)},
        )
    introducer = _cents(fee * rate / HUNDRED)
    fulfiller = fee - introducer
    return introducer, fulfiller


def validate_override(
    override: Optional[Number],
    base_value: Optional[Number],
    max_override_rate_pct: Number,
) -> Optional[Decimal]:
    """Validate a caller-supplied fee override.

    ``None`` and ``0`` mean "no override". Negative overrides, and overrides
    above ``max_override_rate_pct`` of the base value, are rejected.
    """
    if override is None:
        return None
    amount = to_decimal(override)
    if amount == 0:
        return None
    if amount < 0:
        raise InvalidCommissionOverride(
            "Commission override must not be negative",
            {"override": str(amount)},
        )
    if base_value is None:
        raise InvalidCommissionOverride(
            "Commission override requires a known base value",
            {"override": str(amount)},
        )
    ceiling = _cents(to_decimal(base_value) * to_decimal(max_override_rate_pct) / HUNDRED)
    if amount > ceiling:
        raise InvalidCommissionOverride(
            f"Commission override {amount} exceeds ceiling {ceiling}",
            {"override": str(amount), "ceiling": str(ceiling)},
        )
    return _cents(amount)


def validate_positive_value(
    value: Optional[Number], field: str = "final_value"
) -> Optional[Decimal]:
    """A base or final value supplied by a caller must be positive."""
    if value is None:
        return None
    amount = to_decimal(value)
    if amount <= 0:
        raise InvalidCommissionOverride(
            f"{field} must be positive",
            {field: str(amount)},
        )
    return _cents(amount)


def verify_split(result: CommissionSplit) -> CommissionSplit:
    """Raise CommissionInvariantViolation unless the shares reconcile."""
    if result.introducer_share + result.fulfiller_share != result.effective_fee:
        raise CommissionInvariantViolation(
            "Commission shares do not reconcile to the effective fee",
            {
                "effective_fee": str(result.effective_fee),
                "introducer_share": str(result.introducer_share),
                "fulfiller_share": str(result.fulfiller_share),
            },
        )
    if result.introducer_share < 0 or result.fulfiller_share < 0:
        raise CommissionInvariantViolation(
            "Commission shares must not be negative",
            {
                "introducer_share": str(result.introducer_share),
                "fulfiller_share": str(result.fulfiller_share),
            },
        )
    return result


def compute_commission(
    base_value: Number,
    *,
    standard_rate_pct: Number,
    split_rate_pct: Number,
    override: Optional[Number] = None,
    max_override_rate_pct: Number = 10,
) -> CommissionSplit:
    """Compute and verify the full commission split for a base value."""
    checked_override = validate_override(override, base_value, max_override_rate_pct)
    std = standard_fee(base_value, standard_rate_pct)
    eff = effective_fee(std, checked_override)
    introducer, fulfiller = split(eff, split_rate_pct)
    return verify_split(
        CommissionSplit(
            standard_fee=std,
            override_fee=checked_override,
            effective_fee=eff,
            introducer_share=introducer,
            fulfiller_share=fulfiller,
            split_rate_pct=to_decimal(split_rate_pct),
        )
    )


def validate_review_score(score: Optional[float]) -> Optional[float]:
    """Review scores must lie on the 0-5 rating scale."""
    if score is None:
        return None
    if not MIN_REVIEW_SCORE <= score <= MAX_REVIEW_SCORE:
        raise InvalidCommissionOverride(
            f"Review score must be within [{MIN_REVIEW_SCORE}, {MAX_REVIEW_SCORE}]",
            {"review_score": score},
        )
    return float(score)


def updated_rating(old_rating: float, review_score: float, completed_count: int) -> float:
    """Incremental mean: fold one more review into a running rating.

    The persistence layer applies the same formula atomically in SQL; this
    function is the reference used for previews and tests.
    """
    return old_rating + (review_score - old_rating) / (completed_count + 1)
