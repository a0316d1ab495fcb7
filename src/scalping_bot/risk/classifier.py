"""Risk classification from volatility and daily loss."""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Optional, Sequence, Tuple

from ..core.enums import RiskLevel

# Upper bounds (inclusive) on ATR % for each level; anything above is CRITICAL.
VOLATILITY_THRESHOLDS: Tuple[Tuple[Decimal, RiskLevel], ...] = (
    (Decimal("2.0"), RiskLevel.VERY_LOW),
    (Decimal("4.0"), RiskLevel.LOW),
    (Decimal("6.0"), RiskLevel.MEDIUM),
    (Decimal("10.0"), RiskLevel.HIGH),
    (Decimal("20.0"), RiskLevel.VERY_HIGH),
)

# Upper bounds (inclusive) on loss / limit; the VERY_HIGH bound is exclusive.
LOSS_RATIO_THRESHOLDS: Tuple[Tuple[Decimal, RiskLevel], ...] = (
    (Decimal("0.25"), RiskLevel.VERY_LOW),
    (Decimal("0.50"), RiskLevel.LOW),
    (Decimal("0.75"), RiskLevel.MEDIUM),
    (Decimal("0.90"), RiskLevel.HIGH),
)
LOSS_RATIO_CRITICAL = Decimal("1.00")


def _to_decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not result.is_finite():
        return None
    return result


def classify_by_volatility(atr_percent: Optional[float]) -> RiskLevel:
    """Map a volatility percentage to a risk level.

    Negative or missing input yields MEDIUM.
    """
    value = _to_decimal(atr_percent)
    if value is None or value < 0:
        return RiskLevel.MEDIUM
    for bound, level in VOLATILITY_THRESHOLDS:
        if value <= bound:
            return level
    return RiskLevel.CRITICAL


def loss_ratio(current_loss_percent: Optional[float], daily_loss_limit_percent: Optional[float]) -> Optional[Decimal]:
    """|loss| / limit rounded half-up to 2 places, or None when undefined."""
    loss = _to_decimal(current_loss_percent)
    limit = _to_decimal(daily_loss_limit_percent)
    if loss is None or limit is None or limit <= 0:
        return None
    return (abs(loss) / limit).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def classify_by_loss(current_loss_percent: Optional[float], daily_loss_limit_percent: Optional[float]) -> RiskLevel:
    """Map the daily loss, relative to its limit, to a risk level.

    An undefined or zero limit yields MEDIUM.
    """
    ratio = loss_ratio(current_loss_percent, daily_loss_limit_percent)
    if ratio is None:
        return RiskLevel.MEDIUM
    for bound, level in LOSS_RATIO_THRESHOLDS:
        if ratio <= bound:
            return level
    if ratio < LOSS_RATIO_CRITICAL:
        return RiskLevel.VERY_HIGH
    return RiskLevel.CRITICAL


def most_severe(levels: Sequence[RiskLevel]) -> RiskLevel:
    return max(levels, key=lambda level: level.severity)


def effective_level(
    atr_percent: Optional[float],
    current_loss_percent: Optional[float],
    daily_loss_limit_percent: Optional[float],
) -> Tuple[RiskLevel, RiskLevel, RiskLevel]:
    """(effective, volatility-based, loss-based) levels."""
    by_volatility = classify_by_volatility(atr_percent)
    by_loss = classify_by_loss(current_loss_percent, daily_loss_limit_percent)
    return most_severe([by_volatility, by_loss]), by_volatility, by_loss
