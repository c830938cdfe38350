"""
Heuristic premium estimators and expiration helpers.

These are deliberately simple: a sqrt(time) * VIX "time value" scaled by
moneyness, floored by a per-price-tier minimum premium that scales with the
VIX level. No Black-Scholes, no implied-vol solving.
"""

import math
from datetime import date, datetime, timedelta
from typing import Sequence, Tuple, Union

from engine.models import Position, StrategyType
from shared.constants import EARNINGS_DAY_RANGE, EARNINGS_MONTHS

DateLike = Union[date, datetime]

# (upper price bound, minimum premium); the last tier catches everything above
_PUT_MIN_PREMIUM: Sequence[Tuple[float, float]] = (
    (10, 0.75), (15, 1.25), (25, 2.00), (50, 3.50), (math.inf, 5.00),
)
_CALL_MIN_PREMIUM: Sequence[Tuple[float, float]] = (
    (10, 0.35), (15, 0.65), (25, 1.00), (50, 1.75), (math.inf, 2.50),
)

# (upper VIX bound, multiplier)
_PUT_VIX_MULT: Sequence[Tuple[float, float]] = (
    (15, 0.8), (25, 1.0), (35, 1.4), (math.inf, 1.8),
)
_CALL_VIX_MULT: Sequence[Tuple[float, float]] = (
    (15, 0.7), (25, 1.0), (35, 1.3), (math.inf, 1.6),
)


def _tier(value: float, table: Sequence[Tuple[float, float]]) -> float:
    for upper, result in table:
        if value <= upper:
            return result
    return table[-1][1]


def _time_value(dte: int, vix: float) -> float:
    return math.sqrt(max(dte, 0) / 365.0) * vix / 100.0


def estimate_put_spread_premium(stock_price: float, strike: float, dte: int, vix: float) -> float:
    """Per-share credit for a short put at *strike*.

    Args:
        stock_price: Underlying price.
        strike: Short put strike.
        dte: Days to expiration.
        vix: VIX level used as a volatility proxy.

    Returns:
        ``max(tier_minimum * vix_multiplier, base)`` where
        ``base = S * sqrt(dte/365) * vix/100 * (S-K)/S * 0.15``.
    """
    moneyness = (stock_price - strike) / stock_price
    base = stock_price * _time_value(dte, vix) * moneyness * 0.15
    floor = _tier(stock_price, _PUT_MIN_PREMIUM) * _tier(vix, _PUT_VIX_MULT)
    return max(floor, base)


def estimate_covered_call_premium(stock_price: float, strike: float, dte: int, vix: float) -> float:
    """Per-share premium for a short call at *strike* against owned shares."""
    moneyness = max(0.0, (strike - stock_price) / stock_price)
    base = stock_price * _time_value(dte, vix) * (0.5 + moneyness) * 0.08
    floor = _tier(stock_price, _CALL_MIN_PREMIUM) * _tier(vix, _CALL_VIX_MULT)
    return max(floor, base)


def estimate_premium(strategy: StrategyType, stock_price: float, strike: float, dte: int, vix: float) -> float:
    if strategy == StrategyType.PUT_CREDIT_SPREAD:
        return estimate_put_spread_premium(stock_price, strike, dte, vix)
    return estimate_covered_call_premium(stock_price, strike, dte, vix)


def days_until(expiration: DateLike, as_of: DateLike) -> int:
    """Calendar days from *as_of* to *expiration*, by date (time of day ignored)."""
    exp = expiration.date() if isinstance(expiration, datetime) else expiration
    now = as_of.date() if isinstance(as_of, datetime) else as_of
    return (exp - now).days


def estimate_position_value(position: Position, stock_price: float, as_of: DateLike, vix: float) -> float:
    """Per-share cost to buy the position back on *as_of*.

    Half of a fresh premium estimate for the remaining days; zero once no
    days remain.
    """
    days_left = days_until(position.expiration_date, as_of)
    if days_left <= 0:
        return 0.0
    fresh = estimate_premium(position.strategy, stock_price, position.strike_price, days_left, vix)
    return fresh * 0.5


def calculate_final_pnl(position: Position, final_price: float) -> float:
    """Per-share P&L when the position settles at *final_price*.

    Put credit spread: full premium above the strike, otherwise the premium
    less the intrinsic value. Covered call: premium plus any capped upside
    given up above the strike.
    """
    if position.strategy == StrategyType.PUT_CREDIT_SPREAD:
        if final_price >= position.strike_price:
            return position.premium_collected
        return position.premium_collected - (position.strike_price - final_price)
    return position.premium_collected + min(0.0, position.strike_price - final_price)


# ---------------------------------------------------------------------------
# Calendar helpers
# ---------------------------------------------------------------------------

def third_friday(year: int, month: int) -> datetime:
    """Standard monthly options expiration for *year*/*month*."""
    first = datetime(year, month, 1)
    offset = (4 - first.weekday()) % 7
    return first + timedelta(days=offset + 14)


def next_monthly_expiration(as_of: DateLike, preferred_dte: int = 45) -> datetime:
    """Third Friday of the month that contains ``as_of + preferred_dte``."""
    if not isinstance(as_of, datetime):
        as_of = datetime(as_of.year, as_of.month, as_of.day)
    target = as_of + timedelta(days=preferred_dte)
    return third_friday(target.year, target.month)


def is_near_earnings(when: DateLike) -> bool:
    """True in the mid-month earnings window of Jan/Apr/Jul/Oct (days 10..20)."""
    lo, hi = EARNINGS_DAY_RANGE
    return when.month in EARNINGS_MONTHS and lo <= when.day <= hi


def is_earnings_week(when: DateLike) -> bool:
    """Late Jan/Apr/Jul/Oct, when the underlying typically reports."""
    if when.month == 1:
        return when.day >= 25
    if when.month in (4, 7, 10):
        return 22 <= when.day <= 30
    return False
