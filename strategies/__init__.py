"""
Heuristic option pricing for the premium-selling strategies.

Premiums are estimated from underlying price, strike, days to expiration
and VIX; no option chain is required.
"""

from strategies.pricing import (
    calculate_final_pnl,
    days_until,
    estimate_covered_call_premium,
    estimate_position_value,
    estimate_premium,
    estimate_put_spread_premium,
    is_earnings_week,
    is_near_earnings,
    next_monthly_expiration,
    third_friday,
)

__all__ = [
    "calculate_final_pnl",
    "days_until",
    "estimate_covered_call_premium",
    "estimate_position_value",
    "estimate_premium",
    "estimate_put_spread_premium",
    "is_earnings_week",
    "is_near_earnings",
    "next_monthly_expiration",
    "third_friday",
]
