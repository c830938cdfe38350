"""
Synthetic market data for offline backtests.

Used whenever a real data source is unavailable: seeded Gaussian daily
returns per symbol profile, doubled volatility in earnings weeks, valid
OHLC relationships, weekdays only. VIX follows a mean-reverting random walk.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from engine.models import DailyBar
from shared.constants import VIX_CEILING, VIX_DEFAULT, VIX_FLOOR
from strategies.pricing import is_earnings_week

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyntheticProfile:
    start_price: float
    volatility: float  # annualized
    drift: float       # annualized


SYMBOL_PROFILES: Dict[str, SyntheticProfile] = {
    "AAPL": SyntheticProfile(150.0, 0.20, 0.08),
    "NVDA": SyntheticProfile(400.0, 0.35, 0.25),
    "TSLA": SyntheticProfile(200.0, 0.50, 0.15),
    "SOFI": SyntheticProfile(11.63, 0.40, 0.20),
    "APP": SyntheticProfile(25.0, 0.55, 0.10),
}

DEFAULT_PROFILE = SyntheticProfile(100.0, 0.30, 0.10)


def profile_for(symbol: str) -> SyntheticProfile:
    return SYMBOL_PROFILES.get(symbol.upper(), DEFAULT_PROFILE)


def generate_bars(
    symbol: str,
    start: datetime,
    end: datetime,
    seed: int = 42,
    profile: Optional[SyntheticProfile] = None,
    target_end_price: Optional[float] = None,
    earnings_boost: bool = True,
) -> List[DailyBar]:
    """Generate weekday bars for *symbol* between *start* and *end* inclusive.

    Args:
        symbol: Ticker, used to pick a profile when *profile* is None.
        start: First calendar date.
        end: Last calendar date.
        seed: RNG seed; identical inputs give identical bars.
        profile: Start price / volatility / drift override.
        target_end_price: When set, prices are progressively rescaled so
            the last close equals this value (the first bar is untouched).
        earnings_boost: Double the daily shock in earnings weeks.

    Returns:
        Bars sorted by date.
    """
    profile = profile or profile_for(symbol)
    days = pd.bdate_range(start, end)
    n = len(days)
    if n == 0:
        return []

    rng = np.random.default_rng(seed)
    shocks = rng.normal(0.0, profile.volatility / math.sqrt(252), n)
    if earnings_boost:
        shocks *= np.array([2.0 if is_earnings_week(d) else 1.0 for d in days])
    returns = np.clip(shocks + profile.drift / 252, -0.5, None)

    closes = profile.start_price * np.cumprod(1.0 + returns)
    prev_closes = np.concatenate([[profile.start_price], closes[:-1]])
    opens = prev_closes * (1.0 + rng.normal(0.0, 0.005, n))
    highs = np.maximum(closes * (1.0 + np.abs(rng.normal(0.0, 0.01, n))), np.maximum(opens, closes))
    lows = np.minimum(closes * (1.0 - np.abs(rng.normal(0.0, 0.01, n))), np.minimum(opens, closes))
    volumes = np.maximum(rng.integers(10_000_000, 25_000_000, n), 5_000_000)

    if target_end_price is not None and target_end_price > 0:
        adjustment = target_end_price / closes[-1]
        progress = np.arange(n) / (n - 1) if n > 1 else np.ones(1)
        factors = 1.0 + (adjustment - 1.0) * progress
        opens, highs, lows, closes = opens * factors, highs * factors, lows * factors, closes * factors

    bars = [
        DailyBar(
            date=day.to_pydatetime(),
            open=float(o), high=float(h), low=float(lo), close=float(c), volume=int(v),
        )
        for day, o, h, lo, c, v in zip(days, opens, highs, lows, closes, volumes)
    ]

    logger.info(
        "Generated %d synthetic trading days for %s, close %.2f -> %.2f",
        len(bars), symbol.upper(), bars[0].close, bars[-1].close,
    )
    return bars


def generate_vix(
    dates: Sequence,
    seed: int = 42,
    mean: float = VIX_DEFAULT,
    reversion: float = 0.1,
    shock_std: float = 2.0,
) -> pd.Series:
    """Mean-reverting VIX path over *dates*, clipped to [10, 50]."""
    rng = np.random.default_rng(seed)
    index = pd.DatetimeIndex(pd.to_datetime(list(dates))).normalize()
    values = []
    vix = mean
    for _ in range(len(index)):
        vix = vix + (mean - vix) * reversion + rng.normal(0.0, shock_std)
        vix = min(VIX_CEILING, max(VIX_FLOOR, vix))
        values.append(vix)
    return pd.Series(values, index=index, name="vix", dtype=float)
