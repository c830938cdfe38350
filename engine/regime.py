"""
Regime helpers.

Two independent classifications are used:

  - Volatility regime (drives delta selection), from VIX alone:
      LOW     VIX < 15
      NORMAL  15 <= VIX <= 25
      HIGH    VIX > 25
  - Market regime (tagged on positions for reporting), from VIX plus the
    underlying's price trend:
      VOLATILE  VIX > 30 (any direction)
      BULL      trending up, VIX < 20
      BEAR      trending down, VIX > 20
      TRENDING  trending, VIX not confirming the direction
      SIDEWAYS  no trend

Both work on pre-loaded data so they can run inside the backtest day loop.
"""

from typing import Dict, Optional

import pandas as pd

from engine.models import MarketRegime, StrategyType, VolRegime
from shared.constants import VIX_DEFAULT, VIX_HIGH_THRESHOLD, VIX_LOW_THRESHOLD


# Short-option delta per volatility regime: sell further OTM when vol is high
PUT_DELTA_BY_REGIME: Dict[VolRegime, float] = {
    VolRegime.LOW: 0.20,
    VolRegime.NORMAL: 0.15,
    VolRegime.HIGH: 0.08,
}

CALL_DELTA_BY_REGIME: Dict[VolRegime, float] = {
    VolRegime.LOW: 0.15,
    VolRegime.NORMAL: 0.12,
    VolRegime.HIGH: 0.06,
}


def determine_vol_regime(
    vix: float,
    low_threshold: float = VIX_LOW_THRESHOLD,
    high_threshold: float = VIX_HIGH_THRESHOLD,
) -> VolRegime:
    """Bucket a VIX reading. Both thresholds themselves fall in NORMAL."""
    if vix < low_threshold:
        return VolRegime.LOW
    if vix > high_threshold:
        return VolRegime.HIGH
    return VolRegime.NORMAL


def target_delta(strategy: StrategyType, regime: VolRegime, near_earnings: bool = False) -> float:
    """Delta to sell for *strategy* in *regime*.

    Covered-call delta is halved inside the earnings window.
    """
    if strategy == StrategyType.PUT_CREDIT_SPREAD:
        return PUT_DELTA_BY_REGIME[regime]
    delta = CALL_DELTA_BY_REGIME[regime]
    if near_earnings:
        delta *= 0.5
    return delta


class MarketRegimeClassifier:
    """Rule-based market regime tagger using VIX + price trend.

    Args:
        trend_window: Number of days for the trend moving average.
        trend_threshold: Minimum slope (annualized %) to consider trending.
        volatile_vix: VIX level above which the market is VOLATILE.
    """

    def __init__(self, trend_window: int = 50, trend_threshold: float = 5.0, volatile_vix: float = 30.0):
        self.trend_window = trend_window
        self.trend_threshold = trend_threshold
        self.volatile_vix = volatile_vix

    def classify(self, vix: float, prices: pd.Series) -> MarketRegime:
        """Classify one day from the VIX close and closes up to that day."""
        if vix > self.volatile_vix:
            return MarketRegime.VOLATILE

        trend = self._trend_direction(prices)
        if trend > 0:
            return MarketRegime.BULL if vix < VIX_DEFAULT else MarketRegime.TRENDING
        if trend < 0:
            return MarketRegime.BEAR if vix > VIX_DEFAULT else MarketRegime.TRENDING
        return MarketRegime.SIDEWAYS

    def classify_series(self, closes: pd.Series, vix_series: Optional[pd.Series] = None) -> pd.Series:
        """Tag every date in *closes* with a MarketRegime.

        Missing VIX values default to 20.
        """
        regimes: Dict[pd.Timestamp, MarketRegime] = {}
        for date in closes.index:
            vix_val = VIX_DEFAULT
            if vix_series is not None:
                raw = vix_series.get(date, VIX_DEFAULT)
                vix_val = float(raw) if pd.notna(raw) else VIX_DEFAULT
            regimes[date] = self.classify(vix_val, closes.loc[:date])
        return pd.Series(regimes, name="market_regime", dtype=object)

    # ------------------------------------------------------------------
    # Trend helpers
    # ------------------------------------------------------------------

    def _trend_direction(self, prices: pd.Series) -> int:
        """+1 up, -1 down, 0 flat, from the annualized slope of the moving average."""
        if len(prices) < 10:
            return 0
        window = min(self.trend_window, len(prices))

        ma = prices.rolling(window, min_periods=max(5, window // 2)).mean().dropna()
        if len(ma) < 2:
            return 0

        lookback = min(20, len(ma))
        recent = ma.iloc[-lookback:]
        if recent.iloc[0] == 0:
            return 0

        pct_change = (recent.iloc[-1] / recent.iloc[0] - 1) * 100
        annualized = pct_change * (252 / lookback)

        if annualized > self.trend_threshold:
            return 1
        if annualized < -self.trend_threshold:
            return -1
        return 0

    # ------------------------------------------------------------------
    # Summary stats
    # ------------------------------------------------------------------

    @staticmethod
    def summarize(regime_series: pd.Series) -> Dict:
        """Regime distribution, transition count and average run length."""
        total = len(regime_series)
        counts = regime_series.value_counts()

        distribution = {}
        for regime in MarketRegime:
            n = int(counts.get(regime, 0))
            distribution[regime.value] = {
                "days": n,
                "pct": round(n / total * 100, 1) if total else 0,
            }

        transitions = 0
        prev = None
        for r in regime_series:
            if prev is not None and r != prev:
                transitions += 1
            prev = r

        return {
            "total_days": total,
            "distribution": distribution,
            "transitions": transitions,
            "avg_regime_duration": round(total / max(1, transitions), 1),
        }
