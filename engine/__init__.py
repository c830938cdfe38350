"""Domain models and regime classification for the trading engine."""

from engine.models import (
    DailyBar, ExitReason, MarketRegime, Position, PositionStatus,
    StrategyConfig, StrategyType, TradingSession, VolRegime,
)
from engine.regime import MarketRegimeClassifier, determine_vol_regime, target_delta

__all__ = [
    "DailyBar", "ExitReason", "MarketRegime", "Position", "PositionStatus",
    "StrategyConfig", "StrategyType", "TradingSession", "VolRegime",
    "MarketRegimeClassifier", "determine_vol_regime", "target_delta",
]
