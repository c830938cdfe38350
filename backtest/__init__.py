"""
Backtesting module for the put credit spread / covered call engine.
"""

from .backtester import Backtester
from .checkpoint import CheckpointManager
from .historical_data import HistoricalBarsData
from .performance_metrics import PerformanceMetrics

__all__ = ['Backtester', 'CheckpointManager', 'HistoricalBarsData', 'PerformanceMetrics']
