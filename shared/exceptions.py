"""Custom exception hierarchy for the SOFIRED backtester."""


class SofiredError(Exception):
    """Base exception for all SOFIRED errors."""


class DataFetchError(SofiredError):
    """Raised when market data (bars, VIX) cannot be fetched or parsed."""


class ConfigError(SofiredError, ValueError):
    """Raised on invalid or missing configuration."""


class CheckpointError(SofiredError):
    """Raised when a backtest checkpoint cannot be loaded or saved."""


class StrategyError(SofiredError):
    """Raised on trading engine errors (bad position state, invalid sizing)."""
