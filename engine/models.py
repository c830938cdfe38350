"""
Domain types for the trading engine: bars, positions, strategy settings
and per-day session snapshots.
"""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, time
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from shared.constants import (
    CONTRACT_MULTIPLIER,
    ENTRY_WINDOW_END,
    ENTRY_WINDOW_START,
    EXIT_WINDOW_END,
    EXIT_WINDOW_START,
    VIX_HIGH_THRESHOLD,
    VIX_LOW_THRESHOLD,
)
from shared.exceptions import ConfigError
from shared.types import TradeRecord


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class VolRegime(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class StrategyType(str, Enum):
    PUT_CREDIT_SPREAD = "put_credit_spread"
    COVERED_CALL = "covered_call"

    @property
    def code(self) -> str:
        """Short prefix used in position ids (PCS / CC)."""
        return "PCS" if self is StrategyType.PUT_CREDIT_SPREAD else "CC"


class PositionStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    ROLLED = "rolled"
    ASSIGNED = "assigned"
    EXPIRED = "expired"


class MarketRegime(str, Enum):
    BULL = "bull"
    BEAR = "bear"
    SIDEWAYS = "sideways"
    VOLATILE = "volatile"
    TRENDING = "trending"


class ExitReason(str, Enum):
    PROFIT_TARGET = "profit_target"
    MAX_THRESHOLD = "max_threshold"
    EXPIRATION = "expiration"
    ASSIGNMENT = "assignment"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def parse_clock(value: Union[str, time, Tuple[int, int], List[int]]) -> time:
    """Parse "HH:MM", "HH:MM:SS", ``(h, m)`` or a ``time`` into a ``time``."""
    if isinstance(value, time):
        return value
    if isinstance(value, (tuple, list)):
        return time(int(value[0]), int(value[1]))
    if isinstance(value, str):
        parts = value.strip().split(":")
        try:
            return time(*(int(p) for p in parts))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid time of day: {value!r}") from e
    raise ConfigError(f"Invalid time of day: {value!r}")


def _parse_dt(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DailyBar:
    """One daily OHLCV bar for the underlying."""
    date: datetime
    open: float
    high: float
    low: float
    close: float
    volume: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.strftime("%Y-%m-%d"),
            "open": round(self.open, 4),
            "high": round(self.high, 4),
            "low": round(self.low, 4),
            "close": round(self.close, 4),
            "volume": int(self.volume),
        }


@dataclass
class Position:
    """A single short-premium position (put credit spread or covered call).

    Prices (``premium_collected``, ``max_profit``, strikes) are per share.
    ``profit_loss`` is in dollars for the whole position once it is closed.
    """
    id: str
    symbol: str
    strategy: StrategyType
    entry_date: datetime
    expiration_date: datetime
    strike_price: float
    entry_price: float
    premium_collected: float
    max_profit: float
    delta: float
    days_to_expiration: int
    vix_level: float
    vol_regime: VolRegime
    contracts: int = 1
    capital_allocated: float = 0.0
    market_regime: MarketRegime = MarketRegime.SIDEWAYS
    status: PositionStatus = PositionStatus.OPEN
    exit_date: Optional[datetime] = None
    exit_price: Optional[float] = None
    profit_loss: Optional[float] = None
    exit_reason: Optional[ExitReason] = None
    notes: str = ""

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    @property
    def premium_dollars(self) -> float:
        return self.premium_collected * self.contracts * CONTRACT_MULTIPLIER

    @property
    def max_profit_dollars(self) -> float:
        return self.max_profit * self.contracts * CONTRACT_MULTIPLIER

    @property
    def profit_percentage(self) -> float:
        """Realized P&L as a fraction of the maximum possible profit."""
        if self.max_profit_dollars <= 0:
            return 0.0
        return (self.profit_loss or 0.0) / self.max_profit_dollars

    @property
    def roi_percentage(self) -> float:
        if self.capital_allocated <= 0:
            return 0.0
        return (self.profit_loss or 0.0) / self.capital_allocated

    @property
    def annualized_roi(self) -> float:
        if self.capital_allocated <= 0 or self.days_to_expiration <= 0:
            return 0.0
        return self.roi_percentage * (365 / self.days_to_expiration)

    def to_record(self) -> TradeRecord:
        """Flatten into a trades-ledger row."""
        return {
            "trade_id": self.id,
            "symbol": self.symbol,
            "strategy": self.strategy.value,
            "entry_date": self.entry_date.strftime("%Y-%m-%d"),
            "exit_date": self.exit_date.strftime("%Y-%m-%d") if self.exit_date else "OPEN",
            "dte": self.days_to_expiration,
            "delta": round(self.delta, 3),
            "strike_price": round(self.strike_price, 2),
            "entry_price": round(self.entry_price, 2),
            "exit_price": round(self.exit_price, 2) if self.exit_price is not None else None,
            "contracts": self.contracts,
            "premium_collected": round(self.premium_collected, 2),
            "profit_loss": round(self.profit_loss or 0.0, 2),
            "profit_pct": round(self.profit_percentage * 100, 1),
            "vix_level": round(self.vix_level, 1),
            "vix_regime": self.vol_regime.value,
            "market_regime": self.market_regime.value,
            "status": self.status.value,
            "exit_reason": self.exit_reason.value if self.exit_reason else "",
            "notes": self.notes,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Lossless JSON-friendly form, used by checkpoints."""
        data = asdict(self)
        for key in ("entry_date", "expiration_date", "exit_date"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        for key in ("strategy", "vol_regime", "market_regime", "status", "exit_reason"):
            if data[key] is not None:
                data[key] = data[key].value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        data = dict(data)
        data["entry_date"] = _parse_dt(data["entry_date"])
        data["expiration_date"] = _parse_dt(data["expiration_date"])
        data["exit_date"] = _parse_dt(data.get("exit_date"))
        data["strategy"] = StrategyType(data["strategy"])
        data["vol_regime"] = VolRegime(data["vol_regime"])
        data["market_regime"] = MarketRegime(data.get("market_regime", "sideways"))
        data["status"] = PositionStatus(data.get("status", "open"))
        if data.get("exit_reason"):
            data["exit_reason"] = ExitReason(data["exit_reason"])
        else:
            data["exit_reason"] = None
        return cls(**data)


@dataclass
class StrategyConfig:
    """Tunable parameters of the trading engine."""
    preferred_dte: int = 45
    min_dte: int = 30
    max_dte: int = 60
    target_delta: float = 0.15
    early_close_threshold: float = 0.70
    optimal_close_threshold: float = 0.80
    max_close_threshold: float = 0.90
    enable_delayed_rolling: bool = True
    weekly_premium_goal: float = 2000.0
    monthly_premium_goal: float = 8000.0
    initial_capital: float = 10000.0
    max_portfolio_risk: float = 0.05
    enable_compounding: bool = True
    aggressiveness_multiplier: float = 5.0
    min_contract_size: int = 5
    max_contract_size: int = 50
    capital_allocation_per_trade: float = 0.10
    entry_window: Tuple[time, time] = (time(*ENTRY_WINDOW_START), time(*ENTRY_WINDOW_END))
    exit_window: Tuple[time, time] = (time(*EXIT_WINDOW_START), time(*EXIT_WINDOW_END))
    vix_low_threshold: float = VIX_LOW_THRESHOLD
    vix_high_threshold: float = VIX_HIGH_THRESHOLD
    enable_put_credit_spreads: bool = True
    enable_covered_calls: bool = True

    def __post_init__(self):
        self.entry_window = (parse_clock(self.entry_window[0]), parse_clock(self.entry_window[1]))
        self.exit_window = (parse_clock(self.exit_window[0]), parse_clock(self.exit_window[1]))

        if self.min_dte >= self.max_dte:
            raise ConfigError("min_dte must be less than max_dte")
        if self.min_contract_size > self.max_contract_size:
            raise ConfigError("min_contract_size must not exceed max_contract_size")
        if self.initial_capital <= 0:
            raise ConfigError("initial_capital must be positive")
        for name in ("early_close_threshold", "optimal_close_threshold", "max_close_threshold"):
            value = getattr(self, name)
            if not 0 < value <= 1:
                raise ConfigError(f"{name} must be in (0, 1], got {value}")
        if self.max_close_threshold < self.early_close_threshold:
            raise ConfigError("max_close_threshold must not be below early_close_threshold")
        for name in ("entry_window", "exit_window"):
            start, end = getattr(self, name)
            if start > end:
                raise ConfigError(f"{name} start {start} is after end {end}")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "StrategyConfig":
        """Build from a config mapping, ignoring keys that are not fields."""
        data = data or {}
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        for key in ("entry_window", "exit_window"):
            window = kwargs.get(key)
            if isinstance(window, dict):
                kwargs[key] = (window["start"], window["end"])
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["entry_window"] = {"start": self.entry_window[0].strftime("%H:%M"),
                                "end": self.entry_window[1].strftime("%H:%M")}
        data["exit_window"] = {"start": self.exit_window[0].strftime("%H:%M"),
                               "end": self.exit_window[1].strftime("%H:%M")}
        return data


@dataclass
class TradingSession:
    """Snapshot returned by TradingEngine.process_trading_day."""
    date: datetime
    positions: List[Position] = field(default_factory=list)
    daily_premium: float = 0.0
    weekly_premium: float = 0.0
    monthly_premium: float = 0.0
    goals_met: bool = False
    positions_opened: int = 0
    positions_closed: int = 0
    total_pnl: float = 0.0
    current_capital: float = 0.0
    vol_regime: VolRegime = VolRegime.NORMAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.strftime("%Y-%m-%d"),
            "time": self.date.strftime("%H:%M"),
            "open_positions": len(self.positions),
            "positions_opened": self.positions_opened,
            "positions_closed": self.positions_closed,
            "daily_premium": round(self.daily_premium, 2),
            "weekly_premium": round(self.weekly_premium, 2),
            "monthly_premium": round(self.monthly_premium, 2),
            "total_pnl": round(self.total_pnl, 2),
            "current_capital": round(self.current_capital, 2),
            "goals_met": self.goals_met,
            "vol_regime": self.vol_regime.value,
        }
