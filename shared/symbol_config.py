"""
Per-symbol configuration (``config_<symbol>.yml``).

Each tradable symbol carries its own execution windows, delta / DTE bands,
risk limits, VIX thresholds and strategy mix. Files use snake_case keys and
unknown keys are ignored.
"""

import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from shared.exceptions import ConfigError

logger = logging.getLogger(__name__)


def _build(cls, data: Optional[Dict[str, Any]]):
    """Instantiate dataclass *cls* from a mapping, ignoring unknown keys."""
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping for {cls.__name__}, got {type(data).__name__}")
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class AccountConfig:
    equity: float = 0.0
    shares: int = 0
    baseline_qty: int = 0


@dataclass
class TimeWindowConfig:
    start: str = ""
    end: str = ""


@dataclass
class OptionsConfig:
    put_delta_min: float = 0.10
    put_delta_max: float = 0.20
    call_delta_min: float = 0.10
    call_delta_max: float = 0.15
    dte_min: int = 30
    dte_max: int = 60
    dte_optimal: int = 45
    strike_interval: float = 0.5
    min_premium: float = 0.0
    max_premium: float = 0.0


@dataclass
class TradingConfig:
    entry_window: TimeWindowConfig = field(default_factory=TimeWindowConfig)
    exit_window: TimeWindowConfig = field(default_factory=TimeWindowConfig)
    options: OptionsConfig = field(default_factory=OptionsConfig)


@dataclass
class RiskConfig:
    max_position_size: float = 0.0
    capital_allocation: float = 0.10
    max_loss_per_trade: float = 0.05
    max_portfolio_drawdown: float = 0.0
    fintech_correlation_limit: float = 0.0
    adtech_correlation_limit: float = 0.0


@dataclass
class MarketConfig:
    vix_low: float = 15.0
    vix_normal: float = 20.0
    vix_high: float = 25.0
    vix_crisis: float = 35.0
    earnings_blackout_days: int = 0
    fintech_sector_beta: float = 0.0
    adtech_sector_beta: float = 0.0


@dataclass
class SymbolStrategyConfig:
    put_credit_spread_weight: float = 0.7
    covered_call_weight: float = 0.3
    prefer_monthly_expiration: bool = True
    avoid_weekly_expiration: bool = True
    profit_target: float = 0.70
    early_close_dte: int = 0


@dataclass
class CompanyConfig:
    sector: str = ""
    market_cap: str = ""
    earnings_frequency: str = ""
    earnings_dates: List[str] = field(default_factory=list)
    key_events: List[str] = field(default_factory=list)


@dataclass
class DataSourceConfig:
    primary: str = ""
    fallback: str = ""


@dataclass
class SymbolBacktestConfig:
    start_date: str = ""
    end_date: str = ""
    initial_capital: float = 0.0


@dataclass
class SymbolConfig:
    symbol: str = ""
    account: AccountConfig = field(default_factory=AccountConfig)
    trading: TradingConfig = field(default_factory=TradingConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    market: MarketConfig = field(default_factory=MarketConfig)
    strategy: SymbolStrategyConfig = field(default_factory=SymbolStrategyConfig)
    company: CompanyConfig = field(default_factory=CompanyConfig)
    data: DataSourceConfig = field(default_factory=DataSourceConfig)
    backtest: SymbolBacktestConfig = field(default_factory=SymbolBacktestConfig)

    @classmethod
    def from_dict(cls, symbol: str, data: Optional[Dict[str, Any]]) -> "SymbolConfig":
        data = data or {}
        trading = data.get("trading") or {}
        return cls(
            symbol=str(data.get("symbol") or symbol).upper(),
            account=_build(AccountConfig, data.get("account")),
            trading=TradingConfig(
                entry_window=_build(TimeWindowConfig, trading.get("entry_window")),
                exit_window=_build(TimeWindowConfig, trading.get("exit_window")),
                options=_build(OptionsConfig, trading.get("options")),
            ),
            risk=_build(RiskConfig, data.get("risk")),
            market=_build(MarketConfig, data.get("market")),
            strategy=_build(SymbolStrategyConfig, data.get("strategy")),
            company=_build(CompanyConfig, data.get("company")),
            data=_build(DataSourceConfig, data.get("data")),
            backtest=_build(SymbolBacktestConfig, data.get("backtest")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def strategy_overrides(self) -> Dict[str, Any]:
        """Keys for ``StrategyConfig.from_dict`` derived from this symbol's settings."""
        opts = self.trading.options
        overrides: Dict[str, Any] = {
            "preferred_dte": opts.dte_optimal,
            "min_dte": opts.dte_min,
            "max_dte": opts.dte_max,
            "early_close_threshold": self.strategy.profit_target,
            "capital_allocation_per_trade": self.risk.capital_allocation,
            "vix_low_threshold": self.market.vix_low,
            "vix_high_threshold": self.market.vix_high,
            "enable_put_credit_spreads": self.strategy.put_credit_spread_weight > 0,
            "enable_covered_calls": self.strategy.covered_call_weight > 0,
        }
        if self.trading.entry_window.start and self.trading.entry_window.end:
            overrides["entry_window"] = (self.trading.entry_window.start, self.trading.entry_window.end)
        if self.trading.exit_window.start and self.trading.exit_window.end:
            overrides["exit_window"] = (self.trading.exit_window.start, self.trading.exit_window.end)
        if self.backtest.initial_capital > 0:
            overrides["initial_capital"] = self.backtest.initial_capital
        return overrides


class SymbolConfigManager:
    """Loads and caches ``config_<symbol>.yml`` files from *config_dir*."""

    def __init__(self, config_dir: str = "."):
        self.config_dir = Path(config_dir)
        self._cache: Dict[str, SymbolConfig] = {}

    def config_path(self, symbol: str) -> Path:
        return self.config_dir / f"config_{symbol.lower()}.yml"

    def load(self, symbol: str) -> SymbolConfig:
        """Load (or return the cached) config for *symbol*.

        Raises:
            FileNotFoundError: if ``config_<symbol>.yml`` does not exist.
            ConfigError: if the file is not a valid YAML mapping.
        """
        key = symbol.upper()
        if key in self._cache:
            return self._cache[key]

        path = self.config_path(symbol)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        try:
            with open(path, "r") as f:
                raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        config = SymbolConfig.from_dict(key, raw)
        self._cache[key] = config

        logger.info(
            "Loaded %s config: entry %s-%s, put delta %.2f-%.2f, sector %s",
            key,
            config.trading.entry_window.start or "default",
            config.trading.entry_window.end or "default",
            config.trading.options.put_delta_min,
            config.trading.options.put_delta_max,
            config.company.sector or "n/a",
        )
        return config

    def load_or_default(self, symbol: str) -> SymbolConfig:
        """Like :meth:`load` but falls back to defaults when no file exists."""
        try:
            return self.load(symbol)
        except FileNotFoundError:
            logger.warning("No config file for %s, using defaults", symbol.upper())
            config = SymbolConfig(symbol=symbol.upper())
            self._cache[symbol.upper()] = config
            return config

    def available_symbols(self) -> List[str]:
        symbols = []
        for path in sorted(self.config_dir.glob("config_*.yml")):
            symbols.append(path.stem[len("config_"):].upper())
        return symbols

    def compare(self, symbol1: str, symbol2: str) -> List[Tuple[str, str, str]]:
        """Side-by-side rows ``(setting, value1, value2)`` for two symbols."""
        c1, c2 = self.load(symbol1), self.load(symbol2)

        def window(c: SymbolConfig) -> str:
            return f"{c.trading.entry_window.start}-{c.trading.entry_window.end}"

        def put_delta(c: SymbolConfig) -> str:
            return f"{c.trading.options.put_delta_min} to {c.trading.options.put_delta_max}"

        def sizing(c: SymbolConfig) -> str:
            return f"{c.risk.max_position_size:.0%} max, {c.risk.capital_allocation:.0%} per trade"

        def mix(c: SymbolConfig) -> str:
            return f"{c.strategy.put_credit_spread_weight:.0%}/{c.strategy.covered_call_weight:.0%}"

        return [
            ("Entry Window", window(c1), window(c2)),
            ("Put Delta Range", put_delta(c1), put_delta(c2)),
            ("Position Sizing", sizing(c1), sizing(c2)),
            ("Strategy Mix (PCS/CC)", mix(c1), mix(c2)),
            ("Sector", c1.company.sector, c2.company.sector),
        ]
