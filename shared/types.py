"""TypedDict definitions for major data shapes used across the system."""

from typing import Dict, List, TypedDict


class LoggingConfig(TypedDict, total=False):
    level: str
    file: str
    console: bool


class BacktestConfig(TypedDict, total=False):
    start_date: str
    end_date: str
    lookback_months: int
    initial_capital: float
    checkpoint_interval: int
    reality_check: bool
    generate_reports: bool
    excel: bool
    report_dir: str
    seed: int


class DataConfig(TypedDict, total=False):
    provider: str  # 'thetadata' | 'synthetic'
    host: str
    port: int
    api_key: str
    vix_source: str  # 'yfinance' | 'proxy' | 'synthetic'
    timeout: float
    synthetic_end_price: float


class StrategySection(TypedDict, total=False):
    """The ``strategy`` section of config.yaml (StrategyConfig overrides)."""
    preferred_dte: int
    min_dte: int
    max_dte: int
    target_delta: float
    early_close_threshold: float
    optimal_close_threshold: float
    max_close_threshold: float
    weekly_premium_goal: float
    monthly_premium_goal: float
    initial_capital: float
    enable_compounding: bool
    aggressiveness_multiplier: float
    min_contract_size: int
    max_contract_size: int
    capital_allocation_per_trade: float


class AppConfig(TypedDict, total=False):
    """Top-level shape of config.yaml."""
    symbols: List[str]
    config_dir: str
    backtest: BacktestConfig
    strategy: StrategySection
    data: DataConfig
    logging: LoggingConfig
    portfolio: Dict


class TradeRecord(TypedDict):
    """One row of the trades ledger, produced by Position.to_record()."""
    trade_id: str
    symbol: str
    strategy: str
    entry_date: str
    exit_date: str
    dte: int
    delta: float
    strike_price: float
    entry_price: float
    exit_price: float
    contracts: int
    premium_collected: float
    profit_loss: float
    profit_pct: float
    vix_level: float
    vix_regime: str
    market_regime: str
    status: str
    exit_reason: str
    notes: str


class BacktestResults(TypedDict, total=False):
    """Return type of Backtester.run_backtest."""
    symbol: str
    backtest_id: str
    start_date: str
    end_date: str
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: float
    total_pnl: float
    total_premium: float
    avg_win: float
    avg_loss: float
    profit_factor: float
    max_drawdown: float
    sharpe_ratio: float
    starting_capital: float
    ending_capital: float
    return_pct: float
    assignments: int
    strategy_breakdown: Dict
    monthly_performance: List[Dict]
    exceptions: List[Dict]
    trades: List[TradeRecord]
    sessions: List[Dict]
    equity_curve: List[Dict]
    daily_prices: List[Dict]
    regime_summary: Dict
    reality_audit: Dict
