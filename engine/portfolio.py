"""
Multi-symbol portfolio engine.

Splits one capital pool across several underlyings, runs a TradingEngine per
symbol over the union of their trading dates with a shared VIX series and
rolls the results up per symbol and per sector.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

import pandas as pd

from engine.models import DailyBar, StrategyConfig
from engine.trading_engine import TradingEngine
from shared.constants import VIX_DEFAULT
from shared.symbol_config import SymbolConfig, SymbolConfigManager

logger = logging.getLogger(__name__)

BASE_ALLOCATION: Dict[str, float] = {
    "AAPL": 0.35,
    "NVDA": 0.25,
    "SOFI": 0.20,
    "APP": 0.10,
    "TSLA": 0.10,
}
DEFAULT_ALLOCATION = 0.15
MIN_SYMBOL_CAPITAL = 5000.0

PORTFOLIO_AGGRESSIVENESS = 1.5
PORTFOLIO_MIN_CONTRACTS = 1
PORTFOLIO_MAX_CONTRACTS = 20


@dataclass
class SymbolPerformance:
    symbol: str
    sector: str = ""
    initial_capital: float = 0.0
    total_pnl: float = 0.0
    roi: float = 0.0
    total_trades: int = 0
    sessions: List[Dict] = field(default_factory=list)

    @property
    def rating(self) -> str:
        if self.roi >= 0.15:
            return "Strong"
        if self.roi >= 0.05:
            return "Moderate"
        if self.roi >= 0.0:
            return "Weak"
        return "Loss"

    def to_dict(self) -> Dict:
        return {
            "symbol": self.symbol,
            "sector": self.sector,
            "initial_capital": round(self.initial_capital, 2),
            "total_pnl": round(self.total_pnl, 2),
            "roi": round(self.roi, 4),
            "total_trades": self.total_trades,
            "rating": self.rating,
        }


@dataclass
class PortfolioResults:
    start_date: datetime
    end_date: datetime
    initial_capital: float
    final_capital: float = 0.0
    total_pnl: float = 0.0
    portfolio_roi: float = 0.0
    total_trades: int = 0
    symbol_results: Dict[str, SymbolPerformance] = field(default_factory=dict)
    sector_breakdown: Dict[str, Dict] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "start_date": self.start_date.strftime("%Y-%m-%d"),
            "end_date": self.end_date.strftime("%Y-%m-%d"),
            "initial_capital": round(self.initial_capital, 2),
            "final_capital": round(self.final_capital, 2),
            "total_pnl": round(self.total_pnl, 2),
            "portfolio_roi": round(self.portfolio_roi, 4),
            "total_trades": self.total_trades,
            "symbols": {s: perf.to_dict() for s, perf in self.symbol_results.items()},
            "sectors": self.sector_breakdown,
        }


class MultiSymbolPortfolioEngine:
    """
    Sector-diversified backtest across several symbols.

    Args:
        total_capital: Capital shared by all symbols.
        config_manager: Source of per-symbol YAML configs.
        base_config: Global ``strategy`` settings applied before symbol overrides.
    """

    def __init__(self, total_capital: float, config_manager: SymbolConfigManager,
                 base_config: Optional[Dict] = None):
        self.total_capital = float(total_capital)
        self.config_manager = config_manager
        self.base_config = dict(base_config or {})
        self.engines: Dict[str, TradingEngine] = {}
        self.symbol_configs: Dict[str, SymbolConfig] = {}
        self.allocations: Dict[str, float] = {}

    def calculate_allocation(self, symbol: str, config: SymbolConfig) -> float:
        """Capital for *symbol*: base weight, risk-tolerance adjustment, 5k floor."""
        weight = BASE_ALLOCATION.get(symbol.upper(), DEFAULT_ALLOCATION)
        if config.risk.max_loss_per_trade > 0.06:
            weight *= 0.8
        elif config.risk.max_loss_per_trade < 0.04:
            weight *= 1.2
        return max(MIN_SYMBOL_CAPITAL, self.total_capital * weight)

    def build_strategy_config(self, config: SymbolConfig, capital: float) -> StrategyConfig:
        section = dict(self.base_config)
        section.update(config.strategy_overrides())
        section.update({
            "initial_capital": capital,
            "aggressiveness_multiplier": PORTFOLIO_AGGRESSIVENESS,
            "min_contract_size": PORTFOLIO_MIN_CONTRACTS,
            "max_contract_size": PORTFOLIO_MAX_CONTRACTS,
        })
        return StrategyConfig.from_dict(section)

    def initialize_symbols(self, symbols: List[str]) -> List[str]:
        """Build one engine per symbol; returns the symbols that initialized."""
        logger.info("Initializing portfolio: %s, capital $%.0f", ", ".join(symbols), self.total_capital)
        for symbol in symbols:
            symbol = symbol.upper()
            config = self.config_manager.load_or_default(symbol)
            capital = self.calculate_allocation(symbol, config)
            self.symbol_configs[symbol] = config
            self.allocations[symbol] = capital
            self.engines[symbol] = TradingEngine(self.build_strategy_config(config, capital), symbol=symbol)
            logger.info(
                "%s (%s): $%.0f allocated, mix %.0f%% PCS / %.0f%% CC",
                symbol, config.company.sector or "n/a", capital,
                config.strategy.put_credit_spread_weight * 100,
                config.strategy.covered_call_weight * 100,
            )
        return list(self.engines)

    def run(self, start_date: datetime, end_date: datetime,
            price_data: Dict[str, List[DailyBar]],
            vix: Optional[pd.Series] = None) -> PortfolioResults:
        """
        Run every initialized symbol over the union of trading dates.

        Each date gets an entry-window and an exit-window session per symbol
        that has a bar for it. VIX defaults to 20 on dates missing from *vix*.
        """
        results = PortfolioResults(start_date=start_date, end_date=end_date,
                                   initial_capital=self.total_capital)

        bars_by_symbol = {
            symbol.upper(): {bar.date.date(): bar for bar in bars}
            for symbol, bars in price_data.items()
            if symbol.upper() in self.engines
        }
        dates = sorted({
            day for bars in bars_by_symbol.values() for day in bars
            if start_date.date() <= day <= end_date.date()
        })
        logger.info("Processing %d trading days across %d symbols", len(dates), len(self.engines))

        for i, day in enumerate(dates):
            vix_value = VIX_DEFAULT
            if vix is not None:
                value = vix.get(pd.Timestamp(day), VIX_DEFAULT)
                vix_value = VIX_DEFAULT if pd.isna(value) else float(value)

            for symbol, engine in self.engines.items():
                bar = bars_by_symbol.get(symbol, {}).get(day)
                if bar is None:
                    continue
                perf = results.symbol_results.setdefault(symbol, SymbolPerformance(
                    symbol=symbol,
                    sector=self.symbol_configs[symbol].company.sector,
                    initial_capital=self.allocations[symbol],
                ))
                for start, _ in (engine.config.entry_window, engine.config.exit_window):
                    when = datetime.combine(day, start)
                    perf.sessions.append(engine.process_trading_day(when, bar, vix_value).to_dict())

            if i % 50 == 0:
                logger.info("Progress: %.1f%% - %s", (i + 1) / len(dates) * 100, day)

        self._calculate_metrics(results)
        return results

    def _calculate_metrics(self, results: PortfolioResults):
        total_pnl = 0.0
        total_capital = 0.0
        total_trades = 0
        for symbol, perf in results.symbol_results.items():
            engine = self.engines[symbol]
            perf.total_pnl = engine.get_total_pnl()
            perf.total_trades = len(engine.get_closed_positions())
            perf.roi = perf.total_pnl / perf.initial_capital if perf.initial_capital > 0 else 0.0
            total_pnl += perf.total_pnl
            total_capital += perf.initial_capital
            total_trades += perf.total_trades

        results.total_pnl = total_pnl
        results.total_trades = total_trades
        results.portfolio_roi = total_pnl / total_capital if total_capital > 0 else 0.0
        results.final_capital = self.total_capital + total_pnl

        sectors: Dict[str, Dict] = {}
        for perf in results.symbol_results.values():
            entry = sectors.setdefault(perf.sector or "Unknown", {"pnl": 0.0, "trades": 0, "symbols": 0})
            entry["pnl"] = round(entry["pnl"] + perf.total_pnl, 2)
            entry["trades"] += perf.total_trades
            entry["symbols"] += 1
        results.sector_breakdown = sectors

    @staticmethod
    def format_report(results: PortfolioResults) -> str:
        lines = [
            "=" * 60,
            "MULTI-SYMBOL PORTFOLIO PERFORMANCE REPORT",
            "=" * 60,
            f"Period: {results.start_date:%Y-%m-%d} to {results.end_date:%Y-%m-%d}",
            f"Initial Capital: ${results.initial_capital:,.0f}",
            f"Final Capital: ${results.final_capital:,.0f}",
            f"Total P&L: ${results.total_pnl:,.0f} ({results.portfolio_roi:.1%} ROI)",
            f"Total Trades: {results.total_trades}",
            "",
            f"{'Symbol':<6} {'Sector':<15} {'P&L':>10} {'ROI':>8} {'Trades':>6}  Rating",
            "-" * 60,
        ]
        for perf in sorted(results.symbol_results.values(), key=lambda p: p.roi, reverse=True):
            lines.append(
                f"{perf.symbol:<6} {perf.sector[:15]:<15} {perf.total_pnl:>10,.0f} "
                f"{perf.roi:>8.1%} {perf.total_trades:>6}  {perf.rating}"
            )
        lines.append("")
        lines.append("SECTOR ANALYSIS")
        for sector, stats in results.sector_breakdown.items():
            lines.append(f"{sector}: ${stats['pnl']:,.0f} P&L, {stats['trades']} trades, {stats['symbols']} symbols")
        lines.append("=" * 60)
        return "\n".join(lines)
