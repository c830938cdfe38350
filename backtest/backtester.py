"""
Backtesting Engine
Drives the TradingEngine over daily bars: one entry-window session and one
exit-window session per trading day, with periodic checkpoints and a
pandas-based results summary.
"""

import logging
import random
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from backtest.checkpoint import BacktestCheckpoint, CheckpointManager
from backtest.historical_data import HistoricalBarsData, bars_to_frame
from engine.models import DailyBar, PositionStatus, StrategyConfig, StrategyType
from engine.realism import SyntheticQuoteProvider, TradeValidator, earnings_dates_for
from engine.regime import MarketRegimeClassifier
from engine.trading_engine import TradingEngine
from shared.constants import EXCEPTION_LOSS_THRESHOLD, VIX_DEFAULT
from shared.io_utils import config_hash
from shared.symbol_config import SymbolConfig
from shared.types import BacktestResults

logger = logging.getLogger(__name__)


def build_strategy_config(config: Dict, symbol_config: Optional[SymbolConfig] = None) -> StrategyConfig:
    """Merge global ``strategy`` settings, the backtest capital and symbol overrides.

    Symbol files win over config.yaml; ``backtest.initial_capital`` is used
    when neither the strategy section nor the symbol file sets one.
    """
    section = dict(config.get('strategy') or {})
    backtest_capital = (config.get('backtest') or {}).get('initial_capital')
    if backtest_capital is not None:
        section.setdefault('initial_capital', backtest_capital)
    if symbol_config is not None:
        section.update(symbol_config.strategy_overrides())
    return StrategyConfig.from_dict(section)


class Backtester:
    """
    Backtest the put credit spread / covered call engine on one symbol.

    Args:
        config: Application config (``backtest``, ``strategy``, ``data`` sections).
        data: Market data source; built from ``config['data']`` when omitted.
        checkpoint_manager: Enables checkpointing and ``resume``.
        symbol_config: Per-symbol overrides for the strategy parameters.
    """

    def __init__(
        self,
        config: Dict,
        data: Optional[HistoricalBarsData] = None,
        checkpoint_manager: Optional[CheckpointManager] = None,
        symbol_config: Optional[SymbolConfig] = None,
    ):
        self.config = config
        self.backtest_config = config.get('backtest') or {}
        self.strategy_config = build_strategy_config(config, symbol_config)
        self.symbol_config = symbol_config

        self.seed = int(self.backtest_config.get('seed', 42))
        self.checkpoint_interval = int(self.backtest_config.get('checkpoint_interval', 50))
        self.reality_check = bool(self.backtest_config.get('reality_check', False))

        self.data = data or HistoricalBarsData.from_config(config.get('data'), seed=self.seed)
        self.checkpoints = checkpoint_manager

        self.engine: Optional[TradingEngine] = None
        self.validator: Optional[TradeValidator] = None
        self.checkpoint: Optional[BacktestCheckpoint] = None
        self.sessions: List[Dict] = []
        self.equity_curve: List[Dict] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run_backtest(
        self,
        symbol: str,
        start_date: datetime,
        end_date: datetime,
        resume: bool = False,
        bars: Optional[List[DailyBar]] = None,
        vix: Optional[pd.Series] = None,
    ) -> BacktestResults:
        """
        Run the simulation.

        Args:
            symbol: Underlying ticker.
            start_date: First day to simulate.
            end_date: Last day to simulate.
            resume: Continue from the newest incomplete checkpoint for *symbol*.
            bars: Pre-loaded bars (skips the data source).
            vix: Pre-loaded VIX closes indexed by date.

        Returns:
            Results dict, or an empty dict when no bars are available.
        """
        symbol = symbol.upper()
        logger.info("Starting backtest for %s: %s to %s", symbol, start_date.date(), end_date.date())

        if bars is None:
            bars = self.data.get_daily_bars(symbol, start_date, end_date)
        bars = [b for b in bars if start_date.date() <= b.date.date() <= end_date.date()]
        if not bars:
            logger.error("No price data for %s", symbol)
            return {}
        if vix is None:
            vix = self.data.get_vix_series(bars)

        self.validator = self._build_validator(symbol) if self.reality_check else None
        self.engine = TradingEngine(self.strategy_config, validator=self.validator, symbol=symbol)
        self.sessions = []
        self.equity_curve = []

        resume_after = self._prepare_checkpoint(symbol, start_date, end_date, resume)

        rng = random.Random(self.seed)
        total = len(bars)
        for i, bar in enumerate(bars, 1):
            # Draw session times for every bar so a resumed run sees the same clock
            entry_time, exit_time = self._session_times(bar.date, rng)
            if resume_after is not None and bar.date.date() <= resume_after:
                continue

            vix_value = self._vix_on(vix, bar.date)
            for when in (entry_time, exit_time):
                session = self.engine.process_trading_day(when, bar, vix_value)
                self.sessions.append(session.to_dict())
                if self.checkpoint is not None:
                    self.checkpoints.update(self.checkpoint, session, i, total, win_rate=self._win_rate())

            self.equity_curve.append({
                'date': bar.date,
                'equity': self.engine.mark_to_market(exit_time, bar.close, vix_value),
            })

            if self.checkpoint is not None and i % self.checkpoint_interval == 0:
                self.checkpoint.engine_state = self._state()
                self.checkpoints.save(self.checkpoint)

        results = self._calculate_results(symbol, bars, vix, start_date, end_date)

        if self.checkpoint is not None:
            self.checkpoint.engine_state = self._state()
            self.checkpoints.finalize(self.checkpoint)
            self.checkpoints.cleanup(symbol)
            results['backtest_id'] = self.checkpoint.backtest_id

        logger.info(
            "Backtest complete for %s: %d trades, P&L $%.2f",
            symbol, results['total_trades'], results['total_pnl'],
        )
        return results

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _session_times(self, day: datetime, rng: random.Random) -> Tuple[datetime, datetime]:
        """Random entry and exit timestamps inside the configured windows."""
        base = datetime(day.year, day.month, day.day)

        def pick(window) -> datetime:
            start, end = window
            start_min = start.hour * 60 + start.minute
            end_min = end.hour * 60 + end.minute
            return base + timedelta(minutes=rng.randint(start_min, end_min))

        return pick(self.strategy_config.entry_window), pick(self.strategy_config.exit_window)

    def _build_validator(self, symbol: str) -> TradeValidator:
        configured = self.symbol_config.company.earnings_dates if self.symbol_config else None
        return TradeValidator(
            SyntheticQuoteProvider(seed=self.seed),
            earnings_dates=earnings_dates_for(symbol, configured),
        )

    @staticmethod
    def _vix_on(vix: pd.Series, day: datetime) -> float:
        value = vix.get(pd.Timestamp(day).normalize(), VIX_DEFAULT) if vix is not None else VIX_DEFAULT
        return VIX_DEFAULT if pd.isna(value) else float(value)

    def _win_rate(self) -> float:
        closed = self.engine.get_closed_positions()
        if not closed:
            return 0.0
        return sum(1 for p in closed if (p.profit_loss or 0) > 0) / len(closed)

    def _state(self) -> Dict:
        state = {
            'engine': self.engine.export_state(),
            'sessions': self.sessions,
            'equity_curve': [
                {'date': e['date'].isoformat(), 'equity': e['equity']} for e in self.equity_curve
            ],
        }
        if self.validator is not None:
            state['validator'] = self.validator.export_state()
        return state

    def _prepare_checkpoint(self, symbol: str, start_date: datetime, end_date: datetime,
                            resume: bool) -> Optional[datetime]:
        """Create or restore the checkpoint; returns the last processed date when resuming."""
        self.checkpoint = None
        if self.checkpoints is None:
            return None

        expected_hash = config_hash(self.strategy_config.to_dict())
        if resume:
            checkpoint = self.checkpoints.load_most_recent(symbol)
            if checkpoint is not None and checkpoint.config_hash != expected_hash:
                logger.warning(
                    "Checkpoint %s was created with a different config (%s != %s); starting fresh",
                    checkpoint.backtest_id, checkpoint.config_hash, expected_hash,
                )
                checkpoint = None
            if checkpoint is not None and checkpoint.engine_state:
                state = checkpoint.engine_state
                self.engine.restore_state(state['engine'])
                self.sessions = list(state.get('sessions', []))
                self.equity_curve = [
                    {'date': datetime.fromisoformat(e['date']), 'equity': e['equity']}
                    for e in state.get('equity_curve', [])
                ]
                if self.validator is not None and state.get('validator'):
                    self.validator.restore_state(state['validator'])
                self.checkpoint = checkpoint
                logger.info(
                    "Resuming %s after %s (%.1f%% complete)",
                    checkpoint.backtest_id, checkpoint.last_processed_date.date(),
                    checkpoint.estimated_completion_pct,
                )
                return checkpoint.last_processed_date.date()
            logger.info("No resumable checkpoint for %s; starting fresh", symbol)

        self.checkpoint = self.checkpoints.create(symbol, start_date, end_date, self.strategy_config)
        return None

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def _calculate_results(self, symbol: str, bars: List[DailyBar], vix: pd.Series,
                           start_date: datetime, end_date: datetime) -> BacktestResults:
        """Calculate backtest performance metrics."""
        engine = self.engine
        starting_capital = self.strategy_config.initial_capital
        all_positions = sorted(engine.get_all_positions(), key=lambda p: p.entry_date)
        closed = engine.get_closed_positions()

        results: BacktestResults = {
            'symbol': symbol,
            'start_date': start_date.strftime('%Y-%m-%d'),
            'end_date': end_date.strftime('%Y-%m-%d'),
            'starting_capital': starting_capital,
            'ending_capital': round(engine.get_current_capital(), 2),
            'total_pnl': round(engine.get_total_pnl(), 2),
            'total_premium': round(sum(p.premium_dollars for p in all_positions), 2),
            'open_positions': len(engine.get_open_positions()),
            'rejected_trades': engine.rejected_trades,
            'trades': [p.to_record() for p in all_positions],
            'sessions': self.sessions,
            'daily_prices': [b.to_dict() for b in bars],
            'strategy_breakdown': self._strategy_breakdown(closed),
            'monthly_performance': self._monthly_performance(),
            'exceptions': self._exceptions(all_positions),
            'assignments': sum(1 for p in closed if p.status == PositionStatus.ASSIGNED),
            'reality_audit': self.validator.audit.summary() if self.validator else {},
        }
        results['return_pct'] = (
            round((results['ending_capital'] - starting_capital) / starting_capital * 100, 2)
            if starting_capital else 0
        )

        # Market regime distribution over the simulated period
        frame = bars_to_frame(bars)
        regimes = MarketRegimeClassifier().classify_series(frame['Close'], vix)
        results['regime_summary'] = MarketRegimeClassifier.summarize(regimes)

        results.update(self._equity_stats())

        if not closed:
            results.update({
                'total_trades': 0, 'winning_trades': 0, 'losing_trades': 0,
                'win_rate': 0, 'avg_win': 0, 'avg_loss': 0, 'profit_factor': 0,
                'monthly_pnl': {}, 'max_win_streak': 0, 'max_loss_streak': 0,
            })
            return results

        trades_df = pd.DataFrame([p.to_record() for p in closed])
        total_trades = len(trades_df)
        winners = trades_df[trades_df['profit_loss'] > 0]
        losers = trades_df[trades_df['profit_loss'] < 0]

        win_rate = len(winners) / total_trades * 100
        avg_win = winners['profit_loss'].mean() if len(winners) > 0 else 0
        avg_loss = abs(losers['profit_loss'].mean()) if len(losers) > 0 else 0

        # Profit factor (capped at 999.99 to avoid JSON-invalid Infinity)
        winning_total = winners['profit_loss'].sum()
        losing_total = losers['profit_loss'].sum()
        if losing_total != 0:
            profit_factor = round(abs(winning_total / losing_total), 2)
        elif winning_total > 0:
            profit_factor = 999.99
        else:
            profit_factor = 0

        # P&L by exit month
        trades_df['_exit_month'] = pd.to_datetime(trades_df['exit_date']).dt.to_period('M')
        monthly = (
            trades_df.groupby('_exit_month')
            .agg(_pnl=('profit_loss', 'sum'), _trades=('profit_loss', 'count'),
                 _wins=('profit_loss', lambda x: (x > 0).sum()))
            .reset_index()
        )
        monthly_pnl = {
            str(row['_exit_month']): {
                'pnl': round(float(row['_pnl']), 2),
                'trades': int(row['_trades']),
                'wins': int(row['_wins']),
                'win_rate': round(row['_wins'] / row['_trades'], 3),
            }
            for _, row in monthly.iterrows()
        }

        # Win/loss streaks in exit order
        max_win_streak = max_loss_streak = cur_win = cur_loss = 0
        for is_win in trades_df.sort_values('exit_date')['profit_loss'] > 0:
            if is_win:
                cur_win, cur_loss = cur_win + 1, 0
                max_win_streak = max(max_win_streak, cur_win)
            else:
                cur_loss, cur_win = cur_loss + 1, 0
                max_loss_streak = max(max_loss_streak, cur_loss)

        results.update({
            'total_trades': total_trades,
            'winning_trades': len(winners),
            'losing_trades': len(losers),
            'win_rate': round(win_rate, 2),
            'avg_win': round(float(avg_win), 2),
            'avg_loss': round(float(avg_loss), 2),
            'profit_factor': profit_factor,
            'monthly_pnl': monthly_pnl,
            'max_win_streak': max_win_streak,
            'max_loss_streak': max_loss_streak,
        })
        return results

    def _equity_stats(self) -> Dict:
        if not self.equity_curve:
            return {'max_drawdown': 0, 'sharpe_ratio': 0, 'equity_curve': []}

        equity_df = pd.DataFrame(self.equity_curve)
        equity_df['returns'] = equity_df['equity'].pct_change()
        equity_df['cummax'] = equity_df['equity'].cummax()
        equity_df['drawdown'] = (equity_df['equity'] - equity_df['cummax']) / equity_df['cummax']
        max_drawdown = equity_df['drawdown'].min() * 100

        returns = equity_df['returns'].replace([np.inf, -np.inf], np.nan).dropna()
        if len(returns) > 1 and returns.std() > 0:
            sharpe = (returns.mean() / returns.std()) * np.sqrt(252)
        else:
            sharpe = 0

        equity_df['date'] = equity_df['date'].apply(lambda d: d.strftime('%Y-%m-%d'))
        return {
            'max_drawdown': round(float(max_drawdown), 2),
            'sharpe_ratio': round(float(sharpe), 2),
            'equity_curve': equity_df[['date', 'equity', 'drawdown']].round(4).to_dict('records'),
        }

    @staticmethod
    def _strategy_breakdown(closed) -> Dict:
        breakdown = {}
        groups = [(s.value, [p for p in closed if p.strategy == s]) for s in StrategyType]
        groups.append(('total', list(closed)))
        for name, positions in groups:
            pnls = [p.profit_loss or 0.0 for p in positions]
            wins = sum(1 for x in pnls if x > 0)
            breakdown[name] = {
                'trades': len(pnls),
                'pnl': round(sum(pnls), 2),
                'win_rate': round(wins / len(pnls) * 100, 2) if pnls else 0,
                'avg_pnl': round(sum(pnls) / len(pnls), 2) if pnls else 0,
            }
        return breakdown

    def _monthly_performance(self) -> List[Dict]:
        """Premium collected, active trading days and goal-met days per calendar month."""
        if not self.sessions:
            return []
        df = pd.DataFrame(self.sessions)
        daily = df.groupby('date').agg(
            daily_premium=('daily_premium', 'sum'),
            goals_met=('goals_met', 'any'),
        ).reset_index()
        daily['month'] = daily['date'].str[:7]

        rows = []
        for month, group in daily.groupby('month'):
            trading_days = int((group['daily_premium'] > 0).sum())
            goals_met_days = int(group['goals_met'].sum())
            rows.append({
                'month': month,
                'premium_collected': round(float(group['daily_premium'].sum()), 2),
                'trading_days': trading_days,
                'goals_met_days': goals_met_days,
                'goals_met_pct': round(goals_met_days / trading_days * 100, 1) if trading_days else 0.0,
            })
        return rows

    @staticmethod
    def _exceptions(positions) -> List[Dict]:
        """Assignments and large losses; a single clean-run row when there are none."""
        rows = []
        for p in positions:
            if p.status == PositionStatus.ASSIGNED:
                rows.append({'trade_id': p.id, 'issue': 'Assignment',
                             'resolution': 'Stock assigned - manage shares'})
            elif (p.profit_loss or 0) < EXCEPTION_LOSS_THRESHOLD:
                rows.append({'trade_id': p.id, 'issue': 'Large Loss',
                             'resolution': f"Loss: ${p.profit_loss:,.0f}"})
        if not rows:
            rows.append({'trade_id': 'None', 'issue': 'No exceptions',
                         'resolution': 'Clean run - all positions managed successfully'})
        return rows
