"""Tests for the Backtester class."""
import pytest
import pandas as pd
from datetime import date, datetime, time
from unittest.mock import MagicMock, patch

from backtest.backtester import Backtester, build_strategy_config
from backtest.checkpoint import CheckpointManager
from backtest.historical_data import HistoricalBarsData
from shared.symbol_config import SymbolConfig
from conftest import make_bar


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

START = datetime(2024, 1, 2)
END = datetime(2024, 6, 28)


def _flat_bars(start="2024-03-04", periods=10, close=12.0):
    return [make_bar(d.to_pydatetime(), close) for d in pd.bdate_range(start, periods=periods)]


def _vix_for(bars, level=20.0):
    return pd.Series(level, index=pd.DatetimeIndex([b.date for b in bars]), name="vix")


def _backtester(config, **kwargs):
    data = HistoricalBarsData(provider="synthetic", vix_source="synthetic")
    return Backtester(config, data=data, **kwargs)


class TestStrategyConfigMerge:

    def test_backtest_capital_used(self, sample_config):
        sample_config['backtest']['initial_capital'] = 25000
        assert build_strategy_config(sample_config).initial_capital == 25000

    def test_strategy_capital_wins_over_backtest(self, sample_config):
        sample_config['strategy']['initial_capital'] = 15000
        assert build_strategy_config(sample_config).initial_capital == 15000

    def test_symbol_overrides_win(self, sample_config):
        symbol = SymbolConfig.from_dict("APP", {
            'trading': {'entry_window': {'start': '10:15', 'end': '10:35'}},
            'strategy': {'profit_target': 0.65},
        })
        cfg = build_strategy_config(sample_config, symbol)
        assert cfg.entry_window == (time(10, 15), time(10, 35))
        assert cfg.early_close_threshold == 0.65


class TestRunBacktest:

    def test_no_bars_returns_empty(self, sample_config):
        assert _backtester(sample_config).run_backtest("SOFI", START, END, bars=[]) == {}

    def test_bars_outside_range_ignored(self, sample_config):
        bars = _flat_bars("2023-12-01", periods=5)
        assert _backtester(sample_config).run_backtest("SOFI", START, END, bars=bars) == {}

    def test_two_sessions_per_bar_inside_windows(self, sample_config):
        bars = _flat_bars()
        results = _backtester(sample_config).run_backtest(
            "SOFI", datetime(2024, 3, 1), datetime(2024, 3, 31), bars=bars, vix=_vix_for(bars))

        sessions = results['sessions']
        assert len(sessions) == 2 * len(bars)
        for entry, exit_ in zip(sessions[::2], sessions[1::2]):
            assert "10:10" <= entry['time'] <= "10:30"
            assert "15:20" <= exit_['time'] <= "15:35"
        assert len(results['equity_curve']) == len(bars)
        assert len(results['daily_prices']) == len(bars)

    def test_first_day_opens_both_strategies(self, sample_config):
        bars = _flat_bars()
        results = _backtester(sample_config).run_backtest(
            "SOFI", datetime(2024, 3, 1), datetime(2024, 3, 31), bars=bars, vix=_vix_for(bars))

        ids = [t['trade_id'] for t in results['trades'][:2]]
        assert ids == ["PCS_20240304_10.80", "CC_20240304_12.60"]
        assert results['total_premium'] >= 950
        assert results['open_positions'] == len(results['trades'])
        assert results['total_trades'] == 0
        assert results['exceptions'][0]['trade_id'] == 'None'

    def test_seeded_runs_are_identical(self, sample_config, sofi_bars):
        vix = _vix_for(sofi_bars)
        a = _backtester(sample_config).run_backtest("SOFI", START, END, bars=sofi_bars, vix=vix)
        b = _backtester(sample_config).run_backtest("SOFI", START, END, bars=sofi_bars, vix=vix)
        assert a['total_pnl'] == b['total_pnl']
        assert a['sessions'] == b['sessions']

    def test_full_run_summary(self, sample_config, sofi_bars):
        results = _backtester(sample_config).run_backtest("SOFI", START, END, bars=sofi_bars,
                                                          vix=_vix_for(sofi_bars))

        assert results['symbol'] == "SOFI"
        assert results['total_trades'] > 0
        assert results['total_trades'] == results['strategy_breakdown']['total']['trades']
        assert results['winning_trades'] + results['losing_trades'] <= results['total_trades']
        assert results['ending_capital'] == pytest.approx(10000 + results['total_pnl'], abs=0.01)
        assert [m['month'] for m in results['monthly_performance']] == [
            "2024-01", "2024-02", "2024-03", "2024-04", "2024-05", "2024-06"]
        assert results['max_drawdown'] <= 0
        assert sum(r['days'] for r in results['regime_summary']['distribution'].values()) == len(sofi_bars)

        entries = [t['entry_date'] for t in results['trades']]
        assert entries == sorted(entries)

    def test_loads_bars_from_data_source(self, sample_config):
        data = MagicMock()
        bars = _flat_bars()
        data.get_daily_bars.return_value = bars
        data.get_vix_series.return_value = _vix_for(bars)

        results = Backtester(sample_config, data=data).run_backtest(
            "sofi", datetime(2024, 3, 1), datetime(2024, 3, 31))

        data.get_daily_bars.assert_called_once_with("SOFI", datetime(2024, 3, 1), datetime(2024, 3, 31))
        assert results['symbol'] == "SOFI"

    def test_reality_check_records_audit(self, sample_config, sofi_bars):
        sample_config['backtest']['reality_check'] = True
        results = _backtester(sample_config).run_backtest("SOFI", START, END, bars=sofi_bars,
                                                          vix=_vix_for(sofi_bars))

        audit = results['reality_audit']
        assert audit['total_trades_analyzed'] > 0
        assert audit['skipped_trades'] == results['rejected_trades']
        assert audit['total_expected_slippage'] > 0
        assert audit['adjusted_premiums'] < audit['original_premiums']

    def test_validator_uses_symbol_earnings_calendar(self, sample_config):
        sample_config['backtest']['reality_check'] = True
        bars = _flat_bars(periods=3)
        app = SymbolConfig.from_dict("APP", {'company': {'earnings_dates': ['2024-05-08']}})

        backtester = _backtester(sample_config, symbol_config=app)
        backtester.run_backtest("APP", datetime(2024, 3, 1), datetime(2024, 3, 31), bars=bars, vix=_vix_for(bars))
        assert backtester.validator.earnings_dates == [date(2024, 5, 8)]

        backtester = _backtester(sample_config)
        backtester.run_backtest("APP", datetime(2024, 3, 1), datetime(2024, 3, 31), bars=bars, vix=_vix_for(bars))
        assert backtester.validator.earnings_dates == []

        backtester.run_backtest("SOFI", datetime(2024, 3, 1), datetime(2024, 3, 31), bars=bars, vix=_vix_for(bars))
        assert date(2024, 4, 29) in backtester.validator.earnings_dates


class TestResults:

    def test_exceptions_list_assignments_and_large_losses(self, sample_config):
        # Flat at 12 until expiry, then a rally to 13.5 assigns the call
        bars = _flat_bars("2024-03-04", periods=34) + [make_bar(datetime(2024, 4, 19), 13.5)]
        results = _backtester(sample_config).run_backtest(
            "SOFI", datetime(2024, 3, 1), datetime(2024, 4, 19), bars=bars, vix=_vix_for(bars))

        issues = {row['issue'] for row in results['exceptions']}
        assert 'Assignment' in issues
        assert results['assignments'] >= 1
        assert results['strategy_breakdown']['covered_call']['trades'] >= 1

    def test_monthly_performance_counts_goal_days(self, sample_config):
        sample_config['strategy']['weekly_premium_goal'] = 500
        bars = _flat_bars(periods=5)
        results = _backtester(sample_config).run_backtest(
            "SOFI", datetime(2024, 3, 1), datetime(2024, 3, 31), bars=bars, vix=_vix_for(bars))

        march = results['monthly_performance'][0]
        assert march['month'] == "2024-03"
        assert march['trading_days'] == 1
        assert march['goals_met_days'] == 5
        assert march['premium_collected'] == pytest.approx(950)


class TestCheckpointing:

    def test_checkpoint_finalized(self, sample_config, tmp_path):
        manager = CheckpointManager(str(tmp_path / "cp"))
        bars = _flat_bars(periods=30)
        results = _backtester(sample_config, checkpoint_manager=manager).run_backtest(
            "SOFI", datetime(2024, 3, 1), datetime(2024, 4, 30), bars=bars, vix=_vix_for(bars))

        checkpoint = manager.load(results['backtest_id'])
        assert checkpoint.is_completed
        assert checkpoint.total_bars_processed == 30
        assert checkpoint.engine_state['engine']['current_capital'] == pytest.approx(results['ending_capital'])

    def test_periodic_saves(self, sample_config, tmp_path):
        manager = CheckpointManager(str(tmp_path / "cp"))
        bars = _flat_bars(periods=30)
        with patch.object(manager, 'save', wraps=manager.save) as save:
            _backtester(sample_config, checkpoint_manager=manager).run_backtest(
                "SOFI", datetime(2024, 3, 1), datetime(2024, 4, 30), bars=bars, vix=_vix_for(bars))
        # Bar 25 plus the final save
        assert save.call_count == 2

    @pytest.mark.parametrize("reality_check", [False, True])
    def test_resume_matches_uninterrupted_run(self, sample_config, sofi_bars, tmp_path, reality_check):
        sample_config['backtest']['reality_check'] = reality_check
        vix = _vix_for(sofi_bars, 18.0)
        full = _backtester(sample_config).run_backtest("SOFI", START, END, bars=sofi_bars, vix=vix)

        manager = CheckpointManager(str(tmp_path / "cp"))
        first = _backtester(sample_config, checkpoint_manager=manager)
        # Stop after 60 bars without marking the checkpoint complete
        with patch.object(manager, 'finalize', side_effect=manager.save):
            first.run_backtest("SOFI", START, END, bars=sofi_bars[:60], vix=vix)
        assert manager.has_incomplete("SOFI")

        resumed = _backtester(sample_config, checkpoint_manager=manager).run_backtest(
            "SOFI", START, END, resume=True, bars=sofi_bars, vix=vix)

        assert resumed['total_pnl'] == pytest.approx(full['total_pnl'])
        assert [t['trade_id'] for t in resumed['trades']] == [t['trade_id'] for t in full['trades']]
        assert len(resumed['sessions']) == len(full['sessions'])
        assert len(resumed['equity_curve']) == len(full['equity_curve'])
        assert resumed['reality_audit'] == full['reality_audit']

    def test_resume_with_changed_config_starts_fresh(self, sample_config, tmp_path):
        manager = CheckpointManager(str(tmp_path / "cp"))
        bars = _flat_bars(periods=10)
        with patch.object(manager, 'finalize', side_effect=manager.save):
            _backtester(sample_config, checkpoint_manager=manager).run_backtest(
                "SOFI", datetime(2024, 3, 1), datetime(2024, 3, 31), bars=bars[:5], vix=_vix_for(bars))

        sample_config['strategy']['max_contract_size'] = 40
        results = _backtester(sample_config, checkpoint_manager=manager).run_backtest(
            "SOFI", datetime(2024, 3, 1), datetime(2024, 3, 31), resume=True, bars=bars, vix=_vix_for(bars))

        assert len(results['sessions']) == 2 * len(bars)
