"""Tests for the per-session trading state machine."""
import pytest
from datetime import datetime
from unittest.mock import MagicMock

from engine.models import (
    ExitReason, PositionStatus, StrategyConfig, StrategyType, VolRegime,
)
from engine.trading_engine import TradingEngine
from shared.exceptions import StrategyError
from conftest import make_bar, make_position


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

ENTRY = datetime(2024, 3, 4, 10, 15)   # Monday
EXIT = datetime(2024, 3, 4, 15, 25)


def _engine(**overrides):
    return TradingEngine(StrategyConfig(**overrides))


def _open_first_day(engine, close=12.0, vix=20.0):
    return engine.process_trading_day(ENTRY, make_bar(datetime(2024, 3, 4), close), vix)


class TestSizing:

    def test_contracts_clamped_to_minimum(self):
        # 10000 * 0.10 * 5 / (10.80 * 100) = 4.6 -> 4 -> min 5
        assert _engine().calculate_contracts(10.80) == 5

    def test_contracts_formula(self):
        assert _engine().calculate_contracts(2.0) == 25

    def test_contracts_clamped_to_maximum(self):
        assert _engine().calculate_contracts(0.5) == 50

    def test_invalid_strike_raises(self):
        with pytest.raises(StrategyError):
            _engine().calculate_contracts(0)

    def test_compounding_uses_current_capital(self):
        engine = _engine()
        engine.current_capital = 20000
        assert engine.calculate_contracts(2.0) == 50

    def test_no_compounding_uses_initial_capital(self):
        engine = _engine(enable_compounding=False)
        engine.current_capital = 20000
        assert engine.calculate_contracts(2.0) == 25


class TestEntries:

    def test_opens_put_spread_and_covered_call(self):
        engine = _engine()
        session = _open_first_day(engine)

        assert session.positions_opened == 2
        pcs, cc = engine.get_open_positions()

        assert pcs.strategy == StrategyType.PUT_CREDIT_SPREAD
        assert pcs.id == "PCS_20240304_10.80"
        assert pcs.strike_price == pytest.approx(10.80)
        assert pcs.premium_collected == pytest.approx(1.25)
        assert pcs.contracts == 5
        assert pcs.delta == 0.15
        assert pcs.expiration_date.date() == datetime(2024, 4, 19).date()
        assert pcs.days_to_expiration == 46
        assert pcs.notes == "15 delta put credit spread, normal vol regime"

        assert cc.strategy == StrategyType.COVERED_CALL
        assert cc.id == "CC_20240304_12.60"
        assert cc.premium_collected == pytest.approx(0.65)
        assert cc.delta == 0.12
        assert cc.capital_allocated == pytest.approx(12.0 * 5 * 100)

    def test_premium_accumulates_in_dollars(self):
        engine = _engine()
        session = _open_first_day(engine)

        assert session.daily_premium == pytest.approx(625 + 325)
        assert session.weekly_premium == pytest.approx(950)
        assert session.monthly_premium == pytest.approx(950)
        assert session.vol_regime == VolRegime.NORMAL

    def test_no_entries_outside_window(self):
        engine = _engine()
        session = engine.process_trading_day(datetime(2024, 3, 4, 11, 0), make_bar(datetime(2024, 3, 4), 12.0), 20)
        assert session.positions_opened == 0
        assert engine.get_open_positions() == []

    def test_entry_window_edges_inclusive(self):
        engine = _engine()
        assert engine.in_entry_window(datetime(2024, 3, 4, 10, 10))
        assert engine.in_entry_window(datetime(2024, 3, 4, 10, 30))
        assert not engine.in_entry_window(datetime(2024, 3, 4, 10, 31))
        assert engine.in_exit_window(datetime(2024, 3, 4, 15, 35))
        assert not engine.in_exit_window(datetime(2024, 3, 4, 15, 19))

    def test_no_trading_on_weekends(self):
        engine = _engine()
        assert not engine.should_trade_today(datetime(2024, 3, 9, 10, 15), VolRegime.NORMAL)

    def test_high_vol_limits_open_positions(self):
        engine = _engine()
        engine._open = [make_position() for _ in range(4)]
        assert not engine.should_trade_today(ENTRY, VolRegime.HIGH)
        assert engine.should_trade_today(ENTRY, VolRegime.NORMAL)

    def test_dte_outside_range_skips_entry(self):
        """Feb 15 2024 + 45 days lands in March; the Mar 15 expiry is only 29 days out."""
        engine = _engine()
        session = engine.process_trading_day(datetime(2024, 2, 15, 10, 15), make_bar(datetime(2024, 2, 15), 12.0), 20)
        assert session.positions_opened == 0

    def test_disabled_strategy_not_opened(self):
        engine = _engine(enable_covered_calls=False)
        _open_first_day(engine)
        assert [p.strategy for p in engine.get_open_positions()] == [StrategyType.PUT_CREDIT_SPREAD]

    def test_call_delta_halved_near_earnings(self):
        engine = _engine()
        when = datetime(2024, 4, 15, 10, 15)
        engine.process_trading_day(when, make_bar(datetime(2024, 4, 15), 12.0), 20)
        cc = [p for p in engine.get_open_positions() if p.strategy == StrategyType.COVERED_CALL][0]
        assert cc.delta == pytest.approx(0.06)


class TestGoals:

    def test_weekly_goal_blocks_new_entries(self):
        engine = _engine(weekly_premium_goal=500)
        _open_first_day(engine)
        assert engine.goals_met()

        session = engine.process_trading_day(datetime(2024, 3, 5, 10, 15), make_bar(datetime(2024, 3, 5), 12.0), 20)
        assert session.positions_opened == 0
        assert session.goals_met

    def test_weekly_premium_resets_on_new_week(self):
        engine = _engine(weekly_premium_goal=500)
        _open_first_day(engine)

        session = engine.process_trading_day(datetime(2024, 3, 11, 10, 15), make_bar(datetime(2024, 3, 11), 12.0), 20)
        assert session.positions_opened == 2
        assert session.weekly_premium == pytest.approx(950)

    def test_weekly_reset_without_monday_session(self):
        engine = _engine()
        engine.process_trading_day(datetime(2024, 3, 8, 10, 15), make_bar(datetime(2024, 3, 8), 12.0), 20)
        assert engine.weekly_premium > 0

        engine.process_trading_day(datetime(2024, 3, 12, 11, 0), make_bar(datetime(2024, 3, 12), 12.0), 20)
        assert engine.weekly_premium == 0.0

    def test_monthly_premium_resets_on_new_month(self):
        engine = _engine()
        engine.process_trading_day(datetime(2024, 3, 28, 10, 15), make_bar(datetime(2024, 3, 28), 12.0), 20)
        assert engine.monthly_premium > 0

        engine.process_trading_day(datetime(2024, 4, 1, 11, 0), make_bar(datetime(2024, 4, 1), 12.0), 20)
        assert engine.monthly_premium == 0.0


class TestExits:

    def test_positions_expire_worthless(self):
        engine = _engine()
        _open_first_day(engine)

        session = engine.process_trading_day(datetime(2024, 4, 19, 15, 25), make_bar(datetime(2024, 4, 19), 11.0), 20)

        assert session.positions_closed == 2
        for position in engine.get_closed_positions():
            assert position.status == PositionStatus.EXPIRED
            assert position.exit_reason == ExitReason.EXPIRATION
            assert position.notes.endswith(" | Expired")
        assert engine.get_total_pnl() == pytest.approx(625 + 325)
        assert engine.get_current_capital() == pytest.approx(10950)

    def test_expiration_settles_outside_exit_window(self):
        engine = _engine()
        _open_first_day(engine)
        session = engine.process_trading_day(datetime(2024, 4, 19, 10, 15), make_bar(datetime(2024, 4, 19), 11.0), 20)
        assert session.positions_closed == 2

    def test_put_below_strike_realizes_loss(self):
        engine = _engine(enable_covered_calls=False)
        _open_first_day(engine)
        engine.process_trading_day(datetime(2024, 4, 19, 15, 25), make_bar(datetime(2024, 4, 19), 10.0), 20)

        pcs = engine.get_closed_positions()[0]
        assert pcs.profit_loss == pytest.approx((1.25 - 0.80) * 500)

    def test_call_assigned_above_strike(self):
        engine = _engine()
        _open_first_day(engine)
        engine.process_trading_day(datetime(2024, 4, 19, 15, 25), make_bar(datetime(2024, 4, 19), 13.0), 20)

        cc = [p for p in engine.get_closed_positions() if p.strategy == StrategyType.COVERED_CALL][0]
        assert cc.status == PositionStatus.ASSIGNED
        assert cc.exit_reason == ExitReason.ASSIGNMENT
        assert cc.profit_loss == pytest.approx(0.25 * 500)
        assert cc.notes.endswith(" | Assigned")

    def test_profit_target_close_in_exit_window(self):
        engine = _engine()
        position = make_position(premium=5.0)
        engine._open.append(position)

        # Mark = 0.5 * 1.25 = 0.625 -> (5.0 - 0.625) / 5.0 = 87.5%
        session = engine.process_trading_day(datetime(2024, 3, 20, 15, 25), make_bar(datetime(2024, 3, 20), 12.0), 20)

        assert session.positions_closed == 1
        assert position.status == PositionStatus.CLOSED
        assert position.exit_reason == ExitReason.PROFIT_TARGET
        assert "Closed at" in position.notes
        assert position.profit_loss == pytest.approx(4.375 * 500)
        assert engine.get_current_capital() == pytest.approx(10000 + 2187.5)

    def test_max_threshold_close(self):
        engine = _engine()
        position = make_position(premium=10.0)
        engine._open.append(position)

        engine.process_trading_day(datetime(2024, 3, 20, 15, 25), make_bar(datetime(2024, 3, 20), 12.0), 20)

        assert position.exit_reason == ExitReason.MAX_THRESHOLD
        assert position.notes.endswith(" | Max threshold close")

    def test_no_profit_taking_outside_exit_window(self):
        engine = _engine()
        position = make_position(premium=10.0)
        engine._open.append(position)

        engine.process_trading_day(datetime(2024, 3, 20, 12, 0), make_bar(datetime(2024, 3, 20), 12.0), 20)
        assert position.is_open

    def test_below_threshold_stays_open(self):
        engine = _engine()
        position = make_position(premium=1.25)
        engine._open.append(position)

        engine.process_trading_day(datetime(2024, 3, 20, 15, 25), make_bar(datetime(2024, 3, 20), 12.0), 20)
        assert position.is_open


class TestValidatorIntegration:

    def test_rejected_trades_are_skipped(self):
        validator = MagicMock()
        validator.validate.return_value = MagicMock(can_execute=False)
        engine = TradingEngine(StrategyConfig(), validator=validator)

        session = _open_first_day(engine)

        assert session.positions_opened == 0
        assert engine.rejected_trades == 2

    def test_accepted_trades_use_adjusted_fill(self):
        validation = MagicMock(can_execute=True, adjusted_premium=1.10, adjusted_contracts=3)
        validation.score.level.value = "GREEN"
        validation.score.total = 92.0
        validator = MagicMock()
        validator.validate.return_value = validation
        engine = TradingEngine(StrategyConfig(), validator=validator)

        _open_first_day(engine)
        pcs = engine.get_open_positions()[0]

        assert pcs.premium_collected == pytest.approx(1.10)
        assert pcs.max_profit == pytest.approx(1.10)
        assert pcs.contracts == 3
        assert pcs.capital_allocated == pytest.approx(10.80 * 3 * 100)
        assert "reality GREEN 92" in pcs.notes


class TestStateAndValuation:

    def test_mark_to_market(self):
        engine = _engine()
        _open_first_day(engine)
        # PCS (1.25 - 0.625) * 500 + CC (0.65 - 0.325) * 500
        assert engine.mark_to_market(EXIT, 12.0, 20) == pytest.approx(10000 + 312.5 + 162.5)

    def test_export_restore_round_trip(self):
        engine = _engine()
        _open_first_day(engine)
        engine.process_trading_day(datetime(2024, 4, 19, 15, 25), make_bar(datetime(2024, 4, 19), 13.0), 20)
        engine.process_trading_day(datetime(2024, 4, 22, 10, 15), make_bar(datetime(2024, 4, 22), 12.5), 20)

        restored = _engine()
        restored.restore_state(engine.export_state())

        assert restored.get_current_capital() == pytest.approx(engine.get_current_capital())
        assert [p.id for p in restored.get_open_positions()] == [p.id for p in engine.get_open_positions()]
        assert [p.status for p in restored.get_closed_positions()] == [p.status for p in engine.get_closed_positions()]
        assert restored.weekly_premium == pytest.approx(engine.weekly_premium)

    def test_restore_rejects_bad_state(self):
        with pytest.raises(StrategyError):
            _engine().restore_state({'weekly_premium': 0})
