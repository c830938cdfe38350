"""Tests for execution realism: slippage, hard checks and reality scoring."""
import json
import math
import pytest
from datetime import date, datetime

from engine.realism import (
    SOFI_EARNINGS_DATES, OptionQuote, RealityAuditReport, RealityLevel,
    SyntheticQuoteProvider, TradeValidator, apply_slippage, earnings_dates_for,
    liquidity_ok, reality_check, reality_level, realistic_fill_price, sell_ladder,
    spread_percentage,
)
from engine.models import StrategyType
from conftest import make_position


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class FixedQuotes:
    """Quote provider that always returns the same quote (or None)."""

    def __init__(self, quote):
        self.quote = quote

    def get_quote(self, position):
        return self.quote


def _quote(bid=1.20, ask=1.28, volume=1000, open_interest=2000):
    return OptionQuote(strike=10.80, option_type="P", bid=bid, ask=ask,
                       volume=volume, open_interest=open_interest)


def _check_kwargs(**overrides):
    kwargs = dict(
        bid=1.00, ask=1.05, open_interest=1000, quote_age_sec=0.5, venue_count=3,
        delta=0.15, delta_band=(0.10, 0.20), vix=20.0, scale_used=1.0,
        scale_expected_high=0.7, earnings_days=30, size=5, baseline_size=5,
        daily_loss_pct=0.0, daily_stop_pct=0.03, time_ok=True, nbbo_sane=True,
    )
    kwargs.update(overrides)
    return kwargs


class TestLiquidity:

    def test_spread_percentage(self):
        assert spread_percentage(1.00, 1.10) == pytest.approx(0.10 / 1.05)

    def test_invalid_quote_is_infinite(self):
        assert math.isinf(spread_percentage(0, 1.0))
        assert math.isinf(spread_percentage(1.0, 1.0))

    def test_liquidity_gate(self):
        assert liquidity_ok(1.00, 1.10)
        assert not liquidity_ok(1.00, 1.20)


class TestSlippage:

    def test_ladder_steps(self):
        assert sell_ladder(1.00, 1.02) == pytest.approx([1.01, 1.008, 1.008])

    def test_ladder_floored_at_bid(self):
        ladder = sell_ladder(0.50, 0.51)
        assert min(ladder) >= 0.50

    def test_ladder_empty_for_bad_quote(self):
        assert sell_ladder(0, 1.0) == []
        assert sell_ladder(1.2, 1.0) == []

    def test_apply_slippage_attempts(self):
        assert apply_slippage(1.00, 1.02, 1) == pytest.approx(1.01)
        assert apply_slippage(1.00, 1.02, 3) == pytest.approx(1.008)
        assert apply_slippage(1.00, 1.02, 4) == pytest.approx(1.00)

    @pytest.mark.parametrize("requested,expected", [
        (0.95, 0.95),
        (0.98, 0.95),
        (0.85, 0.90),
    ])
    def test_realistic_fill(self, requested, expected):
        assert realistic_fill_price(0.90, 1.00, requested) == pytest.approx(expected)


class TestRealityCheck:

    def test_clean_trade_passes(self):
        result = reality_check(**_check_kwargs())
        assert result.ok
        assert result.reasons == []

    def test_collects_every_failure(self):
        result = reality_check(**_check_kwargs(
            bid=1.00, ask=1.50, open_interest=10, quote_age_sec=5.0, venue_count=1,
            delta=0.30, time_ok=False, nbbo_sane=False,
        ))
        assert not result.ok
        assert set(result.reasons) == {
            "NBBO_CROSSED_OR_LOCKED", "SPREAD_TOO_WIDE", "OPEN_INTEREST_TOO_LOW",
            "QUOTE_TOO_STALE", "INSUFFICIENT_VENUES", "DELTA_OUT_OF_BAND",
            "OUTSIDE_EXECUTION_WINDOW",
        }

    def test_earnings_size_must_be_cut(self):
        assert "EARNINGS_SIZE_NOT_REDUCED" in reality_check(
            **_check_kwargs(earnings_days=1, size=10, baseline_size=10)).reasons
        assert reality_check(**_check_kwargs(earnings_days=1, size=7, baseline_size=10)).ok

    def test_high_vix_requires_smaller_scale(self):
        assert "VIX_SCALING_NOT_INVERSE" in reality_check(
            **_check_kwargs(vix=30, scale_used=1.0, scale_expected_high=0.7)).reasons
        assert reality_check(**_check_kwargs(vix=30, scale_used=0.7)).ok

    def test_daily_kill_switch(self):
        assert "DAILY_KILL_SWITCH_BREACHED" in reality_check(
            **_check_kwargs(daily_loss_pct=-0.03)).reasons


class TestTradeValidator:

    def test_reality_levels(self):
        assert reality_level(80) == RealityLevel.GREEN
        assert reality_level(79.9) == RealityLevel.YELLOW
        assert reality_level(60) == RealityLevel.YELLOW
        assert reality_level(59.9) == RealityLevel.RED

    def test_clean_quote_scores_green(self):
        validator = TradeValidator(FixedQuotes(_quote()))
        validation = validator.validate(make_position())

        assert validation.can_execute
        assert validation.score.total == pytest.approx(100.0)
        assert validation.score.level == RealityLevel.GREEN
        assert validation.adjusted_premium == pytest.approx(1.20)
        assert validation.adjusted_contracts == 5
        # (mid 1.24 - bid 1.20) * 5 contracts * 100
        assert validation.expected_slippage == pytest.approx(20.0)

    def test_holiday_rejected(self):
        validator = TradeValidator(FixedQuotes(_quote()))
        validation = validator.validate(make_position(entry_date=datetime(2024, 7, 4, 10, 15)))

        assert not validation.can_execute
        assert validation.score.level == RealityLevel.RED
        assert validation.score.total == 0.0

    def test_earnings_halves_size_and_costs_market_points(self):
        validator = TradeValidator(FixedQuotes(_quote()), earnings_dates=SOFI_EARNINGS_DATES)
        validation = validator.validate(make_position(entry_date=datetime(2024, 4, 26, 10, 15)))

        assert validation.can_execute
        assert validation.adjusted_contracts == 2
        assert validation.score.market == 85
        assert validation.score.total == pytest.approx(96.25)
        assert "earnings" in validation.notes

    def test_no_earnings_calendar_by_default(self):
        validator = TradeValidator(FixedQuotes(_quote()))
        validation = validator.validate(make_position(entry_date=datetime(2024, 4, 26, 10, 15)))

        assert validation.adjusted_contracts == 5
        assert validation.score.market == 100

    def test_missing_quote_rejected(self):
        validation = TradeValidator(FixedQuotes(None)).validate(make_position())
        assert not validation.can_execute
        assert validation.score.total == 20.0
        assert validation.score.level == RealityLevel.RED

    def test_thin_wide_market_scores_yellow(self):
        quote = _quote(bid=1.00, ask=1.20, volume=50, open_interest=300)
        validation = TradeValidator(FixedQuotes(quote)).validate(make_position())

        assert validation.score.liquidity == 25
        assert validation.score.premium == 80
        assert validation.score.total == pytest.approx(76.25)
        assert validation.score.level == RealityLevel.YELLOW
        assert validation.can_execute

    def test_execution_penalties(self):
        validator = TradeValidator(FixedQuotes(_quote()))
        score = validator.score(make_position(contracts=25, entry_date=datetime(2024, 3, 4, 11, 0)), _quote())
        assert score.execution == 70
        assert "Non-optimal trading time" in score.adjustments


class TestSyntheticQuotes:

    def test_quotes_bracket_the_heuristic_premium(self):
        provider = SyntheticQuoteProvider(seed=1)
        quote = provider.get_quote(make_position())
        assert quote.bid < 1.25 < quote.ask
        assert quote.option_type == "P"
        assert 200 <= quote.open_interest < 8000

    def test_call_quotes(self):
        provider = SyntheticQuoteProvider(seed=1)
        quote = provider.get_quote(make_position(strategy=StrategyType.COVERED_CALL, strike=12.60, premium=0.65))
        assert quote.option_type == "C"

    def test_seeded_provider_is_reproducible(self):
        a = SyntheticQuoteProvider(seed=3).get_quote(make_position())
        b = SyntheticQuoteProvider(seed=3).get_quote(make_position())
        assert a == b


class TestAuditReport:

    def test_empty_summary(self):
        assert RealityAuditReport().summary() == {"total_trades_analyzed": 0}

    def test_summary_counts(self):
        validator = TradeValidator(FixedQuotes(_quote()))
        validator.validate(make_position())
        validator.validate(make_position(entry_date=datetime(2024, 7, 4, 10, 15)))

        summary = validator.audit.summary()
        assert summary['total_trades_analyzed'] == 2
        assert summary['executable_trades'] == 1
        assert summary['execution_rate'] == 0.5
        assert summary['green_trades'] == 1
        assert summary['red_trades'] == 1
        assert summary['skipped_trades'] == 1
        assert summary['original_premiums'] == pytest.approx(1250.0)
        assert summary['adjusted_premiums'] == pytest.approx(600.0)
        assert summary['total_expected_slippage'] == pytest.approx(20.0)

    def test_summary_keeps_premium_seen_at_validation(self):
        validator = TradeValidator(FixedQuotes(_quote()))
        position = make_position()
        validator.validate(position)
        # The engine re-prices the booked position afterwards
        position.premium_collected = 1.20

        assert validator.audit.summary()['original_premiums'] == pytest.approx(625.0)


class TestSyntheticValidation:

    def test_fills_at_the_synthetic_bid(self):
        provider = SyntheticQuoteProvider(seed=1)
        validator = TradeValidator(provider)
        position = make_position()

        validation = validator.validate(position)
        quote = validation.quote

        assert validation.can_execute
        assert validation.adjusted_premium == quote.bid
        assert validation.adjusted_premium < position.premium_collected
        assert validation.expected_slippage == pytest.approx((quote.mid - quote.bid) * 5 * 100)
        assert validator.audit.summary()['total_expected_slippage'] > 0

    def test_state_restores_audit_and_quote_stream(self):
        first = TradeValidator(SyntheticQuoteProvider(seed=5))
        first.validate(make_position())
        first.validate(make_position(strategy=StrategyType.COVERED_CALL, strike=12.60, premium=0.65))

        state = json.loads(json.dumps(first.export_state()))
        second = TradeValidator(SyntheticQuoteProvider(seed=99))
        second.restore_state(state)

        assert second.audit.summary() == first.audit.summary()
        next_a = first.validate(make_position()).quote
        next_b = second.validate(make_position()).quote
        assert next_a == next_b
        assert second.audit.summary() == first.audit.summary()

    def test_restore_without_quote_state(self):
        validator = TradeValidator(FixedQuotes(_quote()))
        validator.validate(make_position())

        restored = TradeValidator(FixedQuotes(_quote()))
        restored.restore_state(validator.export_state())
        assert restored.audit.summary()['total_trades_analyzed'] == 1


class TestEarningsCalendar:

    def test_sofi_uses_built_in_calendar(self):
        assert earnings_dates_for("sofi") == SOFI_EARNINGS_DATES

    def test_other_symbols_have_none(self):
        assert earnings_dates_for("APP") == []

    def test_configured_dates_win(self):
        dates = earnings_dates_for("SOFI", ["2024-05-08", date(2024, 2, 14), datetime(2024, 8, 7, 16, 0)])
        assert dates == [date(2024, 2, 14), date(2024, 5, 8), date(2024, 8, 7)]
