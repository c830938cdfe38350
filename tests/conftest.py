"""Shared test fixtures."""
import pytest
from datetime import datetime

from engine.models import DailyBar, Position, StrategyConfig, StrategyType, VolRegime
from backtest.synthetic_data import generate_bars


@pytest.fixture
def sample_config(tmp_path):
    return {
        'symbols': ['SOFI', 'APP'],
        'backtest': {
            'start_date': '2024-01-02',
            'end_date': '2024-06-28',
            'initial_capital': 10000,
            'checkpoint_interval': 25,
            'reality_check': False,
            'generate_reports': False,
            'excel': True,
            'report_dir': str(tmp_path / 'out'),
            'seed': 42,
        },
        'strategy': {
            'preferred_dte': 45,
            'min_dte': 30,
            'max_dte': 60,
            'early_close_threshold': 0.70,
            'optimal_close_threshold': 0.80,
            'max_close_threshold': 0.90,
            'weekly_premium_goal': 2000,
            'monthly_premium_goal': 8000,
            'aggressiveness_multiplier': 5.0,
            'min_contract_size': 5,
            'max_contract_size': 50,
            'capital_allocation_per_trade': 0.10,
            'entry_window': {'start': '10:10', 'end': '10:30'},
            'exit_window': {'start': '15:20', 'end': '15:35'},
        },
        'data': {
            'provider': 'synthetic',
            'vix_source': 'synthetic',
        },
        'logging': {'level': 'WARNING', 'file': str(tmp_path / 'logs' / 'test.log'), 'console': False},
    }


@pytest.fixture
def strategy_config():
    return StrategyConfig()


@pytest.fixture
def sofi_bars():
    """Six months of deterministic synthetic SOFI bars."""
    return generate_bars('SOFI', datetime(2024, 1, 2), datetime(2024, 6, 28), seed=7)


def make_bar(day: datetime, close: float) -> DailyBar:
    return DailyBar(date=day, open=close, high=close * 1.01, low=close * 0.99, close=close, volume=10_000_000)


def make_position(
    strategy=StrategyType.PUT_CREDIT_SPREAD,
    strike=10.80,
    premium=1.25,
    contracts=5,
    entry_date=None,
    expiration=None,
    entry_price=12.0,
    vix=20.0,
):
    """Return an open position with sensible defaults for tests."""
    entry_date = entry_date or datetime(2024, 3, 4, 10, 15)
    expiration = expiration or datetime(2024, 4, 19)
    return Position(
        id=f"{strategy.code}_{entry_date:%Y%m%d}_{strike:.2f}",
        symbol='SOFI',
        strategy=strategy,
        entry_date=entry_date,
        expiration_date=expiration,
        strike_price=strike,
        entry_price=entry_price,
        premium_collected=premium,
        max_profit=premium,
        delta=0.15,
        days_to_expiration=(expiration.date() - entry_date.date()).days,
        vix_level=vix,
        vol_regime=VolRegime.NORMAL,
        contracts=contracts,
        capital_allocated=strike * contracts * 100,
    )
