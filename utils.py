"""
Utility functions for the SOFIRED backtester.
"""

import logging
import logging.handlers
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Tuple
import yaml
import colorlog

from engine.models import parse_clock
from shared.exceptions import ConfigError
from shared.types import AppConfig

VALID_PROVIDERS = ('thetadata', 'yfinance', 'synthetic')
VALID_VIX_SOURCES = ('yfinance', 'proxy', 'synthetic')


def _resolve_env_vars(obj):
    """Recursively resolve ${ENV_VAR} references in config values."""
    import os
    import re
    if isinstance(obj, str):
        def replacer(m):
            return os.environ.get(m.group(1), m.group(0))
        return re.sub(r'\$\{(\w+)\}', replacer, obj)
    elif isinstance(obj, dict):
        return {k: _resolve_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_resolve_env_vars(i) for i in obj]
    return obj


def load_config(config_file: str = 'config.yaml') -> Dict:
    """
    Load configuration from YAML file.
    Supports ${ENV_VAR} substitution in string values.

    Args:
        config_file: Path to config file

    Returns:
        Configuration dictionary
    """
    from dotenv import load_dotenv
    load_dotenv()

    config_path = Path(config_file)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_file}")

    with open(config_path, 'r') as f:
        config = yaml.safe_load(f)

    return _resolve_env_vars(config or {})


def setup_logging(config: Dict):
    """
    Setup logging configuration.

    Args:
        config: Configuration dictionary
    """
    log_config = config['logging']

    # Create logs directory
    log_file = Path(log_config['file'])
    log_file.parent.mkdir(parents=True, exist_ok=True)

    # Setup formatters
    file_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_formatter = colorlog.ColoredFormatter(
        '%(log_color)s%(asctime)s - %(name)s - %(levelname)s - %(message)s%(reset)s',
        datefmt='%H:%M:%S',
        log_colors={
            'DEBUG': 'cyan',
            'INFO': 'green',
            'WARNING': 'yellow',
            'ERROR': 'red',
            'CRITICAL': 'red,bg_white',
        }
    )

    # Setup handlers
    handlers = []

    # File handler (rotating)
    file_handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=10*1024*1024,  # 10 MB
        backupCount=5
    )
    file_handler.setFormatter(file_formatter)
    handlers.append(file_handler)

    # Console handler
    if log_config.get('console', True):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(console_formatter)
        handlers.append(console_handler)

    # Configure root logger
    log_level = getattr(logging, log_config.get('level', 'INFO').upper())

    logging.basicConfig(
        level=log_level,
        handlers=handlers,
        force=True,
    )

    # Reduce noise from some libraries
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('yfinance').setLevel(logging.WARNING)
    logging.getLogger('peewee').setLevel(logging.WARNING)


def validate_config(config: AppConfig) -> None:
    """
    Validate configuration.  Raises ``ConfigError`` (a ``ValueError``) on
    invalid input.

    Args:
        config: Configuration dictionary
    """
    required_sections = ['symbols', 'backtest', 'strategy', 'data', 'logging']

    for section in required_sections:
        if section not in config:
            raise ConfigError(f"Missing required config section: {section}")

    # Validate symbols
    if not config['symbols']:
        raise ConfigError("No symbols specified")

    # Validate strategy params
    strategy = config['strategy'] or {}
    min_dte = strategy.get('min_dte', 30)
    max_dte = strategy.get('max_dte', 60)
    if min_dte >= max_dte:
        raise ConfigError("min_dte must be less than max_dte")

    for name in ('early_close_threshold', 'optimal_close_threshold', 'max_close_threshold'):
        if name in strategy and not 0 < strategy[name] <= 1:
            raise ConfigError(f"{name} must be in (0, 1]")

    if strategy.get('min_contract_size', 1) > strategy.get('max_contract_size', 50):
        raise ConfigError("min_contract_size must not exceed max_contract_size")

    for name in ('entry_window', 'exit_window'):
        window = strategy.get(name)
        if window:
            try:
                start, end = parse_clock(window['start']), parse_clock(window['end'])
            except (KeyError, TypeError) as e:
                raise ConfigError(f"{name} needs 'start' and 'end': {e}")
            if start > end:
                raise ConfigError(f"{name} start must not be after end")

    # Validate backtest params
    backtest = config['backtest'] or {}
    capital = backtest.get('initial_capital', strategy.get('initial_capital', 10000))
    if capital <= 0:
        raise ConfigError("initial_capital must be positive")

    if backtest.get('checkpoint_interval', 50) <= 0:
        raise ConfigError("checkpoint_interval must be positive")

    # Validate data source
    data = config['data'] or {}
    if data.get('provider', 'thetadata') not in VALID_PROVIDERS:
        raise ConfigError(f"data.provider must be one of {', '.join(VALID_PROVIDERS)}")
    if data.get('vix_source', 'yfinance') not in VALID_VIX_SOURCES:
        raise ConfigError(f"data.vix_source must be one of {', '.join(VALID_VIX_SOURCES)}")


def resolve_backtest_dates(config: Dict, now: datetime = None) -> Tuple[datetime, datetime]:
    """
    Backtest period from ``backtest.start_date`` / ``end_date`` (YYYY-MM-DD),
    falling back to the last ``lookback_months`` months ending today.
    """
    backtest = config.get('backtest') or {}
    now = now or datetime.now()

    end = backtest.get('end_date')
    end_date = datetime.strptime(str(end), '%Y-%m-%d') if end else datetime(now.year, now.month, now.day)

    start = backtest.get('start_date')
    if start:
        start_date = datetime.strptime(str(start), '%Y-%m-%d')
    else:
        months = int(backtest.get('lookback_months', 12))
        start_date = end_date - timedelta(days=round(months * 30.44))

    if start_date > end_date:
        raise ConfigError(f"Backtest start {start_date.date()} is after end {end_date.date()}")
    return start_date, end_date
