"""Shared constants used across the backtester.

This is the single canonical location for all named constants.
"""

import os

# ---------------------------------------------------------------------------
# Standardized project paths
# Override OUTPUT_DIR via SOFIRED_OUT env var (reports, checkpoints).
# ---------------------------------------------------------------------------
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
DATA_DIR = os.environ.get('SOFIRED_DATA_DIR', os.path.join(PROJECT_ROOT, 'data'))
OUTPUT_DIR = os.environ.get('SOFIRED_OUT', os.path.join(PROJECT_ROOT, 'out'))
LOGS_DIR = os.environ.get('SOFIRED_LOGS_DIR', os.path.join(PROJECT_ROOT, 'logs'))
CHECKPOINT_DIR = os.path.join(OUTPUT_DIR, 'checkpoints')
CONFIG_PATH = os.path.join(PROJECT_ROOT, 'config.yaml')

DEFAULT_SYMBOL = 'SOFI'

# ---------------------------------------------------------------------------
# Volatility regimes (VIX)
# ---------------------------------------------------------------------------
VIX_LOW_THRESHOLD = 15.0
VIX_HIGH_THRESHOLD = 25.0
VIX_DEFAULT = 20.0
VIX_FLOOR = 10.0
VIX_CEILING = 50.0
VIX_PROXY_WINDOW = 20

# ---------------------------------------------------------------------------
# Intraday execution windows (local exchange time, inclusive)
# ---------------------------------------------------------------------------
ENTRY_WINDOW_START = (10, 10)
ENTRY_WINDOW_END = (10, 30)
EXIT_WINDOW_START = (15, 20)
EXIT_WINDOW_END = (15, 35)

# ---------------------------------------------------------------------------
# Strike selection
# ---------------------------------------------------------------------------
PUT_STRIKE_FRACTION = 0.90       # short put 10% below spot
CALL_STRIKE_FRACTION = 1.05      # covered call 5% above spot
MAX_OPEN_POSITIONS_HIGH_VOL = 3  # no new trades above this in a high regime

# Earnings season: these months, days 10..20 inclusive
EARNINGS_MONTHS = (1, 4, 7, 10)
EARNINGS_DAY_RANGE = (10, 20)

# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------
CONTRACT_MULTIPLIER = 100

# ---------------------------------------------------------------------------
# Realism filters
# ---------------------------------------------------------------------------
MAX_SPREAD_PCT = 0.12
MIN_OPEN_INTEREST = 250
MAX_QUOTE_AGE_SECONDS = 2.0
MIN_VENUES = 2
EARNINGS_SIZE_FACTOR = 0.7

# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------
EXCEPTION_LOSS_THRESHOLD = -100.0  # dollars; worse trades land in exceptions.csv
CHECKPOINTS_TO_KEEP = 5
