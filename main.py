#!/usr/bin/env python3
"""
SOFIRED Options Backtester
Main entry point.

Usage:
    python main.py backtest               # Backtest the default symbol
    python main.py portfolio              # Multi-symbol portfolio backtest
    python main.py resume                 # Resume the newest incomplete backtest
    python main.py checkpoints            # List saved checkpoints
    python main.py config                 # Show a symbol's configuration
"""

import os
import sys
import signal
import logging
from datetime import datetime
import argparse
from typing import Dict, List, Optional

from shared.types import AppConfig

from utils import load_config, setup_logging, validate_config, resolve_backtest_dates
from backtest import Backtester, CheckpointManager, HistoricalBarsData, PerformanceMetrics
from engine.portfolio import MultiSymbolPortfolioEngine
from shared.constants import CHECKPOINT_DIR, DEFAULT_SYMBOL, OUTPUT_DIR
from shared.io_utils import atomic_json_write
from shared.symbol_config import SymbolConfigManager


logger = logging.getLogger(__name__)


class SofiredSystem:
    """
    Wires config, data, checkpoints and reports around the backtesters.
    """

    def __init__(
        self,
        config: AppConfig,
        data: Optional[HistoricalBarsData] = None,
        checkpoint_manager: Optional[CheckpointManager] = None,
        config_manager: Optional[SymbolConfigManager] = None,
    ):
        """
        Initialize the system.

        Args:
            config: Configuration dictionary (already loaded & validated).
            data: Pre-built market data source or None for default.
            checkpoint_manager: Pre-built CheckpointManager or None for default.
            config_manager: Pre-built SymbolConfigManager or None for default.
        """
        self.config = config
        backtest_cfg = config.get('backtest') or {}

        logger.info("=" * 80)
        logger.info("SOFIRED Options Backtester Starting")
        logger.info("=" * 80)

        self.data = data or HistoricalBarsData.from_config(config.get('data'), seed=backtest_cfg.get('seed', 42))
        report_dir = backtest_cfg.get('report_dir')
        self.checkpoints = checkpoint_manager or CheckpointManager(
            os.path.join(report_dir, 'checkpoints') if report_dir else CHECKPOINT_DIR
        )
        self.config_manager = config_manager or SymbolConfigManager(config.get('config_dir', '.'))

    def run_backtest(self, symbol: str, start_date: datetime, end_date: datetime,
                     resume: bool = False) -> Dict:
        """
        Run a single-symbol backtest and write its reports.

        Args:
            symbol: Ticker to backtest
            start_date: First simulated day
            end_date: Last simulated day
            resume: Continue from the newest incomplete checkpoint
        """
        symbol = symbol.upper()
        symbol_config = self.config_manager.load_or_default(symbol)

        backtester = Backtester(
            self.config,
            data=self.data,
            checkpoint_manager=self.checkpoints,
            symbol_config=symbol_config,
        )
        results = backtester.run_backtest(symbol, start_date, end_date, resume=resume)

        if not results:
            logger.error("Backtest failed")
            return {}

        perf = PerformanceMetrics(self.config)
        perf.print_summary(results)

        if (self.config.get('backtest') or {}).get('generate_reports', True):
            report_file = perf.generate_report(results)
            logger.info(f"Backtest report saved to: {report_file}")

        # Latest results at a fixed path for downstream tooling
        canonical_path = os.path.join(perf.report_dir, 'backtest_results.json')
        try:
            atomic_json_write(canonical_path, results)
        except OSError as e:
            logger.warning(f"Failed to write canonical backtest results: {e}")

        return results

    def resume_backtest(self, symbol: str) -> Dict:
        """Resume the newest incomplete checkpoint for *symbol*."""
        checkpoint = self.checkpoints.load_most_recent(symbol)
        if checkpoint is None:
            logger.warning(f"No incomplete checkpoint for {symbol.upper()}")
            return {}
        return self.run_backtest(symbol, checkpoint.start_date, checkpoint.end_date, resume=True)

    def run_portfolio(self, symbols: List[str], start_date: datetime, end_date: datetime) -> Dict:
        """
        Backtest several symbols against one capital pool.
        """
        portfolio_cfg = self.config.get('portfolio') or {}
        total_capital = portfolio_cfg.get('total_capital',
                                          (self.config.get('backtest') or {}).get('initial_capital', 100000))

        engine = MultiSymbolPortfolioEngine(total_capital, self.config_manager,
                                            base_config=self.config.get('strategy'))
        initialized = engine.initialize_symbols(symbols)

        price_data = {}
        for symbol in initialized:
            price_data[symbol] = self.data.get_daily_bars(symbol, start_date, end_date)

        # Shared VIX series keyed off the first symbol's calendar
        vix = self.data.get_vix_series(price_data[initialized[0]]) if initialized else None

        results = engine.run(start_date, end_date, price_data, vix)
        print(engine.format_report(results))

        out_dir = (self.config.get('backtest') or {}).get('report_dir') or OUTPUT_DIR
        path = os.path.join(out_dir, f"portfolio_results_{datetime.now():%Y%m%d_%H%M%S}.json")
        try:
            atomic_json_write(path, results.to_dict())
            logger.info(f"Portfolio results saved to: {path}")
        except OSError as e:
            logger.warning(f"Failed to write portfolio results: {e}")

        return results.to_dict()

    def list_checkpoints(self, symbol: Optional[str] = None):
        checkpoints = self.checkpoints.list_checkpoints(symbol)
        if not checkpoints:
            print("No checkpoints found")
            return
        print(f"{'Backtest ID':<26} {'Last Date':<12} {'Progress':>9} {'Capital':>12} {'Status':<10}")
        print("-" * 75)
        for cp in checkpoints:
            status = "complete" if cp.is_completed else "partial"
            print(
                f"{cp.backtest_id:<26} {cp.last_processed_date:%Y-%m-%d}   "
                f"{cp.estimated_completion_pct:>8.1f}% {cp.current_capital:>12,.2f} {status:<10}"
            )

    def show_config(self, symbol: str, compare: Optional[str] = None):
        if compare:
            rows = self.config_manager.compare(symbol, compare)
            print(f"{'Setting':<24} {symbol.upper():<28} {compare.upper():<28}")
            print("-" * 80)
            for setting, v1, v2 in rows:
                print(f"{setting:<24} {v1:<28} {v2:<28}")
            return

        import yaml
        config = self.config_manager.load_or_default(symbol)
        print(yaml.safe_dump(config.to_dict(), sort_keys=False))


def create_system(config_file: str = 'config.yaml', overrides: Optional[Dict] = None) -> SofiredSystem:
    """Factory function that loads config and builds a SofiredSystem.

    Args:
        config_file: Path to the YAML configuration file.
        overrides: ``backtest`` keys set from the command line.

    Returns:
        A fully initialised SofiredSystem.
    """
    config = load_config(config_file)
    if overrides:
        config.setdefault('backtest', {}).update(overrides)
    config.setdefault('config_dir', os.path.dirname(os.path.abspath(config_file)))
    validate_config(config)
    setup_logging(config)

    return SofiredSystem(config=config)


def main():
    """
    Main entry point.
    """
    parser = argparse.ArgumentParser(
        description='SOFIRED Options Backtester',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py backtest                        # Backtest SOFI over the configured period
  python main.py backtest --symbol APP --months 6
  python main.py backtest --start 2024-01-01 --end 2025-06-30 --reality-check
  python main.py portfolio --symbols SOFI APP AAPL
  python main.py resume --symbol SOFI
  python main.py checkpoints
  python main.py config --symbol SOFI --compare APP
        """
    )

    parser.add_argument(
        'command',
        choices=['backtest', 'portfolio', 'resume', 'checkpoints', 'config'],
        help='Command to run'
    )
    parser.add_argument('--symbol', default=None, help=f'Symbol to backtest (default: {DEFAULT_SYMBOL})')
    parser.add_argument('--symbols', nargs='+', default=None, help='Symbols for a portfolio backtest')
    parser.add_argument('--start', default=None, help='Start date YYYY-MM-DD')
    parser.add_argument('--end', default=None, help='End date YYYY-MM-DD')
    parser.add_argument('--months', type=int, default=None, help='Lookback months when --start is omitted')
    parser.add_argument('--reality-check', action='store_true', default=False,
                        help='Validate every trade against synthetic quotes')
    parser.add_argument('--no-excel', action='store_true', default=False, help='Skip the Excel workbook')
    parser.add_argument('--compare', default=None, help='Second symbol for `config`')
    parser.add_argument('--config', default='config.yaml', help='Config file path (default: config.yaml)')

    args = parser.parse_args()

    # Register graceful shutdown handlers
    def _shutdown_handler(signum, frame):
        sig_name = signal.Signals(signum).name
        logging.getLogger(__name__).info(
            f"Received shutdown signal ({sig_name}), exiting gracefully..."
        )
        sys.exit(0)

    signal.signal(signal.SIGTERM, _shutdown_handler)
    signal.signal(signal.SIGINT, _shutdown_handler)

    overrides = {}
    if args.start:
        overrides['start_date'] = args.start
    if args.end:
        overrides['end_date'] = args.end
    if args.months:
        overrides['lookback_months'] = args.months
        if not args.start:
            overrides['start_date'] = None
    if args.reality_check:
        overrides['reality_check'] = True
    if args.no_excel:
        overrides['excel'] = False

    try:
        system = create_system(config_file=args.config, overrides=overrides)
        symbols = [s.upper() for s in (system.config.get('symbols') or [DEFAULT_SYMBOL])]
        symbol = (args.symbol or symbols[0]).upper()

        if args.command == 'backtest':
            start_date, end_date = resolve_backtest_dates(system.config)
            system.run_backtest(symbol, start_date, end_date)

        elif args.command == 'portfolio':
            start_date, end_date = resolve_backtest_dates(system.config)
            system.run_portfolio(args.symbols or symbols, start_date, end_date)

        elif args.command == 'resume':
            system.resume_backtest(symbol)

        elif args.command == 'checkpoints':
            system.list_checkpoints(args.symbol)

        elif args.command == 'config':
            system.show_config(symbol, compare=args.compare)

        logger.info("Command completed successfully")

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)

    except Exception as e:
        logger.error(f"Error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == '__main__':
    main()
