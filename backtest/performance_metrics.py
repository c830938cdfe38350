"""
Performance Metrics
Write backtest reports: text summary, JSON results, CSV ledgers and an
Excel workbook.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd
from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter

from shared.constants import OUTPUT_DIR

logger = logging.getLogger(__name__)

LEDGER_COLUMNS = {
    'trade_id': 'TradeID',
    'strategy': 'Strategy',
    'entry_date': 'EntryDate',
    'exit_date': 'ExitDate',
    'dte': 'DTE',
    'delta': 'Delta',
    'strike_price': 'StrikePrice',
    'entry_price': 'EntryPrice',
    'exit_price': 'ExitPrice',
    'contracts': 'Contracts',
    'premium_collected': 'PremiumCollected',
    'profit_loss': 'ProfitLoss',
    'profit_pct': 'ProfitPct',
    'vix_level': 'VixLevel',
    'vix_regime': 'VixRegime',
    'market_regime': 'MarketRegime',
    'status': 'Status',
    'exit_reason': 'ExitReason',
    'notes': 'Notes',
}

SESSION_COLUMNS = {
    'date': 'Date',
    'time': 'Time',
    'positions_opened': 'Positions Opened',
    'positions_closed': 'Positions Closed',
    'open_positions': 'Open Positions',
    'daily_premium': 'Daily Premium',
    'weekly_premium': 'Weekly Premium',
    'monthly_premium': 'Monthly Premium',
    'total_pnl': 'Total P&L',
    'current_capital': 'Capital',
    'goals_met': 'Goals Met',
    'vol_regime': 'Vol Regime',
}


class PerformanceMetrics:
    """
    Generate and persist backtest reports.
    """

    def __init__(self, config: Dict):
        """
        Initialize the report writer.

        Args:
            config: Configuration dictionary; ``backtest.report_dir`` sets
                the output directory.
        """
        self.config = config
        backtest_config = config.get('backtest') or {}
        self.report_dir = Path(backtest_config.get('report_dir') or OUTPUT_DIR)
        self.excel_enabled = backtest_config.get('excel', True)

        self.header_font = Font(bold=True, color="FFFFFF")
        self.header_fill = PatternFill(start_color="1F4E79", end_color="1F4E79", fill_type="solid")
        self.money_positive = Font(color="006400")
        self.money_negative = Font(color="8B0000")

        logger.info("PerformanceMetrics initialized")

    def generate_report(self, backtest_results: Dict) -> str:
        """
        Write every report for one backtest.

        Args:
            backtest_results: Results from Backtester.run_backtest

        Returns:
            Path to the generated text report
        """
        if not backtest_results:
            logger.warning("No backtest results to report")
            return ""

        self.report_dir.mkdir(parents=True, exist_ok=True)
        timestamp = self._timestamp()
        symbol = backtest_results.get('symbol', 'BACKTEST').lower()

        text_report = self._generate_text_report(backtest_results)
        report_file = self.report_dir / f"{symbol}_backtest_report_{timestamp}.txt"
        try:
            with open(report_file, 'w') as f:
                f.write(text_report)
            logger.info(f"Report generated: {report_file}")
        except OSError as e:
            logger.warning(f"Failed to write text report to {report_file}: {e}")

        json_file = self.report_dir / f"{symbol}_backtest_results_{timestamp}.json"
        try:
            with open(json_file, 'w') as f:
                json.dump(backtest_results, f, indent=2, default=str)
        except OSError as e:
            logger.warning(f"Failed to write JSON results to {json_file}: {e}")

        self.write_csv_reports(backtest_results, self.report_dir, timestamp)
        if self.excel_enabled:
            try:
                self.write_excel(backtest_results, self.report_dir / f"{symbol}_backtest_{timestamp}.xlsx")
            except OSError as e:
                logger.warning(f"Failed to write Excel workbook: {e}")

        return str(report_file)

    # ------------------------------------------------------------------
    # CSV
    # ------------------------------------------------------------------

    def write_csv_reports(self, results: Dict, out_dir: Path,
                          timestamp: Optional[str] = None) -> Dict[str, Path]:
        """
        Write the CSV ledgers to *out_dir*.

        Each file is written twice: ``<timestamp>_<name>.csv`` for the run
        archive and ``<name>.csv`` as the latest copy.

        Returns:
            Mapping of report name to the timestamped path.
        """
        out_dir = Path(out_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        timestamp = timestamp or self._timestamp()

        frames = {
            'daily_prices': self._daily_prices_frame(results),
            'backtest_summary': self._summary_frame(results),
            'trades_ledger': self._ledger_frame(results.get('trades', [])),
            'monthly_performance': self._monthly_frame(results.get('monthly_performance', [])),
            'exceptions': self._exceptions_frame(results.get('exceptions', [])),
        }

        written = {}
        for name, frame in frames.items():
            path = out_dir / f"{timestamp}_{name}.csv"
            frame.to_csv(path, index=False)
            frame.to_csv(out_dir / f"{name}.csv", index=False)
            written[name] = path

        logger.info(f"CSV reports written to {out_dir} ({len(written)} files)")
        return written

    @staticmethod
    def _daily_prices_frame(results: Dict) -> pd.DataFrame:
        df = pd.DataFrame(results.get('daily_prices', []),
                          columns=['date', 'open', 'high', 'low', 'close', 'volume'])
        df.columns = ['Date', 'Open', 'High', 'Low', 'Close', 'Volume']
        return df

    @staticmethod
    def _summary_frame(results: Dict) -> pd.DataFrame:
        breakdown = results.get('strategy_breakdown') or {}
        rows = []
        for key, label, note in (
            ('put_credit_spread', 'PutCreditSpreads', 'Short puts, delta by VIX regime'),
            ('covered_call', 'CoveredCalls', 'Short calls, delta halved near earnings'),
            ('total', 'TOTAL', f"Return {results.get('return_pct', 0):.2f}%"),
        ):
            stats = breakdown.get(key, {})
            rows.append({
                'Component': label,
                'PnL': stats.get('pnl', 0.0),
                'Trades': stats.get('trades', 0),
                'WinRate': stats.get('win_rate', 0.0),
                'AvgProfit': stats.get('avg_pnl', 0.0),
                'Notes': note,
            })
        return pd.DataFrame(rows)

    @staticmethod
    def _ledger_frame(trades: List[Dict]) -> pd.DataFrame:
        df = pd.DataFrame(trades, columns=list(LEDGER_COLUMNS))
        return df.rename(columns=LEDGER_COLUMNS)

    @staticmethod
    def _monthly_frame(monthly: List[Dict]) -> pd.DataFrame:
        df = pd.DataFrame(monthly, columns=['month', 'premium_collected', 'trading_days',
                                            'goals_met_days', 'goals_met_pct'])
        df.columns = ['Month', 'PremiumCollected', 'TradingDays', 'GoalsMetDays', 'GoalsMetPct']
        return df

    @staticmethod
    def _exceptions_frame(exceptions: List[Dict]) -> pd.DataFrame:
        df = pd.DataFrame(exceptions, columns=['trade_id', 'issue', 'resolution'])
        df.columns = ['TradeID', 'Issue', 'Resolution']
        return df

    # ------------------------------------------------------------------
    # Excel
    # ------------------------------------------------------------------

    def write_excel(self, results: Dict, path: Path) -> Path:
        """
        Write a workbook with Summary, Trades, Daily Performance and
        Positions sheets.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        wb = Workbook()

        # Summary
        ws = wb.active
        ws.title = "Summary"
        ws.cell(row=1, column=1, value=f"{results.get('symbol', '')} Backtest Summary").font = Font(bold=True, size=14)
        self._write_header_row(ws, ["Metric", "Value"], row=3)
        for row, (label, value) in enumerate(self._summary_rows(results), start=4):
            ws.cell(row=row, column=1, value=label)
            ws.cell(row=row, column=2, value=value)
        self._auto_adjust_columns(ws)

        # Trades: one row per trading session
        ws = wb.create_sheet("Trades")
        self._write_header_row(ws, list(SESSION_COLUMNS.values()))
        for row, session in enumerate(results.get('sessions', []), start=2):
            for col, key in enumerate(SESSION_COLUMNS, start=1):
                value = session.get(key)
                if key == 'goals_met':
                    value = "Yes" if value else "No"
                ws.cell(row=row, column=col, value=value)
        self._auto_adjust_columns(ws)

        # Daily performance
        ws = wb.create_sheet("Daily Performance")
        headers = ["Date", "Daily Premium", "Cumulative P&L", "Positions Opened", "Positions Closed", "Capital"]
        self._write_header_row(ws, headers)
        for row, day in enumerate(self._daily_rows(results.get('sessions', [])), start=2):
            for col, value in enumerate(day, start=1):
                cell = ws.cell(row=row, column=col, value=value)
                if col == 3:
                    cell.font = self.money_positive if value >= 0 else self.money_negative
        self._auto_adjust_columns(ws)

        # Positions ledger
        ws = wb.create_sheet("Positions")
        self._write_header_row(ws, list(LEDGER_COLUMNS.values()))
        for row, trade in enumerate(results.get('trades', []), start=2):
            for col, key in enumerate(LEDGER_COLUMNS, start=1):
                cell = ws.cell(row=row, column=col, value=trade.get(key))
                if key == 'profit_loss':
                    cell.font = self.money_positive if trade.get(key, 0) >= 0 else self.money_negative
        self._auto_adjust_columns(ws)

        wb.save(path)
        logger.info(f"Excel report written: {path}")
        return path

    @staticmethod
    def _summary_rows(results: Dict) -> List[tuple]:
        rows = [
            ("Symbol", results.get('symbol', '')),
            ("Period", f"{results.get('start_date', '')} to {results.get('end_date', '')}"),
            ("Starting Capital", results.get('starting_capital', 0)),
            ("Ending Capital", results.get('ending_capital', 0)),
            ("Total P&L", results.get('total_pnl', 0)),
            ("Return %", results.get('return_pct', 0)),
            ("Total Premium", results.get('total_premium', 0)),
            ("Closed Trades", results.get('total_trades', 0)),
            ("Win Rate %", results.get('win_rate', 0)),
            ("Profit Factor", results.get('profit_factor', 0)),
            ("Max Drawdown %", results.get('max_drawdown', 0)),
            ("Sharpe Ratio", results.get('sharpe_ratio', 0)),
            ("Assignments", results.get('assignments', 0)),
            ("Open Positions", results.get('open_positions', 0)),
        ]
        if results.get('rejected_trades'):
            rows.append(("Rejected Trades", results['rejected_trades']))
        return rows

    @staticmethod
    def _daily_rows(sessions: List[Dict]) -> List[list]:
        """Aggregate the intraday sessions to one row per date."""
        if not sessions:
            return []
        df = pd.DataFrame(sessions)
        daily = df.groupby('date', sort=True).agg(
            daily_premium=('daily_premium', 'sum'),
            total_pnl=('total_pnl', 'last'),
            positions_opened=('positions_opened', 'sum'),
            positions_closed=('positions_closed', 'sum'),
            current_capital=('current_capital', 'last'),
        ).reset_index()
        return [
            [r.date, round(r.daily_premium, 2), round(r.total_pnl, 2),
             int(r.positions_opened), int(r.positions_closed), round(r.current_capital, 2)]
            for r in daily.itertuples(index=False)
        ]

    def _write_header_row(self, ws, headers: List[str], row: int = 1):
        """Write a styled header row"""
        for col, header in enumerate(headers, 1):
            cell = ws.cell(row=row, column=col, value=header)
            cell.font = self.header_font
            cell.fill = self.header_fill
            cell.alignment = Alignment(horizontal='center')

    @staticmethod
    def _auto_adjust_columns(ws):
        """Auto-adjust column widths"""
        for column in ws.columns:
            max_length = max((len(str(cell.value)) for cell in column if cell.value is not None), default=0)
            column_letter = get_column_letter(column[0].column)
            ws.column_dimensions[column_letter].width = min(max_length + 2, 50)

    # ------------------------------------------------------------------
    # Text
    # ------------------------------------------------------------------

    def _generate_text_report(self, results: Dict) -> str:
        """
        Generate formatted text report.
        """
        lines = []
        lines.append("=" * 80)
        lines.append(f"{results.get('symbol', '')} PREMIUM SELLING STRATEGY - BACKTEST REPORT")
        lines.append(f"Period: {results.get('start_date', '')} to {results.get('end_date', '')}")
        lines.append("=" * 80)
        lines.append("")

        lines.append("SUMMARY")
        lines.append("-" * 80)
        lines.append(f"Total Trades: {results['total_trades']}")
        lines.append(f"Winning Trades: {results['winning_trades']}")
        lines.append(f"Losing Trades: {results['losing_trades']}")
        lines.append(f"Win Rate: {results['win_rate']:.2f}%")
        lines.append(f"Assignments: {results.get('assignments', 0)}")
        lines.append(f"Open Positions: {results.get('open_positions', 0)}")
        lines.append("")

        lines.append("RETURNS")
        lines.append("-" * 80)
        lines.append(f"Starting Capital: ${results['starting_capital']:,.2f}")
        lines.append(f"Ending Capital: ${results['ending_capital']:,.2f}")
        lines.append(f"Total P&L: ${results['total_pnl']:,.2f}")
        lines.append(f"Total Premium Collected: ${results.get('total_premium', 0):,.2f}")
        lines.append(f"Return: {results['return_pct']:.2f}%")
        lines.append("")

        lines.append("TRADE STATISTICS")
        lines.append("-" * 80)
        lines.append(f"Average Win: ${results['avg_win']:,.2f}")
        lines.append(f"Average Loss: ${results['avg_loss']:,.2f}")
        lines.append(f"Profit Factor: {results['profit_factor']:.2f}")
        lines.append("")

        lines.append("STRATEGY BREAKDOWN")
        lines.append("-" * 80)
        for name, stats in (results.get('strategy_breakdown') or {}).items():
            lines.append(
                f"{name:<20} trades {stats['trades']:>4}  P&L ${stats['pnl']:>12,.2f}  "
                f"win {stats['win_rate']:>6.2f}%"
            )
        lines.append("")

        lines.append("RISK METRICS")
        lines.append("-" * 80)
        lines.append(f"Max Drawdown: {results['max_drawdown']:.2f}%")
        lines.append(f"Sharpe Ratio: {results['sharpe_ratio']:.2f}")
        lines.append("")

        monthly = results.get('monthly_performance') or []
        if monthly:
            lines.append("MONTHLY PERFORMANCE")
            lines.append("-" * 80)
            for m in monthly:
                lines.append(
                    f"{m['month']}  premium ${m['premium_collected']:>10,.2f}  "
                    f"trading days {m['trading_days']:>3}  goals met {m['goals_met_pct']:.1f}%"
                )
            lines.append("")

        regime = results.get('regime_summary') or {}
        if regime.get('distribution'):
            lines.append("MARKET REGIMES")
            lines.append("-" * 80)
            for name, stats in regime['distribution'].items():
                lines.append(f"{name:<10} {stats['days']:>4} days  {stats['pct']:.1f}%")
            lines.append("")

        audit = results.get('reality_audit') or {}
        if audit.get('total_trades_analyzed'):
            lines.append("REALITY CHECK")
            lines.append("-" * 80)
            lines.append(f"Trades Analyzed: {audit['total_trades_analyzed']}")
            lines.append(f"Execution Rate: {audit['execution_rate']:.1%}")
            lines.append(f"Average Reality Score: {audit['average_reality_score']:.1f}")
            lines.append(f"Expected Slippage: ${audit['total_expected_slippage']:,.2f}")
            lines.append("")

        if results['total_pnl'] > 0:
            lines.append("PROFITABLE STRATEGY")
        else:
            lines.append("Strategy shows losses")

        lines.append("")
        lines.append("=" * 80)

        return "\n".join(lines)

    def _timestamp(self) -> str:
        """
        Generate timestamp string for filenames.
        """
        return datetime.now().strftime("%Y%m%d_%H%M%S")

    def print_summary(self, results: Dict):
        """
        Print summary to console.
        """
        print("\n" + "=" * 60)
        print(f"BACKTEST SUMMARY - {results.get('symbol', '')}")
        print("=" * 60)
        print(f"Total Trades: {results['total_trades']}")
        print(f"Win Rate: {results['win_rate']:.2f}%")
        print(f"Total Premium: ${results.get('total_premium', 0):,.2f}")
        print(f"Total P&L: ${results['total_pnl']:,.2f}")
        print(f"Return: {results['return_pct']:.2f}%")
        print(f"Max Drawdown: {results['max_drawdown']:.2f}%")
        print(f"Sharpe Ratio: {results['sharpe_ratio']:.2f}")
        audit = results.get('reality_audit') or {}
        if audit.get('total_trades_analyzed'):
            print(f"Trades Analyzed: {audit['total_trades_analyzed']}")
            print(f"Execution Rate: {audit['execution_rate']:.1%}")
            print(f"Average Reality Score: {audit['average_reality_score']:.1f}")
            print(f"Expected Slippage: ${audit['total_expected_slippage']:,.2f}")
        print("=" * 60 + "\n")
