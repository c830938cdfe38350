"""
Trading engine: the per-day state machine for the two premium-selling
strategies (put credit spreads and covered calls).

Each call to ``process_trading_day`` is one intraday session:

  1. roll the weekly / monthly premium accumulators on a new week / month
  2. review open positions (settle at expiration, take profits in the
     exit window)
  3. if the weekly goal is still open, try to sell one put credit spread
     and one covered call (entry window only)

Realized P&L is added back into ``current_capital``, which sizes the next
trade when compounding is enabled.
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from engine.models import (
    DailyBar,
    ExitReason,
    MarketRegime,
    Position,
    PositionStatus,
    StrategyConfig,
    StrategyType,
    TradingSession,
    VolRegime,
)
from engine.regime import MarketRegimeClassifier, determine_vol_regime, target_delta
from shared.constants import (
    CALL_STRIKE_FRACTION,
    CONTRACT_MULTIPLIER,
    DEFAULT_SYMBOL,
    MAX_OPEN_POSITIONS_HIGH_VOL,
    PUT_STRIKE_FRACTION,
)
from shared.exceptions import StrategyError
from strategies.pricing import (
    calculate_final_pnl,
    days_until,
    estimate_position_value,
    estimate_premium,
    is_near_earnings,
    next_monthly_expiration,
)

logger = logging.getLogger(__name__)

# Closes kept for market-regime tagging
_PRICE_HISTORY_LIMIT = 250


class TradingEngine:
    """Simulates position lifecycle for one underlying.

    Args:
        config: Strategy parameters.
        validator: Optional ``TradeValidator``; RED trades are skipped and
            the rest are re-priced to a realistic fill and re-sized.
        symbol: Underlying ticker, stamped on every position.
    """

    def __init__(self, config: StrategyConfig, validator=None, symbol: str = DEFAULT_SYMBOL,
                 regime_classifier: Optional[MarketRegimeClassifier] = None):
        self.config = config
        self.validator = validator
        self.symbol = symbol
        self.regime_classifier = regime_classifier or MarketRegimeClassifier()

        self.current_capital = float(config.initial_capital)
        self.weekly_premium = 0.0
        self.monthly_premium = 0.0
        self.rejected_trades = 0

        self._open: List[Position] = []
        self._closed: List[Position] = []
        self._last_session: Optional[datetime] = None
        self._closes: List[Tuple[date, float]] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def process_trading_day(self, when: datetime, bar: DailyBar, vix: float) -> TradingSession:
        """Run one session at timestamp *when* using *bar* and the day's VIX."""
        self._reset_goals_if_needed(when)
        self._record_close(bar)

        regime = determine_vol_regime(vix, self.config.vix_low_threshold, self.config.vix_high_threshold)
        closed = self.review_positions(when, bar, vix)

        opened: List[Position] = []
        if not self.goals_met() and self.should_trade_today(when, regime):
            candidates = []
            if self.config.enable_put_credit_spreads:
                candidates.append(self.create_put_credit_spread(when, bar, vix, regime))
            if self.config.enable_covered_calls:
                candidates.append(self.create_covered_call(when, bar, vix, regime))

            for position in candidates:
                if position is None:
                    continue
                self._open.append(position)
                opened.append(position)
                self.weekly_premium += position.premium_dollars
                self.monthly_premium += position.premium_dollars
                logger.debug(
                    "Opened %s: %d x %.2f strike, $%.2f premium",
                    position.id, position.contracts, position.strike_price, position.premium_collected,
                )

        return TradingSession(
            date=when,
            positions=list(self._open),
            daily_premium=sum(p.premium_dollars for p in opened),
            weekly_premium=self.weekly_premium,
            monthly_premium=self.monthly_premium,
            goals_met=self.goals_met(),
            positions_opened=len(opened),
            positions_closed=len(closed),
            total_pnl=self.get_total_pnl(),
            current_capital=self.current_capital,
            vol_regime=regime,
        )

    def goals_met(self) -> bool:
        return self.weekly_premium >= self.config.weekly_premium_goal

    def should_trade_today(self, when: datetime, regime: VolRegime) -> bool:
        """Weekdays only; no new risk in a high-vol regime once more than 3 positions are open."""
        if when.weekday() >= 5:
            return False
        if regime == VolRegime.HIGH and len(self._open) > MAX_OPEN_POSITIONS_HIGH_VOL:
            return False
        return True

    def in_entry_window(self, when: datetime) -> bool:
        start, end = self.config.entry_window
        return start <= when.time() <= end

    def in_exit_window(self, when: datetime) -> bool:
        start, end = self.config.exit_window
        return start <= when.time() <= end

    # ------------------------------------------------------------------
    # Position creation
    # ------------------------------------------------------------------

    def create_put_credit_spread(self, when: datetime, bar: DailyBar, vix: float,
                                 regime: VolRegime) -> Optional[Position]:
        return self._create_position(StrategyType.PUT_CREDIT_SPREAD, when, bar, vix, regime)

    def create_covered_call(self, when: datetime, bar: DailyBar, vix: float,
                            regime: VolRegime) -> Optional[Position]:
        return self._create_position(StrategyType.COVERED_CALL, when, bar, vix, regime)

    def calculate_contracts(self, strike: float) -> int:
        """Contracts for a new position, clamped to [min, max] contract size."""
        if strike <= 0:
            raise StrategyError(f"Cannot size a position with strike {strike}")
        cfg = self.config
        capital = self.current_capital if cfg.enable_compounding else cfg.initial_capital
        raw = int(capital * cfg.capital_allocation_per_trade * cfg.aggressiveness_multiplier
                  / (strike * CONTRACT_MULTIPLIER))
        return max(cfg.min_contract_size, min(cfg.max_contract_size, raw))

    def _create_position(self, strategy: StrategyType, when: datetime, bar: DailyBar,
                         vix: float, regime: VolRegime) -> Optional[Position]:
        if not self.in_entry_window(when):
            return None

        expiration = next_monthly_expiration(when, self.config.preferred_dte)
        dte = days_until(expiration, when)
        if dte < self.config.min_dte or dte > self.config.max_dte:
            logger.debug("Skipping %s on %s: %d DTE outside [%d, %d]",
                         strategy.value, when.date(), dte, self.config.min_dte, self.config.max_dte)
            return None

        close = bar.close
        if strategy == StrategyType.PUT_CREDIT_SPREAD:
            strike = round(close * PUT_STRIKE_FRACTION, 2)
            delta = target_delta(strategy, regime)
            label = "put credit spread"
        else:
            strike = round(close * CALL_STRIKE_FRACTION, 2)
            delta = target_delta(strategy, regime, near_earnings=is_near_earnings(when))
            label = "covered call"

        premium = estimate_premium(strategy, close, strike, dte, vix)
        contracts = self.calculate_contracts(strike)
        # Cash-secured collateral for the put, the shares themselves for the call
        collateral = strike if strategy == StrategyType.PUT_CREDIT_SPREAD else close

        position = Position(
            id=f"{strategy.code}_{when:%Y%m%d}_{strike:.2f}",
            symbol=self.symbol,
            strategy=strategy,
            entry_date=when,
            expiration_date=expiration,
            strike_price=strike,
            entry_price=close,
            premium_collected=premium,
            max_profit=premium,
            delta=delta,
            days_to_expiration=dte,
            vix_level=vix,
            vol_regime=regime,
            contracts=contracts,
            capital_allocated=collateral * contracts * CONTRACT_MULTIPLIER,
            market_regime=self._current_market_regime(vix),
            notes=f"{delta * 100:.0f} delta {label}, {regime.value} vol regime",
        )

        if self.validator is not None:
            validation = self.validator.validate(position)
            if not validation.can_execute:
                self.rejected_trades += 1
                return None
            position.premium_collected = validation.adjusted_premium
            position.max_profit = validation.adjusted_premium
            position.contracts = validation.adjusted_contracts
            position.capital_allocated = collateral * position.contracts * CONTRACT_MULTIPLIER
            position.notes += f" | reality {validation.score.level.value} {validation.score.total:.0f}"

        return position

    # ------------------------------------------------------------------
    # Position review
    # ------------------------------------------------------------------

    def review_positions(self, when: datetime, bar: DailyBar, vix: float) -> List[Position]:
        """Close whatever should close this session; returns the closed positions.

        Settlement at expiration takes priority and happens in any session.
        Profit-taking only happens inside the exit window: at or above the
        max threshold first, then the early threshold.
        """
        closed = []
        in_window = self.in_exit_window(when)

        for position in list(self._open):
            if days_until(position.expiration_date, when) <= 0:
                self._settle_at_expiration(position, when, bar.close)
                closed.append(position)
                continue

            if not in_window:
                continue

            mark = estimate_position_value(position, bar.close, when, vix)
            per_share = position.premium_collected - mark
            profit_pct = per_share / position.max_profit if position.max_profit > 0 else 0.0

            if profit_pct >= self.config.max_close_threshold:
                self._close(position, when, bar.close, per_share, PositionStatus.CLOSED,
                            ExitReason.MAX_THRESHOLD, " | Max threshold close")
            elif profit_pct >= self.config.early_close_threshold:
                self._close(position, when, bar.close, per_share, PositionStatus.CLOSED,
                            ExitReason.PROFIT_TARGET, f" | Closed at {profit_pct:.0%} profit")
            else:
                continue
            closed.append(position)

        return closed

    def _settle_at_expiration(self, position: Position, when: datetime, price: float):
        per_share = calculate_final_pnl(position, price)
        if position.strategy == StrategyType.COVERED_CALL and price > position.strike_price:
            self._close(position, when, price, per_share, PositionStatus.ASSIGNED,
                        ExitReason.ASSIGNMENT, " | Assigned")
        else:
            self._close(position, when, price, per_share, PositionStatus.EXPIRED,
                        ExitReason.EXPIRATION, " | Expired")

    def _close(self, position: Position, when: datetime, price: float, per_share_pnl: float,
               status: PositionStatus, reason: ExitReason, note: str):
        pnl = per_share_pnl * position.contracts * CONTRACT_MULTIPLIER
        position.status = status
        position.exit_reason = reason
        position.exit_date = when
        position.exit_price = price
        position.profit_loss = pnl
        position.notes += note

        self._open.remove(position)
        self._closed.append(position)
        self.current_capital += pnl

        logger.debug("Closed %s (%s): P&L $%.2f, capital $%.2f",
                     position.id, reason.value, pnl, self.current_capital)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get_open_positions(self) -> List[Position]:
        return list(self._open)

    def get_closed_positions(self) -> List[Position]:
        return list(self._closed)

    def get_all_positions(self) -> List[Position]:
        return self._open + self._closed

    def get_total_pnl(self) -> float:
        return sum(p.profit_loss or 0.0 for p in self._closed)

    def get_current_capital(self) -> float:
        return self.current_capital

    def mark_to_market(self, when: datetime, price: float, vix: float) -> float:
        """Capital plus the unrealized P&L of open positions at *price*."""
        unrealized = 0.0
        for position in self._open:
            mark = estimate_position_value(position, price, when, vix)
            unrealized += (position.premium_collected - mark) * position.contracts * CONTRACT_MULTIPLIER
        return self.current_capital + unrealized

    # ------------------------------------------------------------------
    # Checkpoint state
    # ------------------------------------------------------------------

    def export_state(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "current_capital": self.current_capital,
            "weekly_premium": self.weekly_premium,
            "monthly_premium": self.monthly_premium,
            "rejected_trades": self.rejected_trades,
            "last_session": self._last_session.isoformat() if self._last_session else None,
            "open_positions": [p.to_dict() for p in self._open],
            "closed_positions": [p.to_dict() for p in self._closed],
            "closes": [[d.isoformat(), c] for d, c in self._closes],
        }

    def restore_state(self, state: Dict[str, Any]):
        try:
            self.current_capital = float(state["current_capital"])
            self.weekly_premium = float(state.get("weekly_premium", 0.0))
            self.monthly_premium = float(state.get("monthly_premium", 0.0))
            self.rejected_trades = int(state.get("rejected_trades", 0))
            last = state.get("last_session")
            self._last_session = datetime.fromisoformat(last) if last else None
            self._open = [Position.from_dict(p) for p in state.get("open_positions", [])]
            self._closed = [Position.from_dict(p) for p in state.get("closed_positions", [])]
            self._closes = [(date.fromisoformat(d), float(c)) for d, c in state.get("closes", [])]
        except (KeyError, TypeError, ValueError) as e:
            raise StrategyError(f"Invalid engine state: {e}") from e

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _reset_goals_if_needed(self, when: datetime):
        """Zero the weekly accumulator on a new ISO week and the monthly one on a new month."""
        last = self._last_session
        self._last_session = when
        if last is None:
            return
        if when.isocalendar()[:2] != last.isocalendar()[:2]:
            self.weekly_premium = 0.0
        if (when.year, when.month) != (last.year, last.month):
            self.monthly_premium = 0.0

    def _record_close(self, bar: DailyBar):
        day = bar.date.date() if isinstance(bar.date, datetime) else bar.date
        if self._closes and self._closes[-1][0] == day:
            self._closes[-1] = (day, bar.close)
            return
        self._closes.append((day, bar.close))
        if len(self._closes) > _PRICE_HISTORY_LIMIT:
            del self._closes[0]

    def _current_market_regime(self, vix: float) -> MarketRegime:
        if not self._closes:
            return MarketRegime.SIDEWAYS
        closes = pd.Series([c for _, c in self._closes])
        return self.regime_classifier.classify(vix, closes)
