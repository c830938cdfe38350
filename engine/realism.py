"""
Execution realism: liquidity gates, a conservative sell-side slippage ladder,
hard pass/fail reality checks and a 0-100 trade reality score.

The engine accepts a ``TradeValidator`` and will skip RED trades and
re-price / re-size the rest. Backtests have no real option chain, so
``SyntheticQuoteProvider`` builds a plausible bid/ask around the heuristic
premium.
"""

import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple

import numpy as np

from engine.models import Position, StrategyType
from shared.constants import (
    CONTRACT_MULTIPLIER,
    EARNINGS_SIZE_FACTOR,
    MAX_QUOTE_AGE_SECONDS,
    MAX_SPREAD_PCT,
    MIN_OPEN_INTEREST,
    MIN_VENUES,
    VIX_HIGH_THRESHOLD,
)
from strategies.pricing import estimate_premium

logger = logging.getLogger(__name__)


# US market holidays 2024-2025
MARKET_HOLIDAYS: Set[date] = {
    date(2024, 1, 1), date(2024, 1, 15), date(2024, 2, 19), date(2024, 3, 29),
    date(2024, 5, 27), date(2024, 6, 19), date(2024, 7, 4), date(2024, 9, 2),
    date(2024, 11, 28), date(2024, 12, 25),
    date(2025, 1, 1), date(2025, 1, 20), date(2025, 2, 17), date(2025, 4, 18),
    date(2025, 5, 26), date(2025, 6, 19), date(2025, 7, 4), date(2025, 9, 1),
    date(2025, 11, 27), date(2025, 12, 25),
}

# SOFI reported / projected earnings dates
SOFI_EARNINGS_DATES: List[date] = [
    date(2024, 1, 29), date(2024, 4, 29), date(2024, 7, 30), date(2024, 10, 29),
    date(2025, 1, 28), date(2025, 4, 28), date(2025, 7, 29), date(2025, 10, 28),
]


def earnings_dates_for(symbol: str, configured: Optional[Iterable] = None) -> List[date]:
    """Earnings dates for *symbol*: configured ones, the built-in SOFI calendar, or none."""
    if configured:
        parsed = []
        for d in configured:
            if isinstance(d, datetime):
                d = d.date()
            elif not isinstance(d, date):
                d = date.fromisoformat(str(d))
            parsed.append(d)
        return sorted(parsed)
    return list(SOFI_EARNINGS_DATES) if symbol.upper() == "SOFI" else []


# ---------------------------------------------------------------------------
# Liquidity
# ---------------------------------------------------------------------------

def _quote_valid(bid: float, ask: float) -> bool:
    return bid > 0 and ask > 0 and ask > bid


def spread_percentage(bid: float, ask: float) -> float:
    """Bid/ask width as a fraction of mid; ``inf`` for an invalid quote."""
    if not _quote_valid(bid, ask):
        return math.inf
    mid = (bid + ask) / 2.0
    return (ask - bid) / mid


def liquidity_ok(bid: float, ask: float, max_spread_pct: float = MAX_SPREAD_PCT) -> bool:
    """True when the quote is valid and no wider than *max_spread_pct* of mid."""
    return spread_percentage(bid, ask) <= max_spread_pct


# ---------------------------------------------------------------------------
# Slippage
# ---------------------------------------------------------------------------

def sell_ladder(bid: float, ask: float, tick: float = 0.01) -> List[float]:
    """Non-increasing limit prices for a sell: mid, mid - 1 tick, mid - 10% of width.

    Each rung is floored at the rung below it and the last at the bid.
    Returns an empty list for a non-positive or crossed quote.
    """
    if bid <= 0 or ask <= 0 or ask < bid:
        return []
    mid = (bid + ask) / 2.0
    width = ask - bid
    step3 = max(bid, mid - 0.10 * width)
    step2 = max(step3, mid - tick)
    step1 = max(step2, mid)
    return [step1, step2, step3]


def apply_slippage(bid: float, ask: float, attempt: int = 1) -> float:
    """Limit price for the *attempt*-th try (1-based); the bid once the ladder is exhausted."""
    ladder = sell_ladder(bid, ask)
    if attempt <= 0 or attempt > len(ladder):
        return bid
    return ladder[attempt - 1]


def realistic_fill_price(bid: float, ask: float, requested: float) -> float:
    """Best ladder price at or below *requested*, else the bid."""
    for price in sell_ladder(bid, ask):
        if requested >= price:
            return price
    return bid


# ---------------------------------------------------------------------------
# Hard reality checks
# ---------------------------------------------------------------------------

@dataclass
class RealityCheckResult:
    ok: bool
    reasons: List[str] = field(default_factory=list)


def reality_check(
    *,
    bid: float,
    ask: float,
    open_interest: int,
    quote_age_sec: float,
    venue_count: int,
    delta: float,
    delta_band: Tuple[float, float],
    vix: float,
    scale_used: float,
    scale_expected_high: float,
    earnings_days: int,
    size: int,
    baseline_size: int,
    daily_loss_pct: float,
    daily_stop_pct: float,
    time_ok: bool,
    nbbo_sane: bool,
    max_spread_pct: float = MAX_SPREAD_PCT,
    min_open_interest: int = MIN_OPEN_INTEREST,
    max_quote_age_sec: float = MAX_QUOTE_AGE_SECONDS,
    min_venues: int = MIN_VENUES,
) -> RealityCheckResult:
    """Run every pass/fail execution assertion and collect failure codes."""
    reasons = []

    if not nbbo_sane:
        reasons.append("NBBO_CROSSED_OR_LOCKED")
    if not liquidity_ok(bid, ask, max_spread_pct):
        reasons.append("SPREAD_TOO_WIDE")
    if open_interest < min_open_interest:
        reasons.append("OPEN_INTEREST_TOO_LOW")
    if quote_age_sec > max_quote_age_sec:
        reasons.append("QUOTE_TOO_STALE")
    if venue_count < min_venues:
        reasons.append("INSUFFICIENT_VENUES")

    delta_min, delta_max = delta_band
    if not delta_min <= delta <= delta_max:
        reasons.append("DELTA_OUT_OF_BAND")

    # Within two days of earnings the size must be cut by at least 30%
    if earnings_days <= 2 and size > max(1, round(baseline_size * EARNINGS_SIZE_FACTOR)):
        reasons.append("EARNINGS_SIZE_NOT_REDUCED")

    if vix > VIX_HIGH_THRESHOLD and scale_used > scale_expected_high + 1e-9:
        reasons.append("VIX_SCALING_NOT_INVERSE")

    if daily_loss_pct <= -abs(daily_stop_pct) + 1e-12:
        reasons.append("DAILY_KILL_SWITCH_BREACHED")

    if not time_ok:
        reasons.append("OUTSIDE_EXECUTION_WINDOW")

    return RealityCheckResult(ok=not reasons, reasons=reasons)


# ---------------------------------------------------------------------------
# Reality scoring
# ---------------------------------------------------------------------------

class RealityLevel(str, Enum):
    GREEN = "GREEN"    # >= 80: highly executable
    YELLOW = "YELLOW"  # 60..80: possible but challenging
    RED = "RED"        # < 60: would not have filled


@dataclass
class OptionQuote:
    """Top-of-book snapshot for one option contract."""
    strike: float
    option_type: str  # 'P' or 'C'
    bid: float
    ask: float
    volume: int = 0
    open_interest: int = 0
    implied_volatility: float = 0.0

    @property
    def mid(self) -> float:
        return (self.bid + self.ask) / 2.0

    @property
    def spread_width(self) -> float:
        return self.ask - self.bid


@dataclass
class RealityScore:
    total: float
    level: RealityLevel
    liquidity: float = 0.0
    premium: float = 0.0
    market: float = 0.0
    execution: float = 0.0
    issues: List[str] = field(default_factory=list)
    adjustments: List[str] = field(default_factory=list)


@dataclass
class TradeValidation:
    position: Position
    can_execute: bool
    score: RealityScore
    adjusted_premium: float
    adjusted_contracts: int
    quote: Optional[OptionQuote] = None
    expected_slippage: float = 0.0
    notes: str = ""


def reality_level(total: float) -> RealityLevel:
    if total >= 80:
        return RealityLevel.GREEN
    if total >= 60:
        return RealityLevel.YELLOW
    return RealityLevel.RED


class SyntheticQuoteProvider:
    """Generates a bid/ask around the heuristic premium for backtests.

    Spread width, volume and open interest are drawn from a seeded
    generator so runs are reproducible.
    """

    def __init__(
        self,
        spread_pct_range: Tuple[float, float] = (0.03, 0.15),
        volume_range: Tuple[int, int] = (50, 2500),
        open_interest_range: Tuple[int, int] = (200, 8000),
        seed: int = 42,
    ):
        self.spread_pct_range = spread_pct_range
        self.volume_range = volume_range
        self.open_interest_range = open_interest_range
        self._rng = np.random.default_rng(seed)

    def get_state(self) -> Dict:
        return self._rng.bit_generator.state

    def set_state(self, state: Dict):
        self._rng.bit_generator.state = state

    def get_quote(self, position: Position) -> Optional[OptionQuote]:
        mid = estimate_premium(
            position.strategy,
            position.entry_price,
            position.strike_price,
            position.days_to_expiration,
            position.vix_level,
        )
        spread_pct = float(self._rng.uniform(*self.spread_pct_range))
        half = mid * spread_pct / 2.0
        return OptionQuote(
            strike=position.strike_price,
            option_type="P" if position.strategy == StrategyType.PUT_CREDIT_SPREAD else "C",
            bid=round(mid - half, 2),
            ask=round(mid + half, 2),
            volume=int(self._rng.integers(*self.volume_range)),
            open_interest=int(self._rng.integers(*self.open_interest_range)),
            implied_volatility=position.vix_level / 100.0,
        )


class TradeValidator:
    """Scores proposed trades against (real or synthetic) market quotes.

    Four components worth 25% each start at 100 and lose points:

      liquidity   -30 volume < 100, -20 OI < 500, -25 spread > $0.10
      premium     -40 if >20% away from mid, -20 if >10%
      market      -10 VIX > 30, -15 within 10 days of earnings
      execution   -20 above 20 contracts, -10 outside the optimal entry window

    Args:
        quote_provider: Object with ``get_quote(position) -> Optional[OptionQuote]``.
        holidays: Market holidays (no trades).
        earnings_dates: Known earnings dates for the underlying; none by default.

    Sells fill at the bid; the distance from mid is booked as expected slippage.
    """

    def __init__(
        self,
        quote_provider,
        holidays: Optional[Iterable[date]] = None,
        earnings_dates: Optional[Iterable[date]] = None,
        min_volume: int = 100,
        min_open_interest: int = 500,
        max_spread: float = 0.10,
        optimal_window: Tuple[time, time] = (time(10, 10), time(10, 30)),
    ):
        self.quote_provider = quote_provider
        self.holidays = set(holidays) if holidays is not None else set(MARKET_HOLIDAYS)
        self.earnings_dates = list(earnings_dates or [])
        self.min_volume = min_volume
        self.min_open_interest = min_open_interest
        self.max_spread = max_spread
        self.optimal_window = optimal_window
        self.audit = RealityAuditReport()

    def is_market_open(self, when: datetime) -> bool:
        return when.weekday() < 5 and when.date() not in self.holidays

    def is_near_earnings(self, when: datetime, days: int) -> bool:
        day = when.date() if isinstance(when, datetime) else when
        return any(abs((e - day).days) <= days for e in self.earnings_dates)

    def validate(self, position: Position) -> TradeValidation:
        """Validate a proposed (not yet booked) position and record it in the audit."""
        validation = self._validate(position)
        self.audit.add(validation)
        if not validation.can_execute:
            logger.debug("Rejected %s: %s", position.id, validation.notes)
        return validation

    def export_state(self) -> Dict:
        """Audit entries and quote generator state for checkpoints."""
        state = {"audit": self.audit.to_dict()}
        if hasattr(self.quote_provider, "get_state"):
            state["quote_provider"] = self.quote_provider.get_state()
        return state

    def restore_state(self, state: Dict):
        self.audit = RealityAuditReport.from_dict(state.get("audit"))
        if state.get("quote_provider") and hasattr(self.quote_provider, "set_state"):
            self.quote_provider.set_state(state["quote_provider"])

    def _validate(self, position: Position) -> TradeValidation:
        contracts = position.contracts
        notes = []

        if not self.is_market_open(position.entry_date):
            return TradeValidation(
                position=position,
                can_execute=False,
                score=RealityScore(0.0, RealityLevel.RED, issues=["Market closed on this date"]),
                adjusted_premium=position.premium_collected,
                adjusted_contracts=contracts,
                notes="Market closed - holiday or weekend",
            )

        if self.is_near_earnings(position.entry_date, 5):
            contracts = max(1, contracts // 2)
            notes.append("Reduced position size due to upcoming earnings")

        quote = self.quote_provider.get_quote(position)
        if quote is None:
            return TradeValidation(
                position=position,
                can_execute=False,
                score=RealityScore(20.0, RealityLevel.RED, issues=["No options data for validation"]),
                adjusted_premium=position.premium_collected,
                adjusted_contracts=contracts,
                notes="No options data available",
            )

        score = self.score(position, quote)
        fill = quote.bid
        slippage = max(0.0, quote.mid - fill) * contracts * CONTRACT_MULTIPLIER

        notes.append(
            f"Reality score {score.total:.0f}% ({score.level.value}); "
            f"bid ${quote.bid:.2f} / ask ${quote.ask:.2f}; "
            f"volume {quote.volume:,} OI {quote.open_interest:,}"
        )
        if score.issues:
            notes.append("Issues: " + ", ".join(score.issues))

        return TradeValidation(
            position=position,
            can_execute=score.level != RealityLevel.RED,
            score=score,
            adjusted_premium=fill,
            adjusted_contracts=contracts,
            quote=quote,
            expected_slippage=slippage,
            notes="; ".join(notes),
        )

    def score(self, position: Position, quote: OptionQuote) -> RealityScore:
        issues: List[str] = []
        adjustments: List[str] = []

        liquidity = 100.0
        if quote.volume < self.min_volume:
            liquidity -= 30
            issues.append(f"Low volume: {quote.volume} contracts")
        if quote.open_interest < self.min_open_interest:
            liquidity -= 20
            issues.append(f"Low open interest: {quote.open_interest}")
        if quote.spread_width > self.max_spread:
            liquidity -= 25
            issues.append(f"Wide spread: ${quote.spread_width:.2f}")
        liquidity = max(0.0, liquidity)

        premium = 100.0
        diff = abs(position.premium_collected - quote.mid) / quote.mid if quote.mid > 0 else 1.0
        if diff > 0.20:
            premium -= 40
            issues.append(f"Premium mismatch: {diff:.0%}")
        elif diff > 0.10:
            premium -= 20
            issues.append(f"Minor premium variance: {diff:.0%}")

        market = 100.0
        if position.vix_level > 30:
            market -= 10
            adjustments.append("High VIX environment")
        if self.is_near_earnings(position.entry_date, 10):
            market -= 15
            adjustments.append("Near earnings date")

        execution = 100.0
        if position.contracts > 20:
            execution -= 20
            issues.append(f"Large position size: {position.contracts} contracts")
        start, end = self.optimal_window
        if not start <= position.entry_date.time() <= end:
            execution -= 10
            adjustments.append("Non-optimal trading time")

        total = 0.25 * (liquidity + premium + market + execution)
        return RealityScore(
            total=total,
            level=reality_level(total),
            liquidity=liquidity,
            premium=premium,
            market=market,
            execution=execution,
            issues=issues,
            adjustments=adjustments,
        )


class RealityAuditReport:
    """Aggregates TradeValidation results across a backtest.

    Each validation is reduced to a flat entry when it is added, so the
    report survives a checkpoint round trip and later changes to the
    booked position do not alter the original premium.
    """

    def __init__(self, entries: Optional[List[Dict]] = None):
        self.entries: List[Dict] = list(entries or [])

    def add(self, validation: TradeValidation):
        self.entries.append({
            "level": validation.score.level.value,
            "can_execute": validation.can_execute,
            "score": validation.score.total,
            "issues": list(validation.score.issues),
            "original_premium": validation.position.premium_dollars,
            "adjusted_premium": (validation.adjusted_premium * validation.adjusted_contracts
                                 * CONTRACT_MULTIPLIER),
            "expected_slippage": validation.expected_slippage,
            "earnings_adjusted": "earnings" in validation.notes,
        })

    def to_dict(self) -> Dict:
        return {"entries": [dict(e) for e in self.entries]}

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "RealityAuditReport":
        return cls((data or {}).get("entries"))

    def summary(self) -> Dict:
        entries = self.entries
        total = len(entries)
        if not total:
            return {"total_trades_analyzed": 0}

        levels = Counter(e["level"] for e in entries)
        executable = sum(1 for e in entries if e["can_execute"])
        issues = Counter(i for e in entries for i in e["issues"])

        original = sum(e["original_premium"] for e in entries)
        adjusted = sum(e["adjusted_premium"] for e in entries if e["can_execute"])
        slippage = sum(e["expected_slippage"] for e in entries)
        skipped = [e for e in entries if not e["can_execute"]]

        return {
            "total_trades_analyzed": total,
            "executable_trades": executable,
            "execution_rate": round(executable / total, 4),
            "green_trades": levels.get(RealityLevel.GREEN.value, 0),
            "yellow_trades": levels.get(RealityLevel.YELLOW.value, 0),
            "red_trades": levels.get(RealityLevel.RED.value, 0),
            "average_reality_score": round(sum(e["score"] for e in entries) / total, 1),
            "total_expected_slippage": round(slippage, 2),
            "earnings_adjusted_trades": sum(1 for e in entries if e["earnings_adjusted"]),
            "top_issues": [f"{issue} ({n} occurrences)" for issue, n in issues.most_common(5)],
            "original_premiums": round(original, 2),
            "adjusted_premiums": round(adjusted, 2),
            "skipped_trades": len(skipped),
            "skipped_premiums": round(sum(e["original_premium"] for e in skipped), 2),
            "net_impact_pct": round((adjusted - slippage - original) / original, 4) if original else 0.0,
        }
