"""
Backtest checkpoints: periodic JSON snapshots that let an interrupted run
resume from the last processed bar.

Files live in the checkpoint directory as ``checkpoint_<backtest_id>.json``
where the id is ``<SYMBOL>_<yyyymmdd_HHMM>``.
"""

import logging
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from engine.models import StrategyConfig, TradingSession
from shared.constants import CHECKPOINT_DIR, CHECKPOINTS_TO_KEEP
from shared.exceptions import CheckpointError
from shared.io_utils import atomic_json_write, config_hash, safe_json_read

logger = logging.getLogger(__name__)

_DATE_FIELDS = ("start_date", "end_date", "last_processed_date", "last_checkpoint_time")


@dataclass
class BacktestCheckpoint:
    backtest_id: str
    symbol: str
    start_date: datetime
    end_date: datetime
    last_processed_date: datetime
    current_capital: float
    peak_capital: float
    last_checkpoint_time: Optional[datetime] = None
    total_trades: int = 0
    running_pnl: float = 0.0
    weekly_premium: float = 0.0
    monthly_premium: float = 0.0
    max_drawdown: float = 0.0
    win_rate: float = 0.0
    report_path: str = ""
    config_hash: str = ""
    is_completed: bool = False
    total_bars_processed: int = 0
    estimated_completion_pct: float = 0.0
    engine_state: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in _DATE_FIELDS:
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BacktestCheckpoint":
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        try:
            for key in _DATE_FIELDS:
                if kwargs.get(key):
                    kwargs[key] = datetime.fromisoformat(kwargs[key])
            return cls(**kwargs)
        except (TypeError, ValueError) as e:
            raise CheckpointError(f"Malformed checkpoint: {e}") from e


class CheckpointManager:
    """Create, update, persist and prune backtest checkpoints."""

    def __init__(self, checkpoint_dir: str = CHECKPOINT_DIR):
        self.checkpoint_dir = Path(checkpoint_dir)
        self.checkpoint_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, backtest_id: str) -> Path:
        return self.checkpoint_dir / f"checkpoint_{backtest_id}.json"

    def create(
        self,
        symbol: str,
        start_date: datetime,
        end_date: datetime,
        config: StrategyConfig,
        report_path: str = "",
        backtest_id: Optional[str] = None,
    ) -> BacktestCheckpoint:
        """Fresh checkpoint positioned just before *start_date*."""
        symbol = symbol.upper()
        backtest_id = backtest_id or f"{symbol}_{datetime.now():%Y%m%d_%H%M}"
        return BacktestCheckpoint(
            backtest_id=backtest_id,
            symbol=symbol,
            start_date=start_date,
            end_date=end_date,
            last_processed_date=start_date - timedelta(days=1),
            current_capital=config.initial_capital,
            peak_capital=config.initial_capital,
            report_path=report_path,
            config_hash=config_hash(config.to_dict()),
        )

    def update(
        self,
        checkpoint: BacktestCheckpoint,
        session: TradingSession,
        processed_bars: int,
        total_bars: int,
        win_rate: Optional[float] = None,
        engine_state: Optional[Dict[str, Any]] = None,
    ):
        """Fold one session into *checkpoint*; tracks peak capital and max drawdown."""
        checkpoint.last_processed_date = session.date
        checkpoint.total_bars_processed = processed_bars
        checkpoint.estimated_completion_pct = (processed_bars / total_bars * 100) if total_bars else 0.0

        capital = session.current_capital
        checkpoint.current_capital = capital
        checkpoint.running_pnl = session.total_pnl
        checkpoint.weekly_premium = session.weekly_premium
        checkpoint.monthly_premium = session.monthly_premium
        checkpoint.total_trades += session.positions_closed

        if capital > checkpoint.peak_capital:
            checkpoint.peak_capital = capital
        if checkpoint.peak_capital > 0:
            drawdown = (checkpoint.peak_capital - capital) / checkpoint.peak_capital
            checkpoint.max_drawdown = max(checkpoint.max_drawdown, drawdown)

        if win_rate is not None:
            checkpoint.win_rate = win_rate
        if engine_state is not None:
            checkpoint.engine_state = engine_state

    def save(self, checkpoint: BacktestCheckpoint) -> Path:
        checkpoint.last_checkpoint_time = datetime.now()
        path = self.path_for(checkpoint.backtest_id)
        try:
            atomic_json_write(path, checkpoint.to_dict())
        except OSError as e:
            raise CheckpointError(f"Failed to save checkpoint {path}: {e}") from e
        logger.info(
            "Checkpoint saved: %s (%.1f%% complete)",
            checkpoint.backtest_id, checkpoint.estimated_completion_pct,
        )
        return path

    def finalize(self, checkpoint: BacktestCheckpoint) -> Path:
        checkpoint.is_completed = True
        checkpoint.estimated_completion_pct = 100.0
        return self.save(checkpoint)

    def load(self, backtest_id: str) -> Optional[BacktestCheckpoint]:
        data = safe_json_read(self.path_for(backtest_id))
        if data is None:
            return None
        return BacktestCheckpoint.from_dict(data)

    def list_checkpoints(self, symbol: Optional[str] = None) -> List[BacktestCheckpoint]:
        """All readable checkpoints (optionally for one symbol), newest first."""
        checkpoints = []
        for path in self._files(symbol):
            data = safe_json_read(path)
            if data is None:
                continue
            try:
                checkpoints.append(BacktestCheckpoint.from_dict(data))
            except CheckpointError as e:
                logger.warning("Ignoring unreadable checkpoint %s: %s", path, e)
        checkpoints.sort(key=lambda cp: cp.last_checkpoint_time or datetime.min, reverse=True)
        return checkpoints

    def has_incomplete(self, symbol: str) -> bool:
        return any(not cp.is_completed for cp in self.list_checkpoints(symbol))

    def load_most_recent(self, symbol: str) -> Optional[BacktestCheckpoint]:
        """Newest incomplete checkpoint for *symbol*, if any."""
        for checkpoint in self.list_checkpoints(symbol):
            if not checkpoint.is_completed:
                return checkpoint
        return None

    def cleanup(self, symbol: str, keep: int = CHECKPOINTS_TO_KEEP) -> int:
        """Delete all but the *keep* newest completed checkpoints; returns the number removed."""
        completed = [cp for cp in self.list_checkpoints(symbol) if cp.is_completed]
        removed = 0
        for checkpoint in completed[keep:]:
            path = self.path_for(checkpoint.backtest_id)
            try:
                path.unlink()
                removed += 1
            except OSError as e:
                logger.warning("Could not delete %s: %s", path, e)
        if removed:
            logger.info("Removed %d old checkpoints for %s", removed, symbol.upper())
        return removed

    def _files(self, symbol: Optional[str]) -> List[Path]:
        pattern = f"checkpoint_{symbol.upper()}_*.json" if symbol else "checkpoint_*.json"
        return sorted(self.checkpoint_dir.glob(pattern))
