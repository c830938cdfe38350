"""
Historical Market Data
Daily underlying bars from a ThetaData terminal (or yfinance), VIX closes
from yfinance, with a realized-volatility VIX proxy and synthetic data as
fallbacks so a backtest always has something to run on.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pandas as pd
import requests
import yfinance as yf
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from backtest.synthetic_data import generate_bars, generate_vix
from engine.models import DailyBar
from shared.constants import VIX_CEILING, VIX_DEFAULT, VIX_FLOOR, VIX_PROXY_WINDOW
from shared.exceptions import DataFetchError

logger = logging.getLogger(__name__)

DEFAULT_HOST = "http://127.0.0.1"
DEFAULT_PORT = 25510
OHLC_PATH = "/v2/hist/stock/ohlc"
DAILY_INTERVAL_MS = 86_400_000


def parse_ohlc_response(payload: Any) -> List[DailyBar]:
    """Parse a ThetaData ``/v2/hist/stock/ohlc`` JSON body.

    The body carries a ``response`` array of rows shaped
    ``[ms_of_day, open, high, low, close, volume, count, yyyymmdd]``.
    Short or malformed rows are skipped.

    Raises:
        DataFetchError: if there is no ``response`` array at all.
    """
    rows = payload.get("response") if isinstance(payload, dict) else None
    if not isinstance(rows, list):
        raise DataFetchError("OHLC payload has no 'response' array")

    bars = []
    for row in rows:
        if not isinstance(row, (list, tuple)) or len(row) < 8:
            continue
        try:
            day = datetime.strptime(str(int(row[7])), "%Y%m%d")
            bars.append(DailyBar(
                date=day,
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=int(row[5]),
            ))
        except (TypeError, ValueError) as e:
            logger.debug("Skipping malformed OHLC row %s: %s", row, e)

    return sorted(bars, key=lambda b: b.date)


def bars_to_frame(bars: List[DailyBar]) -> pd.DataFrame:
    """OHLCV DataFrame indexed by (naive, normalized) date."""
    if not bars:
        return pd.DataFrame(columns=["Open", "High", "Low", "Close", "Volume"])
    frame = pd.DataFrame(
        {
            "Open": [b.open for b in bars],
            "High": [b.high for b in bars],
            "Low": [b.low for b in bars],
            "Close": [b.close for b in bars],
            "Volume": [b.volume for b in bars],
        },
        index=pd.DatetimeIndex([b.date for b in bars]).normalize(),
    )
    frame.index.name = "Date"
    return frame


def realized_vol_proxy(closes: pd.Series, window: int = VIX_PROXY_WINDOW) -> pd.Series:
    """VIX stand-in: annualized stdev of daily returns x 100.

    Clipped to [10, 50]; dates without a full window of returns get 20.
    """
    returns = closes.pct_change()
    vol = returns.rolling(window).std() * math.sqrt(252) * 100
    return vol.clip(lower=VIX_FLOOR, upper=VIX_CEILING).fillna(VIX_DEFAULT).rename("vix")


class HistoricalBarsData:
    """Fetch daily bars and VIX for a backtest.

    Args:
        provider: ``thetadata``, ``yfinance`` or ``synthetic``.
        host: ThetaData terminal host (scheme included).
        port: ThetaData terminal port.
        api_key: Optional bearer token for the terminal.
        vix_source: ``yfinance``, ``proxy`` or ``synthetic``.
        seed: Seed for synthetic fallbacks.
        synthetic_end_price: Optional last close for synthetic bars.
    """

    def __init__(
        self,
        provider: str = "thetadata",
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        api_key: str = "",
        vix_source: str = "yfinance",
        timeout: float = 30.0,
        seed: int = 42,
        synthetic_end_price: Optional[float] = None,
    ):
        self.provider = provider
        self.base_url = f"{host.rstrip('/')}:{port}"
        self.api_key = api_key
        self.vix_source = vix_source
        self.timeout = timeout
        self.seed = seed
        self.synthetic_end_price = synthetic_end_price

        # HTTP session with automatic retries for transient failures
        self.session = requests.Session()
        retry = Retry(
            total=3,
            backoff_factor=1.0,
            status_forcelist=[429, 500, 502, 503, 504],
            backoff_jitter=0.25,
        )
        adapter = HTTPAdapter(max_retries=retry)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

        logger.info("HistoricalBarsData initialized (provider: %s, vix: %s)", provider, vix_source)

    @classmethod
    def from_config(cls, data_config: Optional[Dict], seed: int = 42) -> "HistoricalBarsData":
        # Unset ${ENV} references survive substitution verbatim
        data_config = {
            k: v for k, v in (data_config or {}).items()
            if not (isinstance(v, str) and "${" in v)
        }
        return cls(
            provider=data_config.get("provider", "thetadata"),
            host=data_config.get("host") or DEFAULT_HOST,
            port=int(data_config.get("port") or DEFAULT_PORT),
            api_key=data_config.get("api_key") or "",
            vix_source=data_config.get("vix_source", "yfinance"),
            timeout=float(data_config.get("timeout", 30.0)),
            seed=seed,
            synthetic_end_price=data_config.get("synthetic_end_price"),
        )

    # ------------------------------------------------------------------
    # Bars
    # ------------------------------------------------------------------

    def get_daily_bars(self, symbol: str, start: datetime, end: datetime,
                       allow_synthetic: bool = True) -> List[DailyBar]:
        """Bars from the configured provider, synthetic data on any failure."""
        bars: List[DailyBar] = []
        if self.provider != "synthetic":
            try:
                if self.provider == "yfinance":
                    bars = self.fetch_bars_yfinance(symbol, start, end)
                else:
                    bars = self.fetch_bars(symbol, start, end)
            except DataFetchError as e:
                logger.warning("Bar fetch failed for %s: %s", symbol, e)

        if bars:
            logger.info("Loaded %d real bars for %s from %s", len(bars), symbol, self.provider)
            return bars

        if not allow_synthetic:
            raise DataFetchError(f"No bars available for {symbol} from {self.provider}")

        logger.warning("Using synthetic bars for %s", symbol)
        return generate_bars(
            symbol, start, end,
            seed=self.seed,
            target_end_price=self.synthetic_end_price if symbol.upper() == "SOFI" else None,
        )

    def fetch_bars(self, symbol: str, start: datetime, end: datetime) -> List[DailyBar]:
        """Daily RTH bars from the ThetaData terminal."""
        params = {
            "root": symbol.upper(),
            "start_date": start.strftime("%Y%m%d"),
            "end_date": end.strftime("%Y%m%d"),
            "ivl": DAILY_INTERVAL_MS,
            "rth": "true",
        }
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        url = f"{self.base_url}{OHLC_PATH}"

        try:
            resp = self.session.get(url, params=params, headers=headers, timeout=self.timeout)
            resp.raise_for_status()
            payload = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise DataFetchError(f"ThetaData request failed for {symbol}: {e}") from e

        return parse_ohlc_response(payload)

    def fetch_bars_yfinance(self, symbol: str, start: datetime, end: datetime) -> List[DailyBar]:
        try:
            data = yf.Ticker(symbol).history(start=start, end=end + timedelta(days=1))
        except Exception as e:
            raise DataFetchError(f"yfinance history failed for {symbol}: {e}") from e
        if data is None or data.empty:
            return []
        if data.index.tz is not None:
            data.index = data.index.tz_localize(None)
        return [
            DailyBar(
                date=ts.to_pydatetime().replace(hour=0, minute=0, second=0, microsecond=0),
                open=float(row["Open"]), high=float(row["High"]),
                low=float(row["Low"]), close=float(row["Close"]),
                volume=int(row.get("Volume", 0) or 0),
            )
            for ts, row in data.iterrows()
        ]

    # ------------------------------------------------------------------
    # VIX
    # ------------------------------------------------------------------

    def get_vix_series(self, bars: List[DailyBar]) -> pd.Series:
        """VIX close for every bar date.

        Missing yfinance dates are forward-filled, then patched with the
        realized-vol proxy.
        """
        frame = bars_to_frame(bars)
        if frame.empty:
            return pd.Series(dtype=float, name="vix")
        proxy = realized_vol_proxy(frame["Close"])

        if self.vix_source == "synthetic":
            return generate_vix(frame.index, seed=self.seed)
        if self.vix_source == "proxy":
            return proxy

        try:
            vix = self.fetch_vix_yfinance(frame.index[0], frame.index[-1])
        except DataFetchError as e:
            logger.warning("VIX download failed, using realized-vol proxy: %s", e)
            return proxy

        aligned = vix.reindex(frame.index).ffill()
        return aligned.fillna(proxy).rename("vix")

    def fetch_vix_yfinance(self, start: datetime, end: datetime) -> pd.Series:
        try:
            raw = yf.download(
                "^VIX",
                start=pd.Timestamp(start).strftime("%Y-%m-%d"),
                end=(pd.Timestamp(end) + timedelta(days=1)).strftime("%Y-%m-%d"),
                progress=False,
                auto_adjust=False,
            )
        except Exception as e:
            raise DataFetchError(f"^VIX download failed: {e}") from e

        if raw is None or raw.empty:
            raise DataFetchError("^VIX download returned no rows")

        # Flatten MultiIndex if present (yfinance >= 0.2)
        if isinstance(raw.columns, pd.MultiIndex):
            raw.columns = raw.columns.get_level_values(0)

        vix = raw["Close"].dropna().astype(float)
        if vix.index.tz is not None:
            vix.index = vix.index.tz_localize(None)
        vix.index = vix.index.normalize()
        return vix.rename("vix")

    def close(self):
        self.session.close()
