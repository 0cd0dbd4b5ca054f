import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterable

import pandas as pd
import requests

from aiquant.domain.models import MarketBatch, MarketObservation

logger = logging.getLogger(__name__)

DEFAULT_SYMBOLS = ["AAPL", "NVDA", "TSLA", "AMD", "MSFT", "COIN", "MARA", "RIOT"]


@dataclass(frozen=True)
class MarketDataConfig:
    base_url: str
    api_key: str
    timeout_seconds: float
    max_workers: int
    symbols: list[str]
    min_abs_change_percent: float
    market_context_symbol: str | None
    fetch_rsi: bool
    rsi_window: int


def load_market_data_config(config: dict) -> MarketDataConfig:
    md = (config.get("market_data") or {}) if isinstance(config, dict) else {}
    trading = (config.get("trading") or {}) if isinstance(config, dict) else {}
    ctx = trading.get("market_context_symbol", "SPY")
    return MarketDataConfig(
        base_url=str(md.get("base_url", "https://finnhub.io/api/v1")).rstrip("/"),
        api_key=str(md.get("api_key") or ""),
        timeout_seconds=float(md.get("timeout_seconds", 10)),
        max_workers=max(1, int(md.get("max_workers", 4))),
        symbols=[str(s).strip().upper() for s in (trading.get("symbols") or DEFAULT_SYMBOLS) if str(s).strip()],
        min_abs_change_percent=float(trading.get("min_abs_change_percent", 1.5)),
        market_context_symbol=str(ctx).strip().upper() if ctx else None,
        fetch_rsi=bool(md.get("fetch_rsi", False)),
        rsi_window=int(md.get("rsi_window", 14)),
    )


def compute_rsi(closes: pd.Series, window: int = 14) -> float | None:
    """Wilder's RSI of the last bar; None when there is not enough history."""
    closes = pd.Series(closes, dtype=float).dropna()
    if len(closes) <= window:
        return None
    delta = closes.diff().dropna()
    gains = delta.clip(lower=0.0)
    losses = -delta.clip(upper=0.0)
    avg_gain = gains.ewm(alpha=1.0 / window, adjust=False, min_periods=window).mean().iloc[-1]
    avg_loss = losses.ewm(alpha=1.0 / window, adjust=False, min_periods=window).mean().iloc[-1]
    if pd.isna(avg_gain) or pd.isna(avg_loss):
        return None
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return float(100.0 - 100.0 / (1.0 + rs))


class FinnhubClient:
    """Thin Finnhub REST reader (quotes, news sentiment, daily candles)."""

    def __init__(self, api_key: str, base_url: str = "https://finnhub.io/api/v1", timeout_seconds: float = 10, session=None):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def _get(self, path: str, params: dict) -> dict:
        resp = self.session.get(
            f"{self.base_url}/{path.lstrip('/')}",
            params={**params, "token": self.api_key},
            timeout=self.timeout_seconds,
        )
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected Finnhub payload for {path}: {type(data).__name__}")
        return data

    def get_quote(self, symbol: str) -> dict | None:
        """Latest price and previous close, or None when Finnhub has no quote (c == 0)."""
        data = self._get("quote", {"symbol": symbol})
        price = float(data.get("c") or 0.0)
        prev_close = float(data.get("pc") or 0.0)
        if price <= 0 or prev_close <= 0:
            return None
        return {"symbol": symbol, "price": price, "prev_close": prev_close}

    def get_sentiment(self, symbol: str) -> float | None:
        """Net news sentiment in [-1, 1] (bullish minus bearish share)."""
        data = self._get("news-sentiment", {"symbol": symbol})
        s = data.get("sentiment")
        if not isinstance(s, dict):
            return None
        net = float(s.get("bullishPercent") or 0.0) - float(s.get("bearishPercent") or 0.0)
        return round(max(-1.0, min(1.0, net)), 2)

    def get_daily_closes(self, symbol: str, days: int = 60) -> pd.Series:
        now = int(time.time())
        data = self._get(
            "stock/candle",
            {"symbol": symbol, "resolution": "D", "from": now - days * 86400, "to": now},
        )
        if data.get("s") != "ok" or not data.get("c"):
            logger.warning(f"No candle data found for {symbol}")
            return pd.Series(dtype=float)
        return pd.Series(data["c"], index=pd.to_datetime(data.get("t") or [], unit="s"), dtype=float)


class MarketScanner:
    """
    Builds one cycle's batch of observations.

    Symbols are fetched concurrently; a failing symbol is logged and skipped so
    one bad quote never sinks the batch.
    """

    def __init__(self, client: FinnhubClient, cfg: MarketDataConfig):
        self.client = client
        self.cfg = cfg

    @classmethod
    def from_config(cls, config: dict, session=None) -> "MarketScanner":
        cfg = load_market_data_config(config)
        if not cfg.api_key:
            raise ValueError("market_data.api_key is empty; set FINNHUB_API_KEY")
        client = FinnhubClient(cfg.api_key, cfg.base_url, cfg.timeout_seconds, session=session)
        return cls(client, cfg)

    def _change_percent(self, symbol: str) -> tuple[float, float] | None:
        quote = self.client.get_quote(symbol)
        if quote is None:
            return None
        change = (quote["price"] - quote["prev_close"]) / quote["prev_close"] * 100
        return quote["price"], change

    def observe(self, symbol: str, held: bool = False) -> MarketObservation | None:
        """
        Observation for one symbol, or None when it is not moving enough to be interesting.

        Held symbols skip the mover filter: their exits need a fresh price every cycle.
        """
        quoted = self._change_percent(symbol)
        if quoted is None:
            logger.info(f"No quote for {symbol}")
            return None
        price, change = quoted
        if not held and abs(change) <= self.cfg.min_abs_change_percent:
            return None

        try:
            sentiment = self.client.get_sentiment(symbol)
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Sentiment unavailable for {symbol}: {e}")
            sentiment = None

        rsi = None
        if self.cfg.fetch_rsi:
            try:
                rsi = compute_rsi(self.client.get_daily_closes(symbol), self.cfg.rsi_window)
            except (requests.RequestException, ValueError) as e:
                logger.warning(f"RSI unavailable for {symbol}: {e}")

        return MarketObservation(symbol=symbol, price=price, change_percent=change, sentiment=sentiment, rsi=rsi)

    def _safe_observe(self, symbol: str, held: bool = False) -> MarketObservation | None:
        try:
            return self.observe(symbol, held)
        except Exception as e:
            logger.error(f"Market data failed for {symbol}: {type(e).__name__}: {e}")
            return None

    def market_context(self) -> float | None:
        """Broad-market change percent (e.g. SPY), or None if unavailable."""
        if not self.cfg.market_context_symbol:
            return None
        try:
            quoted = self._change_percent(self.cfg.market_context_symbol)
        except Exception as e:
            logger.warning(f"Market context unavailable ({self.cfg.market_context_symbol}): {e}")
            return None
        return quoted[1] if quoted is not None else None

    def scan(self, held: Iterable[str] = ()) -> MarketBatch:
        """
        Quote the configured universe plus every held symbol.

        Held symbols are always reported (no mover filter), including ones that
        are not in `trading.symbols`.
        """
        held_set = set(held)
        symbols = list(self.cfg.symbols) + sorted(held_set - set(self.cfg.symbols))
        with ThreadPoolExecutor(max_workers=self.cfg.max_workers, thread_name_prefix="scan") as pool:
            results = list(pool.map(self._safe_observe, symbols, [s in held_set for s in symbols]))
        observations = [o for o in results if o is not None]
        context = self.market_context()
        logger.info(
            f"Scan returned {len(observations)} observation(s) from {len(symbols)} symbols "
            f"({len(held_set)} held)"
        )
        return MarketBatch(observations=tuple(observations), market_context=context)
