from __future__ import annotations

import dataclasses
import logging
import threading
from collections import deque
from dataclasses import dataclass

import pandas as pd

from exchange.events import TradeEvent

from .utils import DEFAULT_INTERVAL, interval_to_ms

logger = logging.getLogger(__name__)

DEFAULT_MAX_KLINES = 100


@dataclass(frozen=True)
class Candle:
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time: int

    def to_row(self) -> list:
        """Binance-compatible kline row."""
        return [
            int(self.open_time),
            str(self.open),
            str(self.high),
            str(self.low),
            str(self.close),
            str(self.volume),
            int(self.close_time),
            "0",  # quote asset volume
            0,  # trade count
            "0",  # taker buy base volume
            "0",  # taker buy quote volume
            "0",
        ]


class CandleAggregator:
    """Builds bounded per-symbol OHLCV history from a live trade stream.

    One open candle per symbol; it only closes when a trade lands in a newer bucket, so an idle
    market keeps its last candle open. Trades older than the open candle's bucket fold into the
    open candle. There is no duplicate suppression.
    """

    def __init__(self, interval: str = DEFAULT_INTERVAL, max_klines: int = DEFAULT_MAX_KLINES):
        self.interval = str(interval)
        self.interval_ms = interval_to_ms(interval)
        self.max_klines = max(1, int(max_klines))
        self._lock = threading.RLock()
        self._closed: dict[str, deque[Candle]] = {}
        self._open: dict[str, Candle] = {}

    def bucket(self, timestamp_ms: int) -> int:
        return (int(timestamp_ms) // self.interval_ms) * self.interval_ms

    def ingest(self, symbol: str, price: float, size: float, timestamp_ms: int) -> Candle:
        """Apply one trade and return the (new) open candle for the symbol."""
        sym = str(symbol).strip().upper()
        px = float(price)
        sz = float(size)
        b = self.bucket(timestamp_ms)

        with self._lock:
            cur = self._open.get(sym)
            if cur is not None and b < cur.open_time:
                logger.debug("late trade for %s (bucket %d < open %d); folded into open candle", sym, b, cur.open_time)
                b = cur.open_time

            if cur is None or cur.open_time != b:
                if cur is not None:
                    self._close(sym, cur)
                cur = Candle(
                    open_time=b,
                    open=px,
                    high=px,
                    low=px,
                    close=px,
                    volume=sz,
                    close_time=b + self.interval_ms - 1,
                )
            else:
                cur = dataclasses.replace(
                    cur,
                    high=max(cur.high, px),
                    low=min(cur.low, px),
                    close=px,
                    volume=cur.volume + sz,
                )
            self._open[sym] = cur
            return cur

    def ingest_trade(self, trade: TradeEvent) -> Candle:
        return self.ingest(trade.symbol, trade.price, trade.size, trade.timestamp_ms)

    def _close(self, sym: str, candle: Candle) -> None:
        # Caller holds self._lock.
        hist = self._closed.get(sym)
        if hist is None:
            hist = deque(maxlen=self.max_klines)
            self._closed[sym] = hist
        hist.append(candle)
        logger.debug(
            "candle closed %s t=%d o=%s h=%s l=%s c=%s v=%s",
            sym,
            candle.open_time,
            candle.open,
            candle.high,
            candle.low,
            candle.close,
            candle.volume,
        )

    def current(self, symbol: str) -> Candle | None:
        with self._lock:
            return self._open.get(str(symbol).strip().upper())

    def closed(self, symbol: str) -> list[Candle]:
        with self._lock:
            return list(self._closed.get(str(symbol).strip().upper(), ()))

    def history(self, symbol: str, limit: int | None = None) -> list[Candle]:
        """Closed candles plus the open one, oldest first, trimmed to the last `limit` entries."""
        sym = str(symbol).strip().upper()
        with self._lock:
            out = list(self._closed.get(sym, ()))
            cur = self._open.get(sym)
        if cur is not None:
            out.append(cur)
        n = self.max_klines if not limit else int(limit)
        if len(out) > n:
            out = out[-n:]
        return out

    def count(self, symbol: str) -> int:
        sym = str(symbol).strip().upper()
        with self._lock:
            return len(self._closed.get(sym, ())) + (1 if sym in self._open else 0)

    def has_enough_data(self, symbol: str, required: int) -> bool:
        return self.count(symbol) >= int(required)

    def klines(self, symbol: str, limit: int | None = None) -> list[list]:
        return [c.to_row() for c in self.history(symbol, limit)]

    def to_frame(self, symbol: str, limit: int | None = None) -> pd.DataFrame | None:
        """History as a DataFrame with timestamp, T, Open, High, Low, Close, Volume columns."""
        rows = [
            {
                "timestamp": c.open_time,
                "T": c.close_time,
                "Open": c.open,
                "High": c.high,
                "Low": c.low,
                "Close": c.close,
                "Volume": c.volume,
            }
            for c in self.history(symbol, limit)
        ]
        df = pd.DataFrame(rows)
        if df.empty:
            return None
        for col in ["Open", "High", "Low", "Close", "Volume"]:
            df[col] = pd.to_numeric(df[col], errors="coerce")
        return df

    def symbols(self) -> list[str]:
        with self._lock:
            return sorted(set(self._closed) | set(self._open))

    def clear_market(self, symbol: str) -> None:
        sym = str(symbol).strip().upper()
        with self._lock:
            self._closed.pop(sym, None)
            self._open.pop(sym, None)

    def clear_all(self) -> None:
        with self._lock:
            self._closed.clear()
            self._open.clear()
