from __future__ import annotations

import dataclasses

import pytest

from engine.candles import Candle, CandleAggregator
from exchange.events import TradeEvent


def test_trade_in_new_bucket_closes_previous_candle():
    agg = CandleAggregator("1m")
    assert agg.interval_ms == 60000

    agg.ingest("ETH-USD-PERP", 10.0, 1.0, 1000)
    agg.ingest("ETH-USD-PERP", 11.0, 2.0, 61000)

    hist = agg.history("ETH-USD-PERP")
    assert len(hist) == 2
    first, second = hist
    assert (first.open, first.high, first.low, first.close, first.volume) == (10.0, 10.0, 10.0, 10.0, 1.0)
    assert first.open_time == 0
    assert first.close_time == 59999
    assert (second.open, second.high, second.low, second.close, second.volume) == (11.0, 11.0, 11.0, 11.0, 2.0)
    assert second.open_time == 60000
    assert agg.current("ETH-USD-PERP") == second
    assert agg.closed("ETH-USD-PERP") == [first]


def test_same_bucket_updates_high_low_close_and_volume():
    agg = CandleAggregator("1m")
    for px, ts in [(100.0, 0), (105.0, 10_000), (95.0, 20_000), (101.0, 59_999)]:
        agg.ingest("BTC-USD-PERP", px, 0.5, ts)

    cur = agg.current("BTC-USD-PERP")
    assert cur is not None
    assert cur.open == 100.0
    assert cur.high == 105.0
    assert cur.low == 95.0
    assert cur.close == 101.0
    assert cur.volume == pytest.approx(2.0)
    assert agg.count("BTC-USD-PERP") == 1


def test_closed_history_is_bounded_and_evicts_oldest_first():
    agg = CandleAggregator("1m", max_klines=3)
    for i in range(6):
        agg.ingest("SOL-USD-PERP", 10.0 + i, 1.0, i * 60000)

    closed = agg.closed("SOL-USD-PERP")
    assert len(closed) == 3
    # Five candles closed (0..4); the two oldest were evicted.
    assert [c.open_time for c in closed] == [2 * 60000, 3 * 60000, 4 * 60000]
    assert agg.current("SOL-USD-PERP").open_time == 5 * 60000

    hist = agg.history("SOL-USD-PERP")
    assert len(hist) == 3
    assert [c.open_time for c in hist] == [3 * 60000, 4 * 60000, 5 * 60000]
    assert agg.count("SOL-USD-PERP") == 4


def test_history_is_monotonic_for_non_decreasing_timestamps():
    agg = CandleAggregator("1m", max_klines=50)
    ts = 0
    prices = [10, 12, 9, 15, 14, 8, 20, 21, 19]
    for i, px in enumerate(prices):
        ts += 25_000 if i % 2 else 40_000
        agg.ingest("ETH-USD-PERP", float(px), 1.0, ts)

    hist = agg.history("ETH-USD-PERP")
    times = [c.open_time for c in hist]
    assert times == sorted(times)
    assert len(set(times)) == len(times)
    for c in hist:
        assert c.high >= max(c.open, c.close)
        assert c.low <= min(c.open, c.close)


def test_late_trade_folds_into_open_candle():
    agg = CandleAggregator("1m")
    agg.ingest("ETH-USD-PERP", 10.0, 1.0, 1000)
    agg.ingest("ETH-USD-PERP", 11.0, 1.0, 61000)
    closed_before = agg.closed("ETH-USD-PERP")

    # Belongs to the first bucket but arrives after it closed.
    agg.ingest("ETH-USD-PERP", 5.0, 3.0, 2000)

    assert agg.closed("ETH-USD-PERP") == closed_before
    cur = agg.current("ETH-USD-PERP")
    assert cur.open_time == 60000
    assert cur.low == 5.0
    assert cur.close == 5.0
    assert cur.volume == pytest.approx(4.0)


def test_duplicate_trade_is_counted_twice():
    agg = CandleAggregator("1m")
    trade = TradeEvent(symbol="ETH-USD-PERP", price=10.0, size=1.5, side="buy", timestamp_ms=1000, trade_id="t1")

    agg.ingest_trade(trade)
    agg.ingest_trade(trade)

    assert agg.current("ETH-USD-PERP").volume == pytest.approx(3.0)


def test_closed_candles_are_immutable():
    agg = CandleAggregator("1m")
    agg.ingest("ETH-USD-PERP", 10.0, 1.0, 1000)
    agg.ingest("ETH-USD-PERP", 11.0, 1.0, 61000)
    first = agg.closed("ETH-USD-PERP")[0]

    with pytest.raises(dataclasses.FrozenInstanceError):
        first.close = 99.0  # type: ignore[misc]


def test_unknown_interval_falls_back_to_five_minutes(caplog):
    with caplog.at_level("WARNING"):
        agg = CandleAggregator("7m")
    assert agg.interval_ms == 5 * 60000
    assert any("unknown candle interval" in rec.message for rec in caplog.records)


def test_klines_rows_are_binance_compatible():
    agg = CandleAggregator("1m")
    agg.ingest("ETH-USD-PERP", 10.0, 1.0, 1000)

    rows = agg.klines("ETH-USD-PERP")
    assert rows == [[0, "10.0", "10.0", "10.0", "10.0", "1.0", 59999, "0", 0, "0", "0", "0"]]


def test_to_frame_columns_and_limit():
    agg = CandleAggregator("1m")
    for i in range(4):
        agg.ingest("ETH-USD-PERP", 10.0 + i, 1.0, i * 60000)

    df = agg.to_frame("ETH-USD-PERP", limit=2)
    assert df is not None
    assert list(df.columns) == ["timestamp", "T", "Open", "High", "Low", "Close", "Volume"]
    assert list(df["Close"]) == [12.0, 13.0]
    assert agg.to_frame("BTC-USD-PERP") is None


def test_has_enough_data_and_clearing():
    agg = CandleAggregator("1m")
    agg.ingest("ETH-USD-PERP", 10.0, 1.0, 0)
    agg.ingest("ETH-USD-PERP", 10.0, 1.0, 60000)
    agg.ingest("BTC-USD-PERP", 10.0, 1.0, 0)

    assert agg.has_enough_data("ETH-USD-PERP", 2)
    assert not agg.has_enough_data("ETH-USD-PERP", 3)

    agg.clear_market("ETH-USD-PERP")
    assert agg.count("ETH-USD-PERP") == 0
    assert agg.current("ETH-USD-PERP") is None
    assert agg.symbols() == ["BTC-USD-PERP"]

    agg.clear_all()
    assert agg.symbols() == []


def test_symbol_lookup_is_case_insensitive():
    agg = CandleAggregator("1m")
    agg.ingest("eth-usd-perp", 10.0, 1.0, 0)
    assert isinstance(agg.current("ETH-USD-PERP"), Candle)
