from __future__ import annotations

from exchange.events import (
    AccountEvent,
    FillEvent,
    NotificationEvent,
    OrderEvent,
    PositionEvent,
    TickerEvent,
    TradeEvent,
    parse_notification,
)


def test_ticker_uses_last_price_then_mark_price():
    (ev,) = parse_notification("ticker", {"market": "eth-usd-perp", "last_price": "3001.5", "bid": "3001", "timestamp": 1700})
    assert isinstance(ev, TickerEvent)
    assert ev.symbol == "ETH-USD-PERP"
    assert ev.last_price == 3001.5
    assert ev.bid == 3001.0
    assert ev.ask is None
    assert ev.timestamp_ms == 1700

    (ev2,) = parse_notification("ticker", {"channel": "ticker", "data": {"market": "BTC-USD-PERP", "mark_price": 60000}})
    assert ev2.last_price == 60000.0


def test_ticker_without_price_is_dropped():
    assert parse_notification("ticker", {"market": "ETH-USD-PERP"}) == []


def test_trades_list_skips_malformed_entries():
    events = parse_notification(
        "trades",
        [
            {"market": "ETH-USD-PERP", "price": "100", "size": "0.5", "side": "BUY", "timestamp": 60_000, "id": 9},
            {"market": "ETH-USD-PERP", "price": "bad", "size": "1", "timestamp": 1},
            {"price": "100", "size": "1", "timestamp": 1},
        ],
    )
    assert events == [TradeEvent(symbol="ETH-USD-PERP", price=100.0, size=0.5, side="buy", timestamp_ms=60_000, trade_id="9")]


def test_private_channels_map_to_typed_events():
    (pos,) = parse_notification("positions", {"market": "eth-usd-perp", "size": "1"})
    (order,) = parse_notification("orders", [{"market": "ETH-USD-PERP", "id": 42, "status": "filled"}])
    (fill,) = parse_notification("fills", {"market": "ETH-USD-PERP", "price": "1"})
    (acct,) = parse_notification("account", {"equity": "999.5"})

    assert isinstance(pos, PositionEvent) and pos.symbol == "ETH-USD-PERP"
    assert isinstance(order, OrderEvent) and order.order_id == "42" and order.status == "FILLED"
    assert isinstance(fill, FillEvent)
    assert isinstance(acct, AccountEvent) and acct.equity == 999.5


def test_unknown_method_is_kept_as_notification():
    (ev,) = parse_notification("funding", {"rate": "0.0001"})
    assert ev == NotificationEvent(method="funding", params={"rate": "0.0001"})
