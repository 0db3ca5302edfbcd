from __future__ import annotations

import logging

import pytest

from exchange.api import ParadexApi, round_to_step
from exchange.errors import ProtocolError
from exchange.rest_client import RestResult


class _FakeClient:
    def __init__(self, responses: dict[tuple[str, str], object] | None = None):
        self.calls: list[dict] = []
        self.responses = dict(responses or {})

    def call(self, method, path, params=None, *, authenticated=True, idempotent=None, timeout_s=None):
        self.calls.append(
            {"method": method, "path": path, "params": params, "authenticated": authenticated, "idempotent": idempotent}
        )
        res = self.responses.get((method, path), {})
        if isinstance(res, Exception):
            raise res
        return RestResult(data=res, status=200, fetched_at_ms=0)


@pytest.mark.parametrize(
    "size, step, expected",
    [
        (0.0066666, "0.001", 0.006),
        (0.3, 0.1, 0.3),
        (12.9, 1, 12.0),
        (1.23456, None, 1.23456),
        (0.0009, "0.001", 0.0),
    ],
)
def test_round_to_step_rounds_down(size, step, expected):
    assert round_to_step(size, step) == pytest.approx(expected)


def test_market_order_body_is_non_idempotent_with_client_id():
    client = _FakeClient({("POST", "/orders"): {"id": "o-1", "status": "NEW"}})
    api = ParadexApi(client)

    out = api.place_market_order("ETH-USD-PERP", "sell", 0.5, reduce_only=True, client_id="cid-1")

    assert out == {"id": "o-1", "status": "NEW"}
    call = client.calls[0]
    assert call["idempotent"] is False
    assert call["params"] == {
        "market": "ETH-USD-PERP",
        "side": "SELL",
        "type": "MARKET",
        "size": "0.5",
        "reduce_only": True,
        "client_id": "cid-1",
    }


def test_place_order_generates_client_id_when_missing():
    client = _FakeClient()
    ParadexApi(client).place_market_order("BTC-USD-PERP", "BUY", 1)
    assert len(client.calls[0]["params"]["client_id"]) == 32


def test_get_position_matches_market_case_insensitively():
    client = _FakeClient({("GET", "/positions"): {"results": [{"market": "BTC-USD-PERP"}, {"market": "ETH-USD-PERP", "size": "2"}]}})
    api = ParadexApi(client)

    assert api.get_position("eth-usd-perp") == {"market": "ETH-USD-PERP", "size": "2"}
    assert api.get_position("SOL-USD-PERP") is None


def test_get_balance_reads_equity_and_upnl():
    client = _FakeClient({("GET", "/account"): {"equity": "1500.5", "unrealized_pnl": "-3"}})
    assert ParadexApi(client).get_balance() == (1500.5, -3.0)


def test_public_market_data_is_unauthenticated():
    client = _FakeClient({("GET", "/markets/ETH-USD-PERP"): {"results": [{"symbol": "ETH-USD-PERP", "order_size_increment": "0.001"}]}})
    info = ParadexApi(client).get_market("ETH-USD-PERP")
    assert info["order_size_increment"] == "0.001"
    assert client.calls[0]["authenticated"] is False


def test_get_price_without_price_is_protocol_error():
    client = _FakeClient({("GET", "/tickers/ETH-USD-PERP"): {"market": "ETH-USD-PERP"}})
    with pytest.raises(ProtocolError):
        ParadexApi(client).get_price("ETH-USD-PERP")


def test_set_leverage_failure_is_logged_not_raised(caplog):
    client = _FakeClient({("POST", "/account/leverage"): ProtocolError(400, "already set")})
    with caplog.at_level(logging.WARNING):
        assert ParadexApi(client).set_leverage("ETH-USD-PERP", 10) is False
    assert any("set_leverage" in rec.message for rec in caplog.records)


def test_open_orders_filter_by_market():
    client = _FakeClient({("GET", "/orders"): [{"id": "a"}, "junk"]})
    assert ParadexApi(client).get_open_orders("ETH-USD-PERP") == [{"id": "a"}]
    assert client.calls[0]["params"] == {"status": "OPEN", "market": "ETH-USD-PERP"}
