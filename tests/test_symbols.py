import pytest

from exchange.symbols import from_paradex, paradex_market, to_paradex


@pytest.mark.parametrize(
    "raw, market",
    [
        ("ETHUSDT", "ETH-USD-PERP"),
        ("btcusdt", "BTC-USD-PERP"),
        (" SOL ", "SOL-USD-PERP"),
        ("ETH-USD-PERP", "ETH-USD-PERP"),
    ],
)
def test_to_paradex(raw, market):
    assert to_paradex(raw) == market


def test_from_paradex():
    assert from_paradex("ETH-USD-PERP") == "ETHUSDT"
    assert from_paradex(to_paradex("DOGEUSDT")) == "DOGEUSDT"


def test_override_wins():
    assert paradex_market("ETHUSDT", override=" eth-usd-perp ") == "ETH-USD-PERP"
    assert paradex_market("ETHUSDT", override="") == "ETH-USD-PERP"
