from __future__ import annotations

import re

_USDT_SUFFIX_RE = re.compile(r"USDT$")


def to_paradex(symbol: str) -> str:
    """ETHUSDT -> ETH-USD-PERP. Market names pass through unchanged."""
    s = str(symbol or "").strip().upper()
    if s.endswith("-PERP"):
        return s
    base = _USDT_SUFFIX_RE.sub("", s)
    return f"{base}-USD-PERP"


def from_paradex(market: str) -> str:
    """ETH-USD-PERP -> ETHUSDT."""
    base = str(market or "").strip().upper().split("-")[0]
    return f"{base}USDT"


def paradex_market(symbol: str, override: str | None = None) -> str:
    o = str(override or "").strip()
    return o.upper() if o else to_paradex(symbol)
