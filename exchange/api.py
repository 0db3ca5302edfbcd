from __future__ import annotations

import logging
import math
import uuid
from typing import Any

from engine.utils import safe_float

from .errors import ExchangeError, ProtocolError
from .rest_client import SignedRequestClient

logger = logging.getLogger(__name__)


def _results(data: Any) -> list[dict]:
    """Paradex list endpoints return either a bare list or {"results": [...]}."""
    if isinstance(data, list):
        return [d for d in data if isinstance(d, dict)]
    if isinstance(data, dict) and isinstance(data.get("results"), list):
        return [d for d in data["results"] if isinstance(d, dict)]
    return []


def round_to_step(size: float, step: float | str | None) -> float:
    """Round a size down to the market step (never up: the exchange rejects oversize)."""
    st = safe_float(step, 0.0)
    if st <= 0:
        return float(size)
    n = math.floor(float(size) / st + 1e-9)
    decimals = max(0, -int(math.floor(math.log10(st)))) if st < 1 else 0
    return round(n * st, decimals)


class ParadexApi:
    """Typed REST surface used by the engine.

    All calls go through SignedRequestClient, so retry semantics follow the HTTP method:
    reads and cancels are idempotent, order placement is not.
    """

    def __init__(self, client: SignedRequestClient):
        self.client = client

    # ------------------------------------------------------------------
    # Market data (public)
    # ------------------------------------------------------------------

    def get_markets(self) -> list[dict]:
        return _results(self.client.call("GET", "/markets", authenticated=False).data)

    def get_market(self, market: str) -> dict:
        data = self.client.call("GET", f"/markets/{market}", authenticated=False).data
        rows = _results(data)
        if rows:
            return rows[0]
        return data if isinstance(data, dict) else {}

    def get_ticker(self, market: str) -> dict:
        data = self.client.call("GET", f"/tickers/{market}", authenticated=False).data
        return data if isinstance(data, dict) else {}

    def get_tickers(self) -> list[dict]:
        return _results(self.client.call("GET", "/tickers", authenticated=False).data)

    def get_price(self, market: str) -> float:
        t = self.get_ticker(market)
        px = safe_float(t.get("last_price") or t.get("mark_price"), 0.0)
        if px <= 0:
            raise ProtocolError(None, f"no price in ticker for {market}", method="GET /tickers")
        return px

    # ------------------------------------------------------------------
    # Account and positions
    # ------------------------------------------------------------------

    def get_account(self) -> dict:
        data = self.client.call("GET", "/account").data
        return data if isinstance(data, dict) else {}

    def get_balance(self) -> tuple[float, float]:
        """Returns (equity, unrealized_pnl)."""
        acct = self.get_account()
        equity = safe_float(acct.get("equity") or acct.get("margin_balance"), 0.0)
        return equity, safe_float(acct.get("unrealized_pnl"), 0.0)

    def get_positions(self) -> list[dict]:
        return _results(self.client.call("GET", "/positions").data)

    def get_position(self, market: str) -> dict | None:
        for p in self.get_positions():
            if str(p.get("market") or "").upper() == str(market).upper():
                return p
        return None

    def set_leverage(self, market: str, leverage: float) -> bool:
        try:
            self.client.call(
                "POST",
                "/account/leverage",
                {"market": market, "leverage": int(round(float(leverage)))},
                idempotent=False,
            )
            return True
        except ExchangeError as e:
            # Leverage may already be set; never fatal.
            logger.warning("set_leverage(%s, %s) failed: %s", market, leverage, e)
            return False

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def place_order(self, request: dict[str, Any]) -> dict:
        body = dict(request)
        body.setdefault("client_id", uuid.uuid4().hex)
        data = self.client.call("POST", "/orders", body, idempotent=False).data
        return data if isinstance(data, dict) else {}

    def place_market_order(
        self,
        market: str,
        side: str,
        size: float | str,
        *,
        reduce_only: bool = False,
        client_id: str | None = None,
    ) -> dict:
        req: dict[str, Any] = {
            "market": market,
            "side": str(side).upper(),
            "type": "MARKET",
            "size": str(size),
            "reduce_only": bool(reduce_only),
        }
        if client_id:
            req["client_id"] = client_id
        return self.place_order(req)

    def place_limit_order(
        self,
        market: str,
        side: str,
        size: float | str,
        price: float | str,
        *,
        reduce_only: bool = False,
        post_only: bool = False,
        client_id: str | None = None,
    ) -> dict:
        req: dict[str, Any] = {
            "market": market,
            "side": str(side).upper(),
            "type": "LIMIT",
            "size": str(size),
            "price": str(price),
            "reduce_only": bool(reduce_only),
            "post_only": bool(post_only),
        }
        if client_id:
            req["client_id"] = client_id
        return self.place_order(req)

    def cancel_order(self, order_id: str) -> dict:
        data = self.client.call("DELETE", f"/orders/{order_id}").data
        return data if isinstance(data, dict) else {}

    def cancel_all_orders(self, market: str | None = None) -> dict:
        data = self.client.call("DELETE", "/orders", {"market": market} if market else None).data
        return data if isinstance(data, dict) else {}

    def get_order(self, order_id: str) -> dict:
        data = self.client.call("GET", f"/orders/{order_id}").data
        return data if isinstance(data, dict) else {}

    def get_open_orders(self, market: str | None = None) -> list[dict]:
        params: dict[str, Any] = {"status": "OPEN"}
        if market:
            params["market"] = market
        return _results(self.client.call("GET", "/orders", params).data)

    def get_order_history(self, market: str | None = None, cursor: str | None = None, limit: int = 100) -> dict:
        params = {"market": market, "cursor": cursor, "limit": int(limit)}
        data = self.client.call("GET", "/orders/history", params).data
        return data if isinstance(data, dict) else {"results": _results(data)}

    def get_fills(self, market: str | None = None, cursor: str | None = None, limit: int = 100) -> dict:
        params = {"market": market, "cursor": cursor, "limit": int(limit)}
        data = self.client.call("GET", "/fills", params).data
        return data if isinstance(data, dict) else {"results": _results(data)}
