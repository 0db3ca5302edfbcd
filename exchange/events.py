"""Typed events delivered by StreamSession and PositionRiskMonitor.

Every event is an immutable dataclass. Consumers dispatch on the concrete type.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Union

from engine.utils import now_ms, safe_float


class SessionState(str, enum.Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    AUTHENTICATING = "AUTHENTICATING"
    AUTHENTICATED = "AUTHENTICATED"
    CLOSING = "CLOSING"


READY_STATES = frozenset({SessionState.CONNECTED, SessionState.AUTHENTICATED})

PUBLIC_CHANNELS = frozenset({"ticker", "trades", "orderbook"})
PRIVATE_CHANNELS = frozenset({"orders", "fills", "positions", "account"})


def _unwrap(params: Any) -> Any:
    # Some gateways nest the payload under {"channel": ..., "data": ...}.
    if isinstance(params, dict) and "data" in params and ("channel" in params or len(params) == 1):
        return params.get("data")
    return params


# ---------------------------------------------------------------------------
# Connectivity
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Connected:
    authenticated: bool = False
    ts_ms: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class Authenticated:
    ts_ms: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class Disconnected:
    code: int | None
    reason: str
    ts_ms: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class ErrorEvent:
    error: BaseException
    terminal: bool = False
    ts_ms: int = field(default_factory=now_ms)


# ---------------------------------------------------------------------------
# Market and account notifications
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TickerEvent:
    symbol: str
    last_price: float
    bid: float | None
    ask: float | None
    timestamp_ms: int
    raw: dict

    @classmethod
    def from_params(cls, params: Any) -> "TickerEvent | None":
        data = _unwrap(params)
        if not isinstance(data, dict):
            return None
        sym = str(data.get("market") or data.get("symbol") or "").strip().upper()
        last = safe_float(data.get("last_price") or data.get("mark_price"), 0.0)
        if not sym or last <= 0:
            return None
        bid = data.get("bid")
        ask = data.get("ask")
        return cls(
            symbol=sym,
            last_price=last,
            bid=safe_float(bid) if bid is not None else None,
            ask=safe_float(ask) if ask is not None else None,
            timestamp_ms=int(safe_float(data.get("timestamp"), float(now_ms()))),
            raw=dict(data),
        )


@dataclass(frozen=True)
class TradeEvent:
    symbol: str
    price: float
    size: float
    side: str
    timestamp_ms: int
    trade_id: str | None = None

    @classmethod
    def list_from_params(cls, params: Any) -> list["TradeEvent"]:
        data = _unwrap(params)
        items = data if isinstance(data, list) else [data]
        out: list[TradeEvent] = []
        for t in items:
            if not isinstance(t, dict):
                continue
            sym = str(t.get("market") or "").strip().upper()
            try:
                price = float(t["price"])
                size = float(t["size"])
                ts = int(t["timestamp"])
            except (KeyError, TypeError, ValueError):
                continue
            if not sym:
                continue
            tid = t.get("id")
            out.append(
                cls(
                    symbol=sym,
                    price=price,
                    size=size,
                    side=str(t.get("side") or "").lower(),
                    timestamp_ms=ts,
                    trade_id=str(tid) if tid is not None else None,
                )
            )
        return out


@dataclass(frozen=True)
class PositionEvent:
    """Position delta from the private `positions` channel (raw exchange shape)."""

    symbol: str
    data: dict


@dataclass(frozen=True)
class OrderEvent:
    symbol: str
    order_id: str | None
    status: str
    data: dict


@dataclass(frozen=True)
class FillEvent:
    symbol: str
    data: dict


@dataclass(frozen=True)
class AccountEvent:
    equity: float | None
    data: dict


@dataclass(frozen=True)
class NotificationEvent:
    """Notification on a channel this client does not model (kept for forward compatibility)."""

    method: str
    params: Any


SessionEvent = Union[
    Connected,
    Authenticated,
    Disconnected,
    ErrorEvent,
    TickerEvent,
    TradeEvent,
    PositionEvent,
    OrderEvent,
    FillEvent,
    AccountEvent,
    NotificationEvent,
]


def parse_notification(method: str, params: Any) -> list[SessionEvent]:
    """Turn one JSON-RPC notification into zero or more typed events."""
    if method == "ticker":
        ev = TickerEvent.from_params(params)
        return [ev] if ev is not None else []
    if method == "trades":
        return list(TradeEvent.list_from_params(params))
    if method in {"positions", "orders", "fills"}:
        data = _unwrap(params)
        items = data if isinstance(data, list) else [data]
        out: list[SessionEvent] = []
        for d in items:
            if not isinstance(d, dict):
                continue
            sym = str(d.get("market") or "").strip().upper()
            if method == "positions":
                out.append(PositionEvent(symbol=sym, data=dict(d)))
            elif method == "orders":
                oid = d.get("id")
                out.append(
                    OrderEvent(
                        symbol=sym,
                        order_id=str(oid) if oid is not None else None,
                        status=str(d.get("status") or "").upper(),
                        data=dict(d),
                    )
                )
            else:
                out.append(FillEvent(symbol=sym, data=dict(d)))
        return out
    if method == "account":
        data = _unwrap(params)
        if not isinstance(data, dict):
            return []
        eq = data.get("equity")
        return [AccountEvent(equity=safe_float(eq) if eq is not None else None, data=dict(data))]
    return [NotificationEvent(method=str(method), params=params)]
