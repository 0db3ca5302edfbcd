from __future__ import annotations

import dataclasses
import enum
import logging
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as futures_wait
from dataclasses import dataclass, field
from typing import Any, Union

from exchange.api import ParadexApi, round_to_step
from exchange.auth import EthMessageSigner, HmacSigner, credential_from_jwt
from exchange.errors import AuthError, ExchangeError, NetworkError, OrderSubmissionAmbiguous, ProtocolError
from exchange.events import (
    AccountEvent,
    Authenticated,
    Connected,
    Disconnected,
    ErrorEvent,
    FillEvent,
    NotificationEvent,
    OrderEvent,
    PositionEvent,
    TickerEvent,
    TradeEvent,
)
from exchange.rest_client import SignedRequestClient
from exchange.symbols import paradex_market
from exchange.ws import StreamSession

from .candles import CandleAggregator
from .config import ExchangeSettings, ScalperConfig, Signal
from .event_logger import emit_event
from .utils import Backoff, env_float, env_int, now_ms, safe_float

logger = logging.getLogger(__name__)

MONITOR_MAX_EVENTS = env_int("SCALPER_MONITOR_MAX_EVENTS", 5000)
CLOSE_WORKERS = env_int("SCALPER_CLOSE_WORKERS", 4)
CLOSE_TIMEOUT_S = env_float("SCALPER_CLOSE_TIMEOUT_S", 15.0)
CLOSE_POLL_S = env_float("SCALPER_CLOSE_POLL_S", 0.5)

REASON_STOP_LOSS = "stop_loss"
REASON_TAKE_PROFIT = "take_profit"
REASON_MAX_HOLD = "max_hold_time"
REASON_EXTERNAL = "external"


class PositionLifecycle(str, enum.Enum):
    OPEN = "OPEN"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"


@dataclass
class Position:
    symbol: str
    side: str  # "long" | "short"
    size: float
    entry_price: float
    current_price: float
    leverage: float
    margin_used: float
    unrealized_pnl: float = 0.0
    unrealized_roe: float = 0.0
    highest_roe: float = 0.0
    lowest_roe: float = 0.0
    opened_at_ms: int = 0
    updated_at_ms: int = 0
    lifecycle: PositionLifecycle = PositionLifecycle.OPEN
    close_reason: str | None = None

    @property
    def close_side(self) -> str:
        return "SELL" if self.side == "long" else "BUY"

    def copy(self) -> "Position":
        return dataclasses.replace(self)


def _to_ms(raw: Any, default: int) -> int:
    v = safe_float(raw, 0.0)
    if v <= 0:
        return int(default)
    # Seconds vs milliseconds epoch.
    return int(v * 1000) if v < 10**12 else int(v)


def position_from_api(data: dict, *, default_leverage: float, now: int | None = None) -> Position | None:
    """Convert an exchange position row. Returns None for a flat (size 0) position."""
    t = now_ms() if now is None else int(now)
    raw_size = safe_float(data.get("size"), 0.0)
    size = abs(raw_size)
    if size == 0:
        return None

    side_raw = str(data.get("side") or "").strip().lower()
    if side_raw in {"long", "buy"}:
        side = "long"
    elif side_raw in {"short", "sell"}:
        side = "short"
    else:
        side = "long" if raw_size > 0 else "short"

    entry = safe_float(data.get("entry_price") or data.get("average_entry_price"), 0.0)
    current = safe_float(data.get("mark_price"), 0.0) or entry
    leverage = safe_float(data.get("leverage"), 0.0) or float(default_leverage)
    margin = safe_float(data.get("margin_used"), 0.0)
    if margin <= 0 and leverage > 0:
        margin = entry * size / leverage

    if data.get("unrealized_pnl") is not None:
        pnl = safe_float(data.get("unrealized_pnl"), 0.0)
    else:
        pnl = ((current - entry) if side == "long" else (entry - current)) * size
    roe = (pnl / margin * 100.0) if margin > 0 else 0.0

    return Position(
        symbol=str(data.get("market") or "").strip().upper(),
        side=side,
        size=size,
        entry_price=entry,
        current_price=current,
        leverage=leverage,
        margin_used=margin,
        unrealized_pnl=pnl,
        unrealized_roe=roe,
        highest_roe=roe,
        lowest_roe=roe,
        opened_at_ms=_to_ms(data.get("created_at") or data.get("timestamp"), t),
        updated_at_ms=t,
    )


# ---------------------------------------------------------------------------
# Monitor events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PositionUpdate:
    position: Position


@dataclass(frozen=True)
class PositionClosed:
    symbol: str
    position: Position
    reason: str
    pnl: float
    roe: float
    ts_ms: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class OrderExecuted:
    symbol: str
    side: str
    size: float
    reduce_only: bool
    order: dict
    signal: Signal | None = None
    ts_ms: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class TickerUpdate:
    symbol: str
    price: float
    timestamp_ms: int


MonitorEvent = Union[PositionUpdate, PositionClosed, OrderExecuted, TickerUpdate, Connected, Disconnected, ErrorEvent]


@dataclass(frozen=True)
class MonitorStats:
    equity: float
    starting_equity: float
    daily_pnl: float
    total_pnl: float
    total_trades: int
    winning_trades: int
    win_rate: float
    tick_count: int
    positions: int
    exposure: float
    unrealized_pnl: float
    drawdown_pct: float


class PositionRiskMonitor:
    """Tracks live positions and enforces stop-loss / take-profit / max-hold exits.

    All position mutations happen under one lock. Close orders run on a worker pool so a slow
    exchange response for one symbol never blocks price processing for the others. A position
    leaves the live set only on a confirmed close: a FILLED order response or a flat snapshot.
    """

    def __init__(
        self,
        config: ScalperConfig,
        api: ParadexApi,
        *,
        session: StreamSession | None = None,
        aggregator: CandleAggregator | None = None,
        markets: list[str] | None = None,
        close_workers: int = CLOSE_WORKERS,
        close_timeout_s: float = CLOSE_TIMEOUT_S,
        close_poll_s: float = CLOSE_POLL_S,
        backoff: Backoff | None = None,
        max_events: int = MONITOR_MAX_EVENTS,
    ):
        self.config = config
        self.api = api
        self.session = session
        self.aggregator = aggregator
        self.markets = [paradex_market(m) for m in (markets or [])]

        self._close_timeout_s = max(0.1, float(close_timeout_s))
        self._close_poll_s = max(0.01, float(close_poll_s))
        self._backoff = backoff or Backoff(base_s=0.5, max_s=5.0, jitter_pct=0.2)

        self._lock = threading.RLock()
        self._positions: dict[str, Position] = {}
        self._opening: set[str] = set()
        self._prices: dict[str, float] = {}
        self._market_info: dict[str, dict] = {}
        self._inflight: dict[str, Future] = {}
        self._events: deque[MonitorEvent] = deque(maxlen=max(1, int(max_events)))

        self._pool = ThreadPoolExecutor(max_workers=max(1, int(close_workers)), thread_name_prefix="close_worker")
        self._accepting = True
        self._running = False
        self._stop_event = threading.Event()
        self._dispatcher: threading.Thread | None = None
        self._ticker: threading.Thread | None = None

        self.equity = 0.0
        self.starting_equity = 0.0
        self.daily_pnl = 0.0
        self.total_pnl = 0.0
        self.total_trades = 0
        self.winning_trades = 0
        self.tick_count = 0
        self.last_tick_ms = 0
        self.last_scan_ms = 0

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def positions(self) -> dict[str, Position]:
        with self._lock:
            return {sym: pos.copy() for sym, pos in self._positions.items()}

    def position(self, symbol: str) -> Position | None:
        with self._lock:
            pos = self._positions.get(str(symbol).strip().upper())
            return pos.copy() if pos is not None else None

    def last_price(self, symbol: str) -> float | None:
        with self._lock:
            return self._prices.get(str(symbol).strip().upper())

    def drain_events(self, *, max_items: int | None = None) -> list[MonitorEvent]:
        items: list[MonitorEvent] = []
        while self._events and (max_items is None or len(items) < int(max_items)):
            try:
                items.append(self._events.popleft())
            except IndexError:
                break
        return items

    def stats(self) -> MonitorStats:
        with self._lock:
            exposure = sum(p.size * p.current_price for p in self._positions.values())
            upnl = sum(p.unrealized_pnl for p in self._positions.values())
            win_rate = (self.winning_trades / self.total_trades) if self.total_trades else 0.0
            dd = (
                (self.starting_equity - self.equity) / self.starting_equity * 100.0
                if self.starting_equity > 0
                else 0.0
            )
            return MonitorStats(
                equity=float(self.equity),
                starting_equity=float(self.starting_equity),
                daily_pnl=float(self.daily_pnl),
                total_pnl=float(self.total_pnl),
                total_trades=int(self.total_trades),
                winning_trades=int(self.winning_trades),
                win_rate=float(win_rate),
                tick_count=int(self.tick_count),
                positions=len(self._positions),
                exposure=float(exposure),
                unrealized_pnl=float(upnl),
                drawdown_pct=float(dd),
            )

    # ------------------------------------------------------------------
    # Price path
    # ------------------------------------------------------------------

    def on_price_update(self, symbol: str, price: float) -> str | None:
        """Apply a price tick. Returns the exit reason when this tick triggered a close."""
        sym = str(symbol).strip().upper()
        px = safe_float(price, 0.0)
        if px <= 0:
            return None
        with self._lock:
            if not self._accepting:
                return None
            self._prices[sym] = px
            pos = self._positions.get(sym)
            if pos is None:
                return None
            self._apply_price(pos, px)
            reason = self._evaluate_exit(pos) if pos.lifecycle is PositionLifecycle.OPEN else None
            self._events.append(PositionUpdate(position=pos.copy()))
        if reason:
            self._submit_close(sym)
        return reason

    @staticmethod
    def _apply_price(pos: Position, px: float) -> None:
        diff = (px - pos.entry_price) if pos.side == "long" else (pos.entry_price - px)
        pos.current_price = px
        pos.unrealized_pnl = diff * pos.size
        pos.unrealized_roe = (pos.unrealized_pnl / pos.margin_used * 100.0) if pos.margin_used > 0 else 0.0
        pos.highest_roe = max(pos.highest_roe, pos.unrealized_roe)
        pos.lowest_roe = min(pos.lowest_roe, pos.unrealized_roe)
        pos.updated_at_ms = now_ms()

    def _evaluate_exit(self, pos: Position) -> str | None:
        # Caller holds self._lock. Fixed priority: stop-loss, take-profit, max-hold.
        cfg = self.config
        reason = None
        if pos.unrealized_roe <= cfg.stop_loss_roe:
            reason = REASON_STOP_LOSS
            logger.info("Stop loss triggered for %s (roe=%.2f <= %.2f)", pos.symbol, pos.unrealized_roe, cfg.stop_loss_roe)
        elif pos.unrealized_roe >= cfg.take_profit_roe:
            reason = REASON_TAKE_PROFIT
            logger.info(
                "Take profit triggered for %s (roe=%.2f >= %.2f)", pos.symbol, pos.unrealized_roe, cfg.take_profit_roe
            )
        else:
            held_min = (now_ms() - pos.opened_at_ms) / 60000.0
            if held_min >= cfg.max_hold_time_minutes:
                reason = REASON_MAX_HOLD
                logger.info(
                    "Max hold time reached for %s (%.1f >= %.1f min)", pos.symbol, held_min, cfg.max_hold_time_minutes
                )
        if reason is not None:
            pos.lifecycle = PositionLifecycle.CLOSING
            pos.close_reason = reason
        return reason

    # ------------------------------------------------------------------
    # Close path
    # ------------------------------------------------------------------

    def _submit_close(self, sym: str) -> None:
        with self._lock:
            # Registered before the worker can run so snapshots see the close as active.
            try:
                fut = self._pool.submit(self._close_worker, sym)
            except RuntimeError:
                fut = None
            else:
                self._inflight[sym] = fut
        if fut is None:
            logger.error("close pool unavailable; cannot close %s", sym)
            self._revert_to_open(sym)
            return
        fut.add_done_callback(lambda _f: self._clear_inflight(sym, _f))

    def _clear_inflight(self, sym: str, fut: Future) -> None:
        with self._lock:
            if self._inflight.get(sym) is fut:
                self._inflight.pop(sym, None)

    def _close_active(self, sym: str) -> bool:
        # Caller holds self._lock.
        fut = self._inflight.get(sym)
        return fut is not None and not fut.done()

    def _close_worker(self, sym: str) -> None:
        try:
            self._close_position(sym)
        except Exception:
            logger.error("close worker crashed for %s", sym, exc_info=True)
            self._revert_to_open(sym)

    def _close_position(self, sym: str) -> None:
        attempts = max(1, int(self.config.close_max_attempts))
        for attempt in range(1, attempts + 1):
            with self._lock:
                pos = self._positions.get(sym)
                if pos is None or pos.lifecycle is not PositionLifecycle.CLOSING:
                    return
                size = pos.size
                side = pos.close_side
                reason = pos.close_reason

            logger.info("Closing %s side=%s size=%s reason=%s attempt=%d/%d", sym, side, size, reason, attempt, attempts)
            try:
                resp = self.api.place_market_order(sym, side, size, reduce_only=True)
            except AuthError as e:
                logger.error("Close order for %s failed: authentication rejected: %s", sym, e)
                break
            except NetworkError as e:
                ambiguous = isinstance(e, OrderSubmissionAmbiguous)
                logger.warning("Close order for %s got no response (ambiguous=%s): %s; re-checking position", sym, ambiguous, e)
                state = self._recheck_position(sym)
                if state == "closed":
                    return
                if state == "unknown":
                    self._leave_closing(sym, "position state unknown after a close with no response")
                    return
                if attempt < attempts:
                    time.sleep(self._backoff.delay(attempt))
                continue
            except ProtocolError as e:
                logger.error("Close order for %s rejected: %s", sym, e)
                if attempt < attempts:
                    time.sleep(self._backoff.delay(attempt))
                continue

            order = resp if isinstance(resp, dict) else {}
            self._events.append(OrderExecuted(symbol=sym, side=side, size=size, reduce_only=True, order=order))
            emit_event(kind="close_order", symbol=sym, data={"side": side, "size": size, "reason": reason, "order": order})

            if str(order.get("status") or "").upper() == "FILLED" or self._await_flat(sym):
                self._finalize(sym)
                return
            logger.warning("Close order for %s not confirmed within %.1fs", sym, self._close_timeout_s)

            # At most one close order may rest on the book.
            order_id = str(order.get("id") or "").strip()
            if not order_id:
                self._leave_closing(sym, "unconfirmed close order has no id to cancel")
                return
            try:
                self.api.cancel_order(order_id)
            except ExchangeError as e:
                self._leave_closing(sym, f"cancel of close order {order_id} failed: {e}")
                return
            logger.info("Cancelled unconfirmed close order %s for %s", order_id, sym)
            state = self._recheck_position(sym)
            if state == "closed":
                return
            if state == "unknown":
                self._leave_closing(sym, "position state unknown after cancelling the close order")
                return
            if attempt < attempts:
                time.sleep(self._backoff.delay(attempt))

        self._revert_to_open(sym)

    def _verify_position(self, sym: str) -> str:
        """Re-read the exchange position. Returns "closed", "open" or "unknown"."""
        try:
            data = self.api.get_position(sym)
        except ExchangeError as e:
            logger.warning("Position re-check for %s failed: %s", sym, e)
            return "unknown"
        self.on_position_snapshot(data if data is not None else {"market": sym, "size": "0"})
        with self._lock:
            return "closed" if sym not in self._positions else "open"

    def _recheck_position(self, sym: str) -> str:
        """Re-read the position until the exchange answers or the close timeout runs out."""
        deadline = time.monotonic() + self._close_timeout_s
        n = 0
        while True:
            n += 1
            state = self._verify_position(sym)
            remaining = deadline - time.monotonic()
            if state != "unknown" or remaining <= 0:
                return state
            time.sleep(min(max(self._backoff.delay(n), self._close_poll_s), remaining))

    def _leave_closing(self, sym: str, why: str) -> None:
        # No further order is placed; the next position snapshot settles the state.
        logger.error("Close for %s left pending: %s; waiting for a position snapshot", sym, why)

    def _await_flat(self, sym: str) -> bool:
        deadline = time.monotonic() + self._close_timeout_s
        while True:
            with self._lock:
                if sym not in self._positions:
                    return True
            if self._verify_position(sym) == "closed":
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(self._close_poll_s)

    def _finalize(self, sym: str) -> PositionClosed | None:
        with self._lock:
            pos = self._positions.get(sym)
            if pos is None or pos.lifecycle is not PositionLifecycle.CLOSING:
                return None
            return self._finalize_locked(sym, pos.close_reason or REASON_EXTERNAL)

    def _finalize_locked(self, sym: str, reason: str) -> PositionClosed:
        # Caller holds self._lock.
        pos = self._positions.pop(sym)
        pos.lifecycle = PositionLifecycle.CLOSED
        pos.close_reason = reason
        pnl = float(pos.unrealized_pnl)
        roe = float(pos.unrealized_roe)

        self.total_trades += 1
        self.daily_pnl += pnl
        self.total_pnl += pnl
        if pnl > 0:
            self.winning_trades += 1

        ev = PositionClosed(symbol=sym, position=pos.copy(), reason=reason, pnl=pnl, roe=roe)
        self._events.append(ev)
        logger.info("Position closed %s reason=%s pnl=%.4f roe=%.2f", sym, reason, pnl, roe)
        emit_event(kind="position_closed", symbol=sym, data={"reason": reason, "pnl": pnl, "roe": roe, "side": pos.side})
        return ev

    def _revert_to_open(self, sym: str) -> None:
        with self._lock:
            pos = self._positions.get(sym)
            if pos is None or pos.lifecycle is not PositionLifecycle.CLOSING:
                return
            pos.lifecycle = PositionLifecycle.OPEN
            pos.close_reason = None
        logger.warning("Close for %s not confirmed; position back to OPEN for re-evaluation", sym)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def on_position_snapshot(self, api_position: dict) -> PositionClosed | None:
        """Apply an authoritative exchange position. A flat snapshot removes the local position."""
        if not isinstance(api_position, dict):
            return None
        sym = str(api_position.get("market") or "").strip().upper()
        if not sym:
            logger.debug("position snapshot without market: %s", api_position)
            return None
        fresh = position_from_api(api_position, default_leverage=self.config.leverage)

        with self._lock:
            cur = self._positions.get(sym)
            if fresh is None:
                if cur is None:
                    return None
                pending = cur.close_reason if cur.lifecycle is PositionLifecycle.CLOSING else None
                return self._finalize_locked(sym, pending or REASON_EXTERNAL)

            if cur is not None:
                fresh.opened_at_ms = cur.opened_at_ms
                fresh.highest_roe = max(cur.highest_roe, fresh.unrealized_roe)
                fresh.lowest_roe = min(cur.lowest_roe, fresh.unrealized_roe)
                fresh.lifecycle = cur.lifecycle
                fresh.close_reason = cur.close_reason
                if cur.lifecycle is PositionLifecycle.CLOSING and not self._close_active(sym):
                    # A close left pending with no worker behind it; the exchange says still open.
                    fresh.lifecycle = PositionLifecycle.OPEN
                    fresh.close_reason = None
                    logger.warning("Pending close for %s not filled; position back to OPEN for re-evaluation", sym)
                if cur.size != fresh.size:
                    logger.info("Position size for %s adopted from exchange: %s -> %s", sym, cur.size, fresh.size)
            else:
                logger.info("Tracking %s position %s size=%s entry=%s", sym, fresh.side, fresh.size, fresh.entry_price)
            self._positions[sym] = fresh
            self._events.append(PositionUpdate(position=fresh.copy()))
        return None

    def reconcile(self, api_positions: list[dict]) -> list[PositionClosed]:
        """Apply a full snapshot: local positions missing from it are treated as flat."""
        closed: list[PositionClosed] = []
        seen: set[str] = set()
        for row in api_positions or []:
            if not isinstance(row, dict):
                continue
            seen.add(str(row.get("market") or "").strip().upper())
            ev = self.on_position_snapshot(row)
            if ev is not None:
                closed.append(ev)
        with self._lock:
            missing = [s for s in self._positions if s not in seen]
        for sym in missing:
            ev = self.on_position_snapshot({"market": sym, "size": "0"})
            if ev is not None:
                closed.append(ev)
        return closed

    def sync_positions(self) -> bool:
        try:
            rows = self.api.get_positions()
        except ExchangeError as e:
            logger.warning("Failed to sync positions: %s", e)
            return False
        self.reconcile(rows)
        logger.info("Synced %d positions from exchange", len(rows))
        return True

    def refresh_equity(self) -> float | None:
        try:
            equity, _upnl = self.api.get_balance()
        except ExchangeError as e:
            logger.warning("Failed to refresh equity: %s", e)
            return None
        with self._lock:
            self.equity = float(equity)
            if self.starting_equity <= 0:
                self.starting_equity = float(equity)
        return float(equity)

    def load_market_info(self) -> None:
        for market in self.markets:
            try:
                info = self.api.get_market(market)
            except ExchangeError as e:
                logger.warning("Failed to load market info for %s: %s", market, e)
                continue
            with self._lock:
                self._market_info[market] = info
            self.api.set_leverage(market, self.config.leverage)

    # ------------------------------------------------------------------
    # Entries, ticks and scans
    # ------------------------------------------------------------------

    def on_signal(self, symbol: str, signal: Signal) -> dict | None:
        """Open a position for a qualifying signal. Returns the order response or None."""
        sym = paradex_market(symbol)
        with self._lock:
            if not self._accepting:
                return None
            if sym in self._positions or sym in self._opening:
                logger.debug("skip signal for %s: position already held or opening", sym)
                return None
            if len(self._positions) + len(self._opening) >= int(self.config.max_positions):
                logger.debug("skip signal for %s: max positions reached", sym)
                return None
            self._opening.add(sym)
            info = self._market_info.get(sym)
            price = self._prices.get(sym)
            equity = self.equity

        try:
            if info is None:
                info = self.api.get_market(sym)
                with self._lock:
                    self._market_info[sym] = info
            if not price:
                price = self.api.get_price(sym)
            if equity <= 0:
                equity = self.refresh_equity() or 0.0

            notional = equity * float(self.config.position_size_percent) / 100.0
            step = info.get("order_size_increment") or info.get("step_size")
            size = round_to_step(notional / float(price), step) if price else 0.0
            if size <= 0:
                logger.warning("skip signal for %s: size rounds to zero (equity=%.2f price=%s step=%s)", sym, equity, price, step)
                return None

            order = self.api.place_market_order(sym, signal.side, size)
        except OrderSubmissionAmbiguous as e:
            logger.error("Entry order for %s outcome unknown: %s; reconciling", sym, e)
            self._verify_position(sym)
            return None
        except ExchangeError as e:
            logger.error("Order execution failed for %s: %s", sym, e)
            return None
        finally:
            with self._lock:
                self._opening.discard(sym)

        logger.info("Order executed %s %s size=%s confidence=%.2f", sym, signal.side, size, signal.confidence)
        self._events.append(
            OrderExecuted(symbol=sym, side=signal.side, size=size, reduce_only=False, order=order, signal=signal)
        )
        emit_event(
            kind="entry_order",
            symbol=sym,
            data={"side": signal.side, "size": size, "confidence": signal.confidence, "order": order},
        )
        self._verify_position(sym)
        return order

    def tick(self) -> list[str]:
        """Periodic pass: counts the tick and re-evaluates exits so max-hold fires in quiet markets."""
        due: list[str] = []
        with self._lock:
            self.tick_count += 1
            self.last_tick_ms = now_ms()
            if self._accepting:
                for sym, pos in self._positions.items():
                    if pos.lifecycle is PositionLifecycle.OPEN and self._evaluate_exit(pos):
                        due.append(sym)
            tick_count = self.tick_count
        for sym in due:
            self._submit_close(sym)

        if tick_count % max(1, int(self.config.status_log_interval)) == 0:
            s = self.stats()
            logger.info(
                "Monitor status: ticks=%d equity=%.2f positions=%d daily_pnl=%.2f win_rate=%.1f%%",
                s.tick_count,
                s.equity,
                s.positions,
                s.daily_pnl,
                s.win_rate * 100.0,
            )
        return due

    def scan_due(self, now: int | None = None) -> bool:
        """True when a signal scan should run (and there is room for another position)."""
        t = now_ms() if now is None else int(now)
        interval_ms = int(self.config.scan_interval_ticks) * int(self.config.tick_interval_ms)
        with self._lock:
            if t - self.last_scan_ms < interval_ms:
                return False
            self.last_scan_ms = t
            if len(self._positions) >= int(self.config.max_positions):
                logger.debug("Max positions reached, skipping scan")
                return False
        return True

    # ------------------------------------------------------------------
    # Session dispatch
    # ------------------------------------------------------------------

    def handle_event(self, ev: Any) -> None:
        if isinstance(ev, TickerEvent):
            self._events.append(TickerUpdate(symbol=ev.symbol, price=ev.last_price, timestamp_ms=ev.timestamp_ms))
            self.on_price_update(ev.symbol, ev.last_price)
        elif isinstance(ev, TradeEvent):
            if self.aggregator is not None:
                self.aggregator.ingest_trade(ev)
        elif isinstance(ev, PositionEvent):
            self.on_position_snapshot(ev.data)
        elif isinstance(ev, AccountEvent):
            if ev.equity is not None:
                with self._lock:
                    self.equity = float(ev.equity)
        elif isinstance(ev, (OrderEvent, FillEvent)):
            logger.debug("%s for %s: %s", type(ev).__name__, ev.symbol, ev.data)
        elif isinstance(ev, Connected):
            self._events.append(ev)
            # Positions may have changed while disconnected.
            try:
                self._pool.submit(self.sync_positions)
            except RuntimeError:
                logger.debug("close pool shut down; skipping post-connect sync")
        elif isinstance(ev, (Disconnected, ErrorEvent)):
            self._events.append(ev)
            if isinstance(ev, ErrorEvent) and ev.terminal:
                logger.error("Stream session stopped: %s", ev.error)
        elif isinstance(ev, Authenticated):
            logger.debug("stream session authenticated")
        elif isinstance(ev, NotificationEvent):
            logger.debug("unhandled notification %s", ev.method)

    def _dispatch_loop(self) -> None:
        if self.session is None:
            logger.warning("monitor dispatch started without a stream session; nothing to consume")
            return
        while not self._stop_event.is_set():
            ev = self.session.next_event(timeout=0.25)
            if ev is None:
                continue
            try:
                self.handle_event(ev)
            except Exception:
                logger.error("monitor dispatch failed for %s", type(ev).__name__, exc_info=True)

    def _tick_loop(self) -> None:
        interval_s = max(0.01, float(self.config.tick_interval_ms) / 1000.0)
        while not self._stop_event.wait(interval_s):
            try:
                self.tick()
            except Exception:
                logger.error("monitor tick failed", exc_info=True)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def subscribe_channels(self) -> None:
        if self.session is None:
            return
        if self.session.has_credential:
            self.session.subscribe_positions()
            self.session.subscribe_orders()
            self.session.subscribe_fills()
            self.session.subscribe_account()
        for market in self.markets:
            self.session.subscribe_ticker(market)
            self.session.subscribe_trades(market)

    def start(self, *, run_ticks: bool = True) -> None:
        with self._lock:
            if self._running:
                logger.warning("position monitor already running")
                return
            self._running = True
            self._accepting = True
            self._stop_event.clear()

        logger.info("Starting position monitor for %d markets", len(self.markets))
        self.refresh_equity()
        self.load_market_info()
        self.sync_positions()

        if self.session is not None:
            self.subscribe_channels()
            self.session.connect()
            self._dispatcher = threading.Thread(target=self._dispatch_loop, name="monitor_dispatch", daemon=True)
            self._dispatcher.start()
        if run_ticks:
            self._ticker = threading.Thread(target=self._tick_loop, name="monitor_tick", daemon=True)
            self._ticker.start()

    def stop(self, *, timeout_s: float | None = None) -> None:
        """Stop price intake, wait for in-flight closes, then release the connection."""
        with self._lock:
            self._accepting = False
            self._running = False
            inflight = list(self._inflight.values())
        self._stop_event.set()

        for th in (self._dispatcher, self._ticker):
            if th is not None and th is not threading.current_thread():
                th.join(timeout=2.0)
        self._dispatcher = None
        self._ticker = None

        if inflight:
            wait_s = self._close_timeout_s if timeout_s is None else float(timeout_s)
            logger.info("Waiting up to %.1fs for %d in-flight close(s)", wait_s, len(inflight))
            _done, not_done = futures_wait(inflight, timeout=wait_s)
            if not_done:
                logger.warning("%d close order(s) still in flight at shutdown", len(not_done))
        self._pool.shutdown(wait=False, cancel_futures=True)

        if self.session is not None:
            self.session.disconnect()
        logger.info("Position monitor stopped")


def build_monitor(settings: ExchangeSettings, config: ScalperConfig) -> PositionRiskMonitor:
    """Wire REST client, stream session, aggregator and monitor from settings."""
    client = SignedRequestClient(
        base_url=settings.rest_url,
        api_key=settings.api_key,
        signer=HmacSigner(settings.api_secret) if settings.api_secret else None,
        account=settings.account_address,
        bootstrap_signer=EthMessageSigner(settings.private_key) if settings.private_key else None,
        initial_credential=credential_from_jwt(settings.jwt) if settings.jwt else None,
    )
    token_provider = client.credentials.token if settings.can_authenticate else None
    session = StreamSession(settings.ws_url, token_provider=token_provider)
    aggregator = CandleAggregator(config.candle_interval, config.max_klines)
    return PositionRiskMonitor(
        config,
        ParadexApi(client),
        session=session,
        aggregator=aggregator,
        markets=settings.markets,
        close_timeout_s=config.close_confirm_timeout_s,
    )
