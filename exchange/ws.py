from __future__ import annotations

import itertools
import json
import logging
import os
import queue
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Callable

import websocket

from engine.utils import env_float, env_int

from .errors import AuthenticationError, ConnectivityError, ExchangeError, ProtocolError
from .events import (
    PRIVATE_CHANNELS,
    READY_STATES,
    Authenticated,
    Connected,
    Disconnected,
    ErrorEvent,
    SessionEvent,
    SessionState,
    parse_notification,
)

logger = logging.getLogger(__name__)

WS_URL = os.getenv("PARADEX_WS_URL", "wss://ws.api.testnet.paradex.trade/v1")

WS_RECONNECT_BASE_S = env_float("PARADEX_WS_RECONNECT_BASE_S", 5.0)
WS_RECONNECT_CAP_S = env_float("PARADEX_WS_RECONNECT_CAP_S", 60.0)
WS_MAX_RECONNECT_ATTEMPTS = env_int("PARADEX_WS_MAX_RECONNECT_ATTEMPTS", 10)
WS_PING_SECS = env_float("PARADEX_WS_PING_SECS", 30.0)
WS_HEARTBEAT_TIMEOUT_S = env_float("PARADEX_WS_HEARTBEAT_TIMEOUT_S", 10.0)
WS_HANDSHAKE_TIMEOUT_S = env_float("PARADEX_WS_HANDSHAKE_TIMEOUT_S", 10.0)

# Session events are bounded to avoid unbounded memory growth when nobody drains them.
WS_MAX_EVENT_QUEUE = env_int("PARADEX_WS_MAX_EVENT_QUEUE", 5000)

Subscription = tuple[str, "str | None"]


def _sub_params(channel: str, symbol: str | None) -> dict:
    return {"channel": channel, "market": symbol} if symbol else {"channel": channel}


@dataclass
class _Pending:
    method: str
    params: Any
    future: Future


class StreamSession:
    """One logical JSON-RPC streaming connection.

    Owns the connection state machine, the subscription set (which survives reconnects) and
    the pending request table (which never outlives its connection). Everything the session
    observes is delivered as a typed event on one ordered queue; read it with `next_event()`
    or `drain_events()`.
    """

    def __init__(
        self,
        url: str = WS_URL,
        *,
        jwt: str | None = None,
        token_provider: Callable[[], str] | None = None,
        reconnect_base_s: float = WS_RECONNECT_BASE_S,
        reconnect_cap_s: float = WS_RECONNECT_CAP_S,
        max_reconnect_attempts: int = WS_MAX_RECONNECT_ATTEMPTS,
        ping_interval_s: float = WS_PING_SECS,
        heartbeat_timeout_s: float = WS_HEARTBEAT_TIMEOUT_S,
        handshake_timeout_s: float = WS_HANDSHAKE_TIMEOUT_S,
        max_event_queue: int = WS_MAX_EVENT_QUEUE,
        ws_factory: Callable[..., Any] | None = None,
    ):
        self._url = str(url)
        if token_provider is None and jwt:
            static_jwt = str(jwt)
            token_provider = lambda: static_jwt  # noqa: E731
        self._token_provider = token_provider

        self._reconnect_base_s = max(0.0, float(reconnect_base_s))
        self._reconnect_cap_s = max(self._reconnect_base_s, float(reconnect_cap_s))
        self._max_reconnect_attempts = max(0, int(max_reconnect_attempts))
        self._ping_interval_s = max(0.1, float(ping_interval_s))
        self._heartbeat_timeout_s = max(0.05, float(heartbeat_timeout_s))
        self._handshake_timeout_s = max(0.05, float(handshake_timeout_s))
        self._ws_factory = ws_factory or websocket.WebSocketApp

        self._lock = threading.RLock()
        self._state = SessionState.DISCONNECTED
        # Insertion-ordered set.
        self._subscriptions: dict[Subscription, None] = {}
        self._pending: dict[int, _Pending] = {}
        self._ids = itertools.count(1)
        self._reconnect_attempt = 0
        self._auth_failed = False

        self._ws_app: Any | None = None
        self._closed_for: Any | None = None
        self._thread: threading.Thread | None = None
        self._ping_thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._ready = threading.Event()

        self._max_event_queue = max(1, int(max_event_queue))
        self._events: queue.Queue[SessionEvent] = queue.Queue(maxsize=self._max_event_queue)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def reconnect_attempt(self) -> int:
        with self._lock:
            return self._reconnect_attempt

    @property
    def has_credential(self) -> bool:
        return self._token_provider is not None

    def subscriptions(self) -> list[Subscription]:
        with self._lock:
            return list(self._subscriptions)

    def is_ready(self) -> bool:
        with self._lock:
            return self._state in READY_STATES

    def wait_ready(self, timeout: float | None = None) -> bool:
        return self._ready.wait(timeout)

    def status(self) -> dict[str, Any]:
        with self._lock:
            running = self._thread is not None and self._thread.is_alive()
            return {
                "state": self._state.value,
                "running": bool(running),
                "subscriptions": len(self._subscriptions),
                "pending": len(self._pending),
                "reconnect_attempt": int(self._reconnect_attempt),
                "auth_failed": bool(self._auth_failed),
            }

    def _set_state(self, state: SessionState) -> None:
        # Caller holds self._lock.
        if self._state is not state:
            logger.debug("WS state %s -> %s", self._state.value, state.value)
            self._state = state

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                logger.debug("WS session already running")
                return
            self._stop_event.clear()
            self._ready.clear()
            self._auth_failed = False
            self._reconnect_attempt = 0
            self._set_state(SessionState.CONNECTING)
            logger.info("Connecting to Paradex WS %s", self._url)

            self._thread = threading.Thread(target=self._run, name="stream_session", daemon=True)
            self._thread.start()
            if self._ping_thread is None or not self._ping_thread.is_alive():
                self._ping_thread = threading.Thread(target=self._ping_loop, name="stream_ping", daemon=True)
                self._ping_thread.start()

    def disconnect(self, *, join_timeout_s: float = 5.0) -> None:
        """Intentional shutdown. Clears the subscription set; no reconnect follows."""
        with self._lock:
            self._stop_event.set()
            self._ready.clear()
            self._set_state(SessionState.CLOSING)
            self._subscriptions.clear()
            ws_app = self._ws_app
            t = self._thread
            p = self._ping_thread

        if ws_app is not None:
            self._close_transport(ws_app)

        # Join outside lock to avoid deadlocks.
        for th in (t, p):
            if th is not None and th is not threading.current_thread():
                th.join(timeout=float(join_timeout_s))

        with self._lock:
            self._ws_app = None
            self._set_state(SessionState.DISCONNECTED)
            pending = self._take_pending()
        self._fail_pending(pending, ConnectivityError("session disconnected"))

    def _run(self) -> None:
        while not self._stop_event.is_set():
            with self._lock:
                self._set_state(SessionState.CONNECTING)
            ws = self._ws_factory(
                self._url,
                on_open=self._on_open,
                on_message=self._on_message,
                on_error=self._on_error,
                on_close=self._on_close,
            )
            with self._lock:
                self._ws_app = ws
            try:
                ws.run_forever()
            except Exception:
                logger.warning("WS run_forever raised", exc_info=True)
            # Covers transports that end without invoking on_close.
            self._on_close(ws, None, "transport ended")

            if self._stop_event.is_set():
                break
            with self._lock:
                auth_failed = self._auth_failed
            if auth_failed:
                logger.error("WS authentication failed; not reconnecting until connect() is called again")
                break

            delay = self.next_reconnect_delay()
            if delay is None:
                err = ConnectivityError(f"gave up after {self._max_reconnect_attempts} reconnect attempts")
                logger.error("Paradex WS %s", err)
                self._emit(ErrorEvent(error=err, terminal=True))
                break
            logger.info("Scheduling WS reconnect (attempt=%d, delay=%.1fs)", self.reconnect_attempt, delay)
            if self._stop_event.wait(delay):
                break

        with self._lock:
            self._ws_app = None
            self._set_state(SessionState.DISCONNECTED)

    def next_reconnect_delay(self) -> float | None:
        """Count one failed cycle and return the delay before the next attempt.

        Returns None once the attempt ceiling is exceeded.
        """
        with self._lock:
            self._reconnect_attempt += 1
            attempt = self._reconnect_attempt
        if self._max_reconnect_attempts and attempt > self._max_reconnect_attempts:
            return None
        return min(self._reconnect_base_s * attempt, self._reconnect_cap_s)

    def _close_transport(self, ws: Any) -> None:
        try:
            ws.close()
        except Exception:
            logger.debug("WS close failed", exc_info=True)

    # ------------------------------------------------------------------
    # Transport callbacks
    # ------------------------------------------------------------------

    def _on_open(self, ws: Any) -> None:
        logger.info("Paradex WS transport open")
        # The handshake waits on responses that arrive on this callback thread.
        threading.Thread(target=self._handshake_safe, args=(ws,), name="stream_handshake", daemon=True).start()

    def _handshake_safe(self, ws: Any) -> None:
        try:
            self.handshake(ws)
        except Exception:
            logger.error("WS handshake crashed; closing transport", exc_info=True)
            self._close_transport(ws)

    def handshake(self, ws: Any) -> bool:
        """Authenticate (when a credential is configured) and replay the subscription set."""
        with self._lock:
            if self._closed_for is ws:
                logger.debug("WS transport closed before handshake; skipping")
                return False
            self._ws_app = ws
        authenticated = False
        if self._token_provider is not None:
            with self._lock:
                self._set_state(SessionState.AUTHENTICATING)
            try:
                token = self._token_provider()
                self._request(ws, "auth", {"jwt": token}).result(timeout=self._handshake_timeout_s)
            except (FutureTimeout, ConnectivityError) as exc:
                self._abort_handshake(ws, exc)
                return False
            except ExchangeError as exc:
                if isinstance(exc.__cause__, ConnectivityError):
                    # Token refresh could not reach the exchange; the credential was never judged.
                    self._abort_handshake(ws, exc)
                    return False
                err = exc if isinstance(exc, AuthenticationError) else AuthenticationError(f"WS authentication failed: {exc}")
                logger.error("Paradex WS authentication failed: %s", exc)
                with self._lock:
                    self._auth_failed = True
                self._emit(ErrorEvent(error=err, terminal=True))
                self._close_transport(ws)
                return False
            authenticated = True
            with self._lock:
                self._set_state(SessionState.AUTHENTICATED)
            logger.info("Paradex WS authenticated")
            self._emit(Authenticated())
        else:
            with self._lock:
                self._set_state(SessionState.CONNECTED)

        with self._lock:
            self._reconnect_attempt = 0
            subs = list(self._subscriptions)
        self._resubscribe(ws, subs)
        self._ready.set()
        self._emit(Connected(authenticated=authenticated))
        return True

    def _abort_handshake(self, ws: Any, exc: BaseException) -> None:
        reason = str(exc) or type(exc).__name__
        logger.warning("WS handshake interrupted (%s); closing transport for reconnect", reason)
        self._emit(ErrorEvent(error=ConnectivityError(f"handshake interrupted: {reason}"), terminal=False))
        self._close_transport(ws)

    def _resubscribe(self, ws: Any, subs: list[Subscription]) -> None:
        if not subs:
            return
        logger.info("Resubscribing to %d channels", len(subs))
        sent = [(sub, self._request(ws, "subscribe", _sub_params(*sub))) for sub in subs]
        for (channel, symbol), fut in sent:
            try:
                fut.result(timeout=self._handshake_timeout_s)
            except (FutureTimeout, ExchangeError) as exc:
                # Best-effort per entry; the subscription stays in the set for the next reconnect.
                logger.warning("Resubscribe failed for %s %s: %s", channel, symbol or "", exc)

    def _on_message(self, _ws: Any, message: str | bytes) -> None:
        try:
            msg = json.loads(message)
        except (TypeError, ValueError) as e:
            logger.warning("WS JSON parse error: %s (message truncated: %s)", e, str(message)[:200])
            return
        if not isinstance(msg, dict):
            logger.debug("Unknown WS message format: %s", str(message)[:200])
            return

        if msg.get("id") is not None:
            self._handle_response(msg)
            return

        method = msg.get("method")
        if not method:
            logger.debug("Unknown WS message format: %s", str(message)[:200])
            return

        params = msg.get("params")
        method = str(method)
        if method == "subscription" and isinstance(params, dict) and params.get("channel"):
            # Gateway form: {"method": "subscription", "params": {"channel": "trades.ETH-USD-PERP", "data": ...}}
            method = str(params["channel"]).split(".", 1)[0]

        for ev in parse_notification(method, params):
            self._emit(ev)

    def _handle_response(self, msg: dict) -> None:
        rid = msg.get("id")
        try:
            rid = int(rid)
        except (TypeError, ValueError):
            pass
        with self._lock:
            pending = self._pending.pop(rid, None)
        if pending is None:
            logger.warning("Dropping unmatched WS response id=%s", rid)
            return
        if pending.future.done():
            return

        err = msg.get("error")
        if err:
            code = err.get("code") if isinstance(err, dict) else None
            text = err.get("message") if isinstance(err, dict) else str(err)
            logger.warning(
                "WS request failed: method=%s params=%s id=%s code=%s message=%s",
                pending.method,
                pending.params,
                rid,
                code,
                text,
            )
            pending.future.set_exception(ProtocolError(code, str(text or ""), method=pending.method, request_id=rid))
            return
        pending.future.set_result(msg.get("result"))

    def _on_error(self, _ws: Any, error: Any) -> None:
        # Keep errors non-fatal; reconnect handles recovery.
        logger.warning("⚠️ Paradex WS error: %s", error)
        self._emit(ErrorEvent(error=ConnectivityError(str(error)), terminal=False))

    def _on_close(self, ws: Any, status_code: int | None, msg: Any) -> None:
        with self._lock:
            if ws is not None and self._closed_for is ws:
                return
            self._closed_for = ws
            self._ready.clear()
            if self._state is not SessionState.CLOSING:
                self._set_state(SessionState.DISCONNECTED)
            pending = self._take_pending()
        reason = "" if msg is None else (msg.decode("utf-8", "replace") if isinstance(msg, bytes) else str(msg))
        logger.info("🟡 Paradex WS closed: %s %s", status_code, reason)
        self._fail_pending(pending, ConnectivityError(f"connection closed ({status_code} {reason})".strip()))
        self._emit(Disconnected(code=status_code, reason=reason))

    def _take_pending(self) -> list[_Pending]:
        # Caller holds self._lock.
        pending = list(self._pending.values())
        self._pending = {}
        return pending

    @staticmethod
    def _fail_pending(pending: list[_Pending], err: Exception) -> None:
        for p in pending:
            if not p.future.done():
                p.future.set_exception(err)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def _request(self, ws: Any, method: str, params: Any = None) -> Future:
        rid = next(self._ids)
        fut: Future = Future()
        with self._lock:
            self._pending[rid] = _Pending(method=method, params=params, future=fut)
        msg: dict[str, Any] = {"jsonrpc": "2.0", "method": method, "id": rid}
        if params is not None:
            msg["params"] = params
        try:
            ws.send(json.dumps(msg))
        except (TypeError, ValueError, OSError, websocket.WebSocketException) as exc:
            with self._lock:
                self._pending.pop(rid, None)
            if not fut.done():
                fut.set_exception(ConnectivityError(f"WS send failed for {method}: {exc}"))
        return fut

    def request(self, method: str, params: Any = None, *, timeout_s: float | None = None) -> Any:
        """Send one request on the live connection and wait for its result."""
        with self._lock:
            ws = self._ws_app if self._state in READY_STATES else None
        if ws is None:
            raise ConnectivityError("WebSocket not connected")
        fut = self._request(ws, method, params)
        try:
            return fut.result(timeout=self._handshake_timeout_s if timeout_s is None else float(timeout_s))
        except FutureTimeout as exc:
            raise ConnectivityError(f"WS request {method} timed out") from exc

    def heartbeat_once(self) -> bool:
        """Send one liveness ping. A missing reply is handled like an unsolicited close."""
        with self._lock:
            ws = self._ws_app if self._state in READY_STATES else None
        if ws is None:
            return True
        fut = self._request(ws, "ping")
        try:
            fut.result(timeout=self._heartbeat_timeout_s)
        except ProtocolError:
            # The server answered; it is alive.
            return True
        except (FutureTimeout, ConnectivityError) as exc:
            logger.warning("WS heartbeat failed (%s); closing transport", exc or "timeout")
            self._close_transport(ws)
            self._on_close(ws, None, "heartbeat timeout")
            return False
        return True

    def _ping_loop(self) -> None:
        while not self._stop_event.wait(self._ping_interval_s):
            try:
                self.heartbeat_once()
            except Exception:
                logger.warning("WS heartbeat loop error", exc_info=True)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, channel: str, symbol: str | None = None) -> Future | None:
        """Add (channel, symbol) to the subscription set.

        Sent immediately when the session is ready, otherwise on the next (re)connect. Returns the
        request future when a request was sent.
        """
        ch = str(channel or "").strip()
        if not ch:
            raise ValueError("channel is required")
        if ch in PRIVATE_CHANNELS and self._token_provider is None:
            raise ValueError(f"Channel {ch} requires authentication")
        sym = str(symbol).strip().upper() if symbol else None
        with self._lock:
            self._subscriptions[(ch, sym)] = None
            ws = self._ws_app if self._state in READY_STATES else None
        if ws is None:
            return None
        fut = self._request(ws, "subscribe", _sub_params(ch, sym))
        fut.add_done_callback(lambda f: self._log_sub_failure(f, ch, sym))
        return fut

    def unsubscribe(self, channel: str, symbol: str | None = None) -> Future | None:
        ch = str(channel or "").strip()
        if not ch:
            raise ValueError("channel is required")
        sym = str(symbol).strip().upper() if symbol else None
        with self._lock:
            self._subscriptions.pop((ch, sym), None)
            ws = self._ws_app if self._state in READY_STATES else None
        if ws is None:
            return None
        logger.debug("Unsubscribing from %s %s", ch, sym or "")
        return self._request(ws, "unsubscribe", _sub_params(ch, sym))

    @staticmethod
    def _log_sub_failure(fut: Future, channel: str, symbol: str | None) -> None:
        exc = fut.exception()
        if exc is not None:
            logger.warning("Subscribe failed for %s %s: %s", channel, symbol or "", exc)

    def subscribe_ticker(self, market: str) -> Future | None:
        return self.subscribe("ticker", market)

    def subscribe_trades(self, market: str) -> Future | None:
        return self.subscribe("trades", market)

    def subscribe_orderbook(self, market: str) -> Future | None:
        return self.subscribe("orderbook", market)

    def subscribe_orders(self) -> Future | None:
        return self.subscribe("orders")

    def subscribe_fills(self) -> Future | None:
        return self.subscribe("fills")

    def subscribe_positions(self) -> Future | None:
        return self.subscribe("positions")

    def subscribe_account(self) -> Future | None:
        return self.subscribe("account")

    # ------------------------------------------------------------------
    # Event channel
    # ------------------------------------------------------------------

    def _emit(self, ev: SessionEvent) -> None:
        try:
            self._events.put_nowait(ev)
            return
        except queue.Full:
            pass
        try:
            self._events.get_nowait()
        except queue.Empty:
            pass
        logger.warning("session event queue limit hit (%d); oldest event evicted", self._max_event_queue)
        try:
            self._events.put_nowait(ev)
        except queue.Full:
            logger.warning("session event dropped: %s", type(ev).__name__)

    def next_event(self, timeout: float | None = None) -> SessionEvent | None:
        try:
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain_events(self, *, max_items: int | None = None) -> list[SessionEvent]:
        items: list[SessionEvent] = []
        while max_items is None or len(items) < int(max_items):
            try:
                items.append(self._events.get_nowait())
            except queue.Empty:
                break
        return items
