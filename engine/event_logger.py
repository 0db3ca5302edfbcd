"""Structured JSONL audit trail for monitor actions (entry orders, close orders, closed positions).

Off unless SCALPER_EVENT_LOG=1. Events go through a bounded queue to one writer thread, so
`emit_event` never blocks the close path and never raises.
"""

from __future__ import annotations

import atexit
import json
import logging
import os
import queue
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .utils import env_bool, env_float, env_int, env_str

logger = logging.getLogger(__name__)

ROOT = Path(__file__).resolve().parents[1]
SCHEMA = "scalper_event_v1"

EVENT_LOG_MAX_QUEUE = max(100, env_int("SCALPER_EVENT_LOG_MAX_QUEUE", 10000))
EVENT_LOG_FLUSH_SECS = max(0.05, env_float("SCALPER_EVENT_LOG_FLUSH_SECS", 0.25))
EVENT_LOG_BATCH = max(10, env_int("SCALPER_EVENT_LOG_BATCH", 200))


def _event_log_path() -> Path:
    p = env_str("SCALPER_EVENT_LOG_PATH", "").strip()
    base = Path(p).expanduser() if p else ROOT / "artifacts" / "events" / "events.jsonl"
    return base.resolve()


class _JsonlEventSink:
    def __init__(self, *, path: Path):
        self._path = Path(path).expanduser().resolve()
        self._q: queue.Queue[str] = queue.Queue(maxsize=EVENT_LOG_MAX_QUEUE)
        self._stop = threading.Event()
        self.dropped = 0
        self._writer = threading.Thread(target=self._run, name="jsonl_event_sink", daemon=True)
        self._writer.start()
        atexit.register(self.close)

    @property
    def path(self) -> Path:
        return self._path

    def emit(self, payload: dict[str, Any]) -> None:
        # Unknown value types (enums, decimals) are written as their str().
        line = json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)
        try:
            self._q.put_nowait(line)
        except queue.Full:
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 1000 == 0:
                logger.warning("event_logger: queue full, %d events dropped", self.dropped)

    def close(self) -> None:
        if not self._stop.is_set():
            self._stop.set()
            if self._writer.is_alive():
                self._writer.join(timeout=1.5)

    def _take_batch(self) -> list[str]:
        try:
            batch = [self._q.get(timeout=EVENT_LOG_FLUSH_SECS)]
        except queue.Empty:
            return []
        while len(batch) < EVENT_LOG_BATCH:
            try:
                batch.append(self._q.get_nowait())
            except queue.Empty:
                break
        return batch

    def _run(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError:
            logger.error("event_logger: failed to create parent directory %s; events disabled", self._path.parent)
            return

        while not (self._stop.is_set() and self._q.empty()):
            batch = self._take_batch()
            if not batch:
                continue
            try:
                with self._path.open("a", encoding="utf-8") as f:
                    f.write("\n".join(batch) + "\n")
            except OSError as exc:
                # The batch is lost; later events still get a fresh attempt.
                logger.warning("event_logger: dropped %d events, write failed: %s", len(batch), exc)


_SINK_LOCK = threading.Lock()
_SINK: _JsonlEventSink | None = None


def _get_sink() -> _JsonlEventSink | None:
    global _SINK
    if not env_bool("SCALPER_EVENT_LOG", False):
        return None
    with _SINK_LOCK:
        if _SINK is None:
            _SINK = _JsonlEventSink(path=_event_log_path())
        return _SINK


def emit_event(*, kind: str, symbol: str | None = None, data: dict[str, Any] | None = None) -> None:
    """Queue one audit event. Best effort: failures are logged at debug level only."""
    try:
        sink = _get_sink()
        if sink is None:
            return
        ts_ms = int(time.time() * 1000)
        payload: dict[str, Any] = {
            "schema": SCHEMA,
            "ts_ms": ts_ms,
            "ts": datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc).isoformat(),
            "pid": os.getpid(),
            "run_id": env_str("SCALPER_RUN_ID", "").strip(),
            "kind": str(kind),
        }
        sym = str(symbol or "").strip().upper()
        if sym:
            payload["symbol"] = sym
        if data:
            payload["data"] = data
        sink.emit(payload)
    except Exception:
        logger.debug("event_logger: emit failed", exc_info=True)


def _close_for_tests() -> None:
    global _SINK
    with _SINK_LOCK:
        sink, _SINK = _SINK, None
    if sink is not None:
        sink.close()
