from __future__ import annotations

import logging
import os
import random
import time
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


def env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return str(raw).strip().lower() in {"1", "true", "yes", "y", "on"}


def env_int(name: str, default: int) -> int:
    try:
        raw = os.getenv(name)
        if raw is None:
            return int(default)
        return int(float(str(raw).strip()))
    except Exception:
        return int(default)


def env_float(name: str, default: float) -> float:
    try:
        raw = os.getenv(name)
        if raw is None:
            return float(default)
        return float(str(raw).strip())
    except Exception:
        return float(default)


def env_str(name: str, default: str = "") -> str:
    raw = os.getenv(name)
    return default if raw is None else str(raw)


def safe_float(val: Any, default: float = 0.0) -> float:
    try:
        if val is None:
            return default
        return float(val)
    except Exception:
        return default


@dataclass(frozen=True)
class Backoff:
    base_s: float = 1.0
    max_s: float = 30.0
    jitter_pct: float = 0.25

    def delay(self, attempt: int) -> float:
        """Exponential backoff with jitter.

        attempt is 1-indexed.
        """
        a = max(1, int(attempt))
        d = min(self.max_s, self.base_s * (2 ** (a - 1)))
        j = max(0.0, float(self.jitter_pct))
        lo = d * (1.0 - j)
        hi = d * (1.0 + j)
        return random.uniform(lo, hi)


def now_ms() -> int:
    return int(time.time() * 1000)


INTERVAL_MS: dict[str, int] = {
    "1m": 60 * 1000,
    "3m": 3 * 60 * 1000,
    "5m": 5 * 60 * 1000,
    "15m": 15 * 60 * 1000,
    "30m": 30 * 60 * 1000,
    "1h": 60 * 60 * 1000,
    "2h": 2 * 60 * 60 * 1000,
    "4h": 4 * 60 * 60 * 1000,
    "1d": 24 * 60 * 60 * 1000,
}

DEFAULT_INTERVAL = "5m"


def interval_to_ms(interval: str) -> int:
    """Map a candle interval label to milliseconds.

    Unknown labels fall back to the default 5m bucket and are logged once per call.
    """
    s = str(interval or "").strip().lower()
    ms = INTERVAL_MS.get(s)
    if ms is None:
        logger.warning("unknown candle interval %r; using %s", interval, DEFAULT_INTERVAL)
        return INTERVAL_MS[DEFAULT_INTERVAL]
    return ms
