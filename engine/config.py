"""Scalper configuration and exchange settings.

ScalperConfig is read from YAML (``SCALPER_CONFIG_YAML``) and then overridden field by field
from ``SCALPER_<FIELD>`` environment variables. Exchange settings come from ``PARADEX_*``
environment variables, optionally backed by a JSON secrets file (``PARADEX_SECRETS_FILE``).

Environment variables:
    SCALPER_CONFIG_YAML         Path to the YAML config (optional)
    SCALPER_LEVERAGE            ... one per ScalperConfig field
    PARADEX_REST_URL / PARADEX_WS_URL
    PARADEX_API_KEY / PARADEX_API_SECRET
    PARADEX_ACCOUNT_ADDRESS / PARADEX_PRIVATE_KEY / PARADEX_JWT
    PARADEX_MARKETS             Comma-separated, e.g. "BTC-USD-PERP,ETHUSDT"
    PARADEX_SECRETS_FILE        JSON secrets file (chmod 600)
"""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from exchange.auth import load_secrets
from exchange.rest_client import REST_URL
from exchange.symbols import paradex_market
from exchange.ws import WS_URL

from .utils import DEFAULT_INTERVAL, INTERVAL_MS, env_str

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Signal:
    direction: str  # "LONG" | "SHORT"
    confidence: float = 0.0

    @property
    def side(self) -> str:
        return "BUY" if str(self.direction).upper() == "LONG" else "SELL"


@dataclass(frozen=True)
class ScalperConfig:
    leverage: float = 10.0
    position_size_percent: float = 2.0
    max_positions: int = 3
    stop_loss_roe: float = -10.0
    take_profit_roe: float = 15.0
    max_hold_time_minutes: float = 30.0
    tick_interval_ms: int = 1000
    scan_interval_ticks: int = 5
    status_log_interval: int = 5
    candle_interval: str = DEFAULT_INTERVAL
    max_klines: int = 100
    close_max_attempts: int = 3
    close_confirm_timeout_s: float = 10.0

    def validate(self) -> "ScalperConfig":
        errors: list[str] = []
        if self.leverage <= 0:
            errors.append(f"leverage must be > 0 (got {self.leverage})")
        if not (0 < self.position_size_percent <= 100):
            errors.append(f"position_size_percent must be in (0, 100] (got {self.position_size_percent})")
        if self.max_positions < 1:
            errors.append(f"max_positions must be >= 1 (got {self.max_positions})")
        if self.stop_loss_roe >= 0:
            errors.append(f"stop_loss_roe must be negative (got {self.stop_loss_roe})")
        if self.take_profit_roe <= 0:
            errors.append(f"take_profit_roe must be positive (got {self.take_profit_roe})")
        if self.max_hold_time_minutes <= 0:
            errors.append(f"max_hold_time_minutes must be > 0 (got {self.max_hold_time_minutes})")
        if self.tick_interval_ms <= 0:
            errors.append(f"tick_interval_ms must be > 0 (got {self.tick_interval_ms})")
        if self.scan_interval_ticks < 1:
            errors.append(f"scan_interval_ticks must be >= 1 (got {self.scan_interval_ticks})")
        if self.status_log_interval < 1:
            errors.append(f"status_log_interval must be >= 1 (got {self.status_log_interval})")
        if self.candle_interval not in INTERVAL_MS:
            errors.append(f"candle_interval must be one of {sorted(INTERVAL_MS)} (got {self.candle_interval!r})")
        if self.max_klines < 1:
            errors.append(f"max_klines must be >= 1 (got {self.max_klines})")
        if self.close_max_attempts < 1:
            errors.append(f"close_max_attempts must be >= 1 (got {self.close_max_attempts})")
        if errors:
            raise ValueError("Invalid scalper config: " + "; ".join(errors))
        return self


def _coerce(f: dataclasses.Field, raw: Any) -> Any:
    if f.type in ("int", int):
        return int(float(raw))
    if f.type in ("float", float):
        return float(raw)
    return str(raw).strip()


def _load_yaml(path: str | Path) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected YAML root mapping in {path}")
    # Either flat, or nested under a `scalper:` section.
    section = data.get("scalper")
    return dict(section) if isinstance(section, dict) else data


def load_scalper_config(path: str | Path | None = None, *, env: bool = True) -> ScalperConfig:
    """Build a validated ScalperConfig from YAML plus SCALPER_* env overrides."""
    src = path if path is not None else env_str("SCALPER_CONFIG_YAML", "").strip() or None
    raw: dict[str, Any] = _load_yaml(src) if src else {}

    fields = {f.name: f for f in dataclasses.fields(ScalperConfig)}
    unknown = sorted(set(raw) - set(fields))
    if unknown:
        logger.warning("Ignoring unknown scalper config keys: %s", ", ".join(unknown))

    values: dict[str, Any] = {}
    for name, f in fields.items():
        v = raw.get(name)
        if env:
            ev = os.getenv(f"SCALPER_{name.upper()}")
            if ev is not None and str(ev).strip() != "":
                v = ev
        if v is None:
            continue
        try:
            values[name] = _coerce(f, v)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid value for {name}: {v!r}") from exc

    return ScalperConfig(**values).validate()


@dataclass(frozen=True)
class ExchangeSettings:
    rest_url: str = REST_URL
    ws_url: str = WS_URL
    api_key: str = ""
    api_secret: str = ""
    account_address: str = ""
    private_key: str = ""
    jwt: str = ""
    markets: list[str] = field(default_factory=list)

    @property
    def can_authenticate(self) -> bool:
        return bool(self.jwt) or bool(self.account_address and self.private_key)


def parse_markets(raw: str) -> list[str]:
    out: list[str] = []
    for part in str(raw or "").split(","):
        p = part.strip()
        if not p:
            continue
        m = paradex_market(p)
        if m not in out:
            out.append(m)
    return out


def exchange_settings_from_env(*, require_credentials: bool = True) -> ExchangeSettings:
    """Read exchange settings; raises ValueError on missing markets or credentials."""
    api_key = env_str("PARADEX_API_KEY", "").strip()
    api_secret = env_str("PARADEX_API_SECRET", "").strip()
    account = env_str("PARADEX_ACCOUNT_ADDRESS", "").strip()
    private_key = env_str("PARADEX_PRIVATE_KEY", "").strip()

    secrets_path = env_str("PARADEX_SECRETS_FILE", "").strip()
    if secrets_path:
        secrets = load_secrets(secrets_path)
        api_key = api_key or secrets.api_key
        api_secret = api_secret or secrets.api_secret
        account = account or secrets.account_address
        private_key = private_key or secrets.private_key

    settings = ExchangeSettings(
        rest_url=env_str("PARADEX_REST_URL", REST_URL).strip() or REST_URL,
        ws_url=env_str("PARADEX_WS_URL", WS_URL).strip() or WS_URL,
        api_key=api_key,
        api_secret=api_secret,
        account_address=account,
        private_key=private_key,
        jwt=env_str("PARADEX_JWT", "").strip(),
        markets=parse_markets(env_str("PARADEX_MARKETS", "")),
    )

    if not settings.markets:
        raise ValueError("PARADEX_MARKETS must contain at least one market")
    if require_credentials:
        if not settings.account_address:
            raise ValueError("PARADEX_ACCOUNT_ADDRESS is required")
        if not settings.can_authenticate:
            raise ValueError("PARADEX_PRIVATE_KEY or PARADEX_JWT is required")
    return settings
