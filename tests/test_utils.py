from __future__ import annotations

import logging

import pytest

from engine.utils import Backoff, env_bool, env_float, env_int, interval_to_ms, safe_float


def test_backoff_grows_exponentially_and_caps() -> None:
    b = Backoff(base_s=1.0, max_s=5.0, jitter_pct=0.0)
    assert [b.delay(n) for n in (1, 2, 3, 4, 10)] == [1.0, 2.0, 4.0, 5.0, 5.0]
    assert b.delay(0) == 1.0


def test_backoff_jitter_stays_in_band() -> None:
    b = Backoff(base_s=2.0, max_s=30.0, jitter_pct=0.25)
    for _ in range(50):
        assert 1.5 <= b.delay(1) <= 2.5


def test_env_helpers_fall_back_on_garbage(monkeypatch) -> None:
    monkeypatch.setenv("X_INT", "7.9")
    monkeypatch.setenv("X_FLOAT", "nope")
    monkeypatch.setenv("X_BOOL", " Yes ")
    monkeypatch.delenv("X_MISSING", raising=False)

    assert env_int("X_INT", 1) == 7
    assert env_float("X_FLOAT", 2.5) == 2.5
    assert env_bool("X_BOOL") is True
    assert env_bool("X_MISSING", True) is True


def test_safe_float() -> None:
    assert safe_float("1.5") == 1.5
    assert safe_float(None, 3.0) == 3.0
    assert safe_float("abc") == 0.0


@pytest.mark.parametrize("label, ms", [("1m", 60_000), ("5M", 300_000), ("1h", 3_600_000), ("1d", 86_400_000)])
def test_interval_to_ms_known_labels(label, ms) -> None:
    assert interval_to_ms(label) == ms


def test_interval_to_ms_unknown_label_falls_back_to_5m(caplog) -> None:
    with caplog.at_level(logging.WARNING):
        assert interval_to_ms("7m") == 300_000
    assert any("unknown candle interval" in rec.message for rec in caplog.records)
