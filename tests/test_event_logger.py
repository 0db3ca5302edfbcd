import json
import threading
from pathlib import Path


def test_event_logger_is_off_by_default(tmp_path, monkeypatch):
    out = tmp_path / "events.jsonl"
    monkeypatch.delenv("SCALPER_EVENT_LOG", raising=False)
    monkeypatch.setenv("SCALPER_EVENT_LOG_PATH", str(out))

    from engine.event_logger import _close_for_tests, emit_event

    emit_event(kind="unit_test", symbol="eth-usd-perp")
    _close_for_tests()

    assert not out.exists()


def test_event_logger_writes_jsonl(tmp_path, monkeypatch):
    out = tmp_path / "events.jsonl"

    monkeypatch.setenv("SCALPER_EVENT_LOG", "1")
    monkeypatch.setenv("SCALPER_EVENT_LOG_PATH", str(out))
    monkeypatch.setenv("SCALPER_RUN_ID", "run_123")

    from engine.event_logger import _close_for_tests, emit_event

    emit_event(kind="position_closed", symbol="eth-usd-perp", data={"reason": "stop_loss", "pnl": -1.5, "when": object()})
    _close_for_tests()

    lines = out.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    evt = json.loads(lines[0])

    assert evt["schema"] == "scalper_event_v1"
    assert evt["kind"] == "position_closed"
    assert evt["symbol"] == "ETH-USD-PERP"
    assert evt["run_id"] == "run_123"
    assert evt["data"]["reason"] == "stop_loss"
    assert evt["data"]["pnl"] == -1.5
    assert isinstance(evt["data"]["when"], str)


def test_event_logger_logs_error_when_parent_mkdir_fails(tmp_path, monkeypatch, caplog):
    monkeypatch.setattr(threading.Thread, "start", lambda self: None)

    from engine import event_logger as event_logger_mod

    sink = event_logger_mod._JsonlEventSink(path=tmp_path / "events" / "events.jsonl")
    target_parent = sink.path.parent
    orig_mkdir = Path.mkdir

    def _mkdir_maybe_fail(self, *args, **kwargs):  # noqa: ANN001
        if self == target_parent:
            raise OSError("mkdir denied")
        return orig_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", _mkdir_maybe_fail)

    with caplog.at_level("ERROR"):
        sink._run()  # noqa: SLF001

    assert any("failed to create parent directory" in rec.message for rec in caplog.records)


def test_event_logger_counts_drops_when_queue_is_full(tmp_path, monkeypatch, caplog):
    monkeypatch.setattr(threading.Thread, "start", lambda self: None)

    from engine import event_logger as event_logger_mod

    monkeypatch.setattr(event_logger_mod, "EVENT_LOG_MAX_QUEUE", 1)
    sink = event_logger_mod._JsonlEventSink(path=tmp_path / "events.jsonl")

    with caplog.at_level("WARNING"):
        for n in range(3):
            sink.emit({"kind": "close_order", "n": n})

    assert sink.dropped == 2
    assert any("queue full" in rec.message for rec in caplog.records)
