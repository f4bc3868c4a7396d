"""
Tests for structured logging helpers.
"""

import json
import logging

from solver_engine.infra.logging_cfg import (
    JsonFormatter,
    ThrottledFilter,
    build_logger,
    make_log_event,
)


def _record(msg, level=logging.INFO):
    return logging.LogRecord("solver", level, __file__, 1, msg, None, None)


class TestJsonFormatter:
    def test_structured_message_inlined(self):
        line = JsonFormatter().format(_record(json.dumps({"event": "order_validated", "order_id": "o1"})))
        payload = json.loads(line)

        assert payload["event"] == "order_validated"
        assert payload["order_id"] == "o1"
        assert payload["level"] == "INFO"
        assert "msg" not in payload

    def test_plain_message_kept(self):
        payload = json.loads(JsonFormatter().format(_record("Shutdown complete")))
        assert payload["msg"] == "Shutdown complete"


class TestThrottledFilter:
    def test_repeats_suppressed_per_order(self):
        f = ThrottledFilter(cooldown_sec=60)
        first = _record(json.dumps({"event": "monitor_poll_error", "order_id": "o1"}))
        again = _record(json.dumps({"event": "monitor_poll_error", "order_id": "o1"}))
        other = _record(json.dumps({"event": "monitor_poll_error", "order_id": "o2"}))

        assert f.filter(first)
        assert not f.filter(again)
        assert f.filter(other)

    def test_other_events_pass(self):
        f = ThrottledFilter(cooldown_sec=60)
        record = _record(json.dumps({"event": "order_validated", "order_id": "o1"}))
        assert f.filter(record)
        assert f.filter(record)
        assert f.filter(_record("not json"))


class TestBuildLogger:
    def test_json_console(self, capsys):
        log = build_logger("solver.test.console", json_console=True, throttle_warnings=False)
        make_log_event(log)("order_failed", order_id="o1", reason="fill: reverted")

        payload = json.loads(capsys.readouterr().out.strip())
        assert payload["event"] == "order_failed"
        assert payload["reason"] == "fill: reverted"

    def test_file_output(self, tmp_path):
        path = tmp_path / "solver.log"
        log = build_logger(
            "solver.test.file",
            level="debug",
            file_path=str(path),
            async_file=False,
        )
        make_log_event(log)("engine_started", solver_address="0xsolver")
        for handler in log.handlers:
            handler.flush()

        payload = json.loads(path.read_text().strip())
        assert payload["event"] == "engine_started"
        assert log.level == logging.DEBUG
        assert log.propagate is False

    def test_idempotent(self):
        log = build_logger("solver.test.idempotent", json_console=True)
        count = len(log.handlers)
        again = build_logger("solver.test.idempotent", level=logging.WARNING, json_console=True)

        assert again is log
        assert len(again.handlers) == count
        assert all(h.level == logging.WARNING for h in again.handlers)
