"""
Structured logging setup for the solver engine.

- Rich console handler for humans, or compact JSON for log shippers
- JSON file handler behind a non-blocking queue so the event loop never
  waits on disk
- Throttling for poll errors that can repeat every few seconds per order
"""

from __future__ import annotations

import atexit
import json
import logging
import queue
import sys
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Set

from rich.logging import RichHandler

LOGGER_NAME = "solver"

# Events that can repeat on every poll; one line per key per cooldown is enough
DEFAULT_THROTTLED_EVENTS = frozenset({
    "monitor_poll_error",
    "tx_requery_error",
    "context_gas_price_error",
    "context_balance_error",
    "cache_fetch_error",
})


class JsonFormatter(logging.Formatter):
    """Compact JSON formatter for structured log ingestion."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": record.created,
            "ts_iso": datetime.fromtimestamp(record.created).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "name": record.name,
        }
        msg = record.getMessage()
        # Structured events are already JSON; inline them instead of double-encoding
        try:
            data = json.loads(msg)
        except (json.JSONDecodeError, TypeError):
            data = None
        if isinstance(data, dict):
            payload.update(data)
        else:
            payload["msg"] = msg
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"), default=str)


class AsyncQueueHandler(logging.Handler):
    """
    Non-blocking handler that queues log records for a writer thread.

    Records are dropped (and counted) when the queue is full.
    """

    def __init__(self, target_handler: logging.Handler, max_queue_size: int = 10000):
        super().__init__()
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._target = target_handler
        self._shutdown = False
        self._dropped = 0
        self._thread = threading.Thread(target=self._worker, daemon=True, name="solver-log-writer")
        self._thread.start()
        atexit.register(self.close)

    @property
    def dropped(self) -> int:
        return self._dropped

    def emit(self, record: logging.LogRecord) -> None:
        if self._shutdown:
            return
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self._dropped += 1

    def _worker(self) -> None:
        while not self._shutdown or not self._queue.empty():
            try:
                record = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self._target.handle(record)
            except Exception:
                self.handleError(record)
            finally:
                self._queue.task_done()

    def close(self) -> None:
        if self._shutdown:
            return
        self._shutdown = True
        if self._thread.is_alive():
            self._thread.join(timeout=2.0)
        if self._dropped > 0:
            sys.stderr.write(f"[logging] Dropped {self._dropped} log records due to queue overflow\n")
        self._target.close()
        super().close()


class ThrottledFilter(logging.Filter):
    """
    Suppress repeats of noisy structured events.

    The first occurrence per (event, order_id) passes, duplicates are
    dropped for cooldown_sec.
    """

    def __init__(self, cooldown_sec: float = 30.0, throttled_events: Optional[Set[str]] = None):
        super().__init__()
        self._cooldown = cooldown_sec
        self._last_seen: Dict[str, float] = {}
        self._throttled_events = throttled_events or set(DEFAULT_THROTTLED_EVENTS)

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            data = json.loads(record.getMessage())
        except (json.JSONDecodeError, TypeError):
            return True
        if not isinstance(data, dict):
            return True

        event = data.get("event", "")
        if event not in self._throttled_events:
            return True

        now = time.time()
        key = f"{event}:{data.get('order_id', '')}"
        if now - self._last_seen.get(key, 0.0) < self._cooldown:
            return False
        self._last_seen[key] = now
        return True


def _resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def _console_handler(json_console: bool) -> logging.Handler:
    if json_console:
        handler: logging.Handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
        return handler
    handler = RichHandler(show_path=False, markup=False, rich_tracebacks=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


def _file_handler(file_path: str, async_file: bool) -> logging.Handler:
    target = logging.FileHandler(file_path)
    target.setFormatter(JsonFormatter())
    if not async_file:
        return target
    return AsyncQueueHandler(target, max_queue_size=10000)


def build_logger(
    name: str = LOGGER_NAME,
    level: int | str = logging.INFO,
    file_path: Optional[str] = None,
    json_console: bool = False,
    async_file: bool = True,
    throttle_warnings: bool = True,
) -> logging.Logger:
    """
    Build the engine logger. Calling it again only updates levels.

    Args:
        name: Logger name
        level: Minimum log level (int or name)
        file_path: JSON log file (None disables file logging)
        json_console: JSON lines on stdout instead of the rich console
        async_file: Write the file through AsyncQueueHandler
        throttle_warnings: Throttle repetitive poll errors on the console
    """
    level = _resolve_level(level)
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    console = _console_handler(json_console)
    if throttle_warnings:
        console.addFilter(ThrottledFilter(cooldown_sec=30.0))
    handlers = [console]
    if file_path:
        handlers.append(_file_handler(file_path, async_file))

    for handler in handlers:
        handler.setLevel(level)
        logger.addHandler(handler)
    logger.propagate = False
    return logger


def log_event(
    logger: logging.Logger,
    event: str,
    level: int = logging.INFO,
    **data: Any,
) -> None:
    """
    Log a structured event.

    Usage:
        log_event(log, "order_validated", order_id=oid, margin_pct=2.5)
    """
    logger.log(level, json.dumps({"event": event, **data}, default=str))


def make_log_event(logger: logging.Logger, level: int = logging.INFO) -> Callable[..., None]:
    """Bind log_event to a logger; the result fits every component's log_event hook."""

    def _log(event: str, **data: Any) -> None:
        # Errors go out at WARNING so they survive a quieter level
        lvl = logging.WARNING if event.endswith("_error") else level
        log_event(logger, event, level=lvl, **data)

    return _log
