"""Node logger: file logging, in-memory log history and simple metric recording."""

from __future__ import annotations

import itertools
import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field, replace
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any

MAX_HISTORY_SIZE = 1000

BLOCK_HEIGHT = "block_height"
TRANSACTION_COUNT = "transaction_count"
PEER_COUNT = "peer_count"
BLOCK_TIME = "block_time"
SHARD_LOAD = "shard_load"
NETWORK_LATENCY = "network_latency"
ERROR_COUNT = "error_count"
WARNING_COUNT = "warning_count"

_TRACE = 5
_LEVELS_BY_NAME = {
    "ERROR": logging.ERROR,
    "WARN": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
    "TRACE": _TRACE,
}
_LEVEL_NAMES_BY_NUMBER = {"1": "ERROR", "2": "WARN", "3": "INFO", "4": "DEBUG", "5": "TRACE"}
_LEVEL_RANK = {"ERROR": 0, "WARN": 1, "INFO": 2}

_logger_ids = itertools.count(1)


class LoggingError(Exception):
    """Raised when the logger cannot be configured or initialised."""


def _parse_level(text: str) -> str:
    """Return the canonical upper-case level name for ``text``."""
    stripped = text.strip()
    name = _LEVEL_NAMES_BY_NUMBER.get(stripped, stripped.upper())
    if name not in _LEVELS_BY_NAME:
        raise LoggingError(f"Configuration error: Invalid log level: {text}")
    return name


@dataclass
class LoggingConfig:
    """Settings of a node logger."""

    level: str = "INFO"
    file: str | None = None
    enable_metrics: bool = False
    console: bool = False


@dataclass
class LogEntry:
    """A message kept in the logger's history."""

    level: str
    message: str
    timestamp: int = field(default_factory=lambda: int(time.time()))
    module: str | None = None
    file: str | None = None
    line: int | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    def with_module(self, module: str) -> LogEntry:
        """Return a copy of this entry tagged with ``module``."""
        return replace(self, module=module, metadata=dict(self.metadata))

    def with_metadata(self, key: str, value: str) -> LogEntry:
        """Return a copy of this entry with one more metadata item."""
        return replace(self, metadata={**self.metadata, key: value})


@dataclass
class LogFilter:
    """Criteria for selecting entries from the log history."""

    min_level: str = "DEBUG"
    modules: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    time_range: tuple[int, int] | None = None

    def matches(self, entry: LogEntry) -> bool:
        rank = _LEVEL_RANK.get(self.min_level)
        level_match = rank is None or _LEVEL_RANK.get(entry.level, len(_LEVEL_RANK)) <= rank
        module_match = not self.modules or (
            entry.module is not None and any(m in entry.module for m in self.modules)
        )
        keyword_match = not self.keywords or any(k in entry.message for k in self.keywords)
        time_match = self.time_range is None or (
            self.time_range[0] <= entry.timestamp <= self.time_range[1]
        )
        return level_match and module_match and keyword_match and time_match


class MetricRecorder:
    """In-memory counters, gauges and histograms."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, int] = {}
        self._gauges: dict[str, float] = {}
        self._histograms: dict[str, list[float]] = {}

    def increment_counter(self, name: str) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + 1

    def record_histogram(self, name: str, value: float) -> None:
        with self._lock:
            self._histograms.setdefault(name, []).append(float(value))

    def set_gauge(self, name: str, value: float) -> None:
        with self._lock:
            self._gauges[name] = float(value)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Copy of every recorded value, grouped by kind."""
        with self._lock:
            return {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "histograms": {name: list(values) for name, values in self._histograms.items()},
            }


class Logger:
    """Writes node logs to a daily-rotated file and keeps a bounded history."""

    def __init__(self, config: LoggingConfig, log_dir: str | Path = "logs") -> None:
        directory = Path(log_dir)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise LoggingError(f"Initialization error: {exc}") from exc
        if config.file is None:
            raise LoggingError("Configuration error: Log file not specified")
        level_name = _parse_level(config.level)

        self._config = config
        self.metrics = MetricRecorder()
        self._history: deque[LogEntry] = deque(maxlen=MAX_HISTORY_SIZE)
        self._lock = threading.Lock()

        formatter = logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s thread=%(thread)d "
            "%(filename)s:%(lineno)d: %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%SZ",
        )
        formatter.converter = time.gmtime
        self._handlers: list[logging.Handler] = [
            TimedRotatingFileHandler(
                directory / config.file, when="midnight", utc=True, encoding="utf-8", delay=True
            )
        ]
        if config.console:
            self._handlers.append(logging.StreamHandler())

        self._logger = logging.getLogger(f"helixchain.node.{next(_logger_ids)}")
        self._logger.propagate = False
        self._logger.setLevel(_LEVELS_BY_NAME[level_name])
        for handler in self._handlers:
            handler.setFormatter(formatter)
            self._logger.addHandler(handler)

    @property
    def config(self) -> LoggingConfig:
        return self._config

    def _emit(self, level: int, message: str) -> None:
        self._logger.log(level, "%s", message, stacklevel=3)

    def _remember(self, entry: LogEntry) -> None:
        with self._lock:
            self._history.append(entry)

    def info(self, message: str) -> None:
        self._emit(logging.INFO, message)
        self._remember(LogEntry("INFO", message))

    def warn(self, message: str) -> None:
        self._emit(logging.WARNING, message)
        self._remember(LogEntry("WARN", message))
        self.metrics.increment_counter(WARNING_COUNT)

    def error(self, message: str) -> None:
        self._emit(logging.ERROR, message)
        self._remember(LogEntry("ERROR", message))
        self.metrics.increment_counter(ERROR_COUNT)

    def debug(self, message: str) -> None:
        self._emit(logging.DEBUG, message)
        self._remember(LogEntry("DEBUG", message))

    def log_with_metadata(self, level: str, message: str, metadata: dict[str, str]) -> None:
        """Log a message with extra key/value data; unknown levels log as INFO."""
        entry = LogEntry(level, message).with_metadata(
            "extra", json.dumps(metadata, separators=(",", ":"))
        )
        text = f"{message} - {metadata!r}"
        if level == "ERROR":
            self._emit(logging.ERROR, text)
            self.metrics.increment_counter(ERROR_COUNT)
        elif level == "WARN":
            self._emit(logging.WARNING, text)
            self.metrics.increment_counter(WARNING_COUNT)
        elif level == "DEBUG":
            self._emit(logging.DEBUG, text)
        else:
            self._emit(logging.INFO, text)
        self._remember(entry)

    def record_block(self, height: int, time_ms: float) -> None:
        self.metrics.set_gauge(BLOCK_HEIGHT, float(height))
        self.metrics.record_histogram(BLOCK_TIME, time_ms)

    def record_transaction(self) -> None:
        self.metrics.increment_counter(TRANSACTION_COUNT)

    def update_peer_count(self, count: float) -> None:
        self.metrics.set_gauge(PEER_COUNT, count)

    def update_shard_load(self, load: float) -> None:
        self.metrics.set_gauge(SHARD_LOAD, load)

    def record_network_latency(self, latency_ms: float) -> None:
        self.metrics.record_histogram(NETWORK_LATENCY, latency_ms)

    def set_log_level(self, level: str) -> None:
        """Change the log level; raise LoggingError for an unknown level."""
        name = _parse_level(level)
        self._config.level = name
        self._logger.setLevel(_LEVELS_BY_NAME[name])

    def log_history(self) -> list[LogEntry]:
        with self._lock:
            return list(self._history)

    def filtered_logs(self, log_filter: LogFilter) -> list[LogEntry]:
        with self._lock:
            return [entry for entry in self._history if log_filter.matches(entry)]

    def clear_history(self) -> None:
        with self._lock:
            self._history.clear()

    def metrics_summary(self) -> dict[str, float]:
        with self._lock:
            return {"total_logs": float(len(self._history))}

    def update_config(self, config: LoggingConfig) -> None:
        self._config = config

    def shutdown(self) -> None:
        """Log the shutdown and release the log handlers."""
        self.info("Logger shutting down")
        for handler in self._handlers:
            self._logger.removeHandler(handler)
            handler.close()
        self._handlers.clear()