"""Metric collection, alerting and system-health reporting."""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import enum
import inspect
import logging
import math
import re
import subprocess
from bisect import bisect_left
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from itertools import accumulate
from typing import Any, Callable, Protocol, Union

_log = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
_DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

_CPU_COMMAND = "top -bn1 | grep 'Cpu(s)' | awk '{print $2}' | cut -d'%' -f1"
_MEMORY_COMMAND = "free | grep Mem | awk '{printf \"%.2f\", $3/$2 * 100.0}'"


class MetricsError(Exception):
    """Raised when a metric or alert operation fails."""


class MetricType(enum.Enum):
    COUNTER = "Counter"
    GAUGE = "Gauge"
    HISTOGRAM = "Histogram"


class ThresholdOperator(enum.Enum):
    GREATER_THAN = "GreaterThan"
    LESS_THAN = "LessThan"
    EQUAL_TO = "EqualTo"
    NOT_EQUAL_TO = "NotEqualTo"

    def matches(self, value: float, threshold: float) -> bool:
        if self is ThresholdOperator.GREATER_THAN:
            return value > threshold
        if self is ThresholdOperator.LESS_THAN:
            return value < threshold
        if self is ThresholdOperator.EQUAL_TO:
            return abs(value - threshold) < 2.220446049250313e-16
        return abs(value - threshold) > 2.220446049250313e-16


class AlertSeverity(enum.Enum):
    CRITICAL = "Critical"
    WARNING = "Warning"
    INFO = "Info"


class AlertStatus(enum.Enum):
    FIRING = "Firing"
    RESOLVED = "Resolved"
    PENDING = "Pending"


class HealthStatus(enum.Enum):
    HEALTHY = "Healthy"
    WARNING = "Warning"
    CRITICAL = "Critical"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _format_number(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if float(value).is_integer() and abs(value) < 1e16:
        return str(int(value))
    return repr(float(value))


@dataclass
class Metric:
    """A single recorded sample."""

    name: str
    value: float
    timestamp: datetime
    labels: dict[str, str]
    metric_type: MetricType


@dataclass
class MetricConfig:
    """Description and retention settings of a metric."""

    name: str
    description: str
    metric_type: MetricType
    labels: list[str] = field(default_factory=list)
    interval: timedelta = timedelta(seconds=30)
    retention_period: timedelta = timedelta(hours=1)


@dataclass
class ThresholdCondition:
    metric: str
    operator: ThresholdOperator
    value: float
    duration: timedelta = timedelta(0)


@dataclass
class RateCondition:
    metric: str
    operator: ThresholdOperator
    value: float
    window: timedelta = timedelta(0)


@dataclass
class AnomalyCondition:
    metric: str
    deviation: float
    window: timedelta = timedelta(0)


AlertCondition = Union[ThresholdCondition, RateCondition, AnomalyCondition]


@dataclass
class Alert:
    """An alert rule and its current state."""

    name: str
    description: str
    condition: AlertCondition
    severity: AlertSeverity
    status: AlertStatus = AlertStatus.PENDING
    last_triggered: datetime | None = None
    last_resolved: datetime | None = None


@dataclass
class PerformanceMetrics:
    cpu_usage: float = 0.0
    memory_usage: float = 0.0
    disk_usage: float = 0.0
    network_in: float = 0.0
    network_out: float = 0.0
    active_connections: int = 0
    transaction_throughput: float = 0.0
    block_time: float = 0.0


@dataclass
class NetworkMetrics:
    peer_count: int = 0
    message_count: int = 0
    bandwidth_usage: float = 0.0
    latency_ms: float = 0.0
    dropped_connections: int = 0


@dataclass
class BlockchainMetrics:
    block_height: int = 0
    pending_transactions: int = 0
    confirmed_transactions: int = 0
    validator_count: int = 0
    staking_ratio: float = 0.0
    gas_price: float = 0.0


@dataclass
class SystemHealth:
    score: float
    status: HealthStatus
    last_check: datetime
    issues: list[str]


class AlertHandler(Protocol):
    def handle_alert(self, alert: Alert, value: float) -> Any: ...


class ConsoleAlertHandler:
    """Prints triggered alerts to standard output."""

    async def handle_alert(self, alert: Alert, value: float) -> None:
        print(
            f"[ALERT] {alert.name} - {alert.description} "
            f"(Value: {_format_number(value)}) - Severity: {alert.severity.value}"
        )


@dataclass
class _Instrument:
    name: str
    help: str
    metric_type: MetricType
    value: float = 0.0
    bucket_counts: list[int] = field(default_factory=lambda: [0] * len(_DEFAULT_BUCKETS))
    total: float = 0.0
    count: int = 0

    def apply(self, value: float) -> None:
        if self.metric_type is MetricType.COUNTER:
            self.value += value
        elif self.metric_type is MetricType.GAUGE:
            self.value = value
        else:
            index = bisect_left(_DEFAULT_BUCKETS, value)
            if index < len(_DEFAULT_BUCKETS):
                self.bucket_counts[index] += 1
            self.total += value
            self.count += 1

    def render(self) -> list[str]:
        help_text = self.help.replace("\\", "\\\\").replace("\n", "\\n")
        lines = [
            f"# HELP {self.name} {help_text}",
            f"# TYPE {self.name} {self.metric_type.value.lower()}",
        ]
        if self.metric_type is MetricType.HISTOGRAM:
            for bound, cumulative in zip(_DEFAULT_BUCKETS, accumulate(self.bucket_counts)):
                lines.append(f'{self.name}_bucket{{le="{_format_number(bound)}"}} {cumulative}')
            lines.append(f'{self.name}_bucket{{le="+Inf"}} {self.count}')
            lines.append(f"{self.name}_sum {_format_number(self.total)}")
            lines.append(f"{self.name}_count {self.count}")
        else:
            lines.append(f"{self.name} {_format_number(self.value)}")
        return lines


class MetricsManager:
    """Keeps metric history, exports metrics in text format and evaluates alerts."""

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or _utc_now
        self._history: dict[str, deque[Metric]] = {}
        self._configs: dict[str, MetricConfig] = {}
        self._alerts: dict[str, Alert] = {}
        self._instruments: dict[str, _Instrument] = {}
        self._handlers: list[AlertHandler] = []
        self.performance = PerformanceMetrics()
        self.network = NetworkMetrics()
        self.blockchain = BlockchainMetrics()
        self._monitor_task: asyncio.Task[None] | None = None

    def register_metric(self, config: MetricConfig) -> None:
        """Register a metric; its name must be valid and not yet registered."""
        if not _NAME_RE.match(config.name):
            raise MetricsError(f"Prometheus error: invalid metric name {config.name!r}")
        if not config.description:
            raise MetricsError("Prometheus error: empty help string")
        if config.name in self._instruments:
            raise MetricsError(f"Prometheus error: duplicate metrics collector registration attempted: {config.name}")
        self._configs[config.name] = config
        self._instruments[config.name] = _Instrument(
            name=config.name, help=config.description, metric_type=config.metric_type
        )

    async def record_metric(
        self, name: str, value: float, labels: dict[str, str] | None = None
    ) -> None:
        """Record a sample, drop expired history and evaluate alerts."""
        config = self._configs.get(name)
        if config is None:
            raise MetricsError("Metric not found")
        if config.metric_type is MetricType.COUNTER and value < 0:
            raise MetricsError("Counter cannot be decreased")
        now = self._clock()
        queue = self._history.setdefault(name, deque())
        queue.append(
            Metric(name=name, value=value, timestamp=now, labels=dict(labels or {}),
                   metric_type=config.metric_type)
        )
        while queue and now - queue[0].timestamp > config.retention_period:
            queue.popleft()
        self._instruments[name].apply(value)
        await self._check_alerts(name, value)

    def register_alert(self, alert: Alert) -> None:
        self._alerts[alert.name] = alert

    def add_alert_handler(self, handler: AlertHandler) -> None:
        self._handlers.append(handler)

    def metric_history(self, name: str, start_time: datetime, end_time: datetime) -> list[Metric]:
        """Samples of ``name`` whose timestamps lie within the inclusive range."""
        queue = self._history.get(name)
        if queue is None:
            raise MetricsError("Metric not found")
        return [metric for metric in queue if start_time <= metric.timestamp <= end_time]

    def alert_status(self, name: str) -> Alert:
        alert = self._alerts.get(name)
        if alert is None:
            raise MetricsError("Alert not found")
        return dataclasses.replace(alert)

    def all_alerts(self) -> list[Alert]:
        return [dataclasses.replace(alert) for alert in self._alerts.values()]

    def export_metrics(self) -> bytes:
        """All registered metrics in the text exposition format, sorted by name."""
        lines: list[str] = []
        for name in sorted(self._instruments):
            lines.extend(self._instruments[name].render())
        return "".join(line + "\n" for line in lines).encode("utf-8")

    def update_performance_metrics(self, metrics: PerformanceMetrics) -> None:
        self.performance = metrics

    def update_network_metrics(self, metrics: NetworkMetrics) -> None:
        self.network = metrics

    def update_blockchain_metrics(self, metrics: BlockchainMetrics) -> None:
        self.blockchain = metrics

    def system_health(self) -> SystemHealth:
        """Score the node's health from the latest performance and network figures."""
        perf, net = self.performance, self.network
        checks = [
            (perf.cpu_usage > 80.0, "High CPU usage detected"),
            (perf.memory_usage > 85.0, "High memory usage detected"),
            (net.latency_ms > 1000.0, "High network latency detected"),
            (net.peer_count < 3, "Low peer count"),
            (perf.block_time > 15000.0, "Slow block production"),
        ]
        score = 1.0
        issues: list[str] = []
        for failed, issue in checks:
            if failed:
                score -= 0.2
                issues.append(issue)
        score = max(score, 0.0)
        if score >= 0.8:
            status = HealthStatus.HEALTHY
        elif score >= 0.5:
            status = HealthStatus.WARNING
        else:
            status = HealthStatus.CRITICAL
        return SystemHealth(score=score, status=status, last_check=self._clock(), issues=issues)

    async def start_monitoring(self, interval: float = 30.0) -> None:
        """Start sampling CPU and memory usage in the background."""
        if self._monitor_task is not None and not self._monitor_task.done():
            return
        self._monitor_task = asyncio.create_task(self._monitor(interval))

    async def stop_monitoring(self) -> None:
        task, self._monitor_task = self._monitor_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _monitor(self, interval: float) -> None:
        readers = (("system_cpu_usage", read_cpu_usage), ("system_memory_usage", read_memory_usage))
        while True:
            for name, reader in readers:
                try:
                    value = await asyncio.to_thread(reader)
                    await self.record_metric(name, value)
                except MetricsError:
                    pass
            await asyncio.sleep(interval)

    async def _check_alerts(self, metric_name: str, value: float) -> None:
        for alert in list(self._alerts.values()):
            condition = alert.condition
            if not isinstance(condition, ThresholdCondition) or condition.metric != metric_name:
                continue
            if condition.operator.matches(value, condition.value):
                snapshot = dataclasses.replace(alert)
                alert.status = AlertStatus.FIRING
                alert.last_triggered = self._clock()
                await self._handle_alert(snapshot, value)

    async def _handle_alert(self, alert: Alert, value: float) -> None:
        for handler in self._handlers:
            result = handler.handle_alert(alert, value)
            if inspect.isawaitable(result):
                await result
        _log.warning(
            "Alert triggered: name=%s severity=%s value=%s",
            alert.name, alert.severity.value, value,
        )


def _read_shell_number(command: str) -> float:
    try:
        completed = subprocess.run(["sh", "-c", command], capture_output=True, check=False)
    except OSError as exc:
        raise MetricsError(f"System error: {exc}") from exc
    first_line = completed.stdout.split(b"\n", 1)[0].decode("latin-1")
    try:
        return float(first_line)
    except ValueError:
        return 0.0


def read_cpu_usage() -> float:
    """Current CPU usage in percent as reported by ``top``; 0.0 if unparsable."""
    return _read_shell_number(_CPU_COMMAND)


def read_memory_usage() -> float:
    """Current memory usage in percent as reported by ``free``; 0.0 if unparsable."""
    return _read_shell_number(_MEMORY_COMMAND)