import asyncio
import subprocess
from datetime import datetime, timedelta, timezone

import pytest

from helixchain.metrics import (
    Alert,
    AlertSeverity,
    AlertStatus,
    ConsoleAlertHandler,
    HealthStatus,
    MetricConfig,
    MetricsError,
    MetricsManager,
    MetricType,
    NetworkMetrics,
    PerformanceMetrics,
    ThresholdCondition,
    ThresholdOperator,
    read_cpu_usage,
    read_memory_usage,
)

START = datetime(2024, 1, 1, tzinfo=timezone.utc)
FAR_PAST = datetime(2000, 1, 1, tzinfo=timezone.utc)
FAR_FUTURE = datetime(2100, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self):
        self.now = START

    def __call__(self):
        return self.now


class RecordingHandler:
    def __init__(self):
        self.calls = []

    async def handle_alert(self, alert, value):
        self.calls.append((alert, value))


class FailingHandler:
    def handle_alert(self, alert, value):
        raise MetricsError("handler failed")


def gauge(name="cpu", retention=timedelta(hours=1)):
    return MetricConfig(name=name, description="cpu usage", metric_type=MetricType.GAUGE,
                        retention_period=retention)


def cpu_alert(operator, threshold):
    return Alert(
        name="cpu_high",
        description="CPU too high",
        condition=ThresholdCondition(metric="cpu", operator=operator, value=threshold),
        severity=AlertSeverity.CRITICAL,
    )


@pytest.mark.asyncio
async def test_record_and_history():
    manager = MetricsManager()
    manager.register_metric(gauge())
    await manager.record_metric("cpu", 10.0, {"host": "a"})
    await manager.record_metric("cpu", 20.0)
    history = manager.metric_history("cpu", FAR_PAST, FAR_FUTURE)
    assert [m.value for m in history] == [10.0, 20.0]
    assert history[0].labels == {"host": "a"}
    assert history[0].metric_type is MetricType.GAUGE


@pytest.mark.asyncio
async def test_record_unknown_metric_raises():
    manager = MetricsManager()
    with pytest.raises(MetricsError, match="Metric not found"):
        await manager.record_metric("missing", 1.0)


def test_history_unknown_metric_raises():
    with pytest.raises(MetricsError, match="Metric not found"):
        MetricsManager().metric_history("missing", FAR_PAST, FAR_FUTURE)


def test_duplicate_registration_raises():
    manager = MetricsManager()
    manager.register_metric(gauge())
    with pytest.raises(MetricsError):
        manager.register_metric(gauge())


def test_invalid_name_raises():
    with pytest.raises(MetricsError):
        MetricsManager().register_metric(gauge(name="bad name"))


@pytest.mark.asyncio
async def test_negative_counter_increment_raises():
    manager = MetricsManager()
    manager.register_metric(MetricConfig("blocks", "blocks seen", MetricType.COUNTER))
    with pytest.raises(MetricsError):
        await manager.record_metric("blocks", -1.0)


@pytest.mark.asyncio
async def test_retention_drops_old_samples():
    clock = FakeClock()
    manager = MetricsManager(clock=clock)
    manager.register_metric(gauge(retention=timedelta(seconds=60)))
    await manager.record_metric("cpu", 1.0)
    clock.now = START + timedelta(seconds=120)
    await manager.record_metric("cpu", 2.0)
    history = manager.metric_history("cpu", FAR_PAST, FAR_FUTURE)
    assert [m.value for m in history] == [2.0]


@pytest.mark.asyncio
async def test_history_range_is_inclusive():
    clock = FakeClock()
    manager = MetricsManager(clock=clock)
    manager.register_metric(gauge())
    for offset in (0, 10, 20):
        clock.now = START + timedelta(seconds=offset)
        await manager.record_metric("cpu", float(offset))
    history = manager.metric_history("cpu", START + timedelta(seconds=10), START + timedelta(seconds=20))
    assert [m.value for m in history] == [10.0, 20.0]


@pytest.mark.asyncio
async def test_threshold_alert_fires_and_notifies():
    clock = FakeClock()
    manager = MetricsManager(clock=clock)
    manager.register_metric(gauge())
    manager.register_alert(cpu_alert(ThresholdOperator.GREATER_THAN, 80.0))
    handler = RecordingHandler()
    manager.add_alert_handler(handler)

    await manager.record_metric("cpu", 50.0)
    assert manager.alert_status("cpu_high").status is AlertStatus.PENDING
    assert handler.calls == []

    await manager.record_metric("cpu", 95.0)
    status = manager.alert_status("cpu_high")
    assert status.status is AlertStatus.FIRING
    assert status.last_triggered == START
    assert len(handler.calls) == 1
    alert, value = handler.calls[0]
    assert alert.name == "cpu_high"
    assert alert.status is AlertStatus.PENDING
    assert value == 95.0


@pytest.mark.asyncio
async def test_equal_to_operator():
    manager = MetricsManager()
    manager.register_metric(gauge())
    manager.register_alert(cpu_alert(ThresholdOperator.EQUAL_TO, 42.0))
    await manager.record_metric("cpu", 41.0)
    assert manager.alert_status("cpu_high").status is AlertStatus.PENDING
    await manager.record_metric("cpu", 42.0)
    assert manager.alert_status("cpu_high").status is AlertStatus.FIRING


@pytest.mark.asyncio
async def test_alert_on_other_metric_is_ignored():
    manager = MetricsManager()
    manager.register_metric(gauge(name="memory"))
    manager.register_alert(cpu_alert(ThresholdOperator.GREATER_THAN, 0.0))
    await manager.record_metric("memory", 99.0)
    assert manager.alert_status("cpu_high").status is AlertStatus.PENDING


@pytest.mark.asyncio
async def test_handler_error_propagates():
    manager = MetricsManager()
    manager.register_metric(gauge())
    manager.register_alert(cpu_alert(ThresholdOperator.LESS_THAN, 10.0))
    manager.add_alert_handler(FailingHandler())
    with pytest.raises(MetricsError, match="handler failed"):
        await manager.record_metric("cpu", 1.0)


def test_alert_status_unknown_raises():
    with pytest.raises(MetricsError, match="Alert not found"):
        MetricsManager().alert_status("nope")


def test_all_alerts_lists_registered():
    manager = MetricsManager()
    manager.register_alert(cpu_alert(ThresholdOperator.GREATER_THAN, 1.0))
    assert [a.name for a in manager.all_alerts()] == ["cpu_high"]


@pytest.mark.asyncio
async def test_export_counter_and_gauge():
    manager = MetricsManager()
    manager.register_metric(MetricConfig("blocks", "blocks seen", MetricType.COUNTER))
    manager.register_metric(gauge())
    await manager.record_metric("blocks", 3.0)
    text = manager.export_metrics().decode()
    assert "# HELP blocks blocks seen\n" in text
    assert "# TYPE blocks counter\n" in text
    assert "blocks 3\n" in text
    assert "# TYPE cpu gauge\n" in text
    assert text.index("# HELP blocks") < text.index("# HELP cpu")


@pytest.mark.asyncio
async def test_export_histogram():
    manager = MetricsManager()
    manager.register_metric(MetricConfig("latency", "latency seconds", MetricType.HISTOGRAM))
    await manager.record_metric("latency", 0.5)
    await manager.record_metric("latency", 20.0)
    text = manager.export_metrics().decode()
    assert "# TYPE latency histogram\n" in text
    assert 'latency_bucket{le="0.5"} 1\n' in text
    assert 'latency_bucket{le="+Inf"} 2\n' in text
    assert "latency_count 2\n" in text


def test_default_health_reports_low_peer_count():
    health = MetricsManager().system_health()
    assert health.score == pytest.approx(0.8)
    assert health.status is HealthStatus.HEALTHY
    assert health.issues == ["Low peer count"]


def test_health_degrades_with_issues():
    manager = MetricsManager()
    manager.update_performance_metrics(PerformanceMetrics(cpu_usage=95.0, memory_usage=90.0,
                                                          block_time=20000.0))
    manager.update_network_metrics(NetworkMetrics(peer_count=1, latency_ms=2000.0))
    health = manager.system_health()
    assert health.score == pytest.approx(0.0)
    assert health.status is HealthStatus.CRITICAL
    assert len(health.issues) == 5
    assert "High CPU usage detected" in health.issues


def test_health_warning_band():
    manager = MetricsManager()
    manager.update_network_metrics(NetworkMetrics(peer_count=5, latency_ms=2000.0))
    manager.update_performance_metrics(PerformanceMetrics(cpu_usage=90.0))
    health = manager.system_health()
    assert health.status is HealthStatus.WARNING
    assert health.issues == ["High CPU usage detected", "High network latency detected"]


@pytest.mark.asyncio
async def test_console_handler_prints(capsys):
    await ConsoleAlertHandler().handle_alert(cpu_alert(ThresholdOperator.GREATER_THAN, 80.0), 95.0)
    out = capsys.readouterr().out
    assert out == "[ALERT] cpu_high - CPU too high (Value: 95) - Severity: Critical\n"


def fake_run(stdout):
    def run(*args, **kwargs):
        return subprocess.CompletedProcess(args=args, returncode=0, stdout=stdout, stderr=b"")
    return run


def test_read_cpu_usage_parses_first_line(monkeypatch):
    monkeypatch.setattr(subprocess, "run", fake_run(b"12.5\nignored\n"))
    assert read_cpu_usage() == 12.5


def test_read_memory_usage_garbage_is_zero(monkeypatch):
    monkeypatch.setattr(subprocess, "run", fake_run(b"not a number"))
    assert read_memory_usage() == 0.0


def test_read_usage_os_error_raises(monkeypatch):
    def broken(*args, **kwargs):
        raise OSError("no shell")
    monkeypatch.setattr(subprocess, "run", broken)
    with pytest.raises(MetricsError, match="no shell"):
        read_cpu_usage()


@pytest.mark.asyncio
async def test_monitoring_records_system_metrics(monkeypatch):
    monkeypatch.setattr(subprocess, "run", fake_run(b"12.5\n"))
    manager = MetricsManager()
    manager.register_metric(gauge(name="system_cpu_usage"))
    manager.register_metric(gauge(name="system_memory_usage"))
    await manager.start_monitoring(interval=60.0)
    for _ in range(100):
        await asyncio.sleep(0.01)
        if manager.metric_history("system_memory_usage", FAR_PAST, FAR_FUTURE) if \
                "system_memory_usage" in manager._history else False:
            break
    await manager.stop_monitoring()
    cpu = manager.metric_history("system_cpu_usage", FAR_PAST, FAR_FUTURE)
    memory = manager.metric_history("system_memory_usage", FAR_PAST, FAR_FUTURE)
    assert [m.value for m in cpu] == [12.5]
    assert [m.value for m in memory] == [12.5]