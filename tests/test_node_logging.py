import pytest

from helixchain.node_logging import (
    LogEntry,
    LogFilter,
    Logger,
    LoggingConfig,
    LoggingError,
    MetricRecorder,
)


def make_logger(tmp_path, level="DEBUG"):
    config = LoggingConfig(level=level, file="test.log", enable_metrics=False, console=False)
    return Logger(config, log_dir=tmp_path)


def test_logger_creation_writes_file(tmp_path):
    logger = make_logger(tmp_path, level="INFO")
    logger.info("hello node")
    logger.shutdown()
    content = (tmp_path / "test.log").read_text(encoding="utf-8")
    assert "hello node" in content
    assert "Logger shutting down" in content


def test_missing_file_is_rejected(tmp_path):
    with pytest.raises(LoggingError, match="Log file not specified"):
        Logger(LoggingConfig(level="INFO", file=None), log_dir=tmp_path)


def test_invalid_level_is_rejected(tmp_path):
    with pytest.raises(LoggingError, match="Invalid log level"):
        Logger(LoggingConfig(level="LOUD", file="x.log"), log_dir=tmp_path)


def test_log_filtering(tmp_path):
    logger = make_logger(tmp_path)
    logger.info("Test info message")
    logger.error("Test error message")
    filtered = logger.filtered_logs(LogFilter(min_level="ERROR"))
    assert len(filtered) == 1
    assert filtered[0].level == "ERROR"


def test_warn_filter_includes_errors(tmp_path):
    logger = make_logger(tmp_path)
    logger.debug("d")
    logger.info("i")
    logger.warn("w")
    logger.error("e")
    levels = [entry.level for entry in logger.filtered_logs(LogFilter(min_level="WARN"))]
    assert levels == ["WARN", "ERROR"]


def test_keyword_and_module_filters(tmp_path):
    logger = make_logger(tmp_path)
    logger.info("block accepted")
    logger.info("peer joined")
    found = logger.filtered_logs(LogFilter(keywords=["peer"]))
    assert [entry.message for entry in found] == ["peer joined"]
    assert logger.filtered_logs(LogFilter(modules=["network"])) == []


def test_time_range_filter(tmp_path):
    logger = make_logger(tmp_path)
    logger.info("now")
    assert logger.filtered_logs(LogFilter(time_range=(0, 10))) == []
    assert len(logger.filtered_logs(LogFilter(time_range=(0, 2**63)))) == 1


def test_history_is_bounded(tmp_path):
    logger = make_logger(tmp_path)
    for index in range(1005):
        logger.debug(f"m{index}")
    history = logger.log_history()
    assert len(history) == 1000
    assert history[0].message == "m5"
    assert history[-1].message == "m1004"


def test_warning_and_error_counters(tmp_path):
    logger = make_logger(tmp_path)
    logger.warn("w1")
    logger.warn("w2")
    logger.error("e1")
    counters = logger.metrics.snapshot()["counters"]
    assert counters == {"warning_count": 2, "error_count": 1}


def test_log_with_metadata(tmp_path):
    logger = make_logger(tmp_path)
    logger.log_with_metadata("ERROR", "failed", {"a": "1"})
    entry = logger.log_history()[0]
    assert entry.level == "ERROR"
    assert entry.metadata == {"extra": '{"a":"1"}'}
    assert logger.metrics.snapshot()["counters"]["error_count"] == 1


def test_record_metrics(tmp_path):
    logger = make_logger(tmp_path)
    logger.record_block(10, 25.0)
    logger.record_transaction()
    logger.update_peer_count(4)
    logger.update_shard_load(0.5)
    logger.record_network_latency(12.5)
    snap = logger.metrics.snapshot()
    assert snap["gauges"] == {"block_height": 10.0, "peer_count": 4.0, "shard_load": 0.5}
    assert snap["histograms"] == {"block_time": [25.0], "network_latency": [12.5]}
    assert snap["counters"] == {"transaction_count": 1}


def test_set_log_level(tmp_path):
    logger = make_logger(tmp_path, level="INFO")
    logger.set_log_level("debug")
    assert logger.config.level == "DEBUG"
    with pytest.raises(LoggingError):
        logger.set_log_level("verbose")


def test_summary_and_clear(tmp_path):
    logger = make_logger(tmp_path)
    logger.info("a")
    logger.info("b")
    assert logger.metrics_summary() == {"total_logs": 2.0}
    logger.clear_history()
    assert logger.log_history() == []


def test_update_config(tmp_path):
    logger = make_logger(tmp_path)
    new_config = LoggingConfig(level="WARN", file="other.log", enable_metrics=True)
    logger.update_config(new_config)
    assert logger.config.file == "other.log"
    assert logger.config.enable_metrics is True


def test_log_entry_builders_copy():
    entry = LogEntry("INFO", "msg")
    tagged = entry.with_module("network").with_metadata("k", "v")
    assert tagged.module == "network"
    assert tagged.metadata == {"k": "v"}
    assert entry.module is None
    assert entry.metadata == {}


def test_metric_recorder_snapshot_is_copy():
    recorder = MetricRecorder()
    recorder.record_histogram("h", 1.0)
    snap = recorder.snapshot()
    snap["histograms"]["h"].append(2.0)
    assert recorder.snapshot()["histograms"]["h"] == [1.0]