"""
Tests for logger functionality.
"""

import json
import threading

from voterspheres.logger import StructuredLogger, configure_logger, get_logger, reset_logger


def make_logger(tmp_path, **kwargs):
    return StructuredLogger(name="test", log_dir=tmp_path, enable_console=False, **kwargs)


class TestStructuredLogger:
    """Test structured logging functionality."""

    def test_logger_creation(self, tmp_path):
        logger = make_logger(tmp_path, level="INFO")
        assert logger.logger.name == "test"
        assert logger.metrics["records_imported"] == 0
        assert logger.metrics["errors_by_type"] == {}

    def test_log_methods(self, tmp_path):
        logger = make_logger(tmp_path)
        logger.debug("Debug message")
        logger.info("Info message")
        logger.warning("Warning message")
        logger.error("Error message")
        logger.critical("Critical message")

    def test_context_written_as_json(self, tmp_path):
        logger = make_logger(tmp_path)
        logger.info("Skipping malformed record", line=4, errors=["Missing required field: office"])

        content = next(tmp_path.glob("*.log")).read_text()
        line = next(l for l in content.splitlines() if "Skipping malformed record" in l)
        context = json.loads(line.split(" | Context: ", 1)[1])
        assert context == {"errors": ["Missing required field: office"], "line": 4}

    def test_counters(self, tmp_path):
        logger = make_logger(tmp_path)
        logger.record_api_call()
        logger.increment("records_imported", 999)
        logger.increment("records_skipped")
        logger.record_error("MalformedRecord")
        logger.record_error("MalformedRecord")

        metrics = logger.get_metrics()
        assert metrics["api_calls"] == 1
        assert metrics["records_imported"] == 999
        assert metrics["records_skipped"] == 1
        assert metrics["errors_by_type"] == {"MalformedRecord": 2}

    def test_cache_hit_rate(self, tmp_path):
        logger = make_logger(tmp_path)
        assert "cache_hit_rate" not in logger.get_metrics()
        logger.increment("cache_hits", 2)
        logger.increment("cache_misses")
        assert logger.get_metrics()["cache_hit_rate"] == 0.667

    def test_counters_thread_safe(self, tmp_path):
        logger = make_logger(tmp_path)

        def bump():
            for _ in range(1000):
                logger.increment("jobs_succeeded")

        threads = [threading.Thread(target=bump) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert logger.metrics["jobs_succeeded"] == 8000

    def test_metrics_snapshot_is_a_copy(self, tmp_path):
        logger = make_logger(tmp_path)
        snapshot = logger.get_metrics()
        snapshot["errors_by_type"]["X"] = 1
        assert logger.metrics["errors_by_type"] == {}

    def test_log_file_creation(self, tmp_path):
        logger = make_logger(tmp_path)
        logger.info("Test message")

        log_files = list(tmp_path.glob("*.log"))
        assert len(log_files) == 1
        assert "Test message" in log_files[0].read_text()

    def test_file_disabled(self, tmp_path):
        logger = StructuredLogger(name="test", log_dir=tmp_path, enable_console=False, enable_file=False)
        logger.info("Nowhere")
        assert list(tmp_path.glob("*.log")) == []

    def test_metrics_summary(self, tmp_path):
        logger = make_logger(tmp_path)
        logger.increment("jobs_failed")
        logger.record_error("TimeoutError")
        logger.log_metrics_summary()

        content = next(tmp_path.glob("*.log")).read_text()
        assert "Jobs: 0 succeeded, 0 retried, 1 failed" in content
        assert "TimeoutError: 1" in content


class TestGlobalLogger:
    """Test global logger singleton."""

    def test_get_logger_singleton(self, tmp_path):
        reset_logger()
        logger1 = get_logger(log_dir=tmp_path, enable_console=False)
        logger2 = get_logger()
        assert logger1 is logger2

    def test_reset_logger(self, tmp_path):
        reset_logger()
        logger1 = get_logger(log_dir=tmp_path, enable_console=False)
        logger1.record_api_call()

        reset_logger()
        logger2 = get_logger(log_dir=tmp_path, enable_console=False)

        assert logger2 is not logger1
        assert logger2.metrics["api_calls"] == 0

    def test_configure_keeps_instance_and_metrics(self, tmp_path):
        reset_logger()
        logger = get_logger(log_dir=tmp_path, enable_console=False)
        logger.increment("cache_hits")

        configured = configure_logger(level="DEBUG", log_dir=tmp_path / "other", enable_console=False)

        assert configured is logger
        assert configured.metrics["cache_hits"] == 1
        assert (tmp_path / "other").exists()
