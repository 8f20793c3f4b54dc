"""
Structured logging system for VoterSpheres.

Provides centralized logging with console and file outputs, plus
counters for monitoring imports, cache health and background jobs.
"""

import json
import logging
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional


class StructuredLogger:
    """
    Centralized logger with support for console and file outputs.
    Tracks metrics for imports, cache tiers and warm jobs.
    """

    def __init__(
        self,
        name: str = "voterspheres",
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        enable_file: bool = True,
        enable_console: bool = True,
    ):
        """
        Initialize the structured logger.

        Args:
            name: Logger name
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_dir: Directory for log files (default: logs/)
            enable_file: Write logs to file
            enable_console: Output logs to console
        """
        self.logger = logging.getLogger(name)
        self._lock = threading.Lock()
        self.metrics = {
            "api_calls": 0,
            "pages_fetched": 0,
            "records_imported": 0,
            "records_skipped": 0,
            "cache_hits": 0,
            "cache_misses": 0,
            "cache_faults": 0,
            "jobs_succeeded": 0,
            "jobs_retried": 0,
            "jobs_failed": 0,
            "errors_by_type": {},
        }
        self.configure(level, log_dir, enable_file, enable_console)

    def configure(
        self,
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        enable_file: bool = True,
        enable_console: bool = True,
    ):
        """Rebuild handlers in place; metrics are kept."""
        self.logger.setLevel(getattr(logging, level.upper()))
        for handler in list(self.logger.handlers):
            handler.close()
        self.logger.handlers.clear()

        if enable_console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(getattr(logging, level.upper()))
            console_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            console_handler.setFormatter(console_formatter)
            self.logger.addHandler(console_handler)

        if enable_file:
            if log_dir is None:
                log_dir = Path("logs")
            log_dir.mkdir(parents=True, exist_ok=True)

            log_file = log_dir / f"voterspheres_{datetime.now().strftime('%Y%m%d')}.log"
            file_handler = logging.FileHandler(log_file, encoding='utf-8')
            file_handler.setLevel(logging.DEBUG)  # Always log everything to file
            file_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(threadName)s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            file_handler.setFormatter(file_formatter)
            self.logger.addHandler(file_handler)

    def debug(self, message: str, **kwargs):
        """Log debug message with optional context."""
        self._log(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs):
        """Log info message with optional context."""
        self._log(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning message with optional context."""
        self._log(logging.WARNING, message, kwargs)

    def error(self, message: str, **kwargs):
        """Log error message with optional context."""
        self._log(logging.ERROR, message, kwargs)

    def critical(self, message: str, **kwargs):
        """Log critical message with optional context."""
        self._log(logging.CRITICAL, message, kwargs)

    def _log(self, level: int, message: str, context: dict):
        """Internal logging method with context."""
        if context:
            message = f"{message} | Context: {json.dumps(context, default=str, sort_keys=True)}"
        self.logger.log(level, message)

    # Metric tracking methods

    def increment(self, metric: str, amount: int = 1):
        """Increment a named counter."""
        with self._lock:
            self.metrics[metric] = self.metrics.get(metric, 0) + amount

    def record_api_call(self):
        """Increment API call counter."""
        self.increment("api_calls")

    def record_error(self, error_type: str):
        """Count an error by type."""
        with self._lock:
            errors = self.metrics["errors_by_type"]
            errors[error_type] = errors.get(error_type, 0) + 1

    def get_metrics(self) -> dict:
        """Return a snapshot of current metrics."""
        with self._lock:
            snapshot = dict(self.metrics)
            snapshot["errors_by_type"] = dict(self.metrics["errors_by_type"])

        lookups = snapshot["cache_hits"] + snapshot["cache_misses"]
        if lookups > 0:
            snapshot["cache_hit_rate"] = round(snapshot["cache_hits"] / lookups, 3)
        return snapshot

    def log_metrics_summary(self):
        """Log a summary of current metrics."""
        metrics = self.get_metrics()

        self.info("=== Session Metrics ===")
        self.info(f"API Calls: {metrics['api_calls']} ({metrics['pages_fetched']} pages)")
        self.info(f"Records: {metrics['records_imported']} imported, {metrics['records_skipped']} skipped")
        self.info(
            f"Cache: {metrics['cache_hits']} hits, {metrics['cache_misses']} misses, "
            f"{metrics['cache_faults']} backend faults"
        )
        self.info(
            f"Jobs: {metrics['jobs_succeeded']} succeeded, {metrics['jobs_retried']} retried, "
            f"{metrics['jobs_failed']} failed"
        )

        if metrics["errors_by_type"]:
            self.info("Error Types:")
            for error_type, count in metrics["errors_by_type"].items():
                self.info(f"  {error_type}: {count}")


# Global logger instance
_global_logger: Optional[StructuredLogger] = None


def get_logger(
    name: str = "voterspheres",
    level: str = "INFO",
    **kwargs
) -> StructuredLogger:
    """
    Get or create the global logger instance.

    Args:
        name: Logger name
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        **kwargs: Additional arguments passed to StructuredLogger

    Returns:
        StructuredLogger instance
    """
    global _global_logger

    if _global_logger is None:
        _global_logger = StructuredLogger(name=name, level=level, **kwargs)

    return _global_logger


def configure_logger(level: str = "INFO", log_dir: Optional[Path] = None, **kwargs) -> StructuredLogger:
    """Apply runtime settings to the global logger.

    Module-level references obtained from get_logger() stay valid because
    the existing instance is reconfigured rather than replaced.
    """
    logger = get_logger(level=level, log_dir=log_dir, **kwargs)
    logger.configure(level=level, log_dir=log_dir, **kwargs)
    return logger


def reset_logger():
    """Reset the global logger (useful for testing)."""
    global _global_logger
    _global_logger = None
