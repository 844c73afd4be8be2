"""Observability utilities for the note store.

Provides persistent disk logging with rotation, per-operation timing
metrics and a context manager that ties the two together.
"""
import logging
import re
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from notestore.config import config

logger = logging.getLogger(__name__)

# Root of the package logger hierarchy
ROOT_LOGGER_NAME = "notestore"

# Default log directory (can be overridden via configure_logging)
DEFAULT_LOG_DIR = Path.home() / ".notestore" / "logs"

# Logging format with ISO 8601 timestamps
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: Union[int, str, None] = None,
    max_bytes: int = 10 * 1024 * 1024,  # 10 MB per file
    backup_count: int = 5,
    console: bool = True,
) -> Path:
    """Configure persistent file logging with rotation.

    Sets up a rotating file handler on the ``notestore`` logger hierarchy.
    Log files are rotated when they reach max_bytes, keeping backup_count
    old files. Calling it again replaces the previously installed handlers.

    Args:
        log_dir: Directory for log files. Defaults to ~/.notestore/logs/
        level: Logging level or level name (default: configured log_level)
        max_bytes: Maximum size per log file before rotation (default: 10 MB)
        backup_count: Number of rotated files to keep (default: 5)
        console: Also log to console (default: True)

    Returns:
        Path to the log directory
    """
    if level is None:
        level = config.log_level
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    log_path = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    log_path.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger(ROOT_LOGGER_NAME)
    root_logger.setLevel(level)

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    log_file = log_path / "notestore.log"
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    root_logger.info(
        f"Logging configured: {log_file} (max {max_bytes} bytes, {backup_count} backups)"
    )

    return log_path


def _sanitize_error_message(
    message: Optional[str], max_length: int = 200
) -> Optional[str]:
    """Make an error message safe to keep in metrics.

    Replaces the home directory with ``~``, flattens newlines, collapses
    runs of whitespace and truncates to ``max_length`` with an ellipsis.
    """
    if message is None:
        return None
    result = message.replace(str(Path.home()), "~")
    result = re.sub(r"\s+", " ", result).strip()
    if len(result) > max_length:
        result = result[: max_length - 3] + "..."
    return result


class OperationMetrics(BaseModel):
    """Running totals for one operation name."""

    count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_duration_ms: float = 0.0
    min_duration_ms: Optional[float] = None
    max_duration_ms: float = 0.0
    last_error: Optional[str] = None
    last_error_time: Optional[datetime] = None

    def add(self, duration_ms: float, success: bool, error: Optional[str]) -> None:
        self.count += 1
        self.total_duration_ms += duration_ms
        if self.min_duration_ms is None or duration_ms < self.min_duration_ms:
            self.min_duration_ms = duration_ms
        self.max_duration_ms = max(self.max_duration_ms, duration_ms)
        if success:
            self.success_count += 1
        else:
            self.error_count += 1
            self.last_error = _sanitize_error_message(error)
            self.last_error_time = datetime.now(timezone.utc)

    def report(self) -> Dict[str, Any]:
        average = self.total_duration_ms / self.count if self.count else 0.0
        return {
            "count": self.count,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "success_rate": self.success_count / self.count if self.count else 0.0,
            "avg_duration_ms": round(average, 2),
            "min_duration_ms": round(self.min_duration_ms or 0.0, 2),
            "max_duration_ms": round(self.max_duration_ms, 2),
            "last_error": self.last_error,
            "last_error_time": (
                self.last_error_time.isoformat() if self.last_error_time else None
            ),
        }


class MetricsSnapshot(BaseModel):
    """Everything a collector knows; also the layout of a metrics file."""

    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    saved_at: Optional[datetime] = None
    operations: Dict[str, OperationMetrics] = Field(default_factory=dict)


class MetricsCollector:
    """Thread-safe per-operation timing and error counts for one store.

    With a metrics file the counts survive restarts: the file is read on
    construction, written every ``save_interval`` recorded operations (0
    disables periodic writes) and whenever ``save`` is called. Without one
    the counts live in memory only.
    """

    def __init__(
        self,
        metrics_file: Optional[Union[str, Path]] = None,
        save_interval: int = 0,
    ):
        self._lock = Lock()
        self._metrics_file = Path(metrics_file) if metrics_file else None
        self._save_interval = save_interval
        self._unsaved = 0
        self._snapshot = self._restore()

    @property
    def metrics_file(self) -> Optional[Path]:
        return self._metrics_file

    def _restore(self) -> MetricsSnapshot:
        if self._metrics_file is None or not self._metrics_file.exists():
            return MetricsSnapshot()
        try:
            snapshot = MetricsSnapshot.model_validate_json(
                self._metrics_file.read_text(encoding="utf-8")
            )
        except (OSError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable metrics file {self._metrics_file}: {e}")
            return MetricsSnapshot()
        logger.debug(f"Restored metrics from {self._metrics_file}")
        return snapshot

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        """Add one finished operation to the totals for its name."""
        with self._lock:
            totals = self._snapshot.operations.setdefault(operation, OperationMetrics())
            totals.add(duration_ms, success, error)
            self._unsaved += 1
            if self._save_interval > 0 and self._unsaved >= self._save_interval:
                self._write_unlocked()

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Per-operation report, keyed by operation name."""
        with self._lock:
            return {
                name: totals.report()
                for name, totals in self._snapshot.operations.items()
            }

    def get_summary(self) -> Dict[str, Any]:
        """Totals across all operations since the metrics were started."""
        with self._lock:
            operations = self._snapshot.operations.values()
            total = sum(m.count for m in operations)
            succeeded = sum(m.success_count for m in operations)
            return {
                "started_at": self._snapshot.started_at.isoformat(),
                "uptime_seconds": (
                    datetime.now(timezone.utc) - self._snapshot.started_at
                ).total_seconds(),
                "total_operations": total,
                "total_success": succeeded,
                "total_errors": sum(m.error_count for m in operations),
                "overall_success_rate": succeeded / total if total else 1.0,
                "operations_tracked": sorted(self._snapshot.operations),
            }

    def save(self) -> bool:
        """Write the metrics file now.

        Returns:
            True if written; False without a metrics file or when the write
            failed (the failure is logged).
        """
        with self._lock:
            return self._write_unlocked()

    def _write_unlocked(self) -> bool:
        if self._metrics_file is None:
            return False
        self._snapshot.saved_at = datetime.now(timezone.utc)
        payload = self._snapshot.model_dump_json(indent=2)
        temp_file = self._metrics_file.with_name(self._metrics_file.name + ".tmp")
        try:
            self._metrics_file.parent.mkdir(parents=True, exist_ok=True)
            temp_file.write_text(payload, encoding="utf-8")
            temp_file.replace(self._metrics_file)
        except OSError as e:
            logger.error(f"Failed to save metrics to {self._metrics_file}: {e}")
            return False
        self._unsaved = 0
        return True


@contextmanager
def timed_operation(
    operation: str,
    collector: Optional[MetricsCollector] = None,
    **context: Any,
):
    """Context manager for timing and logging operations.

    Args:
        operation: Name of the operation being performed
        collector: Metrics collector to record into (None: log only)
        **context: Additional context to include in log messages

    Yields:
        A dictionary where you can store result info (e.g., result_count)

    Example:
        with timed_operation('search', metrics, query='test') as op:
            results = do_search()
            op['result_count'] = len(results)
    """
    correlation_id = str(uuid.uuid4())[:8]
    start_time = time.perf_counter()
    result_info: Dict[str, Any] = {'correlation_id': correlation_id}

    context_str = ', '.join(f'{k}={v}' for k, v in context.items())
    logger.debug(f"[{correlation_id}] START {operation} ({context_str})")

    error_msg = None
    success = True

    try:
        yield result_info
    except Exception as e:
        success = False
        error_msg = str(e)
        raise
    finally:
        duration_ms = (time.perf_counter() - start_time) * 1000
        if collector is not None:
            collector.record_operation(operation, duration_ms, success, error_msg)

        result_str = ', '.join(f'{k}={v}' for k, v in result_info.items() if k != 'correlation_id')
        status = 'OK' if success else f'ERROR: {error_msg}'
        logger.debug(
            f"[{correlation_id}] END {operation} "
            f"({duration_ms:.2f}ms) [{status}] {result_str}"
        )
