"""
Structured logging configuration for dep-converge.

Provides consistent, machine-readable event logging for resolution runs,
manifest fetching and artifact relocation.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

_RESERVED_ATTRS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "getMessage",
    "exc_info",
    "exc_text",
    "stack_info",
    "taskName",
}


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "component": getattr(record, "component", record.name),
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


class EventLogger:
    """Structured logger emitting one record per named event."""

    def __init__(self, name: str = "dep_converge"):
        self.logger = logging.getLogger(f"dep_converge.{name}")
        self._setup_logger()
        self.run_context: Dict[str, Any] = {}

    def _setup_logger(self) -> None:
        """Setup logger with structured formatting."""
        if not self.logger.handlers:
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(StructuredFormatter())
            self.logger.addHandler(handler)
            self.logger.setLevel(logging.WARNING)
            self.logger.propagate = False

    def set_run_context(
        self, run_id: Optional[str] = None, manifest: Optional[str] = None
    ) -> None:
        """Set run context for logging."""
        self.run_context = {}
        if run_id:
            self.run_context["run_id"] = run_id
        if manifest:
            self.run_context["manifest"] = manifest

    def clear_run_context(self) -> None:
        """Clear run context."""
        self.run_context.clear()

    def _log(self, level: str, event_type: str, **kwargs) -> None:
        log_data = {"event_type": event_type, **self.run_context, **kwargs}
        getattr(self.logger, level)(event_type, extra=log_data)

    def info(self, event_type: str, **kwargs) -> None:
        """Log info level event."""
        self._log("info", event_type, **kwargs)

    def warning(self, event_type: str, **kwargs) -> None:
        """Log warning level event."""
        self._log("warning", event_type, **kwargs)

    def error(self, event_type: str, **kwargs) -> None:
        """Log error level event."""
        self._log("error", event_type, **kwargs)

    def debug(self, event_type: str, **kwargs) -> None:
        """Log debug level event."""
        self._log("debug", event_type, **kwargs)


_resolver_logger = EventLogger("resolver")
_fetcher_logger = EventLogger("fetcher")
_relocation_logger = EventLogger("relocation")

_ALL_LOGGERS = (_resolver_logger, _fetcher_logger, _relocation_logger)


def get_resolver_logger() -> EventLogger:
    """Get graph building and resolution logger."""
    return _resolver_logger


def get_fetcher_logger() -> EventLogger:
    """Get manifest fetching logger."""
    return _fetcher_logger


def get_relocation_logger() -> EventLogger:
    """Get artifact relocation logger."""
    return _relocation_logger


def log_resolution_start(run_id: str, manifest: str) -> None:
    """Log the start of a resolution run."""
    logger = get_resolver_logger()
    logger.set_run_context(run_id, manifest)
    logger.info("resolution_started", run_id=run_id, manifest=manifest)


def log_resolution_complete(
    run_id: str,
    duration_ms: int,
    node_count: int,
    selected_count: int,
    conflict_count: int = 0,
) -> None:
    """Log the end of a resolution run."""
    logger = get_resolver_logger()
    logger.info(
        "resolution_completed",
        run_id=run_id,
        duration_ms=duration_ms,
        node_count=node_count,
        selected_count=selected_count,
        conflict_count=conflict_count,
    )
    logger.clear_run_context()


def log_manifest_fetch(
    coordinate: str,
    version: str,
    repository: str,
    found: bool,
    duration_ms: Optional[float] = None,
) -> None:
    """Log a manifest fetch result."""
    logger = get_fetcher_logger()

    log_data = {
        "coordinate": coordinate,
        "version": version,
        "repository": repository,
        "found": found,
    }
    if duration_ms is not None:
        log_data["duration_ms"] = duration_ms

    if not found:
        logger.warning("manifest_not_found", **log_data)
    else:
        logger.debug("manifest_fetched", **log_data)


def log_conflicts_detected(coordinates: list) -> None:
    """Log coordinates that failed to converge."""
    if not coordinates:
        return
    get_resolver_logger().warning(
        "convergence_conflicts", count=len(coordinates), coordinates=coordinates
    )


def log_relocation(artifact: str, rewritten_entries: int, **kwargs) -> None:
    """Log a completed artifact relocation."""
    get_relocation_logger().info(
        "artifact_relocated",
        artifact=artifact,
        rewritten_entries=rewritten_entries,
        **kwargs,
    )


def set_run_context(run_id: Optional[str] = None, manifest: Optional[str] = None) -> None:
    """Set global run context for all loggers."""
    for logger in _ALL_LOGGERS:
        logger.set_run_context(run_id, manifest)


def clear_run_context() -> None:
    """Clear global run context."""
    for logger in _ALL_LOGGERS:
        logger.clear_run_context()


def configure_logging(log_level: str = "WARNING", enable_json: bool = True) -> None:
    """Configure logging for the application."""
    level = getattr(logging, log_level.upper(), logging.WARNING)

    for logger in _ALL_LOGGERS:
        logger.logger.setLevel(level)
        if not enable_json:
            for handler in logger.logger.handlers:
                handler.setFormatter(
                    logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
                )
