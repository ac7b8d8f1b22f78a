"""
Structured Logging Utilities

This module centralizes structured logging setup for the remote solver
generator. It provides helpers for masking tokens and authorization headers,
emitting JSON log records that carry the run id and stage of the job
lifecycle, managing correlation identifiers, and rolling log files to
maintain a clean retention window.
"""

from __future__ import annotations

import gzip
import json
import logging
import sys
import uuid
from datetime import datetime, timedelta, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Optional

from .settings import LoggingSettings

PACKAGE_LOGGER = "IKFastOnline"

_CONTEXT_FIELDS = ("correlation_id", "run_id", "stage", "state", "poll_count", "artifact")


def mask_sensitive_data(payload: Dict[str, object]) -> Dict[str, object]:
    """Remove secrets from structured payloads prior to logging.

    Args:
        payload: Arbitrary key-value pairs that may contain tokens gathered
            from API requests.

    Returns:
        Copy of the payload where common secret fields are replaced with
        `***masked***`.

    Examples:
        >>> mask_sensitive_data({"token": "secret", "status": "ok"})
        {'token': '***masked***', 'status': 'ok'}
    """
    sensitive_keys = {"authorization", "api_key", "apikey", "token", "secret", "password"}
    masked: Dict[str, object] = {}
    for key, value in payload.items():
        lower = key.lower()
        if lower in sensitive_keys:
            masked[key] = "***masked***"
        elif isinstance(value, str) and ("bearer " in value.lower() or "ghp_" in value):
            masked[key] = "***masked***"
        else:
            masked[key] = value
    return masked


def generate_correlation_id() -> str:
    """Create a short-lived identifier that links related log entries.

    Returns:
        Twelve character hexadecimal identifier.

    Examples:
        >>> cid = generate_correlation_id()
        >>> len(cid)
        12
    """
    return uuid.uuid4().hex[:12]


class CorrelationFilter(logging.Filter):
    """Stamp every record passing through a handler with one correlation id."""

    def __init__(self, correlation_id: str) -> None:
        super().__init__()
        self.correlation_id = correlation_id

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = self.correlation_id
        return True


class JSONFormatter(logging.Formatter):
    """Formatter emitting JSON structured logs.

    Examples:
        >>> formatter = JSONFormatter()
        >>> isinstance(formatter.format(logging.makeLogRecord({'msg': 'test'})), str)
        True
    """

    def format(self, record: logging.LogRecord) -> str:
        """Serialize a logging record into a JSON line."""
        now = datetime.now(timezone.utc)
        log_obj: Dict[str, object] = {
            "timestamp": now.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in _CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_obj[field] = value if isinstance(value, (int, float, bool)) else str(value)
        if record.exc_info:
            log_obj["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(mask_sensitive_data(log_obj))


def _compress_old_log(path: Path) -> None:
    compressed_path = path.with_suffix(path.suffix + ".gz")
    with path.open("rb") as source, gzip.open(compressed_path, "wb") as target:
        target.write(source.read())
    path.unlink(missing_ok=True)


def _cleanup_logs(log_dir: Path, retention_days: int) -> None:
    """Compress log files past retention, and delete compressed ones past it too."""
    now = datetime.now(timezone.utc)
    retention_delta = timedelta(days=retention_days)
    for file in log_dir.glob("*.jsonl.gz"):
        mtime = datetime.fromtimestamp(file.stat().st_mtime, tz=timezone.utc)
        if now - mtime > retention_delta:
            file.unlink(missing_ok=True)
    for file in log_dir.glob("*.jsonl"):
        mtime = datetime.fromtimestamp(file.stat().st_mtime, tz=timezone.utc)
        if now - mtime > retention_delta:
            _compress_old_log(file)


def setup_logging(
    config: LoggingSettings,
    log_dir: Optional[Path] = None,
    *,
    correlation_id: Optional[str] = None,
) -> logging.Logger:
    """Configure console and JSON-lines handlers for the package logger.

    Args:
        config: Logging settings containing level, size, and retention.
        log_dir: Optional directory override for log file placement.
        correlation_id: Identifier stamped on every record; generated when omitted.

    Returns:
        Configured logger instance scoped to ``IKFastOnline``.
    """
    log_dir = Path(log_dir or config.log_dir)
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(config.level_int())

    for handler in list(logger.handlers):
        if getattr(handler, "_ikfast_managed", False):
            logger.removeHandler(handler)
            handler.close()

    correlation = CorrelationFilter(correlation_id or generate_correlation_id())

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    stream_handler.addFilter(correlation)
    stream_handler._ikfast_managed = True  # type: ignore[attr-defined]
    logger.addHandler(stream_handler)

    if config.emit_json_logs:
        log_dir.mkdir(parents=True, exist_ok=True)
        _cleanup_logs(log_dir, config.retention_days)
        today = datetime.now(timezone.utc).strftime("%Y%m%d")
        file_handler = RotatingFileHandler(
            log_dir / f"ikfast-online-{today}.jsonl",
            maxBytes=int(config.max_log_size_mb * 1024 * 1024),
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(JSONFormatter())
        file_handler.addFilter(correlation)
        file_handler._ikfast_managed = True  # type: ignore[attr-defined]
        logger.addHandler(file_handler)

    logger.propagate = True
    return logger


__all__ = [
    "CorrelationFilter",
    "JSONFormatter",
    "PACKAGE_LOGGER",
    "generate_correlation_id",
    "mask_sensitive_data",
    "setup_logging",
]
