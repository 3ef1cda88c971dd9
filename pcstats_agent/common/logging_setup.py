"""
Structured Logging Setup

Consistent logging configuration across the agent.
Uses JSON format for structured logs in production.
"""

import logging
import sys
import os
from datetime import datetime, timezone
import json


_RESERVED_ATTRS = frozenset((
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "processName", "process", "service",
    "message", "taskName",
))


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service", "unknown"),
            "message": record.getMessage(),
            "logger": record.name,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Extra fields passed via `extra=`
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ServiceLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds service name to all logs"""

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        kwargs.setdefault("extra", {})
        kwargs["extra"]["service"] = self.extra.get("service", "unknown")
        return msg, kwargs


def setup_logging(
    service_name: str,
    log_level: str = "INFO",
    json_format: bool = True,
) -> logging.Logger:
    """
    Set up structured logging for a component.

    Args:
        service_name: Name of the component (e.g., "gateway", "worker")
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format (True for production, False for dev)

    Returns:
        Configured logger instance
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(f"pcstats.{service_name}")
    logger.setLevel(numeric_level)
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)

    if json_format:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)

    # Don't propagate to root logger
    logger.propagate = False

    return logger


def get_service_logger(service_name: str) -> ServiceLoggerAdapter:
    """
    Get a logger adapter with service context.

    Args:
        service_name: Name of the component

    Returns:
        Logger adapter with service name in all logs
    """
    log_level = os.environ.get("PCSTATS_LOG_LEVEL", "INFO")
    json_format = os.environ.get("PCSTATS_LOG_FORMAT", "json").lower() == "json"

    logger = setup_logging(service_name, log_level, json_format)
    return ServiceLoggerAdapter(logger, {"service": service_name})


def set_log_level(log_level: str) -> None:
    """Apply a level to every agent logger already created."""
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    for name in list(logging.root.manager.loggerDict):
        if name.startswith("pcstats."):
            logger = logging.getLogger(name)
            logger.setLevel(numeric_level)
            for handler in logger.handlers:
                handler.setLevel(numeric_level)


# Convenience loggers for common events
def log_mode_change(
    logger: logging.Logger,
    old_mode: str,
    new_mode: str,
    reason: str,
) -> None:
    """Log an online/offline transition"""
    log_method = logger.warning if new_mode == "offline" else logger.info
    log_method(
        f"Mode change {old_mode} -> {new_mode}: {reason}",
        extra={"old_mode": old_mode, "new_mode": new_mode, "reason": reason},
    )


def log_data_loss(
    logger: logging.Logger,
    batch_id: str,
    local_snapshot_id: int,
    reason: str,
    process_count: int = 0,
) -> None:
    """Log a permanently dropped batch"""
    logger.error(
        f"DATA LOSS: dropped batch {batch_id} (local snapshot {local_snapshot_id}, "
        f"{process_count} processes): {reason}",
        extra={
            "batch_id": batch_id,
            "local_snapshot_id": local_snapshot_id,
            "process_count": process_count,
            "reason": reason,
        },
    )


def log_cycle(
    logger: logging.Logger,
    snapshot_id: int,
    cpu_percent: float | None,
    used_memory_mb: int | None,
    process_count: int,
    execution_time_ms: float,
) -> None:
    """Log one collection cycle"""
    cpu_text = f"{cpu_percent:.1f}%" if cpu_percent is not None else "n/a"
    logger.info(
        f"Created snapshot {snapshot_id} - cpu={cpu_text}, used={used_memory_mb}MB, "
        f"processes={process_count}, exec={execution_time_ms:.0f}ms",
        extra={
            "snapshot_id": snapshot_id,
            "cpu_percent": cpu_percent,
            "used_memory_mb": used_memory_mb,
            "process_count": process_count,
            "execution_time_ms": execution_time_ms,
        },
    )
