"""Centralized logging service using loguru."""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from loguru import logger

from vendor_compare.config import settings

LOG_DIR = Path(settings.log_dir)
LOG_DIR.mkdir(parents=True, exist_ok=True)

# Remove default handler
logger.remove()

logger.add(
    sys.stderr,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    level=settings.app_log_level.upper(),
    colorize=True,
)

logger.add(
    LOG_DIR / "vendor_compare_{time:YYYY-MM-DD}.log",
    format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
    level="DEBUG",
    rotation="00:00",
    retention="7 days",
    compression="zip",
)

for logger_name in (
    "httpx",
    "httpcore",
    "hpack",
    "asyncio",
):
    logging.getLogger(logger_name).setLevel(settings.noisy_log_level.upper())


def log_remote_call(
    operation: str,
    target: str,
    duration_ms: int = 0,
    status: str = "success",
    error_code: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    """Log one webhook round trip."""
    call_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "operation": operation,
        "target": target,
        "duration_ms": duration_ms,
        "status": status,
        "error_code": error_code,
        "error": error,
    }
    if error:
        logger.error(f"REMOTE_CALL_FAILED: {call_data}")
    else:
        logger.info(f"REMOTE_CALL: {call_data}")


def log_comparison_step(
    project_id: str,
    step_type: str,
    status: str,
    data: Optional[dict] = None,
) -> None:
    """Log an orchestration step."""
    step_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "project_id": project_id,
        "step_type": step_type,
        "status": status,
        "data": data,
    }
    logger.info(f"COMPARISON_STEP: {step_data}")


def log_store_operation(
    operation: str,
    key: str,
    status: str,
    details: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    """Log a persistent store operation."""
    op_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "operation": operation,
        "key": key,
        "status": status,
        "details": details,
        "error": error,
    }
    if error:
        logger.error(f"STORE_OPERATION_FAILED: {op_data}")
    else:
        logger.debug(f"STORE_OPERATION: {op_data}")


def log_event(
    event_type: str,
    message: str,
    **kwargs,
) -> None:
    """Log a generic event."""
    event_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type,
        "message": message,
        **kwargs,
    }
    logger.info(f"EVENT: {event_data}")
