import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

from .config import LogConfig

_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

ROOT_LOGGER_NAME = "agent_sidecar"


def setup_logging(
    log_config: Optional[LogConfig] = None,
    *,
    level: Optional[str] = None,
    stream: Any = None,
) -> logging.Logger:
    """
    Configure the package logger. Output goes to stderr (stdout is reserved
    for protocol lines) and optionally to a rotating file.
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.handlers.clear()
    resolved_level = (level or (log_config.level if log_config else None) or "INFO").upper()
    logger.setLevel(getattr(logging, resolved_level, logging.INFO))
    logger.propagate = False

    stderr_handler = logging.StreamHandler(stream or sys.stderr)
    stderr_handler.setFormatter(logging.Formatter(_FORMAT))
    logger.addHandler(stderr_handler)

    if log_config is not None and log_config.path is not None:
        logger.addHandler(_rotating_handler(log_config))
    return logger


def _rotating_handler(log_config: LogConfig) -> RotatingFileHandler:
    log_path: Path = log_config.path
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_path,
        maxBytes=log_config.max_bytes,
        backupCount=log_config.backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(_FORMAT))
    return handler


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    *,
    exc: Optional[BaseException] = None,
    **fields: Any,
) -> None:
    """Emit one structured log line: the event name followed by a JSON payload."""
    if not logger.isEnabledFor(level):
        return
    payload = {key: value for key, value in fields.items() if value is not None}
    if exc is not None:
        payload["error"] = str(exc) or type(exc).__name__
        payload["error_type"] = type(exc).__name__
    try:
        rendered = json.dumps(payload, default=str, separators=(",", ":"))
    except (TypeError, ValueError):
        rendered = repr(payload)
    logger.log(level, "%s %s", event, rendered)
