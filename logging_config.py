"""Logging configuration for the dispatch API"""

import json
import logging
import logging.handlers
import os
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

# Context variable for request ID
request_id_var: ContextVar[str] = ContextVar("request_id", default="system")

_RESERVED = {
    "name", "msg", "args", "created", "msecs", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
    "relativeCreated", "thread", "threadName", "processName", "process", "taskName",
}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for production log shipping"""

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": request_id_var.get(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        # Add custom attributes passed through `extra=`
        for key, value in record.__dict__.items():
            if key not in _RESERVED and key not in log_obj:
                log_obj[key] = value

        return json.dumps(log_obj, default=str)


class ColoredFormatter(logging.Formatter):
    """Colored formatter for development"""

    grey = "\x1b[38;20m"
    yellow = "\x1b[33;20m"
    red = "\x1b[31;20m"
    bold_red = "\x1b[31;1m"
    green = "\x1b[32;20m"
    reset = "\x1b[0m"
    fmt = "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s"

    FORMATS = {
        logging.DEBUG: grey + fmt + reset,
        logging.INFO: green + fmt + reset,
        logging.WARNING: yellow + fmt + reset,
        logging.ERROR: red + fmt + reset,
        logging.CRITICAL: bold_red + fmt + reset,
    }

    def format(self, record):
        record.request_id = request_id_var.get()
        formatter = logging.Formatter(self.FORMATS.get(record.levelno), datefmt="%Y-%m-%d %H:%M:%S")
        return formatter.format(record)


def setup_logging(app_name: str = "swm-dispatch", log_level: Optional[str] = None) -> None:
    """
    Set up application logging.

    Args:
        app_name: Name of the application logger
        log_level: Override log level (defaults to LOG_LEVEL env var)
    """
    env = os.getenv("ENVIRONMENT", "development")
    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "DEBUG" if env == "development" else "INFO")
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    if env == "production":
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(ColoredFormatter())
    root_logger.addHandler(console_handler)

    if env == "production":
        error_file_handler = logging.handlers.RotatingFileHandler(
            os.getenv("ERROR_LOG_PATH", "/tmp/swm-dispatch-errors.log"),
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
        )
        error_file_handler.setLevel(logging.ERROR)
        error_file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(error_file_handler)

    logging.getLogger("pymongo").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    logging.getLogger(app_name).info(
        "Logging initialized",
        extra={"environment": env, "log_level": log_level, "pid": os.getpid()},
    )


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set request ID for the current context"""
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def log_request(logger: logging.Logger, method: str, path: str, status_code: int, duration_ms: float) -> None:
    logger.info(
        f"{method} {path} -> {status_code}",
        extra={
            "method": method,
            "path": path,
            "status_code": status_code,
            "duration_ms": round(duration_ms, 2),
        },
    )
