"""
Logger utility for reqflow.

Console output goes to stderr (warnings and errors only). When a log
directory is configured (REQFLOW_LOG_DIR), rotating file logs are added:
- reqflow.log: Main log with 5MB rotation, keeps 3 backups
- reqflow.errors.log: Errors only, 2MB rotation, keeps 2 backups
- reqflow.json: Structured JSON, 5MB rotation, keeps 2 backups
"""

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request = getattr(record, "request", None)
        if request:
            log_data["request"] = request

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def get_logger(
    name: str,
    level: Optional[Union[int, str]] = None,
    log_dir: Optional[Union[str, Path]] = None,
) -> logging.Logger:
    """
    Get or create a logger with console and optional rotating file handlers.

    Handlers are installed once per logger name; later calls only adjust the
    level.

    Args:
        name: Logger name
        level: Optional logging level (defaults to DEBUG)
        log_dir: Optional directory for rotating file logs

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        text_formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

        # Console handler (stderr) - minimal output
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.WARNING)
        console_handler.setFormatter(text_formatter)
        logger.addHandler(console_handler)

        if log_dir:
            try:
                directory = Path(log_dir).expanduser()
                directory.mkdir(parents=True, exist_ok=True)

                main_handler = RotatingFileHandler(
                    directory / "reqflow.log", maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
                )
                main_handler.setLevel(logging.DEBUG)
                main_handler.setFormatter(text_formatter)
                logger.addHandler(main_handler)

                error_handler = RotatingFileHandler(
                    directory / "reqflow.errors.log", maxBytes=2 * 1024 * 1024, backupCount=2, encoding="utf-8"
                )
                error_handler.setLevel(logging.ERROR)
                error_handler.setFormatter(text_formatter)
                logger.addHandler(error_handler)

                json_handler = RotatingFileHandler(
                    directory / "reqflow.json", maxBytes=5 * 1024 * 1024, backupCount=2, encoding="utf-8"
                )
                json_handler.setLevel(logging.INFO)
                json_handler.setFormatter(JsonFormatter())
                logger.addHandler(json_handler)
            except OSError as e:
                logger.warning(f"File logging unavailable in {log_dir}: {e}")

    if level is not None:
        logger.setLevel(level.upper() if isinstance(level, str) else level)
    elif not logger.level:
        logger.setLevel(logging.DEBUG)

    return logger
