"""
PanelAuth Logging Configuration
Rich console output plus rotating JSON log files.
"""

import json
import logging
import logging.handlers
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from rich.console import Console
from rich.logging import RichHandler

from panelauth.core.config import settings


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_data"):
            log_entry["extra"] = record.extra_data

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class PanelAuthLogger:
    """
    Process-wide logging configuration
    """

    def __init__(self):
        self.console = Console(stderr=True)
        self.log_dir = Path(settings.LOG_DIR)

    def setup_logging(self) -> None:
        level = getattr(logging, settings.LOG_LEVEL)

        app_logger = logging.getLogger("panelauth")
        app_logger.setLevel(level)

        for handler in app_logger.handlers[:]:
            app_logger.removeHandler(handler)

        console_handler = RichHandler(
            console=self.console,
            rich_tracebacks=True,
            show_path=settings.DEBUG,
            show_time=True,
        )
        console_handler.setLevel(level)
        app_logger.addHandler(console_handler)

        if settings.LOG_TO_FILE:
            self.log_dir.mkdir(parents=True, exist_ok=True)

            file_handler = logging.handlers.RotatingFileHandler(
                self.log_dir / "panelauth.log",
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5,
            )
            file_handler.setLevel(logging.INFO)
            file_handler.setFormatter(JSONFormatter())

            # Security-relevant warnings (lockouts, default secrets) get their own file
            security_handler = logging.handlers.RotatingFileHandler(
                self.log_dir / "security.log",
                maxBytes=10 * 1024 * 1024,
                backupCount=5,
            )
            security_handler.setLevel(logging.WARNING)
            security_handler.setFormatter(JSONFormatter())

            app_logger.addHandler(file_handler)
            app_logger.addHandler(security_handler)

        logging.getLogger("sqlalchemy").setLevel(logging.WARNING)


_logger_instance: Optional[PanelAuthLogger] = None


def get_logger(name: str) -> logging.Logger:
    """
    Get logger instance with proper configuration
    """
    global _logger_instance

    if _logger_instance is None:
        _logger_instance = PanelAuthLogger()
        _logger_instance.setup_logging()

    return logging.getLogger(name)


class LoggerMixin:
    """
    Mixin to add logging capabilities to classes
    """

    @property
    def logger(self) -> logging.Logger:
        return get_logger(self.__class__.__module__ + "." + self.__class__.__name__)

    def log_with_context(
        self,
        level: int,
        message: str,
        extra_data: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Log with additional context data attached to the record
        """
        if not self.logger.isEnabledFor(level):
            return

        record = self.logger.makeRecord(
            name=self.logger.name,
            level=level,
            fn="",
            lno=0,
            msg=message,
            args=(),
            exc_info=None,
        )

        if extra_data:
            record.extra_data = extra_data

        self.logger.handle(record)
