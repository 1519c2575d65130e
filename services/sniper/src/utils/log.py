import json
import logging
import os
import sys
from datetime import datetime
from typing import Optional

JSON_ENVIRONMENTS = ("production", "prod", "staging")

# Attributes every LogRecord has; anything else came in through ``extra``
_RESERVED_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


class ColoredFormatter(logging.Formatter):
    """Human-readable formatter for development."""

    COLORS = {
        'DEBUG': '\033[36m',      # Cyan
        'INFO': '\033[32m',       # Green
        'WARNING': '\033[33m',    # Yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[35m',   # Magenta
    }
    ENDC = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        level_color = self.COLORS.get(record.levelname, '')
        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        colored_level = f"{level_color}{record.levelname:8s}{self.ENDC}"
        module_name = record.name if record.name != '__main__' else 'main'

        line = f"[{timestamp}] {colored_level} [{module_name}] {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class JsonFormatter(logging.Formatter):
    """JSON formatter for production/staging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'module': record.name,
            'message': record.getMessage(),
            'environment': os.getenv('ENVIRONMENT', 'unknown'),
        }
        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith('_'):
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def init(level: str = "INFO", environment: Optional[str] = None) -> None:
    """
    Configure the root logger once per process.

    - development: colored human-readable lines
    - staging/production: one JSON object per line for log aggregation
    """
    environment = (environment or os.getenv('ENVIRONMENT', 'development')).lower()
    resolved = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    if environment in JSON_ENVIRONMENTS:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(ColoredFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(resolved)

    # The scheduler is chatty at INFO about every job it runs
    logging.getLogger("apscheduler").setLevel(max(resolved, logging.WARNING))


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
