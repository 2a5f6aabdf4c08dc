"""
Logging configuration for the mkwebuser command.

Text output is the default for interactive use; set MKWEBUSER_LOG_FORMAT=json
when the output is collected by a log shipper.
"""

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

from mkwebuser.config.settings import AppSettings, get_settings


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record):
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        for attr in ('correlation_id', 'username', 'step', 'operation', 'error_id'):
            if hasattr(record, attr):
                log_entry[attr] = getattr(record, attr)

        return json.dumps(log_entry)


def configure_logging(settings: AppSettings = None, verbose: bool = False):
    """Configure the ``mkwebuser`` logger tree.

    Args:
        settings: Application settings (defaults to the global singleton).
        verbose: Force DEBUG level regardless of configuration.

    Returns:
        Configured logger instance.
    """
    settings = settings or get_settings()
    log_level = "DEBUG" if verbose else settings.log_level.upper()

    logger = logging.getLogger('mkwebuser')
    logger.setLevel(getattr(logging, log_level, logging.INFO))
    logger.handlers = []

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG)

    if settings.log_format == 'json':
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))

    logger.addHandler(console_handler)

    # File handler (if configured)
    if settings.log_file:
        file_handler = RotatingFileHandler(
            settings.log_file,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JSONFormatter())
        logger.addHandler(file_handler)

    return logger
