"""
Structured logging for image-inspector.

Provides JSON-formatted logs for pipelines and plain text for terminals.
"""

import logging
import sys
import os
from typing import Dict, Any, Optional
from datetime import datetime
from flask import has_request_context, request
from pythonjsonlogger import jsonlogger


class InspectorJsonFormatter(jsonlogger.JsonFormatter):
    """
    Custom JSON formatter with image-inspector specific fields.
    """

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]):
        """Add custom fields to log record."""
        super(InspectorJsonFormatter, self).add_fields(log_record, record, message_dict)

        if not log_record.get('timestamp'):
            log_record['timestamp'] = datetime.utcnow().isoformat() + 'Z'

        if log_record.get('level'):
            log_record['level'] = log_record['level'].upper()
        else:
            log_record['level'] = record.levelname

        log_record['logger'] = record.name
        log_record['service'] = 'image-inspector'

        # Pod information when running as a Kubernetes sidecar
        if os.getenv('POD_NAME'):
            log_record['pod_name'] = os.getenv('POD_NAME')
        if os.getenv('POD_NAMESPACE'):
            log_record['pod_namespace'] = os.getenv('POD_NAMESPACE')

        if has_request_context():
            log_record["method"] = request.method
            log_record["path"] = request.path
            log_record["ip_address"] = request.remote_addr


def setup_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    log_file: Optional[str] = None
):
    """
    Set up logging for image-inspector.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Log format ('json' or 'text')
        log_file: Optional file path for file logging
    """
    log_level = log_level or os.getenv('LOG_LEVEL', 'INFO')
    log_format = log_format or os.getenv('LOG_FORMAT', 'text')

    level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = []

    if log_format == 'json':
        formatter = InspectorJsonFormatter(
            '%(timestamp)s %(level)s %(name)s %(message)s'
        )
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    # Scanner subprocesses share stdout, keep logs on stderr
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # Suppress noisy loggers
    logging.getLogger('werkzeug').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('docker').setLevel(logging.WARNING)
    logging.getLogger('wsgidav').setLevel(logging.WARNING)

    root_logger.debug(
        "Logging configured",
        extra={
            'log_level': log_level,
            'log_format': log_format,
            'log_file': log_file
        }
    )


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the specified name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)
