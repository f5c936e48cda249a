"""
Observability module for image-inspector.

Provides structured logging.
"""

from image_inspector.observability.logging import setup_logging, get_logger

__all__ = ['setup_logging', 'get_logger']
