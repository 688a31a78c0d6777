"""
Basic error handling and logging infrastructure for PixelMap.
"""

import logging
import os
import sys
from typing import Optional
from pathlib import Path

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None,
                  name: str = 'pixelmap') -> logging.Logger:
    """
    Configure the package logger: stdout always, plus a file when log_file is set.

    Calling it again replaces the handlers, so the server entry point can
    re-run it with command-line options. Unknown level names fall back to INFO.
    """
    logger = logging.getLogger(name)
    level = logging.getLevelName(str(log_level).upper())
    logger.setLevel(level if isinstance(level, int) else logging.INFO)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger

# Global logger instance
logger = setup_logging(
    os.getenv("PIXELMAP_LOG_LEVEL", "INFO"),
    os.getenv("PIXELMAP_LOG_FILE") or None,
)

class PixelMapError(Exception):
    """Base exception class for PixelMap errors."""
    pass

class ImageProcessingError(PixelMapError):
    """Exception raised for image processing errors."""
    pass

class GenerationError(PixelMapError):
    """Exception raised when the image generation service returns no sprite."""
    pass

class PersistenceError(PixelMapError):
    """Exception raised when the backend rejects or fails a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

class AuthenticationError(PersistenceError):
    """Exception raised when a bearer token is missing or rejected."""
    pass

class InvalidImportFileError(PixelMapError):
    """Exception raised for export files without the expected shape."""
    pass

def handle_error(error: Exception, context: str = "", raise_error: bool = True):
    """
    Handle and log errors consistently.

    Args:
        error: The exception that occurred
        context: Additional context about where the error occurred
        raise_error: Whether to re-raise the error after logging
    """
    error_msg = f"Error in {context}: {str(error)}" if context else f"Error: {str(error)}"
    logger.error(error_msg, exc_info=True)

    if raise_error:
        raise error

