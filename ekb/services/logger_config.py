# services/logger_config.py
import logging
import os
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler

from ekb.config import settings

# Set per HTTP request by RequestIDMiddleware; "-" outside a request
request_id_var: ContextVar[str] = ContextVar("request_id", default="-")


class RequestIDFilter(logging.Filter):
    """Stamp each record with the current request id."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        return True


def setup_logging(level: str = settings.LOG_LEVEL, log_file: str = settings.LOG_FILE_PATH) -> logging.Logger:
    """
    Configure the service logger.

    Logs are written to a rotating file and also printed to the console. Safe
    to call more than once; existing handlers are replaced.
    """
    logger = logging.getLogger(settings.LOGGER_NAME)

    # Avoid adding duplicate handlers if this function is called multiple times
    if logger.hasHandlers():
        logger.handlers.clear()

    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] - [%(filename)s:%(lineno)d] - %(message)s'
    )
    request_filter = RequestIDFilter()

    # File Handler: rotates logs to prevent large files
    if log_file:
        try:
            log_dir = os.path.dirname(log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=5 * 1024 * 1024,  # 5MB
                backupCount=5,
                encoding="utf-8"
            )
            file_handler.setFormatter(formatter)
            file_handler.addFilter(request_filter)
            logger.addHandler(file_handler)
        except OSError as e:
            print(f"Error setting up file logger: {e}")

    # Console Handler: for immediate feedback during development
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.addFilter(request_filter)
    logger.addHandler(console_handler)

    logger.propagate = True
    logger.info("Logging configured successfully.")
    return logger
