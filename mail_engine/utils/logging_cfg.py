"""
Logging configuration for the mail engine.

This module sets up logging with rotating file handlers and console output,
providing a centralized way to configure logging throughout the engine.
"""
import logging
import logging.handlers
from typing import Optional

from mail_engine import config


LOG_FILE_NAME = "mail_engine.log"

# Maximum log file size (10 MB)
MAX_LOG_SIZE = 10 * 1024 * 1024

# Number of backup log files to keep
BACKUP_COUNT = 5


def setup_logging(debug: bool = False, log_to_file: bool = True) -> None:
    """
    Configure logging for the engine process.

    Sets up:
    - Rotating file handler under ``config.LOG_DIR``
    - Console handler for immediate feedback
    - Log levels based on debug mode

    Args:
        debug: If True, sets log level to DEBUG. Otherwise, uses INFO.
        log_to_file: If False, only the console handler is installed.
    """
    log_level = logging.DEBUG if debug else logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    detailed_formatter = logging.Formatter(
        fmt='%(asctime)s - %(name)s - %(threadName)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    simple_formatter = logging.Formatter(fmt='%(levelname)s - %(message)s')

    log_file = config.LOG_DIR / LOG_FILE_NAME
    if log_to_file:
        config.LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            filename=str(log_file),
            maxBytes=MAX_LOG_SIZE,
            backupCount=BACKUP_COUNT,
            encoding='utf-8'
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(detailed_formatter)
        root_logger.addHandler(file_handler)

    # Console handler (only show WARNING and above unless debug)
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if debug else logging.WARNING)
    console_handler.setFormatter(simple_formatter)
    root_logger.addHandler(console_handler)

    logger = logging.getLogger(__name__)
    logger.info("Mail engine logging started (level=%s, file=%s)",
                logging.getLevelName(log_level), log_file if log_to_file else "-")

    _suppress_noisy_loggers()


def _suppress_noisy_loggers() -> None:
    """Suppress verbose logging from protocol and crypto libraries."""
    for name in ("imaplib", "smtplib", "cryptography"):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Get a logger instance for a module.

    Args:
        name: Logger name (usually __name__). If None, returns root logger.

    Returns:
        A Logger instance.
    """
    return logging.getLogger(name)


def set_log_level(level: int) -> None:
    """
    Change the log level for the root logger and all its handlers.

    Args:
        level: Logging level (e.g., logging.DEBUG, logging.INFO).
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers:
        handler.setLevel(level)
