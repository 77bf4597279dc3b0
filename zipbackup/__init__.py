import os
import logging
from logging.handlers import RotatingFileHandler
from typing import Optional


__version__ = '1.0.0'


def configure_logging(log_file: Optional[str] = None, debug: bool = False) -> str:
    """
    Configure application logging.

    Args:
        log_file: Path of the rotating log file (default: Config.log_file())
        debug: Log at DEBUG level

    Returns:
        Path of the log file
    """
    from zipbackup.config import Config

    log_file = log_file or Config.log_file()

    # Create logs directory if it doesn't exist
    os.makedirs(os.path.dirname(log_file) or '.', exist_ok=True)

    log_level = logging.DEBUG if debug else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=10485760,  # 10MB
        backupCount=10,
        encoding='utf-8'
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure root logger; force replaces handlers from an earlier call
    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler], force=True)

    # Third-party libraries are chatty at DEBUG
    for name in ('boto3', 'botocore', 'paramiko', 'urllib3'):
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(f"Logging configured (level: {logging.getLevelName(log_level)})")
    return log_file
