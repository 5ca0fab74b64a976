import logging
from logging.handlers import RotatingFileHandler
import os
from typing import Optional

from config import settings

# SDK request logs are noisy at INFO (one line per poll of a run)
_QUIET_LOGGERS = ("httpx", "openai", "sqlalchemy.engine")

def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the application logger once at startup.

    Writes to a rotating file (5MB x 5) and to the console. Calling it again
    replaces the handlers instead of duplicating them.
    """
    logger = logging.getLogger(settings.LOGGER_NAME)
    logger.handlers.clear()
    logger.setLevel((level or settings.LOG_LEVEL).upper())

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s'
    )

    log_path = log_file or settings.LOG_FILE_PATH
    try:
        os.makedirs(os.path.dirname(log_path) or ".", exist_ok=True)
        file_handler = RotatingFileHandler(log_path, maxBytes=5 * 1024 * 1024, backupCount=5)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as e:
        print(f"Error setting up file logger: {e}")

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info(f"Logging configured (level={logging.getLevelName(logger.level)}, file={log_path})")
    return logger
