"""Logging setup for the Pool Sync service.

Every component logs through ``Pool-Sync.<Component>``. ``LOG_LEVEL`` picks
the level and ``LOG_FILE``, when set, sends the output to a file instead of
stderr.
"""
import logging
import os
from typing import Optional

SERVICE_NAME = "Pool-Sync"
LOG_FORMAT = "[%(asctime)s] %(levelname)s [%(name)s] %(message)s"

# per-request chatter from the registry HTTP client
NOISY_LOGGERS = ("httpx", "httpcore")


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_file = log_file or os.getenv("LOG_FILE") or None
    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=[handler], force=True)
    if logging.getLogger().level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(component: str) -> logging.Logger:
    return logging.getLogger(f"{SERVICE_NAME}.{component}")
