"""
Logging setup for processes embedding kubesync.
"""

import logging
from typing import Optional

from .config import get_settings

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Client libraries that log every request at INFO/DEBUG
NOISY_LOGGERS = ("kubernetes", "urllib3", "websocket")


def configure_logging(level: Optional[str] = None) -> None:
    """
    Configure root logging once for the process.

    Args:
        level: Level name overriding Settings.log_level (e.g. "DEBUG")
    """
    level_name = (level or get_settings().log_level).upper()

    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT
    )

    # Keep client chatter out of INFO output unless we are debugging
    if level_name != "DEBUG":
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
