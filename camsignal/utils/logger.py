"""
Logging setup for camsignal

Service modules log through ``logging.getLogger(__name__)``; everything
under the ``camsignal`` namespace ends up on one stdout handler installed
at startup.
"""

import logging
import os
import sys

LOG_LEVEL_ENV = "CAMSIGNAL_LOG_LEVEL"
DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Media and HTTP libraries that log every packet or request at INFO/DEBUG
NOISY_LOGGERS = ("aioice", "aiortc", "aiohttp.access")


def resolve_level(level=None) -> int:
    """
    Turn a level name or number into a logging level.

    Falls back to ``$CAMSIGNAL_LOG_LEVEL`` and then INFO. Unknown names
    resolve to INFO.
    """
    if level is None:
        level = os.environ.get(LOG_LEVEL_ENV, "INFO")
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def get_logger(name: str = None, fmt: str = None, level=None) -> logging.Logger:
    """
    Get the camsignal logger, installing the stdout handler once.

    Args:
        name: Logger name (defaults to 'camsignal').
        fmt:  Log format string. Pass ``"%(message)s"`` when the process
              supervisor already stamps each line.
        level: Level name or number, see ``resolve_level``.
    """
    logger = logging.getLogger(name or "camsignal")

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(fmt or DEFAULT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        logger.addHandler(handler)
    logger.setLevel(resolve_level(level))

    if logger.level > logging.DEBUG:
        for noisy in NOISY_LOGGERS:
            logging.getLogger(noisy).setLevel(logging.WARNING)

    return logger
