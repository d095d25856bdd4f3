import logging
import sys

from listing_ops.core.config import settings

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(threadName)s %(message)s"
_CONFIGURED = False


def configure_logging(log_level: str | None = None) -> logging.Logger:
    """Install a single stream handler on the package logger.

    Safe to call more than once; later calls only adjust the level.
    """
    global _CONFIGURED
    level_name = str(log_level or settings.log_level or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    logger = logging.getLogger("listing_ops")
    logger.setLevel(level)
    if not _CONFIGURED:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        logger.addHandler(handler)
        logger.propagate = False
        _CONFIGURED = True
    return logger
