"""Logging setup for a single texcomposer run.

Per-slot and per-file problems are reported as they happen on stderr with a
short ``LEVEL: message`` line; an optional log file gets the same records
with timestamps and logger names.
"""

import logging
import logging.handlers
import os

logger = logging.getLogger("texture_composer")

_CONSOLE_FORMAT = "%(levelname)s: %(message)s"
_FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
# 10 MB max per log file, keep 3 rotated backups
_LOG_MAX_BYTES = 10 * 1024 * 1024
_LOG_BACKUP_COUNT = 3

# Marks handlers installed here so a second call replaces them.
_OWNED = "_texcomposer_owned"


def _own(handler: logging.Handler, fmt: str) -> logging.Handler:
    handler.setFormatter(logging.Formatter(fmt))
    setattr(handler, _OWNED, True)
    return handler


def setup_logging(level: str = "INFO", log_file: str = None) -> logging.Logger:
    """Route the ``texture_composer`` logger to stderr and, optionally, a file.

    Only that logger is configured and it stops propagating, so the root
    logger (and whatever an embedding program put there) is left alone and
    records are not printed twice. Calling it again replaces the previous
    handlers.
    """
    numeric_level = logging.getLevelName(str(level).upper())
    if not isinstance(numeric_level, int):
        logger.warning("Invalid log level '%s', defaulting to INFO", level)
        numeric_level = logging.INFO

    for handler in [h for h in logger.handlers if getattr(h, _OWNED, False)]:
        logger.removeHandler(handler)
        handler.close()

    logger.addHandler(_own(logging.StreamHandler(), _CONSOLE_FORMAT))
    if log_file:
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        logger.addHandler(_own(
            logging.handlers.RotatingFileHandler(
                log_file, maxBytes=_LOG_MAX_BYTES, backupCount=_LOG_BACKUP_COUNT,
                encoding="utf-8",
            ),
            _FILE_FORMAT,
        ))
    logger.setLevel(numeric_level)
    logger.propagate = False
    logger.debug("Logging to stderr%s at %s",
                 f" and {log_file}" if log_file else "",
                 logging.getLevelName(numeric_level))
    return logger
