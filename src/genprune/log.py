from __future__ import annotations

import logging
import sys
from collections.abc import Mapping

LOGGER_NAME = "genprune"

_PREFIXES = {
    logging.CRITICAL: "ERROR",
    logging.ERROR: "ERROR",
    logging.WARNING: "!",
    logging.INFO: ">",
    logging.DEBUG: "DEBUG",
}


class CompactFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        prefix = _PREFIXES.get(record.levelno, record.levelname)
        message = f"{prefix} {record.getMessage()}"
        if record.levelno != logging.INFO:
            message += f" ({record.module}:{record.lineno})"
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


def setup_logging(verbosity: int = 0, environ: Mapping[str, str] | None = None) -> logging.Logger:
    level = _level_for(verbosity)
    override = (environ or {}).get("GENPRUNE_LOG")
    if override:
        level = logging.getLevelName(override.upper())
        if not isinstance(level, int):
            level = _level_for(verbosity)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(CompactFormatter())
    logger.addHandler(handler)
    logger.debug("Logging OK")
    return logger


def _level_for(verbosity: int) -> int:
    if verbosity >= 1:
        return logging.DEBUG
    if verbosity < 0:
        return logging.WARNING
    return logging.INFO
