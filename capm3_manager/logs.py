"""Logging setup for the manager process."""

import json
import logging
import sys

from .errors import ConfigError

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class JSONFormatter(logging.Formatter):
    """Render each record as a single JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, DATE_FORMAT),
            "logger": record.name,
            "level": record.levelname,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            entry["error"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def configure_logging(logging_format: str = "text", verbosity: int = 0) -> None:
    """
    Configure the root logger.

    Args:
        logging_format: "text" or "json"
        verbosity: 0 for INFO, 1 or more for DEBUG

    Raises:
        ConfigError: If the format is not supported
    """
    if logging_format == "text":
        formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    elif logging_format == "json":
        formatter = JSONFormatter()
    else:
        raise ConfigError(f"unsupported logging format {logging_format!r} (must be one of: text, json)")

    if verbosity < 0:
        raise ConfigError(f"log verbosity must not be negative, got {verbosity}")

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    logging.basicConfig(
        level=logging.DEBUG if verbosity > 0 else logging.INFO,
        handlers=[handler],
        force=True,
    )
    # Client request logging is only useful at high verbosity
    if verbosity < 4:
        logging.getLogger("urllib3").setLevel(logging.WARNING)
        logging.getLogger("kubernetes").setLevel(logging.WARNING)
