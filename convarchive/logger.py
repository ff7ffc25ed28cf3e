"""
Package logging: colored console output locally, workflow annotations on
GitHub Actions, level taken from LOG_LEVEL (environment or .env).
"""

import logging
import os
import sys
from dotenv import load_dotenv


load_dotenv()

PACKAGE_LOGGER = "convarchive"
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"

def _env_level() -> int:
    name = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    if name not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        name = "INFO"
    return getattr(logging, name)

class CorpusLogFormatter(logging.Formatter):
    """Colors records by level, or emits ::debug::/::warning::/::error:: lines under CI."""

    COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[1;31m",
    }
    RESET = "\033[0m"

    def __init__(self, fmt: str = LOG_FORMAT, github_actions: bool | None = None, color: bool | None = None):
        super().__init__(fmt)
        self.github_actions = os.getenv("GITHUB_ACTIONS") == "true" if github_actions is None else github_actions
        self.color = os.getenv("NO_COLOR") is None if color is None else color

    def format(self, record):
        message = super().format(record)

        if self.github_actions:
            if record.levelno >= logging.ERROR:
                return f"::error::{message}"
            if record.levelno == logging.WARNING:
                return f"::warning::{message}"
            if record.levelno == logging.DEBUG:
                return f"::debug::{message}"
            return message

        if not self.color:
            return message
        return f"{self.COLORS.get(record.levelno, self.RESET)}{message}{self.RESET}"

_package_logger = logging.getLogger(PACKAGE_LOGGER)
if not _package_logger.handlers:
    _handler = logging.StreamHandler(sys.stdout)
    _handler.setFormatter(CorpusLogFormatter())
    _package_logger.addHandler(_handler)
_package_logger.setLevel(_env_level())

def get_logger(name: str) -> logging.Logger:
    """Child of the package logger named after the module's last dotted part."""
    return logging.getLogger(f"{PACKAGE_LOGGER}.{name.split('.')[-1]}")

def set_verbose(verbose: bool = True) -> None:
    _package_logger.setLevel(logging.DEBUG if verbose else _env_level())
