"""
Logging configuration for Margin Yield.
Normal mode is concise; MARGIN_YIELD_DEBUG=1 switches to verbose debug output.
"""
import logging
import os
import sys

DEBUG_ENABLED = os.getenv("MARGIN_YIELD_DEBUG", "").lower() in ("1", "true", "yes")


class ConciseFormatter(logging.Formatter):
    """Single-line, concise log format."""

    FORMATS = {
        logging.DEBUG: "\033[90m[D]\033[0m %(name)s: %(message)s",
        logging.INFO: "\033[32m[I]\033[0m %(message)s",
        logging.WARNING: "\033[33m[W]\033[0m %(message)s",
        logging.ERROR: "\033[31m[E]\033[0m %(name)s: %(message)s",
        logging.CRITICAL: "\033[31;1m[!]\033[0m %(name)s: %(message)s",
    }

    def format(self, record):
        log_fmt = self.FORMATS.get(record.levelno, self.FORMATS[logging.INFO])
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


class VerboseFormatter(logging.Formatter):
    """Detailed format for debug mode."""
    def __init__(self):
        super().__init__(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


def setup_logging(level=logging.WARNING):
    """
    Configure logging for the CLI. Call once at startup.

    Library modules only create module loggers; nothing is emitted
    unless the host application (or this function) installs a handler.
    """
    # Silence noisy third-party loggers
    for logger_name in ("asyncio", "httpcore", "httpx"):
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    if DEBUG_ENABLED:
        level = logging.DEBUG

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(VerboseFormatter() if DEBUG_ENABLED else ConciseFormatter())
    root.addHandler(handler)
    return root
