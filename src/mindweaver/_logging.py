"""Logging configuration for mindweaver.

Usage in other modules:
    import logging
    log = logging.getLogger(__name__)

The log level can be configured via the MINDWEAVER_LOG_LEVEL environment variable
(DEBUG, INFO, WARNING, ERROR). Provider payloads are only ever logged at DEBUG.
"""

import logging
import os
import sys

_quiet_mode = False


def configure_logging() -> None:
    """Configure logging for the mindweaver package.

    Call this once at application startup (cli.py does).
    Subsequent calls are no-ops.
    """
    root_logger = logging.getLogger("mindweaver")

    if root_logger.handlers:
        return

    level_name = os.environ.get("MINDWEAVER_LOG_LEVEL", "WARNING").upper()
    level = getattr(logging, level_name, logging.WARNING)
    if _quiet_mode:
        level = max(level, logging.ERROR)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(
        logging.Formatter(
            fmt="[%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )

    root_logger.setLevel(level)
    root_logger.addHandler(handler)

    # Prevent propagation to root logger (avoids duplicate messages)
    root_logger.propagate = False


def set_quiet_mode(quiet: bool) -> None:
    """Raise the package log threshold to ERROR when quiet is requested."""
    global _quiet_mode
    _quiet_mode = quiet

    root_logger = logging.getLogger("mindweaver")
    if quiet:
        root_logger.setLevel(logging.ERROR)
        for handler in root_logger.handlers:
            handler.setLevel(logging.ERROR)
