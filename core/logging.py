"""Logging setup for the bridge and its CLI.

Console output goes to stderr: stdout may be the editor's protocol channel.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from core.config import LOG_DIR

LOGGER_NAME = "ycmbridge"


def setup_logging(verbose: bool = False, log_dir: Path | None = None) -> logging.Logger:
    root = logging.getLogger(LOGGER_NAME)
    # Avoid duplicate handlers on re-init
    if root.handlers:
        return root

    log_dir = log_dir or LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    # File handler with rotation (10MB, keep 5)
    file_handler = RotatingFileHandler(
        log_dir / "bridge.log",
        maxBytes=10 * 1024 * 1024,
        backupCount=5
    )
    file_handler.setFormatter(formatter)
    file_handler.setLevel(logging.DEBUG)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)

    root.setLevel(logging.DEBUG)
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    return root


def get_logger(component: str) -> logging.Logger:
    """Return the ``ycmbridge.<component>`` logger."""
    return logging.getLogger(f"{LOGGER_NAME}.{component}")
