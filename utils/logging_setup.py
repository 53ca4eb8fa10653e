"""Logging configuration for rotating file + console output."""
import logging
import os
from logging.handlers import RotatingFileHandler

from utils import xdg


def setup_logging(verbose: bool = False, to_file: bool = True) -> None:
    """Configure global logging handlers (idempotent)."""
    root_logger = logging.getLogger()
    if root_logger.handlers:
        return

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if to_file:
        file_handler = RotatingFileHandler(
            os.path.join(xdg.state_dir(), "camera-bridge.log"),
            maxBytes=5 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)
