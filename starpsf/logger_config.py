"""
Logging setup for the command-line front end.

Library modules only call ``logging.getLogger(__name__)``; handlers are
attached here, once, by the application.
"""

import logging
import sys
from pathlib import Path
from typing import Optional


def setup_logging(
    log_file: Optional[Path] = None,
    log_level: int = logging.INFO,
    console_output: bool = True,
) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        log_file: Optional log file path. Its directory is created if needed.
        log_level: Logging level for every handler.
        console_output: Also log to stdout.

    Returns:
        The configured root logger.
    """
    logger = logging.getLogger()
    logger.setLevel(log_level)
    logger.handlers.clear()

    file_formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    console_formatter = logging.Formatter(
        "[%(levelname)s] %(message)s",
    )

    if log_file is not None:
        log_file = Path(log_file).resolve()
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
        except OSError as e:
            print(f"[WARN] Cannot open log file {log_file}: {e}", file=sys.stderr)
        else:
            file_handler.setLevel(log_level)
            file_handler.setFormatter(file_formatter)
            logger.addHandler(file_handler)

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(log_level)
        console_handler.setFormatter(console_formatter)
        logger.addHandler(console_handler)

    return logger
