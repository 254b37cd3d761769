"""StockFlow: point-of-sale, inventory and customer credit for a small store.

Importing the package configures the shared ``stockflow`` logger. Records go
to a rotating file under ``.logs`` (or ``$STOCKFLOW_LOG_DIR``) and, from
WARNING upwards, to stderr. The CLI raises the console level with
``--verbose``.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

__version__ = "1.0.0"

LOG_DIR_ENV = "STOCKFLOW_LOG_DIR"
PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_MAX_BYTES = 1_000_000
LOG_BACKUPS = 5


def log_file_path() -> Path:
    override = os.environ.get(LOG_DIR_ENV)
    log_dir = Path(override).expanduser() if override else PROJECT_ROOT / ".logs"
    return log_dir / "stockflow.log"


def _configure_logging() -> logging.Logger:
    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    log_file = log_file_path()
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUPS,
            encoding="utf-8",
        )
    except OSError as exc:
        print(f"Warning: unable to open log file '{log_file}': {exc}", file=sys.stderr)
    else:
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.set_name("console")
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


def set_console_level(level: int) -> None:
    """Change how much of the log reaches stderr."""

    for handler in log.handlers:
        if handler.get_name() == "console":
            handler.setLevel(level)


log = _configure_logging()
log.debug("Logger initialized for the 'stockflow' package (version %s).", __version__)
