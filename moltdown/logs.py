"""
Logging setup for moltdown entry points.

Library modules only call logging.getLogger(__name__). The CLI attaches a
rich handler to the "moltdown" logger, plus a file handler for bootstrap
runs so the full log survives the terminal session.
"""

import logging
import os
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "moltdown"

_FILE_FMT = "[%(levelname)s] %(asctime)s %(name)s - %(message)s"
_DATEFMT = "%H:%M:%S"

logging.getLogger(LOGGER_NAME).addHandler(logging.NullHandler())


def configure_logging(
    level: int | str | None = None,
    log_file: Path | None = None,
    console: Console | None = None,
) -> None:
    """
    Attach handlers to the moltdown logger.

    Safe to call more than once; handlers are only added the first time.

    Args:
        level: Log level; defaults to MOLTDOWN_LOG_LEVEL or INFO
        log_file: Optional file that receives a plain-text copy of every record
        console: Console the rich handler writes to
    """
    logger = logging.getLogger(LOGGER_NAME)

    if level is None:
        level = os.environ.get("MOLTDOWN_LOG_LEVEL", "INFO").strip().upper() or "INFO"
    logger.setLevel(level)

    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        handler = RichHandler(
            console=console or Console(stderr=True),
            show_path=False,
            log_time_format=f"[{_DATEFMT}]",
        )
        logger.addHandler(handler)

    if log_file is not None:
        resolved = log_file.resolve()
        already = any(
            isinstance(h, logging.FileHandler) and Path(h.baseFilename) == resolved
            for h in logger.handlers
        )
        if not already:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(logging.Formatter(_FILE_FMT, datefmt=_DATEFMT))
            logger.addHandler(file_handler)


def bootstrap_log_path(log_dir: Path, now: datetime | None = None) -> Path:
    """Return the per-run bootstrap log file path (bootstrap_YYYYmmdd_HHMMSS.log)."""
    now = now or datetime.now()
    return log_dir / f"bootstrap_{now.strftime('%Y%m%d_%H%M%S')}.log"
