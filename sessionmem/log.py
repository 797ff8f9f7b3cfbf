from __future__ import annotations

import datetime as dt
import logging
import sys
from pathlib import Path

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "SILENT": logging.CRITICAL + 10,
}

PACKAGE_LOGGER = "sessionmem"
_HANDLER_MARK = "_sessionmem_handler"


def parse_level(value: str | None) -> int:
    return LEVELS.get((value or "").strip().upper(), logging.INFO)


def log_file_path(log_dir: Path | str, day: dt.date | None = None) -> Path:
    day = day or dt.date.today()
    return Path(log_dir).expanduser() / f"worker-{day.isoformat()}.log"


def configure_logging(
    level: str | None = "INFO",
    log_dir: Path | str | None = None,
    *,
    console: bool = False,
) -> logging.Logger:
    """Attach file (and optionally stderr) handlers to the package logger.

    Only entry points call this. Library modules log through their own
    ``logging.getLogger(__name__)`` and never install handlers. Calling it again
    replaces the handlers it installed before.
    """

    root = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(parse_level(level))
    formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)
    handlers: list[logging.Handler] = []
    if log_dir is not None:
        path = log_file_path(log_dir)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    if console:
        # stdout belongs to hook responses and MCP framing.
        handlers.append(logging.StreamHandler(sys.stderr))
    for handler in handlers:
        handler.setFormatter(formatter)
        setattr(handler, _HANDLER_MARK, True)
        root.addHandler(handler)
    return root
