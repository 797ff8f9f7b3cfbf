from __future__ import annotations

import datetime as dt
import logging
from pathlib import Path

from sessionmem.log import LEVELS, configure_logging, log_file_path, parse_level


def test_log_file_is_named_by_day(tmp_path: Path) -> None:
    assert log_file_path(tmp_path, dt.date(2025, 10, 17)) == tmp_path / "worker-2025-10-17.log"


def test_parse_level() -> None:
    assert parse_level("debug") == logging.DEBUG
    assert parse_level("WARN") == logging.WARNING
    assert parse_level("silent") > logging.CRITICAL
    assert parse_level("chatty") == logging.INFO
    assert parse_level(None) == logging.INFO
    assert set(LEVELS) >= {"DEBUG", "INFO", "WARN", "ERROR", "SILENT"}


def test_configure_logging_writes_formatted_lines(tmp_path: Path) -> None:
    configure_logging("DEBUG", tmp_path)
    logging.getLogger("sessionmem.store").info("stored observation %s", 7)
    for handler in logging.getLogger("sessionmem").handlers:
        handler.flush()

    text = log_file_path(tmp_path).read_text(encoding="utf-8")
    assert "[INFO] [sessionmem.store] stored observation 7" in text
    assert text.startswith("[")


def test_silent_level_suppresses_errors(tmp_path: Path) -> None:
    configure_logging("SILENT", tmp_path)
    logging.getLogger("sessionmem.worker").error("should not appear")
    for handler in logging.getLogger("sessionmem").handlers:
        handler.flush()

    assert log_file_path(tmp_path).read_text(encoding="utf-8") == ""


def test_configure_logging_is_idempotent(tmp_path: Path) -> None:
    foreign = logging.NullHandler()
    package_logger = logging.getLogger("sessionmem")
    package_logger.addHandler(foreign)

    configure_logging("INFO", tmp_path, console=True)
    configure_logging("INFO", tmp_path, console=True)

    handlers = package_logger.handlers
    assert foreign in handlers
    assert len(handlers) == 3
