from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Iterator
from pathlib import Path

import pytest

from sessionmem.service import MemoryService
from sessionmem.store import SessionStore


class FakeClock:
    def __init__(self, start: dt.datetime) -> None:
        self.now = start

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **kwargs: float) -> dt.datetime:
        self.now = self.now + dt.timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[None]:
    monkeypatch.setenv("SESSIONMEM_SETTINGS", str(tmp_path / "settings.json"))
    monkeypatch.setenv("SESSIONMEM_DB", str(tmp_path / "memory.sqlite"))
    monkeypatch.setenv("SESSIONMEM_LOG_DIR", str(tmp_path / "logs"))
    for name in (
        "SESSIONMEM_CONTEXT_OBSERVATIONS",
        "SESSIONMEM_CONTEXT_SUMMARIES",
        "SESSIONMEM_LOG_LEVEL",
        "SESSIONMEM_WORKER_HOST",
        "SESSIONMEM_WORKER_PORT",
        "SESSIONMEM_PROJECT",
    ):
        monkeypatch.delenv(name, raising=False)
    yield
    package_logger = logging.getLogger("sessionmem")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.setLevel(logging.NOTSET)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(dt.datetime(2025, 10, 17, 9, 30, tzinfo=dt.UTC))


@pytest.fixture
def store(tmp_path: Path, clock: FakeClock) -> Iterator[SessionStore]:
    store = SessionStore(tmp_path / "mem.sqlite", clock=clock)
    try:
        yield store
    finally:
        store.close()


@pytest.fixture
def service(store: SessionStore) -> MemoryService:
    return MemoryService(store, tz=dt.UTC)
