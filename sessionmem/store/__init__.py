from __future__ import annotations

from ._store import SessionStore
from .search import build_match_query
from .types import (
    Observation,
    ObservationInput,
    Session,
    StoredRecord,
    Summary,
    SummaryInput,
    UserPrompt,
)

__all__ = [
    "Observation",
    "ObservationInput",
    "Session",
    "SessionStore",
    "StoredRecord",
    "Summary",
    "SummaryInput",
    "UserPrompt",
    "build_match_query",
]
