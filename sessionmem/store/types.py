from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

SessionStatus = Literal["active", "completed", "failed"]


@dataclass(frozen=True, slots=True)
class Session:
    id: int
    session_id: str
    project: str
    user_prompt: str | None
    prompt_counter: int
    started_at: str
    started_at_epoch: int
    completed_at: str | None
    completed_at_epoch: int | None
    status: SessionStatus

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class Observation:
    id: int
    session_id: str
    project: str
    type: str
    title: str | None
    subtitle: str | None
    facts: list[str]
    narrative: str | None
    concepts: list[str]
    files_read: list[str]
    files_modified: list[str]
    prompt_number: int | None
    discovery_tokens: int
    created_at: str
    created_at_epoch: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def index_entry(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "subtitle": self.subtitle,
            "project": self.project,
            "created_at": self.created_at,
        }


@dataclass(frozen=True, slots=True)
class Summary:
    id: int
    session_id: str
    project: str
    request: str | None
    investigated: str | None
    learned: str | None
    completed: str | None
    next_steps: str | None
    notes: str | None
    prompt_number: int | None
    discovery_tokens: int
    created_at: str
    created_at_epoch: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class UserPrompt:
    id: int
    session_id: str
    prompt_number: int
    prompt_text: str
    created_at: str
    created_at_epoch: int


@dataclass(frozen=True, slots=True)
class StoredRecord:
    id: int
    created_at_epoch: int


@dataclass
class ObservationInput:
    """Caller-supplied observation fields; the store fills in identity and time."""

    type: str | None = None
    title: str | None = None
    subtitle: str | None = None
    facts: list[str] = field(default_factory=list)
    narrative: str | None = None
    concepts: list[str] = field(default_factory=list)
    files_read: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)


@dataclass
class SummaryInput:
    request: str | None = None
    investigated: str | None = None
    learned: str | None = None
    completed: str | None = None
    next_steps: str | None = None
    notes: str | None = None
