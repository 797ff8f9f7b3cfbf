from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any

from .capture import (
    ToolCall,
    estimate_discovery_tokens,
    fallback_summary,
    observation_from_tool_call,
    resolve_project,
)
from .config import SessionMemConfig
from .context import build_context
from .errors import NotFoundError, ValidationError
from .store import Observation, SessionStore
from .xml_parser import parse_distilled_output

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SessionInit:
    db_id: int
    prompt_number: int

    def to_dict(self) -> dict[str, Any]:
        return {"dbId": self.db_id, "promptNumber": self.prompt_number}


@dataclass(frozen=True, slots=True)
class IngestResult:
    observation_ids: list[int]
    summary_id: int | None
    skip_summary_reason: str | None = None


def _required(value: Any, name: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValidationError(f"{name} is required")
    return text


class MemoryService:
    """Session-facing operations over one shared store.

    Transports (HTTP worker, MCP server, CLI, hook adapters) hold a service and
    translate its errors into their own surface.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        observation_limit: int = 50,
        summary_limit: int = 10,
        tz: dt.tzinfo | None = None,
    ):
        self.store = store
        self.observation_limit = observation_limit
        self.summary_limit = summary_limit
        self.tz = tz

    @classmethod
    def from_config(cls, config: SessionMemConfig) -> MemoryService:
        return cls(
            SessionStore(config.db_path),
            observation_limit=config.context_observations,
            summary_limit=config.context_summaries,
        )

    def close(self) -> None:
        self.store.close()

    def init_session(self, session_id: str, project: str, user_prompt: str = "") -> SessionInit:
        session_id = _required(session_id, "session_id")
        project = _required(project, "project")
        db_id = self.store.create_session(session_id, project, user_prompt or "")
        prompt_number = self.store.increment_prompt_counter(session_id)
        if user_prompt and user_prompt.strip():
            self.store.save_user_prompt(session_id, prompt_number, user_prompt)
        logger.info(
            "session initialized: %s project=%s prompt=%s", session_id, project, prompt_number
        )
        return SessionInit(db_id=db_id, prompt_number=prompt_number)

    def record_observation(
        self,
        session_id: str,
        tool_name: str,
        tool_input: Any = None,
        tool_output: Any = None,
        *,
        project: str | None = None,
        cwd: str | None = None,
    ) -> int | None:
        """Store the observation derived from one tool call.

        Returns the new observation id, or None when the call is filtered out.
        """

        session_id = _required(session_id, "session_id")
        call = ToolCall(tool_name=tool_name, tool_input=tool_input, tool_output=tool_output, cwd=cwd)
        observation = observation_from_tool_call(call)
        if observation is None:
            logger.debug("tool call skipped: %s", tool_name)
            return None
        session = self.store.get_session(session_id)
        resolved = resolve_project(session.project if session else None, project, cwd)
        prompt_number = (session.prompt_counter if session else 0) or 1
        record = self.store.store_observation(
            session_id,
            resolved,
            observation,
            prompt_number=prompt_number,
            discovery_tokens=estimate_discovery_tokens(call),
        )
        return record.id

    def finalize_summary(
        self,
        session_id: str,
        last_user_message: str | None = None,
        last_assistant_message: str | None = None,
    ) -> int | None:
        session_id = _required(session_id, "session_id")
        session = self.store.get_session(session_id)
        if session is None:
            raise NotFoundError(f"session {session_id!r} not found")
        summary_id = None
        summary = fallback_summary(last_user_message, last_assistant_message)
        if summary is not None:
            record = self.store.store_summary(
                session_id,
                session.project,
                summary,
                prompt_number=session.prompt_counter or 1,
            )
            summary_id = record.id
        self.store.mark_session_completed(session_id)
        logger.info("session completed: %s summary=%s", session_id, summary_id)
        return summary_id

    def get_context(self, project: str, *, cwd: str | None = None) -> str:
        project = _required(project, "project")
        return build_context(
            self.store,
            project,
            observation_limit=self.observation_limit,
            summary_limit=self.summary_limit,
            cwd=cwd,
            tz=self.tz,
        )

    def search(
        self, query: str, project: str | None = None, limit: int = 20
    ) -> list[dict[str, Any]]:
        results = self.store.search_observations(query, project=project or None, limit=limit)
        return [obs.index_entry() for obs in results]

    def get_observation(self, observation_id: int) -> Observation | None:
        return self.store.get_observation_by_id(observation_id)

    def forget_observation(self, observation_id: int) -> bool:
        """Operator maintenance: drop one observation and its index entry."""

        removed = self.store.delete_observation(observation_id)
        if removed:
            logger.info("observation forgotten: %s", observation_id)
        return removed

    def list_projects(self) -> list[str]:
        return self.store.get_all_projects()

    def ingest_distilled(
        self,
        session_id: str,
        project: str,
        text: str,
        *,
        prompt_number: int | None = None,
    ) -> IngestResult:
        """Store observations and a summary already distilled into XML blocks."""

        session_id = _required(session_id, "session_id")
        project = _required(project, "project")
        parsed = parse_distilled_output(text)
        if prompt_number is None:
            prompt_number = self.store.get_prompt_number(session_id)
        observation_ids = [
            self.store.store_observation(
                session_id, project, observation, prompt_number=prompt_number
            ).id
            for observation in parsed.observations
        ]
        summary_id = None
        if parsed.summary is not None:
            summary_id = self.store.store_summary(
                session_id, project, parsed.summary, prompt_number=prompt_number
            ).id
        return IngestResult(
            observation_ids=observation_ids,
            summary_id=summary_id,
            skip_summary_reason=parsed.skip_summary_reason,
        )
