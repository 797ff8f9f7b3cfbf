"""Adapters from host hook payloads to memory operations.

Each hook takes the parsed JSON payload the host writes to stdin and returns the
JSON-ready response the host reads from stdout. Hooks never raise for bad input:
the host session must continue even when memory capture fails.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from pathlib import Path
from typing import Any

from .capture import resolve_project, strip_private
from .errors import NotFoundError, StorageError, ValidationError
from .service import MemoryService

logger = logging.getLogger(__name__)

CONTEXT_TAG = "sessionmem-context"
SYSTEM_REMINDER_RE = re.compile(r"<system-reminder>.*?</system-reminder>", re.DOTALL)

HOOK_EVENTS = {
    "start": "SessionStart",
    "prompt": "UserPromptSubmit",
    "tool": "PostToolUse",
    "stop": "Stop",
}


def hook_response(event: str, additional_context: str | None = None) -> dict[str, Any]:
    output: dict[str, Any] = {"hookEventName": event}
    if additional_context:
        output["additionalContext"] = additional_context
    return {"hookSpecificOutput": output}


def wrap_context(text: str) -> str:
    text = text.strip()
    if not text:
        return ""
    return f"<{CONTEXT_TAG}>\n{text}\n</{CONTEXT_TAG}>"


def _text_blocks(content: Any) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts = []
    for block in content:
        if isinstance(block, dict) and block.get("type") == "text":
            parts.append(str(block.get("text") or ""))
    return "".join(parts)


def extract_last_message(transcript_path: str | Path | None, role: str) -> str:
    """Return the newest ``role`` message text from a JSONL transcript."""

    if not transcript_path or not isinstance(transcript_path, str | Path):
        return ""
    path = Path(transcript_path).expanduser()
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        logger.warning("cannot read transcript %s: %s", path, exc)
        return ""
    for line in reversed(lines):
        if not line.strip():
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(entry, dict) or entry.get("type") != role:
            continue
        message = entry.get("message")
        if not isinstance(message, dict):
            continue
        text = SYSTEM_REMINDER_RE.sub("", _text_blocks(message.get("content"))).strip()
        if text:
            return text
    return ""


def _text_field(payload: dict[str, Any], *names: str) -> str | None:
    """First non-blank string among ``names``; values of any other type count as absent."""

    for name in names:
        value = payload.get(name)
        if isinstance(value, str) and value.strip():
            return value
    return None


def session_start(service: MemoryService, payload: dict[str, Any]) -> dict[str, Any]:
    cwd = _text_field(payload, "cwd")
    project = resolve_project(None, _text_field(payload, "project"), cwd)
    context = service.get_context(project, cwd=cwd)
    return hook_response(HOOK_EVENTS["start"], wrap_context(context))


def prompt_submit(service: MemoryService, payload: dict[str, Any]) -> dict[str, Any]:
    session_id = _text_field(payload, "session_id")
    if not session_id:
        logger.warning("prompt hook without session_id")
        return hook_response(HOOK_EVENTS["prompt"])
    project = resolve_project(
        None, _text_field(payload, "project"), _text_field(payload, "cwd")
    )
    prompt = strip_private(_text_field(payload, "prompt", "user_prompt")).strip()
    service.init_session(session_id, project, prompt)
    return hook_response(HOOK_EVENTS["prompt"])


def post_tool_use(service: MemoryService, payload: dict[str, Any]) -> dict[str, Any]:
    session_id = _text_field(payload, "session_id")
    if not session_id:
        logger.warning("tool hook without session_id")
        return hook_response(HOOK_EVENTS["tool"])
    service.record_observation(
        session_id,
        _text_field(payload, "tool_name") or "",
        payload.get("tool_input"),
        payload.get("tool_response", payload.get("tool_output")),
        project=_text_field(payload, "project"),
        cwd=_text_field(payload, "cwd"),
    )
    return hook_response(HOOK_EVENTS["tool"])


def stop(service: MemoryService, payload: dict[str, Any]) -> dict[str, Any]:
    session_id = _text_field(payload, "session_id")
    if not session_id:
        logger.warning("stop hook without session_id")
        return hook_response(HOOK_EVENTS["stop"])
    transcript_path = _text_field(payload, "transcript_path")
    service.finalize_summary(
        session_id,
        extract_last_message(transcript_path, "user"),
        extract_last_message(transcript_path, "assistant"),
    )
    return hook_response(HOOK_EVENTS["stop"])


HOOKS: dict[str, Callable[[MemoryService, dict[str, Any]], dict[str, Any]]] = {
    "start": session_start,
    "prompt": prompt_submit,
    "tool": post_tool_use,
    "stop": stop,
}


def run_hook(name: str, service: MemoryService, payload: Any) -> dict[str, Any]:
    handler = HOOKS.get(name)
    if handler is None:
        raise ValueError(f"unknown hook: {name}")
    if not isinstance(payload, dict):
        payload = {}
    try:
        return handler(service, payload)
    except (ValidationError, NotFoundError) as exc:
        logger.warning("%s hook rejected: %s", name, exc)
    except StorageError:
        logger.exception("%s hook failed", name)
    return hook_response(HOOK_EVENTS[name])
