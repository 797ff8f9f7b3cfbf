from __future__ import annotations

import json
import math
import os
import re
from dataclasses import dataclass
from typing import Any

from .store.types import ObservationInput, SummaryInput

SKIPPED_TOOLS = {"read", "ls", "glob", "notebookread"}
PRIVATE_MARKERS = ("<private>", "<sessionmem-context>")
PRIVATE_BLOCK_RE = re.compile(r"<private>.*?</private>", re.DOTALL | re.IGNORECASE)

COMMAND_TITLE_CHARS = 40
REQUEST_CHARS = 100
COMPLETED_CHARS = 200
CHARS_PER_TOKEN = 4
UNKNOWN_PROJECT = "unknown-project"


@dataclass(frozen=True, slots=True)
class FileEditInput:
    paths: tuple[str, ...]
    # Only file_path names the title; target_file is recorded but not titled.
    edited: str | None = None
    command: str | None = None


@dataclass(frozen=True, slots=True)
class CommandInput:
    command: str


@dataclass(frozen=True, slots=True)
class GenericInput:
    pass


ToolInput = FileEditInput | CommandInput | GenericInput


@dataclass(slots=True)
class ToolCall:
    tool_name: str
    tool_input: Any = None
    tool_output: Any = None
    cwd: str | None = None


def normalize_tool_name(tool_name: str | None) -> str:
    tool = str(tool_name or "").strip().lower()
    for separator in (".", ":", "__"):
        if separator in tool:
            tool = tool.split(separator)[-1]
    return tool


def is_internal_memory_tool(tool_name: str | None) -> bool:
    """Return True for this project's own retrieval tools.

    Their outputs are previously stored memory; recording them again would feed the
    digest back into itself.
    """

    raw = str(tool_name or "").strip().lower()
    return "sessionmem" in raw or normalize_tool_name(raw).startswith("memory_")


def _serialize(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


def contains_private_content(*values: Any) -> bool:
    for value in values:
        text = _serialize(value)
        if any(marker in text for marker in PRIVATE_MARKERS):
            return True
    return False


def strip_private(text: str | None) -> str:
    if not text:
        return ""
    return PRIVATE_BLOCK_RE.sub("", text)


def should_skip(call: ToolCall) -> bool:
    tool = normalize_tool_name(call.tool_name)
    if tool in SKIPPED_TOOLS:
        return True
    if is_internal_memory_tool(call.tool_name):
        return True
    return contains_private_content(call.tool_input, call.tool_output)


def classify_tool_input(tool_input: Any) -> ToolInput:
    if not isinstance(tool_input, dict):
        return GenericInput()
    file_path, target_file, command = (
        value if isinstance(value, str) and value.strip() else None
        for value in (
            tool_input.get("file_path"),
            tool_input.get("target_file"),
            tool_input.get("command"),
        )
    )
    paths = tuple(path for path in (file_path, target_file) if path)
    if paths:
        return FileEditInput(paths=paths, edited=file_path, command=command)
    if command:
        return CommandInput(command=command)
    return GenericInput()


def estimate_discovery_tokens(call: ToolCall) -> int:
    chars = len(_serialize(call.tool_input)) + len(_serialize(call.tool_output))
    return math.ceil(chars / CHARS_PER_TOKEN)


def observation_from_tool_call(call: ToolCall) -> ObservationInput | None:
    """Deterministic stand-in for model distillation of a single tool call."""

    if should_skip(call):
        return None
    tool_name = str(call.tool_name or "").strip()
    variant = classify_tool_input(call.tool_input)
    files_modified: list[str] = []
    if isinstance(variant, FileEditInput):
        files_modified.extend(variant.paths)
        if variant.edited:
            title = f"Modified {os.path.basename(variant.edited)}"
        elif variant.command:
            title = f"Executed: {variant.command[:COMMAND_TITLE_CHARS]}"
        else:
            title = tool_name or "Tool execution"
    elif isinstance(variant, CommandInput):
        title = f"Executed: {variant.command[:COMMAND_TITLE_CHARS]}"
    else:
        title = tool_name or "Tool execution"
    return ObservationInput(
        type="change",
        title=title,
        subtitle=f"Tool: {tool_name}",
        facts=[],
        narrative=None,
        concepts=["what-changed"],
        files_read=[],
        files_modified=files_modified,
    )


def resolve_project(
    session_project: str | None, project: str | None, cwd: str | None
) -> str:
    # Non-string values come from loosely typed payloads and count as absent.
    for candidate in (session_project, project):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    if isinstance(cwd, str) and cwd.strip():
        name = os.path.basename(cwd.strip().rstrip("/"))
        if name:
            return name
    return UNKNOWN_PROJECT


def fallback_summary(
    last_user_message: str | None, last_assistant_message: str | None
) -> SummaryInput | None:
    user = (last_user_message or "").strip()
    assistant = (last_assistant_message or "").strip()
    if not user and not assistant:
        return None
    source = user or assistant
    request = source.split("\n", 1)[0][:REQUEST_CHARS]
    return SummaryInput(
        request=request or None,
        completed=assistant[:COMPLETED_CHARS] or None,
    )
