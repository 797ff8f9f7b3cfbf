from __future__ import annotations

import pytest

from sessionmem.capture import (
    CommandInput,
    FileEditInput,
    GenericInput,
    ToolCall,
    classify_tool_input,
    contains_private_content,
    estimate_discovery_tokens,
    fallback_summary,
    is_internal_memory_tool,
    normalize_tool_name,
    observation_from_tool_call,
    resolve_project,
    should_skip,
    strip_private,
)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("Read", "read"),
        ("  Bash ", "bash"),
        ("mcp__filesystem__read_file", "read_file"),
        ("functions.Edit", "edit"),
        ("server:Write", "write"),
        (None, ""),
    ],
)
def test_normalize_tool_name(raw: str | None, expected: str) -> None:
    assert normalize_tool_name(raw) == expected


@pytest.mark.parametrize("tool", ["Read", "LS", "glob", "NotebookRead", "mcp__fs__Read"])
def test_low_value_tools_are_skipped(tool: str) -> None:
    assert should_skip(ToolCall(tool, {"file_path": "a.py"}, "contents"))
    assert observation_from_tool_call(ToolCall(tool, {"file_path": "a.py"})) is None


def test_internal_memory_tools_are_skipped() -> None:
    assert is_internal_memory_tool("mcp__sessionmem__memory_search")
    assert is_internal_memory_tool("memory_get")
    assert not is_internal_memory_tool("Edit")
    assert should_skip(ToolCall("mcp__sessionmem__memory_context", {}, "digest"))


def test_private_content_anywhere_skips_the_call() -> None:
    assert contains_private_content({"command": "echo <private>token</private>"})
    assert contains_private_content(None, "prefix <sessionmem-context> injected")
    assert not contains_private_content({"command": "ls"}, "ok")
    call = ToolCall("Bash", {"command": "cat secrets"}, "<private>hunter2</private>")
    assert should_skip(call)
    assert observation_from_tool_call(call) is None


def test_strip_private_removes_tagged_spans() -> None:
    assert strip_private("keep <private>drop\nthis</private> tail") == "keep  tail"
    assert strip_private(None) == ""


def test_classify_tool_input_variants() -> None:
    assert classify_tool_input({"file_path": "src/app.py"}) == FileEditInput(
        ("src/app.py",), edited="src/app.py"
    )
    assert classify_tool_input({"target_file": "b.py"}) == FileEditInput(("b.py",))
    assert classify_tool_input({"command": "npm test"}) == CommandInput("npm test")
    assert classify_tool_input({"query": "x"}) == GenericInput()
    assert classify_tool_input("plain string") == GenericInput()
    assert classify_tool_input({"file_path": "  "}) == GenericInput()


def test_file_edit_observation() -> None:
    obs = observation_from_tool_call(
        ToolCall("Write", {"file_path": "/repo/src/auth.js", "content": "x"}, "ok")
    )
    assert obs is not None
    assert obs.type == "change"
    assert obs.title == "Modified auth.js"
    assert obs.subtitle == "Tool: Write"
    assert obs.files_modified == ["/repo/src/auth.js"]
    assert obs.files_read == []
    assert obs.concepts == ["what-changed"]


def test_target_file_is_recorded_but_not_titled() -> None:
    obs = observation_from_tool_call(ToolCall("MultiEdit", {"target_file": "/repo/b.py"}))
    assert obs is not None
    assert obs.title == "MultiEdit"
    assert obs.files_modified == ["/repo/b.py"]

    obs = observation_from_tool_call(
        ToolCall("Run", {"target_file": "/repo/b.py", "command": "black b.py"})
    )
    assert obs is not None
    assert obs.title == "Executed: black b.py"
    assert obs.files_modified == ["/repo/b.py"]

    obs = observation_from_tool_call(
        ToolCall("Edit", {"file_path": "/repo/a.py", "target_file": "/repo/b.py"})
    )
    assert obs is not None
    assert obs.title == "Modified a.py"
    assert obs.files_modified == ["/repo/a.py", "/repo/b.py"]


def test_command_observation_truncates_title() -> None:
    command = "pytest -q tests/test_store.py --maxfail=1 --disable-warnings"
    obs = observation_from_tool_call(ToolCall("Bash", {"command": command}, "passed"))
    assert obs is not None
    assert obs.title == f"Executed: {command[:40]}"
    assert obs.files_modified == []


def test_generic_observation_uses_tool_name() -> None:
    obs = observation_from_tool_call(ToolCall("WebFetch", {"url": "https://example.com"}))
    assert obs is not None
    assert obs.title == "WebFetch"
    assert obs.subtitle == "Tool: WebFetch"


def test_discovery_tokens_round_up() -> None:
    call = ToolCall("Bash", "abcde", "xyz")
    assert estimate_discovery_tokens(call) == 2
    assert estimate_discovery_tokens(ToolCall("Bash")) == 0
    # dict inputs are measured by their JSON serialization
    assert estimate_discovery_tokens(ToolCall("Bash", {"a": 1})) == 2


def test_resolve_project_precedence() -> None:
    assert resolve_project("stored", "given", "/work/cwd") == "stored"
    assert resolve_project(None, "given", "/work/cwd") == "given"
    assert resolve_project("", "  ", "/work/cwd/") == "cwd"
    assert resolve_project(None, None, None) == "unknown-project"
    assert resolve_project(None, None, "/") == "unknown-project"
    assert resolve_project(None, 7, 123) == "unknown-project"  # type: ignore[arg-type]
    assert resolve_project(None, ["x"], "/work/app") == "app"  # type: ignore[arg-type]


def test_fallback_summary_from_both_messages() -> None:
    user = "Fix the login bug\nIt fails after an hour"
    assistant = "Extended the token lifetime. " * 20
    summary = fallback_summary(user, assistant)

    assert summary is not None
    assert summary.request == "Fix the login bug"
    assert summary.completed == assistant.strip()[:200]
    assert summary.investigated is None
    assert summary.next_steps is None


def test_fallback_summary_request_is_bounded() -> None:
    summary = fallback_summary("x" * 150, None)
    assert summary is not None
    assert summary.request == "x" * 100
    assert summary.completed is None


def test_fallback_summary_uses_assistant_when_user_missing() -> None:
    summary = fallback_summary(None, "Refactored the parser\nand added tests")
    assert summary is not None
    assert summary.request == "Refactored the parser"
    assert summary.completed == "Refactored the parser\nand added tests"


def test_fallback_summary_without_messages() -> None:
    assert fallback_summary(None, None) is None
    assert fallback_summary("  ", "") is None
