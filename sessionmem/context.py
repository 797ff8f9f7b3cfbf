"""Context digest rendered for a new session.

The digest is a markdown document: a header and legend, a context economics block,
one table per calendar day of recent observations and the latest session summary.
Token counts use a fixed four-characters-per-token approximation.
"""

from __future__ import annotations

import datetime as dt
import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from . import db
from .observation_types import OBSERVATION_TYPES, TYPE_ICONS, type_icon
from .store.types import Observation, Summary

if TYPE_CHECKING:
    from .store import SessionStore

CHARS_PER_TOKEN = 4
DEFAULT_OBSERVATION_LIMIT = 50
DEFAULT_SUMMARY_LIMIT = 10

NO_FILE = "(no file)"
UNTITLED = "Untitled"
DITTO = "″"

WEEKDAYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

LEGEND = "**Legend:** 🎯 session-request | " + " | ".join(
    f"{TYPE_ICONS[kind]} {kind}" for kind in OBSERVATION_TYPES
)

INDEX_GUIDE = (
    "💡 **Context Index:** This index (titles, types, files, tokens) is usually enough "
    "to understand past work.",
    "",
    "When you need implementation details, rationale, or debugging context:",
    "- Use the memory_search and memory_get tools to fetch full observations on demand",
    f"- Critical types ({TYPE_ICONS['bugfix']} bugfix, {TYPE_ICONS['decision']} decision) "
    "often need detailed fetching",
    "- Trust this index over re-reading code for past decisions and learnings",
)


def empty_context(project: str) -> str:
    return f"# [{project}] recent context\n\nNo previous sessions found for this project yet."


@dataclass(frozen=True, slots=True)
class ContextEconomics:
    observations: int
    read_tokens: int
    discovery_tokens: int

    @property
    def savings(self) -> int:
        return self.discovery_tokens - self.read_tokens

    @property
    def savings_percent(self) -> int:
        if self.discovery_tokens <= 0:
            return 0
        return _round_half_up(self.savings * 100 / self.discovery_tokens)

    @property
    def discovery_thousands(self) -> int:
        return _round_half_up(self.discovery_tokens / 1000)


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _display_size(obs: Observation) -> int:
    return (
        len(obs.title or "")
        + len(obs.subtitle or "")
        + len(obs.narrative or "")
        + len(db.dump_list(obs.facts))
    )


def compute_economics(observations: Sequence[Observation]) -> ContextEconomics:
    total_chars = sum(_display_size(obs) for obs in observations)
    return ContextEconomics(
        observations=len(observations),
        read_tokens=math.ceil(total_chars / CHARS_PER_TOKEN),
        discovery_tokens=sum(max(0, obs.discovery_tokens) for obs in observations),
    )


def _local_time(epoch_ms: int, tz: dt.tzinfo | None) -> dt.datetime:
    # astimezone(None) converts to the host's local zone.
    return dt.datetime.fromtimestamp(epoch_ms / 1000, dt.UTC).astimezone(tz)


def format_day(value: dt.date) -> str:
    return f"{WEEKDAYS[value.weekday()]}, {MONTHS[value.month - 1]} {value.day}"


def format_time(value: dt.datetime) -> str:
    return f"{value:%H:%M}"


def display_file(obs: Observation, cwd: str | None = None) -> str:
    if not obs.files_modified:
        return NO_FILE
    path = obs.files_modified[0]
    if cwd:
        prefix = cwd.rstrip("/") + "/"
        if path.startswith(prefix):
            path = path[len(prefix) :]
    return _cell(path) or NO_FILE


def _cell(text: str) -> str:
    return " ".join(text.split()).replace("|", "\\|")


def group_by_day(
    observations: Sequence[Observation], tz: dt.tzinfo | None = None
) -> list[tuple[dt.date, list[tuple[dt.datetime, Observation]]]]:
    """Most recent day first; each day's rows oldest first."""

    days: dict[dt.date, list[tuple[dt.datetime, Observation]]] = {}
    for obs in observations:
        when = _local_time(obs.created_at_epoch, tz)
        days.setdefault(when.date(), []).append((when, obs))
    grouped = []
    for day in sorted(days, reverse=True):
        rows = sorted(days[day], key=lambda item: (item[1].created_at_epoch, item[1].id))
        grouped.append((day, rows))
    return grouped


def _render_day(
    rows: list[tuple[dt.datetime, Observation]], cwd: str | None
) -> list[str]:
    lines = ["| ID | Time | T | Title | File |", "|----|------|---|-------|------|"]
    last_time = ""
    for when, obs in rows:
        time_text = format_time(when)
        shown = DITTO if time_text == last_time else time_text
        last_time = time_text
        title = _cell(obs.title or "") or UNTITLED
        lines.append(
            f"| #{obs.id} | {shown} | {type_icon(obs.type)} | {title} | {display_file(obs, cwd)} |"
        )
    return lines


def _render_summary(summary: Summary) -> list[str]:
    lines = ["---", "", "**📋 Last Session Summary**", ""]
    if summary.request:
        lines.append(f"- **Request:** {summary.request}")
    if summary.completed:
        lines.append(f"- **Completed:** {summary.completed}")
    if summary.next_steps:
        lines.append(f"- **Next Steps:** {summary.next_steps}")
    lines.append("")
    return lines


def render_context(
    project: str,
    observations: Sequence[Observation],
    summaries: Sequence[Summary],
    *,
    cwd: str | None = None,
    tz: dt.tzinfo | None = None,
) -> str:
    """Render the digest from rows already ordered most recent first."""

    if not observations and not summaries:
        return empty_context(project)

    economics = compute_economics(observations)
    out = [f"# [{project}] recent context", "", LEGEND, "", *INDEX_GUIDE, ""]
    out.append("📊 **Context Economics**:")
    out.append(
        f"- Loading: {economics.observations} observations "
        f"(~{economics.read_tokens:,} tokens to read)"
    )
    out.append(
        f"- Work investment: ~{economics.discovery_tokens:,} tokens spent on research, "
        "building, and decisions"
    )
    if economics.savings > 0:
        out.append(
            f"- Your savings: ~{economics.savings:,} tokens "
            f"({economics.savings_percent}% reduction from reuse)"
        )
    out.append("")

    for day, rows in group_by_day(observations, tz):
        out.append(f"### {format_day(day)}")
        out.append("")
        out.extend(_render_day(rows, cwd))
        out.append("")

    if summaries:
        out.extend(_render_summary(summaries[0]))

    if economics.savings > 0:
        out.append(
            f"💰 Access {economics.discovery_thousands}k tokens of past research & decisions "
            f"for just ~{economics.read_tokens:,}t. Use memory_search to access memories by ID."
        )
    return "\n".join(out).rstrip()


def build_context(
    store: SessionStore,
    project: str,
    *,
    observation_limit: int = DEFAULT_OBSERVATION_LIMIT,
    summary_limit: int = DEFAULT_SUMMARY_LIMIT,
    cwd: str | None = None,
    tz: dt.tzinfo | None = None,
) -> str:
    observations = store.get_recent_observations(project, observation_limit)
    summaries = store.get_recent_summaries(project, summary_limit)
    return render_context(project, observations, summaries, cwd=cwd, tz=tz)
