from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

import pytest

from sessionmem import db
from sessionmem.errors import StorageError, ValidationError
from sessionmem.store import ObservationInput, SessionStore, SummaryInput
from sessionmem.store import search as store_search


def test_create_session_is_idempotent(store: SessionStore) -> None:
    first = store.create_session("s1", "demo", "fix the login bug")
    second = store.create_session("s1", "demo", "")

    session = store.get_session("s1")
    assert first == second
    assert session is not None
    assert session.project == "demo"
    assert session.user_prompt == "fix the login bug"
    assert session.status == "active"
    assert session.prompt_counter == 0


def test_create_session_overwrites_only_non_empty_fields(store: SessionStore) -> None:
    store.create_session("s1", "demo", "first prompt")
    store.create_session("s1", "renamed", "")
    session = store.get_session("s1")
    assert session is not None
    assert session.project == "renamed"
    assert session.user_prompt == "first prompt"

    store.create_session("s1", "renamed", "second prompt")
    session = store.get_session("s1")
    assert session is not None
    assert session.user_prompt == "second prompt"


def test_create_session_requires_identifiers(store: SessionStore) -> None:
    with pytest.raises(ValidationError):
        store.create_session("", "demo")
    with pytest.raises(ValidationError):
        store.create_session("s1", "  ")
    assert store.get_session("s1") is None
    assert store.get_all_projects() == []


def test_get_session_missing_returns_none(store: SessionStore) -> None:
    assert store.get_session("nope") is None
    assert store.get_observation_by_id(12345) is None


def test_increment_prompt_counter_sequence(store: SessionStore) -> None:
    store.create_session("s1", "demo")
    assert [store.increment_prompt_counter("s1") for _ in range(3)] == [1, 2, 3]
    assert store.get_prompt_counter("s1") == 3
    assert store.get_prompt_number("s1") == 3


def test_increment_prompt_counter_unknown_session_falls_back_to_one(
    store: SessionStore, caplog: pytest.LogCaptureFixture
) -> None:
    # Callers are expected to create the session first; the fallback masks that mistake.
    with caplog.at_level(logging.WARNING, logger="sessionmem"):
        assert store.increment_prompt_counter("missing") == 1
    assert "unknown session" in caplog.text
    assert store.get_session("missing") is None


def test_get_prompt_number_defaults_to_one(store: SessionStore) -> None:
    store.create_session("s1", "demo")
    assert store.get_prompt_counter("s1") == 0
    assert store.get_prompt_number("s1") == 1
    assert store.get_prompt_number("missing") == 1


def test_mark_session_completed_twice_keeps_latest_timestamp(
    store: SessionStore, clock
) -> None:
    store.create_session("s1", "demo")
    assert store.mark_session_completed("s1") is True
    second = clock.advance(minutes=5)
    assert store.mark_session_completed("s1") is True

    session = store.get_session("s1")
    assert session is not None
    assert session.status == "completed"
    assert session.completed_at == second.isoformat()
    assert session.completed_at_epoch == int(second.timestamp() * 1000)
    assert store.mark_session_completed("missing") is False


def test_store_observation_auto_creates_session(store: SessionStore) -> None:
    record = store.store_observation("s9", "demo", {"type": "feature", "title": "Added search"})

    session = store.get_session("s9")
    assert session is not None
    assert session.project == "demo"
    assert session.user_prompt == ""
    assert record.id > 0


def test_observation_array_fields_are_always_lists(store: SessionStore) -> None:
    record = store.store_observation("s1", "demo", ObservationInput(title="Bare"))
    observation = store.get_observation_by_id(record.id)

    assert observation is not None
    assert observation.facts == []
    assert observation.concepts == []
    assert observation.files_read == []
    assert observation.files_modified == []


def test_observation_round_trip_preserves_order(store: SessionStore, clock) -> None:
    record = store.store_observation(
        "s1",
        "demo",
        ObservationInput(
            type="bugfix",
            title="Fixed login bug",
            subtitle="Token expiry",
            facts=["a", "b"],
            narrative="Token lifetime was too short.",
            concepts=["problem-solution", "gotcha"],
            files_read=["src/config.js"],
            files_modified=["src/auth.js", "src/session.js"],
        ),
        prompt_number=2,
        discovery_tokens=1200,
    )
    observation = store.get_observation_by_id(record.id)

    assert observation is not None
    assert observation.facts == ["a", "b"]
    assert observation.concepts == ["problem-solution", "gotcha"]
    assert observation.files_modified == ["src/auth.js", "src/session.js"]
    assert observation.prompt_number == 2
    assert observation.discovery_tokens == 1200
    assert observation.created_at_epoch == record.created_at_epoch
    assert observation.created_at == clock().isoformat()


def test_unknown_observation_type_is_coerced(
    store: SessionStore, caplog: pytest.LogCaptureFixture
) -> None:
    with caplog.at_level(logging.WARNING, logger="sessionmem"):
        record = store.store_observation("s1", "demo", {"type": "foo", "title": "Odd"})
    observation = store.get_observation_by_id(record.id)

    assert observation is not None
    assert observation.type == "change"
    assert "foo" in caplog.text


def test_observation_type_is_case_insensitive(store: SessionStore) -> None:
    record = store.store_observation("s1", "demo", {"type": " Decision ", "title": "Chose WAL"})
    observation = store.get_observation_by_id(record.id)
    assert observation is not None
    assert observation.type == "decision"


def test_mapping_input_accepts_single_string_lists(store: SessionStore) -> None:
    record = store.store_observation(
        "s1", "demo", {"title": "One file", "files_modified": "src/app.py"}
    )
    observation = store.get_observation_by_id(record.id)
    assert observation is not None
    assert observation.files_modified == ["src/app.py"]


def test_facts_are_stored_as_compact_json(store: SessionStore) -> None:
    record = store.store_observation("s1", "demo", {"title": "x", "facts": ["a", "b"]})
    conn = db.connect(store.db_path)
    try:
        raw = conn.execute("SELECT facts FROM observations WHERE id = ?", (record.id,)).fetchone()
    finally:
        conn.close()
    assert raw[0] == '["a","b"]'


def test_recent_observations_newest_first_with_limit(store: SessionStore, clock) -> None:
    ids = []
    for index in range(4):
        ids.append(store.store_observation("s1", "demo", {"title": f"obs {index}"}).id)
        clock.advance(minutes=1)
    store.store_observation("s2", "other", {"title": "elsewhere"})

    recent = store.get_recent_observations("demo", limit=3)
    assert [obs.id for obs in recent] == list(reversed(ids))[:3]
    assert all(obs.project == "demo" for obs in recent)


def test_recent_observations_same_instant_break_ties_by_id(store: SessionStore) -> None:
    first = store.store_observation("s1", "demo", {"title": "first"}).id
    second = store.store_observation("s1", "demo", {"title": "second"}).id
    assert [obs.id for obs in store.get_recent_observations("demo")] == [second, first]


def test_summaries_newest_first(store: SessionStore, clock) -> None:
    store.store_summary("s1", "demo", SummaryInput(request="first"))
    clock.advance(hours=1)
    store.store_summary("s1", "demo", {"request": "second", "next_steps": "ship it"})

    summaries = store.get_recent_summaries("demo", limit=10)
    assert [s.request for s in summaries] == ["second", "first"]
    assert summaries[0].next_steps == "ship it"
    assert [s.request for s in store.get_summaries_for_session("s1")] == ["second", "first"]


def test_summary_with_all_fields_empty_is_valid(store: SessionStore) -> None:
    record = store.store_summary("s1", "demo", SummaryInput())
    summaries = store.get_recent_summaries("demo")

    assert [s.id for s in summaries] == [record.id]
    assert summaries[0].request is None
    assert summaries[0].completed is None
    assert store.get_session("s1") is not None


def test_store_summary_requires_project(store: SessionStore) -> None:
    with pytest.raises(ValidationError):
        store.store_summary("s1", "", SummaryInput(request="x"))
    assert store.get_session("s1") is None


def test_get_all_projects_distinct_sorted(store: SessionStore) -> None:
    store.create_session("s1", "zeta")
    store.create_session("s2", "alpha")
    store.create_session("s3", "alpha")
    conn = db.connect(store.db_path)
    try:
        conn.execute(
            """
            INSERT INTO sessions(session_id, project, started_at, started_at_epoch)
            VALUES ('blank', '', '2025-01-01T00:00:00+00:00', 0)
            """
        )
    finally:
        conn.close()

    assert store.get_all_projects() == ["alpha", "zeta"]


def test_user_prompts_are_logged_per_session(store: SessionStore) -> None:
    store.create_session("s1", "demo")
    store.save_user_prompt("s1", 1, "first")
    store.save_user_prompt("s1", 2, "second")

    prompts = store.get_user_prompts("s1")
    assert [(p.prompt_number, p.prompt_text) for p in prompts] == [(1, "first"), (2, "second")]
    assert store.get_user_prompts("other") == []


def test_user_prompt_for_unknown_session_is_a_storage_error(store: SessionStore) -> None:
    with pytest.raises(StorageError) as excinfo:
        store.save_user_prompt("missing", 1, "orphan")
    assert isinstance(excinfo.value.__cause__, sqlite3.IntegrityError)


def test_failed_index_write_rolls_back_observation(
    store: SessionStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    def _broken_index(*_args, **_kwargs) -> None:
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(store_search, "index_observation", _broken_index)
    with pytest.raises(StorageError, match="disk I/O error"):
        store.store_observation("s1", "demo", {"title": "never stored"})

    assert store.get_recent_observations("demo") == []
    assert store.get_session("s1") is None


def test_closed_store_raises_storage_error(tmp_path: Path) -> None:
    store = SessionStore(tmp_path / "mem.sqlite")
    store.close()
    with pytest.raises(StorageError):
        store.get_session("s1")


def test_store_reopens_existing_database(tmp_path: Path) -> None:
    path = tmp_path / "mem.sqlite"
    first = SessionStore(path)
    record = first.store_observation("s1", "demo", {"title": "persisted"})
    first.close()

    second = SessionStore(path)
    try:
        observation = second.get_observation_by_id(record.id)
    finally:
        second.close()
    assert observation is not None
    assert observation.title == "persisted"
