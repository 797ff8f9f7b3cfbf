"""Keyword index over observation text.

The index is an FTS5 external-content table (``observations_fts``) whose rows are
written by the same transaction that writes ``observations``. There are no
triggers: every function here expects to run inside the caller's write
transaction.

Accepted query syntax:

* plain words are AND-ed terms (``login token`` matches rows with both);
* the bare upper-case word ``OR`` between two terms makes an OR;
* ``"double quoted text"`` is a phrase;
* anything else (punctuation, FTS column filters, ``NEAR``, ``*``) only separates
  terms, so user text can never produce an FTS syntax error.

AND binds tighter than OR, as in FTS5 itself.
"""

from __future__ import annotations

import re
import sqlite3
from typing import Any

QUERY_TOKEN_RE = re.compile(r'"([^"]*)"|(\w+)')
TERM_RE = re.compile(r"\w+")

INDEXED_COLUMNS = ("title", "subtitle", "narrative", "facts")


def _quote(terms: list[str]) -> str:
    return '"' + " ".join(terms) + '"'


def build_match_query(query: str) -> str:
    parts: list[str] = []
    pending_or = False
    for match in QUERY_TOKEN_RE.finditer(query or ""):
        phrase, word = match.group(1), match.group(2)
        if word == "OR":
            pending_or = bool(parts)
            continue
        if phrase is not None:
            terms = TERM_RE.findall(phrase)
            if not terms:
                continue
            expr = _quote(terms)
        else:
            expr = _quote([word])
        if parts:
            parts.append("OR" if pending_or else "AND")
        parts.append(expr)
        pending_or = False
    return " ".join(parts)


def index_observation(conn: sqlite3.Connection, row_id: int, values: dict[str, Any]) -> None:
    conn.execute(
        """
        INSERT INTO observations_fts(rowid, title, subtitle, narrative, facts)
        VALUES (?, ?, ?, ?, ?)
        """,
        (row_id, *(values.get(col) for col in INDEXED_COLUMNS)),
    )


def unindex_observation(conn: sqlite3.Connection, row_id: int, values: dict[str, Any]) -> None:
    # External-content FTS needs the exact values that were indexed.
    conn.execute(
        """
        INSERT INTO observations_fts(observations_fts, rowid, title, subtitle, narrative, facts)
        VALUES ('delete', ?, ?, ?, ?, ?)
        """,
        (row_id, *(values.get(col) for col in INDEXED_COLUMNS)),
    )


def rebuild_index(conn: sqlite3.Connection) -> None:
    conn.execute("INSERT INTO observations_fts(observations_fts) VALUES('rebuild')")


def search_rows(
    conn: sqlite3.Connection,
    query: str,
    *,
    project: str | None = None,
    limit: int = 20,
) -> list[sqlite3.Row]:
    match = build_match_query(query)
    if not match or limit <= 0:
        return []
    sql = """
        SELECT o.* FROM observations o
        JOIN observations_fts ON o.id = observations_fts.rowid
        WHERE observations_fts MATCH ?
    """
    params: list[Any] = [match]
    if project:
        sql += " AND o.project = ?"
        params.append(project)
    # Recency, not bm25 rank: the index only decides membership.
    sql += " ORDER BY o.created_at_epoch DESC, o.id DESC LIMIT ?"
    params.append(limit)
    return conn.execute(sql, params).fetchall()
