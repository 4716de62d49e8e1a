from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Sequence

from pageindex.core.settings import Settings

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

-- One row per distinct visited URL. url_hash is not unique on purpose,
-- rows are matched by (url_hash, url).
CREATE TABLE IF NOT EXISTS autocomplete_page (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  url TEXT NOT NULL,
  url_hash TEXT NOT NULL,
  schemeless_url TEXT NOT NULL,
  title TEXT,
  favicon_id INTEGER,
  last_visited INTEGER NOT NULL,
  visit_count INTEGER NOT NULL DEFAULT 1,
  frecency INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_autocomplete_page_url_hash ON autocomplete_page(url_hash);
CREATE INDEX IF NOT EXISTS idx_autocomplete_page_last_visited ON autocomplete_page(last_visited);
CREATE INDEX IF NOT EXISTS idx_autocomplete_page_favicon_id ON autocomplete_page(favicon_id);

CREATE TABLE IF NOT EXISTS favicon (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  url TEXT NOT NULL,
  url_hash TEXT NOT NULL,
  data_key INTEGER,
  data BLOB
);

CREATE INDEX IF NOT EXISTS idx_favicon_url_hash ON favicon(url_hash);
"""

FTS_SQL = """
CREATE VIRTUAL TABLE IF NOT EXISTS autocomplete_page_fts USING fts5(
  url, title,
  content='autocomplete_page',
  content_rowid='id'
);

CREATE TRIGGER IF NOT EXISTS autocomplete_page_ai AFTER INSERT ON autocomplete_page BEGIN
  INSERT INTO autocomplete_page_fts (rowid, url, title) VALUES (new.id, new.url, new.title);
END;

CREATE TRIGGER IF NOT EXISTS autocomplete_page_ad AFTER DELETE ON autocomplete_page BEGIN
  INSERT INTO autocomplete_page_fts (autocomplete_page_fts, rowid, url, title)
  VALUES ('delete', old.id, old.url, old.title);
END;

CREATE TRIGGER IF NOT EXISTS autocomplete_page_au AFTER UPDATE OF url, title ON autocomplete_page BEGIN
  INSERT INTO autocomplete_page_fts (autocomplete_page_fts, rowid, url, title)
  VALUES ('delete', old.id, old.url, old.title);
  INSERT INTO autocomplete_page_fts (rowid, url, title) VALUES (new.id, new.url, new.title);
END;
"""


@dataclass
class QueryResult:
    """Outcome of a single statement. Storage errors never raise past DB."""

    ok: bool
    rows: list[sqlite3.Row] = field(default_factory=list)
    rowcount: int = 0
    lastrowid: int | None = None

    def first(self) -> sqlite3.Row | None:
        return self.rows[0] if self.rows else None


def _run_migrations(conn: sqlite3.Connection) -> bool:
    """Run schema migrations for existing DBs.

    Returns True if the FTS index was created over already existing pages
    and needs to be populated.
    """
    cur = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name='autocomplete_page_fts'"
    )
    fts_exists = cur.fetchone() is not None

    conn.executescript(FTS_SQL)
    conn.commit()

    if fts_exists:
        return False
    cur = conn.execute("SELECT COUNT(*) FROM autocomplete_page")
    return cur.fetchone()[0] > 0


@dataclass
class DB:
    """Storage service over one shared connection.

    Callers on different threads share the connection and its transaction.
    A failed statement rolls back, which also discards any uncommitted write
    another thread has pending. Every statement commits right away, so that
    window is a single statement wide.
    """

    conn: sqlite3.Connection

    def init(self) -> None:
        self.conn.row_factory = sqlite3.Row
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()
        # Run migrations for existing DBs
        if _run_migrations(self.conn):
            indexed = self.rebuild_fts()
            logger.info(f"Built search index for {indexed} existing pages")

    def execute(self, sql: str, params: Sequence[Any] = ()) -> QueryResult:
        """Run a mutating statement and commit.

        Returns affected row count and the generated id of an insert.
        """
        try:
            cur = self.conn.execute(sql, params)
            self.conn.commit()
        except sqlite3.Error as e:
            self._rollback()
            logger.warning(f"Statement failed: {e} ({_first_line(sql)})")
            return QueryResult(ok=False)
        return QueryResult(ok=True, rowcount=cur.rowcount, lastrowid=cur.lastrowid)

    def query(self, sql: str, params: Sequence[Any] = ()) -> QueryResult:
        """Run a SELECT and return all rows."""
        try:
            rows = self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            logger.warning(f"Query failed: {e} ({_first_line(sql)})")
            return QueryResult(ok=False)
        return QueryResult(ok=True, rows=rows, rowcount=len(rows))

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> QueryResult:
        """Run a SELECT expecting at most one row."""
        try:
            row = self.conn.execute(sql, params).fetchone()
        except sqlite3.Error as e:
            logger.warning(f"Lookup failed: {e} ({_first_line(sql)})")
            return QueryResult(ok=False)
        rows = [row] if row is not None else []
        return QueryResult(ok=True, rows=rows, rowcount=len(rows))

    def get_stats(self) -> dict[str, Any]:
        cur = self.conn.execute("select count(*) from autocomplete_page")
        pages = cur.fetchone()[0]
        cur = self.conn.execute("select count(*) from favicon")
        favicons = cur.fetchone()[0]
        return {"pages": pages, "favicons": favicons}

    def rebuild_fts(self) -> int:
        """Rebuild the search index from autocomplete_page.

        Returns the number of pages indexed.
        """
        self.conn.execute("INSERT INTO autocomplete_page_fts(autocomplete_page_fts) VALUES('rebuild')")
        self.conn.execute("INSERT INTO autocomplete_page_fts(autocomplete_page_fts) VALUES('optimize')")
        self.conn.commit()

        cur = self.conn.execute("SELECT COUNT(*) FROM autocomplete_page")
        return cur.fetchone()[0]

    def _rollback(self) -> None:
        try:
            self.conn.rollback()
        except sqlite3.Error:
            logger.debug("Rollback failed", exc_info=True)


def _first_line(sql: str) -> str:
    return " ".join(sql.split())[:80]


_db: DB | None = None


def init_db(settings: Settings | None = None) -> DB:
    global _db

    s = settings or Settings.from_env()
    if s.db_path != ":memory:":
        os.makedirs(os.path.dirname(s.db_path) or ".", exist_ok=True)

    conn = sqlite3.connect(s.db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row

    _db = DB(conn=conn)
    _db.init()
    return _db


def get_db() -> DB:
    assert _db is not None, "DB not initialized"
    return _db
