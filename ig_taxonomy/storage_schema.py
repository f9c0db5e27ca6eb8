from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

SCHEMA_VERSION = 2


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def initialize_sqlite(conn: sqlite3.Connection) -> None:
    """
    Initialize the SQLite database with a small migration system.

    This function is idempotent: it can be called on every startup.
    """
    _configure_connection(conn)
    _apply_migrations(conn)


def _configure_connection(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 5000")

    # WAL is best-effort (e.g., in-memory DBs won't use it).
    try:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
    except sqlite3.DatabaseError:
        pass


_MIGRATIONS: dict[int, str] = {
    1: """
CREATE TABLE IF NOT EXISTS posts (
  id TEXT PRIMARY KEY,
  instagram_id TEXT NOT NULL,
  caption TEXT,
  owner_username TEXT,
  image_url TEXT,
  timestamp TEXT,
  saved_at TEXT,
  hashtags_json TEXT NOT NULL DEFAULT '[]',
  location TEXT,
  venue TEXT,
  event_date TEXT,
  mentions_json TEXT NOT NULL DEFAULT '[]',
  reasons_json TEXT NOT NULL DEFAULT '{}',
  latitude REAL,
  longitude REAL,
  country TEXT,
  city TEXT,
  neighborhood TEXT,
  embedding_json TEXT,
  embedding_version INTEGER NOT NULL DEFAULT 0,
  last_edited_by TEXT,
  last_edited_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_posts_instagram_id
  ON posts(instagram_id);

CREATE INDEX IF NOT EXISTS idx_posts_embedding_version
  ON posts(embedding_version);

CREATE TABLE IF NOT EXISTS categories (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  name_key TEXT NOT NULL,
  is_parent INTEGER NOT NULL DEFAULT 0,
  state TEXT NOT NULL DEFAULT 'active' CHECK (state IN ('active', 'archived')),
  description TEXT,
  embedding_json TEXT,
  created_at TEXT NOT NULL
);

-- Names are unique (case-insensitively) among active categories only, so an
-- archived category never blocks a new one with the same name.
CREATE UNIQUE INDEX IF NOT EXISTS idx_categories_active_name_key
  ON categories(name_key) WHERE state = 'active';

CREATE TABLE IF NOT EXISTS category_parents (
  child_id TEXT NOT NULL,
  parent_id TEXT NOT NULL,
  PRIMARY KEY (child_id, parent_id),
  CHECK (child_id <> parent_id),
  FOREIGN KEY (child_id) REFERENCES categories(id) ON DELETE CASCADE,
  FOREIGN KEY (parent_id) REFERENCES categories(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_category_parents_parent_id
  ON category_parents(parent_id);

CREATE TABLE IF NOT EXISTS post_categories (
  post_id TEXT NOT NULL,
  category_id TEXT NOT NULL,
  created_at TEXT NOT NULL,
  PRIMARY KEY (post_id, category_id),
  FOREIGN KEY (post_id) REFERENCES posts(id) ON DELETE CASCADE,
  FOREIGN KEY (category_id) REFERENCES categories(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_post_categories_category_id
  ON post_categories(category_id);

-- At most one outstanding cleanup snapshot.
CREATE TABLE IF NOT EXISTS cleanup_snapshots (
  id INTEGER PRIMARY KEY CHECK (id = 1),
  created_at TEXT NOT NULL,
  snapshot_json TEXT NOT NULL
);
""".strip(),
    2: """
CREATE TABLE IF NOT EXISTS batch_jobs (
  batch_id TEXT PRIMARY KEY,
  request_count INTEGER NOT NULL,
  status TEXT NOT NULL,
  submitted_at TEXT NOT NULL,
  outcome_json TEXT,
  finished_at TEXT
);
""".strip(),
}


def _apply_migrations(conn: sqlite3.Connection) -> None:
    with conn:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)"
        )

    rows = conn.execute("SELECT version FROM schema_migrations").fetchall()
    applied: set[int] = {int(r[0]) for r in rows}

    for version in range(1, SCHEMA_VERSION + 1):
        if version in applied:
            continue

        script = _MIGRATIONS.get(version)
        if not script:
            raise RuntimeError(f"Missing migration script for version={version}")

        with conn:
            conn.executescript(script)
            conn.execute(
                "INSERT INTO schema_migrations(version, applied_at) VALUES (?, ?)",
                (version, _utc_now_iso()),
            )
