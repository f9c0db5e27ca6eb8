from __future__ import annotations

import json
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from .errors import CleanupStateError, StorageError
from .normalize import category_key, collapse_whitespace
from .post import (
    EMBEDDING_VERSION_CAPTION,
    EMBEDDING_VERSION_ENRICHED,
    Category,
    EditSource,
    Post,
)
from .snapshot import CleanupSnapshot
from .storage_schema import initialize_sqlite
from .taxonomy import CategoryRow, TaxonomyState, subtree_post_counts


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_dumps(value: Any) -> str:
    return json.dumps(
        value,
        ensure_ascii=False,
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )


def _json_loads(raw: Any, default: Any) -> Any:
    text = (raw or "").strip() if isinstance(raw, str) else ""
    if not text:
        return default
    try:
        value = json.loads(text)
    except ValueError:
        return default
    if not isinstance(value, type(default)):
        return default
    return value


def _as_path(value: str | Path) -> str:
    if isinstance(value, Path):
        return str(value)
    return str(value)


def _require_id(value: str, name: str) -> str:
    v = (value or "").strip()
    if not v:
        raise ValueError(f"{name} must be non-empty")
    return v


# Fields a metadata edit may touch, mapped to (column, is_json_list).
_METADATA_COLUMNS: dict[str, tuple[str, bool]] = {
    "caption": ("caption", False),
    "hashtags": ("hashtags_json", True),
    "location": ("location", False),
    "venue": ("venue", False),
    "event_date": ("event_date", False),
    "mentions": ("mentions_json", True),
}

_POST_COLUMNS = """
  id, instagram_id, caption, owner_username, image_url, timestamp, saved_at,
  hashtags_json, location, venue, event_date, mentions_json, reasons_json,
  latitude, longitude, country, city, neighborhood,
  embedding_json, embedding_version, last_edited_by, last_edited_at
""".strip()


@dataclass(frozen=True)
class BatchJobRecord:
    batch_id: str
    request_count: int
    status: str
    submitted_at: str
    outcome: dict[str, Any] | None
    finished_at: str | None


def _row_to_post(row: sqlite3.Row) -> Post:
    embedding_raw = _json_loads(row["embedding_json"], [])
    reasons = _json_loads(row["reasons_json"], {})
    edited_by = row["last_edited_by"]

    return Post(
        id=str(row["id"]),
        instagram_id=str(row["instagram_id"]),
        caption=row["caption"],
        owner_username=row["owner_username"],
        image_url=row["image_url"],
        timestamp=row["timestamp"],
        saved_at=row["saved_at"],
        hashtags=tuple(str(x) for x in _json_loads(row["hashtags_json"], [])),
        location=row["location"],
        venue=row["venue"],
        event_date=row["event_date"],
        mentions=tuple(str(x) for x in _json_loads(row["mentions_json"], [])),
        reasons={str(k): str(v) for k, v in reasons.items()},
        latitude=float(row["latitude"]) if row["latitude"] is not None else None,
        longitude=float(row["longitude"]) if row["longitude"] is not None else None,
        country=row["country"],
        city=row["city"],
        neighborhood=row["neighborhood"],
        embedding=tuple(float(x) for x in embedding_raw) if embedding_raw else None,
        embedding_version=int(row["embedding_version"] or 0),
        last_edited_by=edited_by if edited_by in ("user", "model") else None,
        last_edited_at=row["last_edited_at"],
    )


class SQLiteGraphStore:
    """
    Persistence for posts, the category graph, and cleanup/batch bookkeeping.

    Every public method is individually atomic. Multi-step protocols (cleanup
    backup, revert, commit) are composed by the callers; the only multi-row
    write done here in one transaction is `replace_taxonomy_state`.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._conn.row_factory = sqlite3.Row

    @classmethod
    def open(cls, path: str | Path) -> "SQLiteGraphStore":
        db_path = _as_path(path)
        if db_path != ":memory:":
            p = Path(db_path)
            p.parent.mkdir(parents=True, exist_ok=True)

        try:
            conn = sqlite3.connect(db_path)
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to open sqlite database: {db_path}: {e}") from e

        try:
            initialize_sqlite(conn)
        except Exception as e:
            conn.close()
            raise StorageError(f"Failed to initialize sqlite schema: {e}") from e

        return cls(conn)

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "SQLiteGraphStore":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    # ------------------------------------------------------------------ posts

    def upsert_post(self, post: Post) -> None:
        """
        Insert a post, or refresh its identity and source fields.

        Enrichment (extracted metadata, coordinates, embedding) is left untouched
        when the post already exists.
        """
        self.upsert_posts([post])

    def upsert_posts(self, posts: Iterable[Post]) -> int:
        rows: list[tuple[Any, ...]] = []
        for post in posts:
            pid = _require_id(post.id, "post.id")
            iid = _require_id(post.instagram_id, "post.instagram_id")
            rows.append(
                (
                    pid,
                    iid,
                    post.caption,
                    post.owner_username,
                    post.image_url,
                    post.timestamp,
                    post.saved_at,
                    _json_dumps(list(post.hashtags)),
                    _json_dumps(list(post.mentions)),
                )
            )

        if not rows:
            return 0

        try:
            with self._conn:
                self._conn.executemany(
                    """
                    INSERT INTO posts(
                      id, instagram_id, caption, owner_username, image_url,
                      timestamp, saved_at, hashtags_json, mentions_json
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                      instagram_id = excluded.instagram_id,
                      caption = COALESCE(excluded.caption, posts.caption),
                      owner_username = COALESCE(excluded.owner_username, posts.owner_username),
                      image_url = COALESCE(excluded.image_url, posts.image_url),
                      timestamp = COALESCE(excluded.timestamp, posts.timestamp),
                      saved_at = COALESCE(excluded.saved_at, posts.saved_at)
                    """.strip(),
                    rows,
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to upsert posts: {e}") from e
        return len(rows)

    def get_post(self, post_id: str) -> Post | None:
        pid = _require_id(post_id, "post_id")
        row = self._conn.execute(
            f"SELECT {_POST_COLUMNS} FROM posts WHERE id = ?", (pid,)
        ).fetchone()
        return _row_to_post(row) if row is not None else None

    def get_posts(self, post_ids: Sequence[str]) -> dict[str, Post]:
        ids = [p for p in dict.fromkeys(post_ids) if p]
        out: dict[str, Post] = {}
        # Stay well below SQLITE_MAX_VARIABLE_NUMBER.
        for start in range(0, len(ids), 500):
            chunk = ids[start : start + 500]
            marks = ",".join("?" for _ in chunk)
            rows = self._conn.execute(
                f"SELECT {_POST_COLUMNS} FROM posts WHERE id IN ({marks})", chunk
            ).fetchall()
            for row in rows:
                post = _row_to_post(row)
                out[post.id] = post
        return out

    def all_post_ids(self) -> list[str]:
        rows = self._conn.execute("SELECT id FROM posts ORDER BY id").fetchall()
        return [str(r["id"]) for r in rows]

    def posts_pending_extraction(self, *, limit: int | None = None) -> list[Post]:
        """Captioned posts that no extraction has touched yet."""
        if limit is not None and limit <= 0:
            return []

        sql = f"""
        SELECT {_POST_COLUMNS} FROM posts
        WHERE caption IS NOT NULL AND TRIM(caption) <> ''
          AND last_edited_by IS NULL
          AND NOT EXISTS (SELECT 1 FROM post_categories pc WHERE pc.post_id = posts.id)
        ORDER BY COALESCE(saved_at, timestamp, id) DESC
        """.strip()
        params: tuple[Any, ...] = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (int(limit),)

        return [_row_to_post(r) for r in self._conn.execute(sql, params).fetchall()]

    def update_post_metadata(
        self,
        post_id: str,
        updates: Mapping[str, Any],
        *,
        source: EditSource,
        reasons: Mapping[str, str] | None = None,
        edited_at: str | None = None,
    ) -> None:
        """
        Write extracted or user-edited metadata onto a post.

        A user edit resets the embedding to at most caption-only freshness so the
        next reconciliation picks it up again.
        """
        pid = _require_id(post_id, "post_id")
        if source not in ("user", "model"):
            raise ValueError("source must be 'user' or 'model'")

        sets: list[str] = []
        params: list[Any] = []
        for key, value in updates.items():
            column_def = _METADATA_COLUMNS.get(key)
            if column_def is None:
                raise ValueError(f"Unsupported metadata field: {key}")
            column, is_list = column_def
            sets.append(f"{column} = ?")
            params.append(_json_dumps(list(value or [])) if is_list else value)

        if reasons:
            current = self.get_post(pid)
            merged = dict(current.reasons) if current is not None else {}
            merged.update({str(k): str(v) for k, v in reasons.items() if v})
            sets.append("reasons_json = ?")
            params.append(_json_dumps(merged))

        sets.append("last_edited_by = ?")
        params.append(source)
        sets.append("last_edited_at = ?")
        params.append((edited_at or _utc_now_iso()).strip())

        if source == "user":
            sets.append("embedding_version = MIN(embedding_version, ?)")
            params.append(EMBEDDING_VERSION_CAPTION)

        params.append(pid)
        try:
            with self._conn:
                cur = self._conn.execute(
                    f"UPDATE posts SET {', '.join(sets)} WHERE id = ?", params
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to update post metadata: {e}") from e

        if cur.rowcount == 0:
            raise StorageError(f"Post not found: {pid}")

    def set_post_embedding(
        self, post_id: str, vector: Sequence[float], *, version: int
    ) -> bool:
        """Store an embedding unless the post already holds a fresher one."""
        return self.set_post_embeddings({post_id: vector}, version=version) == 1

    def set_post_embeddings(
        self, vectors: Mapping[str, Sequence[float]], *, version: int
    ) -> int:
        if version not in (EMBEDDING_VERSION_CAPTION, EMBEDDING_VERSION_ENRICHED):
            raise ValueError(f"Invalid embedding version: {version}")

        rows = [
            (_json_dumps([float(x) for x in vec]), int(version), _require_id(pid, "post_id"), int(version))
            for pid, vec in vectors.items()
        ]
        if not rows:
            return 0

        updated = 0
        try:
            with self._conn:
                for row in rows:
                    cur = self._conn.execute(
                        """
                        UPDATE posts SET embedding_json = ?, embedding_version = ?
                        WHERE id = ? AND embedding_version <= ?
                        """.strip(),
                        row,
                    )
                    updated += cur.rowcount
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to store embeddings: {e}") from e
        return updated

    def update_post_coordinates(
        self,
        post_id: str,
        *,
        latitude: float,
        longitude: float,
        country: str | None = None,
        city: str | None = None,
        neighborhood: str | None = None,
    ) -> None:
        pid = _require_id(post_id, "post_id")
        try:
            with self._conn:
                self._conn.execute(
                    """
                    UPDATE posts SET
                      latitude = ?, longitude = ?, country = ?, city = ?, neighborhood = ?
                    WHERE id = ?
                    """.strip(),
                    (float(latitude), float(longitude), country, city, neighborhood, pid),
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to update coordinates: {e}") from e

    def posts_needing_geocoding(self, *, limit: int | None = None) -> list[Post]:
        if limit is not None and limit <= 0:
            return []

        sql = f"""
        SELECT {_POST_COLUMNS} FROM posts
        WHERE location IS NOT NULL AND TRIM(location) <> ''
          AND (latitude IS NULL OR longitude IS NULL)
        ORDER BY id
        """.strip()
        params: tuple[Any, ...] = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (int(limit),)
        return [_row_to_post(r) for r in self._conn.execute(sql, params).fetchall()]

    def categorized_post_ids(self) -> list[str]:
        rows = self._conn.execute(
            "SELECT DISTINCT post_id FROM post_categories ORDER BY post_id"
        ).fetchall()
        return [str(r["post_id"]) for r in rows]

    def posts_needing_enriched_embeddings(self) -> list[str]:
        """Categorized posts whose embedding predates their categories."""
        rows = self._conn.execute(
            """
            SELECT p.id FROM posts p
            WHERE p.embedding_version < ?
              AND p.caption IS NOT NULL AND TRIM(p.caption) <> ''
              AND EXISTS (SELECT 1 FROM post_categories pc WHERE pc.post_id = p.id)
            ORDER BY p.id
            """.strip(),
            (EMBEDDING_VERSION_ENRICHED,),
        ).fetchall()
        return [str(r["id"]) for r in rows]

    def add_hashtag_to_posts(self, post_ids: Iterable[str], tag: str) -> int:
        """Append a hashtag to each post unless it is already present (case-insensitive)."""
        t = (tag or "").strip().lstrip("#")
        if not t:
            return 0

        posts = self.get_posts(list(post_ids))
        changed = 0
        try:
            with self._conn:
                for post in posts.values():
                    if any(h.casefold() == t.casefold() for h in post.hashtags):
                        continue
                    self._conn.execute(
                        "UPDATE posts SET hashtags_json = ? WHERE id = ?",
                        (_json_dumps([*post.hashtags, t]), post.id),
                    )
                    changed += 1
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to add hashtag: {e}") from e
        return changed

    # ------------------------------------------------------------- categories

    def _row_to_category(self, row: sqlite3.Row, *, post_count: int = 0) -> Category:
        embedding_raw = _json_loads(row["embedding_json"], [])
        return Category(
            id=str(row["id"]),
            name=str(row["name"]),
            is_parent=bool(row["is_parent"]),
            parent_id=self.parent_of(str(row["id"])),
            state="archived" if row["state"] == "archived" else "active",
            description=row["description"],
            embedding=tuple(float(x) for x in embedding_raw) if embedding_raw else None,
            post_count=post_count,
            created_at=row["created_at"],
        )

    def list_categories(self, *, include_archived: bool = False) -> list[Category]:
        """All categories with their derived (distinct, transitive) post counts."""
        sql = "SELECT * FROM categories"
        if not include_archived:
            sql += " WHERE state = 'active'"
        sql += " ORDER BY created_at, id"

        rows = self._conn.execute(sql).fetchall()
        counts = subtree_post_counts(self.load_taxonomy_state())
        return [self._row_to_category(r, post_count=counts.get(str(r["id"]), 0)) for r in rows]

    def get_category(self, category_id: str) -> Category | None:
        cid = _require_id(category_id, "category_id")
        row = self._conn.execute("SELECT * FROM categories WHERE id = ?", (cid,)).fetchone()
        if row is None:
            return None
        count = self.count_distinct_posts_under_subtree(cid) if row["state"] == "active" else 0
        return self._row_to_category(row, post_count=count)

    def find_category_by_name(self, name: str) -> Category | None:
        key = category_key(name)
        if not key:
            return None
        row = self._conn.execute(
            "SELECT id FROM categories WHERE name_key = ? AND state = 'active'", (key,)
        ).fetchone()
        return self.get_category(str(row["id"])) if row is not None else None

    def create_category(
        self,
        name: str,
        *,
        is_parent: bool = False,
        description: str | None = None,
        category_id: str | None = None,
        created_at: str | None = None,
    ) -> Category:
        clean = collapse_whitespace(name)
        if not clean:
            raise ValueError("category name must be non-empty")

        cid = (category_id or uuid.uuid4().hex).strip()
        ts = (created_at or _utc_now_iso()).strip()

        try:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO categories(id, name, name_key, is_parent, state, description, created_at)
                    VALUES (?, ?, ?, ?, 'active', ?, ?)
                    """.strip(),
                    (cid, clean, category_key(clean), 1 if is_parent else 0, description, ts),
                )
        except sqlite3.IntegrityError as e:
            raise StorageError(f"Category already exists: {clean!r}") from e
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to create category: {e}") from e

        created = self.get_category(cid)
        if created is None:
            raise StorageError("Failed to read category after insert")
        return created

    def find_or_create_category(
        self, name: str, *, is_parent: bool = False
    ) -> tuple[Category, bool]:
        """Return (category, created). Matching is case-insensitive among active categories."""
        existing = self.find_category_by_name(name)
        if existing is not None:
            if is_parent and not existing.is_parent:
                self.set_is_parent(existing.id, True)
                existing = self.get_category(existing.id) or existing
            return existing, False
        return self.create_category(name, is_parent=is_parent), True

    def rename_category(self, category_id: str, name: str) -> None:
        cid = _require_id(category_id, "category_id")
        clean = collapse_whitespace(name)
        if not clean:
            raise ValueError("category name must be non-empty")

        try:
            with self._conn:
                self._conn.execute(
                    "UPDATE categories SET name = ?, name_key = ?, embedding_json = NULL WHERE id = ?",
                    (clean, category_key(clean), cid),
                )
        except sqlite3.IntegrityError as e:
            raise StorageError(f"Another active category is already named {clean!r}") from e
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to rename category: {e}") from e

    def set_category_embeddings(self, vectors: Mapping[str, Sequence[float]]) -> int:
        """Store name embeddings for categories; returns how many rows changed."""
        rows = [
            (_json_dumps([float(x) for x in vec]), _require_id(cid, "category_id"))
            for cid, vec in vectors.items()
        ]
        if not rows:
            return 0

        updated = 0
        try:
            with self._conn:
                for row in rows:
                    cur = self._conn.execute(
                        "UPDATE categories SET embedding_json = ? WHERE id = ?", row
                    )
                    updated += cur.rowcount
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to store category embeddings: {e}") from e
        return updated

    def set_is_parent(self, category_id: str, is_parent: bool = True) -> None:
        cid = _require_id(category_id, "category_id")
        try:
            with self._conn:
                self._conn.execute(
                    "UPDATE categories SET is_parent = ? WHERE id = ?",
                    (1 if is_parent else 0, cid),
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to update category: {e}") from e

    def set_parent(self, child_id: str, parent_id: str | None) -> None:
        """Point child at parent, replacing any previous parent edge; None detaches it."""
        child = _require_id(child_id, "child_id")
        parent = (parent_id or "").strip() or None
        if parent == child:
            raise ValueError("a category cannot be its own parent")

        try:
            with self._conn:
                self._conn.execute("DELETE FROM category_parents WHERE child_id = ?", (child,))
                if parent is not None:
                    self._conn.execute(
                        "INSERT INTO category_parents(child_id, parent_id) VALUES (?, ?)",
                        (child, parent),
                    )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to set parent: {e}") from e

    def parent_of(self, child_id: str) -> str | None:
        row = self._conn.execute(
            "SELECT parent_id FROM category_parents WHERE child_id = ? ORDER BY parent_id LIMIT 1",
            (child_id,),
        ).fetchone()
        return str(row["parent_id"]) if row is not None else None

    def children_of(self, parent_id: str) -> list[str]:
        rows = self._conn.execute(
            "SELECT child_id FROM category_parents WHERE parent_id = ? ORDER BY child_id",
            (parent_id,),
        ).fetchall()
        return [str(r["child_id"]) for r in rows]

    def add_membership(self, post_id: str, category_id: str) -> bool:
        """Link a post to a category; returns False when the link already existed."""
        pid = _require_id(post_id, "post_id")
        cid = _require_id(category_id, "category_id")
        try:
            with self._conn:
                cur = self._conn.execute(
                    "INSERT OR IGNORE INTO post_categories(post_id, category_id, created_at) VALUES (?, ?, ?)",
                    (pid, cid, _utc_now_iso()),
                )
        except sqlite3.IntegrityError as e:
            raise StorageError(
                f"Failed to link post {pid} to category {cid}; both must exist"
            ) from e
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to add membership: {e}") from e
        return cur.rowcount == 1

    def remove_membership(self, post_id: str, category_id: str) -> None:
        try:
            with self._conn:
                self._conn.execute(
                    "DELETE FROM post_categories WHERE post_id = ? AND category_id = ?",
                    (post_id, category_id),
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to remove membership: {e}") from e

    def remove_category_memberships(self, category_id: str) -> list[str]:
        """Unlink every post from a category and return the post ids that were linked."""
        post_ids = self.posts_in_category(category_id)
        try:
            with self._conn:
                self._conn.execute(
                    "DELETE FROM post_categories WHERE category_id = ?", (category_id,)
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to remove memberships: {e}") from e
        return post_ids

    def posts_in_category(self, category_id: str) -> list[str]:
        rows = self._conn.execute(
            "SELECT post_id FROM post_categories WHERE category_id = ? ORDER BY post_id",
            (category_id,),
        ).fetchall()
        return [str(r["post_id"]) for r in rows]

    def category_names_for_posts(self, post_ids: Sequence[str]) -> dict[str, list[str]]:
        ids = [p for p in dict.fromkeys(post_ids) if p]
        out: dict[str, list[str]] = {p: [] for p in ids}
        for start in range(0, len(ids), 500):
            chunk = ids[start : start + 500]
            marks = ",".join("?" for _ in chunk)
            rows = self._conn.execute(
                f"""
                SELECT pc.post_id, c.name FROM post_categories pc
                JOIN categories c ON c.id = pc.category_id
                WHERE c.state = 'active' AND pc.post_id IN ({marks})
                ORDER BY c.name
                """.strip(),
                chunk,
            ).fetchall()
            for r in rows:
                out[str(r["post_id"])].append(str(r["name"]))
        return out

    def count_distinct_posts_under_subtree(self, category_id: str) -> int:
        """Distinct posts linked to the category or any active descendant."""
        row = self._conn.execute(
            """
            WITH RECURSIVE subtree(id) AS (
              SELECT ?
              UNION
              SELECT cp.child_id
              FROM category_parents cp
              JOIN subtree s ON cp.parent_id = s.id
              JOIN categories c ON c.id = cp.child_id AND c.state = 'active'
            )
            SELECT COUNT(DISTINCT pc.post_id) AS n
            FROM post_categories pc
            JOIN subtree s ON pc.category_id = s.id
            """.strip(),
            (category_id,),
        ).fetchone()
        return int(row["n"]) if row is not None else 0

    def archive_category(self, category_id: str) -> None:
        self._set_state(category_id, "archived")

    def unarchive_category(self, category_id: str) -> None:
        self._set_state(category_id, "active")

    def _set_state(self, category_id: str, state: str) -> None:
        cid = _require_id(category_id, "category_id")
        try:
            with self._conn:
                self._conn.execute("UPDATE categories SET state = ? WHERE id = ?", (state, cid))
        except sqlite3.IntegrityError as e:
            raise StorageError(
                f"Cannot reactivate category {cid}: an active category has the same name"
            ) from e
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to update category state: {e}") from e

    def delete_category(self, category_id: str) -> None:
        """Hard delete; parent and membership edges go with it."""
        cid = _require_id(category_id, "category_id")
        try:
            with self._conn:
                self._conn.execute("DELETE FROM categories WHERE id = ?", (cid,))
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to delete category: {e}") from e

    # --------------------------------------------------------- taxonomy state

    def load_taxonomy_state(self) -> TaxonomyState:
        cat_rows = self._conn.execute(
            "SELECT id, name, is_parent, state, description FROM categories ORDER BY created_at, id"
        ).fetchall()
        edge_rows = self._conn.execute(
            "SELECT child_id, parent_id FROM category_parents"
        ).fetchall()
        member_rows = self._conn.execute(
            "SELECT post_id, category_id FROM post_categories"
        ).fetchall()
        tag_rows = self._conn.execute("SELECT id, hashtags_json FROM posts").fetchall()

        return TaxonomyState(
            categories=tuple(
                CategoryRow(
                    id=str(r["id"]),
                    name=str(r["name"]),
                    is_parent=bool(r["is_parent"]),
                    state="archived" if r["state"] == "archived" else "active",
                    description=r["description"],
                )
                for r in cat_rows
            ),
            parent_edges=frozenset((str(r["child_id"]), str(r["parent_id"])) for r in edge_rows),
            memberships=frozenset((str(r["post_id"]), str(r["category_id"])) for r in member_rows),
            hashtags={
                str(r["id"]): tuple(str(x) for x in _json_loads(r["hashtags_json"], []))
                for r in tag_rows
            },
        )

    def replace_taxonomy_state(self, state: TaxonomyState, *, clear_snapshot: bool = False) -> None:
        """
        Overwrite categories, edges and post hashtags with `state` in one transaction.

        Memberships for posts that no longer exist are dropped.
        """
        keep = {c.id for c in state.categories}
        existing = {
            str(r["id"]) for r in self._conn.execute("SELECT id FROM categories").fetchall()
        }
        now = _utc_now_iso()

        try:
            with self._conn:
                # Park everything first so restored names never collide mid-update.
                self._conn.execute("UPDATE categories SET state = 'archived'")
                self._conn.executemany(
                    "DELETE FROM categories WHERE id = ?",
                    [(cid,) for cid in sorted(existing - keep)],
                )
                self._conn.executemany(
                    """
                    INSERT INTO categories(id, name, name_key, is_parent, state, description, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                      name = excluded.name,
                      name_key = excluded.name_key,
                      embedding_json = CASE WHEN categories.name = excluded.name
                        THEN categories.embedding_json ELSE NULL END,
                      is_parent = excluded.is_parent,
                      state = excluded.state,
                      description = excluded.description
                    """.strip(),
                    [
                        (
                            c.id,
                            c.name,
                            category_key(c.name),
                            1 if c.is_parent else 0,
                            c.state,
                            c.description,
                            now,
                        )
                        for c in state.categories
                    ],
                )
                self._conn.execute("DELETE FROM category_parents")
                self._conn.executemany(
                    "INSERT INTO category_parents(child_id, parent_id) VALUES (?, ?)",
                    sorted((a, b) for a, b in state.parent_edges if a in keep and b in keep),
                )
                self._conn.execute("DELETE FROM post_categories")
                self._conn.executemany(
                    """
                    INSERT OR IGNORE INTO post_categories(post_id, category_id, created_at)
                    SELECT ?, ?, ? WHERE EXISTS (SELECT 1 FROM posts WHERE id = ?)
                    """.strip(),
                    [(p, c, now, p) for p, c in sorted(state.memberships) if c in keep],
                )
                self._conn.executemany(
                    "UPDATE posts SET hashtags_json = ? WHERE id = ?",
                    [(_json_dumps(list(tags)), pid) for pid, tags in sorted(state.hashtags.items())],
                )
                if clear_snapshot:
                    self._conn.execute("DELETE FROM cleanup_snapshots")
        except sqlite3.IntegrityError as e:
            raise CleanupStateError(f"Taxonomy state could not be written back: {e}") from e
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to replace taxonomy state: {e}") from e

    # --------------------------------------------------------------- snapshot

    def has_snapshot(self) -> bool:
        row = self._conn.execute("SELECT 1 FROM cleanup_snapshots WHERE id = 1").fetchone()
        return row is not None

    def save_snapshot(self, snapshot: CleanupSnapshot) -> None:
        try:
            with self._conn:
                self._conn.execute(
                    "INSERT INTO cleanup_snapshots(id, created_at, snapshot_json) VALUES (1, ?, ?)",
                    (snapshot.created_at, snapshot.to_json()),
                )
        except sqlite3.IntegrityError as e:
            raise CleanupStateError(
                "A cleanup backup already exists; revert or commit it first"
            ) from e
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to save cleanup snapshot: {e}") from e

    def load_snapshot(self) -> CleanupSnapshot | None:
        row = self._conn.execute(
            "SELECT snapshot_json FROM cleanup_snapshots WHERE id = 1"
        ).fetchone()
        if row is None:
            return None
        return CleanupSnapshot.from_json(str(row["snapshot_json"]))

    def delete_snapshot(self) -> None:
        try:
            with self._conn:
                self._conn.execute("DELETE FROM cleanup_snapshots")
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to delete cleanup snapshot: {e}") from e

    # ------------------------------------------------------------- batch jobs

    def record_batch_submission(
        self, batch_id: str, *, request_count: int, submitted_at: str | None = None
    ) -> None:
        bid = _require_id(batch_id, "batch_id")
        ts = (submitted_at or _utc_now_iso()).strip()
        try:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT OR IGNORE INTO batch_jobs(batch_id, request_count, status, submitted_at)
                    VALUES (?, ?, 'submitted', ?)
                    """.strip(),
                    (bid, int(request_count), ts),
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to record batch submission: {e}") from e

    def update_batch_status(self, batch_id: str, status: str) -> None:
        bid = _require_id(batch_id, "batch_id")
        try:
            with self._conn:
                self._conn.execute(
                    "UPDATE batch_jobs SET status = ? WHERE batch_id = ? AND outcome_json IS NULL",
                    (status, bid),
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to update batch status: {e}") from e

    def record_batch_outcome(
        self,
        batch_id: str,
        *,
        status: str,
        outcome: Mapping[str, Any],
        request_count: int = 0,
        finished_at: str | None = None,
    ) -> None:
        bid = _require_id(batch_id, "batch_id")
        ts = (finished_at or _utc_now_iso()).strip()
        try:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO batch_jobs(batch_id, request_count, status, submitted_at, outcome_json, finished_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(batch_id) DO UPDATE SET
                      status = excluded.status,
                      outcome_json = excluded.outcome_json,
                      finished_at = excluded.finished_at
                    """.strip(),
                    (bid, int(request_count), status, ts, _json_dumps(dict(outcome)), ts),
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to record batch outcome: {e}") from e

    def get_batch_job(self, batch_id: str) -> BatchJobRecord | None:
        bid = _require_id(batch_id, "batch_id")
        row = self._conn.execute(
            "SELECT * FROM batch_jobs WHERE batch_id = ?", (bid,)
        ).fetchone()
        if row is None:
            return None

        outcome = _json_loads(row["outcome_json"], {}) if row["outcome_json"] else None
        return BatchJobRecord(
            batch_id=str(row["batch_id"]),
            request_count=int(row["request_count"]),
            status=str(row["status"]),
            submitted_at=str(row["submitted_at"]),
            outcome=outcome,
            finished_at=row["finished_at"],
        )
