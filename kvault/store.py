"""
Vault Store — SQLite Persistent Backend

Tables:
    vault_items   - Unified vault items (current state)
    vault_links   - Directed typed edges between items (forward only)
    vault_events  - Audit log (append-only)
    schema_meta   - Schema identity and version

Provenance uniqueness is enforced by a partial UNIQUE index on
(source_table, source_id), so migration inserts are atomic
check-and-insert operations.

Thread safety: uses sqlite3 check_same_thread=False with explicit serialization.
All writes create audit events automatically.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from kvault.types import (
    AlreadyExists,
    ItemFilter,
    NotFound,
    ValidationError,
    VaultError,
    VaultItem,
    _generate_id,
    _now_iso,
    validate_patch,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS vault_items (
    id            TEXT PRIMARY KEY,
    type          TEXT NOT NULL CHECK(type IN (
                      'note','thought','thought_session','idea','article',
                      'research','quote','word','sticky_note','task','pomodoro')),
    title         TEXT NOT NULL CHECK(length(trim(title)) > 0),
    content       TEXT NOT NULL DEFAULT '',
    para_category TEXT CHECK(para_category IS NULL OR para_category IN (
                      'project','area','resource','archive')),
    folder_path   TEXT,
    tags          TEXT NOT NULL DEFAULT '[]',   -- JSON array
    metadata      TEXT NOT NULL DEFAULT '{}',   -- JSON object
    linked_items  TEXT NOT NULL DEFAULT '[]',   -- JSON array, cache only
    created_by    TEXT NOT NULL,
    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL,
    source_table  TEXT,
    source_id     TEXT
);

CREATE TABLE IF NOT EXISTS vault_links (
    id         TEXT PRIMARY KEY,
    source_id  TEXT NOT NULL,
    target_id  TEXT NOT NULL,
    link_type  TEXT NOT NULL DEFAULT 'related',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS vault_events (
    id           TEXT PRIMARY KEY,
    action       TEXT NOT NULL,
    item_id      TEXT,
    owner        TEXT,
    details_json TEXT NOT NULL DEFAULT '{}',
    timestamp    TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_vault_items_source
    ON vault_items(source_table, source_id) WHERE source_table IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_vault_items_owner ON vault_items(created_by, updated_at);
CREATE INDEX IF NOT EXISTS idx_vault_items_type ON vault_items(type);
CREATE INDEX IF NOT EXISTS idx_vault_items_para ON vault_items(para_category);
CREATE INDEX IF NOT EXISTS idx_vault_items_folder ON vault_items(folder_path);
CREATE INDEX IF NOT EXISTS idx_vault_links_source ON vault_links(source_id);
CREATE INDEX IF NOT EXISTS idx_vault_links_target ON vault_links(target_id);
CREATE INDEX IF NOT EXISTS idx_vault_events_item ON vault_events(item_id);
CREATE INDEX IF NOT EXISTS idx_vault_events_action ON vault_events(action);
"""

_ITEM_COLUMNS = (
    "id, type, title, content, para_category, folder_path, tags, metadata, "
    "linked_items, created_by, created_at, updated_at, source_table, source_id"
)

# Upsert target must repeat the partial index predicate.
_SOURCE_CONFLICT_CLAUSE = (
    " ON CONFLICT(source_table, source_id) WHERE source_table IS NOT NULL"
    " DO NOTHING"
)


def _casefold(value: Optional[str]) -> Optional[str]:
    """SQL function ``casefold(text)``: Unicode-aware case folding."""
    return value.casefold() if isinstance(value, str) else value


def _next_timestamp(previous: str) -> str:
    """Return now, or previous + 1µs when the clock has not moved past it."""
    now = _now_iso()
    if now > previous:
        return now
    bumped = datetime.fromisoformat(previous) + timedelta(microseconds=1)
    return bumped.isoformat(timespec="microseconds")


class VaultStore:
    """
    SQLite-backed persistent store for vault items and their links.

    Thread-safe via explicit lock. All mutations create audit events.
    """

    def __init__(self, db_path: str = ":memory:", wal_mode: bool = True):
        """Open (or create) the vault database and ensure the schema.

        Args:
            db_path: SQLite database path (or ":memory:" for in-memory).
            wal_mode: Enable WAL journal mode for concurrent readers.
        """
        self._db_path = db_path
        self._lock = threading.Lock()
        # Auto-create parent directory for disk-backed databases.
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.create_function("casefold", 1, _casefold)
        if wal_mode and db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self.initialize()
        logger.info(f"VaultStore initialized: {db_path}")

    @property
    def db_path(self) -> str:
        return self._db_path

    def initialize(self) -> None:
        """Create tables and indexes. Idempotent."""
        with self._lock:
            self._conn.executescript(_SCHEMA_SQL)
            self._conn.execute(
                "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('schema_version', ?)",
                (str(SCHEMA_VERSION),),
            )
            self._conn.execute(
                "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('created_by', 'kvault')",
            )
            self._conn.execute(
                "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('created_at', datetime('now'))",
            )
            self._conn.commit()

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialize on the store lock; commit on success, roll back on error."""
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    # -- Write operations --------------------------------------------------

    def create_item(
        self,
        owner_id: str,
        type: str,
        title: str,
        content: str = "",
        para_category: Optional[str] = None,
        folder_path: Optional[str] = None,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        linked_items: Optional[List[str]] = None,
    ) -> VaultItem:
        """Create a native vault item owned by *owner_id*."""
        item = VaultItem(
            type=type, title=title, created_by=owner_id, content=content,
            para_category=para_category, folder_path=folder_path,
            tags=tags or [], metadata=metadata or {},
            linked_items=linked_items or [],
        )
        with self.transaction() as conn:
            self._insert(conn, item, skip_source_conflict=False)
            self._log_event("create", item.id, owner_id, {"type": item.type})
        return item

    def create_item_from_source(
        self,
        owner_id: str,
        type: str,
        title: str,
        content: str,
        source_table: str,
        source_id: str,
        para_category: Optional[str] = None,
        folder_path: Optional[str] = None,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        linked_items: Optional[List[str]] = None,
        strict: bool = False,
    ) -> Tuple[VaultItem, bool]:
        """
        Create an item that remembers the legacy record it came from.

        Returns ``(item, True)`` when inserted, or ``(existing, False)`` when
        an item already carries ``(source_table, source_id)``. With
        ``strict=True`` the second case raises AlreadyExists instead.
        """
        if not source_table or source_id is None or str(source_id) == "":
            raise ValidationError("source_table and source_id are required")
        item = VaultItem(
            type=type, title=title, created_by=owner_id, content=content,
            para_category=para_category, folder_path=folder_path,
            tags=tags or [], metadata=metadata or {},
            linked_items=linked_items or [],
            source_table=source_table, source_id=str(source_id),
        )
        with self.transaction() as conn:
            inserted = self._insert(conn, item, skip_source_conflict=True)
            if inserted:
                self._log_event("migrate", item.id, owner_id, {
                    "source_table": item.source_table,
                    "source_id": item.source_id,
                })
                existing = None
            else:
                row = conn.execute(
                    "SELECT * FROM vault_items WHERE source_table=? AND source_id=?",
                    (item.source_table, item.source_id),
                ).fetchone()
                if row is None:
                    raise VaultError(
                        f"Provenance conflict but no item holds "
                        f"{item.source_table}:{item.source_id}"
                    )
                existing = self._row_to_item(row)
        if existing is not None:
            if strict:
                raise AlreadyExists(existing)
            return existing, False
        return item, True

    def update_item(self, item_id: str, patch: Dict[str, Any]) -> VaultItem:
        """
        Patch mutable fields on an existing item.

        The whole patch is validated before the write; id, owner,
        timestamps, type, and provenance are never accepted.
        """
        cleaned = validate_patch(patch)
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM vault_items WHERE id=?", (item_id,)
            ).fetchone()
            if row is None:
                raise NotFound(f"Item not found: {item_id}")
            item = self._row_to_item(row)
            for key, val in cleaned.items():
                setattr(item, key, val)
            item.updated_at = _next_timestamp(item.updated_at)
            conn.execute(
                """UPDATE vault_items SET title=?, content=?, para_category=?,
                   folder_path=?, tags=?, metadata=?, linked_items=?, updated_at=?
                   WHERE id=?""",
                (
                    item.title, item.content, item.para_category,
                    item.folder_path, json.dumps(item.tags),
                    json.dumps(item.metadata), json.dumps(item.linked_items),
                    item.updated_at, item.id,
                ),
            )
            self._log_event("update", item.id, item.created_by,
                            {"fields": sorted(cleaned)})
        return item

    def delete_item(self, item_id: str) -> int:
        """
        Delete an item and every link touching it, in one transaction.

        Returns the number of links pruned.
        """
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT created_by FROM vault_items WHERE id=?", (item_id,)
            ).fetchone()
            if row is None:
                raise NotFound(f"Item not found: {item_id}")
            pruned = conn.execute(
                "DELETE FROM vault_links WHERE source_id=? OR target_id=?",
                (item_id, item_id),
            ).rowcount
            conn.execute("DELETE FROM vault_items WHERE id=?", (item_id,))
            self._log_event("delete", item_id, row["created_by"],
                            {"links_pruned": pruned})
        if pruned:
            logger.debug("Deleted %s and pruned %d link(s)", item_id, pruned)
        return pruned

    # -- Read operations ---------------------------------------------------

    def get_item(self, item_id: str) -> VaultItem:
        """Read a single item by ID. Raises NotFound."""
        item = self.find_item(item_id)
        if item is None:
            raise NotFound(f"Item not found: {item_id}")
        return item

    def find_item(self, item_id: str) -> Optional[VaultItem]:
        """Read a single item by ID, or None."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM vault_items WHERE id=?", (item_id,)
            ).fetchone()
        return self._row_to_item(row) if row is not None else None

    def exists(self, item_id: str) -> bool:
        """Return True if an item with this id is currently stored."""
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM vault_items WHERE id=?", (item_id,)
            ).fetchone()
        return row is not None

    def find_by_source(
        self, source_table: str, source_id: str,
    ) -> Optional[VaultItem]:
        """Return the item migrated from a legacy record, if any."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM vault_items WHERE source_table=? AND source_id=?",
                (source_table, str(source_id)),
            ).fetchone()
        return self._row_to_item(row) if row is not None else None

    def list_items(
        self, owner_id: str, filters: Optional[ItemFilter] = None,
    ) -> List[VaultItem]:
        """
        List an owner's items, most recently updated first.

        ``search`` is a case-insensitive substring match on title and
        content. ``tags_any`` keeps items sharing at least one tag.
        """
        f = filters or ItemFilter()
        conditions = ["created_by=?"]
        params: list = [owner_id]
        if f.type:
            conditions.append("type=?")
            params.append(f.type)
        if f.para_category:
            conditions.append("para_category=?")
            params.append(f.para_category)
        if f.folder_path is not None:
            conditions.append("folder_path=?")
            params.append(f.folder_path)
        if f.search:
            needle = f.search.casefold()
            conditions.append(
                "(instr(casefold(title), ?) > 0 OR instr(casefold(content), ?) > 0)"
            )
            params.extend([needle, needle])
        where = " AND ".join(conditions)
        sql = f"SELECT * FROM vault_items WHERE {where} ORDER BY updated_at DESC, id"
        # Tag overlap is filtered in Python (SQLite JSON support varies),
        # so the limit can only be pushed down without a tag filter.
        if f.limit and not f.tags_any:
            sql += " LIMIT ?"
            params.append(f.limit)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()

        items = [self._row_to_item(row) for row in rows]
        if f.tags_any:
            wanted = set(f.tags_any)
            items = [it for it in items if wanted.intersection(it.tags)]
            if f.limit:
                items = items[:f.limit]
        return items

    def count_items(self, owner_id: str) -> int:
        """Count an owner's items."""
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) as cnt FROM vault_items WHERE created_by=?",
                (owner_id,),
            ).fetchone()
            return row["cnt"]

    def count_by(self, owner_id: str, column: str) -> Dict[Optional[str], int]:
        """Grouped item counts for one owner over ``type`` or ``para_category``."""
        if column not in ("type", "para_category"):
            raise ValueError(f"Cannot group by {column!r}")
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {column} as k, COUNT(*) as cnt FROM vault_items "
                f"WHERE created_by=? GROUP BY {column}",
                (owner_id,),
            ).fetchall()
        return {r["k"]: r["cnt"] for r in rows}

    # -- Events (audit log) ------------------------------------------------

    def read_events(
        self,
        item_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Query audit events, newest first."""
        with self._lock:
            conditions = []
            params: list = []
            if item_id:
                conditions.append("item_id=?")
                params.append(item_id)
            if action:
                conditions.append("action=?")
                params.append(action)
            where = " AND ".join(conditions) if conditions else "1=1"
            rows = self._conn.execute(
                f"SELECT * FROM vault_events WHERE {where} "
                f"ORDER BY timestamp DESC, rowid DESC LIMIT ?",
                params + [limit],
            ).fetchall()
            return [
                {
                    "id": r["id"], "action": r["action"],
                    "item_id": r["item_id"], "owner": r["owner"],
                    "details": json.loads(r["details_json"]),
                    "timestamp": r["timestamp"],
                }
                for r in rows
            ]

    # -- Internal helpers --------------------------------------------------

    def _insert(
        self, conn: sqlite3.Connection, item: VaultItem, skip_source_conflict: bool,
    ) -> bool:
        """Insert one row. Returns False when a provenance collision skipped it.

        Only the ``(source_table, source_id)`` index is absorbed; NOT NULL,
        CHECK and primary-key violations still raise.
        """
        on_conflict = _SOURCE_CONFLICT_CLAUSE if skip_source_conflict else ""
        try:
            cur = conn.execute(
                f"""INSERT INTO vault_items ({_ITEM_COLUMNS})
                    VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?){on_conflict}""",
                (
                    item.id, item.type, item.title, item.content,
                    item.para_category, item.folder_path,
                    json.dumps(item.tags), json.dumps(item.metadata),
                    json.dumps(item.linked_items), item.created_by,
                    item.created_at, item.updated_at,
                    item.source_table, item.source_id,
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise ValidationError(f"Item rejected by schema: {exc}") from exc
        except (TypeError, ValueError) as exc:
            # json.dumps on non-serializable metadata
            raise ValidationError(f"Item is not serializable: {exc}") from exc
        return cur.rowcount == 1

    def _row_to_item(self, row: sqlite3.Row) -> VaultItem:
        """Convert a SQLite Row to VaultItem."""
        return VaultItem(
            id=row["id"],
            type=row["type"],
            title=row["title"],
            content=row["content"],
            para_category=row["para_category"],
            folder_path=row["folder_path"],
            tags=json.loads(row["tags"] or "[]"),
            metadata=json.loads(row["metadata"] or "{}"),
            linked_items=json.loads(row["linked_items"] or "[]"),
            created_by=row["created_by"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            source_table=row["source_table"],
            source_id=row["source_id"],
        )

    def _log_event(
        self,
        action: str,
        item_id: Optional[str],
        owner: Optional[str],
        details: Dict[str, Any],
    ) -> None:
        """Append an audit event. Caller holds the lock and commits."""
        self._conn.execute(
            """INSERT INTO vault_events
               (id, action, item_id, owner, details_json, timestamp)
               VALUES (?,?,?,?,?,?)""",
            (
                _generate_id("EVT"), action, item_id, owner,
                json.dumps(details, ensure_ascii=False), _now_iso(),
            ),
        )
