"""
Legacy Sources — Readers and Mappers for Pre-Vault Content Tables

Each legacy feature (notes, thoughts, ideas, articles, ...) owned its own
table before the vault existed. A LegacySource knows one table: how to
list an owner's records and how to map one record onto the unified item
shape. Records are read through a LegacyReader so the same mappers work
against the legacy SQLite database or an in-memory fixture.

Mapping rules:
    obsidian_notes            -> note         (folder kept, PARA unset)
    thoughts                  -> thought      (PARA from category)
    thought_sessions          -> thought_session
    ideas                     -> idea         (PARA from status)
    articles                  -> article | research (PARA from status)
    quotes                    -> quote        (resource)
    words                     -> word         (resource)
    sticky_notes              -> sticky_note  (resource)
    tasks                     -> task         (project, archive when done)
    chronos_pomodoro_sessions -> pomodoro     (archive when completed)
"""

from __future__ import annotations

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from kvault.types import ValidationError

logger = logging.getLogger(__name__)

Record = Mapping[str, Any]


# ---------------------------------------------------------------------------
# Mapped item (pre-store)
# ---------------------------------------------------------------------------


@dataclass
class LegacyItem:
    """Fields derived from one legacy record, before provenance is attached."""

    type: str
    title: str
    content: str = ""
    para_category: Optional[str] = None
    folder_path: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# PARA mapping rules
# ---------------------------------------------------------------------------


def thought_category_to_para(category: Optional[str]) -> str:
    if category == "actions":
        return "project"
    if category == "questions":
        return "area"
    return "resource"


def idea_status_to_para(status: Optional[str]) -> str:
    if status in ("new", "exploring", "developing"):
        return "project"
    if status == "on_hold":
        return "area"
    if status == "completed":
        return "archive"
    return "resource"


def article_status_to_para(status: Optional[str]) -> str:
    if status in ("idea", "research", "outline", "draft", "editing", "review"):
        return "project"
    if status in ("published", "archived"):
        return "archive"
    return "resource"


def task_status_to_para(status: Optional[str]) -> str:
    if status in ("done", "completed", "archived"):
        return "archive"
    return "project"


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def _text(record: Record, key: str) -> str:
    """Return a stripped string field, '' when absent or null."""
    val = record.get(key)
    return "" if val is None else str(val).strip()


def _require(record: Record, key: str) -> str:
    """Return a non-empty string field or raise ValidationError."""
    val = _text(record, key)
    if not val:
        raise ValidationError(f"missing required field '{key}'")
    return val


def _preview(text: str, limit: int) -> str:
    """First line of *text*, truncated to *limit* characters."""
    first = text.strip().splitlines()[0] if text.strip() else ""
    return first[:limit].strip()


def _json_field(value: Any, default: Any) -> Any:
    """Decode a JSON-encoded column, accepting already-decoded values."""
    if value is None or value == "":
        return default
    if isinstance(value, (list, dict)):
        return value
    try:
        return json.loads(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"malformed JSON value: {exc}") from exc


def _tags(*values: Any) -> List[str]:
    out: List[str] = []
    for v in values:
        if isinstance(v, (list, tuple)):
            out.extend(str(x) for x in v if x)
        elif v:
            out.append(str(v))
    return out


def _flag(value: Any) -> bool:
    return bool(value) and value not in ("0", "false", "False")


# ---------------------------------------------------------------------------
# Readers
# ---------------------------------------------------------------------------


class LegacyReader(ABC):
    """Lists an owner's rows from one legacy table."""

    @abstractmethod
    def fetch(self, table: str, owner_id: str) -> List[Dict[str, Any]]:
        """Return every record of *table* owned by *owner_id*."""


class SqliteLegacyReader(LegacyReader):
    """Reads legacy rows from the application's SQLite database (read-only)."""

    def __init__(self, db_path: str, owner_column: str = "created_by"):
        if not owner_column.isidentifier():
            raise ValueError(f"Invalid owner column: {owner_column!r}")
        self._db_path = db_path
        self._owner_column = owner_column
        self._conn = sqlite3.connect(
            f"file:{db_path}?mode=ro", uri=True, check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row

    def close(self) -> None:
        self._conn.close()

    def has_table(self, table: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type='table' AND name=?",
            (table,),
        ).fetchone()
        return row is not None

    def fetch(self, table: str, owner_id: str) -> List[Dict[str, Any]]:
        if not table.isidentifier():
            raise ValueError(f"Invalid table name: {table!r}")
        if not self.has_table(table):
            raise LookupError(f"Legacy table not found: {table}")
        rows = self._conn.execute(
            f"SELECT * FROM {table} WHERE {self._owner_column} = ? ORDER BY rowid",
            (owner_id,),
        ).fetchall()
        return [dict(r) for r in rows]


class InMemoryLegacyReader(LegacyReader):
    """Serves legacy rows from plain dicts (fixtures, embedding callers)."""

    def __init__(
        self,
        tables: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        owner_column: str = "created_by",
    ):
        self.tables: Dict[str, List[Dict[str, Any]]] = tables or {}
        self._owner_column = owner_column

    def fetch(self, table: str, owner_id: str) -> List[Dict[str, Any]]:
        if table not in self.tables:
            raise LookupError(f"Legacy table not found: {table}")
        return [
            dict(r) for r in self.tables[table]
            if str(r.get(self._owner_column)) == str(owner_id)
        ]


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


class LegacySource(ABC):
    """One legacy table and its mapping onto vault items."""

    table: str = ""
    primary_key: str = "id"

    def __init__(self, reader: LegacyReader, title_preview_chars: int = 100):
        self._reader = reader
        self.title_preview_chars = title_preview_chars

    def list_records(self, owner_id: str) -> List[Dict[str, Any]]:
        return self._reader.fetch(self.table, owner_id)

    def record_id(self, record: Record) -> str:
        """Stable provenance id for a record (its primary key as text)."""
        val = record.get(self.primary_key)
        if val is None or str(val) == "":
            raise ValidationError(f"missing primary key '{self.primary_key}'")
        return str(val)

    @abstractmethod
    def to_item(self, record: Record) -> LegacyItem:
        """Map a record. Raises ValidationError on unusable data."""


class NoteSource(LegacySource):
    table = "obsidian_notes"

    def to_item(self, record: Record) -> LegacyItem:
        return LegacyItem(
            type="note",
            title=_require(record, "title"),
            content=_text(record, "content_markdown") or _text(record, "content"),
            para_category=None,  # categorized by the user
            folder_path=_text(record, "folder_path") or None,
            metadata={"frontmatter": _json_field(record.get("frontmatter"), {})},
        )


class ThoughtSource(LegacySource):
    table = "thoughts"

    def to_item(self, record: Record) -> LegacyItem:
        content = _text(record, "content")
        category = record.get("category")
        return LegacyItem(
            type="thought",
            title=_preview(content, self.title_preview_chars) or "Untitled Thought",
            content=content,
            para_category=thought_category_to_para(category),
            tags=_tags(category),
            metadata={
                "original_category": category,
                "is_processed": _flag(record.get("is_processed")),
                "session_id": record.get("session_id"),
            },
        )


class ThoughtSessionSource(LegacySource):
    table = "thought_sessions"

    def to_item(self, record: Record) -> LegacyItem:
        started = _text(record, "created_at")
        title = _text(record, "title") or _text(record, "name")
        if not title:
            title = f"Brain dump {started[:10]}".strip() if started else "Brain dump"
        return LegacyItem(
            type="thought_session",
            title=title,
            content=_text(record, "summary") or _text(record, "description"),
            para_category="resource",
            metadata={
                "thought_count": record.get("thought_count"),
                "duration": record.get("duration"),
                "started_at": started or None,
            },
        )


class IdeaSource(LegacySource):
    table = "ideas"

    def to_item(self, record: Record) -> LegacyItem:
        status = record.get("status")
        return LegacyItem(
            type="idea",
            title=_require(record, "title"),
            content=_text(record, "description"),
            para_category=idea_status_to_para(status),
            tags=_tags(_json_field(record.get("tags"), [])),
            metadata={
                "status": status,
                "priority": record.get("priority"),
                "category": record.get("category"),
            },
        )


class ArticleSource(LegacySource):
    table = "articles"

    def to_item(self, record: Record) -> LegacyItem:
        status = record.get("status")
        kind = record.get("type")
        return LegacyItem(
            type="research" if kind == "research" else "article",
            title=_require(record, "title"),
            content=_text(record, "content"),
            para_category=article_status_to_para(status),
            tags=_tags(_json_field(record.get("tags"), [])),
            metadata={
                "status": status,
                "category": record.get("category"),
                "article_type": kind,
                "word_count": record.get("word_count"),
                "target_word_count": record.get("target_word_count"),
                "excerpt": record.get("excerpt"),
            },
        )


class QuoteSource(LegacySource):
    table = "quotes"

    def to_item(self, record: Record) -> LegacyItem:
        author = _text(record, "author")
        return LegacyItem(
            type="quote",
            title=f"Quote by {author or 'Unknown'}",
            content=_require(record, "content"),
            para_category="resource",
            tags=_tags(record.get("category")),
            metadata={
                "author": author or None,
                "source": record.get("source"),
                "is_favorite": _flag(record.get("is_favorite")),
            },
        )


class WordSource(LegacySource):
    table = "words"

    def to_item(self, record: Record) -> LegacyItem:
        return LegacyItem(
            type="word",
            title=_require(record, "word"),
            content=_text(record, "definition"),
            para_category="resource",
            tags=_tags(record.get("category"), record.get("part_of_speech")),
            metadata={
                "pronunciation": record.get("pronunciation"),
                "example_sentence": record.get("example_sentence"),
                "origin": record.get("origin"),
                "synonyms": _json_field(record.get("synonyms"), []),
                "antonyms": _json_field(record.get("antonyms"), []),
                "mastery_level": record.get("mastery_level") or 0,
            },
        )


class StickyNoteSource(LegacySource):
    table = "sticky_notes"

    def to_item(self, record: Record) -> LegacyItem:
        content = _require(record, "content")
        return LegacyItem(
            type="sticky_note",
            title=_preview(content, self.title_preview_chars),
            content=content,
            para_category="resource",
            metadata={
                "color": record.get("color"),
                "board_id": record.get("board_id"),
                "is_pinned": _flag(record.get("is_pinned")),
            },
        )


class TaskSource(LegacySource):
    table = "tasks"

    def to_item(self, record: Record) -> LegacyItem:
        status = record.get("status") or record.get("gtd_status")
        return LegacyItem(
            type="task",
            title=_require(record, "title"),
            content=_text(record, "description"),
            para_category=task_status_to_para(status),
            tags=["task"],
            metadata={
                "task_id": record.get(self.primary_key),
                "priority": record.get("priority"),
                "due_date": record.get("due_date"),
                "gtd_status": record.get("gtd_status"),
            },
        )


class PomodoroSource(LegacySource):
    table = "chronos_pomodoro_sessions"

    def to_item(self, record: Record) -> LegacyItem:
        start = _require(record, "start_time")
        completed = _flag(record.get("completed"))
        return LegacyItem(
            type="pomodoro",
            title=f"Pomodoro {start}",
            content=_text(record, "notes"),
            para_category="archive" if completed else "project",
            metadata={
                "task_id": record.get("task_id"),
                "duration": record.get("duration"),
                "break_duration": record.get("break_duration"),
                "start_time": start,
                "end_time": record.get("end_time"),
                "completed": completed,
                "interrupted": _flag(record.get("interrupted")),
            },
        )


SOURCE_CLASSES: Dict[str, type] = {
    cls.table: cls
    for cls in (
        NoteSource, ThoughtSource, ThoughtSessionSource, IdeaSource,
        ArticleSource, QuoteSource, WordSource, StickyNoteSource,
        TaskSource, PomodoroSource,
    )
}


def default_sources(
    reader: LegacyReader,
    names: Optional[List[str]] = None,
    title_preview_chars: int = 100,
) -> List[LegacySource]:
    """Instantiate the named sources (all known sources by default), in order."""
    names = list(SOURCE_CLASSES) if names is None else names
    sources: List[LegacySource] = []
    for name in names:
        cls = SOURCE_CLASSES.get(name)
        if cls is None:
            raise ValueError(f"Unknown legacy source: {name}")
        sources.append(cls(reader, title_preview_chars=title_preview_chars))
    return sources
