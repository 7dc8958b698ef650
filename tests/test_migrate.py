"""
Tests for kvault.migrate — idempotency, partial failure, dry runs.
"""

import logging
import sqlite3

import pytest

from kvault.legacy import InMemoryLegacyReader, LegacySource, default_sources
from kvault.migrate import MigrationEngine, MigrationResult
from kvault.store import VaultStore
from kvault.types import ValidationError


def _legacy_tables():
    return {
        "obsidian_notes": [
            {"id": i, "created_by": "u1", "title": f"Note {i}",
             "content_markdown": f"body {i}", "folder_path": "notes"}
            for i in range(1, 6)
        ] + [{"id": 99, "created_by": "u2", "title": "Other", "content_markdown": ""}],
        "thoughts": [{"id": 1, "created_by": "u1", "content": "Call mom",
                      "category": "actions"}],
        "thought_sessions": [],
        "ideas": [{"id": 1, "created_by": "u1", "title": "Garden app",
                   "status": "new"}],
        "articles": [{"id": 1, "created_by": "u1", "title": "Survey",
                      "type": "research", "status": "draft"}],
        "quotes": [{"id": 1, "created_by": "u1", "content": "Stay hungry",
                    "author": "Jobs"}],
        "words": [{"id": 1, "created_by": "u1", "word": "apricity",
                   "definition": "warmth of the sun in winter"}],
        "sticky_notes": [{"id": 1, "created_by": "u1", "content": "Buy milk"}],
        "tasks": [{"id": 1, "created_by": "u1", "title": "File taxes",
                   "status": "done"}],
        "chronos_pomodoro_sessions": [{"id": 1, "created_by": "u1",
                                       "start_time": "2024-05-01T09:00",
                                       "completed": 0}],
    }


@pytest.fixture
def store():
    s = VaultStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def reader():
    return InMemoryLegacyReader(_legacy_tables())


@pytest.fixture
def engine(store, reader):
    return MigrationEngine(store, default_sources(reader))


class TestMigrate:
    def test_first_run_migrates_everything(self, store, engine):
        result = engine.migrate("u1")
        assert result.migrated_count == 13
        assert result.skipped_count == 0
        assert result.errors == []
        assert not result.partial
        assert store.count_items("u1") == 13
        assert store.count_items("u2") == 0

    def test_second_run_is_noop(self, store, engine):
        first = engine.migrate("u1")
        second = engine.migrate("u1")
        assert second.migrated_count == 0
        assert second.skipped_count == first.migrated_count
        assert store.count_items("u1") == first.migrated_count

    def test_provenance_recorded(self, store, engine):
        engine.migrate("u1")
        note = store.find_by_source("obsidian_notes", "3")
        assert note is not None
        assert note.title == "Note 3"
        assert note.folder_path == "notes"
        assert note.created_by == "u1"

    def test_mapped_para(self, store, engine):
        engine.migrate("u1")
        assert store.find_by_source("tasks", "1").para_category == "archive"
        assert store.find_by_source("articles", "1").type == "research"
        assert store.find_by_source("chronos_pomodoro_sessions", "1").para_category == "project"

    def test_per_source_tally(self, engine):
        result = engine.migrate("u1")
        assert result.per_source["obsidian_notes"].migrated == 5
        assert result.per_source["thought_sessions"].migrated == 0
        data = result.to_dict()
        assert data["per_source"]["ideas"] == {"migrated": 1, "skipped": 0, "errors": 0}
        assert data["partial"] is False

    def test_owner_isolation(self, store, engine):
        engine.migrate("u2")
        assert store.count_items("u2") == 1
        assert store.count_items("u1") == 0

    def test_empty_owner_rejected(self, engine):
        with pytest.raises(ValidationError):
            engine.migrate("")


class TestScenario:
    def test_welcome_note_and_five_legacy_notes(self, store):
        from kvault.links import LinkGraph

        graph = LinkGraph(store)
        welcome = store.create_item("u1", "note", "Welcome")
        other = store.create_item("u1", "idea", "Second")
        graph.create_link(welcome.id, other.id, "reference")
        assert len(graph.list_links_for(welcome.id)) == 1

        reader = InMemoryLegacyReader({"obsidian_notes": _legacy_tables()["obsidian_notes"]})
        engine = MigrationEngine(store, default_sources(reader, ["obsidian_notes"]))
        first = engine.migrate("u1")
        assert first.migrated_count == 5
        second = engine.migrate("u1")
        assert second.skipped_count == 5
        assert second.migrated_count == 0
        assert store.count_items("u1") == 7


class TestPartialFailure:
    def test_bad_record_does_not_stop_run(self, store, caplog):
        tables = _legacy_tables()
        tables["words"].append({"id": 2, "created_by": "u1", "word": ""})
        tables["quotes"].append({"id": 2, "created_by": "u1", "author": "Nobody"})
        engine = MigrationEngine(store, default_sources(InMemoryLegacyReader(tables)))

        with caplog.at_level(logging.WARNING, logger="kvault.migrate"):
            result = engine.migrate("u1")

        assert result.partial
        assert result.migrated_count == 13
        failed = {(e.source_table, e.source_id) for e in result.errors}
        assert failed == {("words", "2"), ("quotes", "2")}
        assert "words" in caplog.text

    def test_missing_table_is_one_error(self, store):
        tables = _legacy_tables()
        del tables["ideas"]
        engine = MigrationEngine(store, default_sources(InMemoryLegacyReader(tables)))
        result = engine.migrate("u1")
        errs = [e for e in result.errors if e.source_table == "ideas"]
        assert len(errs) == 1
        assert errs[0].source_id is None
        assert result.migrated_count == 12

    def test_missing_primary_key(self, store):
        tables = {"tasks": [{"created_by": "u1", "title": "orphan"}]}
        engine = MigrationEngine(
            store, default_sources(InMemoryLegacyReader(tables), ["tasks"]))
        result = engine.migrate("u1")
        assert len(result.errors) == 1
        assert result.errors[0].source_id is None

    def test_retry_after_fix_migrates_remaining(self, store):
        tables = _legacy_tables()
        tables["words"][0]["word"] = ""
        reader = InMemoryLegacyReader(tables)
        engine = MigrationEngine(store, default_sources(reader))
        first = engine.migrate("u1")
        assert first.migrated_count == 12

        reader.tables["words"][0]["word"] = "apricity"
        second = engine.migrate("u1")
        assert second.migrated_count == 1
        assert second.skipped_count == 12
        assert not second.partial

    def test_custom_source(self, store):
        class Broken(LegacySource):
            table = "broken"

            def list_records(self, owner_id):
                raise RuntimeError("connection reset")

            def to_item(self, record):
                raise AssertionError("unreachable")

        engine = MigrationEngine(store, [Broken(InMemoryLegacyReader())])
        result = engine.migrate("u1")
        assert result.errors[0].message.endswith("connection reset")


class TestDryRun:
    def test_dry_run_writes_nothing(self, store, engine):
        result = engine.migrate("u1", dry_run=True)
        assert result.dry_run
        assert result.migrated_count == 13
        assert store.count_items("u1") == 0

    def test_dry_run_after_real_run(self, engine):
        engine.migrate("u1")
        result = engine.migrate("u1", dry_run=True)
        assert result.migrated_count == 0
        assert result.skipped_count == 13


class TestSqliteLegacy:
    def test_end_to_end(self, store, tmp_path):
        path = tmp_path / "legacy.db"
        conn = sqlite3.connect(path)
        conn.execute(
            "CREATE TABLE obsidian_notes (id INTEGER PRIMARY KEY, title TEXT, "
            "content_markdown TEXT, folder_path TEXT, frontmatter TEXT, created_by TEXT)"
        )
        conn.execute(
            "INSERT INTO obsidian_notes (title, content_markdown, frontmatter, created_by) "
            "VALUES ('Daily', 'text', '{\"tags\": []}', 'u1')"
        )
        conn.commit()
        conn.close()

        from kvault.legacy import SqliteLegacyReader
        reader = SqliteLegacyReader(str(path))
        try:
            engine = MigrationEngine(store, default_sources(reader))
            result = engine.migrate("u1")
        finally:
            reader.close()

        assert result.migrated_count == 1
        # the other nine tables do not exist in this database
        assert len(result.errors) == 9
        assert store.find_by_source("obsidian_notes", "1").metadata == {
            "frontmatter": {"tags": []},
        }


def test_result_defaults():
    r = MigrationResult()
    assert r.to_dict() == {
        "migrated_count": 0, "skipped_count": 0, "errors": [],
        "per_source": {}, "dry_run": False, "partial": False,
    }
