"""
Tests for kvault.store — VaultStore CRUD, provenance uniqueness, schema, events.
"""

import sqlite3
import threading

import pytest

from kvault.links import LinkGraph
from kvault.store import SCHEMA_VERSION, VaultStore, _next_timestamp
from kvault.types import (
    AlreadyExists,
    ItemFilter,
    NotFound,
    ValidationError,
)


@pytest.fixture
def store():
    """In-memory store."""
    s = VaultStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def disk_store(tmp_path):
    """Disk-backed store (WAL)."""
    s = VaultStore(str(tmp_path / "sub" / "vault.db"))
    yield s
    s.close()


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class TestSchema:
    def test_schema_version(self, store):
        row = store._conn.execute(
            "SELECT value FROM schema_meta WHERE key='schema_version'"
        ).fetchone()
        assert row["value"] == str(SCHEMA_VERSION)

    def test_schema_created_by(self, store):
        row = store._conn.execute(
            "SELECT value FROM schema_meta WHERE key='created_by'"
        ).fetchone()
        assert row["value"] == "kvault"

    def test_tables_exist(self, store):
        tables = {
            r["name"] for r in store._conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        }
        assert {"vault_items", "vault_links", "vault_events", "schema_meta"} <= tables

    def test_initialize_idempotent(self, store):
        store.create_item("u1", "note", "keep me")
        store.initialize()
        store.initialize()
        assert store.count_items("u1") == 1

    def test_disk_store_creates_parent_dir(self, disk_store, tmp_path):
        assert (tmp_path / "sub" / "vault.db").exists()
        mode = disk_store._conn.execute("PRAGMA journal_mode").fetchone()[0]
        assert mode == "wal"

    def test_check_constraint_backs_type_validation(self, store):
        with pytest.raises(sqlite3.IntegrityError):
            store._conn.execute(
                "INSERT INTO vault_items (id, type, title, created_by, created_at, updated_at) "
                "VALUES ('VLT-x', 'memo', 't', 'u1', 'now', 'now')"
            )


# ---------------------------------------------------------------------------
# Create / read
# ---------------------------------------------------------------------------


class TestCreate:
    def test_create_and_get(self, store):
        item = store.create_item("u1", "note", "Welcome", content="hello",
                                 para_category="resource", tags=["intro"])
        got = store.get_item(item.id)
        assert got == item
        assert got.created_at == got.updated_at
        assert got.created_by == "u1"

    def test_create_validates(self, store):
        with pytest.raises(ValidationError):
            store.create_item("u1", "note", "")
        with pytest.raises(ValidationError):
            store.create_item("u1", "memo", "x")
        with pytest.raises(ValidationError):
            store.create_item("", "note", "x")
        assert store.count_items("u1") == 0

    def test_unserializable_metadata(self, store):
        with pytest.raises(ValidationError, match="serializable"):
            store.create_item("u1", "note", "x", metadata={"when": object()})
        assert store.count_items("u1") == 0

    def test_unserializable_metadata_on_update(self, store):
        item = store.create_item("u1", "note", "x", metadata={"a": 1})
        with pytest.raises(ValidationError, match="serializable"):
            store.update_item(item.id, {"title": "y", "metadata": {"x": {1, 2}}})
        kept = store.get_item(item.id)
        assert kept.title == "x"
        assert kept.metadata == {"a": 1}

    def test_get_missing_raises(self, store):
        with pytest.raises(NotFound):
            store.get_item("VLT-000000000000")
        assert store.find_item("VLT-000000000000") is None
        assert store.exists("VLT-000000000000") is False

    def test_create_logs_event(self, store):
        item = store.create_item("u1", "idea", "x")
        events = store.read_events(item_id=item.id)
        assert [e["action"] for e in events] == ["create"]
        assert events[0]["owner"] == "u1"


class TestCreateFromSource:
    def test_first_insert_creates(self, store):
        item, created = store.create_item_from_source(
            "u1", "note", "N", "body", "obsidian_notes", "1",
        )
        assert created is True
        assert item.provenance == ("obsidian_notes", "1")
        assert store.find_by_source("obsidian_notes", "1") == item

    def test_second_insert_returns_existing(self, store):
        first, _ = store.create_item_from_source(
            "u1", "note", "N", "body", "obsidian_notes", "1",
        )
        again, created = store.create_item_from_source(
            "u1", "note", "Other title", "", "obsidian_notes", "1",
        )
        assert created is False
        assert again.id == first.id
        assert again.title == "N"
        assert store.count_items("u1") == 1

    def test_strict_raises_already_exists(self, store):
        first, _ = store.create_item_from_source(
            "u1", "note", "N", "", "obsidian_notes", 1,
        )
        with pytest.raises(AlreadyExists) as exc:
            store.create_item_from_source(
                "u1", "note", "N", "", "obsidian_notes", 1, strict=True,
            )
        assert exc.value.existing.id == first.id

    def test_same_id_different_table_allowed(self, store):
        store.create_item_from_source("u1", "idea", "I", "", "ideas", "1")
        store.create_item_from_source("u1", "task", "T", "", "tasks", "1")
        assert store.count_items("u1") == 2

    def test_only_provenance_collisions_absorbed(self, store, monkeypatch):
        import kvault.types

        real = kvault.types._generate_id
        monkeypatch.setattr(
            kvault.types, "_generate_id",
            lambda prefix="VLT": "VLT-000000000001" if prefix == "VLT" else real(prefix),
        )
        native = store.create_item("u1", "note", "native")
        # same primary key, fresh provenance: must not be skipped as a duplicate
        with pytest.raises(ValidationError, match="schema"):
            store.create_item_from_source("u1", "note", "N", "", "obsidian_notes", "7")
        assert store.find_by_source("obsidian_notes", "7") is None
        assert store.get_item(native.id).title == "native"

    def test_requires_both_provenance_fields(self, store):
        with pytest.raises(ValidationError):
            store.create_item_from_source("u1", "note", "N", "", "", "1")

    def test_concurrent_inserts_single_row(self, disk_store):
        results = []

        def worker():
            results.append(disk_store.create_item_from_source(
                "u1", "task", "T", "", "tasks", "42",
            ))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sum(1 for _, created in results if created) == 1
        assert len({item.id for item, _ in results}) == 1
        assert disk_store.count_items("u1") == 1


# ---------------------------------------------------------------------------
# Update
# ---------------------------------------------------------------------------


class TestUpdate:
    def test_update_merges_fields(self, store):
        item = store.create_item("u1", "note", "Old", content="c", tags=["a"])
        updated = store.update_item(item.id, {"title": "New", "tags": ["b"]})
        assert updated.title == "New"
        assert updated.tags == ["b"]
        assert updated.content == "c"
        assert store.get_item(item.id) == updated

    def test_updated_at_strictly_advances(self, store):
        item = store.create_item("u1", "note", "x")
        a = store.update_item(item.id, {"content": "1"})
        b = store.update_item(item.id, {"content": "2"})
        assert item.updated_at < a.updated_at < b.updated_at
        assert b.created_at == item.created_at

    def test_immutable_fields_rejected(self, store):
        item = store.create_item("u1", "note", "x")
        for key in ("created_by", "id", "type", "source_id"):
            with pytest.raises(ValidationError):
                store.update_item(item.id, {key: "other"})
        assert store.get_item(item.id).created_by == "u1"

    def test_no_partial_application(self, store):
        item = store.create_item("u1", "note", "x")
        with pytest.raises(ValidationError):
            store.update_item(item.id, {"title": "y", "para_category": "bogus"})
        assert store.get_item(item.id).title == "x"

    def test_update_missing(self, store):
        with pytest.raises(NotFound):
            store.update_item("VLT-000000000000", {"title": "x"})

    def test_next_timestamp_bumps(self):
        future = "2999-01-01T00:00:00.000000+00:00"
        assert _next_timestamp(future) == "2999-01-01T00:00:00.000001+00:00"


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------


class TestDelete:
    def test_delete_removes_item_and_links(self, store):
        graph = LinkGraph(store)
        a = store.create_item("u1", "note", "A")
        b = store.create_item("u1", "note", "B")
        c = store.create_item("u1", "note", "C")
        graph.create_link(a.id, b.id)
        graph.create_link(c.id, a.id)
        graph.create_link(b.id, c.id)

        assert store.delete_item(a.id) == 2
        assert not store.exists(a.id)
        assert graph.list_links_for(b.id) == graph.list_links_for(c.id)
        assert graph.count_links() == 1

    def test_delete_missing(self, store):
        with pytest.raises(NotFound):
            store.delete_item("VLT-000000000000")

    def test_delete_logs_event(self, store):
        item = store.create_item("u1", "note", "A")
        store.delete_item(item.id)
        assert store.read_events(action="delete")[0]["item_id"] == item.id


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


class TestList:
    @pytest.fixture
    def populated(self, store):
        store.create_item("u1", "note", "Alpha", content="first note",
                          para_category="project", folder_path="work", tags=["x"])
        store.create_item("u1", "idea", "Beta", content="100% sure",
                          para_category="area", tags=["y", "x"])
        store.create_item("u1", "quote", "Gamma", content="snake_case",
                          para_category="resource", tags=["z"])
        store.create_item("u2", "note", "Alpha of u2", tags=["x"])
        return store

    def test_owner_scoped(self, populated):
        assert len(populated.list_items("u1")) == 3
        assert [i.title for i in populated.list_items("u2")] == ["Alpha of u2"]

    def test_most_recent_first(self, populated):
        titles = [i.title for i in populated.list_items("u1")]
        assert titles == ["Gamma", "Beta", "Alpha"]

    def test_update_moves_to_front(self, populated):
        alpha = populated.list_items("u1", ItemFilter(type="note"))[0]
        populated.update_item(alpha.id, {"content": "edited"})
        assert populated.list_items("u1")[0].id == alpha.id

    def test_type_para_folder(self, populated):
        assert [i.title for i in populated.list_items("u1", ItemFilter(type="idea"))] == ["Beta"]
        assert [i.title for i in populated.list_items(
            "u1", ItemFilter(para_category="project"))] == ["Alpha"]
        assert [i.title for i in populated.list_items(
            "u1", ItemFilter(folder_path="work"))] == ["Alpha"]

    def test_tags_any(self, populated):
        titles = {i.title for i in populated.list_items("u1", ItemFilter(tags_any=["x"]))}
        assert titles == {"Alpha", "Beta"}

    def test_tags_any_with_limit(self, populated):
        items = populated.list_items("u1", ItemFilter(tags_any=["x", "z"], limit=2))
        assert [i.title for i in items] == ["Gamma", "Beta"]

    def test_search_case_insensitive(self, populated):
        assert [i.title for i in populated.list_items(
            "u1", ItemFilter(search="ALPHA"))] == ["Alpha"]
        assert [i.title for i in populated.list_items(
            "u1", ItemFilter(search="FIRST"))] == ["Alpha"]

    def test_search_non_ascii_case_insensitive(self, store):
        store.create_item("u1", "note", "Éclair recipe", content="ÜBER gut")
        assert [i.title for i in store.list_items(
            "u1", ItemFilter(search="éclair"))] == ["Éclair recipe"]
        assert [i.title for i in store.list_items(
            "u1", ItemFilter(search="über"))] == ["Éclair recipe"]
        assert [i.title for i in store.list_items(
            "u1", ItemFilter(search="ÉCLAIR"))] == ["Éclair recipe"]

    def test_search_wildcards_are_literal(self, populated):
        assert [i.title for i in populated.list_items(
            "u1", ItemFilter(search="100%"))] == ["Beta"]
        assert [i.title for i in populated.list_items(
            "u1", ItemFilter(search="e_c"))] == ["Gamma"]
        assert populated.list_items("u1", ItemFilter(search="%%")) == []

    def test_limit(self, populated):
        assert len(populated.list_items("u1", ItemFilter(limit=1))) == 1

    def test_count_by(self, populated):
        assert populated.count_by("u1", "type") == {"note": 1, "idea": 1, "quote": 1}
        with pytest.raises(ValueError):
            populated.count_by("u1", "title")
