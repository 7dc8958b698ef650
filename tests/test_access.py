"""
Tests for kvault.access — caller identity, ownership isolation, policies.
"""

import pytest

from kvault.access import VaultAccess
from kvault.config import AccessConfig, VaultConfig
from kvault.legacy import InMemoryLegacyReader, default_sources
from kvault.migrate import MigrationEngine
from kvault.store import VaultStore
from kvault.types import (
    Forbidden,
    ItemFilter,
    NotFound,
    Unauthenticated,
    ValidationError,
)

MISSING = "VLT-000000000000"


@pytest.fixture
def store():
    s = VaultStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def access(store):
    return VaultAccess(store)


@pytest.fixture
def concealing(store):
    return VaultAccess(store, config=AccessConfig(conceal_existence=True))


@pytest.fixture
def a_item(access):
    return access.create_item("alice", "note", "Alice's note", content="private")


class TestAuthentication:
    @pytest.mark.parametrize("caller", [None, "", "   "])
    def test_empty_caller(self, access, caller):
        with pytest.raises(Unauthenticated):
            access.create_item(caller, "note", "x")
        with pytest.raises(Unauthenticated):
            access.list_items(caller)
        with pytest.raises(Unauthenticated):
            access.stats(caller)

    def test_initialize_requires_caller(self, access):
        with pytest.raises(Unauthenticated):
            access.initialize("")
        assert access.initialize("alice")["initialized"] is True


class TestOwnershipIsolation:
    def test_get_foreign(self, access, a_item):
        with pytest.raises(Forbidden):
            access.get_item("bob", a_item.id)

    def test_update_foreign(self, access, a_item, store):
        with pytest.raises(Forbidden):
            access.update_item("bob", a_item.id, {"title": "pwned"})
        assert store.get_item(a_item.id).title == "Alice's note"

    def test_delete_foreign(self, access, a_item, store):
        with pytest.raises(Forbidden):
            access.delete_item("bob", a_item.id)
        assert store.exists(a_item.id)

    def test_missing_is_not_found(self, access):
        with pytest.raises(NotFound):
            access.get_item("bob", MISSING)

    def test_listing_scoped(self, access, a_item):
        access.create_item("bob", "note", "Bob's note")
        assert [i.title for i in access.list_items("bob")] == ["Bob's note"]
        assert access.search("bob", "note")[0].title == "Bob's note"
        assert access.stats("bob")["total"] == 1

    def test_owner_full_cycle(self, access, a_item):
        assert access.get_item("alice", a_item.id) == a_item
        updated = access.update_item("alice", a_item.id, {"para_category": "area"})
        assert updated.para_category == "area"
        assert access.delete_item("alice", a_item.id) == 0
        with pytest.raises(NotFound):
            access.get_item("alice", a_item.id)

    def test_owner_cannot_be_reassigned(self, access, a_item):
        with pytest.raises(ValidationError):
            access.update_item("alice", a_item.id, {"created_by": "bob"})


class TestConcealExistence:
    def test_foreign_reports_not_found(self, concealing, a_item):
        with pytest.raises(NotFound):
            concealing.get_item("bob", a_item.id)
        with pytest.raises(NotFound):
            concealing.delete_item("bob", a_item.id)

    def test_owner_unaffected(self, concealing, a_item):
        assert concealing.get_item("alice", a_item.id).id == a_item.id


class TestLinks:
    def test_link_own_items(self, access, a_item):
        other = access.create_item("alice", "idea", "Second")
        link = access.create_link("alice", a_item.id, other.id, "reference")
        assert access.list_links("alice", a_item.id) == [link]
        assert access.list_links("alice", other.id) == [link]

    def test_link_to_foreign_target_allowed(self, access, a_item):
        bobs = access.create_item("bob", "note", "Bob's")
        link = access.create_link("alice", a_item.id, bobs.id)
        assert link.target_id == bobs.id

    def test_link_from_foreign_source(self, access, a_item):
        bobs = access.create_item("bob", "note", "Bob's")
        with pytest.raises(Forbidden):
            access.create_link("bob", a_item.id, bobs.id)

    def test_link_missing_endpoint(self, access, a_item):
        with pytest.raises(NotFound):
            access.create_link("alice", a_item.id, MISSING)
        with pytest.raises(NotFound):
            access.create_link("alice", MISSING, a_item.id)

    def test_list_links_foreign(self, access, a_item):
        with pytest.raises(Forbidden):
            access.list_links("bob", a_item.id)

    def test_delete_link_requires_source_owner(self, access, a_item):
        bobs = access.create_item("bob", "note", "Bob's")
        link = access.create_link("alice", a_item.id, bobs.id)
        with pytest.raises(Forbidden):
            access.delete_link("bob", link.id)
        access.delete_link("alice", link.id)
        assert access.list_links("alice", a_item.id) == []

    def test_delete_missing_link(self, access):
        with pytest.raises(NotFound):
            access.delete_link("alice", "LNK-000000000000")

    def test_by_direction(self, access, a_item):
        other = access.create_item("alice", "idea", "Second")
        out = access.create_link("alice", a_item.id, other.id)
        split = access.links_by_direction("alice", other.id)
        assert split == {"outgoing": [], "incoming": [out]}


class TestAutoLink:
    def test_creates_wikilinks_once(self, access):
        plan = access.create_item("alice", "note", "Garden Plan")
        task = access.create_item("alice", "task", "Plant",
                                  content="see [[Garden Plan]]")
        created = access.auto_link("alice", task.id)
        assert [(ln.target_id, ln.link_type) for ln in created] == [(plan.id, "wikilink")]
        assert access.auto_link("alice", task.id) == []

    def test_foreign_item(self, access, a_item):
        with pytest.raises(Forbidden):
            access.auto_link("bob", a_item.id)


class TestCapsAndLimits:
    def test_title_cap(self, store):
        acc = VaultAccess(store, config=AccessConfig(max_title_length=10))
        with pytest.raises(ValidationError):
            acc.create_item("alice", "note", "x" * 11)

    def test_content_cap_on_update(self, store):
        acc = VaultAccess(store, config=AccessConfig(max_content_bytes=8))
        item = acc.create_item("alice", "note", "x", content="short")
        with pytest.raises(ValidationError):
            acc.update_item("alice", item.id, {"content": "é" * 5})

    def test_limit_clamped(self, store):
        acc = VaultAccess(store, max_limit=2)
        for i in range(4):
            acc.create_item("alice", "note", f"n{i}")
        assert len(acc.list_items("alice", ItemFilter(limit=50))) == 2
        assert len(acc.search("alice", "n", limit=50)) == 2

    def test_caller_filter_not_mutated(self, access):
        f = ItemFilter(limit=5000)
        access.list_items("alice", f)
        assert f.limit == 5000


class TestRelatedAndSummary:
    def test_related_checks_ownership(self, access, a_item):
        with pytest.raises(Forbidden):
            access.related_items("bob", a_item.id)

    def test_summary(self, access, a_item):
        assert access.summary("alice")["total"] == 1


class TestMigration:
    def test_not_configured(self, access):
        with pytest.raises(ValidationError):
            access.migrate("alice")

    def test_migrate_as_caller(self, store):
        reader = InMemoryLegacyReader({"ideas": [
            {"id": 1, "created_by": "alice", "title": "A", "status": "new"},
            {"id": 2, "created_by": "bob", "title": "B", "status": "new"},
        ]})
        engine = MigrationEngine(store, default_sources(reader, ["ideas"]))
        acc = VaultAccess(store, migration=engine)
        result = acc.migrate("alice")
        assert result.migrated_count == 1
        assert [i.title for i in acc.list_items("alice")] == ["A"]
        with pytest.raises(Unauthenticated):
            acc.migrate("")


class TestOpen:
    def test_open_from_config(self, tmp_path):
        cfg = VaultConfig()
        cfg.store.db_path = str(tmp_path / "v.db")
        acc = VaultAccess.open(cfg)
        try:
            assert acc.migration is None
            acc.create_item("alice", "note", "x")
        finally:
            acc.close()
        assert (tmp_path / "v.db").exists()

    def test_open_missing_legacy_db(self, tmp_path):
        with pytest.raises(ValidationError):
            VaultAccess.open(db_path=str(tmp_path / "v.db"),
                             legacy_db_path=str(tmp_path / "nope.db"))
