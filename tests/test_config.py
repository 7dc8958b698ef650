"""
Tests for kvault.config — defaults, JSON loading, validation.
"""

import json

import pytest

from kvault.config import (
    DEFAULT_LEGACY_SOURCES,
    AccessConfig,
    MigrationConfig,
    QueryConfig,
    VaultConfig,
    load_config,
)
from kvault.types import ValidationError


class TestDefaults:
    def test_defaults_valid(self):
        assert VaultConfig().validate() == []

    def test_default_values(self):
        cfg = VaultConfig()
        assert cfg.store.db_path == ".vault/vault.db"
        assert cfg.access.conceal_existence is False
        assert cfg.migration.sources == DEFAULT_LEGACY_SOURCES
        assert cfg.query.default_limit == 100

    def test_sources_not_shared(self):
        a, b = MigrationConfig(), MigrationConfig()
        a.sources.append("x")
        assert "x" not in b.sources


class TestValidation:
    def test_out_of_range(self):
        errors = QueryConfig(default_limit=5000, max_limit=1000).validate()
        assert any("query.default_limit" in e for e in errors)

    def test_wrong_type(self):
        errors = AccessConfig(max_title_length="long").validate()
        assert errors and "expected int" in errors[0]

    def test_unknown_source(self):
        errors = MigrationConfig(sources=["emails"]).validate()
        assert any("emails" in e for e in errors)

    def test_bad_owner_column(self):
        errors = MigrationConfig(owner_column="user id").validate()
        assert any("owner_column" in e for e in errors)


class TestLoadConfig:
    def test_none_returns_defaults(self):
        assert load_config(None) == VaultConfig()

    def test_missing_file_falls_back(self, tmp_path):
        assert load_config(str(tmp_path / "nope.json")) == VaultConfig()

    def test_invalid_json_falls_back(self, tmp_path):
        p = tmp_path / "bad.json"
        p.write_text("{not json", encoding="utf-8")
        assert load_config(str(p)) == VaultConfig()

    def test_unknown_key_falls_back(self, tmp_path):
        p = tmp_path / "cfg.json"
        p.write_text(json.dumps({"store": {"colour": "red"}}), encoding="utf-8")
        assert load_config(str(p)) == VaultConfig()

    def test_partial_file(self, tmp_path):
        p = tmp_path / "cfg.json"
        p.write_text(json.dumps({
            "access": {"conceal_existence": True},
            "migration": {"legacy_db_path": "app.db", "sources": ["ideas"]},
        }), encoding="utf-8")
        cfg = load_config(str(p))
        assert cfg.access.conceal_existence is True
        assert cfg.migration.legacy_db_path == "app.db"
        assert cfg.migration.sources == ["ideas"]
        assert cfg.store == VaultConfig().store

    def test_strict_raises(self, tmp_path):
        p = tmp_path / "cfg.json"
        p.write_text(json.dumps({"query": {"max_limit": 0}}), encoding="utf-8")
        assert load_config(str(p)).query.max_limit == 0
        with pytest.raises(ValidationError, match="query.max_limit"):
            load_config(str(p), strict=True)
