"""
Vault Configuration

Configuration dataclasses for kvault: store, access policy, migration,
and query limits.  Includes load_config() for reading a JSON config file
with silent fallback to compiled defaults.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from kvault.types import ValidationError


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and not isinstance(value, typ):
        errors.append(f"{name}: expected {typ.__name__}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


# Legacy tables the migration engine knows how to map, in run order.
DEFAULT_LEGACY_SOURCES: List[str] = [
    "obsidian_notes", "thoughts", "thought_sessions", "ideas", "articles",
    "quotes", "words", "sticky_notes", "tasks", "chronos_pomodoro_sessions",
]


@dataclass
class StoreConfig:
    """SQLite store configuration."""
    db_path: str = ".vault/vault.db"
    wal_mode: bool = True

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        if not self.db_path:
            errors.append("store.db_path: must not be empty")
        return errors


@dataclass
class AccessConfig:
    """Access control policy and per-call caps."""
    # When True, foreign items report NotFound instead of Forbidden.
    conceal_existence: bool = False
    max_title_length: int = 500
    max_content_bytes: int = 1_048_576

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "access.max_title_length",
                     self.max_title_length, 1, 10000, int)
        _check_range(errors, "access.max_content_bytes",
                     self.max_content_bytes, 1, 64 * 1_048_576, int)
        return errors


@dataclass
class MigrationConfig:
    """Legacy migration configuration."""
    legacy_db_path: Optional[str] = None
    sources: List[str] = field(default_factory=lambda: list(DEFAULT_LEGACY_SOURCES))
    owner_column: str = "created_by"
    title_preview_chars: int = 100

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "migration.title_preview_chars",
                     self.title_preview_chars, 10, 1000, int)
        unknown = [s for s in self.sources if s not in DEFAULT_LEGACY_SOURCES]
        if unknown:
            errors.append(f"migration.sources: unknown source(s) {unknown}")
        if not self.owner_column.isidentifier():
            errors.append(
                f"migration.owner_column: {self.owner_column!r} is not a column name"
            )
        return errors


@dataclass
class QueryConfig:
    """Read-side limits."""
    default_limit: int = 100
    max_limit: int = 1000
    related_limit: int = 10

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "query.max_limit", self.max_limit, 1, 100000, int)
        _check_range(errors, "query.default_limit",
                     self.default_limit, 1, self.max_limit, int)
        _check_range(errors, "query.related_limit", self.related_limit, 1, 100, int)
        return errors


@dataclass
class VaultConfig:
    """Top-level kvault configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    access: AccessConfig = field(default_factory=AccessConfig)
    migration: MigrationConfig = field(default_factory=MigrationConfig)
    query: QueryConfig = field(default_factory=QueryConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> VaultConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "store" in d:
            kwargs["store"] = StoreConfig(**d["store"])
        if "access" in d:
            kwargs["access"] = AccessConfig(**d["access"])
        if "migration" in d:
            kwargs["migration"] = MigrationConfig(**d["migration"])
        if "query" in d:
            kwargs["query"] = QueryConfig(**d["query"])
        return cls(**kwargs)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.access.validate())
        errors.extend(self.migration.validate())
        errors.extend(self.query.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> VaultConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ValidationError on invalid config values.

    Returns:
        VaultConfig with values from file or defaults.

    Raises:
        ValidationError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = VaultConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = VaultConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError):
            cfg = VaultConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg
