"""
kvault — Knowledge Vault unification engine.

One polymorphic item model for notes, thoughts, ideas, articles, quotes,
words, sticky notes, tasks, and pomodoro sessions; a typed link graph
between them; idempotent migration from the legacy per-feature tables;
and owner-scoped filtering, search, and statistics. SQLite + WAL.
"""

__version__ = "0.1.0"

from kvault.types import (
    VaultItem,
    VaultLink,
    ItemFilter,
    VaultError,
    ValidationError,
    NotFound,
    Forbidden,
    Unauthenticated,
    AlreadyExists,
)
from kvault.store import VaultStore, SCHEMA_VERSION
from kvault.links import LinkGraph
from kvault.migrate import MigrationEngine, MigrationResult
from kvault.query import VaultQuery
from kvault.access import VaultAccess
from kvault.config import VaultConfig

__all__ = [
    "__version__",
    "VaultItem",
    "VaultLink",
    "ItemFilter",
    "VaultError",
    "ValidationError",
    "NotFound",
    "Forbidden",
    "Unauthenticated",
    "AlreadyExists",
    "VaultStore",
    "LinkGraph",
    "MigrationEngine",
    "MigrationResult",
    "VaultQuery",
    "VaultAccess",
    "VaultConfig",
    "SCHEMA_VERSION",
]
