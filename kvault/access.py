"""
Vault Access — Caller Identity and Ownership Checks

The only surface the CLI and MCP server talk to. Every operation takes
the caller id first. Id-addressed operations resolve the item, then
check ownership:

    missing id            -> NotFound
    foreign id            -> Forbidden   (NotFound when conceal_existence)
    empty caller          -> Unauthenticated

Links are authorized through their source item: creating or deleting a
link requires owning the source. The target of a new link must exist
but may belong to anyone.
"""

from __future__ import annotations

import logging
import os
from dataclasses import replace
from typing import Any, Dict, List, Optional

from kvault.config import AccessConfig, VaultConfig
from kvault.legacy import SqliteLegacyReader, default_sources
from kvault.links import LinkGraph
from kvault.migrate import MigrationEngine, MigrationResult
from kvault.query import VaultQuery
from kvault.store import VaultStore
from kvault.types import (
    DEFAULT_LINK_TYPE,
    Forbidden,
    ItemFilter,
    NotFound,
    Unauthenticated,
    ValidationError,
    VaultItem,
    VaultLink,
)

logger = logging.getLogger(__name__)


class VaultAccess:
    """Authorizes callers and delegates to store, graph, query, and migration."""

    def __init__(
        self,
        store: VaultStore,
        graph: Optional[LinkGraph] = None,
        query: Optional[VaultQuery] = None,
        migration: Optional[MigrationEngine] = None,
        config: Optional[AccessConfig] = None,
        max_limit: int = 1000,
    ):
        self.store = store
        self.graph = graph or LinkGraph(store)
        self.query = query or VaultQuery(store)
        self.migration = migration
        self.config = config or AccessConfig()
        self.max_limit = max_limit
        self._legacy_reader: Optional[SqliteLegacyReader] = None

    @classmethod
    def open(
        cls,
        config: Optional[VaultConfig] = None,
        db_path: Optional[str] = None,
        legacy_db_path: Optional[str] = None,
    ) -> VaultAccess:
        """Wire a full access layer from configuration.

        Explicit ``db_path``/``legacy_db_path`` override the config values.
        Migration is available only when a legacy database is known.
        """
        cfg = config or VaultConfig()
        legacy_path = legacy_db_path or cfg.migration.legacy_db_path
        if legacy_path and not os.path.exists(legacy_path):
            raise ValidationError(f"Legacy database not found: {legacy_path}")

        store = VaultStore(db_path or cfg.store.db_path, wal_mode=cfg.store.wal_mode)
        reader = None
        migration = None
        if legacy_path:
            reader = SqliteLegacyReader(legacy_path, cfg.migration.owner_column)
            migration = MigrationEngine(store, default_sources(
                reader, cfg.migration.sources,
                title_preview_chars=cfg.migration.title_preview_chars,
            ))
        access = cls(
            store,
            query=VaultQuery(store, default_limit=cfg.query.default_limit),
            migration=migration,
            config=cfg.access,
            max_limit=cfg.query.max_limit,
        )
        access._legacy_reader = reader
        return access

    def close(self) -> None:
        if self._legacy_reader is not None:
            self._legacy_reader.close()
        self.store.close()

    # -- Internal checks ---------------------------------------------------

    def _require_caller(self, caller_id: Optional[str]) -> str:
        if caller_id is None or not str(caller_id).strip():
            raise Unauthenticated("A caller identity is required")
        return str(caller_id)

    def _authorize(self, caller_id: str, item_id: str) -> VaultItem:
        """Return the item when *caller_id* owns it; raise otherwise."""
        item = self.store.find_item(item_id)
        if item is None:
            raise NotFound(f"Item not found: {item_id}")
        if item.created_by != caller_id:
            logger.info("Denied %s access to %s", caller_id, item_id)
            if self.config.conceal_existence:
                raise NotFound(f"Item not found: {item_id}")
            raise Forbidden(f"Item {item_id} belongs to another user")
        return item

    def _check_caps(self, title: Optional[str], content: Optional[str]) -> None:
        if title is not None and isinstance(title, str) \
                and len(title) > self.config.max_title_length:
            raise ValidationError(
                f"Title exceeds {self.config.max_title_length} characters"
            )
        if content is not None and isinstance(content, str):
            size = len(content.encode("utf-8"))
            if size > self.config.max_content_bytes:
                raise ValidationError(
                    f"Content is {size} bytes, limit is "
                    f"{self.config.max_content_bytes}"
                )

    def _clamp(self, limit: Optional[int]) -> Optional[int]:
        if limit is None:
            return None
        if limit < 1:
            raise ValidationError(f"limit must be positive, got {limit}")
        return min(limit, self.max_limit)

    # -- Schema ------------------------------------------------------------

    def initialize(self, caller_id: str) -> Dict[str, Any]:
        """Ensure the schema exists. Safe to call repeatedly."""
        self._require_caller(caller_id)
        self.store.initialize()
        return {"db_path": self.store.db_path, "initialized": True}

    # -- Items -------------------------------------------------------------

    def list_items(
        self, caller_id: str, filters: Optional[ItemFilter] = None,
    ) -> List[VaultItem]:
        owner = self._require_caller(caller_id)
        f = filters or ItemFilter()
        return self.query.filter(owner, replace(f, limit=self._clamp(f.limit)))

    def get_item(self, caller_id: str, item_id: str) -> VaultItem:
        owner = self._require_caller(caller_id)
        return self._authorize(owner, item_id)

    def create_item(
        self,
        caller_id: str,
        type: str,
        title: str,
        content: str = "",
        para_category: Optional[str] = None,
        folder_path: Optional[str] = None,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        linked_items: Optional[List[str]] = None,
    ) -> VaultItem:
        owner = self._require_caller(caller_id)
        self._check_caps(title, content)
        return self.store.create_item(
            owner, type, title, content=content or "",
            para_category=para_category, folder_path=folder_path,
            tags=tags, metadata=metadata, linked_items=linked_items,
        )

    def update_item(
        self, caller_id: str, item_id: str, patch: Dict[str, Any],
    ) -> VaultItem:
        owner = self._require_caller(caller_id)
        self._authorize(owner, item_id)
        if isinstance(patch, dict):
            self._check_caps(patch.get("title"), patch.get("content"))
        return self.store.update_item(item_id, patch)

    def delete_item(self, caller_id: str, item_id: str) -> int:
        """Delete an owned item. Returns the number of links pruned."""
        owner = self._require_caller(caller_id)
        self._authorize(owner, item_id)
        return self.store.delete_item(item_id)

    # -- Links -------------------------------------------------------------

    def create_link(
        self,
        caller_id: str,
        source_id: str,
        target_id: str,
        link_type: str = DEFAULT_LINK_TYPE,
    ) -> VaultLink:
        owner = self._require_caller(caller_id)
        self._authorize(owner, source_id)
        if not self.store.exists(target_id):
            raise NotFound(f"Item not found: {target_id}")
        return self.graph.create_link(source_id, target_id, link_type)

    def list_links(self, caller_id: str, item_id: str) -> List[VaultLink]:
        owner = self._require_caller(caller_id)
        self._authorize(owner, item_id)
        return self.graph.list_links_for(item_id)

    def links_by_direction(
        self, caller_id: str, item_id: str,
    ) -> Dict[str, List[VaultLink]]:
        owner = self._require_caller(caller_id)
        self._authorize(owner, item_id)
        return self.graph.links_by_direction(item_id)

    def delete_link(self, caller_id: str, link_id: str) -> None:
        owner = self._require_caller(caller_id)
        link = self.graph.get_link(link_id)
        self._authorize(owner, link.source_id)
        self.graph.delete_link(link_id)

    def auto_link(self, caller_id: str, item_id: str) -> List[VaultLink]:
        """Link an item to every owned item its ``[[Title]]`` references name."""
        owner = self._require_caller(caller_id)
        item = self._authorize(owner, item_id)
        existing = {
            ln.target_id for ln in self.graph.list_links_for(item_id)
            if ln.source_id == item_id and ln.link_type == "wikilink"
        }
        created: List[VaultLink] = []
        for target in self.query.wikilink_targets(owner, item):
            if target.id in existing:
                continue
            created.append(self.graph.create_link(item_id, target.id, "wikilink"))
        return created

    # -- Query -------------------------------------------------------------

    def search(
        self, caller_id: str, query_text: str, limit: Optional[int] = None,
    ) -> List[VaultItem]:
        owner = self._require_caller(caller_id)
        return self.query.search(owner, query_text, self._clamp(limit))

    def stats(self, caller_id: str) -> Dict[str, Any]:
        owner = self._require_caller(caller_id)
        return self.query.stats(owner)

    def summary(self, caller_id: str) -> Dict[str, Any]:
        owner = self._require_caller(caller_id)
        return self.query.summary(owner)

    def related_items(
        self, caller_id: str, item_id: str, limit: int = 10,
    ) -> List[VaultItem]:
        owner = self._require_caller(caller_id)
        self._authorize(owner, item_id)
        return self.query.related_items(owner, item_id, self._clamp(limit))

    # -- Migration ---------------------------------------------------------

    def migrate(self, caller_id: str, dry_run: bool = False) -> MigrationResult:
        owner = self._require_caller(caller_id)
        if self.migration is None:
            raise ValidationError("No legacy database configured for migration")
        return self.migration.migrate(owner, dry_run=dry_run)
