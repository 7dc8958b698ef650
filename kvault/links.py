"""
Link Graph — Directed Typed Edges Between Vault Items

Only the forward direction of each relationship is stored (one row per
edge). "What does X reference" and "what references X" are both answered
from the same table at query time.

Endpoint existence is checked when a link is created, inside the same
transaction as the insert. Deleting an item prunes its links (see
VaultStore.delete_item), so the graph does not keep dangling edges.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Dict, List

from kvault.store import VaultStore
from kvault.types import (
    DEFAULT_LINK_TYPE,
    NotFound,
    ValidationError,
    VaultLink,
)

logger = logging.getLogger(__name__)


def _row_to_link(row: sqlite3.Row) -> VaultLink:
    return VaultLink(
        id=row["id"], source_id=row["source_id"], target_id=row["target_id"],
        link_type=row["link_type"], created_at=row["created_at"],
    )


class LinkGraph:
    """Link persistence sharing the VaultStore connection and lock."""

    def __init__(self, store: VaultStore):
        self._store = store

    def create_link(
        self,
        source_id: str,
        target_id: str,
        link_type: str = DEFAULT_LINK_TYPE,
    ) -> VaultLink:
        """Create a link. Raises NotFound if either endpoint is missing."""
        link_type = DEFAULT_LINK_TYPE if link_type is None else link_type
        if not isinstance(link_type, str) or not link_type.strip():
            raise ValidationError("link_type must be a non-empty string")
        link = VaultLink(
            source_id=source_id, target_id=target_id,
            link_type=link_type.strip(),
        )
        with self._store.transaction() as conn:
            for endpoint in (source_id, target_id):
                row = conn.execute(
                    "SELECT 1 FROM vault_items WHERE id=?", (endpoint,)
                ).fetchone()
                if row is None:
                    raise NotFound(f"Link endpoint not found: {endpoint}")
            conn.execute(
                """INSERT INTO vault_links
                   (id, source_id, target_id, link_type, created_at)
                   VALUES (?,?,?,?,?)""",
                (link.id, link.source_id, link.target_id,
                 link.link_type, link.created_at),
            )
            self._store._log_event("link", source_id, None, {
                "link_id": link.id, "target_id": target_id,
                "link_type": link.link_type,
            })
        return link

    def get_link(self, link_id: str) -> VaultLink:
        """Read one link. Raises NotFound."""
        with self._store.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM vault_links WHERE id=?", (link_id,)
            ).fetchone()
        if row is None:
            raise NotFound(f"Link not found: {link_id}")
        return _row_to_link(row)

    def list_links_for(self, item_id: str) -> List[VaultLink]:
        """Every link where the item is source or target, oldest first."""
        with self._store.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM vault_links WHERE source_id=? OR target_id=? "
                "ORDER BY created_at ASC, rowid ASC",
                (item_id, item_id),
            ).fetchall()
        return [_row_to_link(r) for r in rows]

    def links_by_direction(self, item_id: str) -> Dict[str, List[VaultLink]]:
        """Split an item's links into outgoing and incoming lists."""
        links = self.list_links_for(item_id)
        return {
            "outgoing": [ln for ln in links if ln.source_id == item_id],
            "incoming": [ln for ln in links if ln.target_id == item_id],
        }

    def delete_link(self, link_id: str) -> None:
        """Delete one link. Raises NotFound."""
        with self._store.transaction() as conn:
            cur = conn.execute("DELETE FROM vault_links WHERE id=?", (link_id,))
            if cur.rowcount == 0:
                raise NotFound(f"Link not found: {link_id}")
            self._store._log_event("unlink", None, None, {"link_id": link_id})

    def prune_links_for(self, item_id: str) -> int:
        """Remove every link touching *item_id*. Returns the count removed."""
        with self._store.transaction() as conn:
            pruned = conn.execute(
                "DELETE FROM vault_links WHERE source_id=? OR target_id=?",
                (item_id, item_id),
            ).rowcount
            if pruned:
                self._store._log_event("prune_links", item_id, None,
                                       {"links_pruned": pruned})
        return pruned

    def count_links(self) -> int:
        """Total number of stored edges."""
        with self._store.transaction() as conn:
            row = conn.execute("SELECT COUNT(*) as cnt FROM vault_links").fetchone()
        return row["cnt"]
