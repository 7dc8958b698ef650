"""
Vault Query — Filtering, Search, Statistics, and Discovery

Read-side operations over the unified store. Everything here is scoped
to one owner; ownership of an addressed item is checked by the access
layer before these functions are reached.

Discovery helpers:
    related_items          — rank by shared tags, then recency
    summary                — dashboard view (recent items, top tags, PARA)
    suggest_para_category  — keyword heuristic for uncategorized items
    wikilink_targets       — resolve [[Title]] references to items
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from typing import Any, Dict, List, Optional

from kvault.store import VaultStore
from kvault.types import (
    VALID_PARA,
    VALID_TYPES,
    ItemFilter,
    ValidationError,
    VaultItem,
)

logger = logging.getLogger(__name__)

# Checked in this order; the first bucket with a hit wins.
PARA_KEYWORDS = (
    ("project", ("goal", "deadline", "project", "complete", "finish",
                 "deliver", "milestone")),
    ("area", ("responsibility", "maintain", "ongoing", "continuous",
              "manage", "track")),
    ("archive", ("completed", "archived", "finished", "done", "closed")),
)

SUMMARY_RECENT = 5
SUMMARY_TOP_TAGS = 10

_WIKILINK_RE = re.compile(r"\[\[([^\[\]]+?)\]\]")


def suggest_para_category(title: str, content: str = "") -> str:
    """Guess a PARA bucket from keywords in title and content."""
    text = f"{title or ''} {content or ''}".lower()
    for bucket, keywords in PARA_KEYWORDS:
        if any(kw in text for kw in keywords):
            return bucket
    return "resource"


def extract_wikilinks(text: str) -> List[str]:
    """Return distinct ``[[Title]]`` references in order of appearance."""
    seen: List[str] = []
    for m in _WIKILINK_RE.finditer(text or ""):
        ref = m.group(1).strip()
        if ref and ref not in seen:
            seen.append(ref)
    return seen


class VaultQuery:
    """Owner-scoped read operations on a VaultStore."""

    def __init__(self, store: VaultStore, default_limit: int = 100):
        self._store = store
        self.default_limit = default_limit

    # -- Filtering and search ------------------------------------------------

    def filter(
        self, owner_id: str, filters: Optional[ItemFilter] = None,
    ) -> List[VaultItem]:
        """List items matching every set filter field."""
        return self._store.list_items(owner_id, filters)

    def search(
        self, owner_id: str, query_text: str, limit: Optional[int] = None,
    ) -> List[VaultItem]:
        """Case-insensitive substring search over title and content."""
        if not isinstance(query_text, str) or not query_text.strip():
            raise ValidationError("Search query must not be empty")
        f = ItemFilter(
            search=query_text.strip(),
            limit=limit if limit is not None else self.default_limit,
        )
        return self._store.list_items(owner_id, f)

    # -- Statistics --------------------------------------------------------

    def stats(self, owner_id: str) -> Dict[str, Any]:
        """
        Totals by type and by PARA bucket.

        Every type and every bucket is present (zero when empty). Items
        without a PARA category count toward ``total`` only.
        """
        by_type = {t: 0 for t in VALID_TYPES}
        for key, cnt in self._store.count_by(owner_id, "type").items():
            by_type[key] = cnt
        by_para = {p: 0 for p in VALID_PARA}
        for key, cnt in self._store.count_by(owner_id, "para_category").items():
            if key is not None:
                by_para[key] = cnt
        return {
            "total": self._store.count_items(owner_id),
            "by_type": by_type,
            "by_para": by_para,
        }

    # -- Discovery ---------------------------------------------------------

    def related_items(
        self, owner_id: str, item_id: str, limit: int = 10,
    ) -> List[VaultItem]:
        """Other items of the owner sharing tags with *item_id*, best first."""
        item = self._store.get_item(item_id)
        if not item.tags:
            return []
        wanted = set(item.tags)
        # list_items is already most-recent first; a stable sort keeps that
        # order among equal scores.
        candidates = [
            (len(wanted.intersection(other.tags)), other)
            for other in self._store.list_items(
                owner_id, ItemFilter(tags_any=item.tags),
            )
            if other.id != item.id
        ]
        candidates.sort(key=lambda pair: pair[0], reverse=True)
        return [other for _, other in candidates[:limit]]

    def summary(self, owner_id: str) -> Dict[str, Any]:
        """Dashboard view: totals, recent items, top tags, PARA distribution."""
        stats = self.stats(owner_id)
        items = self._store.list_items(owner_id)
        tag_counts: Counter = Counter()
        for it in items:
            tag_counts.update(it.tags)
        return {
            "total": stats["total"],
            "recent": [it.format_catalog_entry() for it in items[:SUMMARY_RECENT]],
            "top_tags": [t for t, _ in tag_counts.most_common(SUMMARY_TOP_TAGS)],
            "para_distribution": stats["by_para"],
        }

    def suggest_para_category(self, title: str, content: str = "") -> str:
        return suggest_para_category(title, content)

    def wikilink_targets(self, owner_id: str, item: VaultItem) -> List[VaultItem]:
        """Resolve ``[[Title]]`` references in *item* to the owner's items.

        Titles match case-insensitively; when several items share a title
        the most recently updated wins. Self-references are ignored.
        """
        refs = extract_wikilinks(item.content)
        if not refs:
            return []
        by_title: Dict[str, VaultItem] = {}
        for other in self._store.list_items(owner_id):
            by_title.setdefault(other.title.strip().casefold(), other)
        targets: List[VaultItem] = []
        for ref in refs:
            target = by_title.get(ref.casefold())
            if target is None:
                logger.debug("Unresolved wikilink [[%s]] in %s", ref, item.id)
                continue
            if target.id != item.id and target not in targets:
                targets.append(target)
        return targets
