"""
kvault MCP Tools — vault operations exposed over MCP.

Thin wrappers around VaultAccess. The server acts for one owner, fixed
at startup. Every tool runs the same middleware, in this order:

    ① Rate limiter  — read/write budget for the owner
    ② Guard         — item payload cap and per-minute byte budget
    ③ Access layer  — existence, ownership, business logic
    ④ Audit trail   — always, including on failure (finally block)

Tools never raise. Failures come back as
``{"status": "error", "kind": <error kind>, "message": ...}``.

Tools:
    ITEMS:     vault_create, vault_get, vault_update, vault_delete, vault_list
    LINKS:     vault_link, vault_links, vault_unlink, vault_autolink
    QUERY:     vault_search, vault_stats, vault_related, vault_summary
    ADMIN:     vault_initialize, vault_migrate
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Optional

from kvault.access import VaultAccess
from kvault.mcp.audit import (
    AuditLogger,
    content_detail,
    error_detail,
    item_detail,
    link_detail,
    migration_detail,
)
from kvault.mcp.guard import GuardError, VaultGuard
from kvault.mcp.rate_limiter import RateLimitExceeded
from kvault.types import ItemFilter, ValidationError, VaultError

logger = logging.getLogger(__name__)


def _parse_json_arg(value: Optional[str], name: str, default: Any) -> Any:
    """Decode an optional JSON-encoded tool argument."""
    if value is None or value == "":
        return default
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"{name} is not valid JSON: {exc}") from exc


def _split_tags(tags: Optional[str]) -> Optional[List[str]]:
    if tags is None:
        return None
    return [t.strip() for t in tags.split(",") if t.strip()]


def register_vault_tools(
    mcp,
    access: VaultAccess,
    owner: str,
    *,
    guard: Optional[VaultGuard] = None,
    rate_limiter=None,
    audit: Optional[AuditLogger] = None,
) -> None:
    """
    Register the vault tools on a FastMCP server instance.

    Args:
        mcp: FastMCP server instance (anything with a ``tool()`` decorator).
        access: Access layer wired to the vault store.
        owner: Caller identity every tool acts for.
        guard: VaultGuard for payload caps.
        rate_limiter: RateLimiter for throttling, or None to disable.
        audit: AuditLogger for the JSONL trail.
    """
    if guard is None:
        guard = VaultGuard()
    if audit is None:
        audit = AuditLogger()
    audit.db = guard.audit_label(access.store.db_path)

    def _invoke(
        tool: str,
        fn: Callable[[Dict[str, Any]], Dict[str, Any]],
    ) -> Dict[str, Any]:
        """Run *fn* under the middleware chain. *fn* fills the audit detail."""
        record = audit.start(tool, owner)
        try:
            if rate_limiter is not None:
                rate_limiter.acquire(tool, owner)
            return {"status": "ok", **fn(record.detail)}
        except RateLimitExceeded as e:
            record.outcome = "rate_limited"
            return {"status": "rate_limited",
                    "retry_after_ms": e.retry_after_ms, "message": str(e)}
        except GuardError as e:
            record.outcome = "rejected"
            return {"status": "error", "kind": "rejected", "message": str(e)}
        except VaultError as e:
            record.outcome = "error"
            record.detail.update(error_detail(e))
            return {"status": "error", "kind": e.kind, "message": str(e)}
        except Exception as e:
            record.outcome = "error"
            record.detail.update(error_detail(e))
            logger.exception("Tool %s failed", tool)
            return {"status": "error", "kind": "internal",
                    "message": f"{tool} failed: {e}"}
        finally:
            audit.finish(record)

    # =====================================================================
    # ADMIN
    # =====================================================================

    @mcp.tool()
    def vault_initialize() -> Dict[str, Any]:
        """Create the vault schema if needed. Safe to call repeatedly."""
        def run(detail):
            info = access.initialize(owner)
            return {"initialized": info["initialized"]}
        return _invoke("vault_initialize", run)

    @mcp.tool()
    def vault_migrate(dry_run: bool = False) -> Dict[str, Any]:
        """Import the owner's legacy records (notes, ideas, tasks, ...) into the vault.

        Idempotent: records already migrated are skipped. Per-record
        failures are reported in ``errors`` and do not stop the run.

        Args:
            dry_run: Map and count without writing.
        """
        def run(detail):
            result = access.migrate(owner, dry_run=dry_run)
            detail["migration"] = migration_detail(result)
            return result.to_dict()
        return _invoke("vault_migrate", run)

    # =====================================================================
    # ITEMS
    # =====================================================================

    @mcp.tool()
    def vault_create(
        type: str,
        title: str,
        content: str = "",
        para_category: Optional[str] = None,
        folder_path: Optional[str] = None,
        tags: Optional[str] = None,
        metadata: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a vault item.

        Args:
            type: note|thought|thought_session|idea|article|research|quote|
                  word|sticky_note|task|pomodoro
            title: Non-empty title.
            content: Body text (markdown).
            para_category: project|area|resource|archive (optional).
            folder_path: Slash-delimited folder (optional).
            tags: Comma-separated tags.
            metadata: JSON object with type-specific fields.
        """
        def run(detail):
            meta = _parse_json_arg(metadata, "metadata", {})
            guard.admit_write(owner, title, content,
                              meta if isinstance(meta, dict) else None)
            item = access.create_item(
                owner, type, title, content=content,
                para_category=para_category, folder_path=folder_path,
                tags=_split_tags(tags), metadata=meta,
            )
            detail["item"] = item_detail(item)
            detail["content"] = content_detail(content)
            return {"item": item.to_dict()}
        return _invoke("vault_create", run)

    @mcp.tool()
    def vault_get(item_id: str) -> Dict[str, Any]:
        """Read one vault item by id."""
        def run(detail):
            detail["item"] = {"id": item_id}
            item = access.get_item(owner, item_id)
            detail["item"] = item_detail(item)
            return {"item": item.to_dict()}
        return _invoke("vault_get", run)

    @mcp.tool()
    def vault_update(item_id: str, patch: str) -> Dict[str, Any]:
        """Update mutable fields of an item.

        Args:
            item_id: Item to update.
            patch: JSON object with any of title, content, para_category,
                   folder_path, tags, metadata, linked_items.
        """
        def run(detail):
            detail["item"] = {"id": item_id}
            changes = _parse_json_arg(patch, "patch", {})
            if isinstance(changes, dict):
                detail["fields"] = sorted(changes)
                meta = changes.get("metadata")
                guard.admit_write(owner, changes.get("title"), changes.get("content"),
                                  meta if isinstance(meta, dict) else None)
                if "content" in changes:
                    detail["content"] = content_detail(changes.get("content"))
            item = access.update_item(owner, item_id, changes)
            detail["item"] = item_detail(item)
            return {"item": item.to_dict()}
        return _invoke("vault_update", run)

    @mcp.tool()
    def vault_delete(item_id: str) -> Dict[str, Any]:
        """Delete an item and every link touching it."""
        def run(detail):
            detail["item"] = {"id": item_id}
            pruned = access.delete_item(owner, item_id)
            detail["links_pruned"] = pruned
            return {"deleted": item_id, "links_pruned": pruned}
        return _invoke("vault_delete", run)

    @mcp.tool()
    def vault_list(
        type: Optional[str] = None,
        para_category: Optional[str] = None,
        folder_path: Optional[str] = None,
        tags: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 50,
    ) -> Dict[str, Any]:
        """List vault items, most recently updated first.

        Args:
            type: Filter by item type.
            para_category: Filter by PARA bucket.
            folder_path: Exact folder match.
            tags: Comma-separated; items with any of these tags.
            search: Substring in title or content.
            limit: Max items (default 50).
        """
        def run(detail):
            f = ItemFilter.from_dict({
                "type": type, "para_category": para_category,
                "folder_path": folder_path, "tags": tags,
                "search": search, "limit": limit,
            })
            items = access.list_items(owner, f)
            detail["count"] = len(items)
            return {"count": len(items),
                    "items": [it.format_catalog_entry() for it in items]}
        return _invoke("vault_list", run)

    # =====================================================================
    # LINKS
    # =====================================================================

    @mcp.tool()
    def vault_link(
        source_id: str, target_id: str, link_type: str = "related",
    ) -> Dict[str, Any]:
        """Create a directed link from an owned item to another item."""
        def run(detail):
            link = access.create_link(owner, source_id, target_id, link_type)
            detail["link"] = link_detail(link)
            return {"link": link.to_dict()}
        return _invoke("vault_link", run)

    @mcp.tool()
    def vault_links(item_id: str) -> Dict[str, Any]:
        """Links where the item is source or target, split by direction."""
        def run(detail):
            detail["item"] = {"id": item_id}
            split = access.links_by_direction(owner, item_id)
            outgoing = [ln.to_dict() for ln in split["outgoing"]]
            incoming = [ln.to_dict() for ln in split["incoming"]]
            detail["count"] = len(outgoing) + len(incoming)
            return {"outgoing": outgoing, "incoming": incoming}
        return _invoke("vault_links", run)

    @mcp.tool()
    def vault_unlink(link_id: str) -> Dict[str, Any]:
        """Delete a link whose source item the owner holds."""
        def run(detail):
            detail["link"] = {"id": link_id}
            access.delete_link(owner, link_id)
            return {"deleted": link_id}
        return _invoke("vault_unlink", run)

    @mcp.tool()
    def vault_autolink(item_id: str) -> Dict[str, Any]:
        """Link an item to the items its [[Title]] references name."""
        def run(detail):
            detail["item"] = {"id": item_id}
            links = access.auto_link(owner, item_id)
            detail["links"] = [link_detail(ln) for ln in links]
            return {"created": [ln.to_dict() for ln in links]}
        return _invoke("vault_autolink", run)

    # =====================================================================
    # QUERY
    # =====================================================================

    @mcp.tool()
    def vault_search(query: str, limit: int = 20) -> Dict[str, Any]:
        """Case-insensitive substring search across every item type."""
        def run(detail):
            detail["query"] = content_detail(query)
            items = access.search(owner, query, limit)
            detail["count"] = len(items)
            return {"count": len(items),
                    "items": [it.format_catalog_entry() for it in items]}
        return _invoke("vault_search", run)

    @mcp.tool()
    def vault_stats() -> Dict[str, Any]:
        """Item totals by type and by PARA bucket."""
        def run(detail):
            stats = access.stats(owner)
            detail["total"] = stats["total"]
            return stats
        return _invoke("vault_stats", run)

    @mcp.tool()
    def vault_related(item_id: str, limit: int = 10) -> Dict[str, Any]:
        """Other items sharing tags with the given item, best match first."""
        def run(detail):
            detail["item"] = {"id": item_id}
            items = access.related_items(owner, item_id, limit)
            detail["count"] = len(items)
            return {"count": len(items),
                    "items": [it.format_catalog_entry() for it in items]}
        return _invoke("vault_related", run)

    @mcp.tool()
    def vault_summary() -> Dict[str, Any]:
        """Dashboard summary: totals, recent items, top tags, PARA distribution."""
        def run(detail):
            summary = access.summary(owner)
            detail["total"] = summary["total"]
            return summary
        return _invoke("vault_summary", run)
