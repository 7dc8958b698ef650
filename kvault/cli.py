"""
kvault CLI — Knowledge Vault Commands

Commands:
    kvault init    [PATH]                        — create the vault database
    kvault list    [--type T] [--para P] [--tags] — list items → stdout
    kvault show    <id>                          — display one item
    kvault create  <type> <title> [--content C]  — create an item
    kvault update  <id> [--title ...]            — patch mutable fields
    kvault delete  <id>                          — delete item + its links
    kvault link    <source> <target> [--type T]  — create a directed link
    kvault links   <id>                          — outgoing/incoming links
    kvault unlink  <link-id>                     — delete a link
    kvault autolink <id>                         — link [[Title]] references
    kvault search  "text" [-k N]                 — substring search
    kvault related <id>                          — items sharing tags
    kvault stats                                 — counts by type and PARA
    kvault migrate [--dry-run]                   — import legacy records
    kvault serve                                 — start MCP server

Environment variables:
    KVAULT_DB         Vault database path (default: .vault/vault.db)
    KVAULT_OWNER      Caller identity for every command
    KVAULT_LEGACY_DB  Legacy application database (for migrate)
    KVAULT_CONFIG     JSON config file

Precedence:
    CLI --flag  >  KVAULT_* env var  >  config file  >  compiled default

Exit codes:
    0  Success (including idempotent no-op)
    1  Operational error (validation, not found, forbidden, no owner)
    2  Internal failure (unexpected exception, I/O error)
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from kvault.types import VALID_PARA, VALID_TYPES, ItemFilter, VaultError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def _load_config(args: argparse.Namespace):
    """Config file from --config > KVAULT_CONFIG, else compiled defaults."""
    from kvault.config import load_config
    path = getattr(args, "config", None) or os.environ.get("KVAULT_CONFIG")
    return load_config(path)


def _resolve_db(args: argparse.Namespace, config=None) -> str:
    """Resolve database path: --db > KVAULT_DB > config > .vault/vault.db."""
    if getattr(args, "db", None):
        return args.db
    env = os.environ.get("KVAULT_DB")
    if env:
        return env
    return (config or _load_config(args)).store.db_path


def _resolve_owner(args: argparse.Namespace) -> Optional[str]:
    """Resolve caller identity: --owner > KVAULT_OWNER."""
    return getattr(args, "owner", None) or os.environ.get("KVAULT_OWNER")


def _open_access(args: argparse.Namespace):
    """Wire the access layer for one command. Caller closes it."""
    from kvault.access import VaultAccess
    config = _load_config(args)
    legacy = getattr(args, "legacy_db", None) or os.environ.get("KVAULT_LEGACY_DB")
    return VaultAccess.open(
        config, db_path=_resolve_db(args, config), legacy_db_path=legacy,
    )


# ---------------------------------------------------------------------------
# Output helpers (respect --quiet / --json)
# ---------------------------------------------------------------------------

_quiet = False


def _info(msg: str) -> None:
    """Print progress to stderr (suppressed by --quiet)."""
    if not _quiet:
        print(msg, file=sys.stderr)


def _warn(msg: str) -> None:
    """Print warning to stderr (always visible)."""
    print(msg, file=sys.stderr)


def _emit_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def _print_catalog(items) -> None:
    for it in items:
        para = it.para_category or "-"
        tags = f"  [{', '.join(it.tags)}]" if it.tags else ""
        print(f"{it.id}  {it.type:15s} {para:8s} {it.title}{tags}")


def _read_content(value: Optional[str]) -> Optional[str]:
    """'-' reads the content from stdin."""
    if value == "-":
        return sys.stdin.read()
    return value


def _parse_metadata(value: Optional[str]) -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        _warn(f"Invalid --metadata JSON: {e}")
        sys.exit(1)


def _split_tags(value: Optional[str]):
    if value is None:
        return None
    return [t.strip() for t in value.split(",") if t.strip()]


# ===========================================================================
# Command: init
# ===========================================================================


def cmd_init(args: argparse.Namespace) -> None:
    """Create (or confirm) a vault workspace directory."""
    from kvault.store import VaultStore

    target = Path(args.path).resolve()
    db_path = target / "vault.db"
    existed = db_path.exists()

    target.mkdir(parents=True, exist_ok=True)
    store = VaultStore(str(db_path))
    store.close()

    gitignore_path = target / ".gitignore"
    if not gitignore_path.exists():
        gitignore_path.write_text("*.db\n*.db-wal\n*.db-shm\n", encoding="utf-8")

    if existed:
        _info(f"Vault exists: {target}")
    else:
        _info(f"Vault initialized: {target}")
    _info(f"  Database:  {db_path}")
    print(f'export KVAULT_DB="{db_path}"')


# ===========================================================================
# Item commands
# ===========================================================================


def cmd_list(args: argparse.Namespace) -> None:
    """List items with optional filters."""
    access = _open_access(args)
    try:
        f = ItemFilter.from_dict({
            "type": args.type, "para_category": args.para,
            "folder_path": args.folder, "tags": args.tags,
            "search": args.search, "limit": args.k,
        })
        items = access.list_items(_resolve_owner(args), f)
    finally:
        access.close()

    if getattr(args, "json", False):
        _emit_json([it.format_catalog_entry() for it in items])
    else:
        _print_catalog(items)
    _info(f"{len(items)} item(s)")


def cmd_show(args: argparse.Namespace) -> None:
    """Show a vault item by ID."""
    access = _open_access(args)
    try:
        item = access.get_item(_resolve_owner(args), args.id)
    finally:
        access.close()

    if getattr(args, "json", False):
        _emit_json(item.to_dict())
        return
    print(f"ID:        {item.id}")
    print(f"Type:      {item.type}")
    print(f"Title:     {item.title}")
    print(f"PARA:      {item.para_category or '(none)'}")
    print(f"Folder:    {item.folder_path or '(none)'}")
    print(f"Tags:      {', '.join(item.tags) if item.tags else '(none)'}")
    print(f"Created:   {item.created_at}")
    print(f"Updated:   {item.updated_at}")
    if item.source_table:
        print(f"Source:    {item.source_table}:{item.source_id}")
    if item.metadata:
        print(f"Metadata:  {json.dumps(item.metadata, ensure_ascii=False)}")
    print(f"\n--- Content ---\n{item.content}")


def cmd_create(args: argparse.Namespace) -> None:
    """Create a native vault item."""
    access = _open_access(args)
    try:
        item = access.create_item(
            _resolve_owner(args), args.type, args.title,
            content=_read_content(args.content) or "",
            para_category=args.para, folder_path=args.folder,
            tags=_split_tags(args.tags),
            metadata=_parse_metadata(args.metadata),
        )
    finally:
        access.close()

    if getattr(args, "json", False):
        _emit_json(item.to_dict())
    else:
        print(item.id)
    _info(f"Created {item.type} {item.id}")


def cmd_update(args: argparse.Namespace) -> None:
    """Patch mutable fields of an item."""
    patch: Dict[str, Any] = {}
    if args.title is not None:
        patch["title"] = args.title
    if args.content is not None:
        patch["content"] = _read_content(args.content)
    if args.para is not None:
        patch["para_category"] = None if args.para == "none" else args.para
    if args.folder is not None:
        patch["folder_path"] = args.folder or None
    if args.tags is not None:
        patch["tags"] = _split_tags(args.tags)
    if args.metadata is not None:
        patch["metadata"] = _parse_metadata(args.metadata)
    if not patch:
        _warn("Nothing to update (give at least one field option)")
        sys.exit(1)

    access = _open_access(args)
    try:
        item = access.update_item(_resolve_owner(args), args.id, patch)
    finally:
        access.close()

    if getattr(args, "json", False):
        _emit_json(item.to_dict())
    _info(f"Updated {item.id}: {', '.join(sorted(patch))}")


def cmd_delete(args: argparse.Namespace) -> None:
    """Delete an item and its links."""
    access = _open_access(args)
    try:
        pruned = access.delete_item(_resolve_owner(args), args.id)
    finally:
        access.close()
    _info(f"Deleted {args.id} ({pruned} link(s) pruned)")


# ===========================================================================
# Link commands
# ===========================================================================


def cmd_link(args: argparse.Namespace) -> None:
    """Create a directed link."""
    access = _open_access(args)
    try:
        link = access.create_link(
            _resolve_owner(args), args.source, args.target, args.link_type,
        )
    finally:
        access.close()

    if getattr(args, "json", False):
        _emit_json(link.to_dict())
    else:
        print(link.id)
    _info(f"Linked {link.source_id} -[{link.link_type}]-> {link.target_id}")


def cmd_links(args: argparse.Namespace) -> None:
    """List links touching an item, by direction."""
    access = _open_access(args)
    try:
        split = access.links_by_direction(_resolve_owner(args), args.id)
    finally:
        access.close()

    if getattr(args, "json", False):
        _emit_json({k: [ln.to_dict() for ln in v] for k, v in split.items()})
        return
    for ln in split["outgoing"]:
        print(f"{ln.id}  -> {ln.target_id}  ({ln.link_type})")
    for ln in split["incoming"]:
        print(f"{ln.id}  <- {ln.source_id}  ({ln.link_type})")


def cmd_unlink(args: argparse.Namespace) -> None:
    """Delete a link."""
    access = _open_access(args)
    try:
        access.delete_link(_resolve_owner(args), args.link_id)
    finally:
        access.close()
    _info(f"Deleted link {args.link_id}")


def cmd_autolink(args: argparse.Namespace) -> None:
    """Create wikilink edges from [[Title]] references in an item."""
    access = _open_access(args)
    try:
        links = access.auto_link(_resolve_owner(args), args.id)
    finally:
        access.close()

    if getattr(args, "json", False):
        _emit_json([ln.to_dict() for ln in links])
    else:
        for ln in links:
            print(f"{ln.id}  -> {ln.target_id}")
    _info(f"{len(links)} link(s) created")


# ===========================================================================
# Query commands
# ===========================================================================


def cmd_search(args: argparse.Namespace) -> None:
    """Substring search across all item types."""
    access = _open_access(args)
    try:
        items = access.search(_resolve_owner(args), args.query, args.k)
    finally:
        access.close()

    if getattr(args, "json", False):
        _emit_json([it.format_catalog_entry() for it in items])
    else:
        _print_catalog(items)
    if not items:
        _info(f"No results for: {args.query}")


def cmd_related(args: argparse.Namespace) -> None:
    """Items sharing tags with the given item."""
    access = _open_access(args)
    try:
        items = access.related_items(_resolve_owner(args), args.id, args.k)
    finally:
        access.close()

    if getattr(args, "json", False):
        _emit_json([it.format_catalog_entry() for it in items])
    else:
        _print_catalog(items)


def cmd_stats(args: argparse.Namespace) -> None:
    """Item counts by type and PARA bucket."""
    access = _open_access(args)
    try:
        stats = access.stats(_resolve_owner(args))
    finally:
        access.close()

    if getattr(args, "json", False):
        stats["status"] = "ok"
        _emit_json(stats)
        return
    print("Vault Statistics")
    print("=" * 40)
    print(f"  Total items: {stats['total']}")
    print("  By type:")
    for typ in VALID_TYPES:
        print(f"    {typ:16s}: {stats['by_type'][typ]}")
    print("  By PARA:")
    for para in VALID_PARA:
        print(f"    {para:16s}: {stats['by_para'][para]}")


# ===========================================================================
# Command: migrate
# ===========================================================================


def cmd_migrate(args: argparse.Namespace) -> None:
    """Import legacy records into the vault (idempotent)."""
    access = _open_access(args)
    try:
        result = access.migrate(_resolve_owner(args), dry_run=args.dry_run)
    finally:
        access.close()

    if getattr(args, "json", False):
        _emit_json(result.to_dict())
    else:
        for table, tally in result.per_source.items():
            _info(f"  {table:28s} new={tally.migrated} "
                  f"skipped={tally.skipped} errors={tally.errors}")
        for err in result.errors:
            _warn(f"  ! {err.source_table}:{err.source_id}: {err.message}")
    prefix = "Dry run: would migrate" if args.dry_run else "Migrated"
    _info(f"{prefix} {result.migrated_count}, skipped {result.skipped_count}, "
          f"errors {len(result.errors)}")

    # Every record failed: operational error.
    if result.errors and result.migrated_count == 0 and result.skipped_count == 0:
        sys.exit(1)


# ===========================================================================
# Command: serve
# ===========================================================================


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the MCP server in the foreground."""
    try:
        from kvault.mcp.server import build_parser, create_server
    except ImportError:
        _warn("MCP support requires: pip install kvault[mcp]")
        sys.exit(1)

    db = Path(_resolve_db(args)).resolve()
    # The guard confines the server to the directory holding this vault.
    forwarded = ["--db", db.name, "--db-root", str(db.parent)]
    owner = _resolve_owner(args)
    if owner:
        forwarded += ["--owner", owner]
    legacy = getattr(args, "legacy_db", None) or os.environ.get("KVAULT_LEGACY_DB")
    if legacy:
        forwarded += ["--legacy-db", legacy]
    config = getattr(args, "config", None) or os.environ.get("KVAULT_CONFIG")
    if config:
        forwarded += ["--config", config]

    mcp, _access = create_server(build_parser().parse_args(forwarded))
    mcp.run()


# ===========================================================================
# Main
# ===========================================================================


def build_parser() -> argparse.ArgumentParser:
    """Build the kvault argument parser."""
    # Shared parent: both `kvault --json stats` and `kvault stats --json`
    # work. SUPPRESS defaults keep subparser defaults from overriding
    # values parsed at the main-parser level.
    _common = argparse.ArgumentParser(add_help=False)
    _common.add_argument(
        "--db", default=argparse.SUPPRESS,
        help="Vault database path (default: $KVAULT_DB or .vault/vault.db)",
    )
    _common.add_argument(
        "--owner", default=argparse.SUPPRESS,
        help="Caller identity (default: $KVAULT_OWNER)",
    )
    _common.add_argument(
        "--config", default=argparse.SUPPRESS,
        help="JSON config file (default: $KVAULT_CONFIG)",
    )
    _common.add_argument(
        "--quiet", "-q", action="store_true", default=argparse.SUPPRESS,
        help="Suppress stderr progress messages",
    )
    _common.add_argument(
        "--json", action="store_true", default=argparse.SUPPRESS,
        help="Machine-readable JSON output",
    )
    _common.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
        help="Enable verbose logging",
    )

    parser = argparse.ArgumentParser(
        prog="kvault",
        description="kvault — unified knowledge vault",
        parents=[_common],
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    p = sub.add_parser("init", parents=[_common], help="Create a vault workspace")
    p.add_argument("path", nargs="?", default=".vault",
                   help="Workspace directory (default: .vault)")
    p.set_defaults(func=cmd_init)

    p = sub.add_parser("list", parents=[_common], help="List vault items")
    p.add_argument("--type", default=None, choices=VALID_TYPES, help="Item type")
    p.add_argument("--para", default=None, choices=VALID_PARA, help="PARA bucket")
    p.add_argument("--folder", default=None, help="Exact folder path")
    p.add_argument("--tags", default=None, help="Comma-separated tags (any)")
    p.add_argument("--search", default=None, help="Substring in title/content")
    p.add_argument("-k", type=int, default=None, help="Max results")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("show", parents=[_common], help="Show vault item details")
    p.add_argument("id", help="Vault item ID")
    p.set_defaults(func=cmd_show)

    p = sub.add_parser("create", parents=[_common], help="Create a vault item")
    p.add_argument("type", choices=VALID_TYPES, help="Item type")
    p.add_argument("title", help="Item title")
    p.add_argument("--content", default=None, help="Body text ('-' reads stdin)")
    p.add_argument("--para", default=None, choices=VALID_PARA, help="PARA bucket")
    p.add_argument("--folder", default=None, help="Folder path")
    p.add_argument("--tags", default=None, help="Comma-separated tags")
    p.add_argument("--metadata", default=None, help="JSON object")
    p.set_defaults(func=cmd_create)

    p = sub.add_parser("update", parents=[_common], help="Update a vault item")
    p.add_argument("id", help="Vault item ID")
    p.add_argument("--title", default=None)
    p.add_argument("--content", default=None, help="Body text ('-' reads stdin)")
    p.add_argument("--para", default=None, choices=VALID_PARA + ("none",),
                   help="PARA bucket ('none' clears it)")
    p.add_argument("--folder", default=None, help="Folder path ('' clears it)")
    p.add_argument("--tags", default=None, help="Comma-separated tags (replaces)")
    p.add_argument("--metadata", default=None, help="JSON object (replaces)")
    p.set_defaults(func=cmd_update)

    p = sub.add_parser("delete", parents=[_common], help="Delete an item and its links")
    p.add_argument("id", help="Vault item ID")
    p.set_defaults(func=cmd_delete)

    p = sub.add_parser("link", parents=[_common], help="Link two items")
    p.add_argument("source", help="Source item ID (must be yours)")
    p.add_argument("target", help="Target item ID")
    p.add_argument("--type", dest="link_type", default="related",
                   help="Link type (default: related)")
    p.set_defaults(func=cmd_link)

    p = sub.add_parser("links", parents=[_common], help="Show an item's links")
    p.add_argument("id", help="Vault item ID")
    p.set_defaults(func=cmd_links)

    p = sub.add_parser("unlink", parents=[_common], help="Delete a link")
    p.add_argument("link_id", help="Link ID")
    p.set_defaults(func=cmd_unlink)

    p = sub.add_parser("autolink", parents=[_common],
                       help="Link [[Title]] references in an item")
    p.add_argument("id", help="Vault item ID")
    p.set_defaults(func=cmd_autolink)

    p = sub.add_parser("search", parents=[_common], help="Search title and content")
    p.add_argument("query", help="Search text")
    p.add_argument("-k", type=int, default=20, help="Max results (default: 20)")
    p.set_defaults(func=cmd_search)

    p = sub.add_parser("related", parents=[_common], help="Items sharing tags")
    p.add_argument("id", help="Vault item ID")
    p.add_argument("-k", type=int, default=10, help="Max results (default: 10)")
    p.set_defaults(func=cmd_related)

    p = sub.add_parser("stats", parents=[_common], help="Vault statistics")
    p.set_defaults(func=cmd_stats)

    p = sub.add_parser("migrate", parents=[_common], help="Import legacy records")
    p.add_argument("--legacy-db", default=None,
                   help="Legacy database (default: $KVAULT_LEGACY_DB or config)")
    p.add_argument("--dry-run", action="store_true", help="Count without writing")
    p.set_defaults(func=cmd_migrate)

    p = sub.add_parser("serve", parents=[_common], help="Start MCP server")
    p.add_argument("--legacy-db", default=None, help="Legacy database for vault_migrate")
    p.set_defaults(func=cmd_serve)

    return parser


def main(argv=None) -> None:
    """CLI entry point: kvault <command> [args]."""
    global _quiet

    parser = build_parser()
    args = parser.parse_args(argv)

    _quiet = getattr(args, "quiet", False)

    if getattr(args, "verbose", False):
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(name)s %(levelname)s %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except VaultError as e:
        _warn(f"Error ({e.kind}): {e}")
        sys.exit(1)
    except BrokenPipeError:
        # e.g. kvault list | head
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(0)
    except Exception as e:
        _warn(f"Internal error: {e}")
        if getattr(args, "verbose", False):
            import traceback
            traceback.print_exc(file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
