"""
kvault MCP Server — the Knowledge Vault over the Model Context Protocol.

Exposes the vault tools to any MCP client. The server acts for a single
owner fixed at startup (``--owner`` or $KVAULT_OWNER); authentication is
the client's concern.

Middleware:
    VaultGuard    — db-root containment, item payload caps
    RateLimiter   — token-bucket throttling per owner
    AuditLogger   — JSONL audit trail

Usage:
    kvault-mcp --owner u1 --db vault.db
    kvault-mcp --owner u1 --db-root ~/.local/share/kvault --legacy-db app.db
"""

from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

_MCP_INSTRUCTIONS = (
    "Knowledge Vault: one store for notes, thoughts, ideas, articles, quotes,\n"
    "words, sticky notes, tasks, and pomodoro sessions.\n"
    "\n"
    "FIND:    vault_search (substring), vault_list (filters), vault_get.\n"
    "WRITE:   vault_create, vault_update, vault_delete.\n"
    "GRAPH:   vault_link, vault_links, vault_unlink, vault_autolink ([[Title]]).\n"
    "DISCOVER: vault_related (shared tags), vault_summary, vault_stats.\n"
    "IMPORT:  vault_migrate pulls legacy records in (idempotent).\n"
    "\n"
    "Rules:\n"
    "- PARA buckets are project, area, resource, archive\n"
    "- Use short lowercase tags; related items are found through them\n"
    "- Failures return status=error with a kind (not_found, forbidden, validation)\n"
)

_DEFAULT_MCP_DB_ROOT = (
    Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))
    / "kvault" / "db"
)


def _env_int(name: str, default: int) -> int:
    """Read an integer from environment, with fallback."""
    val = os.environ.get(name)
    if val is not None:
        try:
            return int(val)
        except ValueError:
            logger.warning("Ignoring non-integer $%s=%r", name, val)
    return default


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the vault MCP server."""
    p = argparse.ArgumentParser(
        prog="kvault-mcp",
        description="kvault MCP Server — unified knowledge vault",
    )
    p.add_argument(
        "--db",
        default=os.environ.get("KVAULT_DB", "vault.db"),
        help="Vault database path, relative to --db-root (default: vault.db or $KVAULT_DB)",
    )
    p.add_argument(
        "--owner",
        default=os.environ.get("KVAULT_OWNER"),
        help="Owner id the server acts for (default: $KVAULT_OWNER)",
    )
    p.add_argument(
        "--legacy-db",
        default=os.environ.get("KVAULT_LEGACY_DB"),
        help="Legacy application database for vault_migrate ($KVAULT_LEGACY_DB)",
    )
    p.add_argument(
        "--config",
        default=os.environ.get("KVAULT_CONFIG"),
        help="JSON config file ($KVAULT_CONFIG)",
    )
    p.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    g = p.add_argument_group("path & resource guardrails")
    g.add_argument(
        "--db-root",
        default=os.environ.get("KVAULT_DB_ROOT"),
        help="Constrain the DB path to this tree (default: ~/.local/share/kvault/db)",
    )
    g.add_argument(
        "--max-write-bytes",
        type=int,
        default=_env_int("KVAULT_MAX_WRITE_BYTES", 262_144),
        help="Per-item payload cap in bytes (default: 262144)",
    )

    r = p.add_argument_group("rate limiting")
    r.add_argument(
        "--no-rate-limit",
        action="store_false",
        dest="rate_limit",
        default=True,
        help="Disable rate limiting",
    )
    r.add_argument(
        "--writes-per-minute",
        type=int,
        default=_env_int("KVAULT_WRITES_PER_MINUTE", 30),
        help="Write operations cap per minute (default: 30)",
    )
    r.add_argument(
        "--reads-per-minute",
        type=int,
        default=_env_int("KVAULT_READS_PER_MINUTE", 120),
        help="Read operations cap per minute (default: 120)",
    )

    a = p.add_argument_group("audit")
    a.add_argument(
        "--audit-log",
        default=None,
        help="Audit log file path (default: stderr)",
    )
    return p


def create_server(args=None):
    """
    Create and configure the FastMCP server with the vault tools.

    Returns:
        (mcp_server, access) tuple.
    """
    from mcp.server.fastmcp import FastMCP

    from kvault.access import VaultAccess
    from kvault.config import load_config
    from kvault.mcp.audit import AuditLogger
    from kvault.mcp.guard import VaultGuard
    from kvault.mcp.rate_limiter import RateLimiter
    from kvault.mcp.tools import register_vault_tools

    if args is None:
        args = build_parser().parse_args()
    if not args.owner:
        raise SystemExit("kvault-mcp: an owner is required (--owner or $KVAULT_OWNER)")

    config = load_config(args.config)
    db_root = Path(args.db_root) if args.db_root else _DEFAULT_MCP_DB_ROOT
    guard = VaultGuard(db_root=db_root, max_item_bytes=args.max_write_bytes)
    db_path = guard.resolve_db(args.db)

    access = VaultAccess.open(
        config, db_path=str(db_path), legacy_db_path=args.legacy_db,
    )

    rate_limiter = None
    if args.rate_limit:
        rate_limiter = RateLimiter(
            writes_per_minute=args.writes_per_minute,
            reads_per_minute=args.reads_per_minute,
        )

    audit_output = None
    if args.audit_log:
        audit_output = open(args.audit_log, "a", encoding="utf-8")
    audit = AuditLogger(output=audit_output)

    mcp = FastMCP(name="kvault", instructions=_MCP_INSTRUCTIONS)
    register_vault_tools(
        mcp, access, args.owner,
        guard=guard, rate_limiter=rate_limiter, audit=audit,
    )

    logger.info(
        "kvault MCP server ready: db=%s, owner=%s, legacy=%s, rate_limit=%s",
        db_path, args.owner, args.legacy_db or "(none)",
        "on" if rate_limiter else "off",
    )
    return mcp, access


def main():
    """CLI entry point — parse args, create server, run."""
    args = build_parser().parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    mcp, _access = create_server(args)
    mcp.run()


if __name__ == "__main__":
    main()
