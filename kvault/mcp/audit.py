"""
MCP Audit Trail — one JSONL line per vault tool call.

A call opens an ``AuditRecord`` with ``AuditLogger.start``; the tool fills
``record.detail`` through the ``*_detail`` helpers below, and
``AuditLogger.finish`` writes the line from the middleware's ``finally``.

Line layout (schema v1)::

    {"v":1,"ts":...,"rid":...,"tool":"vault_create","owner":"u1",
     "db":"vault.db","outcome":"ok","ms":1.2,"d":{"item":...,"content":...}}

Item bodies never reach the trail: content is reduced to its size, a
SHA-256 and a 120-char single-line preview.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sys
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

from kvault.migrate import MigrationResult
from kvault.types import VaultError, VaultItem, VaultLink

logger = logging.getLogger(__name__)

AUDIT_SCHEMA_VERSION = 1
PREVIEW_MAX_CHARS = 120

OUTCOMES = ("ok", "error", "rejected", "rate_limited")


# ---------------------------------------------------------------------------
# Detail builders
# ---------------------------------------------------------------------------


def content_detail(content: Optional[str]) -> Dict[str, Any]:
    """Size, SHA-256 and single-line preview of an item body."""
    text = content or ""
    raw = text.encode("utf-8")
    preview = " ".join(text[:PREVIEW_MAX_CHARS].split())
    if len(text) > PREVIEW_MAX_CHARS:
        preview += "…"
    return {
        "bytes": len(raw),
        "sha256": hashlib.sha256(raw).hexdigest(),
        "preview": preview,
    }


def item_detail(item: VaultItem) -> Dict[str, Any]:
    """Identity of an item touched by a call (never its body)."""
    d: Dict[str, Any] = {"id": item.id, "type": item.type}
    if item.para_category:
        d["para"] = item.para_category
    if item.source_table:
        d["source"] = f"{item.source_table}:{item.source_id}"
    return d


def link_detail(link: VaultLink) -> Dict[str, Any]:
    return {
        "id": link.id,
        "source": link.source_id,
        "target": link.target_id,
        "type": link.link_type,
    }


def migration_detail(result: MigrationResult) -> Dict[str, Any]:
    """Run totals plus the tables that produced errors."""
    return {
        "migrated": result.migrated_count,
        "skipped": result.skipped_count,
        "errors": len(result.errors),
        "failed_tables": sorted({e.source_table for e in result.errors}),
        "dry_run": result.dry_run,
    }


def error_detail(exc: Exception) -> Dict[str, Any]:
    kind = exc.kind if isinstance(exc, VaultError) else "internal"
    return {"kind": kind}


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


def _timestamp() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


@dataclass
class AuditRecord:
    """One tool call in flight."""

    tool: str
    owner: str
    db: str
    rid: str = field(default_factory=lambda: uuid.uuid4().hex)
    ts: str = field(default_factory=_timestamp)
    outcome: str = "ok"
    detail: Dict[str, Any] = field(default_factory=dict)
    started: float = field(default_factory=time.monotonic)

    def to_json(self, latency_ms: float) -> str:
        record: Dict[str, Any] = {
            "v": AUDIT_SCHEMA_VERSION,
            "ts": self.ts,
            "rid": self.rid,
            "tool": self.tool,
            "owner": self.owner,
            "db": self.db,
            "outcome": self.outcome,
            "ms": round(latency_ms, 1),
        }
        if self.detail:
            record["d"] = self.detail
        return json.dumps(record, ensure_ascii=False, separators=(",", ":"))


class AuditLogger:
    """Writes ``AuditRecord`` lines to a text stream (stderr by default)."""

    def __init__(self, output: Optional[TextIO] = None, db: str = ":memory:"):
        self._output = output if output is not None else sys.stderr
        self.db = db

    def start(self, tool: str, owner: str) -> AuditRecord:
        return AuditRecord(tool=tool, owner=owner, db=self.db)

    def finish(self, record: AuditRecord) -> None:
        """Write the record. An audit failure never fails the tool call."""
        if record.outcome not in OUTCOMES:
            record.outcome = "error"
        latency_ms = (time.monotonic() - record.started) * 1000
        try:
            line = record.to_json(latency_ms)
            self._output.write(line + "\n")
            self._output.flush()
        except (TypeError, ValueError, OSError) as exc:
            logger.warning("Audit write failed for %s (%s): %s",
                           record.tool, record.rid, exc)
