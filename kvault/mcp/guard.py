"""
MCP Vault Guard — where the vault may live and how much an owner may write.

Two checks, both raising GuardError:

* ``resolve_db``: the vault database named at startup must be a file
  path inside ``db_root`` (no ``..``, symlinks resolved first).
* ``admit_write``: an item payload (title + content + metadata JSON, in
  UTF-8 bytes) must fit the per-item cap, and the owner's writes over the
  last 60 seconds must fit the per-minute budget.
"""

from __future__ import annotations

import json
import logging
import time
from collections import deque
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

BUDGET_WINDOW_S = 60.0


class GuardError(ValueError):
    """A guard check failed (vault outside root, payload too large)."""


def item_payload_bytes(
    title: Optional[str] = None,
    content: Optional[str] = None,
    metadata: Optional[Mapping[str, Any]] = None,
) -> int:
    """UTF-8 size of the user-supplied parts of an item write."""
    size = len((title or "").encode("utf-8")) + len((content or "").encode("utf-8"))
    if metadata:
        try:
            size += len(json.dumps(metadata, ensure_ascii=False).encode("utf-8"))
        except (TypeError, ValueError):
            # unserializable metadata is rejected later as a validation error
            pass
    return size


class VaultGuard:
    """Database containment and per-owner write caps for the MCP server."""

    def __init__(
        self,
        db_root: Optional[Path] = None,
        max_item_bytes: int = 262_144,
        max_bytes_per_minute: int = 2_097_152,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.db_root: Optional[Path] = Path(db_root).resolve() if db_root else None
        self.max_item_bytes = max_item_bytes
        self.max_bytes_per_minute = max_bytes_per_minute
        self._clock = clock
        # owner -> (timestamp, bytes) for writes inside the window
        self._writes: Dict[str, Deque[Tuple[float, int]]] = {}

    # -- Database location -------------------------------------------------

    def resolve_db(self, requested: str) -> Path:
        """Absolute vault path for *requested*, relative to db_root when set."""
        raw = Path(requested).expanduser()
        if ".." in raw.parts:
            raise GuardError(f"Vault path may not contain '..': {requested}")
        if self.db_root is not None and not raw.is_absolute():
            raw = self.db_root / raw
        resolved = raw.resolve()
        if resolved.is_dir():
            raise GuardError(f"Vault path is a directory: {resolved}")
        if not self._inside_root(resolved):
            raise GuardError(f"Vault {resolved} is outside db-root {self.db_root}")
        return resolved

    def _inside_root(self, resolved: Path) -> bool:
        if self.db_root is None:
            return True
        return self.db_root == resolved or self.db_root in resolved.parents

    def audit_label(self, db_path: str) -> str:
        """Name of the vault in audit lines: root-relative, never a full path."""
        if db_path == ":memory:":
            return db_path
        resolved = Path(db_path).resolve()
        if self.db_root is not None and self._inside_root(resolved):
            return resolved.relative_to(self.db_root).as_posix()
        return resolved.name

    # -- Write caps --------------------------------------------------------

    def admit_write(
        self,
        owner: str,
        title: Optional[str] = None,
        content: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> int:
        """Charge an item write to *owner*. Returns its size in bytes."""
        size = item_payload_bytes(title, content, metadata)
        if size > self.max_item_bytes:
            raise GuardError(
                f"Item payload of {size} bytes exceeds the {self.max_item_bytes}-byte cap"
            )
        now = self._clock()
        window = self._writes.setdefault(owner, deque())
        while window and now - window[0][0] >= BUDGET_WINDOW_S:
            window.popleft()
        used = sum(n for _, n in window)
        if used + size > self.max_bytes_per_minute:
            logger.info("Write budget exhausted for %s (%d bytes in window)", owner, used)
            raise GuardError(
                f"Write budget exceeded for {owner}: {used + size} bytes in the last "
                f"minute (limit {self.max_bytes_per_minute})"
            )
        window.append((now, size))
        return size
