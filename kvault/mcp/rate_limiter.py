"""
MCP Rate Limiter — per-owner token buckets for the vault tools.

Every tool belongs to one class in ``TOOL_CLASSES``. Reads and writes
draw from separate buckets holding ``per_minute * burst_factor`` tokens
that refill continuously. A migration run imports many items, so
``vault_migrate`` costs ``MIGRATE_COST`` write tokens. Exempt tools and
names not in the table are never charged.

No locks: FastMCP dispatches tools on a single event loop.
"""

from __future__ import annotations

import time
from typing import Callable, Dict, FrozenSet, Tuple

TOOL_CLASSES: Dict[str, str] = {
    "vault_create": "write",
    "vault_update": "write",
    "vault_delete": "write",
    "vault_link": "write",
    "vault_unlink": "write",
    "vault_autolink": "write",
    "vault_migrate": "write",
    "vault_get": "read",
    "vault_list": "read",
    "vault_links": "read",
    "vault_search": "read",
    "vault_related": "read",
    "vault_summary": "read",
    "vault_stats": "exempt",
    "vault_initialize": "exempt",
}

WRITE_TOOLS: FrozenSet[str] = frozenset(t for t, c in TOOL_CLASSES.items() if c == "write")
READ_TOOLS: FrozenSet[str] = frozenset(t for t, c in TOOL_CLASSES.items() if c == "read")
EXEMPT_TOOLS: FrozenSet[str] = frozenset(t for t, c in TOOL_CLASSES.items() if c == "exempt")

MIGRATE_COST = 5


class RateLimitExceeded(Exception):
    """The owner's bucket for this tool class is empty."""

    def __init__(self, tool: str, owner: str, retry_after_ms: int):
        self.tool = tool
        self.owner = owner
        self.retry_after_ms = retry_after_ms
        super().__init__(
            f"{tool}: rate limit reached for {owner}, retry in {retry_after_ms} ms"
        )


class TokenBucket:
    """Continuously refilling bucket; time comes from an injected clock."""

    def __init__(self, per_minute: int, burst_factor: float, clock: Callable[[], float]):
        self.capacity = float(per_minute) * burst_factor
        self.rate = per_minute / 60.0
        self.tokens = self.capacity
        self._clock = clock
        self._stamp = clock()

    def _refill(self) -> None:
        now = self._clock()
        if now > self._stamp:
            self.tokens = min(self.capacity, self.tokens + (now - self._stamp) * self.rate)
        self._stamp = now

    def take(self, cost: int = 1) -> int:
        """Spend *cost* tokens. Returns 0, or the wait in ms when short."""
        self._refill()
        if self.tokens >= cost:
            self.tokens -= cost
            return 0
        if self.rate <= 0 or cost > self.capacity:
            return 60_000
        return int((cost - self.tokens) / self.rate * 1000) + 1


class RateLimiter:
    """Read and write budgets per owner."""

    def __init__(
        self,
        writes_per_minute: int = 30,
        reads_per_minute: int = 120,
        burst_factor: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._per_minute = {"write": writes_per_minute, "read": reads_per_minute}
        self._burst_factor = burst_factor
        self._clock = clock
        self._buckets: Dict[Tuple[str, str], TokenBucket] = {}

    @staticmethod
    def classify(tool: str) -> str:
        return TOOL_CLASSES.get(tool, "exempt")

    def bucket(self, owner: str, kind: str) -> TokenBucket:
        key = (owner, kind)
        if key not in self._buckets:
            self._buckets[key] = TokenBucket(
                self._per_minute[kind], self._burst_factor, self._clock,
            )
        return self._buckets[key]

    def acquire(self, tool: str, owner: str) -> None:
        """Charge *owner* for one call of *tool*. Raises RateLimitExceeded."""
        kind = self.classify(tool)
        if kind == "exempt":
            return
        cost = MIGRATE_COST if tool == "vault_migrate" else 1
        wait = self.bucket(owner, kind).take(cost)
        if wait:
            raise RateLimitExceeded(tool, owner, wait)
