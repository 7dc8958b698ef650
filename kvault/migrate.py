"""
Migration Engine — Legacy Tables into the Unified Vault

Walks every registered legacy source for one owner, maps each record to
a vault item and writes it through VaultStore.create_item_from_source.
The provenance pair (source table, record id) makes the run idempotent:
a record already migrated is counted as skipped, never duplicated.

A failing record (or a source that cannot be listed at all) is recorded
in the result and the run continues. Migration never raises for data
problems; callers inspect ``MigrationResult.partial``.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from kvault.legacy import LegacySource
from kvault.store import VaultStore
from kvault.types import AlreadyExists, ValidationError, VaultItem

logger = logging.getLogger(__name__)


@dataclass
class MigrationError:
    """One record (or source) that could not be migrated."""

    source_table: str
    source_id: Optional[str]
    message: str


@dataclass
class SourceTally:
    migrated: int = 0
    skipped: int = 0
    errors: int = 0


@dataclass
class MigrationResult:
    """Aggregate outcome of one migration run."""

    migrated_count: int = 0
    skipped_count: int = 0
    errors: List[MigrationError] = field(default_factory=list)
    per_source: Dict[str, SourceTally] = field(default_factory=dict)
    dry_run: bool = False

    @property
    def partial(self) -> bool:
        """True when at least one record or source failed."""
        return bool(self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "migrated_count": self.migrated_count,
            "skipped_count": self.skipped_count,
            "errors": [asdict(e) for e in self.errors],
            "per_source": {k: asdict(v) for k, v in self.per_source.items()},
            "dry_run": self.dry_run,
            "partial": self.partial,
        }

    def _tally(self, table: str) -> SourceTally:
        return self.per_source.setdefault(table, SourceTally())

    def _record_error(
        self, table: str, source_id: Optional[str], message: str,
    ) -> None:
        self.errors.append(MigrationError(table, source_id, message))
        self._tally(table).errors += 1
        logger.warning(
            "Migration error in %s (record %s): %s", table, source_id, message,
        )


class MigrationEngine:
    """Runs legacy sources through the store, one owner at a time."""

    def __init__(self, store: VaultStore, sources: Sequence[LegacySource]):
        self._store = store
        self._sources = list(sources)

    @property
    def sources(self) -> List[LegacySource]:
        return list(self._sources)

    def migrate(self, owner_id: str, dry_run: bool = False) -> MigrationResult:
        """
        Migrate every legacy record owned by *owner_id*.

        With ``dry_run=True`` records are mapped and checked against
        existing provenance but nothing is written; ``migrated_count`` is
        then the number of items a real run would create.
        """
        if not owner_id:
            raise ValidationError("owner_id is required for migration")
        result = MigrationResult(dry_run=dry_run)

        for source in self._sources:
            table = source.table
            tally = result._tally(table)
            try:
                records = source.list_records(owner_id)
            except Exception as exc:
                result._record_error(table, None, f"cannot list records: {exc}")
                continue

            for record in records:
                source_id: Optional[str] = None
                try:
                    source_id = source.record_id(record)
                    created = self._migrate_record(
                        owner_id, source, record, source_id, dry_run,
                    )
                except Exception as exc:
                    result._record_error(table, source_id, str(exc))
                    continue
                if created:
                    tally.migrated += 1
                    result.migrated_count += 1
                else:
                    tally.skipped += 1
                    result.skipped_count += 1

            logger.info(
                "Migrated %s for %s: %d new, %d skipped, %d error(s)%s",
                table, owner_id, tally.migrated, tally.skipped, tally.errors,
                " (dry run)" if dry_run else "",
            )

        return result

    def _migrate_record(
        self,
        owner_id: str,
        source: LegacySource,
        record: Dict[str, Any],
        source_id: str,
        dry_run: bool,
    ) -> bool:
        """Map and write one record. Returns True when a new item was created."""
        if self._store.find_by_source(source.table, source_id) is not None:
            return False
        mapped = source.to_item(record)
        if dry_run:
            # Construct the item to surface the same validation a write would.
            VaultItem(
                type=mapped.type, title=mapped.title, created_by=owner_id,
                content=mapped.content, para_category=mapped.para_category,
                folder_path=mapped.folder_path, tags=mapped.tags,
                metadata=mapped.metadata,
                source_table=source.table, source_id=source_id,
            )
            return True
        try:
            _, created = self._store.create_item_from_source(
                owner_id=owner_id,
                type=mapped.type,
                title=mapped.title,
                content=mapped.content,
                source_table=source.table,
                source_id=source_id,
                para_category=mapped.para_category,
                folder_path=mapped.folder_path,
                tags=mapped.tags,
                metadata=mapped.metadata,
                strict=True,
            )
        except AlreadyExists:
            # Lost a race with a concurrent run for the same record.
            return False
        return created
