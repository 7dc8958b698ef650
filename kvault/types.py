"""
Vault Data Model — Unified Items, Links, and Errors

Defines the polymorphic vault item (closed type tag + opaque metadata),
the directed typed link, the filter object used by listing/search, and
the error taxonomy shared by every layer.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

# ---------------------------------------------------------------------------
# Type aliases (Literal unions for validation)
# ---------------------------------------------------------------------------

VaultItemType = Literal[
    "note", "thought", "thought_session", "idea", "article", "research",
    "quote", "word", "sticky_note", "task", "pomodoro",
]
PARACategory = Literal["project", "area", "resource", "archive"]

# Valid values for runtime checks (tuples keep display order stable)
VALID_TYPES: tuple = (
    "note", "thought", "thought_session", "idea", "article", "research",
    "quote", "word", "sticky_note", "task", "pomodoro",
)
VALID_PARA: tuple = ("project", "area", "resource", "archive")

DEFAULT_LINK_TYPE = "related"

# Fields an update may touch. Everything else is immutable or unknown.
UPDATABLE_FIELDS: frozenset = frozenset({
    "title", "content", "para_category", "folder_path",
    "tags", "metadata", "linked_items",
})
IMMUTABLE_FIELDS: frozenset = frozenset({
    "id", "type", "created_by", "created_at", "updated_at",
    "source_table", "source_id",
})


def _now_iso() -> str:
    """Current UTC time as ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _generate_id(prefix: str = "VLT") -> str:
    """Generate a unique vault ID with prefix."""
    short = uuid.uuid4().hex[:12]
    return f"{prefix}-{short}"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class VaultError(Exception):
    """Base class for vault failures surfaced to callers."""

    kind = "error"


class ValidationError(VaultError, ValueError):
    """Malformed input: empty title, unknown enum value, bad patch key."""

    kind = "validation"


class NotFound(VaultError, LookupError):
    """An item or link id does not resolve."""

    kind = "not_found"


class Forbidden(VaultError, PermissionError):
    """The id resolves but the caller is not its owner."""

    kind = "forbidden"


class Unauthenticated(VaultError, PermissionError):
    """No caller identity was supplied."""

    kind = "unauthenticated"


class AlreadyExists(VaultError):
    """A vault item already carries this provenance pair."""

    kind = "already_exists"

    def __init__(self, existing: "VaultItem"):
        self.existing = existing
        super().__init__(
            f"Item {existing.id} already migrated from "
            f"{existing.source_table}:{existing.source_id}"
        )


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def validate_type(value: Any) -> str:
    """Return *value* if it is a known item type, else raise."""
    if value not in VALID_TYPES:
        raise ValidationError(f"Invalid item type: {value!r}")
    return value


def validate_para(value: Any) -> Optional[str]:
    """Return *value* if it is None or a PARA bucket, else raise."""
    if value is not None and value not in VALID_PARA:
        raise ValidationError(f"Invalid para_category: {value!r}")
    return value


def validate_title(value: Any) -> str:
    """Titles must be non-empty strings."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("Title must be a non-empty string")
    return value


def _validate_str_list(name: str, value: Any) -> List[str]:
    if not isinstance(value, (list, tuple)):
        raise ValidationError(f"{name} must be a list of strings")
    for v in value:
        if not isinstance(v, str):
            raise ValidationError(f"{name} must be a list of strings")
    return list(value)


def normalize_tags(tags: Any) -> List[str]:
    """Drop empty tags and duplicates, keeping first-seen order."""
    seen: List[str] = []
    for t in _validate_str_list("tags", tags or []):
        t = t.strip()
        if t and t not in seen:
            seen.append(t)
    return seen


def validate_patch(patch: Dict[str, Any]) -> Dict[str, Any]:
    """
    Check an update patch before any write. Returns a cleaned copy.

    Immutable or unknown keys are rejected rather than ignored so a caller
    never believes an ownership or provenance change was applied.
    """
    if not isinstance(patch, dict):
        raise ValidationError("Update patch must be a mapping")
    cleaned: Dict[str, Any] = {}
    for key, val in patch.items():
        if key in IMMUTABLE_FIELDS:
            raise ValidationError(f"Field is immutable: {key}")
        if key not in UPDATABLE_FIELDS:
            raise ValidationError(f"Unknown field: {key}")
        if key == "title":
            val = validate_title(val)
        elif key == "content":
            if val is None:
                val = ""
            if not isinstance(val, str):
                raise ValidationError("content must be a string")
        elif key == "para_category":
            val = validate_para(val)
        elif key == "folder_path":
            if val is not None and not isinstance(val, str):
                raise ValidationError("folder_path must be a string or null")
            val = val or None
        elif key == "tags":
            val = normalize_tags(val)
        elif key == "metadata":
            val = {} if val is None else val
            if not isinstance(val, dict):
                raise ValidationError("metadata must be an object")
            try:
                json.dumps(val)
            except (TypeError, ValueError) as exc:
                raise ValidationError(f"metadata is not serializable: {exc}") from exc
        elif key == "linked_items":
            val = _validate_str_list("linked_items", val or [])
        cleaned[key] = val
    return cleaned


# ---------------------------------------------------------------------------
# Vault Item (canonical)
# ---------------------------------------------------------------------------


@dataclass
class VaultItem:
    """
    Unified knowledge item.

    ``type`` selects how the presentation layer reads ``metadata``; the
    storage shape is the same for every type. ``linked_items`` is a
    convenience cache and may drift from the link graph.
    """

    type: VaultItemType = "note"
    title: str = ""
    created_by: str = ""
    content: str = ""
    para_category: Optional[PARACategory] = None
    folder_path: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    linked_items: List[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: _generate_id("VLT"))
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = ""
    source_table: Optional[str] = None
    source_id: Optional[str] = None

    def __post_init__(self):
        """Validate closed sets, title, owner, and provenance pairing."""
        validate_type(self.type)
        validate_para(self.para_category)
        validate_title(self.title)
        if not self.created_by:
            raise ValidationError("created_by is required")
        if self.content is None:
            self.content = ""
        if not isinstance(self.metadata, dict):
            raise ValidationError("metadata must be an object")
        self.tags = normalize_tags(self.tags)
        self.linked_items = _validate_str_list("linked_items", self.linked_items)
        self.folder_path = self.folder_path or None
        if (self.source_table is None) != (self.source_id is None):
            raise ValidationError(
                "source_table and source_id must be set together"
            )
        if not self.updated_at:
            self.updated_at = self.created_at

    @property
    def provenance(self) -> Optional[tuple]:
        """(source_table, source_id) or None for native items."""
        if self.source_table is None:
            return None
        return (self.source_table, self.source_id)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (JSON-safe)."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> VaultItem:
        """Deserialize from dict, filtering to known fields."""
        known = set(cls.__dataclass_fields__.keys())
        return cls(**{k: v for k, v in d.items() if k in known})

    def to_json(self) -> str:
        """Serialize to indented JSON string."""
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2)

    def format_catalog_entry(self) -> Dict[str, Any]:
        """Compact listing entry (no content body)."""
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "para_category": self.para_category,
            "folder_path": self.folder_path,
            "tags": self.tags,
            "updated_at": self.updated_at,
        }


# ---------------------------------------------------------------------------
# Vault Link (directed typed edge)
# ---------------------------------------------------------------------------


@dataclass
class VaultLink:
    """Directed typed edge between two vault items."""

    source_id: str = ""
    target_id: str = ""
    link_type: str = DEFAULT_LINK_TYPE  # e.g. "reference", "parent", "wikilink"
    id: str = field(default_factory=lambda: _generate_id("LNK"))
    created_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize link to a plain dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> VaultLink:
        """Deserialize link from a dictionary."""
        known = set(cls.__dataclass_fields__.keys())
        return cls(**{k: v for k, v in d.items() if k in known})

    def other_end(self, item_id: str) -> str:
        """Return the endpoint opposite *item_id*."""
        return self.target_id if self.source_id == item_id else self.source_id


# ---------------------------------------------------------------------------
# Item filter
# ---------------------------------------------------------------------------


@dataclass
class ItemFilter:
    """Listing filters. All set fields must match (AND)."""

    type: Optional[str] = None
    para_category: Optional[str] = None
    folder_path: Optional[str] = None
    tags_any: List[str] = field(default_factory=list)
    search: Optional[str] = None
    limit: Optional[int] = None

    def __post_init__(self):
        """Reject unknown enum values early, as item writes do."""
        if self.type is not None:
            validate_type(self.type)
        validate_para(self.para_category)
        self.tags_any = normalize_tags(self.tags_any)
        if self.limit is not None and self.limit < 1:
            raise ValidationError(f"limit must be positive, got {self.limit}")

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> ItemFilter:
        """Build from loose query parameters (tags may be comma-separated)."""
        d = dict(d or {})
        tags = d.pop("tags", None)
        if isinstance(tags, str):
            tags = [t.strip() for t in tags.split(",")]
        if tags and "tags_any" not in d:
            d["tags_any"] = tags
        known = set(cls.__dataclass_fields__.keys())
        return cls(**{k: v for k, v in d.items() if k in known and v is not None})
