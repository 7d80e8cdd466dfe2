"""
Entity types for Folio.

Plain dataclasses shared by the store and the logic components:
- Page: node of the page forest
- Block: typed content unit owned by one page
- Database / Property / DatabaseRow: page-anchored relational tables
- RelationConfig / RelationCellValue: schema-level and row-level relation data
- RollupConfig: aggregation over the rows linked through a relation
- BackReference: one entry of the relation back-reference index

Invariants:
    - IDs are opaque strings and never change
    - Timestamps are Unix milliseconds
    - RelationCellValue.linked_row_ids never contains duplicates
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class LimitType(Enum):
    """How many rows one relation cell may link."""

    NONE = "none"  # many
    ONE = "one"


class PropertyType(Enum):
    """Database property types."""

    TITLE = "title"
    TEXT = "text"
    NUMBER = "number"
    SELECT = "select"
    MULTI_SELECT = "multi_select"
    CHECKBOX = "checkbox"
    DATE = "date"
    URL = "url"
    RELATION = "relation"
    ROLLUP = "rollup"


class Aggregation(Enum):
    """How a rollup folds the values of linked rows."""

    COUNT = "count"
    COUNT_VALUES = "count_values"
    COUNT_UNIQUE = "count_unique"
    COUNT_EMPTY = "count_empty"
    COUNT_NOT_EMPTY = "count_not_empty"
    PERCENT_EMPTY = "percent_empty"
    PERCENT_NOT_EMPTY = "percent_not_empty"
    SUM = "sum"
    AVERAGE = "average"
    MEDIAN = "median"
    MIN = "min"
    MAX = "max"
    RANGE = "range"
    SHOW_ORIGINAL = "show_original"
    SHOW_UNIQUE = "show_unique"


@dataclass
class Page:
    """A node of the page hierarchy.

    Attributes:
        page_id: Unique page identifier
        owner_id: Owning user
        title: Display title
        icon: Optional emoji/icon
        parent_id: Parent page, None for top-level pages
        is_archived: Soft-deleted flag
        archived_at: When the page was archived (Unix ms)
        position: Order among siblings
        version: Optimistic concurrency counter
        created_at: Creation timestamp (Unix ms)
        updated_at: Last update timestamp (Unix ms)
    """

    page_id: str
    owner_id: str
    title: str = "Untitled"
    icon: str | None = None
    parent_id: str | None = None
    is_archived: bool = False
    archived_at: int | None = None
    position: int = 0
    version: int = 1
    created_at: int = 0
    updated_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "page_id": self.page_id,
            "owner_id": self.owner_id,
            "title": self.title,
            "icon": self.icon,
            "parent_id": self.parent_id,
            "is_archived": self.is_archived,
            "archived_at": self.archived_at,
            "position": self.position,
            "version": self.version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class Block:
    """A content unit within a page.

    Attributes:
        block_id: Unique block identifier
        page_id: Owning page
        type: Block type tag (see blocks.registry)
        order_key: Lexicographic sibling order
        content: Type-specific payload
        props: Placement/presentation metadata
        source_block_id: Canonical block this block mirrors, if any
        snapshot: Last-known canonical content cached on a mirror
        created_at: Creation timestamp (Unix ms)
        updated_at: Last update timestamp (Unix ms)
    """

    block_id: str
    page_id: str
    type: str
    order_key: str
    content: dict[str, Any] = field(default_factory=dict)
    props: dict[str, Any] = field(default_factory=dict)
    source_block_id: str | None = None
    snapshot: dict[str, Any] | None = None
    created_at: int = 0
    updated_at: int = 0

    @property
    def is_mirror(self) -> bool:
        """Whether this block references another block's content."""
        return self.source_block_id is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "block_id": self.block_id,
            "page_id": self.page_id,
            "type": self.type,
            "order_key": self.order_key,
            "content": self.content,
            "props": self.props,
            "source_block_id": self.source_block_id,
            "snapshot": self.snapshot,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class Database:
    """A relational table anchored to one page."""

    database_id: str
    page_id: str
    title: str = "Untitled"
    created_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "database_id": self.database_id,
            "page_id": self.page_id,
            "title": self.title,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class RelationConfig:
    """Schema-level description of a relation property.

    Attributes:
        target_database_id: Database whose rows may be linked
        bidirectional: Whether a reverse property mirrors the links
        reverse_property_id: Property in the target database holding mirrors
        limit_type: Cardinality of this side
    """

    target_database_id: str
    bidirectional: bool = False
    reverse_property_id: str | None = None
    limit_type: LimitType = LimitType.NONE

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_database_id": self.target_database_id,
            "bidirectional": self.bidirectional,
            "reverse_property_id": self.reverse_property_id,
            "limit_type": self.limit_type.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RelationConfig:
        return cls(
            target_database_id=data["target_database_id"],
            bidirectional=bool(data.get("bidirectional", False)),
            reverse_property_id=data.get("reverse_property_id"),
            limit_type=LimitType(data.get("limit_type", LimitType.NONE.value)),
        )


@dataclass(frozen=True)
class RollupConfig:
    """Schema-level description of a rollup property.

    Attributes:
        relation_property_id: Relation property of the same database
        target_property_id: Property of the related database to aggregate
        aggregation: How the linked values are folded
    """

    relation_property_id: str
    target_property_id: str
    aggregation: Aggregation = Aggregation.COUNT

    def to_dict(self) -> dict[str, Any]:
        return {
            "relation_property_id": self.relation_property_id,
            "target_property_id": self.target_property_id,
            "aggregation": self.aggregation.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RollupConfig:
        return cls(
            relation_property_id=data["relation_property_id"],
            target_property_id=data["target_property_id"],
            aggregation=Aggregation(data.get("aggregation", Aggregation.COUNT.value)),
        )


@dataclass
class Property:
    """A typed column of a database."""

    property_id: str
    database_id: str
    name: str
    type: PropertyType
    position: int = 0
    config: dict[str, Any] = field(default_factory=dict)

    @property
    def relation(self) -> RelationConfig | None:
        """Relation configuration, or None for non-relation properties."""
        if self.type != PropertyType.RELATION:
            return None
        return RelationConfig.from_dict(self.config)

    @property
    def rollup(self) -> RollupConfig | None:
        if self.type != PropertyType.ROLLUP:
            return None
        return RollupConfig.from_dict(self.config)

    def to_dict(self) -> dict[str, Any]:
        return {
            "property_id": self.property_id,
            "database_id": self.database_id,
            "name": self.name,
            "type": self.type.value,
            "position": self.position,
            "config": self.config,
        }


@dataclass
class RelationCellValue:
    """Row-level relation data: an ordered set of linked row ids."""

    linked_row_ids: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.linked_row_ids = list(dict.fromkeys(self.linked_row_ids))

    def to_dict(self) -> dict[str, Any]:
        return {"linked_row_ids": list(self.linked_row_ids)}

    @classmethod
    def from_value(cls, value: Any) -> RelationCellValue:
        """Build from a stored cell value (missing cells are empty)."""
        if not value:
            return cls()
        if isinstance(value, dict):
            return cls(list(value.get("linked_row_ids", [])))
        return cls(list(value))


@dataclass
class DatabaseRow:
    """A record of a database.

    Attributes:
        row_id: Unique row identifier
        database_id: Owning database
        page_id: The row's own page (child of the database page), if any
        position: Order within the database
        values: Property values keyed by property_id
    """

    row_id: str
    database_id: str
    page_id: str | None = None
    position: int = 0
    values: dict[str, Any] = field(default_factory=dict)
    created_at: int = 0
    updated_at: int = 0

    def relation_cell(self, property_id: str) -> RelationCellValue:
        return RelationCellValue.from_value(self.values.get(property_id))

    def to_dict(self) -> dict[str, Any]:
        return {
            "row_id": self.row_id,
            "database_id": self.database_id,
            "page_id": self.page_id,
            "position": self.position,
            "values": self.values,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class BackReference:
    """The cell of source_row_id for property_id lists target_row_id."""

    target_row_id: str
    property_id: str
    source_row_id: str
