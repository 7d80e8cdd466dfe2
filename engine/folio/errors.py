"""
Error types for the Folio core.

Every core operation either succeeds or raises exactly one of these:
- NotFoundError: Referenced entity is absent
- InvalidMoveError: Move or create would break the page forest
- SyncCycleError: Synced block reference chain does not terminate
- CardinalityViolationError: Relation limit would be exceeded
- ConcurrentModificationError: Page changed since it was read (retry)
- CorruptHierarchyError: Stored hierarchy already violates the forest invariant
- NotArchivedError: Purge requested for a page that is not archived
- ReadOnlyMirrorError: Content edit attempted on a synced mirror
- ValidationError: Malformed input (block content, relation schema)

Invariants:
    - All errors inherit from FolioError
    - Each error carries a stable code for programmatic handling
    - Only ConcurrentModificationError is meant to be retried by callers
"""

from __future__ import annotations

from typing import Any


class FolioError(Exception):
    """Base exception for all Folio core errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    code = "FOLIO_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to the JSON error body used by the HTTP layer."""
        return {"error": self.message, "error_code": self.code, "details": self.details}


class NotFoundError(FolioError):
    """Referenced entity does not exist."""

    code = "NOT_FOUND"

    def __init__(self, kind: str, entity_id: str | None) -> None:
        super().__init__(
            f"{kind} not found: {entity_id}",
            details={"kind": kind, "id": entity_id},
        )
        self.kind = kind
        self.entity_id = entity_id


class InvalidMoveError(FolioError):
    """Structural edit would create a cycle or attach under an archived page."""

    code = "INVALID_MOVE"


class SyncCycleError(FolioError):
    """Synced block resolution exceeded the hop bound."""

    code = "SYNC_CYCLE"

    def __init__(self, block_id: str, hops: int) -> None:
        super().__init__(
            f"Synced block {block_id} did not resolve within {hops} hops",
            details={"block_id": block_id, "hops": hops},
        )
        self.block_id = block_id
        self.hops = hops


class CardinalityViolationError(FolioError):
    """Relation property with limit 'one' would hold more than one row."""

    code = "CARDINALITY_VIOLATION"

    def __init__(self, message: str, property_id: str, row_id: str) -> None:
        super().__init__(message, details={"property_id": property_id, "row_id": row_id})
        self.property_id = property_id
        self.row_id = row_id


class ConcurrentModificationError(FolioError):
    """Entity changed between read and write. Retry with fresh data."""

    code = "CONCURRENT_MODIFICATION"

    def __init__(self, page_id: str, expected: int, actual: int | None) -> None:
        super().__init__(
            f"Page {page_id} was modified concurrently (expected version {expected}, found {actual})",
            details={"page_id": page_id, "expected_version": expected, "actual_version": actual},
        )
        self.page_id = page_id
        self.expected = expected
        self.actual = actual


class CorruptHierarchyError(FolioError):
    """Stored page hierarchy contains a cycle.

    Raised by traversals; the operation is aborted and nothing is repaired.
    """

    code = "CORRUPT_HIERARCHY"

    def __init__(self, page_id: str, visited: int) -> None:
        super().__init__(
            f"Page hierarchy under {page_id} is corrupt (cycle after {visited} pages)",
            details={"page_id": page_id, "visited": visited},
        )
        self.page_id = page_id
        self.visited = visited


class NotArchivedError(FolioError):
    """Permanent delete requires the page to be archived first."""

    code = "NOT_ARCHIVED"

    def __init__(self, page_id: str) -> None:
        super().__init__(
            f"Page {page_id} must be archived before it can be deleted",
            details={"page_id": page_id},
        )
        self.page_id = page_id


class ReadOnlyMirrorError(FolioError):
    """Synced mirrors only accept placement changes."""

    code = "READ_ONLY_MIRROR"

    def __init__(self, block_id: str, source_block_id: str) -> None:
        super().__init__(
            f"Block {block_id} mirrors {source_block_id}; edit the source block instead",
            details={"block_id": block_id, "source_block_id": source_block_id},
        )
        self.block_id = block_id
        self.source_block_id = source_block_id


class ValidationError(FolioError):
    """Input failed validation.

    Attributes:
        field_name: Offending field, if known
        errors: Individual validation messages
    """

    code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        field_name: str | None = None,
        errors: list[str] | None = None,
    ) -> None:
        super().__init__(message, details={"field": field_name, "errors": errors or []})
        self.field_name = field_name
        self.errors = errors or []


class BlockValidationError(ValidationError):
    """Block content does not match its registered type."""

    code = "BLOCK_VALIDATION_ERROR"


class RelationSchemaError(ValidationError):
    """Relation property configuration is inconsistent."""

    code = "RELATION_SCHEMA_ERROR"
