"""
Block Type Registry for Folio.

Blocks are polymorphic by tag. Every tag is described by a BlockTypeDef
holding a content validator and a serializer that normalizes content
before it is stored. The core never inspects content shapes itself; it
asks the registry.

Invariants:
    - Registry is mutable during startup, frozen before serving
    - Tags are unique
    - Content reaching the store has passed its type's validator

How to change safely:
    - Add new block types by registering a BlockTypeDef, never by
      special-casing content shapes in the propagator
    - Serializers must be idempotent (serialize(serialize(c)) == serialize(c))

Example:
    >>> registry = default_block_registry()
    >>> registry.validate("heading", {"text": "Intro", "level": 2})
    {'text': 'Intro', 'level': 2}
    >>> registry.freeze()
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

from ..errors import BlockValidationError

logger = logging.getLogger(__name__)

Validator = Callable[[dict[str, Any]], list[str]]
Serializer = Callable[[dict[str, Any]], dict[str, Any]]

PLACEHOLDER = "placeholder"
SYNCED_BLOCK = "synced_block"


class RegistryFrozenError(Exception):
    """Raised when attempting to modify a frozen registry."""

    pass


class DuplicateRegistrationError(Exception):
    """Raised when attempting to register a tag twice."""

    pass


@dataclass(frozen=True)
class BlockTypeDef:
    """Definition of one block type.

    Attributes:
        tag: Type tag stored on blocks
        validator: Returns a list of problems with a content payload
        serializer: Normalizes a valid payload for storage
        description: Human readable description
    """

    tag: str
    validator: Validator
    serializer: Serializer
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"tag": self.tag, "description": self.description}


class BlockTypeRegistry:
    """Registry of block types keyed by tag.

    Thread-safety:
        - Registration is thread-safe (uses internal lock)
        - Lookups after freeze are lock-free
    """

    def __init__(self) -> None:
        self._types: dict[str, BlockTypeDef] = {}
        self._frozen = False
        self._fingerprint: str | None = None
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def fingerprint(self) -> str | None:
        """Fingerprint of the registered tags (available after freeze)."""
        return self._fingerprint

    def register(self, block_type: BlockTypeDef) -> None:
        """Register a block type.

        Raises:
            RegistryFrozenError: If registry is frozen
            DuplicateRegistrationError: If the tag is already registered
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(
                    f"Cannot register block type '{block_type.tag}': registry is frozen"
                )
            if block_type.tag in self._types:
                raise DuplicateRegistrationError(
                    f"Block type '{block_type.tag}' already registered"
                )
            self._types[block_type.tag] = block_type
            logger.debug(f"Registered block type: {block_type.tag}")

    def get(self, tag: str) -> BlockTypeDef | None:
        return self._types.get(tag)

    def require(self, tag: str) -> BlockTypeDef:
        block_type = self._types.get(tag)
        if block_type is None:
            raise BlockValidationError(
                f"Unknown block type: {tag}", field_name="type", errors=[f"unknown tag '{tag}'"]
            )
        return block_type

    def __contains__(self, tag: object) -> bool:
        return tag in self._types

    def tags(self) -> Iterator[str]:
        yield from self._types

    def validate(self, tag: str, content: dict[str, Any] | None) -> dict[str, Any]:
        """Validate content for tag and return its serialized form.

        Raises:
            BlockValidationError: If the tag is unknown or content is invalid
        """
        block_type = self.require(tag)
        if content is None:
            content = {}
        if not isinstance(content, dict):
            raise BlockValidationError(
                f"Content of '{tag}' block must be an object",
                field_name="content",
                errors=["content must be an object"],
            )
        errors = block_type.validator(content)
        if errors:
            raise BlockValidationError(
                f"Invalid content for '{tag}' block: {'; '.join(errors)}",
                field_name="content",
                errors=errors,
            )
        return block_type.serializer(content)

    def freeze(self) -> str:
        """Freeze the registry and compute its fingerprint.

        Raises:
            RegistryFrozenError: If already frozen
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError("Registry is already frozen")
            canonical = json.dumps(
                [self._types[t].to_dict() for t in sorted(self._types)],
                sort_keys=True,
                separators=(",", ":"),
            )
            self._fingerprint = f"sha256:{hashlib.sha256(canonical.encode('utf-8')).hexdigest()}"
            self._frozen = True
            logger.info(
                f"Block registry frozen with {len(self._types)} types, "
                f"fingerprint={self._fingerprint}"
            )
            return self._fingerprint


# ----------------------------------------------------------------------
# Built-in block types
# ----------------------------------------------------------------------


def _check_keys(content: dict[str, Any], allowed: set[str]) -> list[str]:
    return [f"unexpected field '{key}'" for key in sorted(set(content) - allowed)]


def _check_text(content: dict[str, Any], name: str = "text") -> list[str]:
    value = content.get(name, "")
    if not isinstance(value, str):
        return [f"'{name}' must be a string"]
    return []


def _text_validator(extra: set[str] | None = None) -> Validator:
    allowed = {"text"} | (extra or set())

    def validate(content: dict[str, Any]) -> list[str]:
        return _check_keys(content, allowed) + _check_text(content)

    return validate


def _serialize_text(content: dict[str, Any]) -> dict[str, Any]:
    return {"text": content.get("text", "")}


def _validate_heading(content: dict[str, Any]) -> list[str]:
    errors = _check_keys(content, {"text", "level"}) + _check_text(content)
    level = content.get("level", 1)
    if isinstance(level, bool) or not isinstance(level, int) or not 1 <= level <= 3:
        errors.append("'level' must be 1, 2 or 3")
    return errors


def _serialize_heading(content: dict[str, Any]) -> dict[str, Any]:
    return {"text": content.get("text", ""), "level": content.get("level", 1)}


def _validate_callout(content: dict[str, Any]) -> list[str]:
    errors = _check_keys(content, {"text", "icon"}) + _check_text(content)
    icon = content.get("icon")
    if icon is not None and not isinstance(icon, str):
        errors.append("'icon' must be a string")
    return errors


def _serialize_callout(content: dict[str, Any]) -> dict[str, Any]:
    return {"text": content.get("text", ""), "icon": content.get("icon")}


def _validate_toggle(content: dict[str, Any]) -> list[str]:
    errors = _check_keys(content, {"text", "open"}) + _check_text(content)
    if not isinstance(content.get("open", False), bool):
        errors.append("'open' must be a boolean")
    return errors


def _serialize_toggle(content: dict[str, Any]) -> dict[str, Any]:
    return {"text": content.get("text", ""), "open": content.get("open", False)}


def _validate_divider(content: dict[str, Any]) -> list[str]:
    return _check_keys(content, set())


DATABASE_VIEWS = ("table", "board", "list", "gallery", "calendar")


def _validate_database_view(content: dict[str, Any]) -> list[str]:
    errors = _check_keys(content, {"database_id", "view"})
    if not isinstance(content.get("database_id"), str) or not content.get("database_id"):
        errors.append("'database_id' is required")
    if content.get("view", "table") not in DATABASE_VIEWS:
        errors.append(f"'view' must be one of {', '.join(DATABASE_VIEWS)}")
    return errors


def _serialize_database_view(content: dict[str, Any]) -> dict[str, Any]:
    return {"database_id": content["database_id"], "view": content.get("view", "table")}


def _validate_synced(content: dict[str, Any]) -> list[str]:
    errors = _check_keys(content, {"children"})
    children = content.get("children", [])
    if not isinstance(children, list) or not all(isinstance(c, dict) for c in children):
        errors.append("'children' must be a list of objects")
    return errors


def _serialize_synced(content: dict[str, Any]) -> dict[str, Any]:
    return {"children": list(content.get("children", []))}


def _validate_placeholder(content: dict[str, Any]) -> list[str]:
    errors = _check_keys(content, {"lost_source_block_id", "last_snapshot"})
    lost = content.get("lost_source_block_id")
    if lost is not None and not isinstance(lost, str):
        errors.append("'lost_source_block_id' must be a string")
    snapshot = content.get("last_snapshot")
    if snapshot is not None and not isinstance(snapshot, dict):
        errors.append("'last_snapshot' must be an object")
    return errors


def _serialize_placeholder(content: dict[str, Any]) -> dict[str, Any]:
    return {
        "lost_source_block_id": content.get("lost_source_block_id"),
        "last_snapshot": content.get("last_snapshot"),
    }


BUILTIN_BLOCK_TYPES = (
    BlockTypeDef("paragraph", _text_validator(), _serialize_text, "Plain text paragraph"),
    BlockTypeDef("heading", _validate_heading, _serialize_heading, "Heading, level 1-3"),
    BlockTypeDef("quote", _text_validator(), _serialize_text, "Block quote"),
    BlockTypeDef("callout", _validate_callout, _serialize_callout, "Highlighted text with icon"),
    BlockTypeDef("toggle", _validate_toggle, _serialize_toggle, "Collapsible text"),
    BlockTypeDef("divider", _validate_divider, lambda content: {}, "Horizontal rule"),
    BlockTypeDef(
        "database_view", _validate_database_view, _serialize_database_view, "Embedded database view"
    ),
    BlockTypeDef(SYNCED_BLOCK, _validate_synced, _serialize_synced, "Synced block container"),
    BlockTypeDef(
        PLACEHOLDER, _validate_placeholder, _serialize_placeholder, "Mirror whose source was deleted"
    ),
)


def default_block_registry() -> BlockTypeRegistry:
    """A new, unfrozen registry holding the built-in block types."""
    registry = BlockTypeRegistry()
    for block_type in BUILTIN_BLOCK_TYPES:
        registry.register(block_type)
    return registry
