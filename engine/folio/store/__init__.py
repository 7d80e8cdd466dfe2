"""
Entity Store for Folio.

Durable persistence for pages, blocks, databases, properties, rows and the
relation back-reference index. The store applies no business rules; the
logic components own every invariant and use the store's transactions to
make their cascades all-or-nothing.

Invariants:
    - A session commits or rolls back as one unit
    - Write sessions never interleave within a process

How to change safely:
    - Schema changes must be backward compatible with existing files
    - Add session methods rather than running SQL from logic components
"""

from .entity_store import EntityStore, StoreNotInitializedError, StoreSession

__all__ = [
    "EntityStore",
    "StoreSession",
    "StoreNotInitializedError",
]
