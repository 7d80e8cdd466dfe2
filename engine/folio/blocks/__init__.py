"""
Blocks for Folio.

- registry: block type registry (tag -> validator, serializer)
- propagator: block lifecycle and synced mirror propagation
"""

from .propagator import SyncedBlockPropagator, order_key_after
from .registry import (
    BUILTIN_BLOCK_TYPES,
    BlockTypeDef,
    BlockTypeRegistry,
    DuplicateRegistrationError,
    RegistryFrozenError,
    default_block_registry,
)

__all__ = [
    "SyncedBlockPropagator",
    "order_key_after",
    "BlockTypeDef",
    "BlockTypeRegistry",
    "BUILTIN_BLOCK_TYPES",
    "DuplicateRegistrationError",
    "RegistryFrozenError",
    "default_block_registry",
]
