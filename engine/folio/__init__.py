"""
Folio - hierarchical page lifecycle and relational consistency engine.

This package implements the core of a "blocks and pages" document workspace:
- Pages nested in a forest, with cascading archive and explicit purge
- Typed blocks, some of which mirror a single canonical block (synced blocks)
- Databases anchored to pages, whose rows link to rows of other databases
- Change events published to realtime subscribers

Architecture:
    ┌─────────────┐     ┌──────────────────────────────────────────┐
    │  HTTP API   │────▶│               Workspace                  │
    │  (FastAPI)  │     │  ┌────────────┐ ┌───────────┐ ┌───────┐  │
    └─────────────┘     │  │  Archive   │ │  Relation │ │Synced │  │
                        │  │ Controller │ │  Engine   │ │Blocks │  │
                        │  └─────┬──────┘ └─────┬─────┘ └───┬───┘  │
                        │        │ Page Tree    │           │      │
                        │        ▼ Manager      ▼           ▼      │
                        │  ┌────────────────────────────────────┐  │
                        │  │     Entity Store (SQLite)          │  │
                        │  └────────────────────────────────────┘  │
                        └───────────────────┬──────────────────────┘
                                            ▼
                                   ┌─────────────────┐
                                   │ Change Notifier │──▶ memory / Kafka
                                   └─────────────────┘

Invariants:
    - The page parent relation is a forest
    - An active page never hangs off an archived ancestor
    - Bidirectional relation cells are symmetric after every operation
    - The back-reference index equals the current relation cell contents
    - Events are published only after their transaction commits

How to change safely:
    - Every cascading operation must stay inside one store transaction
    - All relation cell writes go through the relation engine's cell writer
    - New block types are registered in the block type registry, never
      special-cased by shape
"""

from ._version import __version__

__all__ = ["__version__"]
