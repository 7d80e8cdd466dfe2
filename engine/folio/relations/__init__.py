"""
Databases and relations for Folio.

- engine: Relation Engine (links, cardinality, back-reference index)
- databases: database schema, rows and cells
- integrity: consistency check and compensating repair
- rollups: aggregates over linked rows, computed on read

Invariants:
    - Bidirectional relation cells are symmetric
    - The back-reference index equals the current cell contents
"""

from .databases import DatabaseService
from .engine import CellChanges, RelationEngine
from .integrity import IntegrityChecker, IntegrityReport
from .rollups import RollupService, compute_aggregate

__all__ = [
    "CellChanges",
    "DatabaseService",
    "IntegrityChecker",
    "IntegrityReport",
    "RelationEngine",
    "RollupService",
    "compute_aggregate",
]
