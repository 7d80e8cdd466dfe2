"""
Pages for Folio.

- tree: Page Tree Manager (children, descendants, ancestors, move, reorder)
- archive: Archive/Restore Controller (cascading archive, restore, purge)
- service: page create/read/update and title search

Invariants:
    - The parent relation is a forest
    - An active page never hangs off an archived ancestor
"""

from .archive import ArchiveController
from .service import PageService
from .tree import PageTreeManager

__all__ = [
    "ArchiveController",
    "PageService",
    "PageTreeManager",
]
