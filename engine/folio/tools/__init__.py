"""
CLI tools for Folio administration.

This module provides command-line tools for:
- integrity: Check and repair relation cells and the back-reference index

Invariants:
    - Tools work offline (no running server required)
    - Operations are idempotent where possible
"""

from .integrity_cli import IntegrityCLI

__all__ = ["IntegrityCLI"]
