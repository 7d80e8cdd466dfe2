"""
Folio Test Suite.

This package contains:
- unit/: Unit tests (SQLite in a temp directory, in-memory notifier)
- integration/: Cross-component flows and the HTTP API
"""
