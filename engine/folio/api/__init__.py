"""
HTTP API for Folio.

FastAPI application exposing the Workspace over REST:
- /api/v1/pages, /api/v1/users/{owner_id}/...: page tree and lifecycle
- /api/v1/blocks: synced block resolution and edits
- /api/v1/databases, /api/v1/relations: rows and links

Core errors are returned as {"error", "error_code", "details"} bodies.
"""

from .app import create_app, status_for
from .config import Settings

__all__ = ["Settings", "create_app", "status_for"]
