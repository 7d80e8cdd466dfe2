"""
Workspace SQLite store for Folio.

This module manages the SQLite database that stores:
- Pages and their parent pointers
- Blocks (including synced mirrors and their snapshots)
- Databases, properties and rows
- The relation back-reference index

The store is pure persistence: it enforces no business rules. Logic
components open a session, read and write through it, and the session
commits or rolls back as one unit.

Invariants:
    - One SQLite file per data directory
    - Every write session is a single BEGIN IMMEDIATE transaction
    - Write sessions are serialized in-process by an asyncio lock and
      across processes by SQLite's write lock
    - Timestamps handed out by the store are strictly increasing

How to change safely:
    - Schema migrations must be backward compatible
    - Never await anything but session calls inside a write session
    - Keep column whitelists in sync with the dataclasses in models.py

Table schema:
    pages:
        - page_id TEXT PRIMARY KEY
        - owner_id, title, icon, parent_id
        - is_archived INTEGER, archived_at INTEGER (Unix ms)
        - position INTEGER, version INTEGER
        - created_at, updated_at INTEGER (Unix ms)

    blocks:
        - block_id TEXT PRIMARY KEY
        - page_id, type, order_key
        - content_json, props_json, snapshot_json TEXT
        - source_block_id TEXT (synced mirror reference)

    databases:
        - database_id TEXT PRIMARY KEY
        - page_id TEXT UNIQUE

    properties:
        - property_id TEXT PRIMARY KEY
        - database_id, name, type, position, config_json

    database_rows:
        - row_id TEXT PRIMARY KEY
        - database_id, page_id, position, values_json

    relation_refs:
        - target_row_id, property_id, source_row_id
        - PRIMARY KEY (target_row_id, property_id, source_row_id)
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from collections.abc import AsyncIterator, Iterable, Iterator
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import Any

from ..models import (
    BackReference,
    Block,
    Database,
    DatabaseRow,
    Page,
    Property,
    PropertyType,
)

logger = logging.getLogger(__name__)

# Keeps IN (...) lists under SQLite's host parameter limit
_CHUNK_SIZE = 500


class StoreNotInitializedError(Exception):
    """Workspace database does not exist."""

    pass


def _chunks(ids: Iterable[str]) -> Iterator[list[str]]:
    batch: list[str] = []
    for item in ids:
        batch.append(item)
        if len(batch) == _CHUNK_SIZE:
            yield batch
            batch = []
    if batch:
        yield batch


def _placeholders(values: list[Any]) -> str:
    return ",".join("?" for _ in values)


def _page_from_row(row: sqlite3.Row) -> Page:
    return Page(
        page_id=row["page_id"],
        owner_id=row["owner_id"],
        title=row["title"],
        icon=row["icon"],
        parent_id=row["parent_id"],
        is_archived=bool(row["is_archived"]),
        archived_at=row["archived_at"],
        position=row["position"],
        version=row["version"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _block_from_row(row: sqlite3.Row) -> Block:
    snapshot = row["snapshot_json"]
    return Block(
        block_id=row["block_id"],
        page_id=row["page_id"],
        type=row["type"],
        order_key=row["order_key"],
        content=json.loads(row["content_json"]),
        props=json.loads(row["props_json"]),
        source_block_id=row["source_block_id"],
        snapshot=json.loads(snapshot) if snapshot is not None else None,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _database_from_row(row: sqlite3.Row) -> Database:
    return Database(
        database_id=row["database_id"],
        page_id=row["page_id"],
        title=row["title"],
        created_at=row["created_at"],
    )


def _property_from_row(row: sqlite3.Row) -> Property:
    return Property(
        property_id=row["property_id"],
        database_id=row["database_id"],
        name=row["name"],
        type=PropertyType(row["type"]),
        position=row["position"],
        config=json.loads(row["config_json"]),
    )


def _db_row_from_row(row: sqlite3.Row) -> DatabaseRow:
    return DatabaseRow(
        row_id=row["row_id"],
        database_id=row["database_id"],
        page_id=row["page_id"],
        position=row["position"],
        values=json.loads(row["values_json"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


_PAGE_COLUMNS = {"title", "icon", "position"}
_BLOCK_COLUMNS = {
    "page_id": ("page_id", None),
    "type": ("type", None),
    "order_key": ("order_key", None),
    "content": ("content_json", json.dumps),
    "props": ("props_json", json.dumps),
    "source_block_id": ("source_block_id", None),
    "snapshot": ("snapshot_json", lambda v: None if v is None else json.dumps(v)),
}


class StoreSession:
    """One unit of work against the workspace database.

    Obtained from EntityStore.transaction() (read-write) or
    EntityStore.read() (read-only snapshot). All methods are coroutines so
    callers treat every store access as I/O.
    """

    def __init__(self, conn: sqlite3.Connection, store: EntityStore) -> None:
        self._conn = conn
        self._store = store

    def now_ms(self) -> int:
        """Current store timestamp (strictly increasing)."""
        return self._store.now_ms()

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------

    async def insert_page(self, page: Page) -> None:
        self._conn.execute(
            """
            INSERT INTO pages (page_id, owner_id, title, icon, parent_id, is_archived,
                               archived_at, position, version, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                page.page_id,
                page.owner_id,
                page.title,
                page.icon,
                page.parent_id,
                1 if page.is_archived else 0,
                page.archived_at,
                page.position,
                page.version,
                page.created_at,
                page.updated_at,
            ),
        )

    async def get_page(self, page_id: str) -> Page | None:
        cursor = self._conn.execute("SELECT * FROM pages WHERE page_id = ?", (page_id,))
        row = cursor.fetchone()
        return _page_from_row(row) if row else None

    async def get_pages(self, page_ids: Iterable[str]) -> dict[str, Page]:
        pages: dict[str, Page] = {}
        for batch in _chunks(page_ids):
            cursor = self._conn.execute(
                f"SELECT * FROM pages WHERE page_id IN ({_placeholders(batch)})", batch
            )
            for row in cursor.fetchall():
                pages[row["page_id"]] = _page_from_row(row)
        return pages

    async def get_children(self, parent_id: str) -> list[Page]:
        cursor = self._conn.execute(
            """
            SELECT * FROM pages WHERE parent_id = ?
            ORDER BY position, created_at, page_id
            """,
            (parent_id,),
        )
        return [_page_from_row(row) for row in cursor.fetchall()]

    async def get_children_of(self, parent_ids: Iterable[str]) -> list[Page]:
        """Direct children of several parents in one query per chunk."""
        children: list[Page] = []
        for batch in _chunks(parent_ids):
            cursor = self._conn.execute(
                f"""
                SELECT * FROM pages WHERE parent_id IN ({_placeholders(batch)})
                ORDER BY position, created_at, page_id
                """,
                batch,
            )
            children.extend(_page_from_row(row) for row in cursor.fetchall())
        return children

    async def get_root_pages(self, owner_id: str) -> list[Page]:
        """Active top-level pages of an owner."""
        cursor = self._conn.execute(
            """
            SELECT * FROM pages WHERE owner_id = ? AND parent_id IS NULL AND is_archived = 0
            ORDER BY position, created_at, page_id
            """,
            (owner_id,),
        )
        return [_page_from_row(row) for row in cursor.fetchall()]

    async def count_pages(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM pages").fetchone()[0]

    async def next_child_position(self, parent_id: str | None) -> int:
        cursor = self._conn.execute(
            "SELECT COALESCE(MAX(position), -1) + 1 FROM pages WHERE parent_id IS ?",
            (parent_id,),
        )
        return cursor.fetchone()[0]

    async def update_page_fields(self, page_id: str, fields: dict[str, Any]) -> bool:
        """Update non-structural page columns (title, icon, position)."""
        unknown = set(fields) - _PAGE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown page fields: {sorted(unknown)}")
        if not fields:
            return False
        assignments = ", ".join(f"{name} = ?" for name in fields)
        cursor = self._conn.execute(
            f"UPDATE pages SET {assignments}, updated_at = ? WHERE page_id = ?",
            (*fields.values(), self.now_ms(), page_id),
        )
        return cursor.rowcount > 0

    async def set_parent(
        self,
        page_id: str,
        parent_id: str | None,
        position: int,
        expected_version: int,
    ) -> bool:
        """Conditionally re-parent a page.

        Returns:
            False if the stored version no longer matches expected_version
        """
        cursor = self._conn.execute(
            """
            UPDATE pages SET parent_id = ?, position = ?, version = version + 1, updated_at = ?
            WHERE page_id = ? AND version = ?
            """,
            (parent_id, position, self.now_ms(), page_id, expected_version),
        )
        return cursor.rowcount > 0

    async def mark_archived(self, page_ids: list[str], archived_at: int) -> int:
        """Archive the given pages that are not archived yet."""
        count = 0
        for batch in _chunks(page_ids):
            cursor = self._conn.execute(
                f"""
                UPDATE pages
                SET is_archived = 1, archived_at = ?, version = version + 1, updated_at = ?
                WHERE is_archived = 0 AND page_id IN ({_placeholders(batch)})
                """,
                (archived_at, archived_at, *batch),
            )
            count += cursor.rowcount
        return count

    async def mark_restored(self, page_id: str, parent_id: str | None) -> bool:
        cursor = self._conn.execute(
            """
            UPDATE pages
            SET is_archived = 0, archived_at = NULL, parent_id = ?,
                version = version + 1, updated_at = ?
            WHERE page_id = ?
            """,
            (parent_id, self.now_ms(), page_id),
        )
        return cursor.rowcount > 0

    async def delete_pages(self, page_ids: list[str]) -> int:
        count = 0
        for batch in _chunks(page_ids):
            cursor = self._conn.execute(
                f"DELETE FROM pages WHERE page_id IN ({_placeholders(batch)})", batch
            )
            count += cursor.rowcount
        return count

    async def list_archived(self, owner_id: str) -> list[Page]:
        cursor = self._conn.execute(
            """
            SELECT * FROM pages WHERE owner_id = ? AND is_archived = 1
            ORDER BY archived_at DESC, page_id
            """,
            (owner_id,),
        )
        return [_page_from_row(row) for row in cursor.fetchall()]

    async def search_pages(self, owner_id: str, query: str, limit: int) -> list[Page]:
        escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        cursor = self._conn.execute(
            """
            SELECT * FROM pages
            WHERE owner_id = ? AND is_archived = 0 AND title LIKE ? ESCAPE '\\'
            ORDER BY updated_at DESC, page_id
            LIMIT ?
            """,
            (owner_id, f"%{escaped}%", limit),
        )
        return [_page_from_row(row) for row in cursor.fetchall()]

    # ------------------------------------------------------------------
    # Blocks
    # ------------------------------------------------------------------

    async def insert_block(self, block: Block) -> None:
        self._conn.execute(
            """
            INSERT INTO blocks (block_id, page_id, type, order_key, content_json, props_json,
                                source_block_id, snapshot_json, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                block.block_id,
                block.page_id,
                block.type,
                block.order_key,
                json.dumps(block.content),
                json.dumps(block.props),
                block.source_block_id,
                json.dumps(block.snapshot) if block.snapshot is not None else None,
                block.created_at,
                block.updated_at,
            ),
        )

    async def get_block(self, block_id: str) -> Block | None:
        cursor = self._conn.execute("SELECT * FROM blocks WHERE block_id = ?", (block_id,))
        row = cursor.fetchone()
        return _block_from_row(row) if row else None

    async def get_page_blocks(self, page_id: str) -> list[Block]:
        cursor = self._conn.execute(
            "SELECT * FROM blocks WHERE page_id = ? ORDER BY order_key, block_id",
            (page_id,),
        )
        return [_block_from_row(row) for row in cursor.fetchall()]

    async def get_blocks_for_pages(self, page_ids: Iterable[str]) -> list[Block]:
        blocks: list[Block] = []
        for batch in _chunks(page_ids):
            cursor = self._conn.execute(
                f"SELECT * FROM blocks WHERE page_id IN ({_placeholders(batch)})", batch
            )
            blocks.extend(_block_from_row(row) for row in cursor.fetchall())
        return blocks

    async def get_mirrors(self, source_block_ids: Iterable[str]) -> list[Block]:
        """Blocks whose source_block_id is one of the given ids."""
        mirrors: list[Block] = []
        for batch in _chunks(source_block_ids):
            cursor = self._conn.execute(
                f"""
                SELECT * FROM blocks WHERE source_block_id IN ({_placeholders(batch)})
                ORDER BY page_id, order_key
                """,
                batch,
            )
            mirrors.extend(_block_from_row(row) for row in cursor.fetchall())
        return mirrors

    async def max_order_key(self, page_id: str) -> str | None:
        cursor = self._conn.execute(
            "SELECT MAX(order_key) FROM blocks WHERE page_id = ?", (page_id,)
        )
        return cursor.fetchone()[0]

    async def update_block(self, block_id: str, fields: dict[str, Any]) -> bool:
        unknown = set(fields) - set(_BLOCK_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown block fields: {sorted(unknown)}")
        if not fields:
            return False
        assignments = []
        params: list[Any] = []
        for name, value in fields.items():
            column, encode = _BLOCK_COLUMNS[name]
            assignments.append(f"{column} = ?")
            params.append(encode(value) if encode else value)
        params.extend([self.now_ms(), block_id])
        cursor = self._conn.execute(
            f"UPDATE blocks SET {', '.join(assignments)}, updated_at = ? WHERE block_id = ?",
            params,
        )
        return cursor.rowcount > 0

    async def delete_blocks(self, block_ids: list[str]) -> int:
        count = 0
        for batch in _chunks(block_ids):
            cursor = self._conn.execute(
                f"DELETE FROM blocks WHERE block_id IN ({_placeholders(batch)})", batch
            )
            count += cursor.rowcount
        return count

    # ------------------------------------------------------------------
    # Databases and properties
    # ------------------------------------------------------------------

    async def insert_database(self, database: Database) -> None:
        self._conn.execute(
            "INSERT INTO databases (database_id, page_id, title, created_at) VALUES (?, ?, ?, ?)",
            (database.database_id, database.page_id, database.title, database.created_at),
        )

    async def get_database(self, database_id: str) -> Database | None:
        cursor = self._conn.execute(
            "SELECT * FROM databases WHERE database_id = ?", (database_id,)
        )
        row = cursor.fetchone()
        return _database_from_row(row) if row else None

    async def get_database_by_page(self, page_id: str) -> Database | None:
        cursor = self._conn.execute("SELECT * FROM databases WHERE page_id = ?", (page_id,))
        row = cursor.fetchone()
        return _database_from_row(row) if row else None

    async def get_databases_for_pages(self, page_ids: Iterable[str]) -> list[Database]:
        databases: list[Database] = []
        for batch in _chunks(page_ids):
            cursor = self._conn.execute(
                f"SELECT * FROM databases WHERE page_id IN ({_placeholders(batch)})", batch
            )
            databases.extend(_database_from_row(row) for row in cursor.fetchall())
        return databases

    async def delete_databases(self, database_ids: list[str]) -> int:
        count = 0
        for batch in _chunks(database_ids):
            marks = _placeholders(batch)
            self._conn.execute(f"DELETE FROM properties WHERE database_id IN ({marks})", batch)
            cursor = self._conn.execute(
                f"DELETE FROM databases WHERE database_id IN ({marks})", batch
            )
            count += cursor.rowcount
        return count

    async def insert_property(self, prop: Property) -> None:
        self._conn.execute(
            """
            INSERT INTO properties (property_id, database_id, name, type, position, config_json)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                prop.property_id,
                prop.database_id,
                prop.name,
                prop.type.value,
                prop.position,
                json.dumps(prop.config),
            ),
        )

    async def get_property(self, property_id: str) -> Property | None:
        cursor = self._conn.execute(
            "SELECT * FROM properties WHERE property_id = ?", (property_id,)
        )
        row = cursor.fetchone()
        return _property_from_row(row) if row else None

    async def get_properties(self, database_id: str) -> list[Property]:
        cursor = self._conn.execute(
            "SELECT * FROM properties WHERE database_id = ? ORDER BY position, property_id",
            (database_id,),
        )
        return [_property_from_row(row) for row in cursor.fetchall()]

    async def get_relation_properties(self) -> list[Property]:
        cursor = self._conn.execute(
            "SELECT * FROM properties WHERE type = ? ORDER BY database_id, position",
            (PropertyType.RELATION.value,),
        )
        return [_property_from_row(row) for row in cursor.fetchall()]

    async def next_property_position(self, database_id: str) -> int:
        cursor = self._conn.execute(
            "SELECT COALESCE(MAX(position), -1) + 1 FROM properties WHERE database_id = ?",
            (database_id,),
        )
        return cursor.fetchone()[0]

    async def update_property_config(self, property_id: str, config: dict[str, Any]) -> bool:
        cursor = self._conn.execute(
            "UPDATE properties SET config_json = ? WHERE property_id = ?",
            (json.dumps(config), property_id),
        )
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Rows
    # ------------------------------------------------------------------

    async def insert_row(self, row: DatabaseRow) -> None:
        self._conn.execute(
            """
            INSERT INTO database_rows (row_id, database_id, page_id, position, values_json,
                                       created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                row.row_id,
                row.database_id,
                row.page_id,
                row.position,
                json.dumps(row.values),
                row.created_at,
                row.updated_at,
            ),
        )

    async def get_row(self, row_id: str) -> DatabaseRow | None:
        cursor = self._conn.execute("SELECT * FROM database_rows WHERE row_id = ?", (row_id,))
        row = cursor.fetchone()
        return _db_row_from_row(row) if row else None

    async def get_rows(self, row_ids: Iterable[str]) -> dict[str, DatabaseRow]:
        rows: dict[str, DatabaseRow] = {}
        for batch in _chunks(row_ids):
            cursor = self._conn.execute(
                f"SELECT * FROM database_rows WHERE row_id IN ({_placeholders(batch)})", batch
            )
            for row in cursor.fetchall():
                rows[row["row_id"]] = _db_row_from_row(row)
        return rows

    async def get_database_rows(self, database_id: str) -> list[DatabaseRow]:
        cursor = self._conn.execute(
            "SELECT * FROM database_rows WHERE database_id = ? ORDER BY position, row_id",
            (database_id,),
        )
        return [_db_row_from_row(row) for row in cursor.fetchall()]

    async def get_row_ids_for_databases(self, database_ids: Iterable[str]) -> list[str]:
        row_ids: list[str] = []
        for batch in _chunks(database_ids):
            cursor = self._conn.execute(
                f"SELECT row_id FROM database_rows WHERE database_id IN ({_placeholders(batch)})",
                batch,
            )
            row_ids.extend(r[0] for r in cursor.fetchall())
        return row_ids

    async def get_row_ids_for_pages(self, page_ids: Iterable[str]) -> list[str]:
        row_ids: list[str] = []
        for batch in _chunks(page_ids):
            cursor = self._conn.execute(
                f"SELECT row_id FROM database_rows WHERE page_id IN ({_placeholders(batch)})",
                batch,
            )
            row_ids.extend(r[0] for r in cursor.fetchall())
        return row_ids

    async def get_row_by_page(self, page_id: str) -> DatabaseRow | None:
        cursor = self._conn.execute("SELECT * FROM database_rows WHERE page_id = ?", (page_id,))
        row = cursor.fetchone()
        return _db_row_from_row(row) if row else None

    async def existing_row_ids(self, row_ids: Iterable[str]) -> set[str]:
        found: set[str] = set()
        for batch in _chunks(row_ids):
            cursor = self._conn.execute(
                f"SELECT row_id FROM database_rows WHERE row_id IN ({_placeholders(batch)})",
                batch,
            )
            found.update(r[0] for r in cursor.fetchall())
        return found

    async def next_row_position(self, database_id: str) -> int:
        cursor = self._conn.execute(
            "SELECT COALESCE(MAX(position), -1) + 1 FROM database_rows WHERE database_id = ?",
            (database_id,),
        )
        return cursor.fetchone()[0]

    async def update_row_values(self, row_id: str, values: dict[str, Any]) -> bool:
        cursor = self._conn.execute(
            "UPDATE database_rows SET values_json = ?, updated_at = ? WHERE row_id = ?",
            (json.dumps(values), self.now_ms(), row_id),
        )
        return cursor.rowcount > 0

    async def delete_rows(self, row_ids: list[str]) -> int:
        count = 0
        for batch in _chunks(row_ids):
            cursor = self._conn.execute(
                f"DELETE FROM database_rows WHERE row_id IN ({_placeholders(batch)})", batch
            )
            count += cursor.rowcount
        return count

    # ------------------------------------------------------------------
    # Relation back-reference index
    # ------------------------------------------------------------------

    async def add_refs(self, refs: Iterable[BackReference]) -> None:
        self._conn.executemany(
            """
            INSERT OR IGNORE INTO relation_refs (target_row_id, property_id, source_row_id)
            VALUES (?, ?, ?)
            """,
            [(r.target_row_id, r.property_id, r.source_row_id) for r in refs],
        )

    async def remove_refs(self, refs: Iterable[BackReference]) -> None:
        self._conn.executemany(
            """
            DELETE FROM relation_refs
            WHERE target_row_id = ? AND property_id = ? AND source_row_id = ?
            """,
            [(r.target_row_id, r.property_id, r.source_row_id) for r in refs],
        )

    async def refs_to(self, target_row_ids: Iterable[str]) -> list[BackReference]:
        """Index entries pointing at the given rows."""
        refs: list[BackReference] = []
        for batch in _chunks(target_row_ids):
            cursor = self._conn.execute(
                f"""
                SELECT target_row_id, property_id, source_row_id FROM relation_refs
                WHERE target_row_id IN ({_placeholders(batch)})
                """,
                batch,
            )
            refs.extend(BackReference(*r) for r in cursor.fetchall())
        return refs

    async def delete_refs_from(self, source_row_ids: list[str]) -> int:
        """Drop index entries owned by the given (deleted) rows."""
        count = 0
        for batch in _chunks(source_row_ids):
            cursor = self._conn.execute(
                f"DELETE FROM relation_refs WHERE source_row_id IN ({_placeholders(batch)})",
                batch,
            )
            count += cursor.rowcount
        return count

    async def all_refs(self) -> set[BackReference]:
        cursor = self._conn.execute(
            "SELECT target_row_id, property_id, source_row_id FROM relation_refs"
        )
        return {BackReference(*r) for r in cursor.fetchall()}

    async def clear_refs(self) -> None:
        self._conn.execute("DELETE FROM relation_refs")

    async def all_rows(self) -> list[DatabaseRow]:
        cursor = self._conn.execute("SELECT * FROM database_rows ORDER BY database_id, position")
        return [_db_row_from_row(row) for row in cursor.fetchall()]

    async def get_stats(self) -> dict[str, int]:
        stats = {}
        for table in ("pages", "blocks", "databases", "properties", "database_rows", "relation_refs"):
            stats[table] = self._conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
        stats["archived_pages"] = self._conn.execute(
            "SELECT COUNT(*) FROM pages WHERE is_archived = 1"
        ).fetchone()[0]
        return stats


class EntityStore:
    """SQLite-backed persistence for one workspace.

    Thread safety:
        Each session opens its own connection.
        SQLite handles concurrent access via WAL mode; write sessions are
        additionally serialized in-process.

    Example:
        >>> store = EntityStore("/var/lib/folio")
        >>> await store.initialize()
        >>> async with store.transaction() as session:
        ...     await session.insert_page(page)
    """

    # SQLite schema version for migrations
    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        db_name: str = "folio.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
    ) -> None:
        """Initialize the entity store.

        Args:
            data_dir: Directory for the SQLite database file
            db_name: Database file name
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
        """
        self.data_dir = Path(data_dir)
        self.db_name = db_name
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self._write_lock = asyncio.Lock()
        self._last_ts = 0

    @property
    def db_path(self) -> Path:
        """Path to the database file."""
        return self.data_dir / self.db_name

    def now_ms(self) -> int:
        """Wall-clock Unix ms, bumped so consecutive calls never repeat."""
        now = int(time.time() * 1000)
        self._last_ts = max(now, self._last_ts + 1)
        return self._last_ts

    @contextmanager
    def _get_connection(self, create: bool = False) -> Iterator[sqlite3.Connection]:
        """Open a configured connection.

        Raises:
            StoreNotInitializedError: If database doesn't exist and create=False
        """
        db_path = self.db_path

        if not create and not db_path.exists():
            raise StoreNotInitializedError(f"Workspace database not found: {db_path}")

        db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")

            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS pages (
                page_id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                title TEXT NOT NULL DEFAULT 'Untitled',
                icon TEXT,
                parent_id TEXT,
                is_archived INTEGER NOT NULL DEFAULT 0,
                archived_at INTEGER,
                position INTEGER NOT NULL DEFAULT 0,
                version INTEGER NOT NULL DEFAULT 1,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_pages_parent ON pages(parent_id, position);
            CREATE INDEX IF NOT EXISTS idx_pages_owner_archived
                ON pages(owner_id, is_archived, archived_at DESC);

            CREATE TABLE IF NOT EXISTS blocks (
                block_id TEXT PRIMARY KEY,
                page_id TEXT NOT NULL,
                type TEXT NOT NULL,
                order_key TEXT NOT NULL,
                content_json TEXT NOT NULL DEFAULT '{}',
                props_json TEXT NOT NULL DEFAULT '{}',
                source_block_id TEXT,
                snapshot_json TEXT,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_blocks_page ON blocks(page_id, order_key);
            CREATE INDEX IF NOT EXISTS idx_blocks_source ON blocks(source_block_id);

            CREATE TABLE IF NOT EXISTS databases (
                database_id TEXT PRIMARY KEY,
                page_id TEXT NOT NULL UNIQUE,
                title TEXT NOT NULL DEFAULT 'Untitled',
                created_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS properties (
                property_id TEXT PRIMARY KEY,
                database_id TEXT NOT NULL,
                name TEXT NOT NULL,
                type TEXT NOT NULL,
                position INTEGER NOT NULL DEFAULT 0,
                config_json TEXT NOT NULL DEFAULT '{}'
            );

            CREATE INDEX IF NOT EXISTS idx_properties_database
                ON properties(database_id, position);

            CREATE TABLE IF NOT EXISTS database_rows (
                row_id TEXT PRIMARY KEY,
                database_id TEXT NOT NULL,
                page_id TEXT,
                position INTEGER NOT NULL DEFAULT 0,
                values_json TEXT NOT NULL DEFAULT '{}',
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_rows_database ON database_rows(database_id, position);
            CREATE INDEX IF NOT EXISTS idx_rows_page ON database_rows(page_id);

            -- Relation back-reference index: target row -> referencing cells
            CREATE TABLE IF NOT EXISTS relation_refs (
                target_row_id TEXT NOT NULL,
                property_id TEXT NOT NULL,
                source_row_id TEXT NOT NULL,
                PRIMARY KEY (target_row_id, property_id, source_row_id)
            );

            CREATE INDEX IF NOT EXISTS idx_relation_refs_source
                ON relation_refs(source_row_id, property_id);

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        async with self._write_lock:
            with self._get_connection(create=True) as conn:
                self._create_schema(conn)
                logger.info(f"Initialized workspace database: {self.db_path}")

    async def exists(self) -> bool:
        """Check if the workspace database exists."""
        return self.db_path.exists()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreSession]:
        """Open a read-write session committed as one transaction.

        Any exception raised inside the block rolls everything back.
        """
        async with self._write_lock:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield StoreSession(conn, self)
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")

    @asynccontextmanager
    async def read(self) -> AsyncIterator[StoreSession]:
        """Open a read-only session over a consistent snapshot."""
        with self._get_connection() as conn:
            conn.execute("BEGIN")
            try:
                yield StoreSession(conn, self)
            finally:
                conn.execute("ROLLBACK")

    async def get_stats(self) -> dict[str, int]:
        """Entity counts for the workspace."""
        async with self.read() as session:
            return await session.get_stats()
