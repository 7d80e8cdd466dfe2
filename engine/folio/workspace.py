"""
Workspace facade.

Wires the entity store, the change notifier and the logic components
together and exposes them as one object. The HTTP layer, the maintenance
CLI and the tests all go through a Workspace.

Invariants:
    - Components share one store and one notifier
    - The block registry is frozen once the workspace is open
    - close() delivers pending change events before the transport closes

How to change safely:
    - New components take (store, notifier) plus the components they call
      inside their own transactions
"""

from __future__ import annotations

import logging
from pathlib import Path

from .blocks import BlockTypeRegistry, SyncedBlockPropagator, default_block_registry
from .config import ServerConfig
from .notify import ChangeNotifier, InMemoryNotifier, NotifierTransport, create_notifier_transport
from .pages import ArchiveController, PageService, PageTreeManager
from .relations import DatabaseService, IntegrityChecker, RelationEngine, RollupService
from .store import EntityStore

logger = logging.getLogger(__name__)


class Workspace:
    """All Folio components over one workspace database.

    Attributes:
        store: Entity store
        notifier: Change notifier (fire-and-forget)
        pages: Page create/read/update/search
        tree: Page Tree Manager
        archive: Archive/Restore Controller
        blocks: Synced Block Propagator
        relations: Relation Engine
        databases: Databases, properties and rows
        integrity: Relation integrity checker
        rollups: Rollup computation

    Example:
        >>> workspace = Workspace(EntityStore("/tmp/folio"), InMemoryNotifier())
        >>> await workspace.open()
        >>> page = await workspace.pages.create_page("user-1", "Notes")
        >>> await workspace.close()
    """

    def __init__(
        self,
        store: EntityStore,
        transport: NotifierTransport | None = None,
        registry: BlockTypeRegistry | None = None,
        max_sync_hops: int = 16,
        search_limit: int = 10,
    ) -> None:
        self.store = store
        self.transport = transport or InMemoryNotifier()
        self.registry = registry or default_block_registry()
        self.notifier = ChangeNotifier(self.transport)

        self.tree = PageTreeManager(store, self.notifier)
        self.pages = PageService(store, self.notifier, search_limit=search_limit)
        self.relations = RelationEngine(store, self.notifier)
        self.blocks = SyncedBlockPropagator(store, self.notifier, self.registry, max_sync_hops=max_sync_hops)
        self.archive = ArchiveController(store, self.notifier, self.relations, self.blocks)
        self.databases = DatabaseService(store, self.notifier, self.relations, self.archive)
        self.integrity = IntegrityChecker(store, self.relations)
        self.rollups = RollupService(store, self.relations)
        self._open = False

    @classmethod
    def from_config(cls, config: ServerConfig) -> Workspace:
        """Build a workspace from server configuration."""
        store = EntityStore(
            data_dir=config.storage.data_dir,
            db_name=config.storage.db_name,
            wal_mode=config.storage.wal_mode,
            busy_timeout_ms=config.storage.busy_timeout_ms,
            cache_size_pages=config.storage.cache_size_pages,
        )
        return cls(
            store,
            create_notifier_transport(config),
            max_sync_hops=config.engine.max_sync_hops,
            search_limit=config.engine.search_limit,
        )

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        """Initialize the database, connect the transport and start event delivery."""
        if self._open:
            return
        Path(self.store.data_dir).mkdir(parents=True, exist_ok=True)
        await self.store.initialize()
        if not self.registry.frozen:
            self.registry.freeze()
        await self.transport.connect()
        await self.notifier.start()
        self._open = True
        logger.info("Workspace opened", extra={"db_path": str(self.store.db_path)})

    async def close(self) -> None:
        """Deliver pending events, then disconnect the transport."""
        if not self._open:
            return
        await self.notifier.stop()
        await self.transport.close()
        self._open = False
        logger.info("Workspace closed")
