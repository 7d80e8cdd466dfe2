"""
Archive/Restore Controller.

Page lifecycle: Active -> Archived -> Purged (terminal), with restore
taking an Archived page back to Active.

- archive_page cascades down the whole subtree with one shared archived_at
- restore_page never cascades; a page whose parent is archived or gone
  is restored to the top level
- delete_page purges an archived subtree and everything it owns, then
  repairs whatever survives outside it (relation cells, reverse
  properties, synced mirrors)

Invariants:
    - Every operation is one store transaction (all-or-nothing)
    - Archiving is idempotent: already archived pages keep their
      archived_at, still-active descendants are archived on re-run
    - After a purge no surviving relation cell or index entry mentions a
      purged row

How to change safely:
    - Anything a purged page owns must be deleted in the same transaction
    - Cleanup of surviving entities goes through the owning component's
      session-level hook, never through direct SQL here
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..errors import NotArchivedError
from ..models import Page
from ..notify import ChangeEvent, ChangeNotifier, database_channel, page_channel, user_channel
from ..store import EntityStore, StoreSession
from .tree import collect_descendants, require_page

if TYPE_CHECKING:
    from ..blocks.propagator import SyncedBlockPropagator
    from ..relations.engine import RelationEngine

logger = logging.getLogger(__name__)


class ArchiveController:
    """Cascading archive, non-cascading restore and permanent purge.

    Example:
        >>> await archive.archive_page("root")
        >>> [p.page_id for p in await archive.get_archived_pages("user-1")]
        ['root', 'child']
        >>> await archive.delete_page("root")
    """

    def __init__(
        self,
        store: EntityStore,
        notifier: ChangeNotifier,
        relations: RelationEngine,
        propagator: SyncedBlockPropagator,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.relations = relations
        self.propagator = propagator

    async def archive_page(self, page_id: str) -> list[Page]:
        """Archive a page and its entire subtree.

        Returns:
            Pages newly archived by this call (empty if nothing changed)

        Raises:
            NotFoundError: If the page does not exist
        """
        async with self.store.transaction() as session:
            page = await require_page(session, page_id)
            subtree = [page, *await collect_descendants(session, page_id)]
            targets = [p.page_id for p in subtree if not p.is_archived]
            archived_at = session.now_ms()
            if targets:
                await session.mark_archived(targets, archived_at)
            stored = await session.get_pages(targets)
            newly_archived = [stored[pid] for pid in targets]

        logger.info(
            "Archived page subtree",
            extra={"page_id": page_id, "subtree_size": len(subtree), "archived": len(targets)},
        )

        events = [
            ChangeEvent(page_channel(p.page_id), "page.archived", {"pageId": p.page_id, "archivedAt": archived_at})
            for p in newly_archived
        ]
        if newly_archived:
            events.append(
                ChangeEvent(
                    user_channel(page.owner_id),
                    "page.archived",
                    {"pageId": page_id, "archivedPageIds": targets},
                )
            )
        await self.notifier.publish_all(events)
        return newly_archived

    async def restore_page(self, page_id: str) -> Page:
        """Un-archive this page only.

        If the parent is archived or no longer exists the page becomes a
        top-level page. Restoring an active page changes nothing.

        Raises:
            NotFoundError: If the page does not exist
        """
        async with self.store.transaction() as session:
            page = await require_page(session, page_id)
            if not page.is_archived:
                return page

            parent_id = page.parent_id
            if parent_id is not None:
                parent = await session.get_page(parent_id)
                if parent is None or parent.is_archived:
                    parent_id = None

            await session.mark_restored(page_id, parent_id)
            restored = await require_page(session, page_id)

        logger.info(
            "Restored page",
            extra={"page_id": page_id, "old_parent_id": page.parent_id, "parent_id": parent_id},
        )
        payload = {"pageId": page_id, "parentId": parent_id}
        await self.notifier.publish_all([
            ChangeEvent(page_channel(page_id), "page.restored", payload),
            ChangeEvent(user_channel(page.owner_id), "page.restored", payload),
        ])
        return restored

    async def get_archived_pages(self, owner_id: str) -> list[Page]:
        """Archived pages of owner_id, most recently archived first."""
        async with self.store.read() as session:
            return await session.list_archived(owner_id)

    async def delete_page(self, page_id: str) -> list[str]:
        """Permanently delete an archived page and everything under it.

        Returns:
            Ids of the purged pages, root first

        Raises:
            NotFoundError: If the page does not exist
            NotArchivedError: If the page is not archived
        """
        async with self.store.transaction() as session:
            page = await require_page(session, page_id)
            if not page.is_archived:
                raise NotArchivedError(page_id)
            subtree_ids, events = await self.purge_subtree(session, page_id)

        events.append(
            ChangeEvent(user_channel(page.owner_id), "page.deleted", {"pageId": page_id, "deletedPageIds": subtree_ids})
        )
        await self.notifier.publish_all(events)
        return subtree_ids

    async def purge_subtree(self, session: StoreSession, page_id: str) -> tuple[list[str], list[ChangeEvent]]:
        """Delete page_id, its descendants and everything they own.

        Rows of purged databases and rows whose row page is purged are
        deleted through the relation engine's row delete hook. Row pages of
        purged databases that live outside the subtree are kept as plain
        pages.

        Returns:
            Purged page ids (root first) and the events to publish after commit
        """
        events: list[ChangeEvent] = []
        subtree_ids = [page_id] + [p.page_id for p in await collect_descendants(session, page_id)]

        databases = await session.get_databases_for_pages(subtree_ids)
        database_ids = [d.database_id for d in databases]
        property_ids = [
            prop.property_id
            for database_id in database_ids
            for prop in await session.get_properties(database_id)
        ]

        row_ids = list(dict.fromkeys(
            await session.get_row_ids_for_databases(database_ids)
            + await session.get_row_ids_for_pages(subtree_ids)
        ))

        events += await self.relations.remove_row_references(session, row_ids)
        await self.relations.detach_reverse_properties(session, property_ids)

        block_ids = [b.block_id for b in await session.get_blocks_for_pages(subtree_ids)]
        events += await self.propagator.orphan_mirrors(session, block_ids)

        await session.delete_rows(row_ids)
        await session.delete_blocks(block_ids)
        await session.delete_databases(database_ids)
        await session.delete_pages(subtree_ids)

        logger.info(
            "Purged page subtree",
            extra={
                "page_id": page_id,
                "pages": len(subtree_ids),
                "blocks": len(block_ids),
                "databases": len(database_ids),
                "rows": len(row_ids),
            },
        )

        events += [ChangeEvent(page_channel(pid), "page.deleted", {"pageId": pid}) for pid in subtree_ids]
        events += [
            ChangeEvent(database_channel(did), "database.deleted", {"databaseId": did}) for did in database_ids
        ]
        return subtree_ids, events
