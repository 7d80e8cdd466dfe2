"""
Page Tree Manager.

Owns the parent/child structure of pages: children and descendant sets,
ancestor paths, sibling order and moves.

Invariants:
    - The parent relation is a forest (no page is its own ancestor)
    - A page created or moved under an archived page is archived with
      its subtree, so no active page hangs off an archived one
    - Traversals never loop: a revisited page or a walk longer than the
      total page count raises CorruptHierarchyError

How to change safely:
    - Cycle checks must read parents inside the same write transaction
      that performs the move
    - The session-level helpers (collect_descendants, ancestor_chain) are
      used by other components inside their own transactions; keep them
      free of commits and event publishing
"""

from __future__ import annotations

import logging

from ..errors import (
    ConcurrentModificationError,
    CorruptHierarchyError,
    InvalidMoveError,
    NotFoundError,
)
from ..models import Page
from ..notify import ChangeEvent, ChangeNotifier, page_channel, user_channel
from ..store import EntityStore, StoreSession

logger = logging.getLogger(__name__)


async def require_page(session: StoreSession, page_id: str) -> Page:
    page = await session.get_page(page_id)
    if page is None:
        raise NotFoundError("Page", page_id)
    return page


async def collect_descendants(session: StoreSession, page_id: str) -> list[Page]:
    """Breadth-first subtree of page_id, excluding the page itself.

    Raises:
        CorruptHierarchyError: If the stored hierarchy loops
    """
    bound = await session.count_pages()
    visited = {page_id}
    result: list[Page] = []
    frontier = [page_id]

    while frontier:
        children = await session.get_children_of(frontier)
        frontier = []
        for child in children:
            if child.page_id in visited or len(visited) > bound:
                logger.error(
                    "Cycle detected while collecting descendants",
                    extra={"page_id": page_id, "revisited": child.page_id, "visited": len(visited)},
                )
                raise CorruptHierarchyError(page_id, len(visited))
            visited.add(child.page_id)
            result.append(child)
            frontier.append(child.page_id)

    return result


async def ancestor_chain(session: StoreSession, page: Page) -> list[Page]:
    """Ancestors of page, nearest first. A dangling parent ends the chain.

    Raises:
        CorruptHierarchyError: If the parent chain loops
    """
    bound = await session.count_pages()
    visited = {page.page_id}
    chain: list[Page] = []
    parent_id = page.parent_id

    while parent_id is not None:
        if parent_id in visited or len(visited) > bound:
            logger.error(
                "Cycle detected in parent chain",
                extra={"page_id": page.page_id, "revisited": parent_id, "visited": len(visited)},
            )
            raise CorruptHierarchyError(page.page_id, len(visited))
        parent = await session.get_page(parent_id)
        if parent is None:
            break
        visited.add(parent_id)
        chain.append(parent)
        parent_id = parent.parent_id

    return chain


async def require_parent(session: StoreSession, parent_id: str | None) -> Page | None:
    """Load a prospective parent; None stands for the top level."""
    if parent_id is None:
        return None
    return await require_page(session, parent_id)


def attaches_archived(parent: Page | None) -> bool:
    """Whether a page attached under parent must be archived with it."""
    return parent is not None and parent.is_archived


class PageTreeManager:
    """Structural operations on the page forest.

    Every public method runs in its own store transaction; events are
    published after commit.

    Example:
        >>> tree = PageTreeManager(store, notifier)
        >>> await tree.move("p2", new_parent_id="p1")
        >>> [p.page_id for p in await tree.get_breadcrumbs("p2")]
        ['p1', 'p2']
    """

    def __init__(self, store: EntityStore, notifier: ChangeNotifier) -> None:
        self.store = store
        self.notifier = notifier

    async def get_children(self, page_id: str) -> list[Page]:
        async with self.store.read() as session:
            await require_page(session, page_id)
            return await session.get_children(page_id)

    async def get_descendants(self, page_id: str) -> list[Page]:
        async with self.store.read() as session:
            await require_page(session, page_id)
            return await collect_descendants(session, page_id)

    async def get_ancestors(self, page_id: str) -> list[Page]:
        """Ancestors of page_id, root first."""
        async with self.store.read() as session:
            page = await require_page(session, page_id)
            chain = await ancestor_chain(session, page)
        chain.reverse()
        return chain

    async def get_breadcrumbs(self, page_id: str) -> list[Page]:
        """Root-first path ending at the page itself."""
        async with self.store.read() as session:
            page = await require_page(session, page_id)
            chain = await ancestor_chain(session, page)
        chain.reverse()
        chain.append(page)
        return chain

    async def move(
        self,
        page_id: str,
        new_parent_id: str | None,
        expected_version: int | None = None,
    ) -> Page:
        """Re-parent a page, appending it after the new parent's children.

        Moving under an archived page archives the moved subtree with it.

        Args:
            page_id: Page to move
            new_parent_id: New parent, or None for top level
            expected_version: Version the caller last read, if any

        Returns:
            The moved page as stored after the move

        Raises:
            NotFoundError: If the page or the new parent is missing
            InvalidMoveError: If the new parent is the page or one of its
                descendants
            ConcurrentModificationError: If the page changed concurrently
        """
        async with self.store.transaction() as session:
            page = await require_page(session, page_id)
            if expected_version is not None and expected_version != page.version:
                raise ConcurrentModificationError(page_id, expected_version, page.version)

            if new_parent_id == page_id:
                raise InvalidMoveError(
                    f"Page {page_id} cannot be its own parent",
                    details={"page_id": page_id, "new_parent_id": new_parent_id},
                )

            parent = await require_parent(session, new_parent_id)
            if parent is not None:
                chain = await ancestor_chain(session, parent)
                if any(p.page_id == page_id for p in chain):
                    raise InvalidMoveError(
                        f"Cannot move page {page_id} under its own descendant {new_parent_id}",
                        details={"page_id": page_id, "new_parent_id": new_parent_id},
                    )

            position = await session.next_child_position(new_parent_id)
            if not await session.set_parent(page_id, new_parent_id, position, page.version):
                current = await session.get_page(page_id)
                raise ConcurrentModificationError(
                    page_id, page.version, current.version if current else None
                )

            archived_ids: list[str] = []
            archived_at = None
            if attaches_archived(parent):
                subtree = [await require_page(session, page_id), *await collect_descendants(session, page_id)]
                archived_ids = [p.page_id for p in subtree if not p.is_archived]
                archived_at = session.now_ms()
                await session.mark_archived(archived_ids, archived_at)

            moved = await require_page(session, page_id)

        logger.debug(
            "Page moved",
            extra={
                "page_id": page_id,
                "old_parent_id": page.parent_id,
                "new_parent_id": new_parent_id,
                "archived": len(archived_ids),
            },
        )
        events = [
            ChangeEvent(
                page_channel(page_id),
                "page.moved",
                {"pageId": page_id, "oldParentId": page.parent_id, "newParentId": new_parent_id},
            )
        ]
        events.extend(
            ChangeEvent(page_channel(pid), "page.archived", {"pageId": pid, "archivedAt": archived_at})
            for pid in archived_ids
        )
        await self.notifier.publish_all(events)
        return moved

    async def reorder_children(self, parent_id: str, ordered_page_ids: list[str]) -> list[Page]:
        """Rewrite sibling positions.

        Listed pages take positions 0..n-1 in list order; children not
        listed keep their relative order after them.

        Raises:
            NotFoundError: If the parent is missing
            InvalidMoveError: If an id is not a current child of parent_id
        """
        if len(set(ordered_page_ids)) != len(ordered_page_ids):
            raise InvalidMoveError(
                "Duplicate page ids in reorder request", details={"parent_id": parent_id}
            )

        async with self.store.transaction() as session:
            parent = await require_page(session, parent_id)
            children = await session.get_children(parent_id)
            child_ids = [c.page_id for c in children]
            unknown = [pid for pid in ordered_page_ids if pid not in set(child_ids)]
            if unknown:
                raise InvalidMoveError(
                    f"Pages are not children of {parent_id}: {unknown}",
                    details={"parent_id": parent_id, "page_ids": unknown},
                )

            listed = set(ordered_page_ids)
            final_order = list(ordered_page_ids) + [pid for pid in child_ids if pid not in listed]
            for position, pid in enumerate(final_order):
                await session.update_page_fields(pid, {"position": position})

            reordered = await session.get_children(parent_id)

        events = [
            ChangeEvent(
                page_channel(parent_id),
                "page.reordered",
                {"parentId": parent_id, "orderedPageIds": final_order},
            ),
            ChangeEvent(
                user_channel(parent.owner_id),
                "page.reordered",
                {"parentId": parent_id, "orderedPageIds": final_order},
            ),
        ]
        await self.notifier.publish_all(events)
        return reordered
