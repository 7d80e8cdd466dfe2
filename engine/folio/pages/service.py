"""
Page CRUD and search.

Plain page operations that do not cascade: create, read, rename and
title search. Structural edits live in tree.py, lifecycle in archive.py.
"""

from __future__ import annotations

import logging
import uuid

from ..models import Page, PropertyType
from ..notify import ChangeEvent, ChangeNotifier, page_channel, user_channel
from ..store import EntityStore
from .tree import attaches_archived, require_page, require_parent

logger = logging.getLogger(__name__)


class PageService:
    """Create, read, update and search pages."""

    def __init__(self, store: EntityStore, notifier: ChangeNotifier, search_limit: int = 10) -> None:
        self.store = store
        self.notifier = notifier
        self.search_limit = search_limit

    async def create_page(
        self,
        owner_id: str,
        title: str = "Untitled",
        parent_id: str | None = None,
        icon: str | None = None,
    ) -> Page:
        """Create a page at the end of its parent's children.

        A page created under an archived parent starts out archived.

        Raises:
            NotFoundError: If the parent does not exist
        """
        async with self.store.transaction() as session:
            parent = await require_parent(session, parent_id)
            archived = attaches_archived(parent)
            now = session.now_ms()
            page = Page(
                page_id=str(uuid.uuid4()),
                owner_id=owner_id,
                title=title,
                icon=icon,
                parent_id=parent_id,
                position=await session.next_child_position(parent_id),
                is_archived=archived,
                archived_at=now if archived else None,
                created_at=now,
                updated_at=now,
            )
            await session.insert_page(page)

        logger.debug("Page created", extra={"page_id": page.page_id, "parent_id": parent_id})
        payload = {"pageId": page.page_id, "parentId": parent_id, "title": title, "isArchived": archived}
        events = [ChangeEvent(user_channel(owner_id), "page.created", payload)]
        if parent_id is not None:
            events.append(ChangeEvent(page_channel(parent_id), "page.created", payload))
        await self.notifier.publish_all(events)
        return page

    async def get_page(self, page_id: str) -> Page:
        async with self.store.read() as session:
            return await require_page(session, page_id)

    async def list_root_pages(self, owner_id: str) -> list[Page]:
        async with self.store.read() as session:
            return await session.get_root_pages(owner_id)

    async def update_page(self, page_id: str, title: str | None = None, icon: str | None = None) -> Page:
        """Rename a page or change its icon.

        A row page's title is copied into the row's title cell.

        Raises:
            NotFoundError: If the page does not exist
        """
        fields = {}
        if title is not None:
            fields["title"] = title
        if icon is not None:
            fields["icon"] = icon

        async with self.store.transaction() as session:
            page = await require_page(session, page_id)
            if not fields:
                return page
            await session.update_page_fields(page_id, fields)

            if title is not None:
                row = await session.get_row_by_page(page_id)
                if row is not None:
                    for prop in await session.get_properties(row.database_id):
                        if prop.type == PropertyType.TITLE:
                            await session.update_row_values(row.row_id, {**row.values, prop.property_id: title})
                            break

            updated = await require_page(session, page_id)

        await self.notifier.publish(
            page_channel(page_id),
            "page.updated",
            {"pageId": page_id, "title": updated.title, "icon": updated.icon},
        )
        return updated

    async def search_pages(self, owner_id: str, query: str, limit: int | None = None) -> list[Page]:
        """Active pages of owner_id whose title contains query (case-insensitive).

        Most recently updated first.
        """
        async with self.store.read() as session:
            return await session.search_pages(owner_id, query, limit or self.search_limit)
