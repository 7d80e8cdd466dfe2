"""
Unit tests for the Archive/Restore Controller.

Tests cover:
- Cascading archive with one shared archived_at
- Archive idempotency
- Non-cascading restore and restore to top level
- Purge preconditions and cascade
- Purge cleanup of blocks, databases and rows
"""

import pytest

from engine.folio.errors import NotArchivedError, NotFoundError


class TestArchiveController:
    """Tests for ArchiveController."""

    async def make_tree(self, workspace):
        root = await workspace.pages.create_page("user-1", "Root")
        child = await workspace.pages.create_page("user-1", "Child", parent_id=root.page_id)
        grandchild = await workspace.pages.create_page("user-1", "Grandchild", parent_id=child.page_id)
        return root, child, grandchild

    @pytest.mark.asyncio
    async def test_archive_cascades(self, workspace, notifier):
        """Archiving marks the whole subtree with one archived_at."""
        root, child, grandchild = await self.make_tree(workspace)
        await workspace.notifier.flush()
        notifier.clear()

        archived = await workspace.archive.archive_page(root.page_id)

        assert [p.page_id for p in archived] == [root.page_id, child.page_id, grandchild.page_id]
        assert all(p.is_archived for p in archived)
        assert len({p.archived_at for p in archived}) == 1
        await workspace.notifier.flush()
        for page in archived:
            assert notifier.get_event_names(f"page:{page.page_id}") == ["page.archived"]
        user_events = notifier.get_events("user:user-1")
        assert user_events[0].payload["archivedPageIds"] == [p.page_id for p in archived]

    @pytest.mark.asyncio
    async def test_archive_idempotent(self, workspace, notifier):
        """Re-archiving keeps timestamps and emits nothing."""
        root, child, _ = await self.make_tree(workspace)
        first = await workspace.archive.archive_page(root.page_id)
        await workspace.notifier.flush()
        notifier.clear()

        again = await workspace.archive.archive_page(root.page_id)

        assert again == []
        await workspace.notifier.flush()
        assert notifier.get_event_count() == 0
        stored = await workspace.pages.get_page(child.page_id)
        assert stored.archived_at == first[1].archived_at

    @pytest.mark.asyncio
    async def test_archive_keeps_earlier_archived_at(self, workspace):
        """A subtree archived earlier keeps its own archived_at."""
        root, child, grandchild = await self.make_tree(workspace)
        earlier = await workspace.archive.archive_page(child.page_id)

        archived = await workspace.archive.archive_page(root.page_id)

        assert [p.page_id for p in archived] == [root.page_id]
        stored = await workspace.pages.get_page(grandchild.page_id)
        assert stored.archived_at == earlier[1].archived_at
        assert stored.archived_at < archived[0].archived_at

    @pytest.mark.asyncio
    async def test_archive_unknown_page(self, workspace):
        """Archiving an unknown page raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await workspace.archive.archive_page("missing")

    @pytest.mark.asyncio
    async def test_archived_pages_listed(self, workspace):
        """Archived pages are listed most recent first."""
        a = await workspace.pages.create_page("user-1", "A")
        b = await workspace.pages.create_page("user-1", "B")
        await workspace.archive.archive_page(a.page_id)
        await workspace.archive.archive_page(b.page_id)

        archived = await workspace.archive.get_archived_pages("user-1")

        assert [p.page_id for p in archived] == [b.page_id, a.page_id]
        assert await workspace.archive.get_archived_pages("user-2") == []

    @pytest.mark.asyncio
    async def test_restore_does_not_cascade(self, workspace, notifier):
        """Restoring the root leaves its descendants archived."""
        root, child, _ = await self.make_tree(workspace)
        await workspace.archive.archive_page(root.page_id)
        await workspace.notifier.flush()
        notifier.clear()

        restored = await workspace.archive.restore_page(root.page_id)

        assert not restored.is_archived
        assert restored.archived_at is None
        assert (await workspace.pages.get_page(child.page_id)).is_archived
        await workspace.notifier.flush()
        assert notifier.get_event_names(f"page:{root.page_id}") == ["page.restored"]

    @pytest.mark.asyncio
    async def test_restore_child_of_archived_parent(self, workspace):
        """A page whose parent is still archived is restored to the top level."""
        root, child, _ = await self.make_tree(workspace)
        await workspace.archive.archive_page(root.page_id)

        restored = await workspace.archive.restore_page(child.page_id)

        assert restored.parent_id is None
        roots = await workspace.pages.list_root_pages("user-1")
        assert [p.page_id for p in roots] == [child.page_id]

    @pytest.mark.asyncio
    async def test_restore_under_active_parent(self, workspace):
        """A page whose parent is active keeps its parent."""
        root, child, _ = await self.make_tree(workspace)
        await workspace.archive.archive_page(child.page_id)

        restored = await workspace.archive.restore_page(child.page_id)

        assert restored.parent_id == root.page_id

    @pytest.mark.asyncio
    async def test_restore_active_page_is_noop(self, workspace, notifier):
        """Restoring an active page changes nothing."""
        page = await workspace.pages.create_page("user-1", "P")
        await workspace.notifier.flush()
        notifier.clear()

        restored = await workspace.archive.restore_page(page.page_id)

        assert restored == page
        await workspace.notifier.flush()
        assert notifier.get_event_count() == 0

    @pytest.mark.asyncio
    async def test_delete_requires_archive(self, workspace):
        """Permanent delete of an active page is refused."""
        page = await workspace.pages.create_page("user-1", "P")

        with pytest.raises(NotArchivedError):
            await workspace.archive.delete_page(page.page_id)

    @pytest.mark.asyncio
    async def test_delete_purges_subtree(self, workspace, notifier):
        """Delete removes the page, its descendants and their blocks."""
        root, child, grandchild = await self.make_tree(workspace)
        await workspace.blocks.create_block(grandchild.page_id, "paragraph", {"text": "hi"})
        await workspace.archive.archive_page(root.page_id)
        await workspace.notifier.flush()
        notifier.clear()

        deleted = await workspace.archive.delete_page(root.page_id)

        assert deleted == [root.page_id, child.page_id, grandchild.page_id]
        for page_id in deleted:
            with pytest.raises(NotFoundError):
                await workspace.pages.get_page(page_id)
        stats = await workspace.store.get_stats()
        assert stats["pages"] == 0
        assert stats["blocks"] == 0
        await workspace.notifier.flush()
        assert "page.deleted" in notifier.get_event_names("user:user-1")

    @pytest.mark.asyncio
    async def test_delete_subpage_only(self, workspace):
        """Deleting an archived child leaves its active parent alone."""
        root, child, _ = await self.make_tree(workspace)
        await workspace.archive.archive_page(child.page_id)

        await workspace.archive.delete_page(child.page_id)

        assert await workspace.tree.get_children(root.page_id) == []
        assert (await workspace.pages.get_page(root.page_id)).title == "Root"

    @pytest.mark.asyncio
    async def test_delete_purges_database_and_rows(self, workspace, notifier):
        """Purging a database page removes the database, its rows and row pages."""
        page = await workspace.pages.create_page("user-1", "Tasks")
        database = await workspace.databases.create_database(page.page_id)
        row = await workspace.databases.add_row(database.database_id)
        await workspace.archive.archive_page(page.page_id)

        deleted = await workspace.archive.delete_page(page.page_id)

        assert row.page_id in deleted
        with pytest.raises(NotFoundError):
            await workspace.databases.get_database(database.database_id)
        with pytest.raises(NotFoundError):
            await workspace.databases.get_row(row.row_id)
        await workspace.notifier.flush()
        assert notifier.get_event_names(f"database:{database.database_id}")[-1] == "database.deleted"
