"""
Unit tests for the Synced Block Propagator.

Tests cover:
- Block creation and ordering
- Mirror creation and resolution
- Edit propagation and read-only mirrors
- Cycle and hop-bound detection
- Placeholder conversion when a source is deleted
"""

import pytest

from engine.folio.blocks import order_key_after
from engine.folio.errors import (
    BlockValidationError,
    NotFoundError,
    ReadOnlyMirrorError,
    SyncCycleError,
)


class TestOrderKeys:
    """Tests for order_key_after."""

    def test_first_key(self):
        """The first key of a page is the step value, zero-padded."""
        assert order_key_after(None) == "000000001024"

    def test_next_key_sorts_after(self):
        """Generated keys sort after their predecessor."""
        key = order_key_after(None)
        following = order_key_after(key)

        assert following == "000000002048"
        assert following > key

    def test_custom_key(self):
        """Client-chosen keys are extended."""
        assert order_key_after("a") == "a1"
        assert order_key_after("a") > "a"


class TestSyncedBlockPropagator:
    """Tests for SyncedBlockPropagator."""

    async def make_pages(self, workspace):
        p1 = await workspace.pages.create_page("user-1", "P1")
        p2 = await workspace.pages.create_page("user-1", "P2")
        return p1, p2

    @pytest.mark.asyncio
    async def test_create_blocks_in_order(self, workspace, notifier):
        """Blocks without an order key are appended."""
        p1, _ = await self.make_pages(workspace)
        first = await workspace.blocks.create_block(p1.page_id, "heading", {"text": "Title"})
        second = await workspace.blocks.create_block(p1.page_id, "paragraph", {"text": "Body"})

        blocks = await workspace.blocks.get_page_blocks(p1.page_id)

        assert [b.block_id for b in blocks] == [first.block_id, second.block_id]
        assert blocks[0].content == {"text": "Title", "level": 1}
        await workspace.notifier.flush()
        assert notifier.get_event_names(f"page:{p1.page_id}") == ["block.created", "block.created"]

    @pytest.mark.asyncio
    async def test_create_block_validates_content(self, workspace):
        """Content that does not fit the type is rejected."""
        p1, _ = await self.make_pages(workspace)

        with pytest.raises(BlockValidationError):
            await workspace.blocks.create_block(p1.page_id, "heading", {"text": "x", "level": 7})
        with pytest.raises(BlockValidationError):
            await workspace.blocks.create_block(p1.page_id, "no_such_type", {})
        with pytest.raises(BlockValidationError):
            await workspace.blocks.create_block(p1.page_id, "placeholder", {})

    @pytest.mark.asyncio
    async def test_create_block_on_missing_page(self, workspace):
        """Blocks need an existing page."""
        with pytest.raises(NotFoundError):
            await workspace.blocks.create_block("missing", "paragraph", {"text": "x"})

    @pytest.mark.asyncio
    async def test_mirror_resolves_to_source(self, workspace):
        """A mirror copies the source type and resolves to the source."""
        p1, p2 = await self.make_pages(workspace)
        source = await workspace.blocks.create_block(p1.page_id, "callout", {"text": "Shared", "icon": "💡"})

        mirror = await workspace.blocks.create_mirror(p2.page_id, source.block_id)
        resolved = await workspace.blocks.resolve(mirror.block_id)

        assert mirror.type == "callout"
        assert mirror.source_block_id == source.block_id
        assert mirror.snapshot == source.content
        assert resolved.block_id == source.block_id

    @pytest.mark.asyncio
    async def test_edit_propagates_to_mirrors(self, workspace, notifier):
        """Editing the source refreshes every mirror and notifies each page once."""
        p1, p2 = await self.make_pages(workspace)
        p3 = await workspace.pages.create_page("user-1", "P3")
        source = await workspace.blocks.create_block(p1.page_id, "paragraph", {"text": "v1"})
        mirror_a = await workspace.blocks.create_mirror(p2.page_id, source.block_id)
        mirror_b = await workspace.blocks.create_mirror(p2.page_id, source.block_id)
        mirror_c = await workspace.blocks.create_mirror(p3.page_id, source.block_id)
        await workspace.notifier.flush()
        notifier.clear()

        updated = await workspace.blocks.propagate_edit(source.block_id, {"text": "v2"})

        assert updated.content == {"text": "v2"}
        for mirror in (mirror_a, mirror_b, mirror_c):
            blocks = {b.block_id: b for b in await workspace.blocks.get_page_blocks(mirror.page_id)}
            assert blocks[mirror.block_id].snapshot == {"text": "v2"}
            assert (await workspace.blocks.resolve(mirror.block_id)).content == {"text": "v2"}
        await workspace.notifier.flush()
        for page in (p1, p2, p3):
            assert notifier.get_event_names(f"page:{page.page_id}") == ["block.updated"]

    @pytest.mark.asyncio
    async def test_mirror_content_is_read_only(self, workspace):
        """Content edits on a mirror are refused."""
        p1, p2 = await self.make_pages(workspace)
        source = await workspace.blocks.create_block(p1.page_id, "paragraph", {"text": "v1"})
        mirror = await workspace.blocks.create_mirror(p2.page_id, source.block_id)

        with pytest.raises(ReadOnlyMirrorError) as exc_info:
            await workspace.blocks.propagate_edit(mirror.block_id, {"text": "nope"})

        assert exc_info.value.source_block_id == source.block_id

    @pytest.mark.asyncio
    async def test_mirror_placement_editable(self, workspace, notifier):
        """Mirrors can be moved between pages."""
        p1, p2 = await self.make_pages(workspace)
        source = await workspace.blocks.create_block(p1.page_id, "paragraph", {"text": "v1"})
        mirror = await workspace.blocks.create_mirror(p2.page_id, source.block_id)
        await workspace.notifier.flush()
        notifier.clear()

        moved = await workspace.blocks.update_placement(mirror.block_id, page_id=p1.page_id)

        assert moved.page_id == p1.page_id
        assert moved.order_key > source.order_key
        await workspace.notifier.flush()
        assert notifier.get_event_names(f"page:{p1.page_id}") == ["block.moved"]
        assert notifier.get_event_names(f"page:{p2.page_id}") == ["block.moved"]

    @pytest.mark.asyncio
    async def test_mirror_chain_resolves(self, workspace):
        """A mirror of a mirror resolves to the canonical block."""
        p1, p2 = await self.make_pages(workspace)
        source = await workspace.blocks.create_block(p1.page_id, "paragraph", {"text": "v1"})
        first = await workspace.blocks.create_mirror(p2.page_id, source.block_id)
        second = await workspace.blocks.create_mirror(p2.page_id, first.block_id)

        await workspace.blocks.propagate_edit(source.block_id, {"text": "v2"})

        resolved = await workspace.blocks.resolve(second.block_id)
        assert resolved.block_id == source.block_id
        blocks = {b.block_id: b for b in await workspace.blocks.get_page_blocks(p2.page_id)}
        assert blocks[second.block_id].snapshot == {"text": "v2"}

    @pytest.mark.asyncio
    async def test_cycle_detected(self, workspace, store):
        """A reference cycle raises SyncCycleError instead of looping."""
        p1, _ = await self.make_pages(workspace)
        a = await workspace.blocks.create_block(p1.page_id, "paragraph", {"text": "a"})
        b = await workspace.blocks.create_mirror(p1.page_id, a.block_id)
        # Bypass the propagator to plant a cycle
        async with store.transaction() as session:
            await session.update_block(a.block_id, {"source_block_id": b.block_id})

        with pytest.raises(SyncCycleError):
            await workspace.blocks.resolve(b.block_id)

    @pytest.mark.asyncio
    async def test_hop_bound(self, workspace):
        """Chains longer than the hop bound do not resolve."""
        p1, _ = await self.make_pages(workspace)
        source = await workspace.blocks.create_block(p1.page_id, "paragraph", {"text": "a"})
        m1 = await workspace.blocks.create_mirror(p1.page_id, source.block_id)
        m2 = await workspace.blocks.create_mirror(p1.page_id, m1.block_id)
        m3 = await workspace.blocks.create_mirror(p1.page_id, m2.block_id)
        workspace.blocks.max_sync_hops = 2

        with pytest.raises(SyncCycleError):
            await workspace.blocks.resolve(m3.block_id)
        with pytest.raises(SyncCycleError):
            await workspace.blocks.create_mirror(p1.page_id, m3.block_id)
        assert (await workspace.blocks.resolve(m2.block_id)).block_id == source.block_id

    @pytest.mark.asyncio
    async def test_delete_source_leaves_placeholders(self, workspace, notifier):
        """Deleting a source turns its mirrors into placeholders."""
        p1, p2 = await self.make_pages(workspace)
        source = await workspace.blocks.create_block(p1.page_id, "paragraph", {"text": "last"})
        mirror = await workspace.blocks.create_mirror(p2.page_id, source.block_id)
        await workspace.notifier.flush()
        notifier.clear()

        await workspace.blocks.delete_block(source.block_id)

        blocks = await workspace.blocks.get_page_blocks(p2.page_id)
        assert len(blocks) == 1
        placeholder = blocks[0]
        assert placeholder.block_id == mirror.block_id
        assert placeholder.type == "placeholder"
        assert placeholder.source_block_id is None
        assert placeholder.content == {
            "lost_source_block_id": source.block_id,
            "last_snapshot": {"text": "last"},
        }
        await workspace.notifier.flush()
        assert notifier.get_event_names(f"page:{p2.page_id}") == ["block.updated"]
        assert notifier.get_event_names(f"page:{p1.page_id}") == ["block.deleted"]

    @pytest.mark.asyncio
    async def test_purge_source_page_leaves_placeholders(self, workspace):
        """Purging the page holding a source keeps mirrors elsewhere."""
        p1, p2 = await self.make_pages(workspace)
        source = await workspace.blocks.create_block(p1.page_id, "paragraph", {"text": "kept"})
        mirror = await workspace.blocks.create_mirror(p2.page_id, source.block_id)
        await workspace.archive.archive_page(p1.page_id)

        await workspace.archive.delete_page(p1.page_id)

        resolved = await workspace.blocks.resolve(mirror.block_id)
        assert resolved.block_id == mirror.block_id
        assert resolved.type == "placeholder"
        assert resolved.content["last_snapshot"] == {"text": "kept"}

    @pytest.mark.asyncio
    async def test_placeholder_is_editable_block(self, workspace):
        """Edits to a placeholder are validated against the placeholder type."""
        p1, p2 = await self.make_pages(workspace)
        source = await workspace.blocks.create_block(p1.page_id, "paragraph", {"text": "x"})
        mirror = await workspace.blocks.create_mirror(p2.page_id, source.block_id)
        await workspace.blocks.delete_block(source.block_id)

        with pytest.raises(BlockValidationError):
            await workspace.blocks.propagate_edit(mirror.block_id, {"text": "y"})
