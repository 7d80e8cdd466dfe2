"""
Synced Block Propagator.

A synced mirror is a block whose source_block_id names another block. The
mirror owns only placement (page, order key, props); its content is that
of the block at the end of its source chain. Each mirror caches the last
canonical content it saw in `snapshot`, which is used for display only
when the source is gone.

Invariants:
    - Content edits are accepted on canonical blocks only
    - An edit refreshes the snapshot of every transitive mirror in the
      same transaction as the content write
    - Deleting a block never deletes its mirrors; they become inert
      placeholder blocks remembering the lost source
    - Resolution never follows more than max_sync_hops references

How to change safely:
    - Content shape checks belong in the block type registry
    - orphan_mirrors() is called by the archive controller inside its
      purge transaction; it must not commit or publish
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from ..errors import BlockValidationError, NotFoundError, ReadOnlyMirrorError, SyncCycleError
from ..models import Block
from ..notify import ChangeEvent, ChangeNotifier, page_channel
from ..pages.tree import require_page
from ..store import EntityStore, StoreSession
from .registry import PLACEHOLDER, BlockTypeRegistry

logger = logging.getLogger(__name__)

ORDER_KEY_WIDTH = 12
ORDER_KEY_STEP = 1024


def order_key_after(key: str | None) -> str:
    """An order key sorting after key."""
    if key is None:
        return f"{ORDER_KEY_STEP:0{ORDER_KEY_WIDTH}d}"
    if key.isdigit() and len(key) == ORDER_KEY_WIDTH:
        return f"{int(key) + ORDER_KEY_STEP:0{ORDER_KEY_WIDTH}d}"
    return key + "1"


async def require_block(session: StoreSession, block_id: str) -> Block:
    block = await session.get_block(block_id)
    if block is None:
        raise NotFoundError("Block", block_id)
    return block


class SyncedBlockPropagator:
    """Block lifecycle and synced mirror maintenance.

    Example:
        >>> source = await propagator.create_block("p1", "paragraph", {"text": "v1"})
        >>> mirror = await propagator.create_mirror("p2", source.block_id)
        >>> await propagator.propagate_edit(source.block_id, {"text": "v2"})
        >>> (await propagator.resolve(mirror.block_id)).content
        {'text': 'v2'}
    """

    def __init__(
        self,
        store: EntityStore,
        notifier: ChangeNotifier,
        registry: BlockTypeRegistry,
        max_sync_hops: int = 16,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.registry = registry
        self.max_sync_hops = max_sync_hops

    async def resolve_in(self, session: StoreSession, block_id: str) -> Block:
        """Follow source_block_id references to the canonical block.

        Raises:
            NotFoundError: If the block or any hop is missing
            SyncCycleError: If the chain revisits a block or is too long
        """
        block = await require_block(session, block_id)
        visited = {block_id}
        hops = 0

        while block.source_block_id is not None:
            hops += 1
            next_id = block.source_block_id
            if hops > self.max_sync_hops or next_id in visited:
                logger.warning(
                    "Synced block reference chain does not terminate",
                    extra={"block_id": block_id, "hops": hops, "revisited": next_id in visited},
                )
                raise SyncCycleError(block_id, hops)
            visited.add(next_id)
            block = await require_block(session, next_id)

        return block

    async def resolve(self, block_id: str) -> Block:
        """The canonical block whose content block_id displays."""
        async with self.store.read() as session:
            return await self.resolve_in(session, block_id)

    async def _transitive_mirrors(self, session: StoreSession, block_id: str) -> list[Block]:
        visited = {block_id}
        mirrors: list[Block] = []
        frontier = [block_id]
        while frontier:
            found = [m for m in await session.get_mirrors(frontier) if m.block_id not in visited]
            visited.update(m.block_id for m in found)
            mirrors.extend(found)
            frontier = [m.block_id for m in found]
        return mirrors

    async def propagate_edit(self, source_block_id: str, new_content: dict[str, Any]) -> Block:
        """Replace the content of a canonical block (last write wins).

        Emits one block.updated per distinct page showing the block: its
        own page and every page hosting a transitive mirror.

        Raises:
            NotFoundError: If the block does not exist
            ReadOnlyMirrorError: If the block is a mirror
            BlockValidationError: If content does not fit the block type
        """
        async with self.store.transaction() as session:
            block = await require_block(session, source_block_id)
            if block.source_block_id is not None:
                raise ReadOnlyMirrorError(source_block_id, block.source_block_id)

            content = self.registry.validate(block.type, new_content)
            await session.update_block(source_block_id, {"content": content})

            mirrors = await self._transitive_mirrors(session, source_block_id)
            for mirror in mirrors:
                await session.update_block(mirror.block_id, {"snapshot": content})

            updated = await require_block(session, source_block_id)

        page_ids = list(dict.fromkeys([block.page_id] + [m.page_id for m in mirrors]))
        logger.debug(
            "Propagated block edit",
            extra={"block_id": source_block_id, "mirrors": len(mirrors), "pages": len(page_ids)},
        )
        await self.notifier.publish_all(
            ChangeEvent(page_channel(pid), "block.updated", {"blockId": source_block_id, "content": content})
            for pid in page_ids
        )
        return updated

    async def update_placement(
        self,
        block_id: str,
        order_key: str | None = None,
        page_id: str | None = None,
        props: dict[str, Any] | None = None,
    ) -> Block:
        """Change where a block sits. Allowed on mirrors and canonical blocks.

        Raises:
            NotFoundError: If the block or the target page is missing
        """
        fields: dict[str, Any] = {}
        if order_key is not None:
            fields["order_key"] = order_key
        if props is not None:
            fields["props"] = props

        async with self.store.transaction() as session:
            block = await require_block(session, block_id)
            if page_id is not None and page_id != block.page_id:
                await require_page(session, page_id)
                fields["page_id"] = page_id
                if order_key is None:
                    fields["order_key"] = order_key_after(await session.max_order_key(page_id))
            if not fields:
                return block
            await session.update_block(block_id, fields)
            updated = await require_block(session, block_id)

        payload = {"blockId": block_id, "pageId": updated.page_id, "orderKey": updated.order_key}
        channels = dict.fromkeys([page_channel(block.page_id), page_channel(updated.page_id)])
        await self.notifier.publish_all(ChangeEvent(ch, "block.moved", payload) for ch in channels)
        return updated

    async def create_block(
        self,
        page_id: str,
        block_type: str,
        content: dict[str, Any] | None = None,
        order_key: str | None = None,
        props: dict[str, Any] | None = None,
    ) -> Block:
        """Create a canonical block.

        Raises:
            NotFoundError: If the page is missing
            BlockValidationError: If the type is unknown, reserved or the
                content is invalid
        """
        if block_type == PLACEHOLDER:
            raise BlockValidationError(
                "Placeholder blocks cannot be created directly",
                field_name="type",
                errors=["reserved block type"],
            )
        validated = self.registry.validate(block_type, content)

        async with self.store.transaction() as session:
            await require_page(session, page_id)
            if order_key is None:
                order_key = order_key_after(await session.max_order_key(page_id))
            now = session.now_ms()
            block = Block(
                block_id=str(uuid.uuid4()),
                page_id=page_id,
                type=block_type,
                order_key=order_key,
                content=validated,
                props=props or {},
                created_at=now,
                updated_at=now,
            )
            await session.insert_block(block)

        await self.notifier.publish(
            page_channel(page_id), "block.created", {"blockId": block.block_id, "type": block_type}
        )
        return block

    async def create_mirror(
        self,
        page_id: str,
        source_block_id: str,
        order_key: str | None = None,
        props: dict[str, Any] | None = None,
    ) -> Block:
        """Create a mirror of source_block_id on page_id.

        The source must resolve; the mirror's snapshot is seeded from the
        canonical content.

        Raises:
            NotFoundError: If the page, the source or a hop is missing
            SyncCycleError: If the source does not resolve
        """
        async with self.store.transaction() as session:
            await require_page(session, page_id)
            canonical = await self.resolve_in(session, source_block_id)
            if order_key is None:
                order_key = order_key_after(await session.max_order_key(page_id))
            now = session.now_ms()
            mirror = Block(
                block_id=str(uuid.uuid4()),
                page_id=page_id,
                type=canonical.type,
                order_key=order_key,
                content={},
                props=props or {},
                source_block_id=source_block_id,
                snapshot=canonical.content,
                created_at=now,
                updated_at=now,
            )
            await session.insert_block(mirror)

        logger.debug(
            "Created synced mirror",
            extra={"block_id": mirror.block_id, "source_block_id": source_block_id, "page_id": page_id},
        )
        await self.notifier.publish(
            page_channel(page_id),
            "block.created",
            {"blockId": mirror.block_id, "type": mirror.type, "sourceBlockId": source_block_id},
        )
        return mirror

    async def get_page_blocks(self, page_id: str) -> list[Block]:
        """Blocks of a page in order_key order, as stored."""
        async with self.store.read() as session:
            await require_page(session, page_id)
            return await session.get_page_blocks(page_id)

    async def delete_block(self, block_id: str) -> None:
        """Delete a block, turning its direct mirrors into placeholders.

        Raises:
            NotFoundError: If the block does not exist
        """
        async with self.store.transaction() as session:
            block = await require_block(session, block_id)
            events = await self.orphan_mirrors(session, [block_id])
            await session.delete_blocks([block_id])

        events.append(ChangeEvent(page_channel(block.page_id), "block.deleted", {"blockId": block_id}))
        await self.notifier.publish_all(events)

    async def orphan_mirrors(self, session: StoreSession, deleted_block_ids: list[str]) -> list[ChangeEvent]:
        """Convert surviving mirrors of deleted blocks into placeholders.

        Returns:
            block.updated events for the converted mirrors, to publish
            after commit
        """
        deleted = set(deleted_block_ids)
        events: list[ChangeEvent] = []

        for mirror in await session.get_mirrors(deleted_block_ids):
            if mirror.block_id in deleted:
                continue
            content = self.registry.validate(
                PLACEHOLDER,
                {"lost_source_block_id": mirror.source_block_id, "last_snapshot": mirror.snapshot},
            )
            await session.update_block(
                mirror.block_id,
                {"type": PLACEHOLDER, "content": content, "source_block_id": None, "snapshot": None},
            )
            events.append(
                ChangeEvent(
                    page_channel(mirror.page_id),
                    "block.updated",
                    {"blockId": mirror.block_id, "type": PLACEHOLDER, "content": content},
                )
            )

        if events:
            logger.info(
                "Converted orphaned mirrors to placeholders",
                extra={"deleted_blocks": len(deleted), "placeholders": len(events)},
            )
        return events
