"""
Relation Engine.

Maintains links between database rows through relation properties:
- link/unlink with optional bidirectional mirroring
- cardinality limits on either side
- the back-reference index (target row -> cells listing it)
- cleanup of references to deleted rows
- relation schema changes (pairing, detaching, tightening limits)

Every relation cell write goes through write_cell(), which updates the
cell and the back-reference index in the same transaction. Ids of rows
that no longer exist are dropped whenever a cell is written.

Invariants:
    - For a bidirectional relation, A's cell lists B iff B's reverse cell
      lists A, after every operation
    - The index holds exactly the current contents of every relation cell
    - A cell of a limit 'one' property never holds more than one id
    - Schema changes never rewrite cell data

How to change safely:
    - Never write relation cells with session.update_row_values() directly
    - remove_row_references() and detach_reverse_properties() run inside
      other components' transactions; they must not commit or publish
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ..errors import CardinalityViolationError, NotFoundError, RelationSchemaError
from ..models import (
    BackReference,
    DatabaseRow,
    LimitType,
    Property,
    RelationCellValue,
    RelationConfig,
)
from ..notify import ChangeEvent, ChangeNotifier, database_channel, page_channel
from ..store import EntityStore, StoreSession

logger = logging.getLogger(__name__)

# Distinguishes "leave unchanged" from an explicit None
_UNSET: Any = object()


@dataclass
class CellChanges:
    """Relation cells changed within one transaction.

    Keyed by (row_id, property_id); the last written state wins so each
    cell produces one event per channel however often it was rewritten.
    Each event goes to the row's database channel, the row page and the
    database page.
    """

    cells: dict[tuple[str, str], tuple[list[str], list[str]]] = field(default_factory=dict)
    database_pages: dict[str, str | None] = field(default_factory=dict)

    def record(self, row: DatabaseRow, property_id: str, linked_row_ids: list[str]) -> None:
        channels = [database_channel(row.database_id)]
        if row.page_id is not None:
            channels.append(page_channel(row.page_id))
        database_page_id = self.database_pages.get(row.database_id)
        if database_page_id is not None:
            channels.append(page_channel(database_page_id))
        self.cells[(row.row_id, property_id)] = (channels, list(linked_row_ids))

    def __len__(self) -> int:
        return len(self.cells)

    def events(self) -> list[ChangeEvent]:
        return [
            ChangeEvent(
                channel,
                "relation.updated",
                {"rowId": row_id, "propertyId": property_id, "linkedRowIds": linked},
            )
            for (row_id, property_id), (channels, linked) in self.cells.items()
            for channel in channels
        ]


async def require_row(session: StoreSession, row_id: str) -> DatabaseRow:
    row = await session.get_row(row_id)
    if row is None:
        raise NotFoundError("Row", row_id)
    return row


class RelationEngine:
    """Row links, back-references and relation schema.

    Example:
        >>> await relations.link_rows("tasks.project", "task-1", ["proj-1"])
        >>> rows = await relations.get_linked_rows("projects", ["proj-1"])
        >>> rows[0].relation_cell("projects.tasks").linked_row_ids
        ['task-1']
    """

    def __init__(self, store: EntityStore, notifier: ChangeNotifier) -> None:
        self.store = store
        self.notifier = notifier

    # ------------------------------------------------------------------
    # Session-level primitives
    # ------------------------------------------------------------------

    async def write_cell(
        self,
        session: StoreSession,
        row_id: str,
        property_id: str,
        linked_row_ids: list[str],
        changes: CellChanges,
    ) -> bool:
        """Store a relation cell and bring the index in line with it.

        Ids of rows that no longer exist are dropped.

        Returns:
            Whether the stored cell changed
        """
        row = await session.get_row(row_id)
        if row is None:
            return False

        old_ids = row.relation_cell(property_id).linked_row_ids
        new_ids = RelationCellValue(linked_row_ids).linked_row_ids
        existing = await session.existing_row_ids(new_ids)
        new_ids = [rid for rid in new_ids if rid in existing]

        if new_ids == old_ids:
            return False

        if row.database_id not in changes.database_pages:
            database = await session.get_database(row.database_id)
            changes.database_pages[row.database_id] = database.page_id if database else None

        values = dict(row.values)
        values[property_id] = RelationCellValue(new_ids).to_dict()
        await session.update_row_values(row_id, values)

        old_set, new_set = set(old_ids), set(new_ids)
        await session.remove_refs(
            BackReference(target, property_id, row_id) for target in old_set - new_set
        )
        await session.add_refs(
            BackReference(target, property_id, row_id) for target in new_set - old_set
        )

        changes.record(row, property_id, new_ids)
        return True

    async def _add_link(
        self, session: StoreSession, row_id: str, property_id: str, target_id: str, changes: CellChanges
    ) -> None:
        row = await session.get_row(row_id)
        if row is None:
            return
        current = row.relation_cell(property_id).linked_row_ids
        if target_id not in current:
            await self.write_cell(session, row_id, property_id, current + [target_id], changes)

    async def _remove_link(
        self, session: StoreSession, row_id: str, property_id: str, target_id: str, changes: CellChanges
    ) -> None:
        row = await session.get_row(row_id)
        if row is None:
            return
        current = row.relation_cell(property_id).linked_row_ids
        if target_id in current:
            await self.write_cell(
                session, row_id, property_id, [rid for rid in current if rid != target_id], changes
            )

    async def remove_row_references(self, session: StoreSession, row_ids: list[str]) -> list[ChangeEvent]:
        """Strip rows about to be deleted from every surviving cell.

        Uses the back-reference index only. Index entries owned by the
        deleted rows are dropped as well.

        Returns:
            relation.updated events for the surviving cells, to publish
            after commit
        """
        deleted = set(row_ids)
        changes = CellChanges()
        if not deleted:
            return []

        affected: dict[tuple[str, str], set[str]] = {}
        for ref in await session.refs_to(row_ids):
            if ref.source_row_id in deleted:
                continue
            affected.setdefault((ref.source_row_id, ref.property_id), set()).add(ref.target_row_id)

        for (source_row_id, property_id), targets in affected.items():
            row = await session.get_row(source_row_id)
            if row is None:
                continue
            remaining = [rid for rid in row.relation_cell(property_id).linked_row_ids if rid not in targets]
            await session.remove_refs(BackReference(t, property_id, source_row_id) for t in targets)
            await self.write_cell(session, source_row_id, property_id, remaining, changes)

        await session.delete_refs_from(row_ids)

        logger.debug(
            "Removed references to deleted rows",
            extra={"deleted_rows": len(deleted), "cells_updated": len(changes)},
        )
        return changes.events()

    async def detach_reverse_properties(self, session: StoreSession, purged_property_ids: list[str]) -> None:
        """Make surviving properties paired with purged ones unidirectional."""
        purged = set(purged_property_ids)
        if not purged:
            return
        for prop in await session.get_relation_properties():
            if prop.property_id in purged:
                continue
            config = prop.relation
            if config is not None and config.reverse_property_id in purged:
                await self._save_config(
                    session, prop, RelationConfig(config.target_database_id, False, None, config.limit_type)
                )
                logger.info(
                    "Relation property detached from purged reverse",
                    extra={"property_id": prop.property_id, "reverse_property_id": config.reverse_property_id},
                )

    async def _save_config(self, session: StoreSession, prop: Property, config: RelationConfig) -> None:
        await session.update_property_config(prop.property_id, {**prop.config, **config.to_dict()})

    async def require_relation_property(
        self, session: StoreSession, property_id: str
    ) -> tuple[Property, RelationConfig]:
        prop = await session.get_property(property_id)
        if prop is None:
            raise NotFoundError("Property", property_id)
        config = prop.relation
        if config is None:
            raise RelationSchemaError(
                f"Property {property_id} is not a relation property", field_name="property_id"
            )
        return prop, config

    async def _require_reverse(
        self, session: StoreSession, prop: Property, config: RelationConfig, reverse_property_id: str | None
    ) -> tuple[Property, RelationConfig]:
        if reverse_property_id is None:
            raise RelationSchemaError(
                f"Bidirectional relation {prop.property_id} needs a reverse property",
                field_name="reverse_property_id",
            )
        if reverse_property_id == prop.property_id:
            return prop, config

        reverse = await session.get_property(reverse_property_id)
        if reverse is None:
            raise NotFoundError("Property", reverse_property_id)
        reverse_config = reverse.relation
        problems = []
        if reverse_config is None:
            problems.append("reverse property is not a relation property")
        else:
            if reverse.database_id != config.target_database_id:
                problems.append("reverse property does not belong to the target database")
            if reverse_config.target_database_id != prop.database_id:
                problems.append("reverse property does not target the source database")
        if problems:
            raise RelationSchemaError(
                f"Invalid reverse property {reverse_property_id}: {'; '.join(problems)}",
                field_name="reverse_property_id",
                errors=problems,
            )
        return reverse, reverse_config

    # ------------------------------------------------------------------
    # Link operations
    # ------------------------------------------------------------------

    async def link_rows(
        self,
        property_id: str,
        source_row_id: str,
        target_row_ids: list[str],
        bidirectional: bool | None = None,
        reverse_property_id: str | None = None,
        replace: bool = False,
    ) -> list[str]:
        """Link source_row_id to target_row_ids through property_id.

        Args:
            property_id: Relation property of the source database
            source_row_id: Row whose cell is written
            target_row_ids: Rows of the target database to add
            bidirectional: Override the schema's bidirectional flag
            reverse_property_id: Override the schema's reverse property
            replace: Replace the cell instead of appending to it; rows no
                longer present are unlinked on both sides

        Returns:
            The source cell's linked row ids after the operation

        Raises:
            NotFoundError: Unknown property or row, or a target outside the
                target database
            CardinalityViolationError: A limit 'one' side would hold more
                than one row
            RelationSchemaError: Bidirectional without a valid reverse
        """
        targets = RelationCellValue(list(target_row_ids)).linked_row_ids
        changes = CellChanges()

        async with self.store.transaction() as session:
            prop, config = await self.require_relation_property(session, property_id)
            source = await require_row(session, source_row_id)
            if source.database_id != prop.database_id:
                raise NotFoundError(f"Row in database {prop.database_id}", source_row_id)

            target_rows = await session.get_rows(targets)
            for target_id in targets:
                row = target_rows.get(target_id)
                if row is None or row.database_id != config.target_database_id:
                    raise NotFoundError(f"Row in database {config.target_database_id}", target_id)

            bidir = config.bidirectional if bidirectional is None else bidirectional
            reverse_id = config.reverse_property_id if reverse_property_id is None else reverse_property_id
            reverse_config = None
            if bidir:
                _, reverse_config = await self._require_reverse(session, prop, config, reverse_id)

            current = source.relation_cell(property_id).linked_row_ids
            if config.limit_type == LimitType.ONE:
                if len(targets) > 1:
                    raise CardinalityViolationError(
                        f"Property {property_id} links at most one row", property_id, source_row_id
                    )
                if not replace and current and targets and current != targets:
                    raise CardinalityViolationError(
                        f"Row {source_row_id} already links {current[0]} through {property_id}",
                        property_id,
                        source_row_id,
                    )

            if bidir and reverse_config.limit_type == LimitType.ONE:
                for target_id in targets:
                    reverse_cell = target_rows[target_id].relation_cell(reverse_id).linked_row_ids
                    other = next((rid for rid in reverse_cell if rid != source_row_id), None)
                    if other is not None:
                        raise CardinalityViolationError(
                            f"Row {target_id} already links {other} through {reverse_id}",
                            reverse_id,
                            target_id,
                        )

            if replace:
                new_ids = targets
            else:
                new_ids = current + [t for t in targets if t not in current]
            await self.write_cell(session, source_row_id, property_id, new_ids, changes)

            if bidir:
                for target_id in targets:
                    await self._add_link(session, target_id, reverse_id, source_row_id, changes)
                for dropped in [rid for rid in current if rid not in new_ids]:
                    await self._remove_link(session, dropped, reverse_id, source_row_id, changes)

            final = (await require_row(session, source_row_id)).relation_cell(property_id).linked_row_ids

        logger.debug(
            "Linked rows",
            extra={"property_id": property_id, "source_row_id": source_row_id, "targets": len(targets)},
        )
        await self.notifier.publish_all(changes.events())
        return final

    async def unlink_row(
        self,
        property_id: str,
        source_row_id: str,
        target_row_id: str,
        bidirectional: bool | None = None,
        reverse_property_id: str | None = None,
    ) -> None:
        """Remove one link and its mirror entry. Idempotent.

        Missing rows or an absent link are not errors.

        Raises:
            NotFoundError: If the property does not exist
        """
        changes = CellChanges()

        async with self.store.transaction() as session:
            prop, config = await self.require_relation_property(session, property_id)
            bidir = config.bidirectional if bidirectional is None else bidirectional
            reverse_id = config.reverse_property_id if reverse_property_id is None else reverse_property_id

            await self._remove_link(session, source_row_id, property_id, target_row_id, changes)
            if bidir and reverse_id is not None:
                await self._remove_link(session, target_row_id, reverse_id, source_row_id, changes)

        await self.notifier.publish_all(changes.events())

    async def get_linked_rows(self, target_database_id: str, linked_row_ids: list[str]) -> list[DatabaseRow]:
        """Rows of target_database_id among linked_row_ids, in input order.

        Ids of missing rows, or rows of another database, are skipped.
        """
        ids = RelationCellValue(list(linked_row_ids)).linked_row_ids
        async with self.store.read() as session:
            rows = await session.get_rows(ids)
        return [rows[rid] for rid in ids if rid in rows and rows[rid].database_id == target_database_id]

    async def get_back_references(self, row_id: str) -> list[BackReference]:
        """Cells currently listing row_id."""
        async with self.store.read() as session:
            return await session.refs_to([row_id])

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    async def update_relation_in(
        self,
        session: StoreSession,
        property_id: str,
        bidirectional: bool | None = None,
        reverse_property_id: str | None = _UNSET,
        limit_type: LimitType | str | None = None,
    ) -> Property:
        """Apply a relation schema change inside an open transaction."""
        prop, config = await self.require_relation_property(session, property_id)

        new_bidir = config.bidirectional if bidirectional is None else bidirectional
        new_reverse = config.reverse_property_id if reverse_property_id is _UNSET else reverse_property_id
        if not new_bidir:
            new_reverse = None
        new_limit = config.limit_type if limit_type is None else LimitType(limit_type)

        if new_bidir:
            reverse, reverse_config = await self._require_reverse(session, prop, config, new_reverse)
            paired_with = reverse_config.reverse_property_id
            if (
                reverse is not prop
                and reverse_config.bidirectional
                and paired_with not in (None, property_id)
            ):
                raise RelationSchemaError(
                    f"Property {new_reverse} is already paired with {paired_with}",
                    field_name="reverse_property_id",
                )

        if new_limit == LimitType.ONE and config.limit_type != LimitType.ONE:
            for row in await session.get_database_rows(prop.database_id):
                if len(row.relation_cell(property_id).linked_row_ids) > 1:
                    raise CardinalityViolationError(
                        f"Row {row.row_id} links more than one row through {property_id}",
                        property_id,
                        row.row_id,
                    )

        old_reverse = config.reverse_property_id if config.bidirectional else None
        if old_reverse is not None and old_reverse != new_reverse and old_reverse != property_id:
            old = await session.get_property(old_reverse)
            old_config = old.relation if old is not None else None
            if old_config is not None and old_config.reverse_property_id == property_id:
                await self._save_config(
                    session, old, RelationConfig(old_config.target_database_id, False, None, old_config.limit_type)
                )

        if new_bidir and new_reverse != property_id:
            await self._save_config(
                session,
                reverse,
                RelationConfig(reverse_config.target_database_id, True, property_id, reverse_config.limit_type),
            )

        new_config = RelationConfig(config.target_database_id, new_bidir, new_reverse, new_limit)
        await self._save_config(session, prop, new_config)
        return await session.get_property(property_id)

    async def update_relation(
        self,
        property_id: str,
        bidirectional: bool | None = None,
        reverse_property_id: str | None = _UNSET,
        limit_type: LimitType | str | None = None,
    ) -> Property:
        """Change a relation property's schema without touching cell data.

        Disabling bidirectionality, or switching to another reverse
        property, detaches the old reverse (it becomes unidirectional and
        keeps its data). A new reverse property is validated and made to
        point back.

        Raises:
            NotFoundError: Unknown property or reverse property
            RelationSchemaError: Invalid reverse property
            CardinalityViolationError: Tightening to 'one' while some cell
                holds more than one row
        """
        async with self.store.transaction() as session:
            updated = await self.update_relation_in(
                session, property_id, bidirectional, reverse_property_id, limit_type
            )

        logger.info(
            "Relation schema updated",
            extra={"property_id": property_id, "config": updated.config},
        )
        await self.notifier.publish(
            database_channel(updated.database_id),
            "database.schema_updated",
            {"propertyId": property_id, "config": updated.config},
        )
        return updated
