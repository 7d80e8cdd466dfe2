"""
Relation integrity checking and repair.

The relation engine keeps cells symmetric and the back-reference index
exact inside every transaction. This module verifies that from the stored
data alone and, on request, runs a compensating cleanup pass:

- dangling ids (rows that no longer exist) are dropped from cells
- missing mirror entries of bidirectional links are re-added, unless the
  reverse side is limited to one row and already holds another, in which
  case the one-sided link is dropped instead
- the index is rebuilt from cell contents

Repair is idempotent; running it on a consistent workspace changes nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ..models import BackReference, DatabaseRow, LimitType, Property
from ..store import EntityStore, StoreSession
from .engine import CellChanges, RelationEngine

logger = logging.getLogger(__name__)


@dataclass
class IntegrityReport:
    """Problems found in relation data.

    Attributes:
        asymmetric: (row_id, property_id, target_row_id) links whose mirror
            entry is missing
        dangling: (row_id, property_id, target_row_id) links to missing rows
        index_missing: Index entries absent for current cell contents
        index_extra: Index entries not backed by any cell
        repaired_cells: Cells rewritten by repair()
    """

    asymmetric: list[tuple[str, str, str]] = field(default_factory=list)
    dangling: list[tuple[str, str, str]] = field(default_factory=list)
    index_missing: list[BackReference] = field(default_factory=list)
    index_extra: list[BackReference] = field(default_factory=list)
    repaired_cells: int = 0

    @property
    def ok(self) -> bool:
        return not (self.asymmetric or self.dangling or self.index_missing or self.index_extra)

    def to_dict(self) -> dict[str, Any]:
        def refs(items: list[BackReference]) -> list[dict[str, str]]:
            return [
                {"target_row_id": r.target_row_id, "property_id": r.property_id, "source_row_id": r.source_row_id}
                for r in items
            ]

        def links(items: list[tuple[str, str, str]]) -> list[dict[str, str]]:
            return [{"row_id": r, "property_id": p, "target_row_id": t} for r, p, t in items]

        return {
            "ok": self.ok,
            "asymmetric": links(self.asymmetric),
            "dangling": links(self.dangling),
            "index_missing": refs(self.index_missing),
            "index_extra": refs(self.index_extra),
            "repaired_cells": self.repaired_cells,
        }


class IntegrityChecker:
    """Verify and repair relation cells and the back-reference index."""

    def __init__(self, store: EntityStore, relations: RelationEngine) -> None:
        self.store = store
        self.relations = relations

    async def _scan(self, session: StoreSession) -> IntegrityReport:
        report = IntegrityReport()
        properties = {p.property_id: p for p in await session.get_relation_properties()}
        rows = {r.row_id: r for r in await session.all_rows()}

        expected: set[BackReference] = set()
        for row in rows.values():
            for property_id in properties:
                if property_id not in row.values:
                    continue
                for target_id in row.relation_cell(property_id).linked_row_ids:
                    expected.add(BackReference(target_id, property_id, row.row_id))
                    target = rows.get(target_id)
                    if target is None:
                        report.dangling.append((row.row_id, property_id, target_id))
                        continue
                    reverse_id = _reverse_of(properties[property_id])
                    if reverse_id is not None and row.row_id not in target.relation_cell(reverse_id).linked_row_ids:
                        report.asymmetric.append((row.row_id, property_id, target_id))

        actual = await session.all_refs()
        report.index_missing = sorted(expected - actual, key=_ref_key)
        report.index_extra = sorted(actual - expected, key=_ref_key)
        return report

    async def check(self) -> IntegrityReport:
        async with self.store.read() as session:
            report = await self._scan(session)
        if not report.ok:
            logger.warning(
                "Relation integrity problems found",
                extra={
                    "asymmetric": len(report.asymmetric),
                    "dangling": len(report.dangling),
                    "index_missing": len(report.index_missing),
                    "index_extra": len(report.index_extra),
                },
            )
        return report

    async def repair(self) -> IntegrityReport:
        """Fix everything check() reports, in one transaction.

        Returns:
            The report of problems found before repair, with repaired_cells set
        """
        changes = CellChanges()

        async with self.store.transaction() as session:
            report = await self._scan(session)
            properties = {p.property_id: p for p in await session.get_relation_properties()}

            for row_id, property_id, target_id in report.dangling:
                row = await session.get_row(row_id)
                if row is not None:
                    remaining = [t for t in row.relation_cell(property_id).linked_row_ids if t != target_id]
                    await self.relations.write_cell(session, row_id, property_id, remaining, changes)

            for row_id, property_id, target_id in report.asymmetric:
                reverse_id = _reverse_of(properties[property_id])
                target = await session.get_row(target_id)
                row = await session.get_row(row_id)
                if target is None or row is None or reverse_id is None:
                    continue
                reverse_cell = target.relation_cell(reverse_id).linked_row_ids
                if _limit_of(properties.get(reverse_id)) == LimitType.ONE and reverse_cell:
                    cell = [t for t in row.relation_cell(property_id).linked_row_ids if t != target_id]
                    await self.relations.write_cell(session, row_id, property_id, cell, changes)
                else:
                    await self.relations.write_cell(
                        session, target_id, reverse_id, reverse_cell + [row_id], changes
                    )

            await session.clear_refs()
            await session.add_refs(await _expected_refs(session, properties))

        report.repaired_cells = len(changes)
        logger.info(
            "Relation integrity repaired",
            extra={
                "asymmetric": len(report.asymmetric),
                "dangling": len(report.dangling),
                "index_missing": len(report.index_missing),
                "index_extra": len(report.index_extra),
                "repaired_cells": report.repaired_cells,
            },
        )
        return report


def _reverse_of(prop: Property) -> str | None:
    config = prop.relation
    if config is None or not config.bidirectional:
        return None
    return config.reverse_property_id


def _limit_of(prop: Property | None) -> LimitType:
    config = prop.relation if prop is not None else None
    return config.limit_type if config is not None else LimitType.NONE


def _ref_key(ref: BackReference) -> tuple[str, str, str]:
    return (ref.target_row_id, ref.property_id, ref.source_row_id)


async def _expected_refs(session: StoreSession, properties: dict[str, Property]) -> list[BackReference]:
    refs: list[BackReference] = []
    rows: list[DatabaseRow] = await session.all_rows()
    for row in rows:
        for property_id in properties:
            for target_id in row.relation_cell(property_id).linked_row_ids:
                refs.append(BackReference(target_id, property_id, row.row_id))
    return refs
