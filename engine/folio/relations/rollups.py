"""
Rollups.

A rollup property folds one property of the rows linked through a relation
property of the same database: counts, percentages, numeric aggregates, or
the values themselves. Rollups are computed on read and never stored, so
they always follow the current relation cells.

Invariants:
    - Linked ids of rows that no longer exist are ignored
    - None and "" count as empty; only numbers, numeric strings and
      booleans take part in numeric aggregates
    - Aggregates over no numbers give 0 (sum, average, median) or None
      (min, max, range)

How to change safely:
    - New aggregations go in Aggregation and compute_aggregate() together
"""

from __future__ import annotations

import json
import logging
import math
from typing import Any

from ..errors import NotFoundError, RelationSchemaError
from ..models import Aggregation, PropertyType
from ..store import EntityStore
from .engine import RelationEngine, require_row

logger = logging.getLogger(__name__)


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def _as_number(value: Any) -> float | int | None:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return None if math.isnan(value) else value
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
        return None if math.isnan(number) else number
    return None


def _unique(values: list[Any]) -> list[Any]:
    seen: set[str] = set()
    result = []
    for value in values:
        key = json.dumps(value, sort_keys=True, default=str)
        if key not in seen:
            seen.add(key)
            result.append(value)
    return result


def _percent(part: int, total: int) -> int:
    if not total:
        return 0
    return math.floor(part * 100 / total + 0.5)


def compute_aggregate(values: list[Any], aggregation: Aggregation | str) -> Any:
    """Fold the cell values of linked rows.

    Args:
        values: One value per linked row, in link order (None for empty cells)
        aggregation: Aggregation to apply

    Returns:
        An int or float for counts, percentages and numeric aggregates,
        a list for show_original and show_unique, or None
    """
    aggregation = Aggregation(aggregation)
    filled = [v for v in values if not _is_empty(v)]
    numbers = [n for n in (_as_number(v) for v in filled) if n is not None]

    if aggregation == Aggregation.COUNT:
        return len(values)
    if aggregation in (Aggregation.COUNT_VALUES, Aggregation.COUNT_NOT_EMPTY):
        return len(filled)
    if aggregation == Aggregation.COUNT_EMPTY:
        return len(values) - len(filled)
    if aggregation == Aggregation.COUNT_UNIQUE:
        return len(_unique(filled))
    if aggregation == Aggregation.PERCENT_EMPTY:
        return _percent(len(values) - len(filled), len(values))
    if aggregation == Aggregation.PERCENT_NOT_EMPTY:
        return _percent(len(filled), len(values))
    if aggregation == Aggregation.SUM:
        return sum(numbers)
    if aggregation == Aggregation.AVERAGE:
        return sum(numbers) / len(numbers) if numbers else 0
    if aggregation == Aggregation.MEDIAN:
        if not numbers:
            return 0
        ordered = sorted(numbers)
        mid = len(ordered) // 2
        if len(ordered) % 2:
            return ordered[mid]
        return (ordered[mid - 1] + ordered[mid]) / 2
    if aggregation == Aggregation.MIN:
        return min(numbers) if numbers else None
    if aggregation == Aggregation.MAX:
        return max(numbers) if numbers else None
    if aggregation == Aggregation.RANGE:
        return max(numbers) - min(numbers) if numbers else None
    if aggregation == Aggregation.SHOW_ORIGINAL:
        return filled
    return _unique(filled)


class RollupService:
    """Compute rollup properties of database rows.

    Example:
        >>> total = await rollups.compute_rollup(project.row_id, hours_rollup.property_id)
    """

    def __init__(self, store: EntityStore, relations: RelationEngine) -> None:
        self.store = store
        self.relations = relations

    async def compute_rollup(self, row_id: str, property_id: str) -> Any:
        """Value of the rollup property property_id for row_id.

        Raises:
            NotFoundError: Unknown row, property, or relation property
            RelationSchemaError: property_id is not a rollup of the row's database
        """
        async with self.store.read() as session:
            row = await require_row(session, row_id)
            prop = await session.get_property(property_id)
            if prop is None:
                raise NotFoundError("Property", property_id)
            rollup = prop.rollup
            if rollup is None or prop.database_id != row.database_id:
                raise RelationSchemaError(
                    f"Property {property_id} is not a rollup of database {row.database_id}",
                    field_name="property_id",
                )
            relation_prop = await session.get_property(rollup.relation_property_id)
            if relation_prop is None or relation_prop.type != PropertyType.RELATION:
                raise NotFoundError("Relation property", rollup.relation_property_id)
            target_database_id = relation_prop.relation.target_database_id

        linked_ids = row.relation_cell(rollup.relation_property_id).linked_row_ids
        linked_rows = await self.relations.get_linked_rows(target_database_id, linked_ids)
        values = [r.values.get(rollup.target_property_id) for r in linked_rows]

        logger.debug(
            "Computed rollup",
            extra={"row_id": row_id, "property_id": property_id, "linked_rows": len(linked_rows)},
        )
        return compute_aggregate(values, rollup.aggregation)
