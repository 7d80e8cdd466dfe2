"""
Databases, properties and rows.

A database is anchored to one page. Each row may own a page of its own,
created as a child of the database page; the row's title cell and its
page title are kept equal.

Invariants:
    - Relation cells are written by the RelationEngine only
    - Rollup cells are never stored; RollupService computes them on read
    - A row page created under an archived database page starts archived
    - Deleting a row runs the relation row delete hook in the same
      transaction and purges the row page subtree

How to change safely:
    - Cell value checks for new property types go in _check_value()
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any

from ..errors import NotFoundError, RelationSchemaError, ValidationError
from ..models import Database, DatabaseRow, Page, Property, PropertyType, RelationConfig, RollupConfig
from ..notify import ChangeEvent, ChangeNotifier, database_channel, page_channel
from ..pages.tree import attaches_archived, require_page, require_parent
from ..store import EntityStore, StoreSession
from .engine import RelationEngine, require_row

if TYPE_CHECKING:
    from ..pages.archive import ArchiveController

logger = logging.getLogger(__name__)


def _check_value(prop: Property, value: Any) -> list[str]:
    if value is None:
        return []
    kind = prop.type
    if kind in (PropertyType.TITLE, PropertyType.TEXT, PropertyType.URL, PropertyType.DATE, PropertyType.SELECT):
        if not isinstance(value, str):
            return [f"'{prop.name}' expects a string"]
    elif kind == PropertyType.NUMBER:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return [f"'{prop.name}' expects a number"]
    elif kind == PropertyType.CHECKBOX:
        if not isinstance(value, bool):
            return [f"'{prop.name}' expects a boolean"]
    elif kind == PropertyType.MULTI_SELECT:
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            return [f"'{prop.name}' expects a list of strings"]
    elif kind == PropertyType.RELATION:
        return [f"'{prop.name}' is a relation; use link_rows"]
    elif kind == PropertyType.ROLLUP:
        return [f"'{prop.name}' is a rollup and is computed from linked rows"]
    return []


async def require_database(session: StoreSession, database_id: str) -> Database:
    database = await session.get_database(database_id)
    if database is None:
        raise NotFoundError("Database", database_id)
    return database


async def check_rollup_source(session: StoreSession, database_id: str, rollup: RollupConfig) -> None:
    """Raise RelationSchemaError unless rollup reads a relation of database_id."""
    relation_prop = await session.get_property(rollup.relation_property_id)
    if relation_prop is None or relation_prop.database_id != database_id or relation_prop.relation is None:
        raise RelationSchemaError(
            f"Property {rollup.relation_property_id} is not a relation of database {database_id}",
            field_name="relation_property_id",
        )
    target_database_id = relation_prop.relation.target_database_id
    target_prop = await session.get_property(rollup.target_property_id)
    if target_prop is None or target_prop.database_id != target_database_id:
        raise RelationSchemaError(
            f"Property {rollup.target_property_id} is not in database {target_database_id}",
            field_name="target_property_id",
        )
    if target_prop.type == PropertyType.ROLLUP:
        raise RelationSchemaError("Rollups cannot aggregate other rollups", field_name="target_property_id")


class DatabaseService:
    """Database schema and row operations."""

    def __init__(
        self,
        store: EntityStore,
        notifier: ChangeNotifier,
        relations: RelationEngine,
        archive: ArchiveController,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.relations = relations
        self.archive = archive

    async def create_database(self, page_id: str, title: str | None = None) -> Database:
        """Anchor a new database to page_id, with a "Name" title property.

        Raises:
            NotFoundError: If the page does not exist
            ValidationError: If the page is archived or already has a database
        """
        async with self.store.transaction() as session:
            page = await require_page(session, page_id)
            if page.is_archived:
                raise ValidationError(f"Page {page_id} is archived", field_name="page_id")
            if await session.get_database_by_page(page_id) is not None:
                raise ValidationError(f"Page {page_id} already has a database", field_name="page_id")

            database = Database(
                database_id=str(uuid.uuid4()),
                page_id=page_id,
                title=title or page.title,
                created_at=session.now_ms(),
            )
            await session.insert_database(database)
            await session.insert_property(
                Property(
                    property_id=str(uuid.uuid4()),
                    database_id=database.database_id,
                    name="Name",
                    type=PropertyType.TITLE,
                    position=0,
                )
            )

        logger.info("Database created", extra={"database_id": database.database_id, "page_id": page_id})
        await self.notifier.publish(
            page_channel(page_id), "database.created", {"databaseId": database.database_id}
        )
        return database

    async def get_database(self, database_id: str) -> Database:
        async with self.store.read() as session:
            return await require_database(session, database_id)

    async def get_properties(self, database_id: str) -> list[Property]:
        async with self.store.read() as session:
            await require_database(session, database_id)
            return await session.get_properties(database_id)

    async def add_property(
        self,
        database_id: str,
        name: str,
        type: PropertyType | str,
        relation: RelationConfig | dict[str, Any] | None = None,
        create_reverse: bool = False,
        reverse_name: str | None = None,
        rollup: RollupConfig | dict[str, Any] | None = None,
    ) -> Property:
        """Add a property to a database.

        For relation properties, create_reverse=True also creates the paired
        reverse property in the target database. A bidirectional relation
        naming an existing reverse_property_id is paired with it. Rollup
        properties aggregate a property of the rows linked through one of
        this database's relations.

        Raises:
            NotFoundError: Unknown database or target database
            RelationSchemaError: Relation or rollup config missing, misplaced
                or invalid
        """
        prop_type = PropertyType(type)
        if isinstance(rollup, dict):
            try:
                rollup = RollupConfig.from_dict(rollup)
            except (KeyError, ValueError) as e:
                raise RelationSchemaError(f"Invalid rollup config: {e}", field_name="rollup") from e
        if (prop_type == PropertyType.ROLLUP) != (rollup is not None):
            raise RelationSchemaError(
                "Rollup properties need a rollup config and other properties take none",
                field_name="rollup",
            )
        if isinstance(relation, dict):
            relation = RelationConfig.from_dict(relation)
        if prop_type == PropertyType.RELATION and relation is None:
            raise RelationSchemaError("Relation properties need a relation config", field_name="relation")
        if prop_type != PropertyType.RELATION and (relation is not None or create_reverse):
            raise RelationSchemaError(f"{prop_type.value} properties take no relation config", field_name="relation")

        async with self.store.transaction() as session:
            database = await require_database(session, database_id)
            prop = Property(
                property_id=str(uuid.uuid4()),
                database_id=database_id,
                name=name,
                type=prop_type,
                position=await session.next_property_position(database_id),
            )

            if relation is not None:
                target = await require_database(session, relation.target_database_id)
                prop.config = RelationConfig(target.database_id, limit_type=relation.limit_type).to_dict()
                await session.insert_property(prop)

                reverse_id = relation.reverse_property_id
                if create_reverse:
                    reverse = Property(
                        property_id=str(uuid.uuid4()),
                        database_id=target.database_id,
                        name=reverse_name or database.title,
                        type=PropertyType.RELATION,
                        position=await session.next_property_position(target.database_id),
                        config=RelationConfig(database_id).to_dict(),
                    )
                    await session.insert_property(reverse)
                    reverse_id = reverse.property_id

                if create_reverse or relation.bidirectional:
                    await self.relations.update_relation_in(
                        session, prop.property_id, bidirectional=True, reverse_property_id=reverse_id
                    )
                prop = await session.get_property(prop.property_id)
            else:
                if rollup is not None:
                    await check_rollup_source(session, database_id, rollup)
                    prop.config = rollup.to_dict()
                await session.insert_property(prop)

        logger.debug("Property added", extra={"database_id": database_id, "property_id": prop.property_id})
        await self.notifier.publish(
            database_channel(database_id), "database.schema_updated", {"propertyId": prop.property_id}
        )
        return prop

    async def add_row(
        self,
        database_id: str,
        values: dict[str, Any] | None = None,
        create_page: bool = True,
    ) -> DatabaseRow:
        """Append a row, optionally with its own page under the database page.

        Args:
            database_id: Database receiving the row
            values: Non-relation cell values keyed by property id
            create_page: Create the row page

        Raises:
            NotFoundError: Unknown database or property
            ValidationError: Invalid cell value
        """
        values = dict(values or {})

        async with self.store.transaction() as session:
            database = await require_database(session, database_id)
            properties = {p.property_id: p for p in await session.get_properties(database_id)}
            errors = []
            for property_id, value in values.items():
                prop = properties.get(property_id)
                if prop is None:
                    raise NotFoundError("Property", property_id)
                errors += _check_value(prop, value)
            if errors:
                raise ValidationError("Invalid row values", field_name="values", errors=errors)

            now = session.now_ms()
            row = DatabaseRow(
                row_id=str(uuid.uuid4()),
                database_id=database_id,
                position=await session.next_row_position(database_id),
                values=values,
                created_at=now,
                updated_at=now,
            )

            if create_page:
                parent = await require_parent(session, database.page_id)
                archived = attaches_archived(parent)
                title = next(
                    (values[p.property_id] for p in properties.values()
                     if p.type == PropertyType.TITLE and values.get(p.property_id)),
                    "Untitled",
                )
                page = Page(
                    page_id=str(uuid.uuid4()),
                    owner_id=parent.owner_id,
                    title=title,
                    parent_id=parent.page_id,
                    position=await session.next_child_position(parent.page_id),
                    is_archived=archived,
                    archived_at=now if archived else None,
                    created_at=now,
                    updated_at=now,
                )
                await session.insert_page(page)
                row.page_id = page.page_id

            await session.insert_row(row)

        await self.notifier.publish(
            database_channel(database_id), "row.created", {"rowId": row.row_id, "pageId": row.page_id}
        )
        return row

    async def get_row(self, row_id: str) -> DatabaseRow:
        async with self.store.read() as session:
            return await require_row(session, row_id)

    async def get_rows(self, database_id: str) -> list[DatabaseRow]:
        async with self.store.read() as session:
            await require_database(session, database_id)
            return await session.get_database_rows(database_id)

    async def set_cell(self, row_id: str, property_id: str, value: Any) -> DatabaseRow:
        """Write a non-relation cell. Title cells rename the row page.

        Raises:
            NotFoundError: Unknown row or property
            ValidationError: Property of another database, relation
                property, or invalid value
        """
        events: list[ChangeEvent] = []

        async with self.store.transaction() as session:
            row = await require_row(session, row_id)
            prop = await session.get_property(property_id)
            if prop is None:
                raise NotFoundError("Property", property_id)
            if prop.database_id != row.database_id:
                raise ValidationError(
                    f"Property {property_id} does not belong to database {row.database_id}",
                    field_name="property_id",
                )
            errors = _check_value(prop, value)
            if errors:
                raise ValidationError(errors[0], field_name="value", errors=errors)

            values = dict(row.values)
            if value is None:
                values.pop(property_id, None)
            else:
                values[property_id] = value
            await session.update_row_values(row_id, values)

            if prop.type == PropertyType.TITLE and row.page_id is not None:
                title = value or "Untitled"
                await session.update_page_fields(row.page_id, {"title": title})
                events.append(
                    ChangeEvent(page_channel(row.page_id), "page.updated", {"pageId": row.page_id, "title": title})
                )

            updated = await require_row(session, row_id)

        events.insert(
            0,
            ChangeEvent(
                database_channel(row.database_id),
                "row.updated",
                {"rowId": row_id, "propertyId": property_id, "value": value},
            ),
        )
        await self.notifier.publish_all(events)
        return updated

    async def delete_row(self, row_id: str) -> None:
        """Delete a row, every reference to it, and its row page subtree.

        Raises:
            NotFoundError: If the row does not exist
        """
        async with self.store.transaction() as session:
            row = await require_row(session, row_id)
            if row.page_id is not None and await session.get_page(row.page_id) is not None:
                _, events = await self.archive.purge_subtree(session, row.page_id)
            else:
                events = await self.relations.remove_row_references(session, [row_id])
                await session.delete_rows([row_id])

        logger.debug("Row deleted", extra={"row_id": row_id, "database_id": row.database_id})
        events.append(ChangeEvent(database_channel(row.database_id), "row.deleted", {"rowId": row_id}))
        await self.notifier.publish_all(events)
