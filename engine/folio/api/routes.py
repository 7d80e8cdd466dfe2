"""
API routes for the Folio HTTP layer.

Thin REST wrappers over the Workspace. Core errors propagate as FolioError
and are turned into JSON responses by the handler installed in app.py.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from ..models import Aggregation, LimitType, PropertyType
from ..workspace import Workspace
from .config import Settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Folio"])


# --- Request Models ---


class PageCreateRequest(BaseModel):
    """Request to create a page."""

    owner_id: str = Field(..., description="Owning user")
    title: str = Field("Untitled", description="Page title")
    parent_id: str | None = Field(None, description="Parent page, omitted for top level")
    icon: str | None = Field(None, description="Emoji or icon")


class PageUpdateRequest(BaseModel):
    """Request to rename a page or change its icon."""

    title: str | None = None
    icon: str | None = None


class PageMoveRequest(BaseModel):
    """Request to re-parent a page."""

    new_parent_id: str | None = Field(None, description="New parent, null for top level")
    expected_version: int | None = Field(None, description="Version the client last read")


class ReorderRequest(BaseModel):
    """Request to reorder a page's children."""

    ordered_page_ids: list[str]


class BlockCreateRequest(BaseModel):
    """Request to create a block."""

    type: str = Field(..., description="Block type tag")
    content: dict[str, Any] = Field(default_factory=dict)
    order_key: str | None = None
    props: dict[str, Any] | None = None


class MirrorCreateRequest(BaseModel):
    """Request to create a synced mirror."""

    source_block_id: str
    order_key: str | None = None
    props: dict[str, Any] | None = None


class BlockContentRequest(BaseModel):
    """New content for a canonical block."""

    content: dict[str, Any]


class BlockPlacementRequest(BaseModel):
    """Placement change for any block."""

    order_key: str | None = None
    page_id: str | None = None
    props: dict[str, Any] | None = None


class DatabaseCreateRequest(BaseModel):
    page_id: str
    title: str | None = None


class RelationSpec(BaseModel):
    target_database_id: str
    bidirectional: bool = False
    reverse_property_id: str | None = None
    limit_type: LimitType = LimitType.NONE


class RollupSpec(BaseModel):
    relation_property_id: str
    target_property_id: str
    aggregation: Aggregation = Aggregation.COUNT


class PropertyCreateRequest(BaseModel):
    """Request to add a property to a database."""

    name: str
    type: PropertyType
    relation: RelationSpec | None = None
    rollup: RollupSpec | None = None
    create_reverse: bool = False
    reverse_name: str | None = None


class RelationUpdateRequest(BaseModel):
    """Relation schema change. Omitted fields stay unchanged."""

    bidirectional: bool | None = None
    reverse_property_id: str | None = None
    limit_type: LimitType | None = None


class RowCreateRequest(BaseModel):
    values: dict[str, Any] = Field(default_factory=dict)
    create_page: bool = True


class CellUpdateRequest(BaseModel):
    value: Any = None


class LinkRequest(BaseModel):
    """Request to link rows through a relation property."""

    property_id: str
    source_row_id: str
    target_row_ids: list[str]
    bidirectional: bool | None = None
    reverse_property_id: str | None = None
    replace: bool = False


class UnlinkRequest(BaseModel):
    """Request to remove one link."""

    property_id: str
    source_row_id: str
    target_row_id: str
    bidirectional: bool | None = None
    reverse_property_id: str | None = None


class LinkedRowsRequest(BaseModel):
    linked_row_ids: list[str]


# --- Dependencies ---


def get_workspace(request: Request) -> Workspace:
    """Get the workspace from app state."""
    return request.app.state.workspace


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


# --- Page Routes ---


@router.post("/pages", status_code=201)
async def create_page(body: PageCreateRequest, ws: Workspace = Depends(get_workspace)):
    page = await ws.pages.create_page(body.owner_id, body.title, body.parent_id, body.icon)
    return page.to_dict()


@router.get("/pages/{page_id}")
async def get_page(page_id: str, ws: Workspace = Depends(get_workspace)):
    return (await ws.pages.get_page(page_id)).to_dict()


@router.patch("/pages/{page_id}")
async def update_page(page_id: str, body: PageUpdateRequest, ws: Workspace = Depends(get_workspace)):
    return (await ws.pages.update_page(page_id, title=body.title, icon=body.icon)).to_dict()


@router.get("/pages/{page_id}/children")
async def get_children(page_id: str, ws: Workspace = Depends(get_workspace)):
    return {"pages": [p.to_dict() for p in await ws.tree.get_children(page_id)]}


@router.get("/pages/{page_id}/descendants")
async def get_descendants(page_id: str, ws: Workspace = Depends(get_workspace)):
    return {"pages": [p.to_dict() for p in await ws.tree.get_descendants(page_id)]}


@router.get("/pages/{page_id}/breadcrumbs")
async def get_breadcrumbs(page_id: str, ws: Workspace = Depends(get_workspace)):
    return {"pages": [p.to_dict() for p in await ws.tree.get_breadcrumbs(page_id)]}


@router.post("/pages/{page_id}/move")
async def move_page(page_id: str, body: PageMoveRequest, ws: Workspace = Depends(get_workspace)):
    page = await ws.tree.move(page_id, body.new_parent_id, expected_version=body.expected_version)
    return page.to_dict()


@router.post("/pages/{page_id}/reorder")
async def reorder_children(page_id: str, body: ReorderRequest, ws: Workspace = Depends(get_workspace)):
    pages = await ws.tree.reorder_children(page_id, body.ordered_page_ids)
    return {"pages": [p.to_dict() for p in pages]}


@router.post("/pages/{page_id}/archive")
async def archive_page(page_id: str, ws: Workspace = Depends(get_workspace)):
    """
    Archive a page and its whole subtree.

    Idempotent: archived pages keep their original archived_at.
    """
    archived = await ws.archive.archive_page(page_id)
    return {"archived_page_ids": [p.page_id for p in archived]}


@router.post("/pages/{page_id}/restore")
async def restore_page(page_id: str, ws: Workspace = Depends(get_workspace)):
    """
    Restore one archived page (descendants stay archived).

    A page whose parent is archived or gone comes back at the top level.
    """
    return (await ws.archive.restore_page(page_id)).to_dict()


@router.delete("/pages/{page_id}")
async def delete_page(page_id: str, ws: Workspace = Depends(get_workspace)):
    """Permanently delete an archived page and everything under it."""
    return {"deleted_page_ids": await ws.archive.delete_page(page_id)}


@router.get("/users/{owner_id}/archived-pages")
async def get_archived_pages(owner_id: str, ws: Workspace = Depends(get_workspace)):
    return {"pages": [p.to_dict() for p in await ws.archive.get_archived_pages(owner_id)]}


@router.get("/users/{owner_id}/pages")
async def list_root_pages(owner_id: str, ws: Workspace = Depends(get_workspace)):
    return {"pages": [p.to_dict() for p in await ws.pages.list_root_pages(owner_id)]}


@router.get("/users/{owner_id}/search")
async def search_pages(
    owner_id: str,
    q: str = Query(..., min_length=1, description="Title substring"),
    limit: int | None = Query(None, ge=1, description="Maximum results"),
    ws: Workspace = Depends(get_workspace),
    settings: Settings = Depends(get_settings),
):
    limit = min(limit or settings.default_search_limit, settings.max_search_limit)
    return {"pages": [p.to_dict() for p in await ws.pages.search_pages(owner_id, q, limit)]}


# --- Block Routes ---


@router.get("/pages/{page_id}/blocks")
async def get_page_blocks(page_id: str, ws: Workspace = Depends(get_workspace)):
    return {"blocks": [b.to_dict() for b in await ws.blocks.get_page_blocks(page_id)]}


@router.post("/pages/{page_id}/blocks", status_code=201)
async def create_block(page_id: str, body: BlockCreateRequest, ws: Workspace = Depends(get_workspace)):
    block = await ws.blocks.create_block(page_id, body.type, body.content, body.order_key, body.props)
    return block.to_dict()


@router.post("/pages/{page_id}/mirrors", status_code=201)
async def create_mirror(page_id: str, body: MirrorCreateRequest, ws: Workspace = Depends(get_workspace)):
    block = await ws.blocks.create_mirror(page_id, body.source_block_id, body.order_key, body.props)
    return block.to_dict()


@router.get("/blocks/{block_id}/resolved")
async def resolve_block(block_id: str, ws: Workspace = Depends(get_workspace)):
    """Follow synced references to the block whose content is displayed."""
    return (await ws.blocks.resolve(block_id)).to_dict()


@router.put("/blocks/{block_id}/content")
async def propagate_edit(block_id: str, body: BlockContentRequest, ws: Workspace = Depends(get_workspace)):
    """Replace a canonical block's content; mirrors follow."""
    return (await ws.blocks.propagate_edit(block_id, body.content)).to_dict()


@router.patch("/blocks/{block_id}/placement")
async def update_placement(block_id: str, body: BlockPlacementRequest, ws: Workspace = Depends(get_workspace)):
    block = await ws.blocks.update_placement(
        block_id, order_key=body.order_key, page_id=body.page_id, props=body.props
    )
    return block.to_dict()


@router.delete("/blocks/{block_id}")
async def delete_block(block_id: str, ws: Workspace = Depends(get_workspace)):
    await ws.blocks.delete_block(block_id)
    return {"deleted_block_id": block_id}


# --- Database Routes ---


@router.post("/databases", status_code=201)
async def create_database(body: DatabaseCreateRequest, ws: Workspace = Depends(get_workspace)):
    return (await ws.databases.create_database(body.page_id, body.title)).to_dict()


@router.get("/databases/{database_id}")
async def get_database(database_id: str, ws: Workspace = Depends(get_workspace)):
    database = await ws.databases.get_database(database_id)
    properties = await ws.databases.get_properties(database_id)
    return {**database.to_dict(), "properties": [p.to_dict() for p in properties]}


@router.post("/databases/{database_id}/properties", status_code=201)
async def add_property(database_id: str, body: PropertyCreateRequest, ws: Workspace = Depends(get_workspace)):
    relation = body.relation.model_dump(mode="json") if body.relation else None
    rollup = body.rollup.model_dump(mode="json") if body.rollup else None
    prop = await ws.databases.add_property(
        database_id,
        body.name,
        body.type,
        relation=relation,
        rollup=rollup,
        create_reverse=body.create_reverse,
        reverse_name=body.reverse_name,
    )
    return prop.to_dict()


@router.patch("/properties/{property_id}/relation")
async def update_relation(property_id: str, body: RelationUpdateRequest, ws: Workspace = Depends(get_workspace)):
    """Change a relation's schema. Cell data is never rewritten."""
    kwargs: dict[str, Any] = {"bidirectional": body.bidirectional, "limit_type": body.limit_type}
    if "reverse_property_id" in body.model_fields_set:
        kwargs["reverse_property_id"] = body.reverse_property_id
    return (await ws.relations.update_relation(property_id, **kwargs)).to_dict()


@router.get("/databases/{database_id}/rows")
async def get_rows(database_id: str, ws: Workspace = Depends(get_workspace)):
    return {"rows": [r.to_dict() for r in await ws.databases.get_rows(database_id)]}


@router.post("/databases/{database_id}/rows", status_code=201)
async def add_row(database_id: str, body: RowCreateRequest, ws: Workspace = Depends(get_workspace)):
    row = await ws.databases.add_row(database_id, body.values, create_page=body.create_page)
    return row.to_dict()


@router.put("/rows/{row_id}/cells/{property_id}")
async def set_cell(row_id: str, property_id: str, body: CellUpdateRequest, ws: Workspace = Depends(get_workspace)):
    return (await ws.databases.set_cell(row_id, property_id, body.value)).to_dict()


@router.delete("/rows/{row_id}")
async def delete_row(row_id: str, ws: Workspace = Depends(get_workspace)):
    await ws.databases.delete_row(row_id)
    return {"deleted_row_id": row_id}


@router.post("/databases/{database_id}/linked-rows")
async def get_linked_rows(database_id: str, body: LinkedRowsRequest, ws: Workspace = Depends(get_workspace)):
    """Rows of the database among the given ids, in request order."""
    rows = await ws.relations.get_linked_rows(database_id, body.linked_row_ids)
    return {"rows": [r.to_dict() for r in rows]}


# --- Relation Routes ---


@router.post("/relations/link")
async def link_rows(body: LinkRequest, ws: Workspace = Depends(get_workspace)):
    linked = await ws.relations.link_rows(
        body.property_id,
        body.source_row_id,
        body.target_row_ids,
        bidirectional=body.bidirectional,
        reverse_property_id=body.reverse_property_id,
        replace=body.replace,
    )
    return {"row_id": body.source_row_id, "property_id": body.property_id, "linked_row_ids": linked}


@router.post("/relations/unlink")
async def unlink_row(body: UnlinkRequest, ws: Workspace = Depends(get_workspace)):
    """Remove one link. Succeeds when the link or rows are already gone."""
    await ws.relations.unlink_row(
        body.property_id,
        body.source_row_id,
        body.target_row_id,
        bidirectional=body.bidirectional,
        reverse_property_id=body.reverse_property_id,
    )
    return {"ok": True}


@router.get("/rows/{row_id}/back-references")
async def get_back_references(row_id: str, ws: Workspace = Depends(get_workspace)):
    refs = await ws.relations.get_back_references(row_id)
    return {
        "references": [{"property_id": r.property_id, "source_row_id": r.source_row_id} for r in refs]
    }


@router.get("/rows/{row_id}/rollups/{property_id}")
async def get_rollup(row_id: str, property_id: str, ws: Workspace = Depends(get_workspace)):
    value = await ws.rollups.compute_rollup(row_id, property_id)
    return {"row_id": row_id, "property_id": property_id, "value": value}


@router.get("/integrity")
async def check_integrity(ws: Workspace = Depends(get_workspace)):
    return (await ws.integrity.check()).to_dict()
