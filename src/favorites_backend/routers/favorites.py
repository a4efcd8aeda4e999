from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from favorites_backend.deps import get_owner_id, get_saved_item_store
from favorites_backend.schemas_common import OkResponse
from favorites_backend.schemas_saved_items import (
    BatchAddResult,
    SavedItemCreate,
    SavedItemOut,
    SavedItemPage,
    SavedItemPatch,
    SavedItemStats,
)
from favorites_backend.services.saved_items_service import SavedItemStore

router = APIRouter(tags=["favorites"])


# Static paths first so they are not captured by /favorites/{item_id}.
@router.get("/favorites/search", response_model=SavedItemPage)
async def search_favorites(
    q: Annotated[str, Query()] = "",
    page: Annotated[int, Query()] = 1,
    limit: Annotated[int | None, Query()] = None,
    types: Annotated[list[str] | None, Query()] = None,
    tags: Annotated[list[str] | None, Query()] = None,
    owner_id: str = Depends(get_owner_id),
    store: SavedItemStore = Depends(get_saved_item_store),
) -> SavedItemPage:
    return await store.search(owner_id, q, page=page, limit=limit, types=types, tags=tags)


@router.get("/favorites/stats", response_model=SavedItemStats)
async def favorites_stats(
    owner_id: str = Depends(get_owner_id),
    store: SavedItemStore = Depends(get_saved_item_store),
) -> SavedItemStats:
    return await store.stats(owner_id)


@router.get("/favorites/export")
async def export_favorites(
    fmt: Annotated[str, Query(alias="format")] = "json",
    include_archived: Annotated[bool, Query()] = False,
    owner_id: str = Depends(get_owner_id),
    store: SavedItemStore = Depends(get_saved_item_store),
) -> Response:
    exported = await store.export(owner_id, fmt=fmt, include_archived=include_archived)
    if isinstance(exported, str):
        return Response(
            content=exported,
            media_type="text/csv",
            headers={"Content-Disposition": 'attachment; filename="favorites.csv"'},
        )
    return JSONResponse(content=jsonable_encoder(exported))


@router.post("/favorites/batch", response_model=BatchAddResult)
async def batch_add_favorites(
    items: Annotated[list[SavedItemCreate], Body(embed=True)],
    owner_id: str = Depends(get_owner_id),
    store: SavedItemStore = Depends(get_saved_item_store),
) -> BatchAddResult:
    return await store.add_many(owner_id, items)


@router.get("/favorites", response_model=SavedItemPage)
async def list_favorites(
    page: Annotated[int, Query()] = 1,
    limit: Annotated[int | None, Query()] = None,
    item_type: Annotated[str | None, Query(alias="type")] = None,
    include_archived: Annotated[bool, Query()] = False,
    tags: Annotated[list[str] | None, Query()] = None,
    sort_by: Annotated[str, Query()] = "saved_at",
    owner_id: str = Depends(get_owner_id),
    store: SavedItemStore = Depends(get_saved_item_store),
) -> SavedItemPage:
    return await store.list(
        owner_id,
        page=page,
        limit=limit,
        item_type=item_type,
        include_archived=include_archived,
        tags=tags,
        sort_by=sort_by,
    )


@router.post("/favorites", response_model=SavedItemOut, status_code=status.HTTP_201_CREATED)
async def add_favorite(
    payload: SavedItemCreate,
    owner_id: str = Depends(get_owner_id),
    store: SavedItemStore = Depends(get_saved_item_store),
) -> SavedItemOut:
    return await store.add(owner_id, payload)


@router.get("/favorites/{item_id}", response_model=SavedItemOut)
async def get_favorite(
    item_id: str,
    owner_id: str = Depends(get_owner_id),
    store: SavedItemStore = Depends(get_saved_item_store),
) -> SavedItemOut:
    return await store.get(owner_id, item_id)


@router.patch("/favorites/{item_id}", response_model=SavedItemOut)
async def update_favorite(
    item_id: str,
    patch: SavedItemPatch,
    owner_id: str = Depends(get_owner_id),
    store: SavedItemStore = Depends(get_saved_item_store),
) -> SavedItemOut:
    return await store.update(owner_id, item_id, patch)


@router.delete("/favorites/{item_id}", response_model=OkResponse)
async def remove_favorite(
    item_id: str,
    owner_id: str = Depends(get_owner_id),
    store: SavedItemStore = Depends(get_saved_item_store),
) -> OkResponse:
    if not await store.remove(owner_id, item_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="saved item not found")
    return OkResponse()
