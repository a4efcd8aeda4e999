from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status

from favorites_backend.deps import get_collection_store, get_owner_id
from favorites_backend.schemas_collections import (
    AddItemRequest,
    BatchAddItemsRequest,
    CollectionCreate,
    CollectionItemsPage,
    CollectionOut,
    CollectionPage,
    CollectionPatch,
    CollectionStats,
    MembershipOut,
    ReorderRequest,
)
from favorites_backend.schemas_common import OkResponse
from favorites_backend.services.collections_service import CollectionStore

router = APIRouter(tags=["collections"])


@router.get("/collections/public", response_model=CollectionPage)
async def list_public_collections(
    page: Annotated[int, Query()] = 1,
    limit: Annotated[int | None, Query()] = None,
    search: Annotated[str | None, Query(max_length=200)] = None,
    _owner_id: str = Depends(get_owner_id),
    store: CollectionStore = Depends(get_collection_store),
) -> CollectionPage:
    return await store.list_public(page=page, limit=limit, search=search)


@router.get("/collections/stats", response_model=CollectionStats)
async def collection_stats(
    owner_id: str = Depends(get_owner_id),
    store: CollectionStore = Depends(get_collection_store),
) -> CollectionStats:
    return await store.stats(owner_id)


@router.get("/collections", response_model=CollectionPage)
async def list_collections(
    page: Annotated[int, Query()] = 1,
    limit: Annotated[int | None, Query()] = None,
    include_public: Annotated[bool, Query()] = False,
    owner_id: str = Depends(get_owner_id),
    store: CollectionStore = Depends(get_collection_store),
) -> CollectionPage:
    return await store.list(owner_id, page=page, limit=limit, include_public=include_public)


@router.post("/collections", response_model=CollectionOut, status_code=status.HTTP_201_CREATED)
async def create_collection(
    payload: CollectionCreate,
    owner_id: str = Depends(get_owner_id),
    store: CollectionStore = Depends(get_collection_store),
) -> CollectionOut:
    return await store.create(owner_id, payload)


@router.get("/collections/{collection_id}", response_model=CollectionOut)
async def get_collection(
    collection_id: str,
    owner_id: str = Depends(get_owner_id),
    store: CollectionStore = Depends(get_collection_store),
) -> CollectionOut:
    return await store.get(owner_id, collection_id)


@router.patch("/collections/{collection_id}", response_model=CollectionOut)
async def update_collection(
    collection_id: str,
    patch: CollectionPatch,
    owner_id: str = Depends(get_owner_id),
    store: CollectionStore = Depends(get_collection_store),
) -> CollectionOut:
    return await store.update(owner_id, collection_id, patch)


@router.delete("/collections/{collection_id}", response_model=OkResponse)
async def delete_collection(
    collection_id: str,
    owner_id: str = Depends(get_owner_id),
    store: CollectionStore = Depends(get_collection_store),
) -> OkResponse:
    if not await store.delete(owner_id, collection_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="collection not found")
    return OkResponse()


@router.get("/collections/{collection_id}/items", response_model=CollectionItemsPage)
async def list_collection_items(
    collection_id: str,
    page: Annotated[int, Query()] = 1,
    limit: Annotated[int | None, Query()] = None,
    sort_by: Annotated[str, Query()] = "position",
    owner_id: str = Depends(get_owner_id),
    store: CollectionStore = Depends(get_collection_store),
) -> CollectionItemsPage:
    return await store.list_items(
        collection_id,
        viewer_id=owner_id,
        page=page,
        limit=limit,
        sort_by=sort_by,
    )


@router.post(
    "/collections/{collection_id}/items",
    response_model=MembershipOut,
    status_code=status.HTTP_201_CREATED,
)
async def add_collection_item(
    collection_id: str,
    payload: AddItemRequest,
    owner_id: str = Depends(get_owner_id),
    store: CollectionStore = Depends(get_collection_store),
) -> MembershipOut:
    return await store.add_item(
        owner_id,
        collection_id,
        payload.item_id,
        position=payload.position,
        notes=payload.notes,
    )


@router.post(
    "/collections/{collection_id}/items/batch",
    response_model=list[MembershipOut],
    status_code=status.HTTP_201_CREATED,
)
async def add_collection_items(
    collection_id: str,
    payload: BatchAddItemsRequest,
    owner_id: str = Depends(get_owner_id),
    store: CollectionStore = Depends(get_collection_store),
) -> list[MembershipOut]:
    return await store.add_items(owner_id, collection_id, payload.item_ids, notes=payload.notes)


@router.put("/collections/{collection_id}/items/order", response_model=list[MembershipOut])
async def reorder_collection_items(
    collection_id: str,
    payload: ReorderRequest,
    owner_id: str = Depends(get_owner_id),
    store: CollectionStore = Depends(get_collection_store),
) -> list[MembershipOut]:
    return await store.reorder(owner_id, collection_id, payload.items)


@router.delete("/collections/{collection_id}/items/{item_id}", response_model=OkResponse)
async def remove_collection_item(
    collection_id: str,
    item_id: str,
    owner_id: str = Depends(get_owner_id),
    store: CollectionStore = Depends(get_collection_store),
) -> OkResponse:
    if not await store.remove_item(owner_id, collection_id, item_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="item not in collection")
    return OkResponse()
