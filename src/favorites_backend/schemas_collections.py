from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field

from favorites_backend.schemas_common import Pagination

CollectionItemSort = Literal["position", "added_at", "saved_at", "title"]


class CollectionCreate(BaseModel):
    # Bounds are enforced by the store after trimming.
    name: str
    description: str | None = None
    is_public: bool = False


class CollectionPatch(BaseModel):
    name: str | None = None
    description: str | None = None
    is_public: bool | None = None


class CollectionOut(BaseModel):
    id: str
    user_id: str
    name: str
    description: str | None = None
    is_public: bool
    created_at: datetime
    updated_at: datetime
    item_count: int = 0
    is_owner: bool = False
    relevance_score: float | None = None


class CollectionPage(BaseModel):
    collections: list[CollectionOut] = Field(default_factory=list)
    pagination: Pagination


class AddItemRequest(BaseModel):
    item_id: str = Field(min_length=1, max_length=255)
    position: int | None = None
    notes: str | None = Field(default=None, max_length=2000)


class BatchAddItemsRequest(BaseModel):
    item_ids: list[str] = Field(min_length=1)
    notes: str | None = Field(default=None, max_length=2000)


class ReorderEntry(BaseModel):
    item_id: str
    position: int


class ReorderRequest(BaseModel):
    items: list[ReorderEntry]


class MembershipOut(BaseModel):
    id: str
    collection_id: str
    item_id: str
    position: int
    notes: str | None = None
    added_at: datetime


class CollectionEntryOut(BaseModel):
    """A saved item as seen through one collection."""

    id: str
    type: str
    title: str | None = None
    url: str | None = None
    hd_url: str | None = None
    category: str | None = None
    description: str | None = None
    copyright: str | None = None
    content_date: date | None = None
    saved_at: datetime
    user_note: str | None = None
    user_tags: list[str] = Field(default_factory=list)
    is_favorite: bool = False
    position: int
    collection_notes: str | None = None
    added_to_collection_at: datetime


class CollectionItemsPage(BaseModel):
    collection: CollectionOut
    items: list[CollectionEntryOut] = Field(default_factory=list)
    pagination: Pagination


class CollectionStats(BaseModel):
    total_collections: int
    public_collections: int
    private_collections: int
    total_items_in_collections: int
    avg_items_per_collection: float
    largest_collection_size: int
