from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from favorites_backend.schemas_common import Pagination

SavedItemType = Literal["APOD", "NEO", "MARS", "EPIC", "EARTH", "IMAGES"]
SavedItemSort = Literal["saved_at", "date", "title"]
ExportFormat = Literal["json", "csv"]


class CatalogPayload(BaseModel):
    """Display fields copied from the catalog proxy when an item is saved."""

    title: str | None = None
    url: str | None = None
    hd_url: str | None = None
    media_type: str | None = "image"
    category: str | None = Field(default=None, max_length=255)
    description: str | None = None
    copyright: str | None = Field(default=None, max_length=500)
    metadata: dict[str, Any] = Field(default_factory=dict)


class SavedItemCreate(BaseModel):
    # Checked against the fixed type set by the store, which owns the InvalidArgument contract.
    item_type: str = Field(max_length=20)
    item_id: str = Field(max_length=255)
    item_date: date | None = None
    data: CatalogPayload = Field(default_factory=CatalogPayload)


class SavedItemPatch(BaseModel):
    # Only fields present in model_fields_set are written.
    user_note: str | None = Field(default=None, max_length=5000)
    user_tags: list[str] | None = Field(default=None, max_length=50)
    is_favorite: bool | None = None


class SavedItemOut(BaseModel):
    id: str
    user_id: str
    type: str
    title: str | None = None
    url: str | None = None
    hd_url: str | None = None
    media_type: str | None = None
    category: str | None = None
    description: str | None = None
    copyright: str | None = None
    content_date: date | None = None
    saved_at: datetime
    created_at: datetime
    updated_at: datetime
    is_archived: bool = False
    user_note: str | None = None
    user_tags: list[str] = Field(default_factory=list)
    is_favorite: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)
    collection_count: int = 0
    collection_names: list[str] = Field(default_factory=list)
    relevance_score: float | None = None


class SavedItemPage(BaseModel):
    items: list[SavedItemOut] = Field(default_factory=list)
    pagination: Pagination


class SavedItemStats(BaseModel):
    total_favorites: int
    archived_count: int
    marked_favorites: int
    unique_types: int
    types: list[str] = Field(default_factory=list)
    first_saved: datetime | None = None
    last_saved: datetime | None = None
    tagged_count: int
    noted_count: int
    recent_count: int
    # (starred + tagged) per active item, as a percentage; can exceed 100.
    engagement_rate: float


class BatchAddFailure(BaseModel):
    item_id: str
    error: str
    message: str


class BatchAddResult(BaseModel):
    successful: list[SavedItemOut] = Field(default_factory=list)
    failed: list[BatchAddFailure] = Field(default_factory=list)
    total: int
