# basedpyright: reportAssignmentType=false
# basedpyright: reportIncompatibleVariableOverride=false

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    CheckConstraint,
    Column,
    ForeignKey,
    ForeignKeyConstraint,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.types import JSON as SAJSON
from sqlmodel import Field, SQLModel


SAVED_ITEM_TYPES: tuple[str, ...] = ("APOD", "NEO", "MARS", "EPIC", "EARTH", "IMAGES")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class SavedItem(SQLModel, table=True):
    __tablename__ = "saved_items"  # pyright: ignore[reportAssignmentType]
    __table_args__ = (Index("ix_saved_items_user_id_saved_at", "user_id", "saved_at"),)

    # 主键为（用户, 目录条目 id）；归档后行仍保留，再次收藏即重新激活
    user_id: str = Field(primary_key=True, min_length=1, max_length=128)
    id: str = Field(primary_key=True, min_length=1, max_length=255)

    type: str = Field(index=True, max_length=20)

    # 收藏时的目录数据快照
    title: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    url: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    hd_url: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    media_type: Optional[str] = Field(default="image", max_length=50)
    category: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    copyright: Optional[str] = Field(default=None, max_length=500)
    content_date: Optional[date] = Field(default=None)

    saved_at: datetime = Field(default_factory=utc_now, index=True)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    is_archived: bool = Field(default=False, index=True)
    user_note: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    user_tags: list[str] = Field(default_factory=list, sa_column=Column(SAJSON, nullable=False))
    is_favorite: bool = Field(default=False, index=True)
    # "metadata" is reserved on declarative classes; keep the column name, rename the attribute.
    item_metadata: dict[str, Any] = Field(
        default_factory=dict, sa_column=Column("metadata", SAJSON, nullable=False)
    )


class Collection(SQLModel, table=True):
    __tablename__ = "collections"  # pyright: ignore[reportAssignmentType]
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_collections_user_id_name"),)

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    user_id: str = Field(index=True, min_length=1, max_length=128)

    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    is_public: bool = Field(default=False, index=True)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now, index=True)


class CollectionItem(SQLModel, table=True):
    __tablename__ = "collection_items"  # pyright: ignore[reportAssignmentType]
    __table_args__ = (
        UniqueConstraint("collection_id", "item_id", name="uq_collection_items_collection_item"),
        ForeignKeyConstraint(
            ["user_id", "item_id"],
            ["saved_items.user_id", "saved_items.id"],
            name="fk_collection_items_saved_item",
        ),
        CheckConstraint("position >= 0", name="ck_collection_items_position_non_negative"),
        Index("ix_collection_items_collection_id_position", "collection_id", "position"),
        Index("ix_collection_items_user_id_item_id", "user_id", "item_id"),
    )

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    collection_id: str = Field(
        sa_column=Column(
            String(36),
            ForeignKey("collections.id", ondelete="CASCADE"),
            nullable=False,
        )
    )
    # Owner of the collection; the referenced saved item always belongs to the same owner.
    user_id: str = Field(max_length=128)
    item_id: str = Field(max_length=255)

    position: int = Field(default=0)
    notes: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    added_at: datetime = Field(default_factory=utc_now)
