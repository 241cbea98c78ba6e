from __future__ import annotations

import secrets
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from workspace_sync.config import settings
from workspace_sync.models import utc_now
from workspace_sync.sync_utils import now_ms


ItemType = Literal["folder", "note", "video"]
MutationKind = Literal["create", "update", "delete", "restore"]

# Fields a client may change on an existing item.
MUTABLE_FIELDS: frozenset[str] = frozenset(
    {
        "title",
        "content",
        "youtube_id",
        "youtube_url",
        "parent_id",
        "order_index",
        "active",
        "completed",
        "completed_at",
        "video_watched_seconds",
        "deleted_at",
    }
)


def new_temp_id(prefix: str | None = None) -> str:
    prefix = prefix or settings.temp_id_prefix
    return f"{prefix}{now_ms()}-{secrets.token_hex(5)}"


def is_temp_id(value: str | None, prefix: str | None = None) -> bool:
    if not value:
        return False
    return value.startswith(prefix or settings.temp_id_prefix)


class Item(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1, max_length=128)
    workspace_id: str = Field(min_length=1, max_length=128)
    type: ItemType = "note"
    title: str = Field(default="", max_length=500)
    content: Optional[str] = None
    youtube_id: Optional[str] = None
    youtube_url: Optional[str] = None
    parent_id: Optional[str] = None
    order_index: int = 0
    active: bool = True
    completed: bool = False
    completed_at: Optional[datetime] = None
    video_watched_seconds: Optional[int] = None
    deleted_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class HierarchicalItem(Item):
    children: list["HierarchicalItem"] = Field(default_factory=list)


class ItemPatch(BaseModel):
    """Partial change to an existing item, addressed by id."""

    id: str = Field(min_length=1, max_length=128)
    workspace_id: Optional[str] = None
    changes: dict[str, Any] = Field(default_factory=dict)


class ItemCreate(BaseModel):
    type: ItemType
    title: str = Field(min_length=1, max_length=500)
    content: Optional[str] = None
    youtube_url: Optional[str] = None
    parent_id: Optional[str] = None
    order_index: Optional[int] = None
    active: bool = True


class ItemUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    content: Optional[str] = None
    youtube_url: Optional[str] = None
    parent_id: Optional[str] = None
    order_index: Optional[int] = None
    active: Optional[bool] = None
    completed: Optional[bool] = None
    completed_at: Optional[datetime] = None
    video_watched_seconds: Optional[int] = None


class ItemProposal(BaseModel):
    """A create request produced by the AI generation collaborator."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    temp_id: Optional[str] = Field(default=None, alias="__tempId")
    type: ItemType = "note"
    title: str = Field(min_length=1, max_length=500)
    content: Optional[str] = None
    youtube_url: Optional[str] = None
    parent_id: Optional[str] = None
