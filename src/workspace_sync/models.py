# basedpyright: reportAssignmentType=false
# basedpyright: reportIncompatibleVariableOverride=false

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, LargeBinary
from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class KeyValueEntry(SQLModel, table=True):
    """Durable local byte store row (one row per key)."""

    __tablename__ = "kv_entries"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]

    key: str = Field(primary_key=True, min_length=1, max_length=200)
    value: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    updated_at: datetime = Field(default_factory=utc_now, index=True)
