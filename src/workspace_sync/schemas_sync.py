from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from workspace_sync.schemas_items import Item, ItemType
from workspace_sync.sync_utils import now_ms


OperationType = Literal["CREATE", "UPDATE", "DELETE", "UPDATE_ORDER"]


class _OperationBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Temp item id for CREATE, target item id otherwise.
    id: str = Field(min_length=1, max_length=128)
    workspace_id: str = Field(min_length=1, max_length=128, alias="workspaceId")
    timestamp: int = Field(default_factory=now_ms)
    # Assigned by the offline log on enqueue.
    seq: int = 0

    @property
    def operation_id(self) -> str:
        return f"{self.type}-{self.id}-{self.seq}"  # type: ignore[attr-defined]

    def referenced_ids(self) -> set[str]:
        return {self.id}


class CreatePayload(BaseModel):
    type: ItemType
    title: str = Field(min_length=1, max_length=500)
    content: Optional[str] = None
    youtube_url: Optional[str] = None
    parent_id: Optional[str] = None
    order_index: Optional[int] = None


class CreateOperation(_OperationBase):
    type: Literal["CREATE"] = "CREATE"
    data: CreatePayload

    @property
    def operation_id(self) -> str:
        return self.id

    def referenced_ids(self) -> set[str]:
        refs = {self.id}
        if self.data.parent_id:
            refs.add(self.data.parent_id)
        return refs


class UpdateOperation(_OperationBase):
    type: Literal["UPDATE"] = "UPDATE"
    data: dict[str, Any] = Field(default_factory=dict)

    def referenced_ids(self) -> set[str]:
        refs = {self.id}
        parent_id = self.data.get("parent_id")
        if isinstance(parent_id, str) and parent_id:
            refs.add(parent_id)
        return refs


class DeleteOperation(_OperationBase):
    type: Literal["DELETE"] = "DELETE"


class UpdateOrderOperation(_OperationBase):
    type: Literal["UPDATE_ORDER"] = "UPDATE_ORDER"
    order_index: int = Field(alias="orderIndex")
    parent_id: Optional[str] = Field(default=None, alias="parentId")

    def referenced_ids(self) -> set[str]:
        refs = {self.id}
        if self.parent_id:
            refs.add(self.parent_id)
        return refs


PendingOperation = Annotated[
    Union[CreateOperation, UpdateOperation, DeleteOperation, UpdateOrderOperation],
    Field(discriminator="type"),
]

pending_operation_adapter: TypeAdapter[PendingOperation] = TypeAdapter(PendingOperation)


def remap_operation(op: PendingOperation, id_map: dict[str, str]) -> PendingOperation:
    """Return ``op`` with every temp id reference translated through ``id_map``."""
    if not id_map or not (op.referenced_ids() & id_map.keys()):
        return op

    new_id = id_map.get(op.id, op.id)
    if isinstance(op, CreateOperation):
        parent_id = op.data.parent_id
        data = op.data.model_copy(update={"parent_id": id_map.get(parent_id, parent_id) if parent_id else None})
        return op.model_copy(update={"id": new_id, "data": data})
    if isinstance(op, UpdateOperation):
        data = dict(op.data)
        parent_id = data.get("parent_id")
        if isinstance(parent_id, str) and parent_id in id_map:
            data["parent_id"] = id_map[parent_id]
        return op.model_copy(update={"id": new_id, "data": data})
    if isinstance(op, UpdateOrderOperation):
        parent_id = op.parent_id
        return op.model_copy(
            update={"id": new_id, "parent_id": id_map.get(parent_id, parent_id) if parent_id else None}
        )
    return op.model_copy(update={"id": new_id})


class OperationResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    operation_id: str = Field(alias="operationId")
    success: bool
    item: Optional[Item] = None
    error: Optional[str] = None
    # Backend error class, e.g. "validation_error" or "not_found". Missing means unknown.
    error_kind: Optional[str] = Field(default=None, alias="errorKind")


class BatchSyncResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    success: bool
    synced: int = 0
    failed: int = 0
    results: list[OperationResult] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    temp_id_map: dict[str, str] = Field(default_factory=dict, alias="tempIdMap")
