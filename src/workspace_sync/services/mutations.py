"""Offline-first mutation entry points.

Every mutation is applied to the item store first. It is then written through
to the backend when that is possible, and queued for the sync engine when the
client is offline, batch mode is on, a temporary id is involved, older changes
of the workspace are still queued, or the write did not reach the backend.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from workspace_sync.config import Settings, settings
from workspace_sync.connectivity import ConnectivityMonitor
from workspace_sync.errors import (
    CorruptQueueError,
    NotFoundError,
    SyncError,
    TransientNetworkError,
    ValidationRejectedError,
)
from workspace_sync.integrations.items_api import ItemsAPI
from workspace_sync.models import utc_now
from workspace_sync.notifications import LoggingNotifier, Notification, Notifier
from workspace_sync.offline_log import OfflineOperationLog
from workspace_sync.schemas_items import (
    MUTABLE_FIELDS,
    Item,
    ItemCreate,
    ItemPatch,
    ItemUpdate,
    new_temp_id,
)
from workspace_sync.schemas_sync import (
    CreateOperation,
    CreatePayload,
    DeleteOperation,
    PendingOperation,
    UpdateOperation,
    UpdateOrderOperation,
)
from workspace_sync.stores.item_store import ItemStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MutationOutcome:
    item_id: str
    ok: bool
    queued: bool = False
    item: Item | None = None
    error: SyncError | None = None


class MutationService:
    def __init__(
        self,
        *,
        api: ItemsAPI,
        store: ItemStore,
        log: OfflineOperationLog,
        notifier: Notifier | None = None,
        connectivity: ConnectivityMonitor | None = None,
        cfg: Settings | None = None,
    ) -> None:
        self._api = api
        self._store = store
        self._log = log
        self._notifier = notifier or LoggingNotifier()
        self._connectivity = connectivity
        self._cfg = cfg or settings

    @property
    def is_online(self) -> bool:
        return self._connectivity is None or self._connectivity.is_online

    async def _can_write_through(self, workspace_id: str, *ids: str | None) -> bool:
        if self._cfg.batch_mode or not self.is_online:
            return False
        if any(i and self._store.is_unconfirmed(i) for i in ids):
            return False
        # Older queued changes must reach the backend first.
        try:
            return await self._log.count(workspace_id) == 0
        except CorruptQueueError:
            return False

    async def _queue(self, op: PendingOperation, previous: dict[str, Any] | None) -> MutationOutcome:
        try:
            _ = await self._log.enqueue(op)
        except CorruptQueueError as e:
            if isinstance(op, CreateOperation):
                _ = self._store.remove(op.id)
            else:
                _ = self._store.rollback(op.id, previous)
            return self._fail(op.id, op.workspace_id, "The change could not be kept for later sync", e)
        return MutationOutcome(op.id, ok=True, queued=True, item=self._store.get(op.id))

    def _fail(
        self, item_id: str, workspace_id: str, message: str, error: SyncError
    ) -> MutationOutcome:
        logger.error("%s item_id=%s: %s", message, item_id, error)
        self._notifier.notify(
            Notification(
                level="error",
                message=message,
                workspace_id=workspace_id,
                item_id=item_id,
                error_kind=error.kind,
            )
        )
        return MutationOutcome(item_id, ok=False, error=error)

    def _confirm(self, item_id: str, server: Item, issued_at: datetime | None) -> None:
        _ = self._store.confirm(
            item_id,
            server.model_dump(include=set(MUTABLE_FIELDS) | {"updated_at"}),
            issued_at=issued_at,
        )

    # Create

    async def create_item(self, workspace_id: str, data: ItemCreate) -> MutationOutcome:
        parent_id = self._store.resolve_id(data.parent_id) if data.parent_id else None
        order_index = (
            data.order_index
            if data.order_index is not None
            else self._store.next_order_index(workspace_id, parent_id)
        )
        temp_id = new_temp_id(self._cfg.temp_id_prefix)
        now = utc_now()
        optimistic = Item(
            id=temp_id,
            workspace_id=workspace_id,
            type=data.type,
            title=data.title,
            content=data.content,
            youtube_url=data.youtube_url,
            parent_id=parent_id,
            order_index=order_index,
            active=data.active,
            created_at=now,
            updated_at=now,
        )
        _ = self._store.apply_optimistic(optimistic, "create")
        issued_at = self._issued_at(temp_id)
        op = CreateOperation(
            id=temp_id,
            workspace_id=workspace_id,
            data=CreatePayload(
                type=data.type,
                title=data.title,
                content=data.content,
                youtube_url=data.youtube_url,
                parent_id=parent_id,
                order_index=order_index,
            ),
        )

        if not await self._can_write_through(workspace_id, parent_id):
            return await self._queue(op, {})

        request = data.model_copy(update={"parent_id": parent_id, "order_index": order_index})
        try:
            created = await self._api.create_item(workspace_id, request)
        except TransientNetworkError as e:
            logger.warning("create not delivered, queued temp_id=%s: %s", temp_id, e)
            return await self._queue(op, {})
        except SyncError as e:
            _ = self._store.remove(temp_id)
            return self._fail(temp_id, workspace_id, "The item could not be created", e)

        self._store.remap_id(temp_id, created.id)
        await self._log.remap_ids({temp_id: created.id})
        self._confirm(created.id, created, issued_at)
        return MutationOutcome(created.id, ok=True, item=self._store.get(created.id))

    # Update

    async def update_item(self, item_id: str, changes: ItemUpdate) -> MutationOutcome:
        fields: dict[str, Any] = changes.model_dump(exclude_unset=True)
        if not fields:
            return MutationOutcome(item_id, ok=True, item=self._store.get(item_id))
        item = self._store.get(item_id)
        if item is None:
            return MutationOutcome(item_id, ok=False, error=NotFoundError(f"item {item_id} not in store"))
        item_id = item.id
        if fields.get("parent_id"):
            fields["parent_id"] = self._store.resolve_id(fields["parent_id"])

        previous = self._store.apply_optimistic(
            ItemPatch(id=item_id, workspace_id=item.workspace_id, changes=fields), "update"
        )
        issued_at = self._issued_at(item_id)
        op = UpdateOperation(id=item_id, workspace_id=item.workspace_id, data=_jsonable(fields))

        if not await self._can_write_through(item.workspace_id, item_id, fields.get("parent_id")):
            return await self._queue(op, previous)
        try:
            server = await self._api.update_item(item_id, ItemUpdate(**fields))
        except TransientNetworkError as e:
            logger.warning("update not delivered, queued item_id=%s: %s", item_id, e)
            return await self._queue(op, previous)
        except SyncError as e:
            _ = self._store.rollback(item_id, previous)
            return self._fail(item_id, item.workspace_id, "The change could not be saved", e)

        self._confirm(item_id, server, issued_at)
        return MutationOutcome(item_id, ok=True, item=self._store.get(item_id))

    async def update_order(
        self, item_id: str, order_index: int, parent_id: str | None = None
    ) -> MutationOutcome:
        item = self._store.get(item_id)
        if item is None:
            return MutationOutcome(item_id, ok=False, error=NotFoundError(f"item {item_id} not in store"))
        item_id = item.id
        parent_id = self._store.resolve_id(parent_id) if parent_id else None
        previous = self._store.apply_optimistic(
            ItemPatch(
                id=item_id,
                workspace_id=item.workspace_id,
                changes={"order_index": order_index, "parent_id": parent_id},
            ),
            "update",
        )
        issued_at = self._issued_at(item_id)
        op = UpdateOrderOperation(
            id=item_id, workspace_id=item.workspace_id, order_index=order_index, parent_id=parent_id
        )
        if not await self._can_write_through(item.workspace_id, item_id, parent_id):
            return await self._queue(op, previous)
        try:
            server = await self._api.update_order(item_id, order_index, parent_id)
        except TransientNetworkError as e:
            logger.warning("order update not delivered, queued item_id=%s: %s", item_id, e)
            return await self._queue(op, previous)
        except SyncError as e:
            _ = self._store.rollback(item_id, previous)
            return self._fail(item_id, item.workspace_id, "The items could not be reordered", e)

        self._confirm(item_id, server, issued_at)
        return MutationOutcome(item_id, ok=True, item=self._store.get(item_id))

    # Trash

    async def delete_item(self, item_id: str) -> MutationOutcome:
        """Soft delete (move to trash)."""
        item = self._store.get(item_id)
        if item is None:
            return MutationOutcome(item_id, ok=False, error=NotFoundError(f"item {item_id} not in store"))
        item_id = item.id
        previous = self._store.apply_optimistic(ItemPatch(id=item_id), "delete")
        op = DeleteOperation(id=item_id, workspace_id=item.workspace_id)
        if not await self._can_write_through(item.workspace_id, item_id):
            return await self._queue(op, previous)
        try:
            await self._api.delete_item(item_id)
        except TransientNetworkError as e:
            logger.warning("delete not delivered, queued item_id=%s: %s", item_id, e)
            return await self._queue(op, previous)
        except SyncError as e:
            _ = self._store.rollback(item_id, previous)
            return self._fail(item_id, item.workspace_id, "The item could not be deleted", e)
        return MutationOutcome(item_id, ok=True, item=self._store.get(item_id))

    async def restore_item(self, item_id: str) -> MutationOutcome:
        item = self._store.get(item_id)
        if item is None:
            return MutationOutcome(item_id, ok=False, error=NotFoundError(f"item {item_id} not in store"))
        item_id = item.id
        previous = self._store.apply_optimistic(ItemPatch(id=item_id), "restore")
        issued_at = self._issued_at(item_id)
        op = UpdateOperation(id=item_id, workspace_id=item.workspace_id, data={"active": True})
        if not await self._can_write_through(item.workspace_id, item_id):
            return await self._queue(op, previous)
        try:
            server = await self._api.restore_item(item_id)
        except TransientNetworkError as e:
            logger.warning("restore not delivered, queued item_id=%s: %s", item_id, e)
            return await self._queue(op, previous)
        except SyncError as e:
            _ = self._store.rollback(item_id, previous)
            return self._fail(item_id, item.workspace_id, "The item could not be restored", e)
        self._confirm(item_id, server, issued_at)
        return MutationOutcome(item_id, ok=True, item=self._store.get(item_id))

    async def permanent_delete(self, item_id: str) -> MutationOutcome:
        """Irreversible; only available online and for confirmed items."""
        item = self._store.get(item_id)
        if item is None:
            return MutationOutcome(item_id, ok=False, error=NotFoundError(f"item {item_id} not in store"))
        if self._store.is_unconfirmed(item.id):
            return MutationOutcome(
                item.id,
                ok=False,
                error=ValidationRejectedError("unsynced items can only be moved to trash"),
            )
        if not self.is_online:
            return MutationOutcome(
                item.id, ok=False, error=TransientNetworkError("permanent delete requires a connection")
            )
        try:
            await self._api.permanent_delete(item.id)
        except NotFoundError:
            pass
        except SyncError as e:
            return self._fail(item.id, item.workspace_id, "The item could not be deleted permanently", e)
        _ = self._store.remove(item.id)
        return MutationOutcome(item.id, ok=True)

    def _issued_at(self, item_id: str) -> datetime | None:
        current = self._store.get(item_id)
        return current.updated_at if current is not None else None


def _jsonable(fields: dict[str, Any]) -> dict[str, Any]:
    return {k: v.isoformat() if isinstance(v, datetime) else v for k, v in fields.items()}
