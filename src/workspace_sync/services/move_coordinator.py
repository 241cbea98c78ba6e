from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from workspace_sync.config import Settings, settings
from workspace_sync.connectivity import ConnectivityMonitor
from workspace_sync.domain.hierarchy import descendant_ids
from workspace_sync.domain.ordering import calculate_reorder, move_order_index, renumber
from workspace_sync.domain.retry_policy import RetryPolicy
from workspace_sync.errors import (
    CorruptQueueError,
    NotFoundError,
    SyncError,
    TransientNetworkError,
    ValidationRejectedError,
)
from workspace_sync.integrations.items_api import ItemsAPI
from workspace_sync.notifications import LoggingNotifier, Notification, Notifier
from workspace_sync.offline_log import OfflineOperationLog
from workspace_sync.schemas_items import Item, ItemPatch
from workspace_sync.schemas_sync import UpdateOrderOperation
from workspace_sync.services.sync_engine import SyncEngine
from workspace_sync.stores.item_store import ItemStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MoveOutcome:
    item_id: str
    ok: bool
    queued: bool = False
    parent_id: str | None = None
    order_index: int | None = None
    attempts: int = 0
    error: SyncError | None = None


@dataclass(frozen=True)
class ReorderOutcome:
    workspace_id: str
    parent_id: str | None
    moves: list[MoveOutcome] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(m.ok for m in self.moves)


class MoveCoordinator:
    """Re-parent / reorder one item with optimistic update, contention retry and rollback."""

    def __init__(
        self,
        *,
        api: ItemsAPI,
        store: ItemStore,
        log: OfflineOperationLog,
        sync_engine: SyncEngine,
        notifier: Notifier | None = None,
        connectivity: ConnectivityMonitor | None = None,
        retry_policy: RetryPolicy | None = None,
        cfg: Settings | None = None,
    ) -> None:
        self._api = api
        self._store = store
        self._log = log
        self._sync = sync_engine
        self._notifier = notifier or LoggingNotifier()
        self._connectivity = connectivity
        self._cfg = cfg or settings
        self._retry = retry_policy or RetryPolicy.from_settings(self._cfg)

    async def _can_write_through(self, workspace_id: str, item_id: str, parent_id: str | None) -> bool:
        if self._cfg.batch_mode:
            return False
        if self._connectivity is not None and not self._connectivity.is_online:
            return False
        if self._store.is_unconfirmed(item_id):
            return False
        if parent_id and self._store.is_unconfirmed(parent_id):
            return False
        # Queued changes replay first; a direct write would be overtaken by them.
        try:
            return await self._log.count(workspace_id) == 0
        except CorruptQueueError:
            return False

    async def _enqueue(
        self, item: Item, parent_id: str | None, order_index: int, previous: dict[str, Any] | None
    ) -> MoveOutcome:
        try:
            _ = await self._log.enqueue(
                UpdateOrderOperation(
                    id=item.id,
                    workspace_id=item.workspace_id,
                    order_index=order_index,
                    parent_id=parent_id,
                )
            )
        except CorruptQueueError as e:
            logger.error("move could not be queued item_id=%s: %s", item.id, e)
            _ = self._store.rollback(item.id, previous)
            return self._fail(item.id, item.workspace_id, e)
        logger.info("move queued item_id=%s parent_id=%s order_index=%s", item.id, parent_id, order_index)
        return MoveOutcome(item.id, ok=True, queued=True, parent_id=parent_id, order_index=order_index)

    def _fail(self, item_id: str, workspace_id: str, error: SyncError, attempts: int = 0) -> MoveOutcome:
        self._notifier.notify(
            Notification(
                level="error",
                message="The item could not be moved",
                workspace_id=workspace_id,
                item_id=item_id,
                error_kind=error.kind,
            )
        )
        return MoveOutcome(item_id, ok=False, attempts=attempts, error=error)

    async def move(
        self,
        item_id: str,
        new_parent_id: str | None,
        workspace_id: str,
        order_index: int | None = None,
    ) -> MoveOutcome:
        item = self._store.get(item_id)
        if item is None or item.workspace_id != workspace_id:
            error = NotFoundError(f"item {item_id} not found in workspace {workspace_id}")
            logger.warning("move skipped: %s", error)
            return MoveOutcome(item_id, ok=False, error=error)

        item_id = item.id
        parent_id = self._store.resolve_id(new_parent_id) if new_parent_id else None
        if parent_id == item_id:
            error = ValidationRejectedError("an item cannot be its own parent")
            return MoveOutcome(item_id, ok=False, error=error)
        if parent_id is not None and parent_id in self._descendants(workspace_id, item_id):
            error = ValidationRejectedError("an item cannot be moved into its own subtree")
            return MoveOutcome(item_id, ok=False, error=error)

        explicit_order = order_index
        order = self._order_for(workspace_id, parent_id, item_id, 0, explicit_order)

        previous = self._store.apply_optimistic(
            ItemPatch(id=item_id, workspace_id=workspace_id, changes={"parent_id": parent_id, "order_index": order}),
            "update",
        )
        applied = self._store.get(item_id)
        issued_at = applied.updated_at if applied is not None else None
        logger.debug("optimistic move item_id=%s from=%s to=%s", item_id, item.parent_id, parent_id)

        if not await self._can_write_through(workspace_id, item_id, parent_id):
            return await self._enqueue(item, parent_id, order, previous)

        attempts = 0

        async def _call(attempt: int) -> Item:
            nonlocal attempts, order
            attempts = attempt + 1
            if attempt > 0:
                order = self._order_for(workspace_id, parent_id, item_id, attempt, explicit_order)
            return await self._api.update_order(item_id, order, parent_id)

        try:
            updated = await self._retry.run(_call, label=f"move item_id={item_id}")
        except TransientNetworkError:
            # Not delivered: keep the optimistic state and let the sync engine replay it.
            return await self._enqueue(item, parent_id, order, previous)
        except SyncError as e:
            _ = self._store.rollback(item_id, previous)
            logger.error("move failed item_id=%s after %s attempts: %s", item_id, attempts, e)
            return self._fail(item_id, workspace_id, e, attempts)

        _ = self._store.confirm(
            item_id,
            {
                "parent_id": updated.parent_id,
                "order_index": updated.order_index,
                "updated_at": updated.updated_at,
            },
            issued_at=issued_at,
        )
        # Sibling order on the old and new parent may have been renumbered server-side.
        _ = self._sync.schedule_refresh(workspace_id)
        return MoveOutcome(
            item_id,
            ok=True,
            parent_id=updated.parent_id,
            order_index=updated.order_index,
            attempts=attempts,
        )

    async def reorder(
        self, workspace_id: str, parent_id: str | None, ordered_ids: Sequence[str]
    ) -> ReorderOutcome:
        """Persist a drag-and-drop order for one sibling group (positions become order indexes)."""
        moves: list[MoveOutcome] = []
        for update in renumber(ordered_ids):
            moves.append(await self.move(update.item_id, parent_id, workspace_id, update.order_index))
        outcome = ReorderOutcome(workspace_id=workspace_id, parent_id=parent_id, moves=moves)
        if not outcome.ok:
            logger.warning("reorder partially failed workspace_id=%s parent_id=%s", workspace_id, parent_id)
        return outcome

    async def drop_onto(self, workspace_id: str, source_id: str, target_id: str) -> ReorderOutcome:
        """Drag-and-drop within one sibling group: ``source_id`` takes ``target_id``'s slot."""
        target = self._store.get(target_id)
        parent_id = target.parent_id if target is not None else None
        updates = calculate_reorder(
            self._store.siblings(workspace_id, parent_id),
            self._store.resolve_id(source_id),
            self._store.resolve_id(target_id),
        )
        if updates is None:
            return ReorderOutcome(workspace_id=workspace_id, parent_id=parent_id)
        return await self.reorder(workspace_id, parent_id, [u.item_id for u in updates])

    def _order_for(
        self,
        workspace_id: str,
        parent_id: str | None,
        item_id: str,
        attempt: int,
        explicit: int | None,
    ) -> int:
        if explicit is not None:
            return explicit + attempt
        return move_order_index(self._store.siblings(workspace_id, parent_id), item_id, attempt)

    def _descendants(self, workspace_id: str, item_id: str) -> set[str]:
        return descendant_ids(self._store.hierarchy(workspace_id), item_id)
