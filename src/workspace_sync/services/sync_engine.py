from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Literal

import anyio

from workspace_sync.config import Settings, settings
from workspace_sync.connectivity import ConnectivityMonitor
from workspace_sync.domain.retry_policy import RetryPolicy
from workspace_sync.errors import CorruptQueueError, SyncError, TransientNetworkError, is_write_conflict_message
from workspace_sync.integrations.items_api import ItemsAPI
from workspace_sync.models import utc_now
from workspace_sync.notifications import LoggingNotifier, Notification, Notifier
from workspace_sync.offline_log import OfflineOperationLog
from workspace_sync.schemas_items import Item, is_temp_id
from workspace_sync.schemas_sync import BatchSyncResult, CreateOperation, OperationResult, PendingOperation
from workspace_sync.stores.item_store import ItemStore

logger = logging.getLogger(__name__)

SyncTrigger = Literal["mount", "connectivity", "timer", "explicit"]

_RETRYABLE_KINDS = {"transient_network", "write_conflict", "timeout", "rate_limited"}


class SyncState(str, Enum):
    IDLE = "IDLE"
    SYNCING = "SYNCING"
    ERROR_BACKOFF = "ERROR_BACKOFF"
    # The persisted queue for this workspace cannot be decoded.
    HALTED = "HALTED"


@dataclass(frozen=True)
class SyncOutcome:
    workspace_id: str
    state: SyncState
    attempted: int = 0
    synced: int = 0
    rejected: int = 0
    remaining: int = 0
    drains: int = 0
    coalesced: bool = False
    skipped: str | None = None
    error: SyncError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.skipped is None


@dataclass(frozen=True)
class _DrainResult:
    state: SyncState
    attempted: int = 0
    synced: int = 0
    rejected: int = 0
    remaining: int = 0
    fresh: int = 0
    error: SyncError | None = None


def _is_retryable_result(result: OperationResult) -> bool:
    if result.error_kind is not None:
        return result.error_kind in _RETRYABLE_KINDS
    return is_write_conflict_message(result.error or "")


class SyncEngine:
    """Drains the offline log against the backend, one batch per workspace at a time.

    States per workspace: IDLE -> SYNCING -> IDLE | ERROR_BACKOFF (| HALTED).
    A trigger that arrives while a drain is in flight is coalesced into a
    single re-check run by the active drain.
    """

    def __init__(
        self,
        *,
        api: ItemsAPI,
        store: ItemStore,
        log: OfflineOperationLog,
        notifier: Notifier | None = None,
        connectivity: ConnectivityMonitor | None = None,
        retry_policy: RetryPolicy | None = None,
        cfg: Settings | None = None,
    ) -> None:
        self._api = api
        self._store = store
        self._log = log
        self._notifier = notifier or LoggingNotifier()
        self._connectivity = connectivity
        self._cfg = cfg or settings
        self._retry = retry_policy or RetryPolicy.from_settings(self._cfg)
        self._states: dict[str, SyncState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._recheck: dict[str, bool] = {}
        self._last_sync_at: dict[str, datetime] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._refresh_tasks: dict[str, asyncio.Task[Any]] = {}
        self._timer_task: asyncio.Task[Any] | None = None
        self._unsubscribe: Any = None

    # State

    def state(self, workspace_id: str) -> SyncState:
        return self._states.get(workspace_id, SyncState.IDLE)

    def last_sync_at(self, workspace_id: str) -> datetime | None:
        return self._last_sync_at.get(workspace_id)

    def reset(self, workspace_id: str) -> None:
        """Leave HALTED/ERROR_BACKOFF once the cause has been dealt with."""
        self._states[workspace_id] = SyncState.IDLE

    def _lock_for(self, workspace_id: str) -> asyncio.Lock:
        lock = self._locks.get(workspace_id)
        if lock is None:
            lock = self._locks[workspace_id] = asyncio.Lock()
        return lock

    # Triggers

    async def mount(self, workspace_id: str) -> SyncOutcome:
        return await self.sync(workspace_id, trigger="mount")

    async def sync(self, workspace_id: str, *, trigger: SyncTrigger = "explicit") -> SyncOutcome:
        state = self.state(workspace_id)
        if state is SyncState.HALTED:
            return SyncOutcome(workspace_id, state, skipped="halted")
        if state is SyncState.ERROR_BACKOFF and trigger == "mount":
            return SyncOutcome(workspace_id, state, skipped="backoff")
        if self._connectivity is not None and not self._connectivity.is_online:
            return SyncOutcome(workspace_id, state, skipped="offline")

        lock = self._lock_for(workspace_id)
        if lock.locked():
            self._recheck[workspace_id] = True
            logger.debug("sync coalesced workspace_id=%s trigger=%s", workspace_id, trigger)
            return SyncOutcome(workspace_id, SyncState.SYNCING, coalesced=True)

        async with lock:
            self._recheck[workspace_id] = False
            self._states[workspace_id] = SyncState.SYNCING
            logger.debug("sync start workspace_id=%s trigger=%s", workspace_id, trigger)
            first = await self._drain(workspace_id)
            results = [first]
            recheck = self._recheck.pop(workspace_id, False)
            if first.state is SyncState.SYNCING and (
                recheck or (self._cfg.sync_recheck_on_new_operations and first.fresh > 0)
            ):
                # Operations arrived while the batch was in flight: one more pass.
                results.append(await self._drain(workspace_id))

            final = results[-1]
            state = SyncState.IDLE if final.state is SyncState.SYNCING else final.state
            self._states[workspace_id] = state
            return SyncOutcome(
                workspace_id,
                state,
                attempted=sum(r.attempted for r in results),
                synced=sum(r.synced for r in results),
                rejected=sum(r.rejected for r in results),
                remaining=final.remaining,
                drains=len(results),
                error=final.error,
            )

    async def sync_all(self, *, trigger: SyncTrigger = "explicit") -> list[SyncOutcome]:
        try:
            workspace_ids = await self._log.pending_workspaces()
        except CorruptQueueError:
            logger.exception("offline queue unreadable; nothing synced")
            return []
        return [await self.sync(ws, trigger=trigger) for ws in workspace_ids]

    # Drain

    async def _drain(self, workspace_id: str) -> _DrainResult:
        try:
            ops = await self._log.dequeue_all(workspace_id)
        except CorruptQueueError as e:
            logger.exception("offline queue corrupted workspace_id=%s; queue halted", workspace_id)
            self._notifier.notify(
                Notification(
                    level="error",
                    message="Pending changes could not be read and were not synced",
                    workspace_id=workspace_id,
                    error_kind=e.kind,
                )
            )
            return _DrainResult(state=SyncState.HALTED, error=e)

        if not ops:
            # Nothing to push: SYNCING here means "continue to IDLE".
            return _DrainResult(state=SyncState.SYNCING)

        logger.info("syncing %s operations workspace_id=%s", len(ops), workspace_id)
        try:
            result = await self._retry.run(
                lambda _attempt: self._api.sync_batch(workspace_id, ops),
                label=f"sync batch workspace_id={workspace_id}",
            )
        except TransientNetworkError as e:
            logger.warning("sync batch not delivered workspace_id=%s: %s", workspace_id, e)
            return _DrainResult(
                state=SyncState.ERROR_BACKOFF, attempted=len(ops), remaining=len(ops), error=e
            )
        except SyncError as e:
            logger.error("sync batch rejected workspace_id=%s: %s", workspace_id, e)
            self._notifier.notify(
                Notification(
                    level="error",
                    message="Pending changes could not be synced; they will be retried",
                    workspace_id=workspace_id,
                    error_kind=e.kind,
                )
            )
            return _DrainResult(
                state=SyncState.ERROR_BACKOFF, attempted=len(ops), remaining=len(ops), error=e
            )

        logger.info(
            "sync result workspace_id=%s synced=%s failed=%s", workspace_id, result.synced, result.failed
        )
        acked, rejected = self._acknowledge(ops, result)
        await self._apply_result(workspace_id, ops, acked, rejected, result)

        sent_seqs = {op.seq for op in ops}
        remaining_ops = await self._log.dequeue_all(workspace_id)
        fresh = sum(1 for op in remaining_ops if op.seq not in sent_seqs)

        if not acked and not rejected and not result.success:
            error = SyncError("; ".join(result.errors) or "sync batch failed")
            return _DrainResult(
                state=SyncState.ERROR_BACKOFF,
                attempted=len(ops),
                remaining=len(remaining_ops),
                fresh=fresh,
                error=error,
            )
        return _DrainResult(
            state=SyncState.SYNCING,
            attempted=len(ops),
            synced=len(acked),
            rejected=len(rejected),
            remaining=len(remaining_ops),
            fresh=fresh,
        )

    def _acknowledge(
        self, ops: list[PendingOperation], result: BatchSyncResult
    ) -> tuple[list[PendingOperation], list[tuple[PendingOperation, OperationResult]]]:
        """Split the sent batch into confirmed and permanently rejected operations.

        Anything else (transient failures, missing results) stays queued.
        """
        if not result.results:
            if result.success and result.failed == 0:
                return list(ops), []
            logger.warning(
                "sync batch reported %s failures without per-operation results; keeping %s operations queued",
                result.failed,
                len(ops),
            )
            return [], []

        by_id = {r.operation_id: r for r in result.results}
        acked: list[PendingOperation] = []
        rejected: list[tuple[PendingOperation, OperationResult]] = []
        for op in ops:
            op_result = by_id.get(op.operation_id)
            if op_result is None:
                continue
            if op_result.success:
                acked.append(op)
            elif not _is_retryable_result(op_result):
                rejected.append((op, op_result))
        return acked, rejected

    async def _apply_result(
        self,
        workspace_id: str,
        ops: list[PendingOperation],
        acked: list[PendingOperation],
        rejected: list[tuple[PendingOperation, OperationResult]],
        result: BatchSyncResult,
    ) -> None:
        # Only the sent snapshot is acknowledged; later enqueues stay put.
        await self._log.remove_many([op.operation_id for op in acked] + [op.operation_id for op, _ in rejected])

        id_map = dict(result.temp_id_map)
        confirmed_items: list[Item] = []
        by_id = {r.operation_id: r for r in result.results}
        for op in acked:
            op_result = by_id.get(op.operation_id)
            if op_result is None or op_result.item is None:
                continue
            confirmed_items.append(op_result.item)
            if isinstance(op, CreateOperation) and is_temp_id(op.id, self._cfg.temp_id_prefix) and op_result.item.id != op.id:
                id_map.setdefault(op.id, op_result.item.id)

        self._store.reconcile(confirmed_items, id_map)
        await self._log.remap_ids(id_map)

        still_queued: set[str] = set()
        if rejected:
            for queued in await self._log.dequeue_all(workspace_id):
                still_queued |= queued.referenced_ids()

        for op, op_result in rejected:
            if isinstance(op, CreateOperation):
                _ = self._store.remove(op.id)
            elif self._store.resolve_id(op.id) not in still_queued:
                # The refresh below restores the server's values.
                _ = self._store.discard_pending(op.id)
            logger.warning(
                "operation rejected %s %s workspace_id=%s: %s", op.type, op.id, workspace_id, op_result.error
            )
            self._notifier.notify(
                Notification(
                    level="error",
                    message=f"Change could not be saved: {op_result.error or 'rejected by server'}",
                    workspace_id=workspace_id,
                    item_id=op.id,
                    error_kind=op_result.error_kind,
                )
            )

        if acked or rejected:
            await self._log.mark_synced()
            # Replace optimistic state with server truth.
            _ = await self.refresh(workspace_id)

    # Read-view invalidation

    async def refresh(self, workspace_id: str) -> bool:
        try:
            items = await self._api.list_items(workspace_id)
        except SyncError as e:
            logger.warning("refresh failed workspace_id=%s: %s", workspace_id, e)
            return False
        self._store.reconcile(items, workspace_id=workspace_id, authoritative=True)
        self._last_sync_at[workspace_id] = utc_now()
        return True

    def schedule_refresh(self, workspace_id: str, delay: float | None = None) -> asyncio.Task[Any]:
        """Debounced refresh; a newer request replaces a pending one."""
        delay = self._cfg.post_move_resync_delay_seconds if delay is None else delay
        previous = self._refresh_tasks.pop(workspace_id, None)
        if previous is not None and not previous.done():
            previous.cancel()

        async def _run() -> None:
            await anyio.sleep(delay)
            if self.state(workspace_id) is SyncState.SYNCING:
                # The active drain refreshes on completion.
                return
            _ = await self.refresh(workspace_id)

        task = self._spawn(_run())
        self._refresh_tasks[workspace_id] = task
        return task

    # Lifecycle

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _on_connectivity(self, online: bool) -> None:
        if not online:
            return

        async def _settle_then_sync() -> None:
            await anyio.sleep(self._cfg.connectivity_settle_seconds)
            _ = await self.sync_all(trigger="connectivity")

        _ = self._spawn(_settle_then_sync())

    async def _timer_loop(self) -> None:
        while True:
            await anyio.sleep(self._cfg.sync_idle_interval_seconds)
            try:
                _ = await self.sync_all(trigger="timer")
            except Exception:
                logger.exception("idle sync tick failed")

    def start(self) -> None:
        if self._connectivity is not None and self._unsubscribe is None:
            self._unsubscribe = self._connectivity.subscribe(self._on_connectivity)
        if self._timer_task is None and self._cfg.sync_idle_interval_seconds > 0:
            self._timer_task = self._spawn(self._timer_loop())

    async def wait_for_background(self) -> None:
        while True:
            pending = [t for t in self._tasks if t is not self._timer_task and not t.done()]
            if not pending:
                return
            _ = await asyncio.gather(*pending, return_exceptions=True)

    async def aclose(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            _ = await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self._refresh_tasks.clear()
        self._timer_task = None
