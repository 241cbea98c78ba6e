from __future__ import annotations

import random
from collections.abc import AsyncGenerator, Awaitable, Callable, Sequence
from typing import Any

import pytest

from workspace_sync.config import Settings
from workspace_sync.connectivity import ConnectivityMonitor
from workspace_sync.db import dispose_engine_cache
from workspace_sync.domain.retry_policy import RetryPolicy
from workspace_sync.errors import NotFoundError
from workspace_sync.models import utc_now
from workspace_sync.notifications import CollectingNotifier
from workspace_sync.offline_log import OfflineOperationLog
from workspace_sync.schemas_items import Item, ItemCreate, ItemUpdate
from workspace_sync.schemas_sync import (
    BatchSyncResult,
    CreateOperation,
    DeleteOperation,
    OperationResult,
    PendingOperation,
    UpdateOperation,
    UpdateOrderOperation,
    remap_operation,
)
from workspace_sync.services.sync_engine import SyncEngine
from workspace_sync.stores.item_store import ItemStore
from workspace_sync.stores.kv_store import MemoryKeyValueStore

WS = "ws-1"

BatchHandler = Callable[[str, list[PendingOperation]], Awaitable[BatchSyncResult]]


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
async def _dispose_engine_cache_per_test(  # pyright: ignore[reportUnusedFunction]
    anyio_backend: object,  # noqa: ARG001
) -> AsyncGenerator[None, None]:
    # Dispose cached AsyncEngines (aiosqlite worker threads) while the
    # per-test event loop is still alive.
    _ = anyio_backend
    yield
    await dispose_engine_cache()


def make_item(item_id: str, **overrides: Any) -> Item:
    values: dict[str, Any] = {"id": item_id, "workspace_id": WS, "title": item_id}
    values.update(overrides)
    return Item(**values)


class FakeItemsAPI:
    """In-memory backend with scriptable failures per method."""

    def __init__(self) -> None:
        self.items: dict[str, Item] = {}
        self.calls: list[tuple[str, Any]] = []
        self.batches: list[list[PendingOperation]] = []
        self.failures: dict[str, list[BaseException]] = {}
        self.batch_handler: BatchHandler | None = None
        self._next_id = 1

    def fail(self, method: str, *errors: BaseException) -> None:
        self.failures.setdefault(method, []).extend(errors)

    def seed(self, *items: Item) -> None:
        for item in items:
            self.items[item.id] = item.model_copy(deep=True)

    def _record(self, method: str, args: Any) -> None:
        self.calls.append((method, args))
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def calls_to(self, method: str) -> list[Any]:
        return [args for name, args in self.calls if name == method]

    def _get(self, item_id: str) -> Item:
        item = self.items.get(item_id)
        if item is None:
            raise NotFoundError(f"Item {item_id} not found", status_code=404)
        return item

    def _create(self, workspace_id: str, data: dict[str, Any]) -> Item:
        item_id = f"srv-{self._next_id}"
        self._next_id += 1
        values = {k: v for k, v in data.items() if v is not None}
        item = Item(id=item_id, workspace_id=workspace_id, **values)
        self.items[item_id] = item
        return item.model_copy(deep=True)

    def _update(self, item_id: str, changes: dict[str, Any]) -> Item:
        item = self._get(item_id).model_copy(update={**changes, "updated_at": utc_now()})
        self.items[item_id] = item
        return item.model_copy(deep=True)

    async def list_items(self, workspace_id: str) -> list[Item]:
        self._record("list_items", workspace_id)
        return [
            i.model_copy(deep=True)
            for i in self.items.values()
            if i.workspace_id == workspace_id and i.active
        ]

    async def get_item(self, item_id: str) -> Item:
        self._record("get_item", item_id)
        return self._get(item_id).model_copy(deep=True)

    async def create_item(self, workspace_id: str, data: ItemCreate) -> Item:
        self._record("create_item", (workspace_id, data))
        return self._create(workspace_id, data.model_dump())

    async def update_item(self, item_id: str, data: ItemUpdate) -> Item:
        self._record("update_item", (item_id, data))
        return self._update(item_id, data.model_dump(exclude_unset=True))

    async def update_order(self, item_id: str, order_index: int, parent_id: str | None) -> Item:
        self._record("update_order", (item_id, order_index, parent_id))
        return self._update(item_id, {"order_index": order_index, "parent_id": parent_id})

    async def delete_item(self, item_id: str) -> None:
        self._record("delete_item", item_id)
        _ = self._update(item_id, {"active": False, "deleted_at": utc_now()})

    async def restore_item(self, item_id: str) -> Item:
        self._record("restore_item", item_id)
        return self._update(item_id, {"active": True, "deleted_at": None})

    async def permanent_delete(self, item_id: str) -> None:
        self._record("permanent_delete", item_id)
        _ = self._get(item_id)
        del self.items[item_id]

    async def list_trash(self, workspace_id: str) -> list[Item]:
        self._record("list_trash", workspace_id)
        return [
            i.model_copy(deep=True)
            for i in self.items.values()
            if i.workspace_id == workspace_id and not i.active
        ]

    async def sync_batch(
        self, workspace_id: str, operations: Sequence[PendingOperation]
    ) -> BatchSyncResult:
        ops = list(operations)
        self.batches.append(ops)
        self._record("sync_batch", (workspace_id, ops))
        if self.batch_handler is not None:
            return await self.batch_handler(workspace_id, ops)
        return self.apply_batch(workspace_id, ops)

    def apply_batch(self, workspace_id: str, ops: list[PendingOperation]) -> BatchSyncResult:
        id_map: dict[str, str] = {}
        results: list[OperationResult] = []
        for sent in ops:
            op = remap_operation(sent, id_map)
            if isinstance(op, CreateOperation):
                item = self._create(workspace_id, op.data.model_dump())
                id_map[sent.id] = item.id
            elif isinstance(op, UpdateOperation):
                item = self._update(op.id, dict(op.data))
            elif isinstance(op, DeleteOperation):
                item = self._update(op.id, {"active": False, "deleted_at": utc_now()})
            elif isinstance(op, UpdateOrderOperation):
                item = self._update(op.id, {"order_index": op.order_index, "parent_id": op.parent_id})
            results.append(OperationResult(operation_id=sent.operation_id, success=True, item=item))
        return BatchSyncResult(
            success=True, synced=len(results), failed=0, results=results, temp_id_map=id_map
        )


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def cfg() -> Settings:
    return Settings(
        _env_file=None,  # pyright: ignore[reportCallIssue]
        batch_mode=False,
        sync_idle_interval_seconds=0,
        connectivity_settle_seconds=0,
        post_move_resync_delay_seconds=0,
    )


@pytest.fixture
def store(cfg: Settings) -> ItemStore:
    return ItemStore(temp_id_prefix=cfg.temp_id_prefix)


@pytest.fixture
def kv() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def op_log(kv: MemoryKeyValueStore, cfg: Settings) -> OfflineOperationLog:
    return OfflineOperationLog(
        kv, storage_key=cfg.queue_storage_key, max_operations=cfg.queue_max_operations
    )


@pytest.fixture
def api() -> FakeItemsAPI:
    return FakeItemsAPI()


@pytest.fixture
def notifier() -> CollectingNotifier:
    return CollectingNotifier()


@pytest.fixture
def connectivity() -> ConnectivityMonitor:
    return ConnectivityMonitor(online=True)


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def retry_policy(sleeps: SleepRecorder) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=3, backoff_min_ms=50, backoff_max_ms=200, rng=random.Random(7), sleep=sleeps
    )


@pytest.fixture
async def sync_engine(
    api: FakeItemsAPI,
    store: ItemStore,
    op_log: OfflineOperationLog,
    notifier: CollectingNotifier,
    connectivity: ConnectivityMonitor,
    retry_policy: RetryPolicy,
    cfg: Settings,
) -> AsyncGenerator[SyncEngine, None]:
    engine = SyncEngine(
        api=api,
        store=store,
        log=op_log,
        notifier=notifier,
        connectivity=connectivity,
        retry_policy=retry_policy,
        cfg=cfg,
    )
    yield engine
    await engine.aclose()
