from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from conftest import WS
from workspace_sync.db import get_engine
from workspace_sync.errors import CorruptQueueError
from workspace_sync.offline_log import STORAGE_VERSION, OfflineOperationLog
from workspace_sync.schemas_sync import (
    CreateOperation,
    CreatePayload,
    DeleteOperation,
    UpdateOperation,
    UpdateOrderOperation,
)
from workspace_sync.stores.kv_store import LocalFileKeyValueStore, MemoryKeyValueStore, SqlKeyValueStore


def _create(temp_id: str, parent_id: str | None = None, workspace_id: str = WS) -> CreateOperation:
    return CreateOperation(
        id=temp_id,
        workspace_id=workspace_id,
        data=CreatePayload(type="note", title=temp_id, parent_id=parent_id),
    )


@pytest.mark.anyio
async def test_enqueue_assigns_sequence_and_keeps_fifo(op_log: OfflineOperationLog) -> None:
    await op_log.enqueue(_create("temp-1-a"))
    await op_log.enqueue(UpdateOperation(id="srv-9", workspace_id=WS, data={"title": "x"}))
    await op_log.enqueue(DeleteOperation(id="srv-9", workspace_id=WS))

    ops = await op_log.dequeue_all(WS)

    assert [op.type for op in ops] == ["CREATE", "UPDATE", "DELETE"]
    assert [op.seq for op in ops] == [1, 2, 3]
    assert ops[1].operation_id == "UPDATE-srv-9-2"
    assert ops[0].operation_id == "temp-1-a"


@pytest.mark.anyio
async def test_concurrent_enqueues_are_all_kept(op_log: OfflineOperationLog) -> None:
    ops = [UpdateOperation(id=f"srv-{i}", workspace_id=WS, data={"title": str(i)}) for i in range(25)]

    await asyncio.gather(*(op_log.enqueue(op) for op in ops))

    stored = await op_log.dequeue_all(WS)
    assert sorted(op.id for op in stored) == sorted(op.id for op in ops)
    assert [op.seq for op in stored] == list(range(1, 26))


@pytest.mark.anyio
async def test_dequeue_is_not_destructive_and_filters_workspace(op_log: OfflineOperationLog) -> None:
    await op_log.enqueue(_create("temp-1-a"))
    await op_log.enqueue(_create("temp-1-b", workspace_id="ws-2"))

    assert len(await op_log.dequeue_all(WS)) == 1
    assert len(await op_log.dequeue_all(WS)) == 1
    assert await op_log.pending_workspaces() == [WS, "ws-2"]
    assert await op_log.count() == 2
    assert await op_log.count("ws-2") == 1


@pytest.mark.anyio
async def test_bounded_queue_evicts_oldest(kv: MemoryKeyValueStore) -> None:
    evicted_seen: list[str] = []
    log = OfflineOperationLog(
        kv,
        storage_key="q",
        max_operations=3,
        on_evict=lambda ops: evicted_seen.extend(op.id for op in ops),
    )

    for i in range(5):
        await log.enqueue(DeleteOperation(id=f"srv-{i}", workspace_id=WS))

    assert [op.id for op in await log.dequeue_all(WS)] == ["srv-2", "srv-3", "srv-4"]
    assert evicted_seen == ["srv-0", "srv-1"]


@pytest.mark.anyio
async def test_remove_many_only_touches_named_operations(op_log: OfflineOperationLog) -> None:
    await op_log.enqueue(DeleteOperation(id="srv-1", workspace_id=WS))
    await op_log.enqueue(DeleteOperation(id="srv-1", workspace_id=WS))
    first, second = await op_log.dequeue_all(WS)

    assert await op_log.remove_many([first.operation_id]) == 1
    assert [op.seq for op in await op_log.dequeue_all(WS)] == [second.seq]
    assert await op_log.remove("nope") is False


@pytest.mark.anyio
async def test_remap_ids_rewrites_references(op_log: OfflineOperationLog) -> None:
    await op_log.enqueue(_create("temp-1-p"))
    await op_log.enqueue(_create("temp-2-c", parent_id="temp-1-p"))
    await op_log.enqueue(UpdateOrderOperation(id="srv-7", workspace_id=WS, order_index=0, parent_id="temp-1-p"))

    await op_log.remap_ids({"temp-1-p": "srv-1"})

    create_p, create_c, move = await op_log.dequeue_all(WS)
    assert create_p.id == "srv-1"
    assert isinstance(create_c, CreateOperation) and create_c.data.parent_id == "srv-1"
    assert isinstance(move, UpdateOrderOperation) and move.parent_id == "srv-1"


@pytest.mark.anyio
async def test_clear_and_stats(op_log: OfflineOperationLog) -> None:
    await op_log.enqueue(_create("temp-1-a"))
    await op_log.enqueue(UpdateOrderOperation(id="srv-1", workspace_id=WS, order_index=2))
    await op_log.enqueue(DeleteOperation(id="srv-2", workspace_id="ws-2"))

    stats = await op_log.stats()
    assert (stats.total, stats.creates, stats.order_updates, stats.deletes) == (3, 1, 1, 1)

    await op_log.clear(WS)
    assert await op_log.pending_workspaces() == ["ws-2"]
    await op_log.clear()
    assert await op_log.count() == 0


@pytest.mark.anyio
async def test_undecodable_payload_raises_corrupt_queue(kv: MemoryKeyValueStore) -> None:
    await kv.put_bytes("q", b"{not json")
    log = OfflineOperationLog(kv, storage_key="q")

    with pytest.raises(CorruptQueueError):
        await log.dequeue_all(WS)


@pytest.mark.anyio
async def test_invalid_entry_only_halts_its_workspace(kv: MemoryKeyValueStore) -> None:
    envelope = {
        "version": STORAGE_VERSION,
        "operations": [
            {"type": "DELETE", "id": "srv-1", "workspaceId": "ws-bad", "timestamp": 1, "seq": 1},
            {"type": "UPDATE_ORDER", "id": "srv-2", "workspaceId": "ws-bad", "seq": 2},
            {"type": "DELETE", "id": "srv-3", "workspaceId": WS, "timestamp": 1, "seq": 3},
        ],
        "last_sync": None,
        "next_seq": 4,
    }
    await kv.put_bytes("q", json.dumps(envelope).encode("utf-8"))
    log = OfflineOperationLog(kv, storage_key="q")

    with pytest.raises(CorruptQueueError) as exc_info:
        await log.dequeue_all("ws-bad")
    assert exc_info.value.workspace_id == "ws-bad"
    assert [op.id for op in await log.dequeue_all(WS)] == ["srv-3"]


@pytest.mark.anyio
async def test_version_mismatch_starts_empty(kv: MemoryKeyValueStore) -> None:
    await kv.put_bytes("q", json.dumps({"version": "0.9", "operations": [{"x": 1}]}).encode("utf-8"))
    log = OfflineOperationLog(kv, storage_key="q")

    assert await log.count() == 0
    await log.enqueue(DeleteOperation(id="srv-1", workspace_id=WS))
    assert await log.count() == 1


@pytest.mark.anyio
async def test_sqlite_store_survives_restart(tmp_path: Path) -> None:
    db_path = tmp_path / "queue.db"
    engine = get_engine(f"sqlite:///{db_path.as_posix()}")

    first = OfflineOperationLog(SqlKeyValueStore(engine), storage_key="offline_queue")
    await first.enqueue(_create("temp-1-a"))
    await first.enqueue(DeleteOperation(id="srv-2", workspace_id=WS))

    reopened = OfflineOperationLog(SqlKeyValueStore(engine), storage_key="offline_queue")
    ops = await reopened.dequeue_all(WS)

    assert [op.type for op in ops] == ["CREATE", "DELETE"]
    assert db_path.exists()


@pytest.mark.anyio
async def test_local_file_store_round_trip(tmp_path: Path) -> None:
    kv = LocalFileKeyValueStore(root_dir=str(tmp_path))
    log = OfflineOperationLog(kv, storage_key="queues/offline_queue.json")

    await log.enqueue(DeleteOperation(id="srv-1", workspace_id=WS))

    assert (tmp_path / "queues" / "offline_queue.json").exists()
    assert await OfflineOperationLog(kv, storage_key="queues/offline_queue.json").count() == 1
    with pytest.raises(ValueError):
        kv.resolve_path("../escape")
