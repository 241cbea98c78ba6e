from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from workspace_sync.config import settings
from workspace_sync.errors import CorruptQueueError
from workspace_sync.schemas_sync import PendingOperation, pending_operation_adapter, remap_operation
from workspace_sync.stores.kv_store import KeyValueStore
from workspace_sync.sync_utils import now_ms

logger = logging.getLogger(__name__)

STORAGE_VERSION = "1.0"


@dataclass(frozen=True)
class QueueStats:
    total: int
    creates: int
    updates: int
    deletes: int
    order_updates: int


def _empty_envelope() -> dict[str, Any]:
    return {"version": STORAGE_VERSION, "operations": [], "last_sync": None, "next_seq": 1}


def _workspace_of(raw: dict[str, Any]) -> str | None:
    value = raw.get("workspaceId", raw.get("workspace_id"))
    return value if isinstance(value, str) else None


def _operation_id_of(raw: dict[str, Any]) -> str | None:
    try:
        return pending_operation_adapter.validate_python(raw).operation_id
    except ValidationError:
        return None


class OfflineOperationLog:
    """Durable, ordered, bounded queue of pending mutations.

    All workspaces share one JSON envelope stored under ``storage_key``. Every
    public method holds an asyncio lock for its read-modify-write, so
    concurrent callers observe a single FIFO order.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        storage_key: str | None = None,
        max_operations: int | None = None,
        on_evict: Callable[[list[PendingOperation]], None] | None = None,
    ) -> None:
        self._store = store
        self._key = storage_key or settings.queue_storage_key
        self._max = max_operations or settings.queue_max_operations
        self._on_evict = on_evict
        self._lock = asyncio.Lock()

    @property
    def max_operations(self) -> int:
        return self._max

    async def _load(self) -> dict[str, Any]:
        data = await self._store.get_bytes(self._key)
        if not data:
            return _empty_envelope()
        try:
            envelope = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CorruptQueueError(f"offline queue payload is not valid JSON: {e}") from e
        if not isinstance(envelope, dict) or not isinstance(envelope.get("operations"), list):
            raise CorruptQueueError("offline queue payload has an unexpected shape")
        if envelope.get("version") != STORAGE_VERSION:
            logger.warning(
                "offline queue version %r != %s; discarding %s stored operations",
                envelope.get("version"),
                STORAGE_VERSION,
                len(envelope["operations"]),
            )
            return _empty_envelope()
        envelope.setdefault("next_seq", len(envelope["operations"]) + 1)
        envelope.setdefault("last_sync", None)
        return envelope

    async def _save(self, envelope: dict[str, Any]) -> None:
        await self._store.put_bytes(self._key, json.dumps(envelope).encode("utf-8"))

    def _parse_workspace(self, raw_ops: Iterable[Any], workspace_id: str) -> list[PendingOperation]:
        out: list[PendingOperation] = []
        for raw in raw_ops:
            if not isinstance(raw, dict):
                raise CorruptQueueError("offline queue entry is not an object", workspace_id=workspace_id)
            if _workspace_of(raw) != workspace_id:
                continue
            try:
                out.append(pending_operation_adapter.validate_python(raw))
            except ValidationError as e:
                raise CorruptQueueError(
                    f"offline queue entry for workspace {workspace_id} is invalid: {e}",
                    workspace_id=workspace_id,
                ) from e
        return out

    async def enqueue(self, operation: PendingOperation) -> list[PendingOperation]:
        """Append ``operation``; returns the operations evicted to respect the cap."""
        async with self._lock:
            envelope = await self._load()
            seq = int(envelope["next_seq"])
            stored = operation.model_copy(update={"seq": seq})
            envelope["next_seq"] = seq + 1
            envelope["operations"].append(stored.model_dump(mode="json", by_alias=True))

            evicted_raw: list[dict[str, Any]] = []
            overflow = len(envelope["operations"]) - self._max
            if overflow > 0:
                evicted_raw = envelope["operations"][:overflow]
                envelope["operations"] = envelope["operations"][overflow:]
            await self._save(envelope)

        logger.debug("queued %s %s seq=%s", stored.type, stored.id, seq)
        evicted: list[PendingOperation] = []
        for raw in evicted_raw:
            try:
                evicted.append(pending_operation_adapter.validate_python(raw))
            except ValidationError:
                logger.warning("evicted unreadable offline queue entry: %r", raw)
                continue
        for op in evicted:
            logger.warning(
                "offline queue over capacity (%s); evicted %s %s workspace_id=%s",
                self._max,
                op.type,
                op.id,
                op.workspace_id,
            )
        if evicted and self._on_evict is not None:
            self._on_evict(evicted)
        return evicted

    async def dequeue_all(self, workspace_id: str) -> list[PendingOperation]:
        """Pending operations of ``workspace_id`` in enqueue order; the log is not modified."""
        async with self._lock:
            envelope = await self._load()
        return self._parse_workspace(envelope["operations"], workspace_id)

    async def remove(self, operation_id: str) -> bool:
        return bool(await self.remove_many([operation_id]))

    async def remove_many(self, operation_ids: Iterable[str]) -> int:
        targets = set(operation_ids)
        if not targets:
            return 0
        async with self._lock:
            envelope = await self._load()
            kept = [raw for raw in envelope["operations"] if _operation_id_of(raw) not in targets]
            removed = len(envelope["operations"]) - len(kept)
            if removed:
                envelope["operations"] = kept
                await self._save(envelope)
        return removed

    async def clear(self, workspace_id: str | None = None) -> None:
        async with self._lock:
            envelope = await self._load()
            if workspace_id is None:
                envelope["operations"] = []
            else:
                envelope["operations"] = [
                    raw for raw in envelope["operations"] if _workspace_of(raw) != workspace_id
                ]
            envelope["last_sync"] = now_ms()
            await self._save(envelope)
        logger.info("cleared pending operations workspace_id=%s", workspace_id or "*")

    async def mark_synced(self) -> None:
        async with self._lock:
            envelope = await self._load()
            envelope["last_sync"] = now_ms()
            await self._save(envelope)

    async def remap_ids(self, id_map: dict[str, str]) -> None:
        """Translate temp id references in every queued operation."""
        if not id_map:
            return
        async with self._lock:
            envelope = await self._load()
            changed = False
            rewritten: list[Any] = []
            for raw in envelope["operations"]:
                try:
                    op = pending_operation_adapter.validate_python(raw)
                except ValidationError:
                    rewritten.append(raw)
                    continue
                new_op = remap_operation(op, id_map)
                if new_op is not op:
                    changed = True
                    rewritten.append(new_op.model_dump(mode="json", by_alias=True))
                else:
                    rewritten.append(raw)
            if changed:
                envelope["operations"] = rewritten
                await self._save(envelope)

    async def pending_workspaces(self) -> list[str]:
        async with self._lock:
            envelope = await self._load()
        out: list[str] = []
        for raw in envelope["operations"]:
            ws = _workspace_of(raw) if isinstance(raw, dict) else None
            if ws and ws not in out:
                out.append(ws)
        return out

    async def count(self, workspace_id: str | None = None) -> int:
        async with self._lock:
            envelope = await self._load()
        if workspace_id is None:
            return len(envelope["operations"])
        return sum(
            1 for raw in envelope["operations"] if isinstance(raw, dict) and _workspace_of(raw) == workspace_id
        )

    async def stats(self) -> QueueStats:
        async with self._lock:
            envelope = await self._load()
        types = [raw.get("type") for raw in envelope["operations"] if isinstance(raw, dict)]
        return QueueStats(
            total=len(types),
            creates=types.count("CREATE"),
            updates=types.count("UPDATE"),
            deletes=types.count("DELETE"),
            order_updates=types.count("UPDATE_ORDER"),
        )
