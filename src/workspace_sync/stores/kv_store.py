from __future__ import annotations

from pathlib import Path, PurePosixPath
from typing import Protocol

import anyio.to_thread
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlmodel import select

from workspace_sync.db import init_db, session_scope
from workspace_sync.models import KeyValueEntry, utc_now


class KeyValueStore(Protocol):
    async def get_bytes(self, key: str) -> bytes | None: ...

    async def put_bytes(self, key: str, data: bytes) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemoryKeyValueStore:
    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}

    async def get_bytes(self, key: str) -> bytes | None:
        return self._data.get(key)

    async def put_bytes(self, key: str, data: bytes) -> None:
        self._data[key] = bytes(data)

    async def delete(self, key: str) -> None:
        _ = self._data.pop(key, None)


class SqlKeyValueStore:
    """Key-value byte store backed by the ``kv_entries`` table."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._ready = False

    async def _ensure_schema(self) -> None:
        if self._ready:
            return
        await init_db(self._engine)
        self._ready = True

    async def get_bytes(self, key: str) -> bytes | None:
        await self._ensure_schema()
        async with session_scope(self._engine) as session:
            row = (await session.exec(select(KeyValueEntry).where(KeyValueEntry.key == key))).first()
            return bytes(row.value) if row is not None else None

    async def put_bytes(self, key: str, data: bytes) -> None:
        await self._ensure_schema()
        async with session_scope(self._engine) as session:
            row = await session.get(KeyValueEntry, key)
            if row is None:
                row = KeyValueEntry(key=key, value=data)
            else:
                row.value = data
                row.updated_at = utc_now()
            session.add(row)
            await session.commit()

    async def delete(self, key: str) -> None:
        await self._ensure_schema()
        async with session_scope(self._engine) as session:
            row = await session.get(KeyValueEntry, key)
            if row is None:
                return
            await session.delete(row)
            await session.commit()


def _safe_join(root: Path, key: str) -> Path:
    parts = [p for p in PurePosixPath(key).parts if p not in {"/", ""}]
    if not parts or any(p in {"..", "."} for p in parts):
        raise ValueError("invalid storage key")
    return root.joinpath(*parts)


class LocalFileKeyValueStore:
    """One file per key under ``root_dir``; writes go through a temp file + rename."""

    def __init__(self, *, root_dir: str) -> None:
        self._root = Path(root_dir)

    def resolve_path(self, key: str) -> Path:
        return _safe_join(self._root, key)

    async def get_bytes(self, key: str) -> bytes | None:
        path = self.resolve_path(key)
        if not path.exists():
            return None
        return await anyio.to_thread.run_sync(path.read_bytes)

    async def put_bytes(self, key: str, data: bytes) -> None:
        path = self.resolve_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")

        def _write() -> None:
            _ = tmp_path.write_bytes(data)
            _ = tmp_path.replace(path)

        await anyio.to_thread.run_sync(_write)

    async def delete(self, key: str) -> None:
        path = self.resolve_path(key)
        if not path.exists():
            return
        await anyio.to_thread.run_sync(path.unlink)
