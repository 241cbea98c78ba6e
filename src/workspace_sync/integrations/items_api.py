from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Protocol

import httpx

from workspace_sync.errors import SyncError, TemporaryIdError, TransientNetworkError, classify_http_error
from workspace_sync.schemas_items import Item, ItemCreate, ItemUpdate, is_temp_id
from workspace_sync.schemas_sync import BatchSyncResult, PendingOperation

logger = logging.getLogger(__name__)


class ItemsAPI(Protocol):
    async def list_items(self, workspace_id: str) -> list[Item]: ...

    async def get_item(self, item_id: str) -> Item: ...

    async def create_item(self, workspace_id: str, data: ItemCreate) -> Item: ...

    async def update_item(self, item_id: str, data: ItemUpdate) -> Item: ...

    async def update_order(self, item_id: str, order_index: int, parent_id: str | None) -> Item: ...

    async def delete_item(self, item_id: str) -> None: ...

    async def restore_item(self, item_id: str) -> Item: ...

    async def permanent_delete(self, item_id: str) -> None: ...

    async def list_trash(self, workspace_id: str) -> list[Item]: ...

    async def sync_batch(
        self, workspace_id: str, operations: Sequence[PendingOperation]
    ) -> BatchSyncResult: ...


def _error_message(resp: httpx.Response) -> str:
    text = resp.text or ""
    try:
        data = resp.json()
    except ValueError:
        return text or f"HTTP error! status: {resp.status_code}"
    if isinstance(data, dict):
        for key in ("error", "message"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return value
    return text or f"HTTP error! status: {resp.status_code}"


def _extract_list(data: object) -> list[dict[str, Any]]:
    if isinstance(data, list):
        return [x for x in data if isinstance(x, dict)]
    if isinstance(data, dict):
        for key in ("items", "files", "data"):
            if isinstance(data.get(key), list):
                return [x for x in data[key] if isinstance(x, dict)]
    return []


class HttpxItemsAPI:
    """Backend item API over HTTP.

    Raises the ``workspace_sync.errors`` taxonomy; transport failures become
    ``TransientNetworkError``. Per-item endpoints refuse temporary ids.
    """

    def __init__(
        self,
        *,
        base_url: str,
        user_id: str,
        timeout_seconds: float,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._user_id = user_id.strip()
        self._timeout = timeout_seconds
        self._client = client

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "X-User-Id": self._user_id}

    async def _request(self, method: str, path: str, *, json: Any = None) -> Any:
        url = f"{self._base_url}{path}"
        try:
            if self._client is not None:
                resp = await self._client.request(method, url, headers=self._headers(), json=json)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.request(method, url, headers=self._headers(), json=json)
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{method} {path} not delivered: {e}") from e

        if not 200 <= resp.status_code < 300:
            raise classify_http_error(resp.status_code, _error_message(resp))
        if not resp.content:
            return {}
        content_type = resp.headers.get("content-type", "")
        if "application/json" not in content_type:
            return {}
        data = resp.json()
        # Some endpoints answer 200 with {"error": "..."}.
        if isinstance(data, dict) and isinstance(data.get("error"), str) and data["error"]:
            raise classify_http_error(resp.status_code, data["error"])
        return data

    @staticmethod
    def _require_server_id(item_id: str) -> str:
        if is_temp_id(item_id):
            raise TemporaryIdError(f"temporary id {item_id} cannot be sent as a real id")
        return item_id

    async def _item(self, method: str, path: str, *, json: Any = None) -> Item:
        data = await self._request(method, path, json=json)
        if not isinstance(data, dict):
            raise SyncError(f"{method} {path} succeeded but cannot parse response: {data}")
        return Item.model_validate(data)

    async def list_items(self, workspace_id: str) -> list[Item]:
        data = await self._request("GET", f"/folders/{workspace_id}/items")
        return [Item.model_validate(x) for x in _extract_list(data)]

    async def get_item(self, item_id: str) -> Item:
        return await self._item("GET", f"/folders/items/{self._require_server_id(item_id)}")

    async def create_item(self, workspace_id: str, data: ItemCreate) -> Item:
        if data.parent_id:
            self._require_server_id(data.parent_id)
        payload = data.model_dump(exclude_none=True)
        return await self._item("POST", f"/folders/{workspace_id}/items", json=payload)

    async def update_item(self, item_id: str, data: ItemUpdate) -> Item:
        payload = data.model_dump(mode="json", exclude_unset=True)
        if payload.get("parent_id"):
            self._require_server_id(payload["parent_id"])
        return await self._item("PATCH", f"/folders/items/{self._require_server_id(item_id)}", json=payload)

    async def update_order(self, item_id: str, order_index: int, parent_id: str | None) -> Item:
        if parent_id:
            self._require_server_id(parent_id)
        return await self._item(
            "PATCH",
            f"/folders/items/{self._require_server_id(item_id)}/order",
            json={"order_index": order_index, "parent_id": parent_id},
        )

    async def delete_item(self, item_id: str) -> None:
        _ = await self._request("DELETE", f"/folders/items/{self._require_server_id(item_id)}")

    async def restore_item(self, item_id: str) -> Item:
        return await self._item("POST", f"/folders/items/{self._require_server_id(item_id)}/restore")

    async def permanent_delete(self, item_id: str) -> None:
        _ = await self._request("DELETE", f"/folders/items/{self._require_server_id(item_id)}/permanent")

    async def list_trash(self, workspace_id: str) -> list[Item]:
        data = await self._request("GET", f"/folders/{workspace_id}/trash")
        return [Item.model_validate(x) for x in _extract_list(data)]

    async def sync_batch(
        self, workspace_id: str, operations: Sequence[PendingOperation]
    ) -> BatchSyncResult:
        payload = {"operations": [op.model_dump(mode="json", by_alias=True) for op in operations]}
        data = await self._request("POST", f"/folders/{workspace_id}/sync", json=payload)
        if not isinstance(data, dict):
            raise SyncError(f"sync batch succeeded but cannot parse response: {data}")
        return BatchSyncResult.model_validate(data)
