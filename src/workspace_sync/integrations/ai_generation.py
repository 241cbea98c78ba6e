from __future__ import annotations

from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from workspace_sync.errors import SyncError, TransientNetworkError, ValidationRejectedError, classify_http_error
from workspace_sync.schemas_items import ItemProposal


class AIGenerationAPI(Protocol):
    async def generate(
        self, *, topic: str, workspace_id: str, user_id: str, model: str
    ) -> list[ItemProposal]: ...


def _parse_proposals(data: object) -> list[ItemProposal]:
    if not isinstance(data, dict):
        raise SyncError(f"generation succeeded but cannot parse response: {data}")
    files = data.get("files")
    if not data.get("success") or not isinstance(files, list) or not files:
        raise ValidationRejectedError("No files were generated")
    try:
        return [ItemProposal.model_validate(x) for x in files if isinstance(x, dict)]
    except ValidationError as e:
        raise ValidationRejectedError(f"generated files are invalid: {e}") from e


class HttpxAIGenerationAPI:
    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._client = client

    async def _post(self, url: str, payload: dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(url, json=payload)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.post(url, json=payload)

    async def generate(
        self, *, topic: str, workspace_id: str, user_id: str, model: str
    ) -> list[ItemProposal]:
        topic = topic.strip()
        if not topic:
            raise ValidationRejectedError("topic is empty")
        payload = {"topic": topic, "workspaceId": workspace_id, "userId": user_id, "model": model}
        try:
            resp = await self._post(f"{self._base_url}/ai/generate", payload)
        except httpx.TransportError as e:
            raise TransientNetworkError(f"generation request not delivered: {e}") from e
        if not 200 <= resp.status_code < 300:
            message = resp.text
            try:
                body = resp.json()
                if isinstance(body, dict) and isinstance(body.get("message"), str):
                    message = body["message"]
            except ValueError:
                pass
            raise classify_http_error(resp.status_code, message or "Failed to generate content")
        try:
            body = resp.json()
        except ValueError as e:
            raise ValidationRejectedError("generation response is not JSON") from e
        return _parse_proposals(body)
