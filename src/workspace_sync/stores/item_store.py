from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from workspace_sync.domain.hierarchy import build_hierarchy
from workspace_sync.domain.ordering import next_order_index
from workspace_sync.models import utc_now
from workspace_sync.schemas_items import (
    MUTABLE_FIELDS,
    HierarchicalItem,
    Item,
    ItemPatch,
    MutationKind,
    is_temp_id,
)
from workspace_sync.sync_utils import as_utc

logger = logging.getLogger(__name__)


class ItemStore:
    """In-memory client cache of items, indexed by id and by workspace.

    Reads hand out copies; callers never hold references into the cache.
    Items with an unconfirmed local write are tracked so that older server
    data cannot overwrite them.
    """

    def __init__(self, *, temp_id_prefix: str | None = None) -> None:
        self._temp_id_prefix = temp_id_prefix
        self._items: dict[str, Item] = {}
        self._seq: dict[str, int] = {}
        self._next_seq = 0
        self._pending: dict[str, datetime] = {}
        self._id_map: dict[str, str] = {}

    # Reads

    def resolve_id(self, item_id: str) -> str:
        return self._id_map.get(item_id, item_id)

    def get(self, item_id: str) -> Item | None:
        item = self._items.get(self.resolve_id(item_id))
        return item.model_copy(deep=True) if item is not None else None

    def _ordered(self, items: Iterable[Item]) -> list[Item]:
        return sorted(items, key=lambda i: self._seq[i.id])

    def get_by_workspace(self, workspace_id: str, *, include_deleted: bool = False) -> list[Item]:
        return [
            item.model_copy(deep=True)
            for item in self._ordered(self._items.values())
            if item.workspace_id == workspace_id and (include_deleted or item.active)
        ]

    def get_deleted_by_workspace(self, workspace_id: str) -> list[Item]:
        return [
            item.model_copy(deep=True)
            for item in self._ordered(self._items.values())
            if item.workspace_id == workspace_id and not item.active
        ]

    def hierarchy(self, workspace_id: str) -> list[HierarchicalItem]:
        return build_hierarchy(self.get_by_workspace(workspace_id))

    def siblings(self, workspace_id: str, parent_id: str | None) -> list[Item]:
        parent_id = self.resolve_id(parent_id) if parent_id else None
        group = [i for i in self.get_by_workspace(workspace_id) if (i.parent_id or None) == parent_id]
        return sorted(group, key=lambda i: (i.order_index, self._seq[i.id]))

    def next_order_index(self, workspace_id: str, parent_id: str | None = None) -> int:
        return next_order_index(self.siblings(workspace_id, parent_id))

    def workspace_ids(self) -> set[str]:
        return {item.workspace_id for item in self._items.values()}

    def has_pending_write(self, item_id: str) -> bool:
        return self.resolve_id(item_id) in self._pending

    def is_unconfirmed(self, item_id: str) -> bool:
        return is_temp_id(self.resolve_id(item_id), self._temp_id_prefix)

    @property
    def id_map(self) -> dict[str, str]:
        return dict(self._id_map)

    # Writes

    def _insert(self, item: Item) -> None:
        if item.id not in self._seq:
            self._seq[item.id] = self._next_seq
            self._next_seq += 1
        self._items[item.id] = item

    def apply_optimistic(self, item: Item | ItemPatch, kind: MutationKind) -> dict[str, Any] | None:
        """Apply a local change before the backend confirms it.

        Returns the previous values of the touched fields (``{}`` for a create),
        or None when nothing was applied.
        """
        now = utc_now()
        if kind == "create":
            if not isinstance(item, Item):
                raise TypeError("create expects a full Item")
            if item.id in self._items:
                return None
            parent_id = self.resolve_id(item.parent_id) if item.parent_id else None
            self._insert(item.model_copy(update={"parent_id": parent_id, "updated_at": now}, deep=True))
            self._pending[item.id] = now
            logger.debug("optimistic create item_id=%s workspace_id=%s", item.id, item.workspace_id)
            return {}

        if kind == "update":
            if isinstance(item, Item):
                changes = item.model_dump(include=set(MUTABLE_FIELDS))
            else:
                changes = dict(item.changes)
        elif kind == "delete":
            changes = {"active": False, "deleted_at": now}
        elif kind == "restore":
            changes = {"active": True, "deleted_at": None}
        else:
            raise ValueError(f"unknown mutation kind: {kind}")

        unknown = set(changes) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"fields cannot be changed locally: {sorted(unknown)}")

        item_id = self.resolve_id(item.id)
        current = self._items.get(item_id)
        if current is None:
            logger.warning("optimistic %s skipped, item not in store item_id=%s", kind, item.id)
            return None

        if "parent_id" in changes and changes["parent_id"]:
            changes["parent_id"] = self.resolve_id(changes["parent_id"])

        previous: dict[str, Any] = {field: getattr(current, field) for field in changes}
        previous["updated_at"] = current.updated_at
        self._items[item_id] = current.model_copy(update={**changes, "updated_at": now})
        self._pending[item_id] = now
        logger.debug("optimistic %s item_id=%s fields=%s", kind, item_id, sorted(changes))
        return previous

    def confirm(self, item_id: str, fields: dict[str, Any], *, issued_at: datetime | None = None) -> bool:
        """Write back one server confirmation.

        Ignored when the item changed locally after ``issued_at``: a newer
        optimistic state must not be clobbered by an older request's answer.
        """
        item_id = self.resolve_id(item_id)
        current = self._items.get(item_id)
        if current is None:
            return False
        if issued_at is not None and as_utc(current.updated_at) > as_utc(issued_at):
            logger.info("stale confirmation ignored item_id=%s", item_id)
            return False
        update = {k: v for k, v in fields.items() if k in MUTABLE_FIELDS or k == "updated_at"}
        if update.get("parent_id"):
            update["parent_id"] = self.resolve_id(update["parent_id"])
        self._items[item_id] = current.model_copy(update=update)
        _ = self._pending.pop(item_id, None)
        return True

    def reconcile(
        self,
        server_items: Iterable[Item],
        id_map: dict[str, str] | None = None,
        *,
        workspace_id: str | None = None,
        authoritative: bool = False,
    ) -> None:
        """Merge authoritative server data into the cache.

        - Temp ids in ``id_map`` are translated first, so entries are matched by server id.
        - Server data wins, including ``updated_at``, unless it predates a pending local write.
        - ``authoritative`` drops confirmed entries of ``workspace_id`` the server no longer lists.
        """
        for temp_id, server_id in (id_map or {}).items():
            self.remap_id(temp_id, server_id)

        seen: set[str] = set()
        for server_item in server_items:
            incoming = server_item.model_copy(deep=True)
            if incoming.parent_id:
                incoming.parent_id = self.resolve_id(incoming.parent_id)
            seen.add(incoming.id)
            existing = self._items.get(incoming.id)
            pending_at = self._pending.get(incoming.id)
            if (
                existing is not None
                and pending_at is not None
                and as_utc(existing.updated_at) > as_utc(incoming.updated_at)
            ):
                logger.debug("reconcile kept newer local state item_id=%s", incoming.id)
                continue
            self._insert(incoming)
            _ = self._pending.pop(incoming.id, None)

        if authoritative and workspace_id is not None:
            for item_id, item in list(self._items.items()):
                if item.workspace_id != workspace_id or item_id in seen:
                    continue
                if item_id in self._pending or is_temp_id(item_id, self._temp_id_prefix):
                    continue
                self._drop(item_id)

    def rollback(self, item_id: str, previous_fields: dict[str, Any] | None) -> bool:
        item_id = self.resolve_id(item_id)
        current = self._items.get(item_id)
        if current is None:
            return False
        if previous_fields:
            self._items[item_id] = current.model_copy(update=dict(previous_fields))
        _ = self._pending.pop(item_id, None)
        logger.info("rolled back item_id=%s fields=%s", item_id, sorted(previous_fields or {}))
        return True

    def discard_pending(self, item_id: str) -> bool:
        """Drop the unconfirmed-write marker so the next reconcile takes server data."""
        return self._pending.pop(self.resolve_id(item_id), None) is not None

    def remap_id(self, temp_id: str, server_id: str) -> None:
        """Replace a temporary id with the server id everywhere in the cache."""
        if temp_id == server_id:
            return
        item = self._items.get(temp_id)
        if item is not None:
            seq = self._seq.pop(temp_id)
            del self._items[temp_id]
            pending_at = self._pending.pop(temp_id, None)
            if server_id not in self._items:
                self._items[server_id] = item.model_copy(update={"id": server_id})
                self._seq[server_id] = seq
                if pending_at is not None:
                    self._pending[server_id] = pending_at

        for other_id, other in self._items.items():
            if other.parent_id == temp_id:
                self._items[other_id] = other.model_copy(update={"parent_id": server_id})

        for known_temp, mapped in self._id_map.items():
            if mapped == temp_id:
                self._id_map[known_temp] = server_id
        self._id_map[temp_id] = server_id

    def remove(self, item_id: str) -> Item | None:
        item_id = self.resolve_id(item_id)
        if item_id not in self._items:
            return None
        return self._drop(item_id)

    def _drop(self, item_id: str) -> Item:
        _ = self._seq.pop(item_id, None)
        _ = self._pending.pop(item_id, None)
        return self._items.pop(item_id)

    def clear(self) -> None:
        self._items.clear()
        self._seq.clear()
        self._pending.clear()
        self._id_map.clear()
