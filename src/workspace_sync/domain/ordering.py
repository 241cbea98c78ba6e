from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from workspace_sync.schemas_items import Item


@dataclass(frozen=True)
class OrderUpdate:
    item_id: str
    order_index: int


def next_order_index(siblings: Sequence[Item], *, exclude_id: str | None = None) -> int:
    indexes = [s.order_index for s in siblings if s.id != exclude_id]
    if not indexes:
        return 0
    return max(indexes) + 1


def move_order_index(siblings: Sequence[Item], item_id: str, attempt: int = 0) -> int:
    """Order index for ``item_id`` appended to ``siblings``.

    Each retry attempt shifts the value so a collision on the sibling order
    unique index is not repeated verbatim.
    """
    return next_order_index(siblings, exclude_id=item_id) + max(attempt, 0)


def renumber(ordered_ids: Sequence[str]) -> list[OrderUpdate]:
    return [OrderUpdate(item_id=item_id, order_index=index) for index, item_id in enumerate(ordered_ids)]


def calculate_reorder(
    sorted_siblings: Sequence[Item], source_id: str, target_id: str
) -> list[OrderUpdate] | None:
    """Drag ``source_id`` onto ``target_id``'s slot; renumber the whole group from 0.

    Returns None when the move is a no-op or either id is not in the group.
    """
    if source_id == target_id:
        return None
    ids = [s.id for s in sorted_siblings]
    if source_id not in ids or target_id not in ids:
        return None
    target_index = ids.index(target_id)
    ids.remove(source_id)
    ids.insert(target_index, source_id)
    return renumber(ids)
