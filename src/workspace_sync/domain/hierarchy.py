from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence

from workspace_sync.schemas_items import HierarchicalItem, Item


def _sort_key(node: HierarchicalItem, position: dict[str, int]) -> tuple[int, int]:
    return (node.order_index, position[node.id])


def build_hierarchy(items: Iterable[Item]) -> list[HierarchicalItem]:
    """Build a forest from a flat item list by walking ``parent_id``.

    - Pure and total: every input item appears exactly once.
    - A missing parent makes the item a root (e.g. a child synced before its parent).
    - Siblings are ordered by ``order_index``; ties keep input order.
    - A parent cycle is cut where the walk re-enters it; that member becomes a root.
    """

    nodes: dict[str, HierarchicalItem] = {}
    position: dict[str, int] = {}
    for item in items:
        # Duplicate ids: the last one wins, keeping the first position.
        position.setdefault(item.id, len(position))
        nodes[item.id] = HierarchicalItem(**item.model_dump(exclude={"children"}), children=[])

    parent_of: dict[str, str | None] = {}
    for node_id, node in nodes.items():
        parent_id = node.parent_id
        if parent_id is None or parent_id == node_id or parent_id not in nodes:
            parent_of[node_id] = None
        else:
            parent_of[node_id] = parent_id

    # Break cycles so that the walk from any node reaches a root.
    state: dict[str, int] = {}
    for start in nodes:
        path: list[str] = []
        current: str | None = start
        while current is not None and state.get(current) is None:
            state[current] = 1
            path.append(current)
            current = parent_of[current]
        if current is not None and state.get(current) == 1:
            # ``current`` is on the path being walked: cut the cycle there.
            parent_of[current] = None
        for node_id in path:
            state[node_id] = 2

    roots: list[HierarchicalItem] = []
    for node_id, node in nodes.items():
        parent_id = parent_of[node_id]
        if parent_id is None:
            roots.append(node)
        else:
            nodes[parent_id].children.append(node)

    for node in nodes.values():
        node.children.sort(key=lambda child: _sort_key(child, position))
    roots.sort(key=lambda root: _sort_key(root, position))
    return roots


def iter_depth_first(forest: Sequence[HierarchicalItem]) -> Iterator[HierarchicalItem]:
    # Explicit stack; deep trees must not hit the recursion limit.
    stack: list[HierarchicalItem] = list(reversed(forest))
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(node.children))


def find_item_by_id(forest: Sequence[HierarchicalItem], item_id: str) -> HierarchicalItem | None:
    for node in iter_depth_first(forest):
        if node.id == item_id:
            return node
    return None


def flatten(forest: Sequence[HierarchicalItem]) -> list[Item]:
    return [Item(**node.model_dump(exclude={"children"})) for node in iter_depth_first(forest)]


def children_of(forest: Sequence[HierarchicalItem], parent_id: str | None) -> list[HierarchicalItem]:
    """Direct children of ``parent_id`` (``None`` means the root level)."""
    if parent_id is None:
        return list(forest)
    parent = find_item_by_id(forest, parent_id)
    return list(parent.children) if parent is not None else []


def descendant_ids(forest: Sequence[HierarchicalItem], item_id: str) -> set[str]:
    node = find_item_by_id(forest, item_id)
    if node is None:
        return set()
    return {n.id for n in iter_depth_first(node.children)}
