from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass

from workspace_sync.errors import CreationPlanError
from workspace_sync.schemas_items import ItemProposal, new_temp_id


@dataclass(frozen=True)
class PlannedCreate:
    temp_id: str
    # Temp id of another planned entry, or an existing (server) item id, or None for root.
    parent_ref: str | None
    parent_is_planned: bool
    proposal: ItemProposal


@dataclass(frozen=True)
class CreationPlan:
    steps: tuple[PlannedCreate, ...]

    def descendants_of(self, temp_id: str) -> set[str]:
        children: dict[str, list[str]] = {}
        for step in self.steps:
            if step.parent_is_planned and step.parent_ref is not None:
                children.setdefault(step.parent_ref, []).append(step.temp_id)
        out: set[str] = set()
        stack = list(children.get(temp_id, []))
        while stack:
            current = stack.pop()
            if current in out:
                continue
            out.add(current)
            stack.extend(children.get(current, []))
        return out


def plan_creation(
    proposals: Sequence[ItemProposal],
    *,
    known_ids: Callable[[str], bool] = lambda _id: False,
    mint_id: Callable[[], str] = new_temp_id,
) -> CreationPlan:
    """Order proposals parent-before-child (stable for independent entries).

    - Pure: no store/network access besides the ``known_ids`` predicate.
    - A parent ref must name another proposal or an item ``known_ids`` accepts
      (confirmed or still local); any other ref or a cycle is a plan error.
    """

    temp_ids: list[str] = []
    seen: set[str] = set()
    for proposal in proposals:
        temp_id = proposal.temp_id or mint_id()
        if temp_id in seen:
            raise CreationPlanError(f"duplicate temp id in proposals: {temp_id}")
        seen.add(temp_id)
        temp_ids.append(temp_id)

    by_temp_id = dict(zip(temp_ids, proposals))
    parent_of: dict[str, str | None] = {}
    for temp_id, proposal in by_temp_id.items():
        parent_ref = proposal.parent_id or None
        if parent_ref is not None and parent_ref not in by_temp_id:
            if not known_ids(parent_ref):
                raise CreationPlanError(
                    f"proposal {temp_id} references unknown parent {parent_ref}"
                )
        parent_of[temp_id] = parent_ref

    # Kahn's algorithm over planned parents, seeded in input order.
    ordered: list[str] = []
    placed: set[str] = set()
    pending = list(temp_ids)
    while pending:
        progressed = False
        remaining: list[str] = []
        for temp_id in pending:
            parent_ref = parent_of[temp_id]
            if parent_ref is None or parent_ref not in by_temp_id or parent_ref in placed:
                ordered.append(temp_id)
                placed.add(temp_id)
                progressed = True
            else:
                remaining.append(temp_id)
        if not progressed:
            raise CreationPlanError(f"parent cycle between proposals: {', '.join(remaining)}")
        pending = remaining

    return CreationPlan(
        steps=tuple(
            PlannedCreate(
                temp_id=temp_id,
                parent_ref=parent_of[temp_id],
                parent_is_planned=parent_of[temp_id] in by_temp_id,
                proposal=by_temp_id[temp_id],
            )
            for temp_id in ordered
        )
    )
