from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import WS, make_item
from workspace_sync.models import utc_now
from workspace_sync.schemas_items import ItemPatch
from workspace_sync.stores.item_store import ItemStore


def test_get_returns_copies(store: ItemStore) -> None:
    store.reconcile([make_item("a")])

    got = store.get("a")
    assert got is not None
    got.title = "mutated"

    assert store.get("a").title == "a"  # type: ignore[union-attr]


def test_get_by_workspace_keeps_insertion_order_and_filters_deleted(store: ItemStore) -> None:
    store.reconcile(
        [
            make_item("b"),
            make_item("a"),
            make_item("gone", active=False),
            make_item("elsewhere", workspace_id="ws-2"),
        ]
    )

    assert [i.id for i in store.get_by_workspace(WS)] == ["b", "a"]
    assert [i.id for i in store.get_by_workspace(WS, include_deleted=True)] == ["b", "a", "gone"]
    assert [i.id for i in store.get_deleted_by_workspace(WS)] == ["gone"]
    assert store.workspace_ids() == {WS, "ws-2"}


def test_reconcile_is_idempotent(store: ItemStore) -> None:
    server = [make_item("a"), make_item("b", parent_id="a", order_index=2)]

    store.reconcile(server)
    first = [i.model_dump() for i in store.get_by_workspace(WS)]
    store.reconcile(server)

    assert [i.model_dump() for i in store.get_by_workspace(WS)] == first


def test_reconcile_keeps_newer_pending_local_write(store: ItemStore) -> None:
    old = utc_now() - timedelta(minutes=5)
    store.reconcile([make_item("a", title="server", updated_at=old)])

    previous = store.apply_optimistic(ItemPatch(id="a", changes={"title": "local"}), "update")
    assert previous is not None and previous["title"] == "server"

    # Server snapshot taken before the local edit.
    store.reconcile([make_item("a", title="server", updated_at=old)])
    assert store.get("a").title == "local"  # type: ignore[union-attr]
    assert store.has_pending_write("a")

    # A later server write wins and clears the pending marker.
    store.reconcile([make_item("a", title="server-2", updated_at=utc_now() + timedelta(seconds=5))])
    assert store.get("a").title == "server-2"  # type: ignore[union-attr]
    assert not store.has_pending_write("a")


def test_authoritative_reconcile_drops_missing_confirmed_items_only(store: ItemStore) -> None:
    store.reconcile([make_item("a"), make_item("b"), make_item("other", workspace_id="ws-2")])
    store.apply_optimistic(make_item("temp-1-x"), "create")

    store.reconcile([make_item("a")], workspace_id=WS, authoritative=True)

    assert store.get("b") is None
    assert store.get("a") is not None
    assert store.get("temp-1-x") is not None
    assert store.get("other") is not None


def test_apply_optimistic_create_and_duplicate(store: ItemStore) -> None:
    assert store.apply_optimistic(make_item("temp-1-a"), "create") == {}
    assert store.apply_optimistic(make_item("temp-1-a"), "create") is None
    assert store.is_unconfirmed("temp-1-a")


def test_apply_optimistic_missing_item_is_noop(store: ItemStore) -> None:
    assert store.apply_optimistic(ItemPatch(id="nope", changes={"title": "x"}), "update") is None


def test_apply_optimistic_rejects_immutable_fields(store: ItemStore) -> None:
    store.reconcile([make_item("a")])
    with pytest.raises(ValueError):
        store.apply_optimistic(ItemPatch(id="a", changes={"workspace_id": "ws-2"}), "update")


def test_delete_then_restore(store: ItemStore) -> None:
    store.reconcile([make_item("a")])

    store.apply_optimistic(ItemPatch(id="a"), "delete")
    assert store.get_by_workspace(WS) == []
    assert store.get("a").deleted_at is not None  # type: ignore[union-attr]

    store.apply_optimistic(ItemPatch(id="a"), "restore")
    assert [i.id for i in store.get_by_workspace(WS)] == ["a"]


def test_rollback_restores_previous_fields(store: ItemStore) -> None:
    store.reconcile([make_item("a", parent_id=None, order_index=3)])
    before = store.get("a")

    previous = store.apply_optimistic(
        ItemPatch(id="a", changes={"parent_id": "b", "order_index": 0}), "update"
    )
    assert store.rollback("a", previous)

    after = store.get("a")
    assert after is not None and before is not None
    assert (after.parent_id, after.order_index, after.updated_at) == (None, 3, before.updated_at)
    assert not store.has_pending_write("a")


def test_rollback_of_missing_item_is_noop(store: ItemStore) -> None:
    assert store.rollback("missing", {"title": "x"}) is False


def test_confirm_ignores_stale_answer(store: ItemStore) -> None:
    store.reconcile([make_item("a", order_index=0)])
    store.apply_optimistic(ItemPatch(id="a", changes={"order_index": 1}), "update")
    first_issued = store.get("a").updated_at  # type: ignore[union-attr]
    store.apply_optimistic(ItemPatch(id="a", changes={"order_index": 2}), "update")
    # Make the second local write strictly newer.
    store._items["a"] = store._items["a"].model_copy(
        update={"updated_at": first_issued + timedelta(milliseconds=1)}
    )

    assert store.confirm("a", {"order_index": 1}, issued_at=first_issued) is False
    assert store.get("a").order_index == 2  # type: ignore[union-attr]


def test_remap_id_rewrites_children_and_chains(store: ItemStore) -> None:
    store.apply_optimistic(make_item("temp-1-p"), "create")
    store.apply_optimistic(make_item("temp-2-c", parent_id="temp-1-p"), "create")

    store.remap_id("temp-1-p", "srv-1")

    assert store.get("temp-1-p").id == "srv-1"  # type: ignore[union-attr]
    assert store.get("temp-2-c").parent_id == "srv-1"  # type: ignore[union-attr]
    assert store.resolve_id("temp-1-p") == "srv-1"
    assert not store.is_unconfirmed("temp-1-p")
    assert [i.id for i in store.get_by_workspace(WS)] == ["srv-1", "temp-2-c"]


def test_optimistic_create_resolves_remapped_parent(store: ItemStore) -> None:
    store.apply_optimistic(make_item("temp-1-p"), "create")
    store.remap_id("temp-1-p", "srv-1")

    store.apply_optimistic(make_item("temp-2-c", parent_id="temp-1-p"), "create")

    assert store.get("temp-2-c").parent_id == "srv-1"  # type: ignore[union-attr]


def test_siblings_and_next_order_index(store: ItemStore) -> None:
    store.reconcile(
        [
            make_item("p"),
            make_item("c1", parent_id="p", order_index=4),
            make_item("c2", parent_id="p", order_index=1),
        ]
    )

    assert [i.id for i in store.siblings(WS, "p")] == ["c2", "c1"]
    assert store.next_order_index(WS, "p") == 5
    assert store.next_order_index(WS, "empty") == 0
    assert [n.id for n in store.hierarchy(WS)] == ["p"]
