import asyncio
from datetime import timedelta

import pytest

from conftest import NOW, TODAY, InMemoryOrderStore, make_line
from errors import ValidationError
from reconciliation import ReconciliationEngine
from schemas import Cart, CartEntry, OrderScope, PaymentSession

SCOPE = OrderScope(user_id="u1", user_name="An", user_email="u1@example.com", restaurant_id="r1", date=TODAY)


def entry(menu_item_id, quantity, note="", price=35000):
    return CartEntry(menu_item_id=menu_item_id, quantity=quantity, note=note,
                     menu_item_name=f"Dish {menu_item_id}", menu_item_price=price, menu_item_category="Rice")


def cart(*entries):
    return Cart.from_entries(list(entries))


# ── Planning ───────────────────────────────────────────────────

class TestPlan:

    def test_update_and_create(self, engine):
        snapshot = [make_line("l1", "A", quantity=1)]
        plan = engine.plan(SCOPE, snapshot, cart(entry("A", 2), entry("B", 1)))

        assert [(u.order_id, u.quantity) for u in plan.updates] == [("l1", 2)]
        assert [(c.menu_item_id, c.fields.quantity) for c in plan.creates] == [("B", 1)]
        assert plan.deletes == []

    def test_create_carries_scope_and_menu_details(self, engine):
        plan = engine.plan(SCOPE, [], cart(entry("B", 3, note="no onion", price=40000)))
        fields = plan.creates[0].fields
        assert (fields.user_id, fields.restaurant_id, fields.date) == ("u1", "r1", TODAY)
        assert fields.menu_item_price == 40000
        assert fields.note == "no onion"
        assert fields.is_paid is False

    def test_note_change_is_an_update(self, engine):
        snapshot = [make_line("l1", "A", quantity=2, note="")]
        plan = engine.plan(SCOPE, snapshot, cart(entry("A", 2, note="extra chili")))
        assert [(u.order_id, u.note) for u in plan.updates] == [("l1", "extra chili")]

    def test_identical_cart_is_empty_plan(self, engine):
        snapshot = [make_line("l1", "A", quantity=2, note="less rice")]
        plan = engine.plan(SCOPE, snapshot, Cart.from_lines(snapshot))
        assert plan.is_empty

    def test_empty_cart_deletes_unpaid_line(self, engine):
        snapshot = [make_line("l1", "A", quantity=3)]
        plan = engine.plan(SCOPE, snapshot, cart())
        assert [d.order_id for d in plan.deletes] == ["l1"]
        assert plan.creates == [] and plan.updates == []

    def test_zero_quantity_existing_item_becomes_delete(self, engine):
        snapshot = [make_line("l1", "A", quantity=2)]
        plan = engine.plan(SCOPE, snapshot, cart(entry("A", 0)))
        assert [d.order_id for d in plan.deletes] == ["l1"]
        assert plan.updates == []

    def test_non_positive_quantity_new_item_is_ignored(self, engine):
        plan = engine.plan(SCOPE, [], cart(entry("B", -1), entry("C", 0)))
        assert plan.is_empty

    def test_removing_paid_line_is_rejected(self, engine):
        snapshot = [make_line("l1", "A", quantity=3, is_paid=True)]
        with pytest.raises(ValidationError):
            engine.plan(SCOPE, snapshot, cart())

    def test_editing_paid_line_is_rejected(self, engine):
        snapshot = [make_line("l1", "A", quantity=1, is_paid=True)]
        with pytest.raises(ValidationError):
            engine.plan(SCOPE, snapshot, cart(entry("A", 2)))

    def test_unchanged_paid_line_is_fine(self, engine):
        snapshot = [make_line("l1", "A", quantity=1, is_paid=True)]
        plan = engine.plan(SCOPE, snapshot, cart(entry("A", 1), entry("B", 1)))
        assert [c.menu_item_id for c in plan.creates] == ["B"]

    def test_locked_line_cannot_be_removed(self, engine):
        snapshot = [make_line("l1", "A")]
        with pytest.raises(ValidationError):
            engine.plan(SCOPE, snapshot, cart(), locked_ids={"l1"})

    def test_cart_edits_feed_the_plan(self, engine):
        snapshot = [make_line("l1", "A", quantity=1), make_line("l2", "B", quantity=1)]
        current = Cart.from_lines(snapshot)
        current.set_item(entry("A", 4))
        current.remove_item("B")

        plan = engine.plan(SCOPE, snapshot, current)

        assert [(u.order_id, u.quantity) for u in plan.updates] == [("l1", 4)]
        assert [d.order_id for d in plan.deletes] == ["l2"]

    def test_past_day_is_closed(self, engine):
        scope = SCOPE.model_copy(update={"date": TODAY - timedelta(days=1)})
        with pytest.raises(ValidationError):
            engine.plan(scope, [], cart(entry("A", 1)))


# ── Reconcile / apply ──────────────────────────────────────────

@pytest.mark.anyio
class TestReconcile:

    async def test_unchanged_cart_makes_no_store_calls(self, clock):
        snapshot = [make_line("l1", "A", quantity=2)]
        store = InMemoryOrderStore(snapshot)
        engine = ReconciliationEngine(store, clock)

        result = await engine.reconcile(SCOPE, Cart.from_lines(snapshot), snapshot=snapshot)

        assert result.unchanged is True
        assert store.calls == []

    async def test_applies_all_three_kinds(self, orders, engine):
        orders.lines = {l.id: l for l in [make_line("l1", "A", 1), make_line("l2", "D", 1)]}

        result = await engine.reconcile(SCOPE, cart(entry("A", 2), entry("B", 1)))

        assert result.ok and not result.unchanged
        assert result.updated == ["l1"]
        assert result.deleted == ["l2"]
        assert [l.menu_item_id for l in result.created] == ["B"]
        stored = {l.menu_item_id: l.quantity for l in orders.lines.values()}
        assert stored == {"A": 2, "B": 1}

    async def test_rereads_snapshot_before_diffing(self, orders, engine):
        orders.lines = {"l1": make_line("l1", "A", 1)}
        result = await engine.reconcile(SCOPE, cart(entry("A", 1)))
        assert result.unchanged
        assert orders.calls == [("list",)]

    async def test_diff_is_idempotent(self, orders, engine):
        snapshot = [make_line("l1", "A", 1), make_line("l2", "B", 4)]
        orders.lines = {l.id: l for l in snapshot}
        current = cart(entry("A", 3, note="spicy"), entry("C", 1))

        result = await engine.reconcile(SCOPE, current, snapshot=snapshot)

        assert engine.plan(SCOPE, result.snapshot, current).is_empty
        fresh = await orders.list_orders(user_id="u1", restaurant_id="r1", date=TODAY)
        assert engine.plan(SCOPE, fresh, current).is_empty

    async def test_partial_failure_lists_failed_operations(self, orders, engine):
        snapshot = [make_line("l1", "A", 1), make_line("l2", "D", 1)]
        orders.lines = {l.id: l for l in snapshot}
        orders.fail = {("create", "B"), ("delete", "l2")}

        result = await engine.reconcile(SCOPE, cart(entry("A", 2), entry("B", 1)), snapshot=snapshot)

        assert not result.ok
        failed = sorted((f.op, f.menu_item_id, f.order_id) for f in result.failures)
        assert failed == [("create", "B", None), ("delete", "D", "l2")]
        assert result.updated == ["l1"]
        # re-diffing the post-apply snapshot leaves only the failed work
        retry = engine.plan(SCOPE, result.snapshot, cart(entry("A", 2), entry("B", 1)))
        assert [c.menu_item_id for c in retry.creates] == ["B"]
        assert [d.order_id for d in retry.deletes] == ["l2"]
        assert retry.updates == []

    async def test_failed_create_is_not_retried_as_update(self, orders, engine):
        orders.fail = {("create", "B")}
        await engine.reconcile(SCOPE, cart(entry("B", 1)), snapshot=[])
        assert [c for c in orders.writes if c[0] == "update"] == []

    async def test_update_of_vanished_line_is_a_failure(self, orders, engine):
        snapshot = [make_line("l1", "A", 1)]
        result = await engine.reconcile(SCOPE, cart(entry("A", 2)), snapshot=snapshot)
        assert [(f.op, f.order_id) for f in result.failures] == [("update", "l1")]

    async def test_delete_of_vanished_line_counts_as_done(self, orders, engine):
        snapshot = [make_line("l1", "A", 1)]
        result = await engine.reconcile(SCOPE, cart(), snapshot=snapshot)
        assert result.ok
        assert result.deleted == ["l1"]

    async def test_paid_removal_writes_nothing(self, orders, engine):
        orders.lines = {"l1": make_line("l1", "A", 3, is_paid=True), "l2": make_line("l2", "B", 1)}
        with pytest.raises(ValidationError):
            await engine.reconcile(SCOPE, cart(entry("B", 2)))
        assert orders.writes == []

    async def test_line_in_pending_payment_is_locked(self, orders, sessions, engine):
        orders.lines = {"l1": make_line("l1", "A", 1)}
        sessions.sessions["123"] = PaymentSession(
            order_code="123", user_id="u1", date=TODAY, amount=35000, covered_order_ids=("l1",),
            created_at=NOW, expires_at=NOW + timedelta(minutes=15),
        )
        with pytest.raises(ValidationError):
            await engine.reconcile(SCOPE, cart(entry("A", 2)))


# ── Concurrent reconciliations of one scope ────────────────────

@pytest.mark.anyio
class TestConcurrentReconcile:

    async def test_stale_snapshots_on_distinct_keys_both_apply(self, orders, clock):
        stale = [make_line("l1", "A", 1)]
        orders.lines = {"l1": stale[0]}
        first = ReconciliationEngine(orders, clock)
        second = ReconciliationEngine(orders, clock)

        add_c, drop_a = await asyncio.gather(
            first.reconcile(SCOPE, cart(entry("A", 1), entry("C", 1)), snapshot=stale),
            second.reconcile(SCOPE, cart(), snapshot=stale),
        )

        assert add_c.ok and drop_a.ok
        # neither plan overwrote the other: C was added, A was removed
        assert sorted(l.menu_item_id for l in orders.lines.values()) == ["C"]

    async def test_same_new_item_from_two_tabs_collides(self, orders, clock):
        first = ReconciliationEngine(orders, clock)
        second = ReconciliationEngine(orders, clock)

        results = await asyncio.gather(
            first.reconcile(SCOPE, cart(entry("C", 1)), snapshot=[]),
            second.reconcile(SCOPE, cart(entry("C", 2)), snapshot=[]),
        )

        assert sorted(r.ok for r in results) == [False, True]
        failed = next(r for r in results if not r.ok)
        assert [(f.op, f.menu_item_id) for f in failed.failures] == [("create", "C")]
        assert [l.menu_item_id for l in orders.lines.values()] == ["C"]

    async def test_same_line_edited_twice_last_writer_wins(self, orders, clock):
        stale = [make_line("l1", "A", 1)]
        orders.lines = {"l1": stale[0]}
        engine = ReconciliationEngine(orders, clock)

        await engine.reconcile(SCOPE, cart(entry("A", 2)), snapshot=stale)
        await engine.reconcile(SCOPE, cart(entry("A", 5)), snapshot=stale)

        assert orders.lines["l1"].quantity == 5
