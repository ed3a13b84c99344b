"""
Cart to order-line reconciliation.

A plan is a three-way diff between the lines persisted for one scope and the
cart the user is looking at, keyed by menu item id. Applying a plan issues
every write independently and reports the ones that failed; there is no
cross-document transaction behind it.
"""
import asyncio
import logging
from typing import Dict, Iterable, List, Literal, Optional, Set

from pydantic import BaseModel, Field

from clock import Clock
from errors import StoreError, ValidationError
from schemas import Cart, CartEntry, OrderLine, OrderLineCreate, OrderScope
from store import OrderRecordStore, PaymentSessionStore

logger = logging.getLogger(__name__)


class CreateOp(BaseModel):
    menu_item_id: str
    fields: OrderLineCreate


class UpdateOp(BaseModel):
    order_id: str
    menu_item_id: str
    quantity: int
    note: str


class DeleteOp(BaseModel):
    order_id: str
    menu_item_id: str


class ReconcilePlan(BaseModel):
    creates: List[CreateOp] = Field(default_factory=list)
    updates: List[UpdateOp] = Field(default_factory=list)
    deletes: List[DeleteOp] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.creates or self.updates or self.deletes)


class OperationFailure(BaseModel):
    op: Literal["create", "update", "delete"]
    menu_item_id: str
    order_id: Optional[str] = None
    error: str


class ReconcileResult(BaseModel):
    created: List[OrderLine] = Field(default_factory=list)
    updated: List[str] = Field(default_factory=list)
    deleted: List[str] = Field(default_factory=list)
    unchanged: bool = False
    failures: List[OperationFailure] = Field(default_factory=list)
    # lines as they should now be persisted, for re-diffing
    snapshot: List[OrderLine] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


def _index(snapshot: Iterable[OrderLine]) -> Dict[str, OrderLine]:
    indexed: Dict[str, OrderLine] = {}
    for line in snapshot:
        if line.menu_item_id in indexed:
            logger.warning("Duplicate order lines for menu item %s: %s and %s",
                           line.menu_item_id, indexed[line.menu_item_id].id, line.id)
        indexed[line.menu_item_id] = line
    return indexed


def _new_line(scope: OrderScope, entry: CartEntry) -> OrderLineCreate:
    return OrderLineCreate(
        user_id=scope.user_id,
        user_name=scope.user_name,
        user_email=scope.user_email,
        restaurant_id=scope.restaurant_id,
        menu_item_id=entry.menu_item_id,
        menu_item_name=entry.menu_item_name,
        menu_item_price=entry.menu_item_price,
        menu_item_category=entry.menu_item_category,
        date=scope.date,
        quantity=entry.quantity,
        note=entry.note or "",
    )


class ReconciliationEngine:
    def __init__(self, store: OrderRecordStore, clock: Clock, sessions: Optional[PaymentSessionStore] = None):
        self.store = store
        self.clock = clock
        self.sessions = sessions

    def plan(self, scope: OrderScope, snapshot: List[OrderLine], cart: Cart,
             locked_ids: Optional[Set[str]] = None) -> ReconcilePlan:
        """Diff `cart` against `snapshot`. Pure; raises before anything is written.

        Paid lines, and lines whose id is in `locked_ids`, may be neither
        edited nor removed.
        """
        if scope.date < self.clock.today():
            raise ValidationError(f"Orders for {scope.date} can no longer be changed")
        locked = set(locked_ids or ())
        initial = _index(snapshot)
        current = cart.normalized()
        plan = ReconcilePlan()

        for menu_item_id, entry in current.items():
            line = initial.get(menu_item_id)
            if line is None:
                plan.creates.append(CreateOp(menu_item_id=menu_item_id, fields=_new_line(scope, entry)))
                continue
            note = entry.note or ""
            if line.quantity == entry.quantity and (line.note or "") == note:
                continue
            if line.is_paid or line.id in locked:
                raise ValidationError(f"{line.menu_item_name or menu_item_id} is already paid or being paid and cannot be changed")
            plan.updates.append(UpdateOp(order_id=line.id, menu_item_id=menu_item_id, quantity=entry.quantity, note=note))

        for menu_item_id, line in initial.items():
            if menu_item_id in current:
                continue
            if line.is_paid or line.id in locked:
                raise ValidationError(f"{line.menu_item_name or menu_item_id} is already paid or being paid and cannot be removed")
            plan.deletes.append(DeleteOp(order_id=line.id, menu_item_id=menu_item_id))

        return plan

    async def apply(self, plan: ReconcilePlan, snapshot: List[OrderLine]) -> ReconcileResult:
        """Run every operation of `plan` concurrently and wait for all of them."""
        result = ReconcileResult()
        lines = {line.id: line for line in snapshot}

        async def create(op: CreateOp):
            try:
                line = await self.store.create_order(op.fields)
            except StoreError as e:
                result.failures.append(OperationFailure(op="create", menu_item_id=op.menu_item_id, error=str(e)))
                return
            result.created.append(line)
            lines[line.id] = line

        async def update(op: UpdateOp):
            try:
                found = await self.store.update_order(op.order_id, quantity=op.quantity, note=op.note)
                if not found:
                    raise StoreError("Order line no longer exists", order_id=op.order_id)
            except StoreError as e:
                result.failures.append(OperationFailure(op="update", menu_item_id=op.menu_item_id, order_id=op.order_id, error=str(e)))
                return
            result.updated.append(op.order_id)
            lines[op.order_id] = lines[op.order_id].model_copy(update={"quantity": op.quantity, "note": op.note})

        async def delete(op: DeleteOp):
            try:
                # a line that is already gone is as good as deleted
                await self.store.delete_order(op.order_id)
            except StoreError as e:
                result.failures.append(OperationFailure(op="delete", menu_item_id=op.menu_item_id, order_id=op.order_id, error=str(e)))
                return
            result.deleted.append(op.order_id)
            lines.pop(op.order_id, None)

        await asyncio.gather(
            *(create(op) for op in plan.creates),
            *(update(op) for op in plan.updates),
            *(delete(op) for op in plan.deletes),
        )
        result.snapshot = list(lines.values())
        if result.failures:
            logger.warning("Reconciliation finished with %d failed operation(s): %s",
                           len(result.failures), [(f.op, f.menu_item_id) for f in result.failures])
        return result

    async def load_snapshot(self, scope: OrderScope, order_ids: List[str]) -> List[OrderLine]:
        """The lines a client saw when it opened its cart, limited to `scope`."""
        lines = await self.store.get_orders(list(dict.fromkeys(order_ids))) if order_ids else []
        return [
            line for line in lines
            if (line.user_id, line.restaurant_id, line.date) == (scope.user_id, scope.restaurant_id, scope.date)
        ]

    async def reconcile(self, scope: OrderScope, cart: Cart,
                        snapshot: Optional[List[OrderLine]] = None) -> ReconcileResult:
        """Bring the persisted lines of `scope` in line with `cart`.

        Without an explicit snapshot the lines are re-read right before diffing.
        """
        if snapshot is None:
            snapshot = await self.store.list_orders(
                user_id=scope.user_id, restaurant_id=scope.restaurant_id, date=scope.date
            )
        locked: Set[str] = set()
        if self.sessions is not None and snapshot:
            pending = await self.sessions.list_covering([line.id for line in snapshot], ("pending",))
            for session in pending:
                locked.update(session.covered_order_ids)

        plan = self.plan(scope, snapshot, cart, locked)
        if plan.is_empty:
            return ReconcileResult(unchanged=True, snapshot=list(snapshot))

        logger.info("Reconciling %s/%s on %s: %d create, %d update, %d delete",
                    scope.user_id, scope.restaurant_id, scope.date,
                    len(plan.creates), len(plan.updates), len(plan.deletes))
        return await self.apply(plan, snapshot)
