import asyncio
import itertools
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional, Set, Tuple

import pytest

from errors import ConflictError, ProviderError, StoreError
from payments import PaymentSessionManager
from reconciliation import ReconciliationEngine
from schemas import CheckoutReference, OrderLine, PaymentSession, ProviderStatus

# Monday
NOW = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)
TODAY = NOW.date()


# ── Fakes ──────────────────────────────────────────────────────

class FakeClock:
    def __init__(self, now: datetime = NOW):
        self._now = now

    def now(self) -> datetime:
        return self._now

    def today(self) -> date:
        return self._now.date()

    def advance(self, **kwargs) -> None:
        self._now += timedelta(**kwargs)

    async def sleep(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)
        await asyncio.sleep(0)


class InMemoryOrderStore:
    def __init__(self, lines=()):
        self.lines: Dict[str, OrderLine] = {line.id: line for line in lines}
        self.calls: List[Tuple[str, ...]] = []
        # (operation, menu item id or order id) pairs that raise StoreError
        self.fail: Set[Tuple[str, str]] = set()
        self._ids = itertools.count(100)

    @property
    def writes(self):
        return [c for c in self.calls if c[0] in ("create", "update", "delete")]

    async def list_orders(self, user_id=None, restaurant_id=None, date=None, date_from=None, date_to=None):
        self.calls.append(("list",))
        await asyncio.sleep(0)
        found = [
            line for line in self.lines.values()
            if (user_id is None or line.user_id == user_id)
            and (restaurant_id is None or line.restaurant_id == restaurant_id)
            and (date is None or line.date == date)
            and (date_from is None or line.date >= date_from)
            and (date_to is None or line.date <= date_to)
        ]
        return sorted(found, key=lambda line: (line.date, line.menu_item_name, line.id))

    async def get_orders(self, order_ids):
        self.calls.append(("get",))
        await asyncio.sleep(0)
        return [self.lines[i] for i in order_ids if i in self.lines]

    async def create_order(self, fields):
        self.calls.append(("create", fields.menu_item_id))
        await asyncio.sleep(0)
        if ("create", fields.menu_item_id) in self.fail:
            raise StoreError("store unavailable")
        for line in self.lines.values():
            if (line.user_id, line.restaurant_id, line.date, line.menu_item_id) == (
                fields.user_id, fields.restaurant_id, fields.date, fields.menu_item_id
            ):
                raise StoreError(f"Order line for {fields.menu_item_id} already exists")
        line = OrderLine(id=f"line-{next(self._ids)}", created_at=NOW, updated_at=NOW, **fields.model_dump())
        self.lines[line.id] = line
        return line

    async def update_order(self, order_id, quantity=None, note=None, is_paid=None):
        self.calls.append(("update", order_id))
        await asyncio.sleep(0)
        if ("update", order_id) in self.fail:
            raise StoreError("store unavailable", order_id=order_id)
        line = self.lines.get(order_id)
        if line is None:
            return False
        changes = {k: v for k, v in (("quantity", quantity), ("note", note), ("is_paid", is_paid)) if v is not None}
        self.lines[order_id] = line.model_copy(update=changes)
        return True

    async def delete_order(self, order_id):
        self.calls.append(("delete", order_id))
        await asyncio.sleep(0)
        if ("delete", order_id) in self.fail:
            raise StoreError("store unavailable", order_id=order_id)
        return self.lines.pop(order_id, None) is not None


class InMemorySessionStore:
    def __init__(self):
        self.sessions: Dict[str, PaymentSession] = {}

    async def insert(self, session):
        if session.order_code in self.sessions:
            raise ConflictError("duplicate order code")
        for s in self.sessions.values():
            if s.status == "pending" and (s.user_id, s.date) == (session.user_id, session.date):
                raise ConflictError("pending session exists")
        self.sessions[session.order_code] = session

    async def get(self, order_code):
        return self.sessions.get(order_code)

    async def find_pending(self, user_id, day):
        found = [s for s in self.sessions.values()
                 if s.status == "pending" and s.user_id == user_id and s.date == day]
        return max(found, key=lambda s: s.created_at) if found else None

    async def list_covering(self, order_ids, statuses):
        ids = set(order_ids)
        return [s for s in self.sessions.values()
                if s.status in statuses and ids.intersection(s.covered_order_ids)]

    async def list_pending(self):
        return [s for s in self.sessions.values() if s.status == "pending"]

    async def list_unsettled(self, now):
        return [s for s in self.sessions.values()
                if s.status == "completed" and s.unsettled_order_ids
                and s.next_settle_at is not None and s.next_settle_at <= now]

    async def update(self, order_code, fields):
        s = self.sessions[order_code]
        self.sessions[order_code] = PaymentSession.model_validate({**s.model_dump(), **fields})

    async def transition(self, order_code, status, fields):
        s = self.sessions.get(order_code)
        if s is None or s.status != "pending":
            return False
        await self.update(order_code, {**fields, "status": status})
        return True


class FakeGateway:
    def __init__(self):
        self.created: List[Tuple[str, int]] = []
        self.cancelled: List[str] = []
        self.paid: Dict[str, int] = {}
        self.fail_create = False
        self.fail_status = False
        self.status_calls = 0

    def pay(self, order_code: str, amount: int) -> None:
        self.paid[order_code] = amount

    async def create_checkout(self, order_code, amount, description, metadata):
        if self.fail_create:
            raise ProviderError("provider down")
        self.created.append((order_code, amount))
        return CheckoutReference(
            order_code=order_code,
            qr_reference=f"https://qr.test/{order_code}",
            checkout_url=f"https://pay.test/{order_code}",
            description=description,
            expires_at=metadata.get("expires_at"),
        )

    async def get_status(self, order_code):
        self.status_calls += 1
        if self.fail_status:
            raise ProviderError("timed out")
        amount: Optional[int] = self.paid.get(order_code)
        return ProviderStatus(is_paid=amount is not None, amount_paid=amount or 0,
                              status="PAID" if amount is not None else "PENDING")

    async def cancel_checkout(self, order_code, reason):
        self.cancelled.append(order_code)


def make_line(id, menu_item_id, quantity=1, price=35000, user_id="u1", user_name="An",
              day=TODAY, is_paid=False, note="", restaurant_id="r1"):
    return OrderLine(
        id=id,
        user_id=user_id,
        user_name=user_name,
        user_email=f"{user_id}@example.com",
        restaurant_id=restaurant_id,
        menu_item_id=menu_item_id,
        menu_item_name=f"Dish {menu_item_id}",
        menu_item_price=price,
        menu_item_category="Rice",
        date=day,
        quantity=quantity,
        note=note,
        is_paid=is_paid,
    )


# ── Fixtures ───────────────────────────────────────────────────

@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def orders():
    return InMemoryOrderStore()


@pytest.fixture
def sessions():
    return InMemorySessionStore()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def engine(orders, clock, sessions):
    return ReconciliationEngine(orders, clock, sessions)


@pytest.fixture
def manager(orders, sessions, gateway, clock):
    return PaymentSessionManager(orders, sessions, gateway, clock)
