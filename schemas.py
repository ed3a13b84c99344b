"""
Database Schemas for the team lunch ordering service

Each persisted Pydantic model corresponds to a MongoDB collection (lowercased
class name): OrderLine -> "orderline", PaymentSession -> "paymentsession".
Money is an int in the smallest currency unit (VND đồng) everywhere.
"""
from datetime import date, datetime
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

SessionStatus = Literal["pending", "completed", "expired", "cancelled", "error"]
TERMINAL_STATUSES = ("completed", "expired", "cancelled", "error")


# Orders
class OrderScope(BaseModel):
    """One user's order for one restaurant on one day."""
    user_id: str
    user_name: str = "Unknown"
    user_email: str = ""
    restaurant_id: str
    date: date


class OrderLineCreate(BaseModel):
    user_id: str
    user_name: str
    user_email: str = ""
    restaurant_id: str
    menu_item_id: str
    menu_item_name: str = ""
    menu_item_price: int = Field(0, ge=0)
    menu_item_category: str = ""
    date: date
    quantity: int = Field(..., ge=1)
    note: str = ""
    is_paid: bool = False


class OrderLine(OrderLineCreate):
    id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def amount(self) -> int:
        return self.menu_item_price * self.quantity


# Cart
class CartEntry(BaseModel):
    menu_item_id: str
    quantity: int
    note: str = ""
    menu_item_name: str = ""
    menu_item_price: int = Field(0, ge=0)
    menu_item_category: str = ""


class Cart(BaseModel):
    """Client-owned working set keyed by menu item id. Never persisted."""
    entries: Dict[str, CartEntry] = Field(default_factory=dict)

    @classmethod
    def from_lines(cls, lines: List[OrderLine]) -> "Cart":
        return cls(entries={
            line.menu_item_id: CartEntry(
                menu_item_id=line.menu_item_id,
                quantity=line.quantity,
                note=line.note,
                menu_item_name=line.menu_item_name,
                menu_item_price=line.menu_item_price,
                menu_item_category=line.menu_item_category,
            )
            for line in lines
        })

    @classmethod
    def from_entries(cls, entries: List[CartEntry]) -> "Cart":
        return cls(entries={e.menu_item_id: e for e in entries})

    def set_item(self, entry: CartEntry) -> None:
        self.entries[entry.menu_item_id] = entry

    def remove_item(self, menu_item_id: str) -> None:
        self.entries.pop(menu_item_id, None)

    def normalized(self) -> Dict[str, CartEntry]:
        # quantity <= 0 means the item is not in the cart
        return {k: e for k, e in self.entries.items() if e.quantity > 0}


# Aggregation views
class UserOrderGroup(BaseModel):
    user_id: str
    user_name: str
    user_email: str = ""
    lines: List[OrderLine] = Field(default_factory=list)
    total_amount: int = 0
    total_items: int = 0
    paid_amount: int = 0
    unpaid_amount: int = 0
    all_paid: bool = False


class Contributor(BaseModel):
    user_id: str
    user_name: str
    quantity: int
    note: str = ""


class MenuItemSummary(BaseModel):
    menu_item_id: str
    menu_item_name: str
    menu_item_price: int
    menu_item_category: str = ""
    total_quantity: int = 0
    total_amount: int = 0
    contributors: List[Contributor] = Field(default_factory=list)


class WeeklyCell(BaseModel):
    lines: List[OrderLine]
    amount: int
    all_paid: bool


class WeeklyRow(BaseModel):
    user_id: str
    user_name: str
    user_email: str = ""
    # None marks a day without any order
    cells: Dict[date, Optional[WeeklyCell]]
    total_amount: int = 0
    paid_amount: int = 0
    unpaid_amount: int = 0


class WeeklyRollup(BaseModel):
    weekdays: List[date]
    rows: List[WeeklyRow]
    day_totals: Dict[date, int]
    grand_total: int


class TopItem(BaseModel):
    name: str
    quantity: int


class DailyStats(BaseModel):
    date: date
    total_orders: int
    total_items: int
    total_amount: int
    paid_amount: int
    unique_users: int
    top_items: List[TopItem]


class UnpaidDay(BaseModel):
    date: date
    lines: List[OrderLine]
    total_amount: int


# Payments
class CheckoutReference(BaseModel):
    order_code: str
    qr_reference: str = ""
    checkout_url: str = ""
    account_number: str = ""
    account_name: str = ""
    bin: str = ""
    description: str = ""
    expires_at: Optional[datetime] = None


class ProviderStatus(BaseModel):
    is_paid: bool
    amount_paid: int = 0
    status: str = ""


class PaymentSession(BaseModel):
    model_config = ConfigDict(frozen=True)

    order_code: str
    user_id: str
    user_name: str = ""
    user_email: str = ""
    date: date
    amount: int = Field(..., gt=0)
    covered_order_ids: Tuple[str, ...]
    status: SessionStatus = "pending"
    description: str = ""
    checkout: Optional[CheckoutReference] = None
    created_at: datetime
    expires_at: datetime
    paid_at: Optional[datetime] = None
    paid_amount: Optional[int] = None
    cancelled_at: Optional[datetime] = None
    error: Optional[str] = None
    # settlement bookkeeping
    unsettled_order_ids: List[str] = Field(default_factory=list)
    settle_attempts: int = 0
    next_settle_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.status == "pending" and now >= self.expires_at


class PaymentSessionView(BaseModel):
    """What the checkout UI needs, including expires_at for the countdown."""
    order_code: str
    status: SessionStatus
    amount: int
    covered_order_ids: List[str]
    qr_reference: str = ""
    checkout_url: str = ""
    account_number: str = ""
    account_name: str = ""
    description: str = ""
    created_at: datetime
    expires_at: datetime
    paid_at: Optional[datetime] = None

    @classmethod
    def from_session(cls, session: PaymentSession) -> "PaymentSessionView":
        ref = session.checkout or CheckoutReference(order_code=session.order_code)
        return cls(
            order_code=session.order_code,
            status=session.status,
            amount=session.amount,
            covered_order_ids=list(session.covered_order_ids),
            qr_reference=ref.qr_reference,
            checkout_url=ref.checkout_url,
            account_number=ref.account_number,
            account_name=ref.account_name,
            description=ref.description or session.description,
            created_at=session.created_at,
            expires_at=session.expires_at,
            paid_at=session.paid_at,
        )
