import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from aggregation import daily_stats, group_by_menu_item, group_by_user, unpaid_by_day, week_days, weekly_rollup
from clock import Clock, SystemClock
from config import LOG_LEVEL, PORT, RESTAURANT_TZ
from database import db
from errors import ConflictError, NotFoundError, OrderServiceError, ProviderError, StoreError, ValidationError
from gateway import PayOSGateway, verify_webhook_signature
from payments import PaymentSessionManager
from reconciliation import ReconcileResult, ReconciliationEngine
from schemas import (
    Cart,
    CartEntry,
    DailyStats,
    MenuItemSummary,
    OrderLine,
    OrderScope,
    PaymentSessionView,
    UnpaidDay,
    UserOrderGroup,
    WeeklyRollup,
)
from store import MongoOrderStore, MongoSessionStore, OrderRecordStore, PaymentSessionStore

logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

system_clock = SystemClock(ZoneInfo(RESTAURANT_TZ))
order_store = MongoOrderStore()
session_store = MongoSessionStore()
payos = PayOSGateway()
# shared so background watchers outlive the request that started them
payment_manager = PaymentSessionManager(order_store, session_store, payos, system_clock, autowatch=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    worker = None
    if db is not None:
        await order_store.ensure_indexes()
        await session_store.ensure_indexes()
        worker = asyncio.create_task(payment_manager.run_settlement_worker())
    yield
    if worker is not None:
        worker.cancel()
        await asyncio.gather(worker, return_exceptions=True)
    await payment_manager.shutdown()
    await payos.aclose()


app = FastAPI(title="Team Lunch Orders API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_STATUS = {
    ValidationError: 400,
    NotFoundError: 404,
    ConflictError: 409,
    ProviderError: 502,
    StoreError: 503,
}


@app.exception_handler(OrderServiceError)
async def order_service_error(request: Request, exc: OrderServiceError):
    status = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content={"detail": str(exc)})


# --------- Dependencies ---------
def get_clock() -> Clock:
    return system_clock


def get_order_store() -> OrderRecordStore:
    return order_store


def get_session_store() -> PaymentSessionStore:
    return session_store


def get_engine(
    store: OrderRecordStore = Depends(get_order_store),
    sessions: PaymentSessionStore = Depends(get_session_store),
    clock: Clock = Depends(get_clock),
) -> ReconciliationEngine:
    return ReconciliationEngine(store, clock, sessions)


def get_manager() -> PaymentSessionManager:
    return payment_manager


# --------- Health/Test ---------
@app.get("/")
def read_root():
    return {"message": "Team Lunch Orders API running"}


@app.get("/test")
async def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["collections"] = (await db.list_collection_names())[:10]
            response["connection_status"] = "Connected"
            response["database"] = "✅ Connected & Working"
    except Exception as e:
        response["database"] = f"⚠️ Error: {str(e)[:80]}"
    return response


# --------- Orders ---------
class ReconcilePayload(BaseModel):
    scope: OrderScope
    items: List[CartEntry] = Field(default_factory=list)
    # ids of the lines loaded when the cart was opened; re-read now when omitted
    snapshot_ids: Optional[List[str]] = None


@app.post("/orders/reconcile", response_model=ReconcileResult)
async def reconcile_orders(payload: ReconcilePayload, engine: ReconciliationEngine = Depends(get_engine)):
    snapshot = None
    if payload.snapshot_ids is not None:
        snapshot = await engine.load_snapshot(payload.scope, payload.snapshot_ids)
    return await engine.reconcile(payload.scope, Cart.from_entries(payload.items), snapshot=snapshot)


@app.get("/orders", response_model=List[OrderLine])
async def list_orders(
    user_id: Optional[str] = None,
    restaurant_id: Optional[str] = None,
    day: Optional[date] = Query(default=None, alias="date"),
    store: OrderRecordStore = Depends(get_order_store),
):
    return await store.list_orders(user_id=user_id, restaurant_id=restaurant_id, date=day)


@app.get("/orders/groups", response_model=List[UserOrderGroup])
async def list_user_groups(
    day: Optional[date] = Query(default=None, alias="date"),
    restaurant_id: Optional[str] = None,
    current_user_id: Optional[str] = None,
    store: OrderRecordStore = Depends(get_order_store),
    clock: Clock = Depends(get_clock),
):
    lines = await store.list_orders(restaurant_id=restaurant_id, date=day or clock.today())
    return group_by_user(lines, current_user_id)


@app.get("/orders/summary", response_model=List[MenuItemSummary])
async def menu_item_summary(
    day: Optional[date] = Query(default=None, alias="date"),
    restaurant_id: Optional[str] = None,
    store: OrderRecordStore = Depends(get_order_store),
    clock: Clock = Depends(get_clock),
):
    lines = await store.list_orders(restaurant_id=restaurant_id, date=day or clock.today())
    return group_by_menu_item(lines)


@app.get("/orders/weekly", response_model=WeeklyRollup)
async def list_weekly_rollup(
    week_of: Optional[date] = None,
    store: OrderRecordStore = Depends(get_order_store),
    clock: Clock = Depends(get_clock),
):
    days = week_days(week_of or clock.today())
    lines = await store.list_orders(date_from=days[0], date_to=days[-1])
    by_date: Dict[date, List[OrderLine]] = {}
    for line in lines:
        by_date.setdefault(line.date, []).append(line)
    return weekly_rollup(by_date, days)


@app.get("/orders/stats", response_model=DailyStats)
async def order_stats(
    day: Optional[date] = Query(default=None, alias="date"),
    store: OrderRecordStore = Depends(get_order_store),
    clock: Clock = Depends(get_clock),
):
    day = day or clock.today()
    return daily_stats(await store.list_orders(date=day), day)


@app.get("/orders/unpaid", response_model=List[UnpaidDay])
async def unpaid_orders(user_id: str, store: OrderRecordStore = Depends(get_order_store)):
    return unpaid_by_day(await store.list_orders(user_id=user_id))


class PaidFlagPayload(BaseModel):
    is_paid: bool


@app.patch("/orders/{order_id}/paid")
async def set_paid_flag(order_id: str, payload: PaidFlagPayload, manager: PaymentSessionManager = Depends(get_manager)):
    await manager.set_paid_flag(order_id, payload.is_paid)
    return {"id": order_id, "is_paid": payload.is_paid}


# --------- Payments ---------
class CheckoutPayload(BaseModel):
    user_id: str
    order_ids: List[str]
    # total shown to the user; checked against the live total when given
    amount: Optional[int] = None


@app.post("/payments/checkout", response_model=PaymentSessionView)
async def start_checkout(payload: CheckoutPayload, manager: PaymentSessionManager = Depends(get_manager)):
    if payload.amount is None:
        session = await manager.start_checkout(payload.user_id, payload.order_ids)
    else:
        session = await manager.create_session(payload.user_id, payload.order_ids, payload.amount)
    return PaymentSessionView.from_session(session)


class WebhookPayload(BaseModel):
    code: str = ""
    desc: str = ""
    success: bool = False
    data: Dict[str, Any]
    signature: str = ""


@app.post("/payments/webhook")
async def payment_webhook(payload: WebhookPayload, manager: PaymentSessionManager = Depends(get_manager)):
    if not verify_webhook_signature(payload.data, payload.signature):
        raise HTTPException(status_code=401, detail="Invalid signature")
    try:
        order_code = str(payload.data["orderCode"])
        amount = int(payload.data["amount"])
    except (KeyError, TypeError, ValueError):
        raise HTTPException(status_code=400, detail="Malformed webhook data")
    success = payload.success and payload.data.get("code", payload.code) == "00"
    await manager.handle_webhook(order_code, amount, success)
    # always acknowledge so the provider stops retrying
    return {"success": True}


@app.get("/payments/{order_code}", response_model=PaymentSessionView)
async def get_session_status(order_code: str, manager: PaymentSessionManager = Depends(get_manager)):
    return PaymentSessionView.from_session(await manager.get_session_status(order_code))


@app.post("/payments/{order_code}/cancel", response_model=PaymentSessionView)
async def cancel_checkout(order_code: str, manager: PaymentSessionManager = Depends(get_manager)):
    return PaymentSessionView.from_session(await manager.cancel(order_code))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
