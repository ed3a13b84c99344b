"""
Persistence collaborators: order lines and payment sessions in MongoDB.

The protocols are what the engine and the payment manager depend on; the
Mongo classes are the production implementations. Every call touches a single
document, no multi-document transactions are used.
"""
import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol

from bson import ObjectId
from pymongo.errors import DuplicateKeyError, PyMongoError

import database
from database import create_document
from errors import ConflictError, StoreError
from schemas import OrderLine, OrderLineCreate, PaymentSession

logger = logging.getLogger(__name__)


class OrderRecordStore(Protocol):
    async def list_orders(
        self,
        user_id: Optional[str] = None,
        restaurant_id: Optional[str] = None,
        date: Optional[date] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> List[OrderLine]: ...

    async def get_orders(self, order_ids: Iterable[str]) -> List[OrderLine]: ...

    async def create_order(self, fields: OrderLineCreate) -> OrderLine: ...

    async def update_order(
        self,
        order_id: str,
        quantity: Optional[int] = None,
        note: Optional[str] = None,
        is_paid: Optional[bool] = None,
    ) -> bool: ...

    async def delete_order(self, order_id: str) -> bool: ...


class PaymentSessionStore(Protocol):
    async def insert(self, session: PaymentSession) -> None: ...

    async def get(self, order_code: str) -> Optional[PaymentSession]: ...

    async def find_pending(self, user_id: str, day: date) -> Optional[PaymentSession]: ...

    async def list_covering(self, order_ids: Iterable[str], statuses: Iterable[str]) -> List[PaymentSession]: ...

    async def list_pending(self) -> List[PaymentSession]: ...

    async def list_unsettled(self, now: datetime) -> List[PaymentSession]: ...

    async def update(self, order_code: str, fields: Dict[str, Any]) -> None: ...

    async def transition(self, order_code: str, status: str, fields: Dict[str, Any]) -> bool: ...


# --------- Utilities ---------
class PyObjectId(ObjectId):
    @classmethod
    def validate(cls, v):
        if isinstance(v, ObjectId):
            return v
        if not ObjectId.is_valid(v):
            raise ValueError("Invalid objectid")
        return ObjectId(v)


def _oid(value: str) -> Optional[ObjectId]:
    try:
        return PyObjectId.validate(value)
    except ValueError:
        return None


def _collection(name: str):
    if database.db is None:
        raise StoreError("Database not configured")
    return database.db[name]


def _to_line(doc: Dict[str, Any]) -> OrderLine:
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    return OrderLine.model_validate(doc)


def _to_session(doc: Dict[str, Any]) -> PaymentSession:
    doc = dict(doc)
    doc.pop("_id", None)
    return PaymentSession.model_validate(doc)


def _session_doc(session: PaymentSession) -> Dict[str, Any]:
    doc = session.model_dump()
    doc["date"] = session.date.isoformat()
    doc["covered_order_ids"] = list(session.covered_order_ids)
    return doc


# --------- Order lines ---------
class MongoOrderStore:
    collection = "orderline"

    async def ensure_indexes(self) -> None:
        col = _collection(self.collection)
        await col.create_index(
            [("user_id", 1), ("restaurant_id", 1), ("date", 1), ("menu_item_id", 1)],
            unique=True,
            name="natural_key",
        )
        await col.create_index([("date", 1), ("menu_item_id", 1)])

    async def list_orders(self, user_id=None, restaurant_id=None, date=None, date_from=None, date_to=None):
        q: Dict[str, Any] = {}
        if user_id:
            q["user_id"] = user_id
        if restaurant_id:
            q["restaurant_id"] = restaurant_id
        if date is not None:
            q["date"] = date.isoformat()
        elif date_from is not None or date_to is not None:
            q["date"] = {}
            if date_from is not None:
                q["date"]["$gte"] = date_from.isoformat()
            if date_to is not None:
                q["date"]["$lte"] = date_to.isoformat()
        try:
            cursor = _collection(self.collection).find(q).sort(
                [("date", 1), ("menu_item_category", 1), ("menu_item_name", 1)]
            )
            docs = await cursor.to_list()
        except PyMongoError as e:
            raise StoreError(f"Listing orders failed: {e}")
        return [_to_line(d) for d in docs]

    async def get_orders(self, order_ids):
        oids = [o for o in (_oid(i) for i in order_ids) if o is not None]
        if not oids:
            return []
        try:
            docs = await _collection(self.collection).find({"_id": {"$in": oids}}).to_list()
        except PyMongoError as e:
            raise StoreError(f"Fetching orders failed: {e}")
        return [_to_line(d) for d in docs]

    async def create_order(self, fields):
        data = fields.model_dump()
        data["date"] = fields.date.isoformat()
        col = _collection(self.collection)
        try:
            _id = await create_document(self.collection, data)
            doc = await col.find_one({"_id": ObjectId(_id)})
        except DuplicateKeyError:
            raise StoreError(f"Order line for {fields.menu_item_id} on {fields.date} already exists")
        except PyMongoError as e:
            raise StoreError(f"Creating order failed: {e}")
        return _to_line(doc)

    async def update_order(self, order_id, quantity=None, note=None, is_paid=None):
        oid = _oid(order_id)
        if oid is None:
            return False
        upd: Dict[str, Any] = {"updated_at": datetime.now(timezone.utc)}
        if quantity is not None:
            upd["quantity"] = quantity
        if note is not None:
            upd["note"] = note
        if is_paid is not None:
            upd["is_paid"] = is_paid
        try:
            res = await _collection(self.collection).update_one({"_id": oid}, {"$set": upd})
        except PyMongoError as e:
            raise StoreError(f"Updating order failed: {e}", order_id=order_id)
        return res.matched_count == 1

    async def delete_order(self, order_id):
        oid = _oid(order_id)
        if oid is None:
            return False
        try:
            res = await _collection(self.collection).delete_one({"_id": oid})
        except PyMongoError as e:
            raise StoreError(f"Deleting order failed: {e}", order_id=order_id)
        return res.deleted_count == 1


# --------- Payment sessions ---------
class MongoSessionStore:
    collection = "paymentsession"

    async def ensure_indexes(self) -> None:
        col = _collection(self.collection)
        await col.create_index("order_code", unique=True)
        # one pending session per user and day
        await col.create_index(
            [("user_id", 1), ("date", 1)],
            unique=True,
            partialFilterExpression={"status": "pending"},
            name="one_pending_per_scope",
        )
        await col.create_index("covered_order_ids")
        await col.create_index([("status", 1), ("next_settle_at", 1)])

    async def insert(self, session):
        try:
            await _collection(self.collection).insert_one(_session_doc(session))
        except DuplicateKeyError:
            raise ConflictError(f"Session {session.order_code} collides with an existing one")
        except PyMongoError as e:
            raise StoreError(f"Saving session failed: {e}")

    async def _find(self, q: Dict[str, Any], **kwargs) -> List[PaymentSession]:
        try:
            docs = await _collection(self.collection).find(q, **kwargs).to_list()
        except PyMongoError as e:
            raise StoreError(f"Listing sessions failed: {e}")
        return [_to_session(d) for d in docs]

    async def get(self, order_code):
        found = await self._find({"order_code": order_code}, limit=1)
        return found[0] if found else None

    async def find_pending(self, user_id, day):
        found = await self._find(
            {"user_id": user_id, "date": day.isoformat(), "status": "pending"},
            sort=[("created_at", -1)],
            limit=1,
        )
        return found[0] if found else None

    async def list_covering(self, order_ids, statuses):
        return await self._find({
            "covered_order_ids": {"$in": list(order_ids)},
            "status": {"$in": list(statuses)},
        })

    async def list_pending(self):
        return await self._find({"status": "pending"})

    async def list_unsettled(self, now):
        return await self._find({
            "status": "completed",
            "unsettled_order_ids": {"$ne": []},
            "next_settle_at": {"$lte": now},
        })

    async def update(self, order_code, fields):
        try:
            await _collection(self.collection).update_one({"order_code": order_code}, {"$set": fields})
        except PyMongoError as e:
            raise StoreError(f"Updating session {order_code} failed: {e}")

    async def transition(self, order_code, status, fields):
        """Move a pending session to `status`. False when it already left pending."""
        upd = dict(fields)
        upd["status"] = status
        try:
            res = await _collection(self.collection).update_one(
                {"order_code": order_code, "status": "pending"}, {"$set": upd}
            )
        except PyMongoError as e:
            raise StoreError(f"Updating session {order_code} failed: {e}")
        return res.modified_count == 1
