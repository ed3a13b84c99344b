"""
Payment sessions: one checkout attempt covering a fixed set of a user's
unpaid order lines.

    pending -> completed | expired | cancelled | error

A session leaves `pending` exactly once; the session store enforces that with
a compare-and-set on the status. Once the provider confirms the exact amount
the payment is a success for the user, whatever happens while the covered
lines are being flagged paid. Lines that fail to flip are retried on their
own backoff schedule by the settlement worker.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from clock import Clock
from config import (
    MIN_CHECKOUT_AMOUNT,
    PAYMENT_TTL_MINUTES,
    POLL_INTERVAL_SECONDS,
    SETTLE_RETRY_DELAYS,
    SETTLE_WORKER_INTERVAL_SECONDS,
)
from errors import ConflictError, NotFoundError, ProviderError, StoreError, ValidationError
from gateway import PaymentProviderGateway, generate_order_code
from schemas import TERMINAL_STATUSES, OrderLine, PaymentSession
from store import OrderRecordStore, PaymentSessionStore

logger = logging.getLogger(__name__)

TRANSITIONS = {
    "pending": ("completed", "expired", "cancelled", "error"),
}

# any session still standing behind a line's paid flag
BLOCKING_STATUSES = ("pending", "completed", "expired", "error")


def check_transition(session: PaymentSession, target: str) -> None:
    if target not in TRANSITIONS.get(session.status, ()):
        raise ValidationError(f"Payment {session.order_code} is {session.status} and cannot become {target}")


def settle_delay(attempts: int) -> timedelta:
    index = min(max(attempts, 1), len(SETTLE_RETRY_DELAYS)) - 1
    return timedelta(seconds=SETTLE_RETRY_DELAYS[index])


class PaymentSessionManager:
    def __init__(
        self,
        orders: OrderRecordStore,
        sessions: PaymentSessionStore,
        gateway: PaymentProviderGateway,
        clock: Clock,
        ttl: timedelta = timedelta(minutes=PAYMENT_TTL_MINUTES),
        poll_interval: float = POLL_INTERVAL_SECONDS,
        min_amount: int = MIN_CHECKOUT_AMOUNT,
        autowatch: bool = False,
    ):
        self.orders = orders
        self.sessions = sessions
        self.gateway = gateway
        self.clock = clock
        self.ttl = ttl
        self.poll_interval = poll_interval
        self.min_amount = min_amount
        # start a background poller for every new checkout
        self.autowatch = autowatch
        self._watchers: Dict[str, asyncio.Task] = {}

    # --------- Creation ---------
    async def _live_lines(self, user_id: str, order_ids: Sequence[str]) -> List[OrderLine]:
        if not order_ids:
            raise ValidationError("Nothing to pay for")
        lines = await self.orders.get_orders(order_ids)
        found = {line.id for line in lines}
        missing = [i for i in order_ids if i not in found]
        if missing:
            raise ValidationError(f"Unknown order lines: {', '.join(missing)}")
        for line in lines:
            if line.user_id != user_id:
                raise ValidationError(f"Order line {line.id} belongs to another user")
            if line.is_paid:
                raise ValidationError(f"Order line {line.id} is already paid")
        return lines

    async def start_checkout(self, user_id: str, unpaid_order_ids: Sequence[str]) -> PaymentSession:
        """Open (or reuse) a session for `unpaid_order_ids` at their live total."""
        ids = list(dict.fromkeys(unpaid_order_ids))
        lines = await self._live_lines(user_id, ids)
        return await self.create_session(user_id, ids, sum(line.amount for line in lines))

    async def create_session(self, user_id: str, covered_order_ids: Sequence[str], amount: int) -> PaymentSession:
        ids = list(dict.fromkeys(covered_order_ids))
        lines = await self._live_lines(user_id, ids)
        live = sum(line.amount for line in lines)
        if amount != live:
            raise ValidationError(f"Amount {amount} does not match the current total {live}")
        if amount < self.min_amount:
            raise ValidationError(f"Minimum payment is {self.min_amount}")

        day = max(line.date for line in lines)
        reused = await self._reuse_or_supersede(user_id, day, ids, amount)
        if reused is not None:
            return reused

        first = lines[0]
        for _ in range(3):
            now = self.clock.now()
            order_code = generate_order_code(now)
            session = PaymentSession(
                order_code=order_code,
                user_id=user_id,
                user_name=first.user_name,
                user_email=first.user_email,
                date=day,
                amount=amount,
                covered_order_ids=tuple(ids),
                # the provider only accepts ASCII letters, digits and spaces here
                description=f"DH{order_code}",
                created_at=now,
                expires_at=now + self.ttl,
            )
            try:
                await self.sessions.insert(session)
                break
            except ConflictError:
                existing = await self.sessions.find_pending(user_id, day)
                if existing is not None:
                    logger.info("Pending payment %s already exists for %s on %s", existing.order_code, user_id, day)
                    return existing
                logger.info("Order code %s collided, generating another", session.order_code)
        else:
            raise ConflictError("Could not allocate a unique order code")

        return await self._open_checkout(session)

    async def _reuse_or_supersede(self, user_id, day, ids, amount) -> Optional[PaymentSession]:
        candidates: Dict[str, PaymentSession] = {}
        same_scope = await self.sessions.find_pending(user_id, day)
        if same_scope is not None:
            candidates[same_scope.order_code] = same_scope
        for s in await self.sessions.list_covering(ids, ("pending",)):
            candidates[s.order_code] = s

        for session in candidates.values():
            session = await self._expire_if_due(session)
            if session.status != "pending":
                continue
            if set(session.covered_order_ids) == set(ids) and session.amount == amount:
                logger.info("Reusing pending payment %s for %s", session.order_code, user_id)
                return session
            logger.info("Superseding pending payment %s for %s", session.order_code, user_id)
            await self._cancel(session, "Superseded by a new checkout")
        return None

    async def _open_checkout(self, session: PaymentSession) -> PaymentSession:
        try:
            checkout = await self.gateway.create_checkout(
                session.order_code,
                session.amount,
                session.description,
                {
                    "user_id": session.user_id,
                    "buyer_name": session.user_name,
                    "buyer_email": session.user_email,
                    "order_ids": list(session.covered_order_ids),
                    "expires_at": session.expires_at,
                },
            )
        except ProviderError as e:
            logger.error("Creating checkout %s failed: %s", session.order_code, e)
            await self.sessions.transition(session.order_code, "error", {"error": str(e)})
            raise
        await self.sessions.update(session.order_code, {"checkout": checkout.model_dump()})
        logger.info("Payment %s created for %s: %d", session.order_code, session.user_id, session.amount)
        if self.autowatch:
            self.watch_in_background(session.order_code)
        return session.model_copy(update={"checkout": checkout})

    # --------- Reading ---------
    async def _expire_if_due(self, session: PaymentSession) -> PaymentSession:
        if not session.is_expired(self.clock.now()):
            return session
        if await self.sessions.transition(session.order_code, "expired", {}):
            logger.info("Payment %s expired", session.order_code)
        self.stop_watching(session.order_code)
        return await self._reload(session.order_code)

    async def _reload(self, order_code: str) -> PaymentSession:
        session = await self.sessions.get(order_code)
        if session is None:
            raise NotFoundError(f"Payment {order_code} not found")
        return session

    async def get_session(self, order_code: str) -> PaymentSession:
        """Current session state; a pending session past its TTL is expired here."""
        return await self._expire_if_due(await self._reload(order_code))

    async def get_session_status(self, order_code: str) -> PaymentSession:
        return await self.poll_status(order_code)

    # --------- Polling ---------
    async def poll_status(self, order_code: str) -> PaymentSession:
        """Ask the provider once whether the session has been paid."""
        session = await self.get_session(order_code)
        if session.status != "pending":
            return session
        now = self.clock.now()
        try:
            status = await self.gateway.get_status(order_code)
        except ProviderError as e:
            logger.warning("Status check for %s failed, will retry: %s", order_code, e)
            return session
        if not status.is_paid:
            return session
        return await self._confirm(session, status.amount_paid, now)

    async def _confirm(self, session: PaymentSession, amount_paid: int, now: datetime) -> PaymentSession:
        if now >= session.expires_at:
            logger.error("Ignoring confirmation for %s received after expiry; settle it by hand", session.order_code)
            return await self._expire_if_due(session)
        if amount_paid != session.amount:
            logger.warning("Payment %s received %d, expected %d", session.order_code, amount_paid, session.amount)
            return session
        check_transition(session, "completed")
        moved = await self.sessions.transition(session.order_code, "completed", {
            "paid_at": now,
            "paid_amount": amount_paid,
            "unsettled_order_ids": list(session.covered_order_ids),
            # picked up by the settlement worker if flagging below never finishes
            "next_settle_at": now,
        })
        if not moved:
            return await self._reload(session.order_code)

        logger.info("Payment %s completed", session.order_code)
        self.stop_watching(session.order_code)
        completed = session.model_copy(update={"status": "completed", "paid_at": now, "paid_amount": amount_paid})
        try:
            await self.settle(session.order_code)
            return await self._reload(session.order_code)
        except StoreError as e:
            logger.error("Settling payment %s failed, left to the settlement worker: %s", session.order_code, e)
            return completed

    async def watch(self, order_code: str) -> PaymentSession:
        """Poll every `poll_interval` seconds until the session leaves pending."""
        while True:
            session = await self.poll_status(order_code)
            if session.status != "pending":
                return session
            await self.clock.sleep(self.poll_interval)

    def watch_in_background(self, order_code: str) -> asyncio.Task:
        task = self._watchers.get(order_code)
        if task is None or task.done():
            task = asyncio.create_task(self.watch(order_code))
            self._watchers[order_code] = task
            task.add_done_callback(lambda t: self._forget(order_code, t))
        return task

    def _forget(self, order_code: str, task: asyncio.Task) -> None:
        if self._watchers.get(order_code) is task:
            del self._watchers[order_code]
        if not task.cancelled() and task.exception() is not None:
            logger.error("Watching payment %s stopped: %s", order_code, task.exception())

    def stop_watching(self, order_code: str) -> None:
        """Stop polling without touching the session (the checkout UI was closed)."""
        task = self._watchers.pop(order_code, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def shutdown(self) -> None:
        tasks = list(self._watchers.values())
        self._watchers.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # --------- Settlement ---------
    async def settle(self, order_code: str) -> List[str]:
        """Flag every covered line paid. Safe to call any number of times.

        Returns the ids that could not be flagged; those are queued for retry.
        """
        session = await self._reload(order_code)
        if session.status != "completed":
            raise ValidationError(f"Payment {order_code} is {session.status}, nothing to settle")
        return await self._settle(session, list(session.covered_order_ids))

    async def _settle(self, session: PaymentSession, order_ids: List[str]) -> List[str]:
        results = await asyncio.gather(
            *(self.orders.update_order(i, is_paid=True) for i in order_ids),
            return_exceptions=True,
        )
        failed: List[str] = []
        for order_id, res in zip(order_ids, results):
            if isinstance(res, StoreError):
                failed.append(order_id)
            elif isinstance(res, BaseException):
                raise res
            elif not res:
                logger.error("Payment %s covers order line %s which no longer exists", session.order_code, order_id)

        now = self.clock.now()
        attempts = session.settle_attempts + 1
        fields = {"unsettled_order_ids": failed, "settle_attempts": attempts}
        if failed:
            fields["next_settle_at"] = now + settle_delay(attempts)
            logger.error("Payment %s: %d line(s) not flagged paid, retrying at %s",
                         session.order_code, len(failed), fields["next_settle_at"])
        else:
            fields["next_settle_at"] = None
            fields["settled_at"] = now
        await self.sessions.update(session.order_code, fields)
        return failed

    async def retry_settlements(self) -> int:
        """Retry settlement for every session whose backoff has elapsed."""
        due = await self.sessions.list_unsettled(self.clock.now())
        for session in due:
            logger.info("Retrying settlement of %s (attempt %d)", session.order_code, session.settle_attempts + 1)
            await self._settle(session, list(session.unsettled_order_ids))
        return len(due)

    async def run_settlement_worker(self, interval: float = SETTLE_WORKER_INTERVAL_SECONDS) -> None:
        """Background loop: settlement retries plus the expiry sweep."""
        while True:
            try:
                await self.retry_settlements()
                await self.expire_stale()
            except StoreError as e:
                logger.warning("Settlement sweep failed: %s", e)
            await self.clock.sleep(interval)

    # --------- Cancellation and housekeeping ---------
    async def cancel(self, order_code: str) -> PaymentSession:
        session = await self.get_session(order_code)
        check_transition(session, "cancelled")
        return await self._cancel(session, "Cancelled by user")

    async def _cancel(self, session: PaymentSession, reason: str) -> PaymentSession:
        moved = await self.sessions.transition(session.order_code, "cancelled", {"cancelled_at": self.clock.now()})
        self.stop_watching(session.order_code)
        if moved and session.checkout is not None:
            try:
                await self.gateway.cancel_checkout(session.order_code, reason)
            except ProviderError as e:
                logger.warning("Cancelling checkout %s at the provider failed: %s", session.order_code, e)
        return await self._reload(session.order_code)

    async def expire_stale(self) -> int:
        """Expire every pending session whose TTL has passed."""
        count = 0
        for session in await self.sessions.list_pending():
            if (await self._expire_if_due(session)).status == "expired":
                count += 1
        return count

    async def handle_webhook(self, order_code: str, amount: int, success: bool) -> Optional[PaymentSession]:
        """Provider push notification; same rules as a successful poll."""
        try:
            session = await self.get_session(order_code)
        except NotFoundError:
            logger.error("Webhook for unknown payment %s", order_code)
            return None
        if session.status in TERMINAL_STATUSES:
            if success and session.status != "completed":
                logger.error("Payment %s received %d while %s; settle it by hand",
                             order_code, amount, session.status)
            return session
        if not success:
            logger.info("Provider reported payment %s as not successful", order_code)
            return session
        return await self._confirm(session, amount, self.clock.now())

    async def set_paid_flag(self, order_id: str, is_paid: bool) -> None:
        """Direct paid toggle, refused for lines a payment session stands behind."""
        covering = await self.sessions.list_covering([order_id], BLOCKING_STATUSES)
        if covering:
            raise ValidationError(f"Order line {order_id} is part of payment {covering[0].order_code}")
        if not await self.orders.update_order(order_id, is_paid=is_paid):
            raise NotFoundError(f"Order line {order_id} not found")
