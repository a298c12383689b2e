# app/services/reminders.py
"""
Lifecycle reminders - one-off messages triggered by time windows over carts,
orders and customers. No campaign wrapper: each subject gets at most one send
per cooldown window.

Dedupe markers are written BEFORE the gateway call and rolled back if the
send fails, so an overlapping tick sees the marker and leaves the subject alone:
- carts: reminder_count / last_reminder_at (conditional increment)
- orders: delivery_sent / review_sent one-shot flags
- payment and win-back prompts: an event-log row checked with a cooldown window
"""
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from app.core.logging_config import get_dispatch_logger
from app.models.commerce import Cart, Order
from app.models.customer import Customer
from app.models.event import Event
from app.services.event_log import has_recent_event, record_event
from app.services.gateway import SendResult, WhatsAppGateway

log = logging.getLogger("storecast.reminders")
dispatch_log = get_dispatch_logger()


@dataclass
class ReminderPolicy:
    send_delay_ms: int = 200

    # Cart recovery
    cart_min_value: float = 199
    cart_max_reminders: int = 3
    cart_delays_minutes: List[int] = field(default_factory=lambda: [60, 24 * 60, 48 * 60])
    cart_page: int = 50

    # Payment reminders
    payment_min_age_minutes: int = 30
    payment_max_age_hours: int = 24
    payment_cooldown_hours: int = 2
    payment_page: int = 20

    # Delivery confirmation
    delivery_after_days: int = 5
    delivery_page: int = 10

    # Review requests
    review_min_days: int = 3
    review_max_days: int = 7
    review_page: int = 10

    # Reorder / win-back
    reorder_min_orders: int = 2
    reorder_inactive_min_days: int = 30
    reorder_inactive_max_days: int = 60
    reorder_recent_seen_days: int = 14
    reorder_cooldown_days: int = 14
    reorder_page: int = 10
    reorder_coupon: str = "COMEBACK10"


@dataclass
class ReminderResult:
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0

    def add(self, other: "ReminderResult") -> "ReminderResult":
        self.processed += other.processed
        self.sent += other.sent
        self.failed += other.failed
        self.skipped += other.skipped
        self.errors += other.errors
        return self

    def to_dict(self) -> Dict[str, int]:
        return {
            "processed": self.processed,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": self.errors,
        }


# ────────────────────────────────────────────
# Message builders
# ────────────────────────────────────────────

def _first_name(name: Optional[str]) -> str:
    return (name or "").split(" ")[0] or "there"


def _money(value: Any) -> str:
    amount = float(value or 0)
    return f"{amount:.0f}" if amount.is_integer() else f"{amount:.2f}"


def format_cart_items(items: List[Dict[str, Any]], shown: int = 3) -> str:
    lines = [
        f"{idx}. {item.get('name', 'Item')} - ₹{_money(item.get('price'))}"
        for idx, item in enumerate(items[:shown], start=1)
    ]
    text = "\n".join(lines)
    if len(items) > shown:
        text += f"\n   +{len(items) - shown} more..."
    return text


def time_remaining(expires_at: datetime, now: datetime) -> str:
    """Human estimate of how long a payment link stays valid"""
    hours = int((expires_at - now).total_seconds() // 3600)
    if hours < 1:
        return "soon"
    if hours >= 24:
        days = hours // 24
        return f"{days} day{'s' if days > 1 else ''}"
    return f"{hours} hour{'s' if hours > 1 else ''}"


def cart_reminder_message(name: Optional[str], items: List[Dict[str, Any]], total: Any, reminder_number: int) -> Tuple[str, List[Dict[str, str]]]:
    first = _first_name(name)
    listing = format_cart_items(items)
    amount = _money(total)

    variants = {
        1: (
            f"Hey {first}! 👋\n\nYou left {len(items)} item(s) in your cart:\n\n{listing}\n\n"
            f"💰 Total: ₹{amount}\n\nComplete your order before they sell out!",
            [
                {"id": "checkout", "title": "✅ Complete Order"},
                {"id": "view_cart", "title": "🛒 View Cart"},
            ],
        ),
        2: (
            f"Hi {first}! 🛒\n\nYour cart is waiting! These items are selling fast:\n\n{listing}\n\n"
            f"💰 Total: ₹{amount}\n\n🎁 Complete now and enjoy FREE shipping on orders above ₹499!",
            [
                {"id": "checkout", "title": "🛍️ Buy Now"},
                {"id": "talk_support", "title": "❓ Need Help?"},
            ],
        ),
        3: (
            f"Last chance, {first}! ⏰\n\nYour cart will expire soon:\n\n{listing}\n\n"
            f"💰 Total: ₹{amount}\n\nDon't miss out on these beauties! 💎",
            [
                {"id": "checkout", "title": "⚡ Order Now"},
                {"id": "shop_now", "title": "👀 Browse More"},
            ],
        ),
    }
    return variants.get(reminder_number, variants[1])


def payment_reminder_message(name: Optional[str], order: Order, now: datetime) -> str:
    return (
        f"Hi {_first_name(name)}! 💳\n\n"
        f"Your order *{order.order_id}* is waiting for payment.\n\n"
        f"💰 Amount: ₹{_money(order.total)}\n\n"
        f"Complete payment to confirm your order:\n{order.payment_link}\n\n"
        f"⏰ Link expires in {time_remaining(order.payment_link_expires, now)}\n\n"
        f"Need help? Reply 'support'"
    )


def delivery_prompt(name: Optional[str], order: Order) -> Tuple[str, List[Dict[str, str]]]:
    text = (
        f"Hi {_first_name(name)}! 📦\n\n"
        f"Has your order *{order.order_id}* been delivered?\n\n"
        f"Please confirm so we can update our records."
    )
    buttons = [
        {"id": f"delivered_{order.order_id}", "title": "✅ Yes, Delivered"},
        {"id": f"not_delivered_{order.order_id}", "title": "❌ Not Yet"},
        {"id": f"order_track_{order.order_id}", "title": "📍 Track Order"},
    ]
    return text, buttons


def review_prompt(name: Optional[str], order: Order) -> Tuple[str, List[Dict[str, str]]]:
    items = order.items or []
    product = items[0].get("name") if items and items[0].get("name") else "your order"
    text = (
        f"Hi {_first_name(name)}! 💝\n\n"
        f"How are you loving your {product}?\n\n"
        f"We'd really appreciate your feedback! It helps us serve you better.\n\n"
        f"⭐ Rate your experience:"
    )
    buttons = [
        {"id": f"review_5_{order.order_id}", "title": "⭐⭐⭐⭐⭐ Loved it!"},
        {"id": f"review_4_{order.order_id}", "title": "⭐⭐⭐⭐ Good"},
        {"id": f"review_issue_{order.order_id}", "title": "😕 Had issues"},
    ]
    return text, buttons


def winback_message(name: Optional[str], coupon: str) -> Tuple[str, List[Dict[str, str]]]:
    text = (
        f"Hey {_first_name(name)}! 👋\n\n"
        f"We miss you! It's been a while since your last order.\n\n"
        f"✨ Check out our new arrivals - we think you'll love them!\n\n"
        f"Use code *{coupon}* for 10% off your next order 🎁"
    )
    buttons = [
        {"id": "shop_now", "title": "🛍️ Shop Now"},
        {"id": "cat_new", "title": "🆕 New Arrivals"},
    ]
    return text, buttons


# ────────────────────────────────────────────
# Engine
# ────────────────────────────────────────────

class LifecycleReminderEngine:
    """Runs the cart, payment, delivery, review and reorder procedures"""

    def __init__(
        self,
        gateway: WhatsAppGateway,
        policy: Optional[ReminderPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.gateway = gateway
        self.policy = policy or ReminderPolicy()
        self.sleep = sleep
        self.clock = clock

    async def run(self, db: Session) -> Dict[str, ReminderResult]:
        """Run every procedure once; one failing procedure does not stop the others"""
        procedures = (
            ("cart_recovery", self.cart_recovery),
            ("payment_reminders", self.payment_reminders),
            ("delivery_confirmations", self.delivery_confirmations),
            ("review_requests", self.review_requests),
            ("reorder_suggestions", self.reorder_suggestions),
        )
        results: Dict[str, ReminderResult] = {}
        for name, procedure in procedures:
            try:
                results[name] = await procedure(db)
            except Exception:
                log.exception(f"❌ Reminder procedure {name} failed")
                db.rollback()
                results[name] = ReminderResult(errors=1)
                continue
            log.info(f"🔔 {name}: {results[name].to_dict()}")
        return results

    # ────────────────────────────────────────────
    # Cart recovery
    # ────────────────────────────────────────────

    def due_carts(self, db: Session) -> List[Tuple[Cart, Optional[str]]]:
        """Active carts whose next reminder step is due, with the customer's name"""
        p = self.policy
        now = self.clock()

        steps = []
        for step, minutes in enumerate(p.cart_delays_minutes[:p.cart_max_reminders]):
            cutoff = now - timedelta(minutes=minutes)
            if step == 0:
                steps.append(and_(Cart.reminder_count == 0, Cart.updated_at < cutoff))
            else:
                steps.append(and_(Cart.reminder_count == step, Cart.last_reminder_at < cutoff))
        if not steps:
            return []

        return (
            db.query(Cart, Customer.name)
            .join(Customer, and_(Customer.phone == Cart.phone, Customer.tenant_id == Cart.tenant_id))
            .filter(
                Cart.status == "active",
                Cart.item_count > 0,
                Cart.total >= p.cart_min_value,
                Cart.reminder_count < p.cart_max_reminders,
                Customer.opted_in.is_(True),
                or_(*steps)
            )
            .order_by(Cart.id)
            .limit(p.cart_page)
            .all()
        )

    async def cart_recovery(self, db: Session) -> ReminderResult:
        result = ReminderResult()
        for cart, name in self.due_carts(db):
            await self._attempt(db, result, f"cart {cart.phone}", self._send_cart_reminder(db, cart, name))
        return result

    async def _send_cart_reminder(self, db: Session, cart: Cart, name: Optional[str]) -> Optional[bool]:
        count = cart.reminder_count
        previous_at = cart.last_reminder_at
        now = self.clock()

        # Claim this step; updated_at is left alone so it keeps meaning "cart edited"
        claimed = db.query(Cart).filter(
            Cart.id == cart.id,
            Cart.reminder_count == count
        ).update(
            {"reminder_count": count + 1, "last_reminder_at": now, "updated_at": Cart.updated_at},
            synchronize_session=False
        )
        db.commit()
        if claimed != 1:
            return None

        reminder_number = count + 1
        text, buttons = cart_reminder_message(name, cart.items or [], cart.total, reminder_number)
        outcome = self.gateway.send_buttons(cart.phone, text, buttons)

        if not outcome.success:
            db.query(Cart).filter(
                Cart.id == cart.id,
                Cart.reminder_count == count + 1
            ).update(
                {"reminder_count": count, "last_reminder_at": previous_at, "updated_at": Cart.updated_at},
                synchronize_session=False
            )
            db.commit()
            return self._failed(f"cart {cart.phone}", outcome)

        record_event(
            db, "cart", "recovery_sent", now,
            tenant_id=cart.tenant_id,
            phone=cart.phone,
            data={"reminder_number": reminder_number, "total": cart.total}
        )
        dispatch_log.info(f"🛒 Cart reminder #{reminder_number} → {cart.phone}")
        return True

    # ────────────────────────────────────────────
    # Payment reminders
    # ────────────────────────────────────────────

    def due_payment_orders(self, db: Session) -> List[Tuple[Order, Optional[str]]]:
        p = self.policy
        now = self.clock()
        return (
            db.query(Order, Customer.name)
            .join(Customer, and_(Customer.phone == Order.phone, Customer.tenant_id == Order.tenant_id))
            .filter(
                Order.status == "pending",
                Order.payment_status.in_(("pending", "unpaid")),
                Order.payment_method == "online",
                Order.payment_link.isnot(None),
                Order.payment_link_expires > now,
                Order.payment_link_created_at > now - timedelta(hours=p.payment_max_age_hours),
                Order.payment_link_created_at < now - timedelta(minutes=p.payment_min_age_minutes),
                Customer.opted_in.is_(True)
            )
            .order_by(Order.id)
            .limit(p.payment_page)
            .all()
        )

    async def payment_reminders(self, db: Session) -> ReminderResult:
        result = ReminderResult()
        for order, name in self.due_payment_orders(db):
            await self._attempt(db, result, f"order {order.order_id}", self._send_payment_reminder(db, order, name))
        return result

    async def _send_payment_reminder(self, db: Session, order: Order, name: Optional[str]) -> Optional[bool]:
        now = self.clock()
        since = now - timedelta(hours=self.policy.payment_cooldown_hours)
        if has_recent_event(
            db, "order", "payment_reminder", since, tenant_id=order.tenant_id, order_id=order.order_id
        ):
            return None

        marker = record_event(
            db, "order", "payment_reminder", now,
            tenant_id=order.tenant_id,
            phone=order.phone,
            order_id=order.order_id
        )
        outcome = self.gateway.send_text(order.phone, payment_reminder_message(name, order, now))

        if not outcome.success:
            self._drop_marker(db, marker)
            return self._failed(f"order {order.order_id}", outcome)

        dispatch_log.info(f"💳 Payment reminder → {order.phone} ({order.order_id})")
        return True

    # ────────────────────────────────────────────
    # Delivery confirmation
    # ────────────────────────────────────────────

    def due_delivery_confirmations(self, db: Session) -> List[Tuple[Order, Optional[str]]]:
        p = self.policy
        now = self.clock()
        return (
            db.query(Order, Customer.name)
            .join(Customer, and_(Customer.phone == Order.phone, Customer.tenant_id == Order.tenant_id))
            .filter(
                Order.status == "shipped",
                Order.shipped_at < now - timedelta(days=p.delivery_after_days),
                Order.delivery_sent.is_(False),
                Customer.opted_in.is_(True)
            )
            .order_by(Order.id)
            .limit(p.delivery_page)
            .all()
        )

    async def delivery_confirmations(self, db: Session) -> ReminderResult:
        result = ReminderResult()
        for order, name in self.due_delivery_confirmations(db):
            text, buttons = delivery_prompt(name, order)
            await self._attempt(
                db, result, f"order {order.order_id}",
                self._send_once(db, order, Order.delivery_sent, text, buttons)
            )
        return result

    # ────────────────────────────────────────────
    # Review requests
    # ────────────────────────────────────────────

    def due_review_requests(self, db: Session) -> List[Tuple[Order, Optional[str]]]:
        p = self.policy
        now = self.clock()
        return (
            db.query(Order, Customer.name)
            .join(Customer, and_(Customer.phone == Order.phone, Customer.tenant_id == Order.tenant_id))
            .filter(
                Order.status == "delivered",
                Order.delivered_at < now - timedelta(days=p.review_min_days),
                Order.delivered_at > now - timedelta(days=p.review_max_days),
                Order.review_sent.is_(False),
                Customer.opted_in.is_(True)
            )
            .order_by(Order.id)
            .limit(p.review_page)
            .all()
        )

    async def review_requests(self, db: Session) -> ReminderResult:
        result = ReminderResult()
        for order, name in self.due_review_requests(db):
            text, buttons = review_prompt(name, order)
            await self._attempt(
                db, result, f"order {order.order_id}",
                self._send_once(db, order, Order.review_sent, text, buttons)
            )
        return result

    # ────────────────────────────────────────────
    # Reorder suggestions
    # ────────────────────────────────────────────

    def due_reorder_customers(self, db: Session) -> List[Customer]:
        p = self.policy
        now = self.clock()
        return (
            db.query(Customer)
            .filter(
                Customer.opted_in.is_(True),
                Customer.order_count >= p.reorder_min_orders,
                Customer.last_order_at < now - timedelta(days=p.reorder_inactive_min_days),
                Customer.last_order_at > now - timedelta(days=p.reorder_inactive_max_days),
                Customer.last_seen > now - timedelta(days=p.reorder_recent_seen_days)
            )
            .order_by(Customer.id)
            .limit(p.reorder_page)
            .all()
        )

    async def reorder_suggestions(self, db: Session) -> ReminderResult:
        result = ReminderResult()
        for customer in self.due_reorder_customers(db):
            await self._attempt(db, result, f"customer {customer.phone}", self._send_winback(db, customer))
        return result

    async def _send_winback(self, db: Session, customer: Customer) -> Optional[bool]:
        now = self.clock()
        since = now - timedelta(days=self.policy.reorder_cooldown_days)
        if has_recent_event(
            db, "engagement", "reorder_suggestion", since, tenant_id=customer.tenant_id, phone=customer.phone
        ):
            return None

        marker = record_event(
            db, "engagement", "reorder_suggestion", now,
            tenant_id=customer.tenant_id,
            phone=customer.phone
        )
        text, buttons = winback_message(customer.name, self.policy.reorder_coupon)
        outcome = self.gateway.send_buttons(customer.phone, text, buttons)

        if not outcome.success:
            self._drop_marker(db, marker)
            return self._failed(f"customer {customer.phone}", outcome)

        dispatch_log.info(f"🎁 Win-back prompt → {customer.phone}")
        return True

    # ────────────────────────────────────────────
    # Shared plumbing
    # ────────────────────────────────────────────

    async def _send_once(self, db: Session, order: Order, flag, text: str, buttons: List[Dict[str, str]]) -> Optional[bool]:
        """Set a one-shot order flag, send, and clear the flag again if the send failed"""
        claimed = db.query(Order).filter(
            Order.id == order.id,
            flag.is_(False)
        ).update({flag: True}, synchronize_session=False)
        db.commit()
        if claimed != 1:
            return None

        outcome = self.gateway.send_buttons(order.phone, text, buttons)
        if not outcome.success:
            db.query(Order).filter(Order.id == order.id).update({flag: False}, synchronize_session=False)
            db.commit()
            return self._failed(f"order {order.order_id}", outcome)

        dispatch_log.info(f"📦 {flag.key} → {order.phone} ({order.order_id})")
        return True

    async def _attempt(self, db: Session, result: ReminderResult, label: str, send: Awaitable[Optional[bool]]):
        """
        Run one candidate. The awaited send returns True (sent), False (gateway
        refused) or None (marker already present). Exceptions are counted and
        the loop moves on.
        """
        result.processed += 1
        try:
            sent = await send
        except Exception:
            log.exception(f"❌ Reminder for {label} failed")
            db.rollback()
            result.errors += 1
            return

        if sent is None:
            result.skipped += 1
            return

        if sent:
            result.sent += 1
        else:
            result.failed += 1
        await self.sleep(self.policy.send_delay_ms / 1000)

    def _failed(self, label: str, outcome: SendResult) -> bool:
        dispatch_log.warning(f"❌ Reminder for {label} not sent: {outcome.error}")
        return False

    def _drop_marker(self, db: Session, marker: Event):
        db.delete(marker)
        db.commit()
