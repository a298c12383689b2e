"""
Tests for lifecycle reminders.

Each scenario walks the frozen clock through a reminder's time window and
checks that the dedupe marker (cart counter, order flag or event row) keeps
a subject to one send per window.
"""
from datetime import timedelta
from unittest.mock import patch

import pytest

from app.models.commerce import Cart, Order
from app.models.event import Event
from app.services.reminders import (
    LifecycleReminderEngine, ReminderPolicy, cart_reminder_message, format_cart_items, time_remaining
)
from tests.support import T0, add_customer

CART_ITEMS = [
    {"name": "Kundan Necklace Set", "price": 180},
    {"name": "Jhumka Earrings", "price": 120},
]


@pytest.fixture
def reminders(gateway, sleep, clock):
    return LifecycleReminderEngine(gateway, ReminderPolicy(), sleep=sleep, clock=clock)


def add_cart(db, phone, updated_at=T0, total=300, items=None, **fields):
    items = CART_ITEMS if items is None else items
    cart = Cart(
        phone=phone,
        items=items,
        item_count=len(items),
        total=total,
        created_at=updated_at,
        updated_at=updated_at,
        **fields
    )
    db.add(cart)
    db.commit()
    return cart


def add_order(db, order_id, phone, **fields):
    order = Order(order_id=order_id, phone=phone, items=CART_ITEMS, total=300, **fields)
    db.add(order)
    db.commit()
    return order


def add_payment_order(db, order_id, phone, created_at=T0):
    return add_order(
        db, order_id, phone,
        status="pending",
        payment_status="unpaid",
        payment_method="online",
        payment_link=f"https://rzp.io/l/{order_id}",
        payment_link_created_at=created_at,
        payment_link_expires=created_at + timedelta(hours=24),
    )


class TestCartRecovery:
    """Cart reminders follow the 1h / 24h / 48h ladder."""

    @pytest.mark.asyncio
    async def test_first_and_second_reminder_windows(self, db, reminders, gateway, clock):
        add_customer(db, "919876500001", name="Asha Verma")
        cart = add_cart(db, "919876500001")

        clock.set(T0 + timedelta(minutes=30))
        assert reminders.due_carts(db) == []

        clock.set(T0 + timedelta(minutes=61))
        first_sent_at = clock()
        result = await reminders.cart_recovery(db)

        assert result.sent == 1
        db.refresh(cart)
        assert cart.reminder_count == 1
        assert cart.last_reminder_at == first_sent_at
        assert cart.updated_at == T0
        assert gateway.calls[0]["kind"] == "buttons"
        assert "Hey Asha!" in gateway.calls[0]["text"]

        clock.set(first_sent_at + timedelta(hours=24) - timedelta(minutes=1))
        assert reminders.due_carts(db) == []

        clock.set(first_sent_at + timedelta(hours=24, minutes=1))
        result = await reminders.cart_recovery(db)

        assert result.sent == 1
        db.refresh(cart)
        assert cart.reminder_count == 2
        assert "Your cart is waiting" in gateway.calls[1]["text"]

    @pytest.mark.asyncio
    async def test_stops_after_max_reminders(self, db, reminders, gateway, clock):
        add_customer(db, "919876500001")
        add_cart(db, "919876500001", reminder_count=3, last_reminder_at=T0 - timedelta(days=10))

        clock.set(T0 + timedelta(days=5))
        result = await reminders.cart_recovery(db)

        assert result.processed == 0
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_small_empty_or_converted_carts_ignored(self, db, reminders, clock):
        for phone in ("919876500001", "919876500002", "919876500003"):
            add_customer(db, phone)
        add_cart(db, "919876500001", total=150)
        add_cart(db, "919876500002", items=[], total=500)
        add_cart(db, "919876500003", status="converted")

        clock.set(T0 + timedelta(hours=2))
        assert reminders.due_carts(db) == []

    @pytest.mark.asyncio
    async def test_opted_out_customer_ignored(self, db, reminders, clock):
        add_customer(db, "919876500001", opted_in=False)
        add_cart(db, "919876500001")

        clock.set(T0 + timedelta(hours=2))
        assert reminders.due_carts(db) == []

    @pytest.mark.asyncio
    async def test_failed_send_reverts_claim(self, db, reminders, gateway, clock):
        add_customer(db, "919876500001")
        cart = add_cart(db, "919876500001")
        gateway.fail_phones["919876500001"] = "(#131047) Re-engagement message"

        clock.set(T0 + timedelta(hours=2))
        result = await reminders.cart_recovery(db)

        assert result.failed == 1
        db.refresh(cart)
        assert cart.reminder_count == 0
        assert cart.last_reminder_at is None
        assert db.query(Event).count() == 0

        # Retried on the next run
        gateway.fail_phones.clear()
        result = await reminders.cart_recovery(db)
        assert result.sent == 1

    @pytest.mark.asyncio
    async def test_sent_reminder_is_logged(self, db, reminders, clock):
        add_customer(db, "919876500001")
        add_cart(db, "919876500001")

        clock.set(T0 + timedelta(hours=2))
        await reminders.cart_recovery(db)

        event = db.query(Event).one()
        assert (event.event_type, event.event_name) == ("cart", "recovery_sent")
        assert event.data == {"reminder_number": 1, "total": 300}

    @pytest.mark.asyncio
    async def test_exception_for_one_cart_does_not_stop_others(self, db, reminders, gateway, clock):
        add_customer(db, "919876500001")
        add_customer(db, "919876500002")
        add_cart(db, "919876500001")
        add_cart(db, "919876500002")
        gateway.raise_phones.add("919876500001")

        clock.set(T0 + timedelta(hours=2))
        result = await reminders.cart_recovery(db)

        assert result.processed == 2
        assert result.errors == 1
        assert result.sent == 1
        assert gateway.phones == ["919876500001", "919876500002"]


class TestPaymentReminders:
    """One payment reminder per order per two-hour cooldown."""

    @pytest.mark.asyncio
    async def test_cooldown(self, db, reminders, gateway, clock):
        add_customer(db, "919876500001", name="Ravi")
        add_payment_order(db, "ORD1001", "919876500001")

        clock.set(T0 + timedelta(minutes=20))
        assert reminders.due_payment_orders(db) == []

        clock.set(T0 + timedelta(minutes=31))
        result = await reminders.payment_reminders(db)
        assert result.sent == 1
        assert "https://rzp.io/l/ORD1001" in gateway.calls[0]["text"]
        assert "Link expires in 23 hours" in gateway.calls[0]["text"]

        clock.set(T0 + timedelta(minutes=90))
        result = await reminders.payment_reminders(db)
        assert result.sent == 0
        assert result.skipped == 1

        clock.set(T0 + timedelta(hours=3))
        result = await reminders.payment_reminders(db)
        assert result.sent == 1
        assert len(gateway.calls) == 2

    @pytest.mark.asyncio
    async def test_paid_or_expired_orders_skipped(self, db, reminders, clock):
        add_customer(db, "919876500001")
        paid = add_payment_order(db, "ORD1001", "919876500001")
        paid.payment_status = "paid"
        cod = add_payment_order(db, "ORD1002", "919876500001")
        cod.payment_method = "cod"
        db.commit()

        clock.set(T0 + timedelta(hours=1))
        assert reminders.due_payment_orders(db) == []

        add_payment_order(db, "ORD1003", "919876500001")
        clock.set(T0 + timedelta(hours=25))
        assert reminders.due_payment_orders(db) == []

    @pytest.mark.asyncio
    async def test_failed_send_drops_marker(self, db, reminders, gateway, clock):
        add_customer(db, "919876500001")
        add_payment_order(db, "ORD1001", "919876500001")
        gateway.fail_phones["919876500001"] = "timeout"

        clock.set(T0 + timedelta(hours=1))
        result = await reminders.payment_reminders(db)

        assert result.failed == 1
        assert db.query(Event).count() == 0

        gateway.fail_phones.clear()
        result = await reminders.payment_reminders(db)
        assert result.sent == 1


class TestOrderPrompts:
    """Delivery confirmation and review requests are one-shot per order."""

    @pytest.mark.asyncio
    async def test_delivery_confirmation_sent_once(self, db, reminders, gateway):
        add_customer(db, "919876500001")
        order = add_order(db, "ORD2001", "919876500001", status="shipped", shipped_at=T0 - timedelta(days=6))
        add_order(db, "ORD2002", "919876500001", status="shipped", shipped_at=T0 - timedelta(days=2))

        result = await reminders.delivery_confirmations(db)
        assert result.sent == 1
        assert gateway.calls[0]["buttons"][0]["id"] == "delivered_ORD2001"

        db.refresh(order)
        assert order.delivery_sent is True

        result = await reminders.delivery_confirmations(db)
        assert result.processed == 0
        assert len(gateway.calls) == 1

    @pytest.mark.asyncio
    async def test_delivery_flag_cleared_on_failure(self, db, reminders, gateway):
        add_customer(db, "919876500001")
        order = add_order(db, "ORD2001", "919876500001", status="shipped", shipped_at=T0 - timedelta(days=6))
        gateway.fail_phones["919876500001"] = "rejected"

        result = await reminders.delivery_confirmations(db)

        assert result.failed == 1
        db.refresh(order)
        assert order.delivery_sent is False

    @pytest.mark.asyncio
    async def test_review_window(self, db, reminders, gateway):
        add_customer(db, "919876500001", name="Meera Iyer")
        add_order(db, "ORD3001", "919876500001", status="delivered", delivered_at=T0 - timedelta(days=1))
        in_window = add_order(db, "ORD3002", "919876500001", status="delivered", delivered_at=T0 - timedelta(days=4))
        add_order(db, "ORD3003", "919876500001", status="delivered", delivered_at=T0 - timedelta(days=8))

        result = await reminders.review_requests(db)

        assert result.sent == 1
        assert "Kundan Necklace Set" in gateway.calls[0]["text"]
        assert "Hi Meera!" in gateway.calls[0]["text"]
        db.refresh(in_window)
        assert in_window.review_sent is True

        result = await reminders.review_requests(db)
        assert result.processed == 0


class TestReorderSuggestions:
    """Win-back prompts for lapsed repeat buyers, with a 14-day cooldown."""

    @pytest.mark.asyncio
    async def test_selection_and_cooldown(self, db, reminders, gateway, clock):
        customer = add_customer(
            db, "919876500001",
            order_count=3,
            last_order_at=T0 - timedelta(days=35),
            last_seen=T0 - timedelta(days=2)
        )
        add_customer(db, "919876500002", order_count=1, last_order_at=T0 - timedelta(days=35), last_seen=T0)
        add_customer(db, "919876500003", order_count=5, last_order_at=T0 - timedelta(days=5), last_seen=T0)

        result = await reminders.reorder_suggestions(db)
        assert result.sent == 1
        assert gateway.phones == ["919876500001"]
        assert "COMEBACK10" in gateway.calls[0]["text"]

        clock.advance(days=7)
        customer.last_seen = clock()
        db.commit()
        result = await reminders.reorder_suggestions(db)
        assert result.skipped == 1

        clock.advance(days=8)
        customer.last_seen = clock()
        db.commit()
        result = await reminders.reorder_suggestions(db)
        assert result.sent == 1
        assert gateway.phones == ["919876500001", "919876500001"]

    @pytest.mark.asyncio
    async def test_cooldown_is_per_tenant(self, db, reminders, gateway):
        for tenant_id in ("shop_a", "shop_b"):
            add_customer(
                db, "919876500001",
                tenant_id=tenant_id,
                order_count=3,
                last_order_at=T0 - timedelta(days=35),
                last_seen=T0 - timedelta(days=2)
            )

        result = await reminders.reorder_suggestions(db)

        assert result.sent == 2
        assert result.skipped == 0
        tenants = {event.tenant_id for event in db.query(Event).filter(Event.event_name == "reorder_suggestion")}
        assert tenants == {"shop_a", "shop_b"}


class TestRun:
    """run() executes every procedure even if one of them fails."""

    @pytest.mark.asyncio
    async def test_failing_procedure_isolated(self, db, reminders, gateway):
        add_customer(db, "919876500001")
        add_order(db, "ORD2001", "919876500001", status="shipped", shipped_at=T0 - timedelta(days=6))

        with patch.object(reminders, "due_carts", side_effect=RuntimeError("boom")):
            results = await reminders.run(db)

        assert results["cart_recovery"].errors == 1
        assert results["delivery_confirmations"].sent == 1
        assert set(results) == {
            "cart_recovery", "payment_reminders", "delivery_confirmations",
            "review_requests", "reorder_suggestions"
        }

    @pytest.mark.asyncio
    async def test_sleeps_between_sends(self, db, reminders, sleep):
        add_customer(db, "919876500001")
        add_order(db, "ORD2001", "919876500001", status="shipped", shipped_at=T0 - timedelta(days=6))
        add_order(db, "ORD2002", "919876500001", status="shipped", shipped_at=T0 - timedelta(days=7))

        await reminders.delivery_confirmations(db)

        assert sleep.calls == [0.2, 0.2]


class TestMessageBuilders:
    def test_format_cart_items_truncates(self):
        items = [{"name": f"Bangle {i}", "price": 99.5} for i in range(5)]

        text = format_cart_items(items)

        assert text.splitlines()[0] == "1. Bangle 0 - ₹99.50"
        assert "Bangle 3" not in text
        assert text.endswith("+2 more...")

    def test_cart_message_variants(self):
        first, buttons = cart_reminder_message("Asha Verma", CART_ITEMS, 300, 1)
        last, _ = cart_reminder_message(None, CART_ITEMS, 300, 3)

        assert first.startswith("Hey Asha!")
        assert "₹300" in first
        assert buttons[0]["id"] == "checkout"
        assert last.startswith("Last chance, there!")

    @pytest.mark.parametrize("delta,expected", [
        (timedelta(minutes=30), "soon"),
        (timedelta(hours=1), "1 hour"),
        (timedelta(hours=5, minutes=59), "5 hours"),
        (timedelta(hours=30), "1 day"),
        (timedelta(days=3), "3 days"),
    ])
    def test_time_remaining(self, delta, expected):
        assert time_remaining(T0 + delta, T0) == expected
