# app/models/commerce.py
"""
Order and cart rows read by the lifecycle reminder engine.

Only the columns reminders depend on are modelled here; order/cart CRUD lives
in the storefront service. One-shot flags and reminder counters are the
dedupe markers written alongside each reminder send.
"""
from sqlalchemy import Column, String, Boolean, JSON, UniqueConstraint, DateTime, Integer, Float, Text
from app.models.base import BaseModel


class Order(BaseModel):
    __tablename__ = "orders"

    order_id = Column(String(50), unique=True, index=True, nullable=False)
    phone = Column(String(50), index=True, nullable=False)
    items = Column(JSON, nullable=False, default=list)  # [{"name": ..., "price": ...}]
    total = Column(Float, nullable=False, default=0)

    status = Column(String(20), index=True, nullable=False, default="pending")
    payment_status = Column(String(20), nullable=False, default="unpaid")
    payment_method = Column(String(20), nullable=True)

    payment_link = Column(Text, nullable=True)
    payment_link_created_at = Column(DateTime, nullable=True)
    payment_link_expires = Column(DateTime, nullable=True)

    shipped_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)

    # One-shot reminder flags
    delivery_sent = Column(Boolean, nullable=False, default=False)
    review_sent = Column(Boolean, nullable=False, default=False)

    def __repr__(self):
        return f"<Order {self.order_id} {self.status}>"


class Cart(BaseModel):
    __tablename__ = "carts"
    __table_args__ = (
        UniqueConstraint('tenant_id', 'phone', name='uq_cart_tenant_phone'),
    )

    phone = Column(String(50), index=True, nullable=False)
    items = Column(JSON, nullable=False, default=list)
    item_count = Column(Integer, nullable=False, default=0)
    total = Column(Float, nullable=False, default=0)

    status = Column(String(20), index=True, nullable=False, default="active")

    # Recovery cooldown marker
    reminder_count = Column(Integer, nullable=False, default=0)
    last_reminder_at = Column(DateTime, nullable=True)

    converted_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<Cart {self.phone} ₹{self.total} r{self.reminder_count}>"
