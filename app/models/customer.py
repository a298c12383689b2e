# app/models/customer.py
"""Storefront customer, the audience source for campaigns and win-back prompts"""
from sqlalchemy import Column, String, Boolean, JSON, UniqueConstraint, DateTime, Integer, Float
from app.models.base import BaseModel


class Customer(BaseModel):
    __tablename__ = "customers"
    __table_args__ = (
        UniqueConstraint('tenant_id', 'phone', name='uq_customer_tenant_phone'),
    )

    phone = Column(String(50), index=True, nullable=False)
    name = Column(String(255), nullable=True)

    # Segmentation (precomputed by the CRM side)
    segment = Column(String(50), index=True, nullable=True, default="new")
    tier = Column(String(50), index=True, nullable=True, default="bronze")
    labels = Column(JSON, nullable=False, default=list)

    # Stats
    order_count = Column(Integer, nullable=False, default=0)
    total_spent = Column(Float, nullable=False, default=0)

    opted_in = Column(Boolean, nullable=False, default=True, index=True)

    # Activity tracking
    last_seen = Column(DateTime, nullable=True)
    last_order_at = Column(DateTime, nullable=True)

    @property
    def first_name(self) -> str:
        return (self.name or "").split(" ")[0] or "there"

    def __repr__(self):
        return f"<Customer {self.name or self.phone}>"
