# app/models/base.py
"""
Declarative base shared by the campaign engine tables and the storefront
tables it reads (customers, orders, carts).

Engine code passes explicit timestamps from its injected clock; the column
defaults only cover rows written by other services.
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class TenantMixin:
    """Every row belongs to exactly one storefront tenant"""
    tenant_id = Column(String(100), index=True, nullable=False, default="default")


class TimestampMixin:
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class BaseModel(TenantMixin, TimestampMixin, Base):
    """Abstract base: integer primary key, tenant and naive-UTC timestamps"""
    __abstract__ = True

    id = Column(Integer, primary_key=True, index=True)
