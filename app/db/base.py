"""Import all models for Alembic and create_all"""
from app.models.base import Base

from app.models.campaign import Campaign, CampaignRecipient
from app.models.customer import Customer
from app.models.commerce import Order, Cart
from app.models.event import Event

__all__ = ["Base", "Campaign", "CampaignRecipient", "Customer", "Order", "Cart", "Event"]
