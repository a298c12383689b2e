# app/models/event.py
"""Append-only event log. Cooldown-based reminders query it by (type, name, subject, window)."""
from sqlalchemy import Column, String, JSON, Index
from app.models.base import BaseModel


class Event(BaseModel):
    __tablename__ = "events"
    __table_args__ = (
        Index('ix_events_type_name_created', 'event_type', 'event_name', 'created_at'),
    )

    event_type = Column(String(50), nullable=False)
    event_name = Column(String(100), nullable=True)

    phone = Column(String(50), index=True, nullable=True)
    order_id = Column(String(50), index=True, nullable=True)
    campaign_id = Column(String(40), nullable=True)

    data = Column(JSON, nullable=True)

    def __repr__(self):
        return f"<Event {self.event_type}/{self.event_name}>"
