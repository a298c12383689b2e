# app/services/event_log.py
"""Append-only event log helpers (cooldown markers, tick records, analytics)"""
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.models.event import Event


def record_event(
    db: Session,
    event_type: str,
    event_name: str,
    at: datetime,
    tenant_id: str = "default",
    phone: Optional[str] = None,
    order_id: Optional[str] = None,
    campaign_id: Optional[str] = None,
    data: Optional[Dict[str, Any]] = None,
    commit: bool = True
) -> Event:
    event = Event(
        tenant_id=tenant_id,
        event_type=event_type,
        event_name=event_name,
        phone=phone,
        order_id=order_id,
        campaign_id=campaign_id,
        data=data or {},
        created_at=at,
        updated_at=at
    )
    db.add(event)
    if commit:
        db.commit()
    return event


def has_recent_event(
    db: Session,
    event_type: str,
    event_name: str,
    since: datetime,
    tenant_id: str = "default",
    phone: Optional[str] = None,
    order_id: Optional[str] = None
) -> bool:
    """True when a matching event was recorded for the tenant at or after ``since``"""
    query = db.query(Event.id).filter(
        Event.tenant_id == tenant_id,
        Event.event_type == event_type,
        Event.event_name == event_name,
        Event.created_at >= since
    )
    if phone is not None:
        query = query.filter(Event.phone == phone)
    if order_id is not None:
        query = query.filter(Event.order_id == order_id)
    return query.first() is not None
