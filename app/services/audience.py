# app/services/audience.py
"""
Audience resolution - turns a campaign's targeting rules into phones or a count.

Every query starts from opted-in customers of the tenant; the target kind adds
one more conjunctive predicate.
"""
from __future__ import annotations
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import String, cast, false, or_
from sqlalchemy.orm import Session, Query

from app.models.campaign import Campaign, TargetType
from app.models.customer import Customer

log = logging.getLogger("storecast.audience")


@dataclass
class AudienceTarget:
    """Typed audience specification"""
    kind: TargetType = TargetType.ALL
    labels: List[str] = field(default_factory=list)
    segment: Optional[str] = None
    tier: Optional[str] = None
    min_orders: Optional[int] = None
    max_orders: Optional[int] = None
    min_spent: Optional[float] = None
    last_active_days: Optional[int] = None

    @classmethod
    def from_campaign(cls, campaign: Campaign) -> "AudienceTarget":
        filters: Dict[str, Any] = campaign.target_filters or {}
        return cls(
            kind=TargetType(campaign.target_type or TargetType.ALL.value),
            labels=list(campaign.target_labels or []),
            segment=campaign.target_segment,
            tier=filters.get("tier"),
            min_orders=filters.get("min_orders"),
            max_orders=filters.get("max_orders"),
            min_spent=filters.get("min_spent"),
            last_active_days=filters.get("last_active_days"),
        )


class AudienceResolver:
    """Builds customer queries for a target specification"""

    def __init__(self, db: Session, clock: Callable[[], datetime] = datetime.utcnow):
        self.db = db
        self.clock = clock

    def count(self, tenant_id: str, target: AudienceTarget) -> int:
        """Preview: number of customers the target would reach"""
        return self._query(tenant_id, target).count()

    def phones(self, tenant_id: str, target: AudienceTarget) -> List[str]:
        """Enrollment: phone numbers in stable (oldest customer first) order"""
        rows = (
            self._query(tenant_id, target)
            .with_entities(Customer.phone)
            .order_by(Customer.id)
            .all()
        )
        phones = [row.phone for row in rows]
        log.info(f"🎯 Resolved {len(phones)} recipients for target '{target.kind.value}'")
        return phones

    def _query(self, tenant_id: str, target: AudienceTarget) -> Query:
        query = self.db.query(Customer).filter(
            Customer.tenant_id == tenant_id,
            Customer.opted_in.is_(True)
        )

        if target.kind == TargetType.LABELS:
            # An empty label list matches nobody; "all" is its own target kind
            if not target.labels:
                return query.filter(false())
            # Labels are stored as a json.dumps array; an element matches by its quoted serialized form
            labels_text = cast(Customer.labels, String)
            query = query.filter(or_(*[
                labels_text.contains(json.dumps(label), autoescape=True) for label in target.labels
            ]))

        elif target.kind == TargetType.SEGMENT:
            query = query.filter(Customer.segment == target.segment)

        elif target.kind == TargetType.TIER:
            query = query.filter(Customer.tier == target.tier)

        elif target.kind == TargetType.CUSTOM:
            if target.min_orders is not None:
                query = query.filter(Customer.order_count >= target.min_orders)
            if target.max_orders is not None:
                query = query.filter(Customer.order_count <= target.max_orders)
            if target.min_spent is not None:
                query = query.filter(Customer.total_spent >= target.min_spent)
            if target.last_active_days is not None:
                since = self.clock() - timedelta(days=target.last_active_days)
                query = query.filter(Customer.last_seen >= since)

        return query
