# app/services/campaign_store.py
"""
Campaign persistence and state transitions.

Every status change and every recipient outcome is a conditional UPDATE keyed
by the row id and the expected current status, so two overlapping ticks can
never both act on the same recipient or move a campaign out of a state the
other one already left.
"""
from __future__ import annotations
import enum
import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from app.core.exceptions import (
    CampaignNotFound, CampaignValidationError, EmptyAudienceError, InvalidTransition
)
from app.models.campaign import (
    Campaign, CampaignRecipient, CampaignStatus, MessageType, RecipientStatus,
    OUTSTANDING_STATUSES
)
from app.models.customer import Customer
from app.models.event import Event
from app.schemas.campaign import CampaignCreate, CampaignUpdate

log = logging.getLogger("storecast.campaign_store")

S = CampaignStatus

# Allowed Campaign.status moves. Anything else raises InvalidTransition.
TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    S.DRAFT.value: (S.SCHEDULED.value, S.SENDING.value, S.FAILED.value),
    S.SCHEDULED.value: (S.DRAFT.value, S.SENDING.value, S.FAILED.value),
    S.SENDING.value: (S.PAUSED.value, S.COMPLETED.value),
    S.PAUSED.value: (S.SENDING.value,),
    S.COMPLETED.value: (),
    S.FAILED.value: (),
}

EDITABLE_STATUSES = (S.DRAFT.value, S.SCHEDULED.value)
TARGET_FIELDS = frozenset({"target_type", "target_labels", "target_segment", "target_filters"})
STARTABLE_STATUSES = (S.DRAFT.value, S.SCHEDULED.value, S.PAUSED.value)

# Delivery callbacks only ever move a recipient forward along this ladder
_DELIVERY_RANK = {
    RecipientStatus.SENT.value: 1,
    RecipientStatus.DELIVERED.value: 2,
    RecipientStatus.READ.value: 3,
}

ERROR_MESSAGE_MAX = 500
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_campaign_id(now: datetime) -> str:
    """BC + base36 epoch milliseconds + random suffix, e.g. BCMF3K2Q1A7C2"""
    millis = int((now - datetime(1970, 1, 1)).total_seconds() * 1000)
    return f"BC{_base36(millis)}{secrets.token_hex(2)}".upper()


def _plain(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    return value


def validate_message(name: Optional[str], message_type: str, message: Optional[str], template_name: Optional[str]):
    """Raises CampaignValidationError for an incomplete message definition"""
    if not name or not name.strip():
        raise CampaignValidationError("Name required")
    if message_type == MessageType.TEMPLATE.value:
        if not template_name:
            raise CampaignValidationError("Template name required for template messages")
    elif not message or not message.strip():
        raise CampaignValidationError("Message content required")


class CampaignStore:
    """Campaign and recipient rows for one database session"""

    def __init__(self, db: Session, clock: Callable[[], datetime] = datetime.utcnow):
        self.db = db
        self.clock = clock

    # ────────────────────────────────────────────
    # CRUD
    # ────────────────────────────────────────────

    def create(
        self,
        tenant_id: str,
        data: CampaignCreate,
        created_by: Optional[str] = None,
        preview_count: int = 0
    ) -> Campaign:
        """
        Create a campaign in draft, or scheduled when scheduled_at is given.

        Args:
            tenant_id: Owning tenant
            data: Validated request body
            created_by: User id from the bearer token, if any
            preview_count: Audience size at creation time (replaced at enrollment)
        """
        message_type = _plain(data.message_type)
        validate_message(data.name, message_type, data.message, data.template_name)

        now = self.clock()
        campaign = Campaign(
            tenant_id=tenant_id,
            campaign_id=generate_campaign_id(now),
            name=data.name.strip(),
            message_type=message_type,
            message=data.message,
            template_name=data.template_name,
            template_params=list(data.template_params),
            media_url=data.media_url,
            buttons=[btn.model_dump() for btn in data.buttons],
            target_type=_plain(data.target_type),
            target_labels=list(data.target_labels),
            target_segment=data.target_segment,
            target_filters=data.target_filters.model_dump(exclude_none=True),
            target_count=preview_count,
            status=S.SCHEDULED.value if data.scheduled_at else S.DRAFT.value,
            scheduled_at=data.scheduled_at,
            created_by=created_by,
            created_at=now,
            updated_at=now
        )
        if data.send_rate:
            campaign.send_rate = data.send_rate

        self.db.add(campaign)
        self.db.commit()
        self.db.refresh(campaign)

        log.info(f"📝 Campaign {campaign.campaign_id} created ({campaign.status}, preview {preview_count})")
        return campaign

    def get(self, tenant_id: str, campaign_id: str) -> Campaign:
        campaign = self.db.query(Campaign).filter(
            Campaign.tenant_id == tenant_id,
            Campaign.campaign_id == campaign_id
        ).first()
        if not campaign:
            raise CampaignNotFound(campaign_id)
        return campaign

    def list(
        self,
        tenant_id: str,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> Tuple[List[Campaign], int]:
        query = self.db.query(Campaign).filter(Campaign.tenant_id == tenant_id)
        if status:
            query = query.filter(Campaign.status == status)

        total = query.count()
        campaigns = (
            query.order_by(Campaign.created_at.desc(), Campaign.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return campaigns, total

    def update(self, campaign: Campaign, data: CampaignUpdate) -> Campaign:
        """Apply a partial update; only draft and scheduled campaigns are editable"""
        if campaign.status not in EDITABLE_STATUSES:
            raise CampaignValidationError(
                "Cannot update a campaign that has already started",
                {"status": campaign.status}
            )

        fields = data.model_dump(exclude_unset=True)
        if not fields:
            raise CampaignValidationError("No updates provided")

        if "target_filters" in fields and data.target_filters is not None:
            fields["target_filters"] = data.target_filters.model_dump(exclude_none=True)
        if "buttons" in fields and data.buttons is not None:
            fields["buttons"] = [btn.model_dump() for btn in data.buttons]
        fields = {key: _plain(value) for key, value in fields.items()}

        # JSON columns never hold null
        for key, empty in (("template_params", []), ("buttons", []), ("target_labels", []), ("target_filters", {})):
            if key in fields and fields[key] is None:
                fields[key] = empty

        merged = {
            "name": fields.get("name", campaign.name),
            "message_type": fields.get("message_type", campaign.message_type) or campaign.message_type,
            "message": fields.get("message", campaign.message),
            "template_name": fields.get("template_name", campaign.template_name),
        }
        validate_message(merged["name"], merged["message_type"], merged["message"], merged["template_name"])
        fields["message_type"] = merged["message_type"]
        if "target_type" in fields and fields["target_type"] is None:
            fields["target_type"] = campaign.target_type

        for key, value in fields.items():
            setattr(campaign, key, value)

        # Setting or clearing the schedule moves between draft and scheduled
        if "scheduled_at" in fields:
            campaign.status = S.SCHEDULED.value if campaign.scheduled_at else S.DRAFT.value

        campaign.updated_at = self.clock()
        self.db.commit()
        self.db.refresh(campaign)

        log.info(f"✏️ Campaign {campaign.campaign_id} updated: {sorted(fields)}")
        return campaign

    def set_preview_count(self, campaign: Campaign, count: int) -> Campaign:
        """Replace the pre-enrollment audience preview; enrollment owns target_count afterwards"""
        if campaign.enrolled_at is not None:
            return campaign
        campaign.target_count = count
        self.db.commit()
        self.db.refresh(campaign)
        return campaign

    def delete(self, campaign: Campaign) -> int:
        """Remove the campaign and all of its recipients. Returns removed recipient count."""
        public_id = campaign.campaign_id
        removed = self.db.query(CampaignRecipient).filter(
            CampaignRecipient.campaign_id == public_id
        ).delete(synchronize_session=False)
        self.db.delete(campaign)
        self.db.commit()

        log.info(f"🗑️ Campaign {public_id} deleted ({removed} recipients)")
        return removed

    # ────────────────────────────────────────────
    # State machine
    # ────────────────────────────────────────────

    def current_status(self, campaign: Campaign) -> Optional[str]:
        """Live status straight from the database (None once deleted)"""
        return self.db.query(Campaign.status).filter(Campaign.id == campaign.id).scalar()

    def transition(self, campaign: Campaign, target: CampaignStatus) -> Campaign:
        target_value = _plain(target)
        current = campaign.status

        if target_value not in TRANSITIONS.get(current, ()):
            raise InvalidTransition(current, target_value)

        now = self.clock()
        values: Dict[str, Any] = {"status": target_value, "updated_at": now}
        if target_value == S.SENDING.value and campaign.started_at is None:
            values["started_at"] = now
        if target_value in (S.COMPLETED.value, S.FAILED.value):
            values["completed_at"] = now

        updated = self.db.query(Campaign).filter(
            Campaign.id == campaign.id,
            Campaign.status == current
        ).update(values, synchronize_session=False)
        self.db.commit()
        self.db.refresh(campaign)

        if updated != 1:
            # Someone else moved it first
            raise InvalidTransition(campaign.status, target_value)

        log.info(f"🔁 Campaign {campaign.campaign_id}: {current} → {target_value}")
        return campaign

    def start(self, campaign: Campaign, phones: Iterable[str]) -> Campaign:
        """
        Enroll (first start only) and move the campaign to sending.

        A campaign whose audience resolves to nobody is marked failed and
        EmptyAudienceError is raised; no recipient rows are written.
        """
        if campaign.status not in STARTABLE_STATUSES:
            raise InvalidTransition(campaign.status, S.SENDING.value)

        if campaign.enrolled_at is None:
            self.enroll(campaign, phones)

        if not campaign.target_count:
            self.mark_failed(campaign)
            raise EmptyAudienceError(
                "No recipients found for this campaign",
                {"campaign_id": campaign.campaign_id}
            )

        return self.transition(campaign, S.SENDING)

    def pause(self, campaign: Campaign) -> Campaign:
        return self.transition(campaign, S.PAUSED)

    def resume(self, campaign: Campaign) -> Campaign:
        if campaign.status != S.PAUSED.value:
            raise InvalidTransition(campaign.status, S.SENDING.value)
        return self.transition(campaign, S.SENDING)

    def mark_failed(self, campaign: Campaign) -> Campaign:
        return self.transition(campaign, S.FAILED)

    # ────────────────────────────────────────────
    # Enrollment
    # ────────────────────────────────────────────

    def enroll(self, campaign: Campaign, phones: Iterable[str]) -> int:
        """
        Insert-if-absent recipient rows, then fix target_count to the persisted
        row count. Returns the number of newly inserted rows.
        """
        wanted: List[str] = []
        seen = set()
        for phone in phones:
            if phone and phone not in seen:
                seen.add(phone)
                wanted.append(phone)

        existing = {
            row.phone for row in self.db.query(CampaignRecipient.phone).filter(
                CampaignRecipient.campaign_id == campaign.campaign_id
            )
        }

        now = self.clock()
        inserted = 0
        for phone in wanted:
            if phone in existing:
                continue
            self.db.add(CampaignRecipient(
                tenant_id=campaign.tenant_id,
                campaign_id=campaign.campaign_id,
                phone=phone,
                status=RecipientStatus.PENDING.value,
                created_at=now,
                updated_at=now
            ))
            inserted += 1
        self.db.flush()

        persisted = self.db.query(func.count(CampaignRecipient.id)).filter(
            CampaignRecipient.campaign_id == campaign.campaign_id
        ).scalar() or 0

        campaign.target_count = persisted
        if campaign.enrolled_at is None:
            campaign.enrolled_at = now
        campaign.updated_at = now
        self.db.commit()
        self.db.refresh(campaign)

        log.info(f"👥 Campaign {campaign.campaign_id} enrolled {inserted} new recipients (target {persisted})")
        return inserted

    # ────────────────────────────────────────────
    # Recipient queries
    # ────────────────────────────────────────────

    def recipient_counts(self, campaign: Campaign) -> Dict[str, int]:
        """Per-status recipient counts, every status present"""
        counts = {status.value: 0 for status in RecipientStatus}
        rows = (
            self.db.query(CampaignRecipient.status, func.count(CampaignRecipient.id))
            .filter(CampaignRecipient.campaign_id == campaign.campaign_id)
            .group_by(CampaignRecipient.status)
            .all()
        )
        for status, count in rows:
            counts[status] = count
        return counts

    def pending_count(self, campaign: Campaign) -> int:
        """Outstanding recipients: pending plus claimed-but-unfinished"""
        return self.db.query(func.count(CampaignRecipient.id)).filter(
            CampaignRecipient.campaign_id == campaign.campaign_id,
            CampaignRecipient.status.in_(OUTSTANDING_STATUSES)
        ).scalar() or 0

    def pending_batch(self, campaign: Campaign, limit: int) -> List[CampaignRecipient]:
        """Oldest-enrolled pending recipients first"""
        return (
            self.db.query(CampaignRecipient)
            .filter(
                CampaignRecipient.campaign_id == campaign.campaign_id,
                CampaignRecipient.status == RecipientStatus.PENDING.value
            )
            .order_by(CampaignRecipient.id)
            .limit(limit)
            .all()
        )

    def list_recipients(
        self,
        campaign: Campaign,
        status: Optional[str] = None,
        limit: int = 100,
        offset: int = 0
    ) -> Tuple[List[Tuple[CampaignRecipient, Optional[str]]], int]:
        """Recipient rows with the customer's display name (if the customer still exists)"""
        query = (
            self.db.query(CampaignRecipient, Customer.name)
            .outerjoin(
                Customer,
                and_(
                    Customer.phone == CampaignRecipient.phone,
                    Customer.tenant_id == CampaignRecipient.tenant_id
                )
            )
            .filter(CampaignRecipient.campaign_id == campaign.campaign_id)
        )
        if status:
            query = query.filter(CampaignRecipient.status == status)

        total = query.count()
        rows = query.order_by(CampaignRecipient.id).offset(offset).limit(limit).all()
        return [(recipient, name) for recipient, name in rows], total

    # ────────────────────────────────────────────
    # Dispatch bookkeeping
    # ────────────────────────────────────────────

    def claim_recipient(self, recipient_id: int) -> bool:
        """pending → in_flight. Only the caller that gets True may send."""
        now = self.clock()
        claimed = self.db.query(CampaignRecipient).filter(
            CampaignRecipient.id == recipient_id,
            CampaignRecipient.status == RecipientStatus.PENDING.value
        ).update(
            {"status": RecipientStatus.IN_FLIGHT.value, "claimed_at": now, "updated_at": now},
            synchronize_session=False
        )
        self.db.commit()
        return claimed == 1

    def mark_sent(self, campaign: Campaign, recipient_id: int, message_id: Optional[str]) -> bool:
        now = self.clock()
        updated = self.db.query(CampaignRecipient).filter(
            CampaignRecipient.id == recipient_id,
            CampaignRecipient.status == RecipientStatus.IN_FLIGHT.value
        ).update(
            {
                "status": RecipientStatus.SENT.value,
                "message_id": message_id,
                "sent_at": now,
                "updated_at": now
            },
            synchronize_session=False
        )
        if updated == 1:
            self._increment(campaign, Campaign.sent_count, now)
        self.db.commit()
        return updated == 1

    def mark_failed_recipient(self, campaign: Campaign, recipient_id: int, error: Optional[str]) -> bool:
        now = self.clock()
        updated = self.db.query(CampaignRecipient).filter(
            CampaignRecipient.id == recipient_id,
            CampaignRecipient.status == RecipientStatus.IN_FLIGHT.value
        ).update(
            {
                "status": RecipientStatus.FAILED.value,
                "error_message": (error or "Unknown error")[:ERROR_MESSAGE_MAX],
                "failed_at": now,
                "updated_at": now
            },
            synchronize_session=False
        )
        if updated == 1:
            self._increment(campaign, Campaign.failed_count, now)
        self.db.commit()
        return updated == 1

    def complete_if_drained(self, campaign: Campaign) -> bool:
        """sending → completed once nothing is pending or in flight"""
        if self.pending_count(campaign):
            return False

        now = self.clock()
        updated = self.db.query(Campaign).filter(
            Campaign.id == campaign.id,
            Campaign.status == S.SENDING.value
        ).update(
            {"status": S.COMPLETED.value, "completed_at": now, "updated_at": now},
            synchronize_session=False
        )
        self.db.commit()
        self.db.refresh(campaign)

        if updated == 1:
            log.info(
                f"🏁 Campaign {campaign.campaign_id} completed: "
                f"{campaign.sent_count} sent, {campaign.failed_count} failed"
            )
        return updated == 1

    def requeue_stale(self, campaign: Campaign, older_than: timedelta) -> int:
        """
        Operator re-queue: in_flight claims older than ``older_than`` go back to
        pending. A claim that old belongs to a dispatcher that died between
        claiming and recording the outcome.
        """
        now = self.clock()
        requeued = self.db.query(CampaignRecipient).filter(
            CampaignRecipient.campaign_id == campaign.campaign_id,
            CampaignRecipient.status == RecipientStatus.IN_FLIGHT.value,
            CampaignRecipient.claimed_at < now - older_than
        ).update(
            {"status": RecipientStatus.PENDING.value, "claimed_at": None, "updated_at": now},
            synchronize_session=False
        )
        self.db.commit()

        if requeued:
            log.warning(f"♻️ Campaign {campaign.campaign_id}: re-queued {requeued} stale claims")
        return requeued

    def record_status(self, message_id: str, status: str, at: Optional[datetime] = None) -> bool:
        """
        Advance a recipient along sent → delivered → read from a delivery
        callback. Older or repeated callbacks are ignored.
        """
        target_rank = _DELIVERY_RANK.get(status)
        if not message_id or target_rank is None or target_rank == 1:
            return False

        recipient = self.db.query(CampaignRecipient).filter(
            CampaignRecipient.message_id == message_id
        ).first()
        if not recipient or _DELIVERY_RANK.get(recipient.status, 0) >= target_rank:
            return False

        current = recipient.status
        at = at or self.clock()
        values: Dict[str, Any] = {"status": status, "updated_at": at}
        counters = []

        # Read implies delivered
        if current == RecipientStatus.SENT.value:
            values["delivered_at"] = at
            counters.append(Campaign.delivered_count)
        if status == RecipientStatus.READ.value:
            values["read_at"] = at
            counters.append(Campaign.read_count)

        updated = self.db.query(CampaignRecipient).filter(
            CampaignRecipient.id == recipient.id,
            CampaignRecipient.status == current
        ).update(values, synchronize_session=False)

        if updated == 1:
            campaign = self.db.query(Campaign).filter(
                Campaign.campaign_id == recipient.campaign_id
            ).first()
            if campaign:
                for counter in counters:
                    self._increment(campaign, counter, at)
        self.db.commit()
        return updated == 1

    # ────────────────────────────────────────────
    # Orchestrator queries
    # ────────────────────────────────────────────

    def due_scheduled(self, limit: int) -> List[Campaign]:
        return (
            self.db.query(Campaign)
            .filter(
                Campaign.status == S.SCHEDULED.value,
                Campaign.scheduled_at <= self.clock()
            )
            .order_by(Campaign.scheduled_at, Campaign.id)
            .limit(limit)
            .all()
        )

    def active(self, limit: int) -> List[Campaign]:
        """Sending campaigns, least recently progressed first"""
        return (
            self.db.query(Campaign)
            .filter(Campaign.status == S.SENDING.value)
            .order_by(Campaign.updated_at, Campaign.id)
            .limit(limit)
            .all()
        )

    def cleanup(self, recipient_retention_days: int, event_retention_days: int) -> Dict[str, int]:
        """Drop recipients of long-finished campaigns and old events"""
        now = self.clock()
        finished = select(Campaign.campaign_id).where(
            Campaign.status == S.COMPLETED.value,
            Campaign.completed_at < now - timedelta(days=recipient_retention_days)
        )
        recipients = self.db.query(CampaignRecipient).filter(
            CampaignRecipient.campaign_id.in_(finished)
        ).delete(synchronize_session=False)

        events = self.db.query(Event).filter(
            Event.created_at < now - timedelta(days=event_retention_days)
        ).delete(synchronize_session=False)

        self.db.commit()
        return {"recipients": recipients, "events": events}

    # ────────────────────────────────────────────
    # Internals
    # ────────────────────────────────────────────

    def _increment(self, campaign: Campaign, counter, now: datetime):
        """SQL-side increment so concurrent writers never lose an update"""
        self.db.query(Campaign).filter(Campaign.id == campaign.id).update(
            {counter: counter + 1, Campaign.updated_at: now},
            synchronize_session=False
        )
