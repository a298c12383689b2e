# app/models/campaign.py
"""
Broadcast campaign models.

A Campaign holds one message specification and one audience specification.
CampaignRecipient rows are created at enrollment and drained tick by tick.
"""
import enum
from sqlalchemy import (
    Column, String, Text, Integer, JSON, DateTime, ForeignKey, UniqueConstraint, Index
)
from app.models.base import BaseModel


class CampaignStatus(str, enum.Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class MessageType(str, enum.Enum):
    TEXT = "text"
    TEMPLATE = "template"
    IMAGE = "image"
    BUTTONS = "buttons"


class TargetType(str, enum.Enum):
    ALL = "all"
    LABELS = "labels"
    SEGMENT = "segment"
    TIER = "tier"
    CUSTOM = "custom"


class RecipientStatus(str, enum.Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"  # claimed by a dispatcher, result not yet written
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


# Statuses that still count as outstanding work for a campaign
OUTSTANDING_STATUSES = (RecipientStatus.PENDING.value, RecipientStatus.IN_FLIGHT.value)


class Campaign(BaseModel):
    __tablename__ = "campaigns"

    campaign_id = Column(String(40), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=False)

    # Message
    message_type = Column(String(20), nullable=False, default=MessageType.TEXT.value)
    message = Column(Text, nullable=True)
    template_name = Column(String(255), nullable=True)
    template_params = Column(JSON, nullable=False, default=list)
    media_url = Column(String(1000), nullable=True)
    buttons = Column(JSON, nullable=False, default=list)  # [{"id": ..., "title": ...}]

    # Targeting
    target_type = Column(String(20), nullable=False, default=TargetType.ALL.value)
    target_labels = Column(JSON, nullable=False, default=list)
    target_segment = Column(String(100), nullable=True)
    target_filters = Column(JSON, nullable=False, default=dict)

    # Counters
    target_count = Column(Integer, nullable=False, default=0)
    sent_count = Column(Integer, nullable=False, default=0)
    delivered_count = Column(Integer, nullable=False, default=0)
    read_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)

    status = Column(String(20), index=True, nullable=False, default=CampaignStatus.DRAFT.value)
    send_rate = Column(Integer, nullable=True, default=30)  # messages per minute

    scheduled_at = Column(DateTime, nullable=True, index=True)
    enrolled_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    created_by = Column(String(100), nullable=True)

    def __repr__(self):
        return f"<Campaign {self.campaign_id} {self.status}>"


class CampaignRecipient(BaseModel):
    __tablename__ = "campaign_recipients"
    __table_args__ = (
        UniqueConstraint('campaign_id', 'phone', name='uq_campaign_recipient_phone'),
        Index('ix_campaign_recipients_campaign_status', 'campaign_id', 'status'),
    )

    campaign_id = Column(
        String(40),
        ForeignKey("campaigns.campaign_id", ondelete="CASCADE"),
        nullable=False
    )
    phone = Column(String(50), nullable=False)

    status = Column(String(20), nullable=False, default=RecipientStatus.PENDING.value)
    message_id = Column(String(255), index=True, nullable=True)
    error_message = Column(String(500), nullable=True)

    claimed_at = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    read_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<CampaignRecipient {self.campaign_id}:{self.phone} {self.status}>"
