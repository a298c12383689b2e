# app/schemas/campaign.py
from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import List, Optional, Dict, Any
from datetime import datetime, timezone

from app.models.campaign import Campaign, MessageType, TargetType


class CamelModel(BaseModel):
    """Accepts and emits camelCase keys (what the dashboard sends), snake_case also accepted"""

    class Config:
        alias_generator = to_camel
        populate_by_name = True


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are stored as naive UTC"""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# ────────────────────────────────────────────
# Requests
# ────────────────────────────────────────────

class ButtonSpec(CamelModel):
    id: str = Field(..., min_length=1, max_length=256)
    title: str = Field(..., min_length=1, max_length=20)


class TargetFilters(CamelModel):
    tier: Optional[str] = None
    min_orders: Optional[int] = Field(None, ge=0)
    max_orders: Optional[int] = Field(None, ge=0)
    min_spent: Optional[float] = Field(None, ge=0)
    last_active_days: Optional[int] = Field(None, ge=1)


class AudienceTargetIn(CamelModel):
    target_type: TargetType = TargetType.ALL
    target_labels: List[str] = Field(default_factory=list)
    target_segment: Optional[str] = None
    target_filters: TargetFilters = Field(default_factory=TargetFilters)


class CampaignCreate(AudienceTargetIn):
    # name/message presence is checked by the store so create and update share one rule
    name: Optional[str] = Field(None, max_length=255)
    message_type: MessageType = MessageType.TEXT
    message: Optional[str] = Field(None, max_length=4096)
    template_name: Optional[str] = Field(None, max_length=255)
    template_params: List[str] = Field(default_factory=list)
    media_url: Optional[str] = Field(None, max_length=1000)
    buttons: List[ButtonSpec] = Field(default_factory=list, max_length=3)
    scheduled_at: Optional[datetime] = None
    send_rate: Optional[int] = Field(None, description="Messages per minute (defaults to 30)")

    @field_validator('scheduled_at')
    @classmethod
    def normalize_scheduled_at(cls, v):
        return _naive_utc(v)


class CampaignUpdate(CamelModel):
    """Partial update - only fields present in the request body are applied"""
    name: Optional[str] = Field(None, max_length=255)
    message_type: Optional[MessageType] = None
    message: Optional[str] = Field(None, max_length=4096)
    template_name: Optional[str] = Field(None, max_length=255)
    template_params: Optional[List[str]] = None
    media_url: Optional[str] = Field(None, max_length=1000)
    buttons: Optional[List[ButtonSpec]] = Field(None, max_length=3)
    target_type: Optional[TargetType] = None
    target_labels: Optional[List[str]] = None
    target_segment: Optional[str] = None
    target_filters: Optional[TargetFilters] = None
    scheduled_at: Optional[datetime] = None
    send_rate: Optional[int] = None

    @field_validator('scheduled_at')
    @classmethod
    def normalize_scheduled_at(cls, v):
        return _naive_utc(v)


class PreviewRequest(AudienceTargetIn):
    pass


# ────────────────────────────────────────────
# Responses
# ────────────────────────────────────────────

class CampaignOut(CamelModel):
    id: str
    name: str
    message_type: str
    message: Optional[str] = None
    template_name: Optional[str] = None
    template_params: List[Any] = Field(default_factory=list)
    media_url: Optional[str] = None
    buttons: List[Dict[str, Any]] = Field(default_factory=list)
    target_type: str
    target_labels: List[str] = Field(default_factory=list)
    target_segment: Optional[str] = None
    target_filters: Dict[str, Any] = Field(default_factory=dict)
    target_count: int = 0
    sent_count: int = 0
    delivered_count: int = 0
    read_count: int = 0
    failed_count: int = 0
    status: str
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    send_rate: Optional[int] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, campaign: Campaign) -> "CampaignOut":
        return cls(
            id=campaign.campaign_id,
            name=campaign.name,
            message_type=campaign.message_type,
            message=campaign.message,
            template_name=campaign.template_name,
            template_params=campaign.template_params or [],
            media_url=campaign.media_url,
            buttons=campaign.buttons or [],
            target_type=campaign.target_type,
            target_labels=campaign.target_labels or [],
            target_segment=campaign.target_segment,
            target_filters=campaign.target_filters or {},
            target_count=campaign.target_count or 0,
            sent_count=campaign.sent_count or 0,
            delivered_count=campaign.delivered_count or 0,
            read_count=campaign.read_count or 0,
            failed_count=campaign.failed_count or 0,
            status=campaign.status,
            scheduled_at=campaign.scheduled_at,
            started_at=campaign.started_at,
            completed_at=campaign.completed_at,
            send_rate=campaign.send_rate,
            created_by=campaign.created_by,
            created_at=campaign.created_at,
        )


class CampaignListResponse(CamelModel):
    campaigns: List[CampaignOut]
    total: int
    limit: int
    offset: int


class RecipientStats(CamelModel):
    sent: int = 0
    delivered: int = 0
    read: int = 0
    failed: int = 0
    pending: int = 0
    in_flight: int = 0


class CampaignDetailResponse(CamelModel):
    campaign: CampaignOut
    stats: RecipientStats


class CampaignCreatedResponse(CamelModel):
    success: bool = True
    campaign_id: str
    target_count: int


class RecipientOut(CamelModel):
    id: int
    phone: str
    customer_name: Optional[str] = None
    status: str
    message_id: Optional[str] = None
    error_message: Optional[str] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None


class RecipientListResponse(CamelModel):
    recipients: List[RecipientOut]
    total: int


class PreviewResponse(CamelModel):
    count: int


class CampaignActionResponse(CamelModel):
    success: bool = True
    status: str
    message: Optional[str] = None
    recipient_count: Optional[int] = None
