# app/api/v1/campaigns.py
import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, BackgroundTasks, HTTPException, Query
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.api.deps import (
    get_current_user_flexible, get_tenant_id_flexible, get_dispatcher, get_session_factory
)
from app.core.config import STALE_CLAIM_MINUTES
from app.core.exceptions import (
    CampaignError, CampaignNotFound, CampaignValidationError, EmptyAudienceError, InvalidTransition
)
from app.models.campaign import Campaign, CampaignStatus, RecipientStatus
from app.schemas.campaign import (
    AudienceTargetIn, CampaignCreate, CampaignUpdate, PreviewRequest,
    CampaignOut, CampaignListResponse, CampaignDetailResponse, CampaignCreatedResponse,
    CampaignActionResponse, RecipientStats, RecipientOut, RecipientListResponse, PreviewResponse
)
from app.services.audience import AudienceResolver, AudienceTarget
from app.services.campaign_store import TARGET_FIELDS, CampaignStore

log = logging.getLogger("storecast.campaigns")

router = APIRouter()

_STATUS_CODES = {
    CampaignNotFound: 404,
    InvalidTransition: 409,
    EmptyAudienceError: 400,
    CampaignValidationError: 400,
}


def _http_error(exc: CampaignError) -> HTTPException:
    for exc_type, status_code in _STATUS_CODES.items():
        if isinstance(exc, exc_type):
            return HTTPException(status_code=status_code, detail=exc.message)
    return HTTPException(status_code=400, detail=exc.message)


def _target_from_request(data: AudienceTargetIn) -> AudienceTarget:
    filters = data.target_filters
    return AudienceTarget(
        kind=data.target_type,
        labels=list(data.target_labels),
        segment=data.target_segment,
        tier=filters.tier,
        min_orders=filters.min_orders,
        max_orders=filters.max_orders,
        min_spent=filters.min_spent,
        last_active_days=filters.last_active_days,
    )


async def drain_in_background(dispatcher, session_factory, campaign_pk: int):
    """
    One dispatch batch right after send/resume. Later batches come from the
    scheduler tick; claims keep the two from sending to the same recipient.
    """
    with session_factory() as db:
        campaign = db.get(Campaign, campaign_pk)
        if not campaign or campaign.status != CampaignStatus.SENDING.value:
            return
        public_id = campaign.campaign_id
        try:
            await dispatcher.drain(CampaignStore(db), campaign)
        except Exception:
            log.exception(f"❌ Background dispatch failed for campaign {public_id}")
            db.rollback()


# ────────────────────────────────────────────
# Collection
# ────────────────────────────────────────────

@router.get("", response_model=CampaignListResponse)
async def list_campaigns(
    status: Optional[CampaignStatus] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id_flexible)
):
    """List campaigns, newest first"""
    campaigns, total = CampaignStore(db).list(
        tenant_id,
        status=status.value if status else None,
        limit=limit,
        offset=offset
    )
    return CampaignListResponse(
        campaigns=[CampaignOut.from_model(c) for c in campaigns],
        total=total,
        limit=limit,
        offset=offset
    )


@router.post("", response_model=CampaignCreatedResponse, status_code=201)
async def create_campaign(
    data: CampaignCreate,
    db: Session = Depends(get_db),
    user: Dict[str, Any] = Depends(get_current_user_flexible),
    tenant_id: str = Depends(get_tenant_id_flexible)
):
    """
    Create a campaign.

    Starts in `draft`, or `scheduled` when `scheduledAt` is given (the
    scheduler starts it once due). The returned `targetCount` is a preview;
    the real audience is fixed when the campaign is sent.
    """
    preview_count = AudienceResolver(db).count(tenant_id, _target_from_request(data))
    try:
        campaign = CampaignStore(db).create(
            tenant_id,
            data,
            created_by=user.get("user_id"),
            preview_count=preview_count
        )
    except CampaignError as e:
        raise _http_error(e)

    return CampaignCreatedResponse(campaign_id=campaign.campaign_id, target_count=preview_count)


@router.post("/preview", response_model=PreviewResponse)
async def preview_audience(
    data: PreviewRequest,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id_flexible)
):
    """Count the audience a target would reach, without enrolling anyone"""
    return PreviewResponse(count=AudienceResolver(db).count(tenant_id, _target_from_request(data)))


# ────────────────────────────────────────────
# Single campaign
# ────────────────────────────────────────────

@router.get("/{campaign_id}", response_model=CampaignDetailResponse)
async def get_campaign(
    campaign_id: str,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id_flexible)
):
    """Campaign with live per-status recipient counts"""
    store = CampaignStore(db)
    try:
        campaign = store.get(tenant_id, campaign_id)
    except CampaignError as e:
        raise _http_error(e)

    counts = store.recipient_counts(campaign)
    stats = RecipientStats(
        sent=counts[RecipientStatus.SENT.value],
        delivered=counts[RecipientStatus.DELIVERED.value],
        read=counts[RecipientStatus.READ.value],
        failed=counts[RecipientStatus.FAILED.value],
        pending=counts[RecipientStatus.PENDING.value],
        in_flight=counts[RecipientStatus.IN_FLIGHT.value],
    )
    return CampaignDetailResponse(campaign=CampaignOut.from_model(campaign), stats=stats)


@router.put("/{campaign_id}", response_model=CampaignOut)
async def update_campaign(
    campaign_id: str,
    data: CampaignUpdate,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id_flexible)
):
    """Edit a campaign; only allowed while `draft` or `scheduled`. Target edits refresh the `targetCount` preview."""
    store = CampaignStore(db)
    try:
        campaign = store.update(store.get(tenant_id, campaign_id), data)
    except CampaignError as e:
        raise _http_error(e)

    if data.model_fields_set & TARGET_FIELDS:
        count = AudienceResolver(db).count(tenant_id, AudienceTarget.from_campaign(campaign))
        campaign = store.set_preview_count(campaign, count)
    return CampaignOut.from_model(campaign)


@router.delete("/{campaign_id}", response_model=CampaignActionResponse)
async def delete_campaign(
    campaign_id: str,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id_flexible)
):
    """Delete a campaign together with its recipients"""
    store = CampaignStore(db)
    try:
        removed = store.delete(store.get(tenant_id, campaign_id))
    except CampaignError as e:
        raise _http_error(e)
    return CampaignActionResponse(status="deleted", recipient_count=removed)


# ────────────────────────────────────────────
# State transitions
# ────────────────────────────────────────────

@router.post("/{campaign_id}/send", response_model=CampaignActionResponse)
async def send_campaign(
    campaign_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id_flexible),
    dispatcher=Depends(get_dispatcher),
    session_factory=Depends(get_session_factory)
):
    """
    Start sending.

    Allowed from `draft`, `scheduled` or `paused`. The first start resolves
    the audience and enrolls it; an empty audience fails the campaign.
    The first batch is dispatched in the background.
    """
    store = CampaignStore(db)
    try:
        campaign = store.get(tenant_id, campaign_id)
        phones = []
        if campaign.enrolled_at is None:
            phones = AudienceResolver(db).phones(tenant_id, AudienceTarget.from_campaign(campaign))
        campaign = store.start(campaign, phones)
    except CampaignError as e:
        raise _http_error(e)

    background_tasks.add_task(drain_in_background, dispatcher, session_factory, campaign.id)

    return CampaignActionResponse(
        status=campaign.status,
        message=f"Broadcasting to {campaign.target_count} recipients",
        recipient_count=campaign.target_count
    )


@router.post("/{campaign_id}/pause", response_model=CampaignActionResponse)
async def pause_campaign(
    campaign_id: str,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id_flexible)
):
    """Pause a sending campaign; the running batch stops before its next recipient"""
    store = CampaignStore(db)
    try:
        campaign = store.pause(store.get(tenant_id, campaign_id))
    except CampaignError as e:
        raise _http_error(e)
    return CampaignActionResponse(status=campaign.status)


@router.post("/{campaign_id}/resume", response_model=CampaignActionResponse)
async def resume_campaign(
    campaign_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id_flexible),
    dispatcher=Depends(get_dispatcher),
    session_factory=Depends(get_session_factory)
):
    """Resume a paused campaign and dispatch the next batch in the background"""
    store = CampaignStore(db)
    try:
        campaign = store.resume(store.get(tenant_id, campaign_id))
    except CampaignError as e:
        raise _http_error(e)

    background_tasks.add_task(drain_in_background, dispatcher, session_factory, campaign.id)
    return CampaignActionResponse(status=campaign.status)


@router.post("/{campaign_id}/requeue", response_model=CampaignActionResponse)
async def requeue_stale_recipients(
    campaign_id: str,
    older_than_minutes: int = Query(STALE_CLAIM_MINUTES, ge=1),
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id_flexible)
):
    """
    Operator re-queue: recipients stuck `in_flight` longer than
    `older_than_minutes` go back to `pending` for the next batch.
    """
    store = CampaignStore(db)
    try:
        campaign = store.get(tenant_id, campaign_id)
    except CampaignError as e:
        raise _http_error(e)

    requeued = store.requeue_stale(campaign, timedelta(minutes=older_than_minutes))
    return CampaignActionResponse(
        status=campaign.status,
        message=f"Re-queued {requeued} recipients",
        recipient_count=requeued
    )


# ────────────────────────────────────────────
# Recipients
# ────────────────────────────────────────────

@router.get("/{campaign_id}/recipients", response_model=RecipientListResponse)
async def list_recipients(
    campaign_id: str,
    status: Optional[RecipientStatus] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id_flexible)
):
    """Recipient rows with the customer's display name"""
    store = CampaignStore(db)
    try:
        campaign = store.get(tenant_id, campaign_id)
    except CampaignError as e:
        raise _http_error(e)

    rows, total = store.list_recipients(
        campaign,
        status=status.value if status else None,
        limit=limit,
        offset=offset
    )
    recipients = [
        RecipientOut(
            id=recipient.id,
            phone=recipient.phone,
            customer_name=name,
            status=recipient.status,
            message_id=recipient.message_id,
            error_message=recipient.error_message,
            sent_at=recipient.sent_at,
            delivered_at=recipient.delivered_at,
            read_at=recipient.read_at,
            failed_at=recipient.failed_at,
        )
        for recipient, name in rows
    ]
    return RecipientListResponse(recipients=recipients, total=total)
