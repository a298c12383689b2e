# app/services/dispatcher.py
"""
Rate-limited campaign dispatch.

One drain() call sends a bounded slice of a campaign's pending recipients,
one at a time, sleeping ceil(60000 / rate) ms between sends. Each recipient is
claimed (pending → in_flight) before the gateway is called; a lost claim means
another dispatcher owns that recipient and it is skipped.
"""
from __future__ import annotations
import asyncio
import math
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from app.core.logging_config import get_dispatch_logger
from app.models.campaign import Campaign, CampaignStatus, MessageType
from app.services.campaign_store import CampaignStore
from app.services.gateway import SendResult, WhatsAppGateway

log = get_dispatch_logger()

STOP_PAUSED = "paused"
STOP_DEADLINE = "deadline"


@dataclass
class DispatchPolicy:
    default_rate: int = 30            # messages per minute when the campaign has none
    max_batch: int = 50               # hard cap per drain() call
    batch_window_seconds: int = 300   # how much sending one batch should cover
    send_allowance_seconds: float = 2.0  # budget reserved for one gateway call

    def rate_for(self, send_rate: Optional[int]) -> int:
        if send_rate and send_rate > 0:
            return send_rate
        return self.default_rate

    def batch_size_for(self, send_rate: Optional[int]) -> int:
        rate = self.rate_for(send_rate)
        return max(1, min(self.max_batch, math.ceil(rate * self.batch_window_seconds / 60)))

    def delay_ms_for(self, send_rate: Optional[int]) -> int:
        return math.ceil(60000 / self.rate_for(send_rate))


@dataclass
class OutboundMessage:
    """Snapshot of what a campaign sends, taken once per batch"""
    kind: str
    message: Optional[str] = None
    template_name: Optional[str] = None
    template_params: List[Any] = field(default_factory=list)
    media_url: Optional[str] = None
    buttons: List[Dict[str, str]] = field(default_factory=list)

    @classmethod
    def from_campaign(cls, campaign: Campaign) -> "OutboundMessage":
        return cls(
            kind=campaign.message_type or MessageType.TEXT.value,
            message=campaign.message,
            template_name=campaign.template_name,
            template_params=list(campaign.template_params or []),
            media_url=campaign.media_url,
            buttons=list(campaign.buttons or []),
        )


@dataclass
class DispatchResult:
    campaign_id: str
    sent: int = 0
    failed: int = 0
    skipped: int = 0                    # claims lost to another dispatcher
    stopped: Optional[str] = None       # "paused" / "deadline" when the batch ended early
    remaining: int = 0
    completed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "campaign_id": self.campaign_id,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
            "stopped": self.stopped,
            "remaining": self.remaining,
            "completed": self.completed,
        }


class RateLimitedDispatcher:
    """Drains pending recipients through the gateway at the campaign's send rate"""

    def __init__(
        self,
        gateway: WhatsAppGateway,
        policy: Optional[DispatchPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic
    ):
        self.gateway = gateway
        self.policy = policy or DispatchPolicy()
        self.sleep = sleep
        self.monotonic = monotonic

    async def drain(
        self,
        store: CampaignStore,
        campaign: Campaign,
        max_batch: Optional[int] = None,
        deadline: Optional[float] = None
    ) -> DispatchResult:
        """
        Send to up to ``max_batch`` pending recipients of a sending campaign.

        Args:
            store: CampaignStore bound to the caller's session
            campaign: Campaign to drain
            max_batch: Batch cap (defaults to the rate-derived batch size)
            deadline: Monotonic time after which no new recipient is claimed

        Returns:
            DispatchResult with per-batch counts and whether the campaign completed
        """
        result = DispatchResult(campaign_id=campaign.campaign_id)

        delay_ms = self.policy.delay_ms_for(campaign.send_rate)
        limit = max_batch or self.policy.batch_size_for(campaign.send_rate)
        outbound = OutboundMessage.from_campaign(campaign)

        batch = [(r.id, r.phone) for r in store.pending_batch(campaign, limit)]
        log.info(
            f"📤 Campaign {campaign.campaign_id}: draining {len(batch)} recipients "
            f"(rate {self.policy.rate_for(campaign.send_rate)}/min, delay {delay_ms}ms)"
        )

        for index, (recipient_id, phone) in enumerate(batch):
            wait = delay_ms / 1000 if index else 0

            if deadline is not None and self.monotonic() + wait + self.policy.send_allowance_seconds > deadline:
                result.stopped = STOP_DEADLINE
                log.info(f"⏱️ Campaign {campaign.campaign_id}: tick budget reached after {index} recipients")
                break

            if wait:
                await self.sleep(wait)

            # Pause requested mid-batch is honored here
            if store.current_status(campaign) != CampaignStatus.SENDING.value:
                result.stopped = STOP_PAUSED
                log.info(f"⏸️ Campaign {campaign.campaign_id} no longer sending - batch stopped")
                break

            if not store.claim_recipient(recipient_id):
                result.skipped += 1
                log.debug(f"Recipient {recipient_id} already claimed elsewhere - skipped")
                continue

            outcome = self._send(outbound, phone)

            if outcome.success:
                store.mark_sent(campaign, recipient_id, outcome.message_id)
                result.sent += 1
                log.debug(f"✅ {campaign.campaign_id} → {phone}: {outcome.message_id}")
            else:
                store.mark_failed_recipient(campaign, recipient_id, outcome.error)
                result.failed += 1
                log.warning(f"❌ {campaign.campaign_id} → {phone}: {outcome.error}")

        result.remaining = store.pending_count(campaign)
        result.completed = store.complete_if_drained(campaign)

        log.info(
            f"📊 Campaign {campaign.campaign_id}: {result.sent} sent, {result.failed} failed, "
            f"{result.skipped} skipped, {result.remaining} remaining"
        )
        return result

    def _send(self, outbound: OutboundMessage, phone: str) -> SendResult:
        """Pick the send primitive for the message kind; exceptions count as failures"""
        try:
            if outbound.kind == MessageType.TEMPLATE.value:
                return self.gateway.send_template(phone, outbound.template_name, outbound.template_params)
            if outbound.kind == MessageType.IMAGE.value and outbound.media_url:
                return self.gateway.send_image(phone, outbound.media_url, outbound.message)
            if outbound.kind == MessageType.BUTTONS.value and outbound.buttons:
                return self.gateway.send_buttons(phone, outbound.message, outbound.buttons)
            return self.gateway.send_text(phone, outbound.message)
        except Exception as e:
            return SendResult(success=False, error=str(e) or type(e).__name__)
