# app/services/__init__.py
"""
Service layer initialization.

Builds the campaign engine components once from configuration. Components get
their collaborators and policies through their constructors; nothing below
reads app.core.config directly.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from app.core import config
from app.services.dispatcher import DispatchPolicy, RateLimitedDispatcher
from app.services.gateway import WhatsAppGateway
from app.services.orchestrator import OrchestratorPolicy, ScheduleOrchestrator
from app.services.reminders import LifecycleReminderEngine, ReminderPolicy

log = logging.getLogger("storecast.services")


def build_whatsapp_client():
    """Outbound-only PyWa client, or None when credentials are missing"""
    if not (config.PHONE_ID and config.TOKEN):
        log.warning("⚠️ WhatsApp credentials missing - outbound sends will fail")
        return None

    from pywa import WhatsApp

    log.info("✅ WhatsApp client initialized")
    return WhatsApp(phone_id=config.PHONE_ID, token=config.TOKEN, server=None)


def dispatch_policy() -> DispatchPolicy:
    return DispatchPolicy(
        default_rate=config.CAMPAIGN_DEFAULT_SEND_RATE,
        max_batch=config.CAMPAIGN_MAX_BATCH,
        batch_window_seconds=config.CAMPAIGN_BATCH_WINDOW_SECONDS,
    )


def orchestrator_policy() -> OrchestratorPolicy:
    return OrchestratorPolicy(
        scheduled_per_tick=config.SCHEDULED_CAMPAIGNS_PER_TICK,
        active_per_tick=config.ACTIVE_CAMPAIGNS_PER_TICK,
        tick_budget_seconds=config.TICK_BUDGET_SECONDS,
        recipient_retention_days=config.RECIPIENT_RETENTION_DAYS,
        event_retention_days=config.EVENT_RETENTION_DAYS,
    )


def reminder_policy() -> ReminderPolicy:
    return ReminderPolicy(
        send_delay_ms=config.REMINDER_SEND_DELAY_MS,
        cart_min_value=config.CART_MIN_VALUE,
        cart_max_reminders=config.CART_MAX_REMINDERS,
        cart_delays_minutes=list(config.CART_REMINDER_DELAYS_MINUTES),
    )


@dataclass
class CampaignEngine:
    """The wired-up components, stored on app.state by the application"""
    gateway: WhatsAppGateway
    dispatcher: RateLimitedDispatcher
    reminders: LifecycleReminderEngine
    orchestrator: ScheduleOrchestrator


def build_engine(
    session_factory: Callable[[], Session],
    client_factory: Optional[Callable] = None
) -> CampaignEngine:
    gateway = WhatsAppGateway(
        client_factory or build_whatsapp_client,
        client_ttl_seconds=config.GATEWAY_CLIENT_TTL_SECONDS,
        template_language=config.TEMPLATE_LANGUAGE,
    )
    dispatcher = RateLimitedDispatcher(gateway, dispatch_policy())
    reminders = LifecycleReminderEngine(gateway, reminder_policy())
    orchestrator = ScheduleOrchestrator(
        session_factory,
        dispatcher,
        reminders=reminders,
        policy=orchestrator_policy(),
    )
    return CampaignEngine(
        gateway=gateway,
        dispatcher=dispatcher,
        reminders=reminders,
        orchestrator=orchestrator,
    )


__all__ = [
    'CampaignEngine',
    'build_engine',
    'build_whatsapp_client',
    'dispatch_policy',
    'orchestrator_policy',
    'reminder_policy',
]
