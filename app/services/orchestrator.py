# app/services/orchestrator.py
"""
Periodic entry point. One tick:

1. lifecycle reminders (cart, payment, delivery, review, reorder)
2. promote due scheduled campaigns (enroll + start, or fail on empty audience)
3. drain a bounded slice of every sending campaign
4. retention cleanup
5. append a system/cron_execution event

Every campaign and every step is isolated: an exception is logged, the session
rolled back, and the tick moves on. State is only advanced by successful
writes, so the next tick retries naturally.
"""
from __future__ import annotations
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.exceptions import EmptyAudienceError
from app.services.audience import AudienceResolver, AudienceTarget
from app.services.campaign_store import CampaignStore
from app.services.dispatcher import DispatchResult, RateLimitedDispatcher
from app.services.event_log import record_event
from app.services.reminders import LifecycleReminderEngine

log = logging.getLogger("storecast.orchestrator")


@dataclass
class OrchestratorPolicy:
    scheduled_per_tick: int = 5
    active_per_tick: int = 3
    tick_budget_seconds: float = 270
    recipient_retention_days: int = 60
    event_retention_days: int = 90


@dataclass
class TickResult:
    started_at: datetime
    reminders: Dict[str, Dict[str, int]] = field(default_factory=dict)
    promoted: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    dispatched: List[DispatchResult] = field(default_factory=list)
    cleanup: Dict[str, int] = field(default_factory=dict)
    errors: int = 0
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "reminders": self.reminders,
            "promoted": self.promoted,
            "failed": self.failed,
            "dispatched": [d.to_dict() for d in self.dispatched],
            "cleanup": self.cleanup,
            "errors": self.errors,
            "duration_ms": self.duration_ms,
        }


class ScheduleOrchestrator:
    """Scheduler-agnostic tick; call it from a loop, cron, or a queue consumer"""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        dispatcher: RateLimitedDispatcher,
        reminders: Optional[LifecycleReminderEngine] = None,
        policy: Optional[OrchestratorPolicy] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        monotonic: Callable[[], float] = time.monotonic
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.reminders = reminders
        self.policy = policy or OrchestratorPolicy()
        self.clock = clock
        self.monotonic = monotonic

    async def tick(self) -> TickResult:
        started = self.monotonic()
        deadline = started + self.policy.tick_budget_seconds
        result = TickResult(started_at=self.clock())

        log.info("⏰ Tick started")

        with self.session_factory() as db:
            if self.reminders is not None:
                try:
                    outcome = await self.reminders.run(db)
                    result.reminders = {name: r.to_dict() for name, r in outcome.items()}
                except Exception:
                    log.exception("❌ Lifecycle reminders failed")
                    db.rollback()
                    result.errors += 1

            self.promote_scheduled(db, result)
            await self.continue_active(db, result, deadline)

            try:
                result.cleanup = CampaignStore(db, self.clock).cleanup(
                    self.policy.recipient_retention_days,
                    self.policy.event_retention_days
                )
            except Exception:
                log.exception("❌ Cleanup failed")
                db.rollback()
                result.errors += 1

            result.duration_ms = int((self.monotonic() - started) * 1000)

            try:
                record_event(db, "system", "cron_execution", self.clock(), data=result.to_dict())
            except Exception:
                log.exception("❌ Could not record tick")
                db.rollback()

        log.info(
            f"✅ Tick finished in {result.duration_ms}ms: {len(result.promoted)} promoted, "
            f"{len(result.failed)} failed, {len(result.dispatched)} drained, {result.errors} errors"
        )
        return result

    def promote_scheduled(self, db: Session, result: Optional[TickResult] = None) -> TickResult:
        """Enroll and start scheduled campaigns whose time has come"""
        result = result or TickResult(started_at=self.clock())
        store = CampaignStore(db, self.clock)
        resolver = AudienceResolver(db, self.clock)

        for campaign in store.due_scheduled(self.policy.scheduled_per_tick):
            campaign_id = campaign.campaign_id
            try:
                phones = resolver.phones(campaign.tenant_id, AudienceTarget.from_campaign(campaign))
                store.start(campaign, phones)
                result.promoted.append(campaign_id)
                log.info(f"🚀 Scheduled campaign {campaign_id} started ({campaign.target_count} recipients)")
            except EmptyAudienceError:
                result.failed.append(campaign_id)
                log.warning(f"⚠️ Scheduled campaign {campaign_id} has no recipients - marked failed")
            except Exception:
                log.exception(f"❌ Could not start scheduled campaign {campaign_id}")
                db.rollback()
                result.errors += 1
        return result

    async def continue_active(
        self,
        db: Session,
        result: Optional[TickResult] = None,
        deadline: Optional[float] = None
    ) -> TickResult:
        """Drain one batch of each sending campaign"""
        result = result or TickResult(started_at=self.clock())
        store = CampaignStore(db, self.clock)

        for campaign in store.active(self.policy.active_per_tick):
            if deadline is not None and self.monotonic() >= deadline:
                log.info("⏱️ Tick budget exhausted - remaining campaigns wait for the next tick")
                break
            campaign_id = campaign.campaign_id
            try:
                result.dispatched.append(await self.dispatcher.drain(store, campaign, deadline=deadline))
            except Exception:
                log.exception(f"❌ Dispatch failed for campaign {campaign_id}")
                db.rollback()
                result.errors += 1
        return result
