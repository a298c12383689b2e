# app/services/scheduler.py
"""
In-process periodic trigger for the orchestrator.

Disable with SCHEDULER_ENABLED=false when ticks come from an external cron
(scripts/run_tick.py) instead.
"""
import asyncio
import logging

from app.core.config import SCHEDULER_ENABLED, SCHEDULER_INTERVAL_SECONDS

log = logging.getLogger("storecast.scheduler")


async def campaign_tick_loop(orchestrator, stop_event: asyncio.Event, interval_seconds: float) -> None:
    while not stop_event.is_set():
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            try:
                await orchestrator.tick()
            except Exception as exc:
                log.error("Campaign tick failed: %s", exc, exc_info=True)


async def start_campaign_scheduler(app) -> None:
    if not SCHEDULER_ENABLED:
        log.info("Campaign scheduler disabled by env.")
        return

    orchestrator = app.state.orchestrator
    stop_event = asyncio.Event()
    task = asyncio.create_task(campaign_tick_loop(orchestrator, stop_event, SCHEDULER_INTERVAL_SECONDS))

    app.state.campaign_scheduler_stop_event = stop_event
    app.state.campaign_scheduler_task = task

    log.info("Campaign scheduler started (interval=%ss).", SCHEDULER_INTERVAL_SECONDS)


async def stop_campaign_scheduler(app) -> None:
    stop_event = getattr(app.state, "campaign_scheduler_stop_event", None)
    task = getattr(app.state, "campaign_scheduler_task", None)
    if stop_event:
        stop_event.set()
    if task:
        await task
