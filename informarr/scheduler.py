"""Scheduler pour les cycles de réconciliation."""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from datetime import datetime
from typing import Optional
import logging

from informarr.config import SchedulerConfig
from informarr.core.orchestrator import Orchestrator

logger = logging.getLogger(__name__)

scheduler: Optional[AsyncIOScheduler] = None
_orchestrator: Optional[Orchestrator] = None


def start_scheduler(orchestrator: Orchestrator, config: SchedulerConfig) -> None:
    """Démarre le scheduler si configuré."""
    global scheduler, _orchestrator
    _orchestrator = orchestrator

    if not config.enabled:
        logger.info("Scheduler is disabled")
        return

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        run_scheduled_cycle,
        trigger=IntervalTrigger(seconds=config.poll_interval_seconds),
        id="reconcile",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        next_run_time=datetime.now(),
    )
    scheduler.start()
    logger.info(f"Scheduler started, polling every {config.poll_interval_seconds}s")


async def run_scheduled_cycle():
    """Exécute un cycle planifié."""
    if _orchestrator is None:
        return
    logger.info("Running scheduled reconciliation cycle")
    try:
        await _orchestrator.run_cycle()
    except Exception as e:
        logger.exception(f"Error in scheduled cycle: {str(e)}")


def trigger_now() -> bool:
    """Planifie un cycle immédiat (webhooks entrants)."""
    if scheduler is None or not scheduler.running:
        return False
    scheduler.add_job(
        run_scheduled_cycle,
        id="reconcile_now",
        replace_existing=True,
        max_instances=1,
    )
    return True


async def stop_scheduler():
    """Arrête le scheduler puis attend la fin du cycle en cours."""
    global scheduler, _orchestrator
    if scheduler:
        scheduler.shutdown(wait=False)
        scheduler = None
        logger.info("Scheduler stopped")
    if _orchestrator:
        await _orchestrator.shutdown()
        _orchestrator = None
