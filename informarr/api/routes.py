"""API routes."""
from fastapi import APIRouter, HTTPException, Request
from typing import Any, Dict, List
import logging

from informarr.api.models import (
    CycleReportResponse, HealthResponse, MessageResponse, ReconciledStateResponse
)
from informarr.core.orchestrator import Orchestrator
from informarr.scheduler import trigger_now

logger = logging.getLogger(__name__)
router = APIRouter()

WEBHOOK_SOURCES = ("jellyseerr", "radarr", "sonarr")


def _orchestrator(request: Request) -> Orchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Reconciler not started")
    return orchestrator


@router.get("/api/health", response_model=HealthResponse)
async def health(request: Request):
    """État des services et dernier cycle."""
    orchestrator = _orchestrator(request)
    report = orchestrator.last_report
    return HealthResponse(
        services={name: status.value for name, status in orchestrator.health().items()},
        pending_notifications=len(orchestrator.dispatcher.pending),
        last_cycle=CycleReportResponse.from_report(report) if report else None,
    )


@router.get("/api/requests", response_model=List[ReconciledStateResponse])
async def list_requests(request: Request):
    """Vue réconciliée courante."""
    orchestrator = _orchestrator(request)
    return [ReconciledStateResponse.from_state(s) for s in orchestrator.cache.all()]


@router.post("/api/scan", response_model=CycleReportResponse)
async def scan(request: Request):
    """Lance un cycle immédiatement et retourne son rapport."""
    orchestrator = _orchestrator(request)
    logger.info("=== Manual reconciliation cycle ===")
    report = await orchestrator.run_cycle()
    if report is None:
        raise HTTPException(status_code=503, detail="Shutting down")
    return CycleReportResponse.from_report(report)


@router.post("/api/v1/{source}/webhook", response_model=MessageResponse)
async def webhook(source: str, payload: Dict[str, Any]):
    """Webhook Jellyseerr/Radarr/Sonarr: déclenche un cycle anticipé."""
    if source not in WEBHOOK_SOURCES:
        raise HTTPException(status_code=404, detail=f"Unknown webhook source: {source}")
    event = payload.get("eventType") or payload.get("notification_type") or "unknown"
    logger.info(f"Received {source} webhook: {event}")
    if not trigger_now():
        return MessageResponse(message="scheduler not running")
    return MessageResponse(message="ok")
