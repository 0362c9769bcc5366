"""Pydantic models for API responses."""
from pydantic import BaseModel
from typing import Optional, List, Dict
from datetime import datetime

from informarr.core.models import CycleReport, ReconciledState


class MessageResponse(BaseModel):
    message: str


class CycleReportResponse(BaseModel):
    started_at: datetime
    finished_at: Optional[datetime]
    duration_seconds: Optional[float]
    skipped: bool
    requests_seen: int
    transitions: int
    sent: int
    duplicates: int
    dispatch_failures: int
    evicted: int
    ambiguous: int
    stale_services: List[str]

    @classmethod
    def from_report(cls, report: CycleReport) -> "CycleReportResponse":
        return cls(
            started_at=report.started_at,
            finished_at=report.finished_at,
            duration_seconds=report.duration_seconds,
            skipped=report.skipped,
            requests_seen=report.requests_seen,
            transitions=report.transitions,
            sent=report.sent,
            duplicates=report.duplicates,
            dispatch_failures=report.dispatch_failures,
            evicted=report.evicted,
            ambiguous=report.ambiguous,
            stale_services=report.stale_services,
        )


class HealthResponse(BaseModel):
    services: Dict[str, str]
    pending_notifications: int
    last_cycle: Optional[CycleReportResponse]


class ReconciledStateResponse(BaseModel):
    request_id: int
    derived_status: str
    last_seen_at: datetime
    matched_library_id: Optional[int]
    matched_source: Optional[str]
    unmatched_cycles: int
    ambiguous: bool

    @classmethod
    def from_state(cls, state: ReconciledState) -> "ReconciledStateResponse":
        return cls(
            request_id=state.request_id,
            derived_status=state.derived_status.value,
            last_seen_at=state.last_seen_at,
            matched_library_id=state.matched_library_id,
            matched_source=state.matched_source,
            unmatched_cycles=state.unmatched_cycles,
            ambiguous=state.ambiguous,
        )
