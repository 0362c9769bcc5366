"""Moteur de réconciliation: demandes vs bibliothèques."""
from dataclasses import dataclass, field, replace
from typing import List, Dict, Optional
from datetime import datetime, timezone
import logging

from informarr.config import ReconciliationConfig
from informarr.core.matcher import MediaMatcher
from informarr.core.models import (
    Availability,
    CycleSnapshot,
    DerivedStatus,
    MediaRequest,
    ReconciledState,
    RequestStatus,
    TransitionEvent,
)
from informarr.core.state import StateCache

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    states: Dict[int, ReconciledState] = field(default_factory=dict)
    events: List[TransitionEvent] = field(default_factory=list)
    evicted: List[int] = field(default_factory=list)
    ambiguous: List[int] = field(default_factory=list)
    carried_forward: List[int] = field(default_factory=list)
    deferred: List[int] = field(default_factory=list)


class Reconciler:
    """Compute the next ReconciledState per request and the transitions."""

    def __init__(self, config: Optional[ReconciliationConfig] = None):
        config = config or ReconciliationConfig()
        self.grace_cycles = config.grace_cycles
        self.matcher = MediaMatcher(config.namespace_priority)

    def reconcile(
        self,
        snapshot: CycleSnapshot,
        cache: StateCache,
        now: Optional[datetime] = None,
    ) -> ReconcileResult:
        """Une passe de réconciliation; écrit le résultat dans le cache."""
        now = now or datetime.now(timezone.utc)
        result = ReconcileResult()
        index = MediaMatcher.build_index(snapshot.library_items())

        active = [r for r in snapshot.requests.items if r.current_status != RequestStatus.DECLINED]
        active_ids = {r.request_id for r in active}

        # Keep states of requests not reconciled this cycle; eviction decides their fate
        for state in cache.all():
            if state.request_id not in active_ids:
                result.states[state.request_id] = state

        for request in active:
            previous = cache.get(request.request_id)

            if snapshot.is_library_stale(request.media_type):
                if previous is None:
                    result.deferred.append(request.request_id)
                else:
                    result.states[request.request_id] = replace(previous, last_seen_at=now)
                    result.carried_forward.append(request.request_id)
                continue

            state = self._derive(request, previous, index, now)
            result.states[request.request_id] = state
            if state.ambiguous:
                result.ambiguous.append(request.request_id)

            if previous is None or previous.derived_status != state.derived_status:
                result.events.append(TransitionEvent(
                    request_id=request.request_id,
                    from_status=previous.derived_status if previous else None,
                    to_status=state.derived_status,
                    timestamp=now,
                    request=request,
                ))

        if not snapshot.requests.stale:
            staged = StateCache(result.states.values())
            result.evicted = staged.evict_if(lambda s: s.request_id not in active_ids)
            result.states = {s.request_id: s for s in staged.all()}

        cache.commit(result.states)

        if result.carried_forward:
            logger.info(f"Carried forward {len(result.carried_forward)} states (stale library data)")
        logger.info(
            f"Reconciled {len(active)} requests: {len(result.events)} transitions, "
            f"{len(result.ambiguous)} ambiguous, {len(result.deferred)} deferred"
        )
        return result

    def _derive(self, request: MediaRequest, previous: Optional[ReconciledState], index, now: datetime) -> ReconciledState:
        match = self.matcher.match_by_id(request, index)
        ever_matched = bool(previous and previous.ever_matched)

        if match.item is None:
            unmatched_cycles = (previous.unmatched_cycles if previous else 0) + 1
            if not ever_matched and unmatched_cycles >= self.grace_cycles:
                status = DerivedStatus.UNMATCHED_STALE
                if not self.matcher.has_trusted_id(request) and (previous is None or previous.derived_status != status):
                    logger.warning(f"Request {request.request_id} has no trusted external id, it can never match")
            else:
                status = DerivedStatus.REQUESTED
            return ReconciledState(
                request_id=request.request_id,
                derived_status=status,
                last_seen_at=now,
                unmatched_cycles=unmatched_cycles,
                ever_matched=ever_matched,
            )

        # series requests only cover the seasons asked for
        if match.item.availability_for(request.seasons) == Availability.AVAILABLE:
            status = DerivedStatus.MATCHED_AVAILABLE
        else:
            status = DerivedStatus.MATCHED_DOWNLOADING
        return ReconciledState(
            request_id=request.request_id,
            derived_status=status,
            last_seen_at=now,
            matched_library_id=match.item.library_id,
            matched_source=match.item.source,
            unmatched_cycles=0,
            ever_matched=True,
            ambiguous=match.ambiguous,
        )
