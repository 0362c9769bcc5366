"""Last-known reconciled view, kept across polling cycles."""
from typing import Callable, Dict, Iterable, List, Optional
import logging

from informarr.core.models import ReconciledState

logger = logging.getLogger(__name__)


class StateCache:
    """Single-writer cache of ReconciledState keyed by request id.

    The reconciliation engine is the only writer. Readers (API, scheduler)
    get copies, and commit() swaps the whole mapping at once so a reader
    never observes half of a cycle.
    """

    def __init__(self, states: Optional[Iterable[ReconciledState]] = None):
        self._states: Dict[int, ReconciledState] = {}
        for state in states or []:
            self._states[state.request_id] = state

    def get(self, request_id: int) -> Optional[ReconciledState]:
        return self._states.get(request_id)

    def put(self, state: ReconciledState) -> None:
        states = dict(self._states)
        states[state.request_id] = state
        self._states = states

    def all(self) -> List[ReconciledState]:
        return sorted(self._states.values(), key=lambda s: s.request_id)

    def evict_if(self, predicate: Callable[[ReconciledState], bool]) -> List[int]:
        """Supprime les états qui satisfont le prédicat, retourne leurs ids."""
        evicted = [rid for rid, state in self._states.items() if predicate(state)]
        if evicted:
            gone = set(evicted)
            self._states = {rid: s for rid, s in self._states.items() if rid not in gone}
            logger.info(f"Evicted {len(evicted)} reconciled states")
        return sorted(evicted)

    def commit(self, states: Dict[int, ReconciledState]) -> None:
        """Replace the whole view atomically (one cycle's result)."""
        self._states = dict(states)

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, request_id: int) -> bool:
        return request_id in self._states
