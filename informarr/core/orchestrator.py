"""One reconciliation cycle: concurrent fetch, reconcile, dispatch, checkpoint."""
import asyncio
from typing import Awaitable, Callable, Dict, Optional
from datetime import datetime, timezone
import logging

from sqlalchemy.exc import SQLAlchemyError

from informarr.config import Config
from informarr.core.dispatcher import NotificationDispatcher
from informarr.core.models import CycleReport, CycleSnapshot, FetchResult, MediaType, ServiceHealth
from informarr.core.reconciler import Reconciler
from informarr.core.state import StateCache
from informarr.db.database import Checkpoint, create_checkpoint_engine
from informarr.errors import ConfigError, FetchError, MalformedDataError
from informarr.services.base import BaseService
from informarr.services.jellyseerr import JellyseerrService
from informarr.services.notifier import build_channels
from informarr.services.radarr import RadarrService
from informarr.services.sonarr import SonarrService

logger = logging.getLogger(__name__)


class Orchestrator:
    """Runs cycles, one at a time, and owns shutdown."""

    def __init__(
        self,
        jellyseerr: JellyseerrService,
        radarr: RadarrService,
        sonarr: SonarrService,
        dispatcher: NotificationDispatcher,
        reconciler: Optional[Reconciler] = None,
        cache: Optional[StateCache] = None,
        checkpoint: Optional[Checkpoint] = None,
        cycle_deadline: float = 120.0,
    ):
        self.jellyseerr = jellyseerr
        self.radarr = radarr
        self.sonarr = sonarr
        self.dispatcher = dispatcher
        self.reconciler = reconciler or Reconciler()
        self.cache = cache or StateCache()
        self.checkpoint = checkpoint
        self.cycle_deadline = cycle_deadline
        self.last_report: Optional[CycleReport] = None
        self._cycle_lock = asyncio.Lock()
        self._inflight: Dict[str, asyncio.Task] = {}
        self._closing = False

    @property
    def adapters(self) -> Dict[str, BaseService]:
        return {
            self.jellyseerr.name: self.jellyseerr,
            self.radarr.name: self.radarr,
            self.sonarr.name: self.sonarr,
        }

    def health(self) -> Dict[str, ServiceHealth]:
        return {name: adapter.health for name, adapter in self.adapters.items()}

    def _fetchers(self) -> Dict[str, Callable[[], Awaitable[FetchResult]]]:
        return {
            self.jellyseerr.name: self.jellyseerr.fetch_requests,
            self.radarr.name: lambda: self.radarr.fetch_library(MediaType.MOVIE),
            self.sonarr.name: lambda: self.sonarr.fetch_library(MediaType.SERIES),
        }

    def _fallback(self, name: str) -> FetchResult:
        if name == self.radarr.name:
            return self.radarr.last_snapshot(MediaType.MOVIE.value)
        if name == self.sonarr.name:
            return self.sonarr.last_snapshot(MediaType.SERIES.value)
        return self.jellyseerr.last_snapshot()

    async def fetch_snapshot(self) -> CycleSnapshot:
        """Lance les trois fetchs en parallèle, sous une deadline globale."""
        for name, start in self._fetchers().items():
            task = self._inflight.get(name)
            # A fetch that outlived the previous deadline is awaited, not duplicated
            if task is None or task.done():
                self._inflight[name] = asyncio.create_task(start(), name=f"fetch-{name}")

        tasks = dict(self._inflight)
        done, _ = await asyncio.wait(tasks.values(), timeout=self.cycle_deadline)

        results: Dict[str, FetchResult] = {}
        for name, task in tasks.items():
            if task not in done:
                logger.warning(f"{name} fetch missed the cycle deadline ({self.cycle_deadline}s), using stale data")
                results[name] = self._fallback(name)
                continue
            del self._inflight[name]
            exc = task.exception()
            if exc is not None:
                logger.error(f"{name} fetch raised unexpectedly: {exc!r}")
                results[name] = self._fallback(name)
                continue
            results[name] = task.result()

        return CycleSnapshot(
            requests=results[self.jellyseerr.name],
            libraries={
                self.radarr.name: results[self.radarr.name],
                self.sonarr.name: results[self.sonarr.name],
            },
            managers={MediaType.MOVIE: self.radarr.name, MediaType.SERIES: self.sonarr.name},
        )

    async def run_cycle(self) -> Optional[CycleReport]:
        """Un cycle complet. Retourne None si l'arrêt est en cours."""
        if self._closing:
            return None
        async with self._cycle_lock:
            if self._closing:
                return None
            report = CycleReport(started_at=datetime.now(timezone.utc))

            retried = await self.dispatcher.retry_pending()
            report.sent += retried.sent
            report.duplicates += retried.duplicates
            report.dispatch_failures += retried.failed

            if all(adapter.breaker.is_short_circuited() for adapter in self.adapters.values()):
                logger.warning("Every service is degraded, skipping fetch and reconciliation this cycle")
                report.skipped = True
                report.stale_services = sorted(self.adapters)
            else:
                snapshot = await self.fetch_snapshot()
                report.stale_services = sorted(
                    r.service for r in [snapshot.requests, *snapshot.libraries.values()] if r.stale
                )
                report.requests_seen = len(snapshot.requests.items)

                result = self.reconciler.reconcile(snapshot, self.cache)
                report.transitions = len(result.events)
                report.evicted = len(result.evicted)
                report.ambiguous = len(result.ambiguous)

                summary = await self.dispatcher.dispatch_all(result.events)
                report.sent += summary.sent
                report.duplicates += summary.duplicates
                report.dispatch_failures += summary.failed

            self.dispatcher.purge_expired()
            await self._save_checkpoint()

            report.finished_at = datetime.now(timezone.utc)
            self.last_report = report
            logger.info(
                f"Cycle finished in {report.duration_seconds:.2f}s: {report.transitions} transitions, "
                f"{report.sent} sent, {report.dispatch_failures} failed, stale={report.stale_services}"
            )
            return report

    async def _save_checkpoint(self) -> None:
        if self.checkpoint is None:
            return
        try:
            await asyncio.to_thread(
                self.checkpoint.save, self.cache.all(), self.dispatcher.records, self.dispatcher.pending
            )
        except (SQLAlchemyError, OSError) as e:
            # Durability is optional; the in-memory view stays authoritative
            logger.error(f"Failed to save checkpoint: {str(e)}")

    async def shutdown(self) -> None:
        """Arrêt coopératif: plus de nouveau cycle, le cycle en cours se termine."""
        self._closing = True
        async with self._cycle_lock:
            pending = [t for t in self._inflight.values() if not t.done()]
            if pending:
                logger.info(f"Waiting for {len(pending)} in-flight fetches to honor their timeouts")
                await asyncio.gather(*pending, return_exceptions=True)
            self._inflight.clear()
            await self._save_checkpoint()
            for adapter in self.adapters.values():
                await adapter.aclose()
            await self.dispatcher.aclose()
        logger.info("Orchestrator stopped")


async def create_orchestrator(config: Config) -> Orchestrator:
    """Construit adapters, dispatcher et cache à partir de la config."""
    jellyseerr = JellyseerrService(config)

    radarr_config, sonarr_config = config.radarr, config.sonarr
    if radarr_config is None or sonarr_config is None:
        try:
            discovered_radarr, discovered_sonarr = await jellyseerr.discover_library_managers()
        except (FetchError, MalformedDataError) as e:
            await jellyseerr.aclose()
            raise ConfigError(f"Could not retrieve library manager settings from Jellyseerr: {e}") from e
        radarr_config = radarr_config or discovered_radarr
        sonarr_config = sonarr_config or discovered_sonarr
    if radarr_config is None or sonarr_config is None:
        await jellyseerr.aclose()
        raise ConfigError("Radarr and Sonarr must be configured or declared in Jellyseerr")

    checkpoint = None
    states, records, pending = [], [], []
    if config.app.checkpoint_enabled:
        checkpoint = Checkpoint(create_checkpoint_engine(config.app.data_dir))
        states = checkpoint.load_states()
        records = checkpoint.load_records()
        pending = checkpoint.load_pending()
        logger.info(
            f"Restored {len(states)} states, {len(records)} notification records "
            f"and {len(pending)} pending notifications from checkpoint"
        )

    return Orchestrator(
        jellyseerr=jellyseerr,
        radarr=RadarrService(config, radarr=radarr_config),
        sonarr=SonarrService(config, sonarr=sonarr_config),
        dispatcher=NotificationDispatcher(
            build_channels(config.notifications), config.notifications, records=records, pending=pending
        ),
        reconciler=Reconciler(config.reconciliation),
        cache=StateCache(states),
        checkpoint=checkpoint,
        cycle_deadline=config.scheduler.cycle_deadline_seconds,
    )
