"""Dispatch des transitions vers les canaux, avec ledger de dédoublonnage."""
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import List, Dict, Iterable, Optional, Tuple
from datetime import datetime, timedelta, timezone
import logging

from informarr.config import NotificationsConfig
from informarr.core.models import DerivedStatus, NotificationRecord, TransitionEvent
from informarr.errors import DispatchError
from informarr.services.notifier import NotificationChannel

logger = logging.getLogger(__name__)


class DispatchOutcome(str, Enum):
    SENT = "sent"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"


@dataclass
class DispatchSummary:
    sent: int = 0
    duplicates: int = 0
    skipped: int = 0
    failed: int = 0

    def add(self, outcome: DispatchOutcome) -> None:
        if outcome == DispatchOutcome.SENT:
            self.sent += 1
        elif outcome == DispatchOutcome.DUPLICATE:
            self.duplicates += 1
        else:
            self.skipped += 1


class NotificationDispatcher:
    """Owns the dedupe ledger and the queue of undelivered events.

    A transition is delivered at most once per (dedupe key, channel) inside
    the retention window. Failed deliveries stay pending and are retried on
    the next cycle.
    """

    def __init__(
        self,
        channels: List[NotificationChannel],
        config: Optional[NotificationsConfig] = None,
        records: Optional[Iterable[NotificationRecord]] = None,
        pending: Optional[Iterable[TransitionEvent]] = None,
    ):
        config = config or NotificationsConfig()
        self.channels = channels
        self.notify_on = {DerivedStatus(s) for s in config.notify_on}
        self.retention = timedelta(hours=config.retention_hours)
        self.concurrency = max(config.concurrency, 1)
        self._ledger: Dict[Tuple[str, str], NotificationRecord] = {}
        self._pending: Dict[str, TransitionEvent] = {}
        for record in records or []:
            self._ledger[(record.dedupe_key, record.channel)] = record
        for event in pending or []:
            self._pending[event.dedupe_key] = event

    @property
    def records(self) -> List[NotificationRecord]:
        return sorted(self._ledger.values(), key=lambda r: r.sent_at)

    @property
    def pending(self) -> List[TransitionEvent]:
        return list(self._pending.values())

    def _delivered(self, dedupe_key: str, channel: str, now: datetime) -> bool:
        record = self._ledger.get((dedupe_key, channel))
        return record is not None and now - record.sent_at < self.retention

    async def dispatch(self, event: TransitionEvent, now: Optional[datetime] = None) -> DispatchOutcome:
        """Envoie une transition; lève DispatchError si un canal échoue."""
        now = now or datetime.now(timezone.utc)
        if event.to_status not in self.notify_on or not self.channels:
            return DispatchOutcome.SKIPPED

        key = event.dedupe_key
        todo = [c for c in self.channels if not self._delivered(key, c.name, now)]
        if not todo:
            self._pending.pop(key, None)
            logger.debug(f"Duplicate notification dropped for request {event.request_id} ({event.event_type})")
            return DispatchOutcome.DUPLICATE

        failures = []
        for channel in todo:
            try:
                await channel.send(event)
            except DispatchError as e:
                failures.append(str(e))
                continue
            self._ledger[(key, channel.name)] = NotificationRecord(
                request_id=event.request_id,
                event_type=event.event_type,
                dedupe_key=key,
                sent_at=now,
                channel=channel.name,
            )

        if failures:
            self._pending[key] = event
            logger.warning(
                f"Notification for request {event.request_id} ({event.event_type}) queued for retry: "
                f"{'; '.join(failures)}"
            )
            raise DispatchError("; ".join(failures), dedupe_key=key)

        self._pending.pop(key, None)
        return DispatchOutcome.SENT

    async def dispatch_all(self, events: List[TransitionEvent], now: Optional[datetime] = None) -> DispatchSummary:
        """Dispatch concurrently across requests, in order within a request."""
        summary = DispatchSummary()
        by_request: Dict[int, List[TransitionEvent]] = {}
        for event in events:
            by_request.setdefault(event.request_id, []).append(event)

        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(group: List[TransitionEvent]) -> None:
            async with semaphore:
                for event in group:
                    try:
                        outcome = await self.dispatch(event, now=now)
                    except DispatchError:
                        summary.failed += 1
                        continue
                    summary.add(outcome)

        await asyncio.gather(*(run(group) for group in by_request.values()))
        return summary

    async def retry_pending(self, now: Optional[datetime] = None) -> DispatchSummary:
        """Retente les événements restés en échec au cycle précédent."""
        if not self._pending:
            return DispatchSummary()
        logger.info(f"Retrying {len(self._pending)} pending notifications")
        return await self.dispatch_all(self.pending, now=now)

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        expired = [k for k, r in self._ledger.items() if now - r.sent_at >= self.retention]
        for k in expired:
            del self._ledger[k]
        if expired:
            logger.info(f"Purged {len(expired)} expired notification records")
        return len(expired)

    async def aclose(self) -> None:
        for channel in self.channels:
            await channel.aclose()
