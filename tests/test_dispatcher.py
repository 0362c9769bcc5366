"""Tests for the notification dispatcher and its dedupe ledger."""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from informarr.config import NotificationsConfig
from informarr.core.dispatcher import DispatchOutcome, NotificationDispatcher
from informarr.core.models import DerivedStatus, NotificationRecord, TransitionEvent
from informarr.errors import DispatchError

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def event(request_id: int, to_status: DerivedStatus, from_status=None, when: datetime = T0) -> TransitionEvent:
    return TransitionEvent(request_id=request_id, from_status=from_status, to_status=to_status, timestamp=when)


class TestDispatch:
    """Single event delivery."""

    @pytest.mark.asyncio
    async def test_sends_and_records(self, recording_channel):
        dispatcher = NotificationDispatcher([recording_channel])
        ev = event(1, DerivedStatus.MATCHED_AVAILABLE)

        outcome = await dispatcher.dispatch(ev, now=T0)

        assert outcome == DispatchOutcome.SENT
        assert recording_channel.sent == [ev]
        [record] = dispatcher.records
        assert record.dedupe_key == ev.dedupe_key
        assert record.channel == "recording"
        assert record.event_type == "media-available"
        assert record.sent_at == T0

    @pytest.mark.asyncio
    async def test_second_delivery_is_duplicate(self, recording_channel):
        dispatcher = NotificationDispatcher([recording_channel])

        await dispatcher.dispatch(event(1, DerivedStatus.MATCHED_AVAILABLE), now=T0)
        outcome = await dispatcher.dispatch(
            event(1, DerivedStatus.MATCHED_AVAILABLE, when=T0 + timedelta(hours=1)),
            now=T0 + timedelta(hours=1),
        )

        assert outcome == DispatchOutcome.DUPLICATE
        assert len(recording_channel.sent) == 1

    @pytest.mark.asyncio
    async def test_status_outside_notify_on_is_skipped(self, recording_channel):
        dispatcher = NotificationDispatcher([recording_channel])

        outcome = await dispatcher.dispatch(event(1, DerivedStatus.REQUESTED), now=T0)

        assert outcome == DispatchOutcome.SKIPPED
        assert recording_channel.attempts == 0
        assert dispatcher.records == []

    @pytest.mark.asyncio
    async def test_notify_on_is_configurable(self, recording_channel):
        config = NotificationsConfig(notify_on=["requested", "matched-downloading"])
        dispatcher = NotificationDispatcher([recording_channel], config)

        assert await dispatcher.dispatch(event(1, DerivedStatus.REQUESTED), now=T0) == DispatchOutcome.SENT
        assert await dispatcher.dispatch(event(1, DerivedStatus.MATCHED_AVAILABLE), now=T0) == DispatchOutcome.SKIPPED

    @pytest.mark.asyncio
    async def test_no_channels_skips(self):
        dispatcher = NotificationDispatcher([])
        assert await dispatcher.dispatch(event(1, DerivedStatus.MATCHED_AVAILABLE), now=T0) == DispatchOutcome.SKIPPED

    @pytest.mark.asyncio
    async def test_failure_raises_and_queues(self, recording_channel_cls):
        channel = recording_channel_cls(fail=True)
        dispatcher = NotificationDispatcher([channel])
        ev = event(1, DerivedStatus.UNMATCHED_STALE)

        with pytest.raises(DispatchError) as exc_info:
            await dispatcher.dispatch(ev, now=T0)

        assert exc_info.value.dedupe_key == ev.dedupe_key
        assert dispatcher.pending == [ev]
        assert dispatcher.records == []

    @pytest.mark.asyncio
    async def test_partial_failure_only_retries_failed_channel(self, recording_channel_cls):
        ok = recording_channel_cls(name="ok")
        broken = recording_channel_cls(name="broken", fail=True)
        dispatcher = NotificationDispatcher([ok, broken])
        ev = event(1, DerivedStatus.MATCHED_AVAILABLE)

        with pytest.raises(DispatchError):
            await dispatcher.dispatch(ev, now=T0)

        broken.fail = False
        summary = await dispatcher.retry_pending(now=T0 + timedelta(minutes=30))

        assert summary.sent == 1
        assert len(ok.sent) == 1
        assert len(broken.sent) == 1
        assert dispatcher.pending == []
        assert {r.channel for r in dispatcher.records} == {"ok", "broken"}


class TestDispatchAll:
    """Batches, retries and ledger retention."""

    @pytest.mark.asyncio
    async def test_summary_counts(self, recording_channel):
        dispatcher = NotificationDispatcher([recording_channel])
        events = [
            event(1, DerivedStatus.MATCHED_AVAILABLE),
            event(2, DerivedStatus.REQUESTED),
            event(3, DerivedStatus.UNMATCHED_STALE),
            event(1, DerivedStatus.MATCHED_AVAILABLE),
        ]

        summary = await dispatcher.dispatch_all(events, now=T0)

        assert summary.sent == 2
        assert summary.duplicates == 1
        assert summary.skipped == 1
        assert summary.failed == 0

    @pytest.mark.asyncio
    async def test_events_of_one_request_keep_their_order(self, recording_channel):
        config = NotificationsConfig(notify_on=["matched-downloading", "matched-available"])
        dispatcher = NotificationDispatcher([recording_channel], config)
        events = [
            event(1, DerivedStatus.MATCHED_DOWNLOADING),
            event(2, DerivedStatus.MATCHED_AVAILABLE),
            event(1, DerivedStatus.MATCHED_AVAILABLE, DerivedStatus.MATCHED_DOWNLOADING),
        ]

        await dispatcher.dispatch_all(events, now=T0)

        request_one = [e.to_status for e in recording_channel.sent if e.request_id == 1]
        assert request_one == [DerivedStatus.MATCHED_DOWNLOADING, DerivedStatus.MATCHED_AVAILABLE]

    @pytest.mark.asyncio
    async def test_failed_events_are_retried_next_cycle(self, recording_channel_cls):
        channel = recording_channel_cls(fail=True)
        dispatcher = NotificationDispatcher([channel])

        summary = await dispatcher.dispatch_all([event(1, DerivedStatus.MATCHED_AVAILABLE)], now=T0)
        assert summary.failed == 1
        assert len(dispatcher.pending) == 1

        channel.fail = False
        retried = await dispatcher.retry_pending(now=T0 + timedelta(minutes=30))

        assert retried.sent == 1
        assert dispatcher.pending == []
        assert len(channel.sent) == 1

    @pytest.mark.asyncio
    async def test_retry_with_nothing_pending(self, recording_channel):
        dispatcher = NotificationDispatcher([recording_channel])
        summary = await dispatcher.retry_pending(now=T0)
        assert summary.sent == summary.failed == 0

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        active = 0
        peak = 0

        class SlowChannel:
            name = "slow"

            async def send(self, ev):
                nonlocal active, peak
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1

            async def aclose(self):
                pass

        dispatcher = NotificationDispatcher([SlowChannel()], NotificationsConfig(concurrency=2))
        events = [event(rid, DerivedStatus.MATCHED_AVAILABLE) for rid in range(1, 7)]

        summary = await dispatcher.dispatch_all(events, now=T0)

        assert summary.sent == 6
        assert peak <= 2

    @pytest.mark.asyncio
    async def test_expired_record_allows_resend(self, recording_channel):
        dispatcher = NotificationDispatcher([recording_channel], NotificationsConfig(retention_hours=1))
        ev = event(1, DerivedStatus.MATCHED_AVAILABLE)

        await dispatcher.dispatch(ev, now=T0)
        outcome = await dispatcher.dispatch(ev, now=T0 + timedelta(hours=2))

        assert outcome == DispatchOutcome.SENT
        assert len(recording_channel.sent) == 2

    def test_purge_expired(self):
        old = NotificationRecord(1, "media-available", "old-key", T0 - timedelta(days=10), "discord")
        fresh = NotificationRecord(2, "media-available", "fresh-key", T0 - timedelta(hours=1), "discord")
        dispatcher = NotificationDispatcher([], NotificationsConfig(retention_hours=24), records=[old, fresh])

        assert dispatcher.purge_expired(now=T0) == 1
        assert dispatcher.records == [fresh]

    @pytest.mark.asyncio
    async def test_restored_ledger_suppresses_resend(self, recording_channel):
        ev = event(1, DerivedStatus.MATCHED_AVAILABLE)
        record = NotificationRecord(1, ev.event_type, ev.dedupe_key, T0 - timedelta(hours=1), "recording")
        dispatcher = NotificationDispatcher([recording_channel], records=[record])

        assert await dispatcher.dispatch(ev, now=T0) == DispatchOutcome.DUPLICATE
        assert recording_channel.sent == []

    @pytest.mark.asyncio
    async def test_aclose_closes_channels(self, recording_channel):
        dispatcher = NotificationDispatcher([recording_channel])
        await dispatcher.aclose()
        assert recording_channel.closed
