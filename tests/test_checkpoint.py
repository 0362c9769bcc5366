"""Tests for the SQLite checkpoint."""
from datetime import datetime, timezone

from informarr.core.models import (
    DerivedStatus,
    MediaRequest,
    MediaType,
    NotificationRecord,
    ReconciledState,
    RequestStatus,
    TransitionEvent,
)
from informarr.db.database import Checkpoint, create_checkpoint_engine

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestCheckpoint:
    """Save and restore of states and the dedupe ledger."""

    def test_save_and_load(self):
        checkpoint = Checkpoint(create_checkpoint_engine())
        states = [
            ReconciledState(2, DerivedStatus.UNMATCHED_STALE, T0, unmatched_cycles=3),
            ReconciledState(1, DerivedStatus.MATCHED_AVAILABLE, T0, 10, "radarr", 0, True, True),
        ]
        records = [NotificationRecord(1, "media-available", "abc", T0, "discord")]

        checkpoint.save(states, records)

        restored = checkpoint.load_states()
        assert [s.request_id for s in restored] == [1, 2]
        assert restored[0] == states[1]
        assert restored[1].unmatched_cycles == 3
        assert restored[0].last_seen_at.tzinfo is not None
        assert checkpoint.load_records() == records

    def test_save_replaces_previous_checkpoint(self):
        checkpoint = Checkpoint(create_checkpoint_engine())
        checkpoint.save([ReconciledState(1, DerivedStatus.REQUESTED, T0)], [])
        checkpoint.save([ReconciledState(2, DerivedStatus.REQUESTED, T0)], [])

        assert [s.request_id for s in checkpoint.load_states()] == [2]

    def test_file_database_in_data_dir(self, tmp_path):
        engine = create_checkpoint_engine(str(tmp_path / "data"))
        checkpoint = Checkpoint(engine)
        checkpoint.save([ReconciledState(1, DerivedStatus.REQUESTED, T0)], [])

        assert (tmp_path / "data" / "informarr.db").exists()
        reopened = Checkpoint(create_checkpoint_engine(str(tmp_path / "data")))
        assert len(reopened.load_states()) == 1

    def test_pending_notifications_survive_reopen(self, tmp_path):
        request = MediaRequest(
            request_id=7,
            media_type=MediaType.SERIES,
            external_ids={"tvdb": "81189"},
            requested_by="alice",
            created_at=T0,
            current_status=RequestStatus.APPROVED,
            title="Breaking Bad",
            discord_id="1234",
            seasons=[1, 2],
        )
        events = [
            TransitionEvent(7, DerivedStatus.MATCHED_DOWNLOADING, DerivedStatus.MATCHED_AVAILABLE, T0, request),
            TransitionEvent(8, None, DerivedStatus.UNMATCHED_STALE, T0),
        ]
        Checkpoint(create_checkpoint_engine(str(tmp_path))).save([], [], events)

        restored = Checkpoint(create_checkpoint_engine(str(tmp_path))).load_pending()

        assert [e.request_id for e in restored] == [7, 8]
        available, stale = restored
        assert available.dedupe_key == events[0].dedupe_key
        assert available.from_status == DerivedStatus.MATCHED_DOWNLOADING
        assert available.timestamp == T0
        assert available.request == request
        assert stale.from_status is None
        assert stale.request is None

    def test_save_clears_delivered_pending(self):
        checkpoint = Checkpoint(create_checkpoint_engine())
        checkpoint.save([], [], [TransitionEvent(1, None, DerivedStatus.MATCHED_AVAILABLE, T0)])
        checkpoint.save([], [])

        assert checkpoint.load_pending() == []
