"""SQLite checkpoint of the state cache, dedupe ledger and pending notifications."""
from sqlalchemy import create_engine, delete
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from pathlib import Path
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional
import logging

from informarr.core.models import (
    DerivedStatus,
    MediaRequest,
    MediaType,
    NotificationRecord,
    ReconciledState,
    RequestStatus,
    TransitionEvent,
)
from informarr.db.models import Base, NotificationRecordRow, PendingEventRow, ReconciledStateRow

logger = logging.getLogger(__name__)


def _aware(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def request_to_json(request: Optional[MediaRequest]) -> Optional[Dict[str, Any]]:
    if request is None:
        return None
    return {
        "request_id": request.request_id,
        "media_type": request.media_type.value,
        "external_ids": dict(request.external_ids),
        "requested_by": request.requested_by,
        "created_at": request.created_at.isoformat() if request.created_at else None,
        "current_status": request.current_status.value,
        "title": request.title,
        "overview": request.overview,
        "image_url": request.image_url,
        "discord_id": request.discord_id,
        "seasons": list(request.seasons),
    }


def request_from_json(data: Optional[Dict[str, Any]]) -> Optional[MediaRequest]:
    if not data:
        return None
    created_at = data.get("created_at")
    return MediaRequest(
        request_id=data["request_id"],
        media_type=MediaType(data["media_type"]),
        external_ids=dict(data.get("external_ids") or {}),
        requested_by=data.get("requested_by") or "",
        created_at=_aware(datetime.fromisoformat(created_at)) if created_at else None,
        current_status=RequestStatus(data["current_status"]),
        title=data.get("title") or "",
        overview=data.get("overview") or "",
        image_url=data.get("image_url"),
        discord_id=data.get("discord_id"),
        seasons=list(data.get("seasons") or []),
    )


def create_checkpoint_engine(data_dir: Optional[str] = None) -> Engine:
    """Engine SQLite dans data_dir, ou en mémoire si data_dir est None."""
    if data_dir is None:
        return create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    data_path = Path(data_dir)
    try:
        data_path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Error creating data directory {data_dir}: {str(e)}")
        raise

    db_path = data_path / "informarr.db"
    logger.info(f"Initializing checkpoint database at: {db_path}")
    return create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )


class Checkpoint:
    """Persist and restore the engine-owned state between restarts."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        Base.metadata.create_all(bind=engine)

    def _session(self) -> Session:
        return self.SessionLocal()

    def save(
        self,
        states: List[ReconciledState],
        records: List[NotificationRecord],
        pending: Iterable[TransitionEvent] = (),
    ) -> None:
        """Remplace le checkpoint par l'état courant (une transaction)."""
        pending = list(pending)
        with self._session() as db:
            db.execute(delete(ReconciledStateRow))
            db.execute(delete(NotificationRecordRow))
            db.execute(delete(PendingEventRow))
            db.add_all(
                ReconciledStateRow(
                    request_id=s.request_id,
                    derived_status=s.derived_status.value,
                    last_seen_at=s.last_seen_at,
                    matched_library_id=s.matched_library_id,
                    matched_source=s.matched_source,
                    unmatched_cycles=s.unmatched_cycles,
                    ever_matched=s.ever_matched,
                    ambiguous=s.ambiguous,
                )
                for s in states
            )
            db.add_all(
                NotificationRecordRow(
                    dedupe_key=r.dedupe_key,
                    channel=r.channel,
                    request_id=r.request_id,
                    event_type=r.event_type,
                    sent_at=r.sent_at,
                )
                for r in records
            )
            db.add_all(
                PendingEventRow(
                    dedupe_key=e.dedupe_key,
                    request_id=e.request_id,
                    from_status=e.from_status.value if e.from_status else None,
                    to_status=e.to_status.value,
                    timestamp=e.timestamp,
                    request_json=request_to_json(e.request),
                )
                for e in pending
            )
            db.commit()
        logger.debug(
            f"Checkpoint saved: {len(states)} states, {len(records)} notification records, "
            f"{len(pending)} pending notifications"
        )

    def load_pending(self) -> List[TransitionEvent]:
        with self._session() as db:
            rows = db.query(PendingEventRow).order_by(PendingEventRow.timestamp, PendingEventRow.request_id).all()
            return [
                TransitionEvent(
                    request_id=row.request_id,
                    from_status=DerivedStatus(row.from_status) if row.from_status else None,
                    to_status=DerivedStatus(row.to_status),
                    timestamp=_aware(row.timestamp),
                    request=request_from_json(row.request_json),
                )
                for row in rows
            ]

    def load_states(self) -> List[ReconciledState]:
        with self._session() as db:
            rows = db.query(ReconciledStateRow).order_by(ReconciledStateRow.request_id).all()
            return [
                ReconciledState(
                    request_id=row.request_id,
                    derived_status=DerivedStatus(row.derived_status),
                    last_seen_at=_aware(row.last_seen_at),
                    matched_library_id=row.matched_library_id,
                    matched_source=row.matched_source,
                    unmatched_cycles=row.unmatched_cycles,
                    ever_matched=row.ever_matched,
                    ambiguous=row.ambiguous,
                )
                for row in rows
            ]

    def load_records(self) -> List[NotificationRecord]:
        with self._session() as db:
            rows = db.query(NotificationRecordRow).all()
            return [
                NotificationRecord(
                    request_id=row.request_id,
                    event_type=row.event_type,
                    dedupe_key=row.dedupe_key,
                    sent_at=_aware(row.sent_at),
                    channel=row.channel,
                )
                for row in rows
            ]
