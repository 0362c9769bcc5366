"""SQLAlchemy models for the checkpoint database."""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, JSON
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class ReconciledStateRow(Base):
    """Dernière vue réconciliée d'une demande."""
    __tablename__ = "reconciled_states"

    request_id = Column(Integer, primary_key=True)
    derived_status = Column(String, nullable=False)  # requested, matched-downloading, matched-available, unmatched-stale
    last_seen_at = Column(DateTime(timezone=True), nullable=False)
    matched_library_id = Column(Integer, nullable=True)
    matched_source = Column(String, nullable=True)  # radarr, sonarr
    unmatched_cycles = Column(Integer, default=0, nullable=False)
    ever_matched = Column(Boolean, default=False, nullable=False)
    ambiguous = Column(Boolean, default=False, nullable=False)


class NotificationRecordRow(Base):
    """Entrée du ledger de dédoublonnage."""
    __tablename__ = "notification_records"

    dedupe_key = Column(String, primary_key=True)
    channel = Column(String, primary_key=True)
    request_id = Column(Integer, nullable=False, index=True)
    event_type = Column(String, nullable=False)
    sent_at = Column(DateTime(timezone=True), nullable=False)


class PendingEventRow(Base):
    """Transition restée en échec, à renvoyer au prochain cycle."""
    __tablename__ = "pending_events"

    dedupe_key = Column(String, primary_key=True)
    request_id = Column(Integer, nullable=False, index=True)
    from_status = Column(String, nullable=True)
    to_status = Column(String, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    request_json = Column(JSON, nullable=True)  # MediaRequest snapshot used to render the message
